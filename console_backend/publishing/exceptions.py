"""
Publishing engine exceptions.
Typed errors surfaced by promotion, publishing and module administration.
"""
from typing import Optional, Dict, Any


class PublishingError(Exception):
    """
    Base exception for the publishing engine.

    Attributes:
        message: human readable message
        error_code: machine readable code (defaults to the class name)
        context: extra structured data (module id, env, step, ...)
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "retryable": self.retryable,
        }


class NotFound(PublishingError):
    """Referenced module, sub-resource or environment is missing."""


class Conflict(PublishingError):
    """Operation is not allowed in the module's current state."""


class ValidationFailure(PublishingError):
    """Required dimension combinations are incomplete. Raised before any pipeline run."""


class ExternalServiceFailure(PublishingError):
    """An asset store, cache, CDN, config-delivery or auth call failed."""

    retryable = True


class PublishDeadlineExceeded(ExternalServiceFailure):
    """The caller's publish deadline elapsed before the pipeline finished."""
