"""Module publishing engine — status derivation, promotion, publish pipeline and live supersession."""
from .environments import EnvironmentSet
from .exceptions import (
    Conflict, ExternalServiceFailure, NotFound, PublishDeadlineExceeded, PublishingError,
    ValidationFailure,
)
from .locks import ModuleLockRegistry
from .models import (
    CampaignReferences, JobState, Module, ModuleKindName, ModuleStatus, ModuleValue,
    PublishHistoryEntry, PublishJob, Region, ScopeRequirements, ValueStatus,
)
from .promotion import PromotionWorkflow
from .publisher import ModulePublisher, PublishResult
from .repository import InMemoryModuleRepository, ModuleRepository
from .service import ModuleService
from .status_engine import StatusEngine, derive_status
from .supersession import LiveSupersession

__all__ = [
    "EnvironmentSet",
    "PublishingError", "NotFound", "Conflict", "ValidationFailure",
    "ExternalServiceFailure", "PublishDeadlineExceeded",
    "ModuleLockRegistry",
    "CampaignReferences", "JobState", "Module", "ModuleKindName", "ModuleStatus", "ModuleValue",
    "PublishHistoryEntry", "PublishJob", "Region", "ScopeRequirements", "ValueStatus",
    "PromotionWorkflow", "ModulePublisher", "PublishResult",
    "ModuleRepository", "InMemoryModuleRepository", "ModuleService",
    "StatusEngine", "derive_status", "LiveSupersession",
]
