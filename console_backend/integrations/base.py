"""
Shared httpx plumbing for external service clients.
Transport failures and unexpected status codes become ExternalServiceFailure.
"""

import logging
from typing import Any, Dict, Iterable, Optional

import httpx

from console_backend.publishing.exceptions import ExternalServiceFailure

logger = logging.getLogger(__name__)


class HttpServiceClient:
    """Base for JSON-over-HTTP collaborators."""

    service_name = "external service"

    def __init__(
        self,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _request(
        self,
        method: str,
        url: str,
        ok_statuses: Iterable[int] = (),
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request; 2xx and any status in ok_statuses are returned, the rest raise."""
        try:
            async with self._client() as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{self.service_name} {method} {url} failed: {e}")
            raise ExternalServiceFailure(
                f"{self.service_name} request failed: {e}",
                context={"method": method, "url": url},
            ) from e

        if response.is_success or response.status_code in set(ok_statuses):
            return response
        logger.error(f"{self.service_name} {method} {url} returned {response.status_code}")
        raise ExternalServiceFailure(
            f"{self.service_name} {method} returned {response.status_code}",
            context={"method": method, "url": url, "status_code": response.status_code,
                     "body": response.text[:500]},
        )
