"""
Config-delivery service (Tardis) client.

Published module content is PUT per platform/region to
  {base}/api/resource/v{version}/{env}/{store}/{product}/{module}/{platform}/{region}
Access tokens come from an OAuth2 client-credentials endpoint and are reused
while more than five minutes of validity remain.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel

from console_backend.publishing.exceptions import ExternalServiceFailure

from .base import HttpServiceClient

logger = logging.getLogger(__name__)

TOKEN_REUSE_MARGIN = timedelta(minutes=5)


class AccessToken(BaseModel):
    token: str
    expires_at: datetime

    def is_reusable(self, now: datetime) -> bool:
        return self.expires_at - now > TOKEN_REUSE_MARGIN


class ConfigDeliveryService:
    """authenticate / check_connection / deploy contract."""

    async def authenticate(self) -> AccessToken:
        raise NotImplementedError

    async def check_connection(self, token: AccessToken) -> bool:
        raise NotImplementedError

    async def deploy(
        self, env: str, store: str, product: str, module_kind: str,
        payload: Dict[str, Any], token: AccessToken,
        platform: Optional[str] = None, region: Optional[str] = None,
    ) -> bool:
        raise NotImplementedError

    async def fetch_record(
        self, env: str, store: str, product: str, module_kind: str,
        token: AccessToken, platform: Optional[str] = None, region: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class HttpConfigDeliveryService(HttpServiceClient, ConfigDeliveryService):

    service_name = "Config delivery"

    def __init__(
        self,
        base_url: str,
        api_version: str,
        token_url: str,
        client_id: str,
        client_secret: str,
        check_store: str = "roku",
        check_product: str = "svod",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._check_store = check_store
        self._check_product = check_product
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._token_lock = asyncio.Lock()

    @property
    def _host(self) -> str:
        return f"{self._base_url}/api/resource/v{self._api_version}"

    def resource_url(
        self, env: str, store: str, product: str, module_kind: str,
        platform: Optional[str] = None, region: Optional[str] = None,
    ) -> str:
        """Resource URL; empty segments are left out and the region is lowercased."""
        parts = [env, store, product, module_kind, platform, region.lower() if region else None]
        return self._host + "".join(f"/{p}" for p in parts if p)

    @staticmethod
    def _auth_headers(token: AccessToken) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json;charset=UTF-8",
            "Authorization": f"Bearer {token.token}",
        }

    # ── Token Operations ──────────────────────────────────────────

    async def authenticate(self) -> AccessToken:
        """Return the cached token while it has more than five minutes left, else fetch a new one."""
        async with self._token_lock:
            now = self._clock()
            if self._token and self._token.is_reusable(now):
                return self._token

            response = await self._request(
                "POST", self._token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
            data = response.json()
            if "access_token" not in data:
                raise ExternalServiceFailure("Config delivery token response has no access_token")
            self._token = AccessToken(
                token=data["access_token"],
                expires_at=now + timedelta(seconds=int(data.get("expires_in", 3600))),
            )
            logger.info(f"Fetched config delivery token, expires at {self._token.expires_at.isoformat()}")
            return self._token

    # ── Resource Operations ───────────────────────────────────────

    async def check_connection(self, token: AccessToken) -> bool:
        """Reach the service; a 404 for the check resource still proves it is reachable."""
        url = self.resource_url("dev", self._check_store, self._check_product, "app-copy", region="us")
        await self._request("GET", url, ok_statuses=(404,), headers=self._auth_headers(token))
        logger.debug("Config delivery connection established")
        return True

    async def deploy(
        self, env: str, store: str, product: str, module_kind: str,
        payload: Dict[str, Any], token: AccessToken,
        platform: Optional[str] = None, region: Optional[str] = None,
    ) -> bool:
        url = self.resource_url(env, store, product, module_kind, platform, region)
        await self._request("PUT", url, headers=self._auth_headers(token), json=payload)
        logger.info(f"Deployed {module_kind} to {url}")
        return True

    async def fetch_record(
        self, env: str, store: str, product: str, module_kind: str,
        token: AccessToken, platform: Optional[str] = None, region: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        url = self.resource_url(env, store, product, module_kind, platform, region)
        response = await self._request("GET", url, ok_statuses=(404,), headers=self._auth_headers(token))
        if response.status_code == 404:
            return None
        return response.json()
