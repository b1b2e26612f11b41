"""
AssetStore — object storage for published images.
"""

import logging
from typing import Optional
from urllib.parse import quote

import httpx

from .base import HttpServiceClient

logger = logging.getLogger(__name__)


class AssetStore:
    """copy(source_key, dest_key) / delete(key) contract."""

    async def copy(self, source_key: str, dest_key: str) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError


class HttpAssetStore(HttpServiceClient, AssetStore):
    """Asset service client: server-side copy and delete of objects in one bucket."""

    service_name = "Asset store"

    def __init__(
        self,
        base_url: str,
        bucket: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self._base_url = base_url.rstrip("/")
        self._bucket = bucket
        self._api_key = api_key

    @property
    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def object_url(self, key: str) -> str:
        return f"{self._base_url}/buckets/{self._bucket}/objects/{quote(key.lstrip('/'), safe='/')}"

    async def copy(self, source_key: str, dest_key: str) -> bool:
        await self._request(
            "POST", f"{self._base_url}/buckets/{self._bucket}/objects/copy",
            headers=self._headers,
            json={"source": source_key.lstrip("/"), "destination": dest_key.lstrip("/")},
        )
        logger.info(f"Copied asset {source_key} -> {dest_key}")
        return True

    async def delete(self, key: str) -> bool:
        # Deleting a missing object is not an error.
        await self._request("DELETE", self.object_url(key), ok_statuses=(404,), headers=self._headers)
        logger.info(f"Deleted asset {key}")
        return True
