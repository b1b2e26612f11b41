"""
EdgeCache — image cache purge (imgix) and CDN path invalidation.
"""

import logging
import time
from typing import Optional

import httpx

from .base import HttpServiceClient

logger = logging.getLogger(__name__)


class EdgeCache:
    """purge(asset_url) / invalidate(path_prefix) contract."""

    async def purge(self, asset_url: str) -> bool:
        raise NotImplementedError

    async def invalidate(self, path_prefix: str) -> bool:
        raise NotImplementedError


class HttpEdgeCache(HttpServiceClient, EdgeCache):

    service_name = "Edge cache"

    def __init__(
        self,
        purge_api_url: str,
        purge_api_key: Optional[str],
        cdn_api_url: str,
        distribution_id: str,
        cdn_api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self._purge_api_url = purge_api_url
        self._purge_api_key = purge_api_key
        self._cdn_api_url = cdn_api_url.rstrip("/")
        self._distribution_id = distribution_id
        self._cdn_api_key = cdn_api_key

    async def purge(self, asset_url: str) -> bool:
        """Purge one image URL from the image cache."""
        headers = {"Accept": "*/*", "Content-Type": "application/vnd.api+json"}
        if self._purge_api_key:
            headers["Authorization"] = f"Bearer {self._purge_api_key}"
        await self._request(
            "POST", self._purge_api_url, headers=headers,
            json={"data": {"attributes": {"url": asset_url}, "type": "purges"}},
        )
        logger.info(f"Purged image cache for {asset_url}")
        return True

    async def invalidate(self, path_prefix: str) -> bool:
        """Create a CDN invalidation batch for one path pattern."""
        headers = {"Accept": "application/json"}
        if self._cdn_api_key:
            headers["Authorization"] = f"Bearer {self._cdn_api_key}"
        await self._request(
            "POST", f"{self._cdn_api_url}/distributions/{self._distribution_id}/invalidations",
            headers=headers,
            json={"callerReference": str(int(time.time() * 1000)), "paths": [path_prefix]},
        )
        logger.info(f"Invalidated CDN path {path_prefix}")
        return True
