"""External collaborators — asset store, edge cache, config delivery."""
from .asset_store import AssetStore, HttpAssetStore
from .config_delivery import AccessToken, ConfigDeliveryService, HttpConfigDeliveryService
from .edge_cache import EdgeCache, HttpEdgeCache

__all__ = [
    "AssetStore", "HttpAssetStore",
    "EdgeCache", "HttpEdgeCache",
    "AccessToken", "ConfigDeliveryService", "HttpConfigDeliveryService",
]
