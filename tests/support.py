"""
Scope constants, value builders and recording fakes of the external collaborators.
"""
from datetime import datetime, timedelta

from console_backend.integrations import AccessToken, AssetStore, ConfigDeliveryService, EdgeCache
from console_backend.publishing.exceptions import ExternalServiceFailure
from console_backend.publishing.models import ModuleKindName, ModuleValue, Region, ValueStatus

STORE = "roku"
PRODUCT = "svod"
ENVIRONMENT_CODES = ["dev", "stg-qa", "qa", "stg-prod", "stg", "prod"]

# 2 countries x 3 languages
REGIONS = [Region(country=c, language=lang) for c in ("us", "ca") for lang in ("en", "es", "fr")]
REQUIRED_FIELDS = {
    "app-copy": ["headline"],
    "sku": ["price"],
    "selector-config": ["slot1"],
    "store-copy": ["title"],
    "image-collection": ["hero"],
}


def complete_values(kind, status=ValueStatus.SAVED, sku_id=None):
    """One filled value per required dimension key of kind."""
    kind = ModuleKindName(kind)
    if kind == ModuleKindName.APP_COPY:
        return [ModuleValue(field="headline", country=r.country, language=r.language,
                            value=f"Watch now {r.country}-{r.language}", status=status) for r in REGIONS]
    if kind == ModuleKindName.SKU:
        return [ModuleValue(field="price", country=r.country, language=r.language,
                            value="9.99", status=status) for r in REGIONS]
    if kind == ModuleKindName.SELECTOR_CONFIG:
        return [ModuleValue(field="slot1", country=c, value="monthly", reference_id=sku_id, status=status)
                for c in ("us", "ca")]
    if kind == ModuleKindName.STORE_COPY:
        return [ModuleValue(field="title", language=lang, value=f"Title {lang}", status=status)
                for lang in ("en", "es", "fr")]
    if kind == ModuleKindName.IMAGE_COLLECTION:
        return [ModuleValue(field="hero", value="png", reference_id="uploads/hero-source.png", status=status)]
    return []


# ── Fake collaborators ───────────────────────────────────────────

class _FailureInjector:
    def __init__(self):
        self.calls = {}
        self._failures = {}

    def fail(self, method, times=1, exc=None):
        """Make the next `times` calls of method raise."""
        self._failures[method] = [times, exc]

    def _record(self, method):
        self.calls[method] = self.calls.get(method, 0) + 1
        pending = self._failures.get(method)
        if pending and pending[0] > 0:
            pending[0] -= 1
            raise pending[1] or ExternalServiceFailure(f"{method} unavailable")


class FakeConfigDelivery(_FailureInjector, ConfigDeliveryService):
    def __init__(self):
        super().__init__()
        self.deployed = []
        self.records = {}

    async def authenticate(self):
        self._record("authenticate")
        return AccessToken(token="test-token", expires_at=datetime.utcnow() + timedelta(hours=1))

    async def check_connection(self, token):
        self._record("check_connection")
        return True

    async def deploy(self, env, store, product, module_kind, payload, token, platform=None, region=None):
        self._record("deploy")
        self.deployed.append({"env": env, "store": store, "product": product, "kind": module_kind,
                              "platform": platform, "region": region, "payload": payload})
        self.records[(env, store, product, module_kind, platform, region)] = payload
        return True

    async def fetch_record(self, env, store, product, module_kind, token, platform=None, region=None):
        self._record("fetch_record")
        return self.records.get((env, store, product, module_kind, platform, region))


class FakeAssetStore(_FailureInjector, AssetStore):
    def __init__(self):
        super().__init__()
        self.copied = []

    async def copy(self, source_key, dest_key):
        self._record("copy")
        self.copied.append((source_key, dest_key))
        return True

    async def delete(self, key):
        self._record("delete")
        return True


class FakeEdgeCache(_FailureInjector, EdgeCache):
    def __init__(self):
        super().__init__()
        self.purged = []
        self.invalidated = []

    async def purge(self, asset_url):
        self._record("purge")
        self.purged.append(asset_url)
        return True

    async def invalidate(self, path_prefix):
        self._record("invalidate")
        self.invalidated.append(path_prefix)
        return True
