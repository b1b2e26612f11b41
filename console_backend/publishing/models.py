"""
Publishing engine models — modules, module values, scope requirements,
publish history snapshots and publish job records.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .environments import EnvironmentSet


# ══════════════════════════════════════════════════════════════════════════════
# Status values (persisted strings are read by other systems)
# ══════════════════════════════════════════════════════════════════════════════

class ModuleStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    COMPLETE = "complete"
    LIVE = "live"
    ENDED = "ended"
    PUBLISH_PROGRESS = "publish_progress"


class ValueStatus(str, Enum):
    INCOMPLETE = "incomplete"
    SAVED = "saved"
    PUBLISHED = "published"
    ENDED = "ended"


class ModuleKindName(str, Enum):
    APP_COPY = "app-copy"
    SKU = "sku"
    SELECTOR_CONFIG = "selector-config"
    STORE_COPY = "store-copy"
    IMAGE_COLLECTION = "image-collection"
    CAMPAIGN = "campaign"


class JobState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


PUBLISHABLE_STATUSES = {
    ModuleStatus.READY.value, ModuleStatus.COMPLETE.value,
    ModuleStatus.LIVE.value, ModuleStatus.ENDED.value,
}


def publish_progress_status(env: str) -> str:
    return f"{ModuleStatus.PUBLISH_PROGRESS.value}-{env}"


def is_publish_in_progress(status: Optional[str]) -> bool:
    return bool(status) and status.startswith(ModuleStatus.PUBLISH_PROGRESS.value)


def publish_progress_env(status: Optional[str]) -> Optional[str]:
    if not is_publish_in_progress(status):
        return None
    return status[len(ModuleStatus.PUBLISH_PROGRESS.value) + 1:] or None


def _now() -> datetime:
    return datetime.utcnow()


# ══════════════════════════════════════════════════════════════════════════════
# Modules and values
# ══════════════════════════════════════════════════════════════════════════════

DimensionKey = Tuple[str, Optional[str], Optional[str]]


class CampaignReferences(BaseModel):
    """Sub-modules a campaign is composed of."""
    app_copy_id: Optional[str] = None
    sku_id: Optional[str] = None  # winback sku
    selector_config_id: Optional[str] = None
    store_copy_id: Optional[str] = None
    image_collection_ids: List[str] = Field(default_factory=list)

    def referenced_ids(self) -> List[str]:
        ids = [self.app_copy_id, self.sku_id, self.selector_config_id, self.store_copy_id]
        return [i for i in ids if i] + list(self.image_collection_ids)


class Module(BaseModel):
    """One configurable content unit scoped to a store/product."""
    module_id: str = Field(default_factory=lambda: f"mod-{uuid.uuid4().hex[:12]}")
    kind: ModuleKindName
    store_id: str
    product_id: str
    env: str = "dev"  # console workspace this row belongs to
    name: str = ""
    platform: str = ""
    status: str = ModuleStatus.DRAFT.value
    is_default: bool = False
    deployed_to: EnvironmentSet = Field(default_factory=EnvironmentSet)
    ended_on: Optional[str] = None
    promotion_id: Optional[str] = None  # promoted module -> staged source
    staged_id: Optional[str] = None  # staging mirror -> staged source
    has_changes: bool = False
    need_to_promote: bool = False
    promoted_at: Optional[datetime] = None

    # image collections
    countries: List[str] = Field(default_factory=list)

    # campaigns
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    references: CampaignReferences = Field(default_factory=CampaignReferences)

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    created_by: str = ""

    @property
    def scope(self) -> Tuple[str, str, str]:
        return (self.kind.value, self.store_id, self.product_id)

    def is_live_in(self, env: str) -> bool:
        return self.status == ModuleStatus.LIVE.value and self.deployed_to.contains(env)

    def touch(self) -> None:
        self.updated_at = _now()


class ModuleValue(BaseModel):
    """A child value row identified by its dimension key."""
    value_id: str = Field(default_factory=lambda: f"val-{uuid.uuid4().hex[:12]}")
    module_id: str = ""
    field: str = ""
    country: Optional[str] = None
    language: Optional[str] = None
    value: Any = None
    reference_id: Optional[str] = None
    status: ValueStatus = ValueStatus.INCOMPLETE
    updated_at: datetime = Field(default_factory=_now)

    @property
    def dimension_key(self) -> DimensionKey:
        return (self.field, self.country, self.language)

    def has_value(self) -> bool:
        if self.value is None:
            return False
        if isinstance(self.value, str):
            return bool(self.value.strip())
        return True


# ══════════════════════════════════════════════════════════════════════════════
# Scope requirements
# ══════════════════════════════════════════════════════════════════════════════

class Region(BaseModel):
    country: str
    language: str


class ScopeRequirements(BaseModel):
    """Required dimension combinations for a store/product."""
    store_id: str
    product_id: str
    regions: List[Region] = Field(default_factory=list)
    required_fields: Dict[str, List[str]] = Field(default_factory=dict)  # kind -> fields

    def countries(self) -> List[str]:
        seen: List[str] = []
        for r in self.regions:
            if r.country not in seen:
                seen.append(r.country)
        return seen

    def languages(self) -> List[str]:
        seen: List[str] = []
        for r in self.regions:
            if r.language not in seen:
                seen.append(r.language)
        return seen

    def fields_for(self, kind: ModuleKindName) -> List[str]:
        return list(self.required_fields.get(kind.value, []))


# ══════════════════════════════════════════════════════════════════════════════
# History and jobs
# ══════════════════════════════════════════════════════════════════════════════

class PublishHistoryEntry(BaseModel):
    """Write-once snapshot of published content."""
    entry_id: str = Field(default_factory=lambda: f"hist-{uuid.uuid4().hex[:12]}")
    module_id: str
    kind: ModuleKindName
    store_id: str
    product_id: str
    env: str
    name: str = ""
    snapshot: Dict[str, Any] = Field(default_factory=dict)
    published_at: datetime = Field(default_factory=_now)


class PublishJob(BaseModel):
    """Persisted record of one publish call with its step-completion markers."""
    job_id: str = Field(default_factory=lambda: f"pub-{uuid.uuid4().hex[:12]}")
    module_id: str
    kind: ModuleKindName
    env: str
    state: JobState = JobState.RUNNING
    target_ids: List[str] = Field(default_factory=list)  # sub-modules first, module last
    completed_steps: List[str] = Field(default_factory=list)
    attempts: int = 0
    previous_statuses: Dict[str, str] = Field(default_factory=dict)
    error: str = ""
    created_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None
