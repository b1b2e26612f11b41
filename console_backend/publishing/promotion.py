"""
PromotionWorkflow — links an editable staged module (dev) to its promoted
counterpart in a target environment (qa / prod).

promote()  syncs a staging mirror (stg-<target>) with the staged content and
           either creates the promoted module or flags it with has_changes.
pull()     accepts (copies mirror content into the promoted module) or discards
           pending changes; both clear has_changes.
diff()     per-dimension value + status comparison, ignoring ids and timestamps.
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .exceptions import Conflict, NotFound
from .kinds import get_kind
from .locks import ModuleLockRegistry
from .models import Module, ModuleStatus, ModuleValue, ValueStatus
from .repository import ModuleRepository
from .status_engine import StatusEngine

logger = logging.getLogger(__name__)

PRODUCTION_ENV = "prod"


# ══════════════════════════════════════════════════════════════════════════════
# Content comparison
# ══════════════════════════════════════════════════════════════════════════════

def promoted_value_status(status: ValueStatus) -> ValueStatus:
    """Status a value takes when copied into a promoted module."""
    if status in (ValueStatus.PUBLISHED, ValueStatus.ENDED, ValueStatus.SAVED):
        return ValueStatus.SAVED
    return ValueStatus.INCOMPLETE


def _key_str(value: ModuleValue) -> str:
    return "|".join(part or "" for part in value.dimension_key)


def content_fingerprint(module: Module, values: List[ModuleValue]) -> Dict[str, Any]:
    """Comparable content of a module: name plus value and normalised status per dimension key."""
    return {
        "name": module.name,
        "values": {
            _key_str(v): {
                "value": v.value,
                "reference_id": v.reference_id,
                "status": promoted_value_status(v.status).value,
            }
            for v in values
        },
    }


def compute_checksum(content: Dict[str, Any]) -> str:
    """Stable checksum for a content dict."""
    canonical = json.dumps(content, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


class PromotionDiff(BaseModel):
    has_changes: bool = False
    name_changed: bool = False
    added_keys: List[str] = Field(default_factory=list)
    removed_keys: List[str] = Field(default_factory=list)
    changed_keys: List[str] = Field(default_factory=list)
    staged_checksum: str = ""
    promoted_checksum: str = ""


def diff_content(
    staged: Module, staged_values: List[ModuleValue],
    promoted: Module, promoted_values: List[ModuleValue],
) -> PromotionDiff:
    new = content_fingerprint(staged, staged_values)
    old = content_fingerprint(promoted, promoted_values)
    added = [k for k in new["values"] if k not in old["values"]]
    removed = [k for k in old["values"] if k not in new["values"]]
    changed = [k for k in old["values"] if k in new["values"] and old["values"][k] != new["values"][k]]
    name_changed = new["name"] != old["name"]
    return PromotionDiff(
        has_changes=bool(added or removed or changed or name_changed),
        name_changed=name_changed,
        added_keys=sorted(added),
        removed_keys=sorted(removed),
        changed_keys=sorted(changed),
        staged_checksum=compute_checksum(new),
        promoted_checksum=compute_checksum(old),
    )


class PromotionResult(BaseModel):
    promoted: Module
    mirror: Module
    created: bool = False
    has_changes: bool = False
    message: str = ""


# ══════════════════════════════════════════════════════════════════════════════
# Workflow
# ══════════════════════════════════════════════════════════════════════════════

class PromotionWorkflow:

    def __init__(
        self,
        repository: ModuleRepository,
        locks: ModuleLockRegistry,
        promotion_targets: List[str],
        staging_prefix: str = "stg-",
        status_engine: Optional[StatusEngine] = None,
    ):
        self._repo = repository
        self._locks = locks
        self._targets = [t.lower() for t in promotion_targets]
        self._staging_prefix = staging_prefix
        self._status = status_engine or StatusEngine(repository)

    def mirror_env(self, target_env: str) -> str:
        return f"{self._staging_prefix}{target_env}"

    # ── Promote ───────────────────────────────────────────────────

    async def promote(self, staged_id: str, target_env: str = PRODUCTION_ENV) -> PromotionResult:
        """Promote a staged module to target_env."""
        target_env = (target_env or "").strip().lower()
        if target_env not in self._targets:
            raise NotFound(f"Unknown promotion target {target_env!r}", context={"targets": self._targets})

        staged = await self._require(staged_id)
        if staged.promotion_id or staged.staged_id:
            raise Conflict(
                f"Module {staged_id} is a promoted copy and cannot be promoted",
                context={"module_id": staged_id},
            )
        if get_kind(staged.kind).is_composite:
            raise Conflict(f"{staged.kind.value} modules are not promotable", context={"module_id": staged_id})

        scope = ModuleLockRegistry.scope_key(*staged.scope)
        async with self._locks.hold(scope), self._locks.hold(staged_id):
            staged = await self._require(staged_id)
            staged_values = await self._repo.list_values(staged_id)
            if not staged_values:
                raise NotFound(f"Values of module {staged_id} not found", context={"module_id": staged_id})

            if target_env == PRODUCTION_ENV:
                staged.promoted_at = datetime.utcnow()
                staged.need_to_promote = False
            await self._repo.save_module(staged)

            mirror = await self._sync_mirror(staged, staged_values, target_env)

            promoted = await self._repo.find_promoted(staged_id, target_env)
            if promoted is None:
                promoted = await self._create_promoted(staged, staged_values, target_env)
                logger.info(f"Promoted {staged.kind.value} {staged_id} to {target_env} as {promoted.module_id}")
                return PromotionResult(
                    promoted=promoted, mirror=mirror, created=True,
                    message=f'"{promoted.name}" {staged.kind.value} module promoted to {target_env}',
                )

            async with self._locks.hold(promoted.module_id):
                promoted = await self._require(promoted.module_id)
                diff = diff_content(staged, staged_values, promoted, await self._repo.list_values(promoted.module_id))
                message = f'"{promoted.name}" {staged.kind.value} module promoted without changes'
                if promoted.has_changes != diff.has_changes:
                    promoted.has_changes = diff.has_changes
                    await self._repo.save_module(promoted)
                if diff.has_changes:
                    message = f'"{promoted.name}" {staged.kind.value} module promoted with pending changes'
                    logger.info(
                        f"Promoted {promoted.module_id} has pending changes: "
                        f"+{len(diff.added_keys)} -{len(diff.removed_keys)} ~{len(diff.changed_keys)}"
                    )
            return PromotionResult(promoted=promoted, mirror=mirror, has_changes=diff.has_changes, message=message)

    async def _sync_mirror(self, staged: Module, staged_values: List[ModuleValue], target_env: str) -> Module:
        mirror_env = self.mirror_env(target_env)
        mirror = await self._repo.find_mirror(staged.module_id, mirror_env)
        if mirror is None:
            mirror = self._counterpart(staged, mirror_env)
            mirror.staged_id = staged.module_id
            await self._repo.create_module(mirror)
        async with self._locks.hold(mirror.module_id):
            mirror = await self._require(mirror.module_id)
            mirror.name = staged.name
            mirror.platform = staged.platform
            mirror.countries = list(staged.countries)
            values = await self._upsert_values(mirror, staged_values, normalize=False)
            await self._status.refresh(mirror, values)
        return mirror

    async def _create_promoted(self, staged: Module, staged_values: List[ModuleValue], target_env: str) -> Module:
        promoted = self._counterpart(staged, target_env)
        promoted.promotion_id = staged.module_id
        await self._repo.create_module(promoted)
        async with self._locks.hold(promoted.module_id):
            if await self._repo.claim_default(promoted.module_id):
                promoted.is_default = True
            values = await self._upsert_values(promoted, staged_values, normalize=True)
            await self._status.refresh(promoted, values)
        return promoted

    def _counterpart(self, staged: Module, env: str) -> Module:
        return Module(
            kind=staged.kind,
            store_id=staged.store_id,
            product_id=staged.product_id,
            env=env,
            name=staged.name,
            platform=staged.platform,
            countries=list(staged.countries),
            status=ModuleStatus.DRAFT.value,
            has_changes=False,
            need_to_promote=False,
            created_by=staged.created_by,
        )

    # ── Pull ──────────────────────────────────────────────────────

    async def pull(self, promoted_id: str, accept_changes: bool) -> Module:
        """Accept or discard pending staged changes on a promoted module."""
        promoted = await self._require(promoted_id)
        if not promoted.promotion_id:
            raise Conflict(f"Module {promoted_id} is not a promoted module", context={"module_id": promoted_id})

        async with self._locks.hold(promoted_id):
            promoted = await self._require(promoted_id)
            mirror = await self._repo.find_mirror(promoted.promotion_id, self.mirror_env(promoted.env))
            if mirror is None:
                raise NotFound(
                    f"Staged counterpart of module {promoted_id} not found",
                    context={"module_id": promoted_id, "staged_id": promoted.promotion_id},
                )

            if accept_changes:
                mirror_values = await self._repo.list_values(mirror.module_id)
                promoted.name = mirror.name
                promoted.countries = list(mirror.countries)
                values = await self._upsert_values(promoted, mirror_values, normalize=True)
                promoted.has_changes = False
                await self._status.refresh(promoted, values)
                logger.info(f"Accepted staged changes into {promoted_id}")
            else:
                promoted.has_changes = False
                await self._repo.save_module(promoted)
                logger.info(f"Discarded staged changes for {promoted_id}")
        return promoted

    # ── Diff ──────────────────────────────────────────────────────

    async def diff(self, promoted_id: str) -> PromotionDiff:
        """Compare a promoted module against the current content of its staged source."""
        promoted = await self._require(promoted_id)
        if not promoted.promotion_id:
            raise Conflict(f"Module {promoted_id} is not a promoted module", context={"module_id": promoted_id})
        staged = await self._repo.get_module(promoted.promotion_id)
        if staged is None:
            raise NotFound(f"Staged module {promoted.promotion_id} not found", context={"module_id": promoted_id})
        return diff_content(
            staged, await self._repo.list_values(staged.module_id),
            promoted, await self._repo.list_values(promoted_id),
        )

    # ── Helpers ───────────────────────────────────────────────────

    async def _require(self, module_id: str) -> Module:
        module = await self._repo.get_module(module_id)
        if module is None:
            raise NotFound(f"Module {module_id} not found", context={"module_id": module_id})
        return module

    async def _upsert_values(
        self, target: Module, source_values: List[ModuleValue], normalize: bool,
    ) -> List[ModuleValue]:
        """Copy source values onto target per dimension key; returns target's full value list."""
        existing = {v.dimension_key: v for v in await self._repo.list_values(target.module_id)}
        changed = []
        for src in source_values:
            status = promoted_value_status(src.status) if normalize else src.status
            row = existing.get(src.dimension_key)
            if row is None:
                row = ModuleValue(
                    module_id=target.module_id, field=src.field,
                    country=src.country, language=src.language,
                )
                existing[src.dimension_key] = row
            row.value = src.value
            row.reference_id = src.reference_id
            row.status = status
            row.updated_at = datetime.utcnow()
            changed.append(row)
        await self._repo.save_values(changed)
        return list(existing.values())
