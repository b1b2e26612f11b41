"""
StatusEngine — derives a module's lifecycle status.

Precedence, first match wins:
  1. publish in progress        -> unchanged
  2. not deployed, ended_on set -> ended
  3. deployed anywhere          -> live
  4. any value ended            -> ended
  5. any value published        -> live
  6. no values, a required combination missing, or any value incomplete -> draft
  7. otherwise                  -> ready (complete for sku / selector-config)

Campaigns have no values of their own; rules 4-6 are replaced by a completeness
check over the sub-modules they reference.
"""

import logging
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from .environments import EnvironmentSet
from .kinds import ModuleKind, get_kind
from .models import (
    DimensionKey, Module, ModuleStatus, ModuleValue, ValueStatus,
    is_publish_in_progress,
)
from .repository import ModuleRepository

logger = logging.getLogger(__name__)


class StatusContext(BaseModel):
    """Everything outside the module itself that the derivation needs."""
    required_keys: Set[DimensionKey] = Field(default_factory=set)
    referenced_statuses: Dict[str, Optional[str]] = Field(default_factory=dict)  # None = missing
    known_countries: List[str] = Field(default_factory=list)


class StatusDecision(BaseModel):
    status: str
    rule: int
    value_updates: Dict[str, ValueStatus] = Field(default_factory=dict)
    missing_keys: List[DimensionKey] = Field(default_factory=list)


def derive_status(
    module: Module,
    values: List[ModuleValue],
    kind: ModuleKind,
    context: Optional[StatusContext] = None,
) -> StatusDecision:
    """Pure status derivation. Does not mutate its inputs."""
    context = context or StatusContext()

    if is_publish_in_progress(module.status):
        return StatusDecision(status=module.status, rule=1)
    if module.deployed_to.is_empty() and module.ended_on:
        return StatusDecision(status=ModuleStatus.ENDED.value, rule=2)
    if not module.deployed_to.is_empty():
        return StatusDecision(status=ModuleStatus.LIVE.value, rule=3)

    if kind.is_composite:
        return _campaign_status(module, context)

    value_updates: Dict[str, ValueStatus] = {}
    if kind.references_skus:
        for v in values:
            missing_sku = not v.reference_id or context.referenced_statuses.get(v.reference_id) is None
            if missing_sku and v.status == ValueStatus.SAVED:
                value_updates[v.value_id] = ValueStatus.INCOMPLETE
    statuses = {value_updates.get(v.value_id, v.status) for v in values}

    if ValueStatus.ENDED in statuses:
        return StatusDecision(status=ModuleStatus.ENDED.value, rule=4, value_updates=value_updates)
    if ValueStatus.PUBLISHED in statuses:
        return StatusDecision(status=ModuleStatus.LIVE.value, rule=5, value_updates=value_updates)

    filled = {v.dimension_key for v in values if v.has_value()}
    missing = sorted(context.required_keys - filled, key=lambda k: tuple(p or "" for p in k))
    draft = (
        not values
        or bool(missing)
        or ValueStatus.INCOMPLETE in statuses
        or (kind.references_skus and any(
            context.referenced_statuses.get(v.reference_id) == ModuleStatus.DRAFT.value
            for v in values if v.reference_id
        ))
        or (kind.requires_countries
            and not set(module.countries) & set(context.known_countries))
    )
    if draft:
        return StatusDecision(
            status=ModuleStatus.DRAFT.value, rule=6,
            value_updates=value_updates, missing_keys=missing,
        )
    return StatusDecision(status=kind.ready_status.value, rule=7, value_updates=value_updates)


def _campaign_status(module: Module, context: StatusContext) -> StatusDecision:
    refs = module.references

    def usable(module_id: Optional[str]) -> bool:
        status = context.referenced_statuses.get(module_id) if module_id else None
        return status is not None and status != ModuleStatus.DRAFT.value

    complete = (
        bool(module.name and module.name.strip())
        and module.start_date is not None
        and module.end_date is not None
        and usable(refs.app_copy_id)
        and all(usable(ref) for ref in refs.referenced_ids() if ref != refs.app_copy_id)
    )
    if complete:
        return StatusDecision(status=ModuleStatus.READY.value, rule=7)
    return StatusDecision(status=ModuleStatus.DRAFT.value, rule=6)


class StatusEngine:
    """Gathers derivation context from the repository and persists the outcome."""

    def __init__(self, repository: ModuleRepository):
        self._repo = repository

    async def build_context(self, module: Module, values: List[ModuleValue]) -> StatusContext:
        kind = get_kind(module.kind)
        requirements = await self._repo.get_requirements(module.store_id, module.product_id)
        referenced: Dict[str, Optional[str]] = {}
        if kind.is_composite:
            ref_ids = module.references.referenced_ids()
        elif kind.references_skus:
            ref_ids = [v.reference_id for v in values if v.reference_id]
        else:
            ref_ids = []
        for ref_id in dict.fromkeys(ref_ids):
            ref = await self._repo.get_module(ref_id)
            referenced[ref_id] = ref.status if ref else None
        return StatusContext(
            required_keys=kind.required_keys(requirements),
            referenced_statuses=referenced,
            known_countries=requirements.countries() if requirements else [],
        )

    async def evaluate(self, module: Module, values: Optional[List[ModuleValue]] = None) -> StatusDecision:
        """Derive without persisting."""
        kind = get_kind(module.kind)
        if values is None:
            values = await self._repo.list_values(module.module_id) if kind.has_values else []
        context = await self.build_context(module, values)
        return derive_status(module, values, kind, context)

    async def check_completeness(self, module: Module, values: Optional[List[ModuleValue]] = None) -> StatusDecision:
        """
        Status the content alone supports, with deployment state ignored.
        Published and ended values count as saved, so a live module whose
        content was blanked since its last publish derives to draft here.
        """
        kind = get_kind(module.kind)
        if values is None:
            values = await self._repo.list_values(module.module_id) if kind.has_values else []
        content_only = module.model_copy(update={
            "deployed_to": EnvironmentSet(), "ended_on": None, "status": ModuleStatus.DRAFT.value,
        })
        pending = [
            v.model_copy(update={"status": ValueStatus.SAVED})
            if v.status in (ValueStatus.PUBLISHED, ValueStatus.ENDED) else v
            for v in values
        ]
        return derive_status(content_only, pending, kind, await self.build_context(module, values))

    async def refresh(self, module: Module, values: Optional[List[ModuleValue]] = None) -> StatusDecision:
        """Recompute module status, apply value side effects and persist both."""
        kind = get_kind(module.kind)
        if values is None:
            values = await self._repo.list_values(module.module_id) if kind.has_values else []
        decision = derive_status(module, values, kind, await self.build_context(module, values))

        if decision.value_updates:
            changed = []
            for v in values:
                new_status = decision.value_updates.get(v.value_id)
                if new_status is not None and new_status != v.status:
                    v.status = new_status
                    changed.append(v)
            await self._repo.save_values(changed)

        if module.status != decision.status:
            logger.info(
                f"{module.kind.value} {module.module_id}: {module.status} -> {decision.status} (rule {decision.rule})"
            )
            module.status = decision.status
        await self._repo.save_module(module)
        return decision


async def refresh_many(engine: StatusEngine, repo: ModuleRepository, module_ids: List[str]) -> None:
    """Recompute a batch of modules by id, skipping ids that no longer exist."""
    for module_id in module_ids:
        module = await repo.get_module(module_id)
        if module:
            await engine.refresh(module)

