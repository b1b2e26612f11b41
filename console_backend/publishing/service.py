"""
ModuleService — administrative operations around the publishing engine.

Create (with an atomic default claim and default-value seeding), edit values,
metadata and campaign references, duplicate and delete. Every mutation ends
with a status recompute of the module and of the modules whose status depends
on it (referencing campaigns, selector configs pointing at a sku).
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from .environments import normalize_env
from .exceptions import Conflict, NotFound, ValidationFailure
from .kinds import get_kind
from .locks import ModuleLockRegistry
from .models import (
    CampaignReferences, Module, ModuleKindName, ModuleValue, ScopeRequirements, ValueStatus,
    is_publish_in_progress,
)
from .promotion import promoted_value_status
from .repository import ModuleRepository
from .status_engine import StatusEngine, refresh_many

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = {"name", "platform", "countries", "start_date", "end_date"}


def _saved_status(value: ModuleValue) -> ValueStatus:
    return ValueStatus.SAVED if value.has_value() else ValueStatus.INCOMPLETE


class ModuleService:

    def __init__(
        self,
        repository: ModuleRepository,
        locks: ModuleLockRegistry,
        status_engine: Optional[StatusEngine] = None,
        staged_env: str = "dev",
    ):
        self._repo = repository
        self._locks = locks
        self._status = status_engine or StatusEngine(repository)
        self._staged_env = staged_env

    # ── Reads ─────────────────────────────────────────────────────

    async def get(self, module_id: str) -> Tuple[Module, List[ModuleValue]]:
        module = await self._require(module_id)
        return module, await self._repo.list_values(module_id)

    async def list_modules(self, **filters: Any) -> List[Module]:
        for name in ("env", "deployed_in"):
            if filters.get(name):
                try:
                    filters[name] = normalize_env(filters[name])
                except ValueError as e:
                    raise NotFound(str(e), context={name: filters[name]}) from e
        return await self._repo.list_modules(**filters)

    async def get_requirements(self, store_id: str, product_id: str) -> ScopeRequirements:
        requirements = await self._repo.get_requirements(store_id, product_id)
        if requirements is None:
            raise NotFound(
                f"No requirements configured for {store_id}/{product_id}",
                context={"store_id": store_id, "product_id": product_id},
            )
        return requirements

    async def set_requirements(self, requirements: ScopeRequirements) -> ScopeRequirements:
        """Replace the requirements of a store/product and recompute every module in it."""
        await self._repo.save_requirements(requirements)
        modules = await self._repo.list_modules(store_id=requirements.store_id, product_id=requirements.product_id)
        # Leaf kinds first so campaigns see the new sub-module statuses.
        modules.sort(key=lambda m: get_kind(m.kind).is_composite)
        for m in modules:
            async with self._locks.hold(m.module_id):
                await self._status.refresh(await self._require(m.module_id))
        logger.info(f"Updated requirements for {requirements.store_id}/{requirements.product_id}, "
                    f"recomputed {len(modules)} module(s)")
        return requirements

    # ── Create / duplicate ────────────────────────────────────────

    async def create(
        self,
        kind: ModuleKindName,
        store_id: str,
        product_id: str,
        name: str,
        platform: str = "",
        env: Optional[str] = None,
        created_by: str = "",
        countries: Optional[List[str]] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        references: Optional[CampaignReferences] = None,
        values: Optional[List[ModuleValue]] = None,
    ) -> Module:
        """Create a module; the first module of its scope becomes the default."""
        kind_info = get_kind(kind)
        module = Module(
            kind=kind, store_id=store_id, product_id=product_id,
            env=(env or self._staged_env).lower(), name=name, platform=platform,
            created_by=created_by, countries=list(countries or []),
            start_date=start_date, end_date=end_date,
        )
        if references is not None:
            if not kind_info.is_composite:
                raise Conflict(f"{kind.value} modules do not reference sub-modules")
            await self._check_references(module, references)
            module.references = references

        await self._repo.create_module(module)
        async with self._locks.hold(module.module_id):
            module.is_default = await self._repo.claim_default(module.module_id)
            rows: List[ModuleValue] = []
            if kind_info.has_values:
                rows = self._build_rows(module, [], values or [])
                if not module.is_default:
                    rows.extend(await self._seed_from_default(module, rows))
                await self._repo.save_values(rows)
            await self._status.refresh(module, rows if kind_info.has_values else None)
        logger.info(f"Created {kind.value} {module.module_id} '{name}' "
                    f"(default={module.is_default}, status={module.status})")
        return module

    async def duplicate(self, module_id: str, name: Optional[str] = None, created_by: str = "") -> Module:
        """Copy a module's content into a new DRAFT module of the same scope."""
        source, source_values = await self.get(module_id)
        copy = Module(
            kind=source.kind, store_id=source.store_id, product_id=source.product_id,
            env=source.env, name=name or f"{source.name} (copy)", platform=source.platform,
            countries=list(source.countries), start_date=source.start_date, end_date=source.end_date,
            references=source.references.model_copy(deep=True),
            created_by=created_by or source.created_by,
        )
        await self._repo.create_module(copy)
        rows = [
            ModuleValue(
                module_id=copy.module_id, field=v.field, country=v.country, language=v.language,
                value=v.value, reference_id=v.reference_id, status=promoted_value_status(v.status),
            )
            for v in source_values
        ]
        async with self._locks.hold(copy.module_id):
            await self._repo.save_values(rows)
            await self._status.refresh(copy, rows if get_kind(copy.kind).has_values else None)
        logger.info(f"Duplicated {source.module_id} as {copy.module_id}")
        return copy

    # ── Edit ──────────────────────────────────────────────────────

    async def update_values(self, module_id: str, values: List[ModuleValue]) -> Tuple[Module, List[ModuleValue]]:
        """Upsert values per dimension key and recompute status."""
        module = await self._require(module_id)
        kind = get_kind(module.kind)
        if not kind.has_values:
            raise Conflict(f"{module.kind.value} modules have no values", context={"module_id": module_id})

        async with self._locks.hold(module_id):
            module = await self._require_editable(module_id)
            existing = await self._repo.list_values(module_id)
            changed = self._build_rows(module, existing, values)
            await self._repo.save_values(changed)
            if not module.promotion_id:
                module.need_to_promote = True
            rows = await self._repo.list_values(module_id)
            await self._status.refresh(module, rows)

        if module.is_default:
            await self._propagate_default(module, changed)
        await self._refresh_dependents(module)
        return module, rows

    async def update_module(self, module_id: str, changes: Dict[str, Any]) -> Module:
        """Update editable metadata (name, platform, countries, campaign dates)."""
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationFailure(f"Fields not editable: {sorted(unknown)}", context={"fields": sorted(unknown)})
        async with self._locks.hold(module_id):
            module = await self._require_editable(module_id)
            for field, value in changes.items():
                setattr(module, field, list(value) if field == "countries" else value)
            await self._status.refresh(module)
        await self._refresh_dependents(module)
        return module

    async def set_references(self, campaign_id: str, references: CampaignReferences) -> Module:
        async with self._locks.hold(campaign_id):
            campaign = await self._require_editable(campaign_id)
            if not get_kind(campaign.kind).is_composite:
                raise Conflict(f"{campaign.kind.value} modules do not reference sub-modules",
                               context={"module_id": campaign_id})
            await self._check_references(campaign, references)
            campaign.references = references
            await self._status.refresh(campaign)
        return campaign

    # ── Delete ────────────────────────────────────────────────────

    async def delete(self, module_id: str) -> None:
        """Delete a module that is neither live nor being published."""
        async with self._locks.hold(module_id):
            module = await self._require(module_id)
            if is_publish_in_progress(module.status):
                raise Conflict(f"Module {module_id} is being published", context={"module_id": module_id})
            if not module.deployed_to.is_empty():
                raise Conflict(
                    f"Module {module_id} is live in {', '.join(module.deployed_to.codes())}",
                    context={"module_id": module_id, "deployed_to": module.deployed_to.codes()},
                )
            for mirror in await self._repo.list_modules(kind=module.kind, store_id=module.store_id,
                                                        product_id=module.product_id):
                if mirror.staged_id == module_id:
                    await self._repo.delete_module(mirror.module_id)
            await self._repo.delete_module(module_id)

        campaigns = await self._repo.list_referencing_campaigns(module_id, module.store_id, module.product_id)
        for candidate in campaigns:
            async with self._locks.hold(candidate.module_id):
                campaign = await self._require(candidate.module_id)
                refs = campaign.references
                refs.image_collection_ids = [i for i in refs.image_collection_ids if i != module_id]
                for attr in ("app_copy_id", "sku_id", "selector_config_id", "store_copy_id"):
                    if getattr(refs, attr) == module_id:
                        setattr(refs, attr, None)
                await self._status.refresh(campaign)
        if module.kind == ModuleKindName.SKU:
            await refresh_many(self._status, self._repo, await self._sku_dependents(module))
        logger.info(f"Deleted {module.kind.value} {module_id}; detached from {len(campaigns)} campaign(s)")

    # ── Helpers ───────────────────────────────────────────────────

    async def _require(self, module_id: str) -> Module:
        module = await self._repo.get_module(module_id)
        if module is None:
            raise NotFound(f"Module {module_id} not found", context={"module_id": module_id})
        return module

    async def _require_editable(self, module_id: str) -> Module:
        module = await self._require(module_id)
        if is_publish_in_progress(module.status):
            raise Conflict(f"Module {module_id} is being published", context={"module_id": module_id})
        if module.staged_id:
            raise Conflict(f"Module {module_id} is a read-only staging mirror", context={"module_id": module_id})
        return module

    def _build_rows(self, module: Module, existing: List[ModuleValue], incoming: List[ModuleValue]) -> List[ModuleValue]:
        """Merge incoming values into existing rows by dimension key; returns the rows written."""
        kind = get_kind(module.kind)
        by_key = {v.dimension_key: v for v in existing}
        written: Dict[Tuple, ModuleValue] = {}
        for item in incoming:
            item = kind.normalize_key(item.model_copy())
            row = by_key.get(item.dimension_key)
            if row is None:
                row = ModuleValue(module_id=module.module_id, field=item.field,
                                  country=item.country, language=item.language)
                by_key[row.dimension_key] = row
            row.value = item.value
            row.reference_id = item.reference_id
            row.status = _saved_status(row)
            row.updated_at = datetime.utcnow()
            written[row.dimension_key] = row
        return list(written.values())

    async def _default_of(self, module: Module) -> Optional[Module]:
        for m in await self._repo.list_modules(kind=module.kind, store_id=module.store_id,
                                               product_id=module.product_id, env=module.env):
            if m.is_default and m.module_id != module.module_id:
                return m
        return None

    async def _seed_from_default(self, module: Module, rows: List[ModuleValue]) -> List[ModuleValue]:
        """Values of the scope default for dimension keys the new module leaves empty."""
        default = await self._default_of(module)
        if default is None:
            return []
        present = {r.dimension_key for r in rows}
        seeded = [
            ModuleValue(
                module_id=module.module_id, field=v.field, country=v.country, language=v.language,
                value=v.value, reference_id=v.reference_id, status=_saved_status(v),
            )
            for v in await self._repo.list_values(default.module_id)
            if v.dimension_key not in present and v.has_value()
        ]
        if seeded:
            logger.info(f"Seeded {len(seeded)} value(s) of default {default.module_id} into {module.module_id}")
        return seeded

    async def _propagate_default(self, default: Module, changed: List[ModuleValue]) -> None:
        """Copy default values into same-scope siblings that have no value for that key."""
        siblings = await self._repo.list_modules(kind=default.kind, store_id=default.store_id,
                                                 product_id=default.product_id, env=default.env)
        for candidate in siblings:
            if candidate.module_id == default.module_id or not candidate.deployed_to.is_empty():
                continue
            async with self._locks.hold(candidate.module_id):
                sibling = await self._repo.get_module(candidate.module_id)
                if sibling is None or is_publish_in_progress(sibling.status) or sibling.staged_id:
                    continue
                existing = await self._repo.list_values(sibling.module_id)
                filled = {v.dimension_key for v in existing if v.has_value()}
                missing = [v for v in changed if v.has_value() and v.dimension_key not in filled]
                if not missing:
                    continue
                rows = self._build_rows(sibling, existing, missing)
                await self._repo.save_values(rows)
                await self._status.refresh(sibling)
                logger.info(f"Filled {len(rows)} default value(s) into {sibling.module_id}")

    async def _sku_dependents(self, sku: Module) -> List[str]:
        selectors = await self._repo.list_modules(
            kind=ModuleKindName.SELECTOR_CONFIG, store_id=sku.store_id, product_id=sku.product_id,
        )
        dependents = []
        for selector in selectors:
            if any(v.reference_id == sku.module_id for v in await self._repo.list_values(selector.module_id)):
                dependents.append(selector.module_id)
        return dependents

    async def _refresh_dependents(self, module: Module) -> None:
        ids: List[str] = []
        if module.kind == ModuleKindName.SKU:
            ids.extend(await self._sku_dependents(module))
        leaf_ids = [module.module_id] + ids
        for leaf_id in leaf_ids:
            for campaign in await self._repo.list_referencing_campaigns(leaf_id, module.store_id, module.product_id):
                if campaign.module_id not in ids:
                    ids.append(campaign.module_id)
        for dependent_id in ids:
            async with self._locks.hold(dependent_id):
                dependent = await self._repo.get_module(dependent_id)
                if dependent:
                    await self._status.refresh(dependent)

    async def _check_references(self, campaign: Module, references: CampaignReferences) -> None:
        for kind_name in (ModuleKindName.APP_COPY, ModuleKindName.SKU, ModuleKindName.SELECTOR_CONFIG,
                          ModuleKindName.STORE_COPY, ModuleKindName.IMAGE_COLLECTION):
            attr = get_kind(kind_name).campaign_reference
            ids = references.image_collection_ids if kind_name == ModuleKindName.IMAGE_COLLECTION else [getattr(references, attr)]
            for ref_id in ids:
                if not ref_id:
                    continue
                ref = await self._repo.get_module(ref_id)
                if ref is None or ref.store_id != campaign.store_id or ref.product_id != campaign.product_id:
                    raise NotFound(f"{kind_name.value} module {ref_id} not found",
                                   context={"module_id": campaign.module_id, "reference": ref_id})
                if ref.kind != kind_name:
                    raise Conflict(f"Module {ref_id} is a {ref.kind.value}, expected {kind_name.value}",
                                   context={"module_id": campaign.module_id, "reference": ref_id})
        references.image_collection_ids = list(dict.fromkeys(references.image_collection_ids))
