"""
SqlModuleRepository — ModuleRepository backed by async SQLAlchemy.
Bridges between the pydantic publishing models and the ORM rows; every
operation runs in its own session and commits before returning.
"""
import logging
from typing import Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import aliased

from console_backend.db.models import (
    ModuleModel, ModuleValueModel, PublishHistoryModel, PublishJobModel, ScopeRequirementsModel,
)
from console_backend.publishing.environments import EnvironmentSet
from console_backend.publishing.exceptions import NotFound
from console_backend.publishing.models import (
    CampaignReferences, JobState, Module, ModuleKindName, ModuleValue, PublishHistoryEntry,
    PublishJob, Region, ScopeRequirements, ValueStatus,
)
from console_backend.publishing.repository import ModuleRepository

logger = logging.getLogger(__name__)


# ── Converters ─────────────────────────────────────────────────────────────────

def _module_to_row(module: Module, known_codes: Optional[Iterable[str]] = None) -> dict:
    return {
        "id": module.module_id,
        "kind": module.kind.value,
        "store_id": module.store_id,
        "product_id": module.product_id,
        "env": module.env,
        "name": module.name,
        "platform": module.platform,
        "status": module.status,
        "is_default": module.is_default,
        "deployed_to": module.deployed_to.codes(),
        "deployed_to_codes": module.deployed_to.serialize(known_codes),
        "ended_on": module.ended_on,
        "promotion_id": module.promotion_id,
        "staged_id": module.staged_id,
        "has_changes": module.has_changes,
        "need_to_promote": module.need_to_promote,
        "promoted_at": module.promoted_at,
        "countries": list(module.countries),
        "start_date": module.start_date,
        "end_date": module.end_date,
        "references_json": module.references.model_dump(mode="json"),
        "created_at": module.created_at,
        "updated_at": module.updated_at,
        "created_by": module.created_by,
    }


def _row_to_module(row: ModuleModel, known_codes: Optional[Iterable[str]] = None) -> Module:
    if row.deployed_to is not None:
        deployed_to = EnvironmentSet(row.deployed_to)
    else:
        deployed_to = EnvironmentSet.parse(row.deployed_to_codes, known_codes)
    return Module(
        module_id=row.id,
        kind=ModuleKindName(row.kind),
        store_id=row.store_id,
        product_id=row.product_id,
        env=row.env,
        name=row.name or "",
        platform=row.platform or "",
        status=row.status,
        is_default=bool(row.is_default),
        deployed_to=deployed_to,
        ended_on=row.ended_on,
        promotion_id=row.promotion_id,
        staged_id=row.staged_id,
        has_changes=bool(row.has_changes),
        need_to_promote=bool(row.need_to_promote),
        promoted_at=row.promoted_at,
        countries=row.countries or [],
        start_date=row.start_date,
        end_date=row.end_date,
        references=CampaignReferences(**(row.references_json or {})),
        created_at=row.created_at,
        updated_at=row.updated_at,
        created_by=row.created_by or "",
    )


def _value_to_row(value: ModuleValue) -> dict:
    return {
        "id": value.value_id,
        "module_id": value.module_id,
        "field": value.field,
        "country": value.country,
        "language": value.language,
        "value": value.value,
        "reference_id": value.reference_id,
        "status": value.status.value,
        "updated_at": value.updated_at,
    }


def _row_to_value(row: ModuleValueModel) -> ModuleValue:
    return ModuleValue(
        value_id=row.id,
        module_id=row.module_id,
        field=row.field,
        country=row.country,
        language=row.language,
        value=row.value,
        reference_id=row.reference_id,
        status=ValueStatus(row.status),
        updated_at=row.updated_at,
    )


def _job_to_row(job: PublishJob) -> dict:
    return {
        "id": job.job_id,
        "module_id": job.module_id,
        "kind": job.kind.value,
        "env": job.env,
        "state": job.state.value,
        "target_ids": list(job.target_ids),
        "completed_steps": list(job.completed_steps),
        "attempts": job.attempts,
        "previous_statuses": dict(job.previous_statuses),
        "error": job.error,
        "created_at": job.created_at,
        "finished_at": job.finished_at,
    }


def _row_to_job(row: PublishJobModel) -> PublishJob:
    return PublishJob(
        job_id=row.id,
        module_id=row.module_id,
        kind=ModuleKindName(row.kind),
        env=row.env,
        state=JobState(row.state),
        target_ids=row.target_ids or [],
        completed_steps=row.completed_steps or [],
        attempts=row.attempts or 0,
        previous_statuses=row.previous_statuses or {},
        error=row.error or "",
        created_at=row.created_at,
        finished_at=row.finished_at,
    )


def _row_to_history(row: PublishHistoryModel) -> PublishHistoryEntry:
    return PublishHistoryEntry(
        entry_id=row.id,
        module_id=row.module_id,
        kind=ModuleKindName(row.kind),
        store_id=row.store_id,
        product_id=row.product_id,
        env=row.env,
        name=row.name or "",
        snapshot=row.snapshot or {},
        published_at=row.published_at,
    )


# ── Repository ─────────────────────────────────────────────────────────────────

class SqlModuleRepository(ModuleRepository):
    """Async CRUD for modules, values, requirements, history and jobs."""

    def __init__(self, session_factory: async_sessionmaker, known_codes: Optional[Iterable[str]] = None):
        self._session_factory = session_factory
        self._known_codes = list(known_codes) if known_codes else None

    # ── Modules ───────────────────────────────────────────────────

    async def get_module(self, module_id: str) -> Optional[Module]:
        async with self._session_factory() as session:
            row = await session.get(ModuleModel, module_id)
            return _row_to_module(row, self._known_codes) if row else None

    async def list_modules(
        self,
        kind: Optional[ModuleKindName] = None,
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
        env: Optional[str] = None,
        status: Optional[str] = None,
        deployed_in: Optional[str] = None,
    ) -> List[Module]:
        stmt = select(ModuleModel).order_by(ModuleModel.created_at)
        if kind:
            stmt = stmt.where(ModuleModel.kind == ModuleKindName(kind).value)
        if store_id:
            stmt = stmt.where(ModuleModel.store_id == store_id)
        if product_id:
            stmt = stmt.where(ModuleModel.product_id == product_id)
        if env:
            stmt = stmt.where(ModuleModel.env == env)
        if status:
            stmt = stmt.where(ModuleModel.status == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            modules = [_row_to_module(r, self._known_codes) for r in result.scalars().all()]
        if deployed_in:
            # deployed_to is a JSON list; containment is checked after loading.
            modules = [m for m in modules if m.deployed_to.contains(deployed_in)]
        return modules

    async def find_promoted(self, staged_id: str, env: str) -> Optional[Module]:
        return await self._find_one(ModuleModel.promotion_id == staged_id, ModuleModel.env == env)

    async def find_mirror(self, staged_id: str, env: str) -> Optional[Module]:
        return await self._find_one(ModuleModel.staged_id == staged_id, ModuleModel.env == env)

    async def _find_one(self, *criteria) -> Optional[Module]:
        async with self._session_factory() as session:
            result = await session.execute(select(ModuleModel).where(*criteria).limit(1))
            row = result.scalar_one_or_none()
            return _row_to_module(row, self._known_codes) if row else None

    async def create_module(self, module: Module) -> Module:
        async with self._session_factory() as session:
            session.add(ModuleModel(**_module_to_row(module, self._known_codes)))
            await session.commit()
        logger.info(f"Created {module.kind.value} module {module.module_id} ({module.name})")
        return module

    async def save_module(self, module: Module) -> Module:
        module.touch()
        async with self._session_factory() as session:
            row = await session.get(ModuleModel, module.module_id)
            if row is None:
                raise NotFound(f"Module {module.module_id} not found", context={"module_id": module.module_id})
            for k, v in _module_to_row(module, self._known_codes).items():
                setattr(row, k, v)
            await session.commit()
        return module

    async def delete_module(self, module_id: str) -> bool:
        async with self._session_factory() as session:
            await session.execute(delete(ModuleValueModel).where(ModuleValueModel.module_id == module_id))
            result = await session.execute(delete(ModuleModel).where(ModuleModel.id == module_id))
            await session.commit()
        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Deleted module {module_id}")
        return deleted

    async def claim_default(self, module_id: str) -> bool:
        """UPDATE ... WHERE NOT EXISTS another default; the partial unique index backs it up."""
        async with self._session_factory() as session:
            row = await session.get(ModuleModel, module_id)
            if row is None:
                return False
            other = aliased(ModuleModel)
            taken = select(other.id).where(
                other.kind == row.kind,
                other.store_id == row.store_id,
                other.product_id == row.product_id,
                other.env == row.env,
                other.is_default.is_(True),
                other.id != module_id,
            )
            stmt = (
                update(ModuleModel)
                .where(ModuleModel.id == module_id, ~taken.exists())
                .values(is_default=True)
                .execution_options(synchronize_session=False)
            )
            try:
                result = await session.execute(stmt)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Default for {row.kind}/{row.store_id}/{row.product_id}/{row.env} already claimed")
                return False
        return result.rowcount > 0

    # ── Values ────────────────────────────────────────────────────

    async def list_values(self, module_id: str) -> List[ModuleValue]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ModuleValueModel).where(ModuleValueModel.module_id == module_id)
            )
            return [_row_to_value(r) for r in result.scalars().all()]

    async def save_values(self, values: List[ModuleValue]) -> List[ModuleValue]:
        if not values:
            return values
        async with self._session_factory() as session:
            for v in values:
                await session.merge(ModuleValueModel(**_value_to_row(v)))
            await session.commit()
        return values

    async def delete_values(self, module_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ModuleValueModel).where(ModuleValueModel.module_id == module_id)
            )
            await session.commit()
        return result.rowcount

    # ── Requirements / history / jobs ─────────────────────────────

    async def get_requirements(self, store_id: str, product_id: str) -> Optional[ScopeRequirements]:
        async with self._session_factory() as session:
            row = await session.get(ScopeRequirementsModel, (store_id, product_id))
            if row is None:
                return None
            return ScopeRequirements(
                store_id=row.store_id,
                product_id=row.product_id,
                regions=[Region(**r) for r in (row.regions or [])],
                required_fields=row.required_fields or {},
            )

    async def save_requirements(self, requirements: ScopeRequirements) -> ScopeRequirements:
        async with self._session_factory() as session:
            await session.merge(ScopeRequirementsModel(
                store_id=requirements.store_id,
                product_id=requirements.product_id,
                regions=[r.model_dump() for r in requirements.regions],
                required_fields=dict(requirements.required_fields),
            ))
            await session.commit()
        return requirements

    async def append_history(self, entry: PublishHistoryEntry) -> PublishHistoryEntry:
        async with self._session_factory() as session:
            session.add(PublishHistoryModel(
                id=entry.entry_id,
                module_id=entry.module_id,
                kind=entry.kind.value,
                store_id=entry.store_id,
                product_id=entry.product_id,
                env=entry.env,
                name=entry.name,
                snapshot=entry.snapshot,
                published_at=entry.published_at,
            ))
            await session.commit()
        return entry

    async def list_history(
        self,
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
        kind: Optional[ModuleKindName] = None,
        module_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[PublishHistoryEntry]:
        stmt = select(PublishHistoryModel).order_by(PublishHistoryModel.published_at.desc())
        if store_id:
            stmt = stmt.where(PublishHistoryModel.store_id == store_id)
        if product_id:
            stmt = stmt.where(PublishHistoryModel.product_id == product_id)
        if kind:
            stmt = stmt.where(PublishHistoryModel.kind == ModuleKindName(kind).value)
        if module_id:
            stmt = stmt.where(PublishHistoryModel.module_id == module_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt.limit(limit))
            return [_row_to_history(r) for r in result.scalars().all()]

    async def save_job(self, job: PublishJob) -> PublishJob:
        async with self._session_factory() as session:
            await session.merge(PublishJobModel(**_job_to_row(job)))
            await session.commit()
        return job

    async def get_job(self, job_id: str) -> Optional[PublishJob]:
        async with self._session_factory() as session:
            row = await session.get(PublishJobModel, job_id)
            return _row_to_job(row) if row else None

    async def list_jobs(self, state: Optional[JobState] = None) -> List[PublishJob]:
        stmt = select(PublishJobModel).order_by(PublishJobModel.created_at)
        if state:
            stmt = stmt.where(PublishJobModel.state == state.value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_row_to_job(r) for r in result.scalars().all()]
