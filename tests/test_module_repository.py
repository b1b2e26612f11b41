"""
End-to-end test: SqlModuleRepository on an aiosqlite database.
Run: pytest tests/test_module_repository.py -v
"""
from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from console_backend.db.base import Base
from console_backend.db import models  # noqa: F401
from console_backend.db.module_repository import SqlModuleRepository
from console_backend.publishing.environments import EnvironmentSet
from console_backend.publishing.exceptions import NotFound
from console_backend.publishing.models import (
    CampaignReferences, JobState, Module, ModuleKindName, ModuleValue, PublishHistoryEntry,
    PublishJob, ScopeRequirements, ValueStatus,
)
from support import PRODUCT, REGIONS, REQUIRED_FIELDS, STORE, complete_values


# ── Test fixtures ────────────────────────────────────────────────

@pytest_asyncio.fixture
async def sql_repo(tmp_path):
    """Fresh sqlite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'console.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlModuleRepository(session_factory)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


def _module(kind=ModuleKindName.APP_COPY, **fields):
    return Module(kind=kind, store_id=STORE, product_id=PRODUCT, name=fields.pop("name", "m"), **fields)


# ── Module CRUD ──────────────────────────────────────────────────

class TestModules:

    @pytest.mark.asyncio
    async def test_create_and_get(self, sql_repo):
        module = _module(
            ModuleKindName.CAMPAIGN, name="Winback", deployed_to=EnvironmentSet(["stg-qa", "prod"]),
            ended_on="stg", start_date=date(2026, 1, 1), end_date=date(2026, 2, 1),
            references=CampaignReferences(app_copy_id="mod-a", image_collection_ids=["mod-i1", "mod-i2"]),
        )
        await sql_repo.create_module(module)

        loaded = await sql_repo.get_module(module.module_id)

        assert loaded.name == "Winback"
        assert loaded.deployed_to.codes() == ["stg-qa", "prod"]
        assert loaded.ended_on == "stg"
        assert loaded.start_date == date(2026, 1, 1)
        assert loaded.references.image_collection_ids == ["mod-i1", "mod-i2"]

    @pytest.mark.asyncio
    async def test_code_string_keeps_separate_codes_apart(self, sql_repo):
        module = await sql_repo.create_module(_module(deployed_to=EnvironmentSet(["stg", "prod"])))

        async with sql_repo._session_factory() as session:
            row = await session.get(models.ModuleModel, module.module_id)

        assert row.deployed_to_codes == "stg--prod"
        assert EnvironmentSet.parse(row.deployed_to_codes).codes() == ["stg", "prod"]

    @pytest.mark.asyncio
    async def test_get_missing(self, sql_repo):
        assert await sql_repo.get_module("mod-missing") is None

    @pytest.mark.asyncio
    async def test_save_updates_row(self, sql_repo):
        module = await sql_repo.create_module(_module())
        module.status = "live"
        module.deployed_to.add("stg")
        await sql_repo.save_module(module)

        loaded = await sql_repo.get_module(module.module_id)
        assert loaded.status == "live"
        assert loaded.deployed_to == {"stg"}

    @pytest.mark.asyncio
    async def test_save_missing_raises(self, sql_repo):
        with pytest.raises(NotFound):
            await sql_repo.save_module(_module())

    @pytest.mark.asyncio
    async def test_list_filters(self, sql_repo):
        live = _module(status="live", deployed_to=EnvironmentSet(["stg"]))
        await sql_repo.create_module(live)
        await sql_repo.create_module(_module())
        await sql_repo.create_module(_module(ModuleKindName.SKU))

        assert len(await sql_repo.list_modules(kind=ModuleKindName.APP_COPY)) == 2
        assert [m.module_id for m in await sql_repo.list_modules(deployed_in="stg")] == [live.module_id]
        assert [m.module_id for m in await sql_repo.list_modules(status="live")] == [live.module_id]

    @pytest.mark.asyncio
    async def test_find_promoted_and_mirror(self, sql_repo):
        staged = await sql_repo.create_module(_module())
        promoted = await sql_repo.create_module(_module(env="prod", promotion_id=staged.module_id))
        mirror = await sql_repo.create_module(_module(env="stg-prod", staged_id=staged.module_id))

        assert (await sql_repo.find_promoted(staged.module_id, "prod")).module_id == promoted.module_id
        assert (await sql_repo.find_mirror(staged.module_id, "stg-prod")).module_id == mirror.module_id
        assert await sql_repo.find_promoted(staged.module_id, "qa") is None

    @pytest.mark.asyncio
    async def test_delete_removes_values(self, sql_repo):
        module = await sql_repo.create_module(_module())
        values = complete_values(ModuleKindName.APP_COPY)
        for v in values:
            v.module_id = module.module_id
        await sql_repo.save_values(values)

        assert await sql_repo.delete_module(module.module_id) is True
        assert await sql_repo.list_values(module.module_id) == []
        assert await sql_repo.delete_module(module.module_id) is False


class TestDefaultClaim:

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, sql_repo):
        first = await sql_repo.create_module(_module())
        second = await sql_repo.create_module(_module())

        assert await sql_repo.claim_default(first.module_id) is True
        assert await sql_repo.claim_default(second.module_id) is False
        assert (await sql_repo.get_module(first.module_id)).is_default is True
        assert (await sql_repo.get_module(second.module_id)).is_default is False

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, sql_repo):
        dev = await sql_repo.create_module(_module())
        prod = await sql_repo.create_module(_module(env="prod"))
        sku = await sql_repo.create_module(_module(ModuleKindName.SKU))
        assert await sql_repo.claim_default(dev.module_id) is True
        assert await sql_repo.claim_default(prod.module_id) is True
        assert await sql_repo.claim_default(sku.module_id) is True

    @pytest.mark.asyncio
    async def test_claim_missing_module(self, sql_repo):
        assert await sql_repo.claim_default("mod-missing") is False


class TestValuesAndRequirements:

    @pytest.mark.asyncio
    async def test_values_upsert(self, sql_repo):
        module = await sql_repo.create_module(_module(ModuleKindName.SELECTOR_CONFIG))
        value = ModuleValue(module_id=module.module_id, field="slot1", country="us",
                            value={"label": "Monthly"}, reference_id="mod-sku", status=ValueStatus.SAVED)
        await sql_repo.save_values([value])
        value.status = ValueStatus.PUBLISHED
        await sql_repo.save_values([value])

        (loaded,) = await sql_repo.list_values(module.module_id)
        assert loaded.value == {"label": "Monthly"}
        assert loaded.status == ValueStatus.PUBLISHED
        assert loaded.language is None

    @pytest.mark.asyncio
    async def test_requirements_round_trip(self, sql_repo):
        await sql_repo.save_requirements(ScopeRequirements(
            store_id=STORE, product_id=PRODUCT, regions=REGIONS, required_fields=REQUIRED_FIELDS,
        ))
        loaded = await sql_repo.get_requirements(STORE, PRODUCT)
        assert loaded.countries() == ["us", "ca"]
        assert loaded.fields_for(ModuleKindName.SKU) == ["price"]
        assert await sql_repo.get_requirements("web", PRODUCT) is None


class TestJobsAndHistory:

    @pytest.mark.asyncio
    async def test_job_markers_persist(self, sql_repo):
        job = PublishJob(module_id="mod-1", kind=ModuleKindName.SKU, env="stg", target_ids=["mod-1"])
        await sql_repo.save_job(job)
        job.completed_steps.append("deploy-config")
        job.previous_statuses["mod-1"] = "complete"
        job.attempts = 1
        await sql_repo.save_job(job)

        running = await sql_repo.list_jobs(JobState.RUNNING)
        assert [j.job_id for j in running] == [job.job_id]
        assert running[0].completed_steps == ["deploy-config"]
        assert running[0].previous_statuses == {"mod-1": "complete"}
        assert await sql_repo.list_jobs(JobState.FAILED) == []

    @pytest.mark.asyncio
    async def test_history_filters(self, sql_repo):
        for env in ("stg", "prod"):
            await sql_repo.append_history(PublishHistoryEntry(
                module_id="mod-1", kind=ModuleKindName.APP_COPY, store_id=STORE, product_id=PRODUCT,
                env=env, snapshot={"name": "m"},
            ))
        entries = await sql_repo.list_history(module_id="mod-1")
        assert len(entries) == 2
        assert entries[0].snapshot == {"name": "m"}
        assert await sql_repo.list_history(kind=ModuleKindName.SKU) == []
