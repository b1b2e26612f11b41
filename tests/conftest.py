"""
Shared fixtures for the marketing console test suite.
"""
import sys
import os

import pytest
import pytest_asyncio

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Set env vars before any imports that read them
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///test.db")
os.environ.setdefault("SERVICE_RETRY_COUNT", "3")
os.environ.setdefault("RETRY_BACKOFF_MIN_SECONDS", "0")
os.environ.setdefault("RETRY_BACKOFF_MAX_SECONDS", "0")
os.environ.setdefault("RESUME_INTERRUPTED_PUBLISHES", "false")

from console_backend.publishing.environments import EnvironmentSet  # noqa: E402
from console_backend.publishing.kinds import get_kind  # noqa: E402
from console_backend.publishing.locks import ModuleLockRegistry  # noqa: E402
from console_backend.publishing.models import Module, ModuleKindName, ScopeRequirements, ValueStatus  # noqa: E402
from console_backend.publishing.pipeline import PublishPipeline  # noqa: E402
from console_backend.publishing.publisher import ModulePublisher  # noqa: E402
from console_backend.publishing.repository import InMemoryModuleRepository  # noqa: E402
from console_backend.publishing.status_engine import StatusEngine  # noqa: E402
from support import (  # noqa: E402
    ENVIRONMENT_CODES, PRODUCT, REGIONS, REQUIRED_FIELDS, STORE,
    FakeAssetStore, FakeConfigDelivery, FakeEdgeCache, complete_values,
)


# ── Fixtures ─────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def repo():
    """In-memory repository with requirements for the test store/product."""
    repository = InMemoryModuleRepository()
    await repository.save_requirements(ScopeRequirements(
        store_id=STORE, product_id=PRODUCT, regions=REGIONS, required_fields=REQUIRED_FIELDS,
    ))
    return repository


@pytest.fixture
def locks():
    return ModuleLockRegistry()


@pytest.fixture
def status_engine(repo):
    return StatusEngine(repo)


@pytest.fixture
def config_delivery():
    return FakeConfigDelivery()


@pytest.fixture
def asset_store():
    return FakeAssetStore()


@pytest.fixture
def edge_cache():
    return FakeEdgeCache()


@pytest.fixture
def publisher(repo, locks, status_engine, config_delivery, asset_store, edge_cache):
    """ModulePublisher over fakes, 3 attempts, no backoff."""
    return ModulePublisher(
        repo, locks,
        config_delivery=config_delivery,
        asset_store=asset_store,
        edge_cache=edge_cache,
        environment_codes=ENVIRONMENT_CODES,
        status_engine=status_engine,
        pipeline=PublishPipeline(repo, max_attempts=3, backoff_min=0, backoff_max=0),
        timeout_seconds=30,
        image_instance="test",
        image_base_url="https://images.example.net",
    )


@pytest.fixture
def make_module(repo, status_engine):
    """Async factory: create a module with complete values (PUBLISHED when deployed) and derive its status."""

    async def _make(kind, name="", values=None, deployed_to=(), ended_on=None, env="dev", sku_id=None, **fields):
        kind = ModuleKindName(kind)
        if kind == ModuleKindName.IMAGE_COLLECTION:
            fields.setdefault("countries", ["us"])
        module = Module(
            kind=kind, store_id=STORE, product_id=PRODUCT, env=env,
            name=name or f"{kind.value} module", platform=fields.pop("platform", "roku"),
            deployed_to=EnvironmentSet(deployed_to), ended_on=ended_on, **fields,
        )
        await repo.create_module(module)
        has_values = get_kind(kind).has_values
        if values is None and has_values:
            status = ValueStatus.PUBLISHED if deployed_to else ValueStatus.SAVED
            values = complete_values(kind, status, sku_id)
        rows = []
        for v in values or []:
            row = v.model_copy()
            row.module_id = module.module_id
            rows.append(row)
        await repo.save_values(rows)
        await status_engine.refresh(module, rows if has_values else None)
        return module

    return _make
