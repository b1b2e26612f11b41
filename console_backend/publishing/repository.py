"""
ModuleRepository — persistence collaborator for modules, their values, scope
requirements, publish history and publish job records.

`ModuleRepository` defines the contract; `InMemoryModuleRepository` keeps
everything in dicts (tests, local runs). The PostgreSQL implementation lives in
`console_backend.db.module_repository`.
"""

import logging
from typing import Dict, List, Optional, Tuple

from .models import (
    JobState, Module, ModuleKindName, ModuleValue, PublishHistoryEntry, PublishJob,
    ScopeRequirements,
)

logger = logging.getLogger(__name__)


class ModuleRepository:
    """Async CRUD contract used by the publishing engine."""

    # ── Modules ───────────────────────────────────────────────────

    async def get_module(self, module_id: str) -> Optional[Module]:
        raise NotImplementedError

    async def list_modules(
        self,
        kind: Optional[ModuleKindName] = None,
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
        env: Optional[str] = None,
        status: Optional[str] = None,
        deployed_in: Optional[str] = None,
    ) -> List[Module]:
        raise NotImplementedError

    async def find_promoted(self, staged_id: str, env: str) -> Optional[Module]:
        raise NotImplementedError

    async def find_mirror(self, staged_id: str, env: str) -> Optional[Module]:
        raise NotImplementedError

    async def create_module(self, module: Module) -> Module:
        raise NotImplementedError

    async def save_module(self, module: Module) -> Module:
        raise NotImplementedError

    async def delete_module(self, module_id: str) -> bool:
        raise NotImplementedError

    async def claim_default(self, module_id: str) -> bool:
        """Atomically make module the default of its (kind, store, product, env) scope if none exists."""
        raise NotImplementedError

    # ── Values ────────────────────────────────────────────────────

    async def list_values(self, module_id: str) -> List[ModuleValue]:
        raise NotImplementedError

    async def save_values(self, values: List[ModuleValue]) -> List[ModuleValue]:
        raise NotImplementedError

    async def delete_values(self, module_id: str) -> int:
        raise NotImplementedError

    # ── Requirements / history / jobs ─────────────────────────────

    async def get_requirements(self, store_id: str, product_id: str) -> Optional[ScopeRequirements]:
        raise NotImplementedError

    async def save_requirements(self, requirements: ScopeRequirements) -> ScopeRequirements:
        raise NotImplementedError

    async def append_history(self, entry: PublishHistoryEntry) -> PublishHistoryEntry:
        raise NotImplementedError

    async def list_history(
        self,
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
        kind: Optional[ModuleKindName] = None,
        module_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[PublishHistoryEntry]:
        raise NotImplementedError

    async def save_job(self, job: PublishJob) -> PublishJob:
        raise NotImplementedError

    async def get_job(self, job_id: str) -> Optional[PublishJob]:
        raise NotImplementedError

    async def list_jobs(self, state: Optional[JobState] = None) -> List[PublishJob]:
        raise NotImplementedError

    # ── Derived queries ───────────────────────────────────────────

    async def list_siblings(self, module: Module) -> List[Module]:
        """Other modules of the same kind/store/product."""
        rows = await self.list_modules(
            kind=module.kind, store_id=module.store_id, product_id=module.product_id,
        )
        return [m for m in rows if m.module_id != module.module_id]

    async def list_referencing_campaigns(self, module_id: str, store_id: str, product_id: str) -> List[Module]:
        campaigns = await self.list_modules(
            kind=ModuleKindName.CAMPAIGN, store_id=store_id, product_id=product_id,
        )
        return [c for c in campaigns if module_id in c.references.referenced_ids()]


class InMemoryModuleRepository(ModuleRepository):
    """Dict-backed repository. Returns copies so callers must save to persist."""

    def __init__(self):
        self._modules: Dict[str, Module] = {}
        self._values: Dict[str, ModuleValue] = {}
        self._requirements: Dict[Tuple[str, str], ScopeRequirements] = {}
        self._history: List[PublishHistoryEntry] = []
        self._jobs: Dict[str, PublishJob] = {}

    # ── Modules ───────────────────────────────────────────────────

    async def get_module(self, module_id: str) -> Optional[Module]:
        row = self._modules.get(module_id)
        return row.model_copy(deep=True) if row else None

    async def list_modules(
        self,
        kind: Optional[ModuleKindName] = None,
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
        env: Optional[str] = None,
        status: Optional[str] = None,
        deployed_in: Optional[str] = None,
    ) -> List[Module]:
        rows = list(self._modules.values())
        if kind:
            rows = [m for m in rows if m.kind == kind]
        if store_id:
            rows = [m for m in rows if m.store_id == store_id]
        if product_id:
            rows = [m for m in rows if m.product_id == product_id]
        if env:
            rows = [m for m in rows if m.env == env]
        if status:
            rows = [m for m in rows if m.status == status]
        if deployed_in:
            rows = [m for m in rows if m.deployed_to.contains(deployed_in)]
        rows.sort(key=lambda m: m.created_at)
        return [m.model_copy(deep=True) for m in rows]

    async def find_promoted(self, staged_id: str, env: str) -> Optional[Module]:
        for m in self._modules.values():
            if m.promotion_id == staged_id and m.env == env:
                return m.model_copy(deep=True)
        return None

    async def find_mirror(self, staged_id: str, env: str) -> Optional[Module]:
        for m in self._modules.values():
            if m.staged_id == staged_id and m.env == env:
                return m.model_copy(deep=True)
        return None

    async def create_module(self, module: Module) -> Module:
        self._modules[module.module_id] = module.model_copy(deep=True)
        logger.info(f"Created {module.kind.value} module {module.module_id} ({module.name})")
        return module

    async def save_module(self, module: Module) -> Module:
        module.touch()
        self._modules[module.module_id] = module.model_copy(deep=True)
        return module

    async def delete_module(self, module_id: str) -> bool:
        removed = self._modules.pop(module_id, None)
        if removed:
            await self.delete_values(module_id)
            logger.info(f"Deleted module {module_id}")
        return removed is not None

    async def claim_default(self, module_id: str) -> bool:
        module = self._modules.get(module_id)
        if not module:
            return False
        for other in self._modules.values():
            if (other.is_default and other.module_id != module_id
                    and other.scope == module.scope and other.env == module.env):
                return False
        module.is_default = True
        return True

    # ── Values ────────────────────────────────────────────────────

    async def list_values(self, module_id: str) -> List[ModuleValue]:
        return [v.model_copy(deep=True) for v in self._values.values() if v.module_id == module_id]

    async def save_values(self, values: List[ModuleValue]) -> List[ModuleValue]:
        for v in values:
            self._values[v.value_id] = v.model_copy(deep=True)
        return values

    async def delete_values(self, module_id: str) -> int:
        ids = [k for k, v in self._values.items() if v.module_id == module_id]
        for k in ids:
            del self._values[k]
        return len(ids)

    # ── Requirements / history / jobs ─────────────────────────────

    async def get_requirements(self, store_id: str, product_id: str) -> Optional[ScopeRequirements]:
        req = self._requirements.get((store_id, product_id))
        return req.model_copy(deep=True) if req else None

    async def save_requirements(self, requirements: ScopeRequirements) -> ScopeRequirements:
        self._requirements[(requirements.store_id, requirements.product_id)] = requirements.model_copy(deep=True)
        return requirements

    async def append_history(self, entry: PublishHistoryEntry) -> PublishHistoryEntry:
        self._history.append(entry.model_copy(deep=True))
        return entry

    async def list_history(
        self,
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
        kind: Optional[ModuleKindName] = None,
        module_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[PublishHistoryEntry]:
        rows = list(self._history)
        if store_id:
            rows = [h for h in rows if h.store_id == store_id]
        if product_id:
            rows = [h for h in rows if h.product_id == product_id]
        if kind:
            rows = [h for h in rows if h.kind == kind]
        if module_id:
            rows = [h for h in rows if h.module_id == module_id]
        rows.sort(key=lambda h: h.published_at, reverse=True)
        return [h.model_copy(deep=True) for h in rows[:limit]]

    async def save_job(self, job: PublishJob) -> PublishJob:
        self._jobs[job.job_id] = job.model_copy(deep=True)
        return job

    async def get_job(self, job_id: str) -> Optional[PublishJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, state: Optional[JobState] = None) -> List[PublishJob]:
        jobs = [j for j in self._jobs.values() if state is None or j.state == state]
        jobs.sort(key=lambda j: j.created_at)
        return [j.model_copy(deep=True) for j in jobs]
