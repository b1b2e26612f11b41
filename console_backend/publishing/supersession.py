"""
LiveSupersession — when a module becomes live in an environment, every other
module of the same kind/store/product live there is retired from that
environment (and only that one). Live campaigns in the environment that still
point at a retired module are repointed to its replacement.

Callers hold the scope lock of the module being published.
"""

import logging
from typing import List

from pydantic import BaseModel, Field

from .environments import EnvironmentSet
from .kinds import get_kind
from .locks import ModuleLockRegistry
from .models import Module, ModuleKindName, ModuleStatus, ValueStatus
from .repository import ModuleRepository
from .status_engine import StatusEngine

logger = logging.getLogger(__name__)


class SupersessionResult(BaseModel):
    retired: List[str] = Field(default_factory=list)  # retired from env, may still be live elsewhere
    ended: List[str] = Field(default_factory=list)  # no environment left
    repointed_campaigns: List[str] = Field(default_factory=list)


class LiveSupersession:

    def __init__(self, repository: ModuleRepository, status_engine: StatusEngine, locks: ModuleLockRegistry):
        self._repo = repository
        self._status = status_engine
        self._locks = locks

    async def find_live_siblings(self, module: Module, env: str) -> List[Module]:
        siblings = await self._repo.list_siblings(module)
        return [s for s in siblings if s.is_live_in(env)]

    async def supersede(self, module: Module, env: str) -> SupersessionResult:
        """Retire live siblings of module from env."""
        result = SupersessionResult()
        kind = get_kind(module.kind)
        for candidate in await self.find_live_siblings(module, env):
            async with self._locks.hold(candidate.module_id):
                sibling = await self._repo.get_module(candidate.module_id)
                if sibling is None or not sibling.is_live_in(env):
                    continue
                values = None
                if sibling.deployed_to.is_exactly(env):
                    sibling.deployed_to = EnvironmentSet()
                    sibling.ended_on = env
                    if kind.retires_values:
                        values = await self._repo.list_values(sibling.module_id)
                        ended = []
                        for v in values:
                            if v.status == ValueStatus.PUBLISHED:
                                v.status = ValueStatus.ENDED
                                ended.append(v)
                        await self._repo.save_values(ended)
                    result.ended.append(sibling.module_id)
                else:
                    sibling.deployed_to.remove(env)
                    sibling.ended_on = env
                await self._status.refresh(sibling, values)
                result.retired.append(sibling.module_id)
                logger.info(
                    f"Retired {kind.name.value} {sibling.module_id} from {env} "
                    f"(replaced by {module.module_id}, now {sibling.status})"
                )
        return result

    async def repoint_campaigns(self, module: Module, env: str, retired_ids: List[str]) -> List[str]:
        """Point live campaigns in env that reference a retired module at module instead."""
        kind = get_kind(module.kind)
        attr = kind.campaign_reference
        if not attr or not retired_ids:
            return []
        retired = set(retired_ids)
        repointed = []
        campaigns = await self._repo.list_modules(
            kind=ModuleKindName.CAMPAIGN, store_id=module.store_id,
            product_id=module.product_id, deployed_in=env,
        )
        for candidate in campaigns:
            if candidate.status != ModuleStatus.LIVE.value:
                continue
            async with self._locks.hold(candidate.module_id):
                campaign = await self._repo.get_module(candidate.module_id)
                if campaign is None:
                    continue
                refs = campaign.references
                changed = False
                if attr == "image_collection_ids":
                    updated: List[str] = []
                    for ref in refs.image_collection_ids:
                        new_ref = module.module_id if ref in retired else ref
                        changed = changed or new_ref != ref
                        if new_ref not in updated:
                            updated.append(new_ref)
                    refs.image_collection_ids = updated
                elif getattr(refs, attr) in retired:
                    setattr(refs, attr, module.module_id)
                    changed = True
                if changed:
                    await self._status.refresh(campaign)
                    repointed.append(campaign.module_id)
                    logger.info(f"Campaign {campaign.module_id} in {env} now references {module.module_id}")
        return repointed
