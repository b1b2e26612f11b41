"""
ModulePublisher — publishes a module (and, for campaigns, the sub-modules it
references) into one environment.

Flow of one publish call:
  1. validate (target env, in-flight publish, DRAFT after a status refresh)
  2. persist a running PublishJob and mark every target PUBLISH_IN_PROGRESS(env)
  3. run the step plan through PublishPipeline under the caller's deadline
  4. success -> job succeeded; failure, deadline or cancellation -> previous
     statuses restored, job failed, error raised

Jobs left running by a crashed process are picked up by resume_interrupted().
"""

import asyncio
import logging
import posixpath
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .exceptions import (
    Conflict, ExternalServiceFailure, NotFound, PublishDeadlineExceeded, PublishingError,
    ValidationFailure,
)
from .kinds import CAMPAIGN_SUB_MODULE_ORDER, get_kind
from .locks import ModuleLockRegistry
from .models import (
    JobState, Module, ModuleKindName, ModuleStatus, ModuleValue, PublishHistoryEntry, PublishJob,
    ValueStatus, is_publish_in_progress, publish_progress_status,
)
from .pipeline import PublishPipeline, PublishStep
from .repository import ModuleRepository
from .status_engine import StatusEngine
from .supersession import LiveSupersession

if TYPE_CHECKING:
    from console_backend.integrations import AssetStore, ConfigDeliveryService, EdgeCache

logger = logging.getLogger(__name__)


class PublishResult(BaseModel):
    job: PublishJob
    module: Module
    superseded: List[str] = Field(default_factory=list)
    repointed_campaigns: List[str] = Field(default_factory=list)


class _RunOutcome:
    """Collects supersession effects of the finalize steps of one run."""

    def __init__(self):
        self.superseded: List[str] = []
        self.repointed: List[str] = []


class ModulePublisher:

    def __init__(
        self,
        repository: ModuleRepository,
        locks: ModuleLockRegistry,
        config_delivery: "ConfigDeliveryService",
        asset_store: "AssetStore",
        edge_cache: "EdgeCache",
        environment_codes: Iterable[str],
        status_engine: Optional[StatusEngine] = None,
        pipeline: Optional[PublishPipeline] = None,
        timeout_seconds: Optional[float] = 1260,
        image_concurrency: int = 5,
        image_instance: str = "dev",
        image_base_url: str = "",
    ):
        self._repo = repository
        self._locks = locks
        self._config = config_delivery
        self._assets = asset_store
        self._cache = edge_cache
        self._env_codes = [c.lower() for c in environment_codes]
        self._status = status_engine or StatusEngine(repository)
        self._supersession = LiveSupersession(repository, self._status, locks)
        self._pipeline = pipeline or PublishPipeline(repository)
        self._timeout = timeout_seconds
        self._image_concurrency = max(1, image_concurrency)
        self._image_instance = image_instance
        self._image_base_url = image_base_url.rstrip("/")

    # ══════════════════════════════════════════════════════════════════════
    # Public operations
    # ══════════════════════════════════════════════════════════════════════

    async def publish(self, module_id: str, env: str, timeout: Optional[float] = None) -> PublishResult:
        """Publish module_id to env. timeout overrides the default deadline in seconds."""
        env = self._target_env(module_id, env)

        module = await self._require(module_id)
        if module.staged_id:
            raise Conflict(f"Module {module_id} is a staging mirror and cannot be published",
                           context={"module_id": module_id})
        targets = await self._collect_targets(module, env, validate=True)

        job = PublishJob(
            module_id=module.module_id, kind=module.kind, env=env,
            target_ids=[t.module_id for t in targets],
        )
        await self._repo.save_job(job)
        await self._mark_in_progress(job)
        logger.info(f"[{job.job_id}] publishing {module.kind.value} {module_id} to {env} ({len(targets)} module(s))")
        return await self._execute(job, timeout)

    async def overwrite_warning(self, module_id: str, env: str) -> List[Module]:
        """Modules currently live in env that publishing module_id would retire."""
        env = self._target_env(module_id, env)
        module = await self._require(module_id)
        live: List[Module] = []
        for target in await self._collect_targets(module, env, validate=False):
            live.extend(await self._supersession.find_live_siblings(target, env))
        return live

    async def resume_interrupted(self) -> List[PublishJob]:
        """Re-run jobs left running by a previous process; completed steps are skipped."""
        resumed = []
        for job in await self._repo.list_jobs(JobState.RUNNING):
            logger.warning(
                f"[{job.job_id}] resuming interrupted publish of {job.module_id} to {job.env} "
                f"(completed: {job.completed_steps})"
            )
            try:
                result = await self._execute(job, None)
                resumed.append(result.job)
            except PublishingError as e:
                logger.error(f"[{job.job_id}] resume failed: {e.message}")
                failed = await self._repo.get_job(job.job_id)
                resumed.append(failed or job)
        return resumed

    async def deployed_record(
        self, module_id: str, env: str, region: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """What the config-delivery service currently serves for a module's scope in env."""
        module = await self._require(module_id)
        token = await self._config.authenticate()
        return await self._config.fetch_record(
            env, module.store_id, module.product_id, module.kind.value, token,
            platform=module.platform or None, region=region,
        )

    # ══════════════════════════════════════════════════════════════════════
    # Validation / preparation
    # ══════════════════════════════════════════════════════════════════════

    def _target_env(self, module_id: str, env: Optional[str]) -> str:
        env = (env or "").strip().lower()
        if not env:
            raise Conflict("No target environment given", context={"module_id": module_id})
        if env not in self._env_codes:
            raise NotFound(f"Unknown environment {env!r}", context={"environments": self._env_codes})
        return env

    async def _collect_targets(self, module: Module, env: str, validate: bool) -> List[Module]:
        """Modules a publish of module would touch: sub-modules first, module last."""
        targets: List[Module] = []
        if get_kind(module.kind).is_composite:
            for sub_id in self._sub_module_ids(module):
                sub = await self._repo.get_module(sub_id)
                if sub is None:
                    if validate:
                        raise NotFound(
                            f"Sub-module {sub_id} of campaign {module.module_id} not found",
                            context={"module_id": module.module_id, "sub_module_id": sub_id},
                        )
                    continue
                if sub.is_live_in(env):
                    continue
                if validate:
                    sub = await self._check_publishable(sub)
                targets.append(sub)
        if validate:
            module = await self._check_publishable(module)
        targets.append(module)
        return targets

    @staticmethod
    def _sub_module_ids(campaign: Module) -> List[str]:
        refs = campaign.references
        ids: List[str] = []
        for kind_name in CAMPAIGN_SUB_MODULE_ORDER:
            attr = get_kind(kind_name).campaign_reference
            candidates = refs.image_collection_ids if kind_name == ModuleKindName.IMAGE_COLLECTION else [getattr(refs, attr)]
            ids.extend(c for c in candidates if c and c not in ids)
        return ids

    async def _check_publishable(self, module: Module) -> Module:
        async with self._locks.hold(module.module_id):
            module = await self._require(module.module_id)
            if is_publish_in_progress(module.status):
                raise Conflict(
                    f"Module {module.module_id} is already being published ({module.status})",
                    context={"module_id": module.module_id, "status": module.status},
                )
            await self._status.refresh(module)
            # Live modules derive to live whatever their content; check the content itself.
            decision = await self._status.check_completeness(module)
        if decision.status == ModuleStatus.DRAFT.value:
            raise ValidationFailure(
                f"{module.kind.value} module {module.module_id} is incomplete",
                context={
                    "module_id": module.module_id,
                    "missing": ["|".join(p or "" for p in key) for key in decision.missing_keys],
                },
            )
        return module

    async def _mark_in_progress(self, job: PublishJob) -> None:
        marker = publish_progress_status(job.env)
        for target_id in job.target_ids:
            async with self._locks.hold(target_id):
                target = await self._require(target_id)
                if is_publish_in_progress(target.status):
                    conflict = Conflict(
                        f"Module {target_id} is already being published ({target.status})",
                        context={"module_id": target_id, "status": target.status},
                    )
                else:
                    conflict = None
                    job.previous_statuses[target_id] = target.status
                    target.status = marker
                    await self._repo.save_module(target)
            if conflict:
                await self._fail(job, conflict.message)
                raise conflict
            await self._repo.save_job(job)

    # ══════════════════════════════════════════════════════════════════════
    # Execution
    # ══════════════════════════════════════════════════════════════════════

    async def _execute(self, job: PublishJob, timeout: Optional[float]) -> PublishResult:
        deadline = timeout if timeout is not None else self._timeout
        outcome = _RunOutcome()
        try:
            steps = await self._plan(job, outcome)
            await asyncio.wait_for(self._pipeline.run(job, steps), timeout=deadline)
        except asyncio.TimeoutError as e:
            await self._fail(job, f"deadline of {deadline}s exceeded")
            raise PublishDeadlineExceeded(
                f"Publish of {job.module_id} to {job.env} did not finish within {deadline}s",
                context={"module_id": job.module_id, "env": job.env, "job_id": job.job_id},
            ) from e
        except asyncio.CancelledError:
            await self._fail(job, "cancelled")
            raise
        except PublishingError as e:
            await self._fail(job, e.message)
            raise
        except Exception as e:
            await self._fail(job, str(e))
            raise ExternalServiceFailure(
                f"Publish of {job.module_id} to {job.env} failed: {e}",
                context={"module_id": job.module_id, "env": job.env, "job_id": job.job_id},
            ) from e

        job.state = JobState.SUCCEEDED
        job.finished_at = datetime.utcnow()
        await self._repo.save_job(job)
        logger.info(f"[{job.job_id}] {job.module_id} is live in {job.env} after {job.attempts} attempt(s)")
        return PublishResult(
            job=job,
            module=await self._require(job.module_id),
            superseded=outcome.superseded,
            repointed_campaigns=outcome.repointed,
        )

    async def _fail(self, job: PublishJob, error: str) -> None:
        """Restore pre-publish statuses of targets still marked in progress and fail the job."""
        for module_id, previous in job.previous_statuses.items():
            async with self._locks.hold(module_id):
                module = await self._repo.get_module(module_id)
                if module is None or not is_publish_in_progress(module.status):
                    continue
                module.status = previous
                await self._repo.save_module(module)
                logger.info(f"[{job.job_id}] rolled {module_id} back to {previous}")
        job.state = JobState.FAILED
        job.error = error
        job.finished_at = datetime.utcnow()
        await self._repo.save_job(job)
        logger.error(f"[{job.job_id}] publish of {job.module_id} to {job.env} failed: {error}")

    async def _plan(self, job: PublishJob, outcome: _RunOutcome) -> List[PublishStep]:
        steps: List[PublishStep] = []
        for target_id in job.target_ids:
            target = await self._require(target_id)
            kind = get_kind(target.kind)
            if target_id == job.module_id:
                prefix = ""
            elif target.kind == ModuleKindName.IMAGE_COLLECTION:
                prefix = f"{kind.step_label}/{target_id}/"
            else:
                prefix = f"{kind.step_label}/"
            steps.extend(self._module_steps(job, target, prefix, outcome))
        return steps

    def _module_steps(self, job: PublishJob, module: Module, prefix: str, outcome: _RunOutcome) -> List[PublishStep]:
        module_id = module.module_id
        steps = []
        if module.kind == ModuleKindName.IMAGE_COLLECTION:
            steps.append(PublishStep(f"{prefix}copy-images", lambda: self._copy_images(module_id, job.env)))
            steps.append(PublishStep(f"{prefix}invalidate-cdn", lambda: self._invalidate_cdn(module_id, job.env)))
        steps.append(PublishStep(f"{prefix}deploy-config", lambda: self._deploy_config(module_id, job.env)))
        finalize = "finalize-campaign" if get_kind(module.kind).is_composite else "finalize"
        steps.append(PublishStep(f"{prefix}{finalize}", lambda: self._finalize(job, module_id, outcome)))
        return steps

    # ══════════════════════════════════════════════════════════════════════
    # Steps
    # ══════════════════════════════════════════════════════════════════════

    async def _bounded(self, coros: List[Awaitable[Any]]) -> None:
        """Run coros under the concurrency cap; every one settles before the first error is raised."""
        semaphore = asyncio.Semaphore(self._image_concurrency)

        async def run(coro: Awaitable[Any]) -> Any:
            async with semaphore:
                return await coro

        results = await asyncio.gather(*(run(c) for c in coros), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _publishable_values(self, module: Module) -> List[ModuleValue]:
        if not get_kind(module.kind).has_values:
            return []
        return [v for v in await self._repo.list_values(module.module_id) if v.has_value()]

    async def _deploy_config(self, module_id: str, env: str) -> None:
        module = await self._require(module_id)
        kind = get_kind(module.kind)
        payloads = kind.build_payloads(module, await self._publishable_values(module))
        token = await self._config.authenticate()
        await self._config.check_connection(token)
        await self._bounded([
            self._config.deploy(
                env, module.store_id, module.product_id, kind.name.value, payload, token,
                platform=module.platform or None, region=region,
            )
            for region, payload in payloads.items()
        ])

    def image_prefix(self, module: Module, env: str) -> str:
        return (
            f"Buyflow/{module.platform}/samoc/appImages/"
            f"samoc-{self._image_instance}-instance/{env}/{module.product_id}"
        )

    def image_key(self, module: Module, value: ModuleValue, env: str) -> str:
        """Destination key of one image row; value holds the file extension, reference_id the source key."""
        ext = str(value.value).strip().lstrip(".") if value.has_value() else ""
        if not ext:
            ext = posixpath.splitext(value.reference_id or "")[1].lstrip(".") or "png"
        country = "_".join(module.countries) or "default"
        return f"{self.image_prefix(module, env)}/{value.field.replace(' ', '_')}_{country}.{ext}"

    async def _copy_images(self, module_id: str, env: str) -> None:
        module = await self._require(module_id)
        values = [v for v in await self._repo.list_values(module_id) if v.reference_id]

        async def publish_image(value: ModuleValue) -> None:
            key = self.image_key(module, value, env)
            await self._assets.copy(value.reference_id, key)
            await self._cache.purge(f"{self._image_base_url}/{key}")

        await self._bounded([publish_image(v) for v in values])
        logger.info(f"Copied {len(values)} image(s) of {module_id} for {env}")

    async def _invalidate_cdn(self, module_id: str, env: str) -> None:
        module = await self._require(module_id)
        await self._cache.invalidate(f"/{self.image_prefix(module, env)}/*")

    async def _finalize(self, job: PublishJob, module_id: str, outcome: _RunOutcome) -> None:
        """Mark content published, retire live siblings and make the module live in env."""
        env = job.env
        module = await self._require(module_id)
        kind = get_kind(module.kind)
        scope = ModuleLockRegistry.scope_key(*module.scope)
        async with self._locks.hold(scope, module_id):
            module = await self._require(module_id)
            values = await self._repo.list_values(module_id) if kind.has_values else []
            if values:
                context = await self._status.build_context(module, values)
                for v in values:
                    missing_sku = kind.references_skus and (
                        not v.reference_id or context.referenced_statuses.get(v.reference_id) is None
                    )
                    v.status = ValueStatus.INCOMPLETE if missing_sku else ValueStatus.PUBLISHED
                await self._repo.save_values(values)

            superseded = await self._supersession.supersede(module, env)

            module.deployed_to.add(env)
            if module.ended_on == env:
                module.ended_on = None
            module.status = job.previous_statuses.get(module_id, ModuleStatus.READY.value)
            if is_publish_in_progress(module.status):
                module.status = kind.ready_status.value
            await self._status.refresh(module, values)

            repointed = await self._supersession.repoint_campaigns(module, env, superseded.retired)
            await self._repo.append_history(PublishHistoryEntry(
                module_id=module_id, kind=module.kind, store_id=module.store_id,
                product_id=module.product_id, env=env, name=module.name,
                snapshot=self._snapshot(module, values),
            ))

        outcome.superseded.extend(superseded.retired)
        outcome.repointed.extend(r for r in repointed if r not in outcome.repointed)
        logger.info(
            f"[{job.job_id}] {kind.name.value} {module_id} live in {env}; "
            f"retired {superseded.retired or 'none'}"
        )

    @staticmethod
    def _snapshot(module: Module, values: List[ModuleValue]) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {"name": module.name, "platform": module.platform}
        if get_kind(module.kind).is_composite:
            snapshot.update({
                "start_date": module.start_date.isoformat() if module.start_date else None,
                "end_date": module.end_date.isoformat() if module.end_date else None,
                "references": module.references.model_dump(),
            })
        else:
            snapshot["countries"] = list(module.countries)
            snapshot["values"] = [
                v.model_dump(mode="json", include={"field", "country", "language", "value", "reference_id", "status"})
                for v in values
            ]
        return snapshot

    async def _require(self, module_id: str) -> Module:
        module = await self._repo.get_module(module_id)
        if module is None:
            raise NotFound(f"Module {module_id} not found", context={"module_id": module_id})
        return module
