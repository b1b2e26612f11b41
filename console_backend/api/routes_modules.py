"""
Marketing Console — module publishing API routes.
Module administration, promotion, publishing, publish jobs, history and
scope requirements.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import Depends, HTTPException, Query
from pydantic import BaseModel, Field

from console_backend.api.dependencies import ConsoleComponents, get_components
from console_backend.publishing.exceptions import (
    Conflict, ExternalServiceFailure, NotFound, PublishDeadlineExceeded, PublishingError,
    ValidationFailure,
)
from console_backend.publishing.models import (
    CampaignReferences, JobState, ModuleKindName, ModuleValue, Region, ScopeRequirements,
)

logger = logging.getLogger(__name__)

# Most specific first.
_STATUS_CODES = (
    (PublishDeadlineExceeded, 504),
    (ExternalServiceFailure, 502),
    (ValidationFailure, 422),
    (Conflict, 409),
    (NotFound, 404),
)


def _http_error(exc: PublishingError) -> HTTPException:
    for cls, code in _STATUS_CODES:
        if isinstance(exc, cls):
            return HTTPException(code, exc.to_dict())
    return HTTPException(400, exc.to_dict())


# ── Request Models ────────────────────────────────────────────────

class ValueInput(BaseModel):
    field: str
    country: Optional[str] = None
    language: Optional[str] = None
    value: Any = None
    reference_id: Optional[str] = None

    def to_value(self) -> ModuleValue:
        return ModuleValue(**self.model_dump())


class CreateModuleRequest(BaseModel):
    kind: ModuleKindName
    store_id: str
    product_id: str
    name: str
    platform: str = ""
    env: Optional[str] = None
    created_by: str = ""
    countries: List[str] = Field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    references: Optional[CampaignReferences] = None
    values: List[ValueInput] = Field(default_factory=list)


class UpdateModuleRequest(BaseModel):
    name: Optional[str] = None
    platform: Optional[str] = None
    countries: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class UpdateValuesRequest(BaseModel):
    values: List[ValueInput]


class DuplicateModuleRequest(BaseModel):
    name: Optional[str] = None
    created_by: str = ""


class PromoteRequest(BaseModel):
    target_env: str = "prod"


class PullRequest(BaseModel):
    accept_changes: bool


class PublishRequest(BaseModel):
    env: str = ""
    timeout_seconds: Optional[float] = None


class RequirementsRequest(BaseModel):
    regions: List[Region] = Field(default_factory=list)
    required_fields: Dict[str, List[str]] = Field(default_factory=dict)


def _module_payload(module, values=None) -> dict:
    data = module.model_dump(mode="json")
    if values is not None:
        data["values"] = [v.model_dump(mode="json") for v in values]
    return data


# ── Route Registration ───────────────────────────────────────────

def register_module_routes(app_router):
    """Register module publishing routes onto the FastAPI app."""

    # ══════════════════════════════════════════════════════════════
    # MODULES
    # ══════════════════════════════════════════════════════════════

    @app_router.post("/modules", tags=["Modules"])
    async def create_module(req: CreateModuleRequest, c: ConsoleComponents = Depends(get_components)):
        """Create a module; the first one of its scope becomes the default."""
        try:
            module = await c.service.create(
                kind=req.kind, store_id=req.store_id, product_id=req.product_id,
                name=req.name, platform=req.platform, env=req.env, created_by=req.created_by,
                countries=req.countries, start_date=req.start_date, end_date=req.end_date,
                references=req.references, values=[v.to_value() for v in req.values],
            )
        except PublishingError as e:
            raise _http_error(e) from e
        return {"status": "created", "module": _module_payload(module)}

    @app_router.get("/modules", tags=["Modules"])
    async def list_modules(
        kind: Optional[ModuleKindName] = None,
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
        env: Optional[str] = None,
        status: Optional[str] = None,
        deployed_in: Optional[str] = None,
        c: ConsoleComponents = Depends(get_components),
    ):
        try:
            modules = await c.service.list_modules(
                kind=kind, store_id=store_id, product_id=product_id,
                env=env, status=status, deployed_in=deployed_in,
            )
        except PublishingError as e:
            raise _http_error(e) from e
        return {"count": len(modules), "modules": [_module_payload(m) for m in modules]}

    @app_router.get("/modules/{module_id}", tags=["Modules"])
    async def get_module(module_id: str, c: ConsoleComponents = Depends(get_components)):
        try:
            module, values = await c.service.get(module_id)
        except PublishingError as e:
            raise _http_error(e) from e
        return _module_payload(module, values)

    @app_router.put("/modules/{module_id}", tags=["Modules"])
    async def update_module(
        module_id: str, req: UpdateModuleRequest, c: ConsoleComponents = Depends(get_components),
    ):
        try:
            module = await c.service.update_module(module_id, req.model_dump(exclude_unset=True))
        except PublishingError as e:
            raise _http_error(e) from e
        return _module_payload(module)

    @app_router.put("/modules/{module_id}/values", tags=["Modules"])
    async def update_values(
        module_id: str, req: UpdateValuesRequest, c: ConsoleComponents = Depends(get_components),
    ):
        """Upsert values by dimension key and recompute the module status."""
        try:
            module, values = await c.service.update_values(module_id, [v.to_value() for v in req.values])
        except PublishingError as e:
            raise _http_error(e) from e
        return _module_payload(module, values)

    @app_router.put("/modules/{module_id}/references", tags=["Modules"])
    async def set_references(
        module_id: str, req: CampaignReferences, c: ConsoleComponents = Depends(get_components),
    ):
        try:
            module = await c.service.set_references(module_id, req)
        except PublishingError as e:
            raise _http_error(e) from e
        return _module_payload(module)

    @app_router.post("/modules/{module_id}/duplicate", tags=["Modules"])
    async def duplicate_module(
        module_id: str, req: DuplicateModuleRequest, c: ConsoleComponents = Depends(get_components),
    ):
        try:
            module = await c.service.duplicate(module_id, name=req.name, created_by=req.created_by)
        except PublishingError as e:
            raise _http_error(e) from e
        return {"status": "created", "module": _module_payload(module)}

    @app_router.delete("/modules/{module_id}", tags=["Modules"])
    async def delete_module(module_id: str, c: ConsoleComponents = Depends(get_components)):
        try:
            await c.service.delete(module_id)
        except PublishingError as e:
            raise _http_error(e) from e
        return {"status": "deleted", "module_id": module_id}

    # ══════════════════════════════════════════════════════════════
    # PROMOTION
    # ══════════════════════════════════════════════════════════════

    @app_router.post("/modules/{module_id}/promote", tags=["Promotion"])
    async def promote_module(
        module_id: str, req: PromoteRequest, c: ConsoleComponents = Depends(get_components),
    ):
        try:
            result = await c.promotion.promote(module_id, req.target_env)
        except PublishingError as e:
            raise _http_error(e) from e
        return {
            "status": "created" if result.created else "promoted",
            "message": result.message,
            "has_changes": result.has_changes,
            "promoted": _module_payload(result.promoted),
            "mirror_id": result.mirror.module_id,
        }

    @app_router.post("/modules/{module_id}/pull", tags=["Promotion"])
    async def pull_module(module_id: str, req: PullRequest, c: ConsoleComponents = Depends(get_components)):
        """Accept or discard staged changes on a promoted module."""
        try:
            module = await c.promotion.pull(module_id, req.accept_changes)
        except PublishingError as e:
            raise _http_error(e) from e
        return _module_payload(module)

    @app_router.get("/modules/{module_id}/promotion-diff", tags=["Promotion"])
    async def promotion_diff(module_id: str, c: ConsoleComponents = Depends(get_components)):
        try:
            diff = await c.promotion.diff(module_id)
        except PublishingError as e:
            raise _http_error(e) from e
        return diff.model_dump()

    # ══════════════════════════════════════════════════════════════
    # PUBLISHING
    # ══════════════════════════════════════════════════════════════

    @app_router.get("/modules/{module_id}/publish-warning", tags=["Publishing"])
    async def publish_warning(
        module_id: str, env: str = Query(...), c: ConsoleComponents = Depends(get_components),
    ):
        """Modules a publish to env would take over from."""
        try:
            live = await c.publisher.overwrite_warning(module_id, env)
        except PublishingError as e:
            raise _http_error(e) from e
        return {
            "env": env,
            "overwrites": [
                {"module_id": m.module_id, "kind": m.kind.value, "name": m.name} for m in live
            ],
        }

    @app_router.post("/modules/{module_id}/publish", tags=["Publishing"])
    async def publish_module(
        module_id: str, req: PublishRequest, c: ConsoleComponents = Depends(get_components),
    ):
        try:
            result = await c.publisher.publish(module_id, req.env, timeout=req.timeout_seconds)
        except PublishingError as e:
            raise _http_error(e) from e
        return {
            "status": "published",
            "job_id": result.job.job_id,
            "attempts": result.job.attempts,
            "module": _module_payload(result.module),
            "superseded": result.superseded,
            "repointed_campaigns": result.repointed_campaigns,
        }

    @app_router.get("/modules/{module_id}/deployed-record", tags=["Publishing"])
    async def deployed_record(
        module_id: str,
        env: str = Query(...),
        region: Optional[str] = None,
        c: ConsoleComponents = Depends(get_components),
    ):
        """Content the config-delivery service currently serves for this module's scope."""
        try:
            record = await c.publisher.deployed_record(module_id, env, region)
        except PublishingError as e:
            raise _http_error(e) from e
        if record is None:
            raise HTTPException(404, "No record deployed")
        return record

    @app_router.get("/publish-jobs", tags=["Publishing"])
    async def list_publish_jobs(
        state: Optional[JobState] = None, c: ConsoleComponents = Depends(get_components),
    ):
        jobs = await c.repository.list_jobs(state)
        return {"count": len(jobs), "jobs": [j.model_dump(mode="json") for j in jobs]}

    @app_router.get("/publish-jobs/{job_id}", tags=["Publishing"])
    async def get_publish_job(job_id: str, c: ConsoleComponents = Depends(get_components)):
        job = await c.repository.get_job(job_id)
        if not job:
            raise HTTPException(404, "Publish job not found")
        return job.model_dump(mode="json")

    @app_router.get("/history", tags=["Publishing"])
    async def publish_history(
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
        kind: Optional[ModuleKindName] = None,
        module_id: Optional[str] = None,
        limit: int = Query(default=50, le=500),
        c: ConsoleComponents = Depends(get_components),
    ):
        entries = await c.repository.list_history(store_id, product_id, kind, module_id, limit)
        return {"count": len(entries), "history": [e.model_dump(mode="json") for e in entries]}

    # ══════════════════════════════════════════════════════════════
    # SCOPE REQUIREMENTS
    # ══════════════════════════════════════════════════════════════

    @app_router.put("/scopes/{store_id}/{product_id}/requirements", tags=["Scopes"])
    async def set_requirements(
        store_id: str, product_id: str, req: RequirementsRequest,
        c: ConsoleComponents = Depends(get_components),
    ):
        requirements = await c.service.set_requirements(ScopeRequirements(
            store_id=store_id, product_id=product_id,
            regions=req.regions, required_fields=req.required_fields,
        ))
        return requirements.model_dump()

    @app_router.get("/scopes/{store_id}/{product_id}/requirements", tags=["Scopes"])
    async def get_requirements(store_id: str, product_id: str, c: ConsoleComponents = Depends(get_components)):
        try:
            requirements = await c.service.get_requirements(store_id, product_id)
        except PublishingError as e:
            raise _http_error(e) from e
        return requirements.model_dump()
