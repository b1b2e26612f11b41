"""
Marketing Console — FastAPI Server
REST API for module administration, promotion between deployment stages and
publishing into environments.
"""

import asyncio as _asyncio
import os as _os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from console_backend.api.dependencies import ConsoleComponents
from console_backend.api.routes_modules import register_module_routes
from console_backend.config.settings import settings
from console_backend.integrations import AssetStore, ConfigDeliveryService, EdgeCache
from console_backend.publishing.repository import ModuleRepository


def _sql_repository() -> ModuleRepository:
    from console_backend.db.engine import get_session_factory
    from console_backend.db.module_repository import SqlModuleRepository
    return SqlModuleRepository(get_session_factory(), known_codes=settings.environment_codes)


async def _init_tables() -> None:
    from console_backend.db import models  # noqa: F401
    from console_backend.db.base import Base
    from console_backend.db.engine import get_engine

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def create_app(
    repository: Optional[ModuleRepository] = None,
    config_delivery: Optional[ConfigDeliveryService] = None,
    asset_store: Optional[AssetStore] = None,
    edge_cache: Optional[EdgeCache] = None,
) -> FastAPI:
    """Build the app. Without a repository the PostgreSQL one is used and tables are created at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize and teardown console resources."""
        print("[MARKETING CONSOLE] Initializing...")
        repo = repository
        if repo is None:
            await _init_tables()
            print("[MARKETING CONSOLE]   PostgreSQL: tables initialized")
            repo = _sql_repository()
        else:
            print(f"[MARKETING CONSOLE]   Repository: {type(repo).__name__}")

        app.state.components = ConsoleComponents(
            repo, config_delivery=config_delivery, asset_store=asset_store, edge_cache=edge_cache,
        )
        print(f"[MARKETING CONSOLE]   Environments: {', '.join(settings.environment_codes)}")
        print(f"[MARKETING CONSOLE]   Promotion targets: {', '.join(settings.promotion_targets)}")

        if settings.resume_interrupted_publishes:
            resumed = await app.state.components.publisher.resume_interrupted()
            if resumed:
                states = ", ".join(f"{j.job_id}={j.state.value}" for j in resumed)
                print(f"[MARKETING CONSOLE]   Resumed {len(resumed)} interrupted publish(es): {states}")
        print("[MARKETING CONSOLE] Ready.")
        yield
        print("[MARKETING CONSOLE] Shutting down...")
        if repository is None:
            from console_backend.db.engine import dispose_engine
            await dispose_engine()

    app = FastAPI(
        title="Marketing Console",
        description="Module publishing engine — status, promotion, publishing and live supersession.",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ── CORS, configurable allowed origins ──────────────────────────────────
    _cors_origins_raw = _os.environ.get("CORS_ALLOWED_ORIGINS", "*")
    _cors_origins = ["*"] if _cors_origins_raw.strip() == "*" else [
        o.strip() for o in _cors_origins_raw.split(",") if o.strip()
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(TimeoutMiddleware)

    @app.get("/health", tags=["System"])
    async def health():
        return {"status": "ok", "environment": settings.environment}

    @app.get("/info", tags=["System"])
    async def info():
        return {
            "name": "Marketing Console",
            "environments": settings.environment_codes,
            "promotion_targets": settings.promotion_targets,
            "publish_timeout_seconds": settings.publish_timeout_seconds,
            "service_retry_count": settings.service_retry_count,
        }

    register_module_routes(app)
    return app


# ── Request Timeout Middleware ────────────────────────────────────────────────
# Publish, promote and requirement updates get the publish timeout plus a minute;
# publish calls enforce their own deadline inside it.
_SLOW_PATH_SUFFIXES = ("/publish", "/promote", "/pull")


class TimeoutMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path.rstrip("/")
        if any(path.endswith(s) for s in _SLOW_PATH_SUFFIXES) or path.startswith("/scopes/"):
            timeout = settings.publish_timeout_seconds + 60
        else:
            timeout = settings.default_request_timeout_seconds
        try:
            return await _asyncio.wait_for(call_next(request), timeout=timeout)
        except _asyncio.TimeoutError:
            return JSONResponse(
                status_code=504,
                content={"detail": f"Request timed out after {timeout}s", "path": path},
            )


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
