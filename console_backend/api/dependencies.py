"""
Shared collaborators of the HTTP layer.

The lifespan builds one ConsoleComponents and stores it on app.state; routes
receive it through the get_components dependency.
"""

from typing import Optional

from fastapi import Request

from console_backend.config.settings import Settings, settings as default_settings
from console_backend.integrations import (
    AssetStore, ConfigDeliveryService, EdgeCache,
    HttpAssetStore, HttpConfigDeliveryService, HttpEdgeCache,
)
from console_backend.publishing.locks import ModuleLockRegistry
from console_backend.publishing.pipeline import PublishPipeline
from console_backend.publishing.promotion import PromotionWorkflow
from console_backend.publishing.publisher import ModulePublisher
from console_backend.publishing.repository import ModuleRepository
from console_backend.publishing.service import ModuleService
from console_backend.publishing.status_engine import StatusEngine


class ConsoleComponents:
    """Repository, lock registry and the engine services wired from settings."""

    def __init__(
        self,
        repository: ModuleRepository,
        config_delivery: Optional[ConfigDeliveryService] = None,
        asset_store: Optional[AssetStore] = None,
        edge_cache: Optional[EdgeCache] = None,
        settings: Optional[Settings] = None,
    ):
        cfg = settings or default_settings
        self.settings = cfg
        self.repository = repository
        self.locks = ModuleLockRegistry()
        self.status_engine = StatusEngine(repository)
        self.config_delivery = config_delivery or HttpConfigDeliveryService(
            base_url=cfg.config_delivery_base_url,
            api_version=cfg.config_delivery_api_version,
            token_url=cfg.config_delivery_token_url,
            client_id=cfg.config_delivery_client_id,
            client_secret=cfg.config_delivery_client_secret,
            check_store=cfg.config_delivery_check_store,
            check_product=cfg.config_delivery_check_product,
            timeout=cfg.http_timeout_seconds,
        )
        self.asset_store = asset_store or HttpAssetStore(
            base_url=cfg.asset_store_url,
            bucket=cfg.asset_store_bucket,
            api_key=cfg.asset_store_api_key,
            timeout=cfg.http_timeout_seconds,
        )
        self.edge_cache = edge_cache or HttpEdgeCache(
            purge_api_url=cfg.imgix_api_url,
            purge_api_key=cfg.imgix_api_key,
            cdn_api_url=cfg.cdn_api_url,
            distribution_id=cfg.cdn_distribution_id,
            cdn_api_key=cfg.cdn_api_key,
            timeout=cfg.http_timeout_seconds,
        )
        self.service = ModuleService(
            repository, self.locks, status_engine=self.status_engine, staged_env=cfg.staged_env,
        )
        self.promotion = PromotionWorkflow(
            repository, self.locks,
            promotion_targets=cfg.promotion_targets,
            staging_prefix=cfg.staging_env_prefix,
            status_engine=self.status_engine,
        )
        self.publisher = ModulePublisher(
            repository, self.locks,
            config_delivery=self.config_delivery,
            asset_store=self.asset_store,
            edge_cache=self.edge_cache,
            environment_codes=cfg.environment_codes,
            status_engine=self.status_engine,
            pipeline=PublishPipeline(
                repository,
                max_attempts=cfg.service_retry_count,
                backoff_min=cfg.retry_backoff_min_seconds,
                backoff_max=cfg.retry_backoff_max_seconds,
            ),
            timeout_seconds=cfg.publish_timeout_seconds,
            image_concurrency=cfg.image_publish_concurrency,
            image_instance=cfg.image_instance_name,
            image_base_url=cfg.imgix_base_url,
        )


def get_components(request: Request) -> ConsoleComponents:
    """FastAPI dependency — the components built by the lifespan."""
    return request.app.state.components
