"""
SQLAlchemy ORM models for the marketing console publishing engine.
Tables are created with Base.metadata.create_all at startup; alembic/versions
holds the same schema for managed databases.
"""
import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from console_backend.db.base import Base

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests).
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


# ── Modules ────────────────────────────────────────────────────────────────────

class ModuleModel(Base):
    """One module of any kind; kind-specific attributes are nullable columns."""
    __tablename__ = "modules"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: f"mod-{uuid.uuid4().hex[:12]}"
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    env: Mapped[str] = mapped_column(String(32), default="dev")
    name: Mapped[str] = mapped_column(String(256), default="")
    platform: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(String(64), default="draft", index=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)

    # Deployment state. deployed_to_codes keeps the dash-joined form other
    # systems read, with a double dash where a single one would be ambiguous;
    # deployed_to is authoritative.
    deployed_to: Mapped[list] = mapped_column(JsonColumn, default=list)
    deployed_to_codes: Mapped[str] = mapped_column(String(256), default="")
    ended_on: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Promotion links
    promotion_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    staged_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    has_changes: Mapped[bool] = mapped_column(Boolean, default=False)
    need_to_promote: Mapped[bool] = mapped_column(Boolean, default=False)
    promoted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Image collections / campaigns
    countries: Mapped[list] = mapped_column(JsonColumn, default=list)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    references_json: Mapped[dict] = mapped_column(JsonColumn, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    created_by: Mapped[str] = mapped_column(String(128), default="")

    __table_args__ = (
        Index("ix_modules_scope", "kind", "store_id", "product_id", "env"),
        # At most one default per (kind, store, product, env).
        Index(
            "uq_modules_default_scope", "kind", "store_id", "product_id", "env",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Module id={self.id} kind={self.kind} name={self.name!r} status={self.status}>"


class ModuleValueModel(Base):
    """Child value row identified by (field, country, language)."""
    __tablename__ = "module_values"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: f"val-{uuid.uuid4().hex[:12]}"
    )
    module_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("modules.id", ondelete="CASCADE"), nullable=False
    )
    field: Mapped[str] = mapped_column(String(128), default="")
    country: Mapped[str | None] = mapped_column(String(16), nullable=True)
    language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    value: Mapped[Any] = mapped_column(JsonColumn, nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="incomplete")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_module_values_module", "module_id"),
    )

    def __repr__(self) -> str:
        return f"<ModuleValue id={self.id} module={self.module_id} field={self.field} status={self.status}>"


# ── Scope Requirements ─────────────────────────────────────────────────────────

class ScopeRequirementsModel(Base):
    __tablename__ = "scope_requirements"

    store_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    regions: Mapped[list] = mapped_column(JsonColumn, default=list)
    required_fields: Mapped[dict] = mapped_column(JsonColumn, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ── Publish History / Jobs ─────────────────────────────────────────────────────

class PublishHistoryModel(Base):
    """Write-once snapshot of published content. Survives module deletion."""
    __tablename__ = "publish_history"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: f"hist-{uuid.uuid4().hex[:12]}"
    )
    module_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    env: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    snapshot: Mapped[dict] = mapped_column(JsonColumn, default=dict)
    published_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_publish_history_scope", "store_id", "product_id", "kind", "published_at"),
    )


class PublishJobModel(Base):
    """One publish call with its persisted step-completion markers."""
    __tablename__ = "publish_jobs"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: f"pub-{uuid.uuid4().hex[:12]}"
    )
    module_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    env: Mapped[str] = mapped_column(String(32), nullable=False)
    state: Mapped[str] = mapped_column(String(16), default="running", index=True)
    target_ids: Mapped[list] = mapped_column(JsonColumn, default=list)
    completed_steps: Mapped[list] = mapped_column(JsonColumn, default=list)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    previous_statuses: Mapped[dict] = mapped_column(JsonColumn, default=dict)
    error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<PublishJob id={self.id} module={self.module_id} env={self.env} state={self.state}>"
