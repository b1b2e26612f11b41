"""Marketing console schema: modules, values, scope requirements, publish jobs and history

Revision ID: 001
Revises: None
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── Modules ───────────────────────────────────────────────────────────────
    op.create_table(
        "modules",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("store_id", sa.String(64), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("env", sa.String(32), server_default="dev"),
        sa.Column("name", sa.String(256), server_default=""),
        sa.Column("platform", sa.String(64), server_default=""),
        sa.Column("status", sa.String(64), server_default="draft"),
        sa.Column("is_default", sa.Boolean, server_default="false"),
        sa.Column("deployed_to", JSONB, server_default="[]"),
        sa.Column("deployed_to_codes", sa.String(256), server_default=""),
        sa.Column("ended_on", sa.String(32), nullable=True),
        sa.Column("promotion_id", sa.String(64), nullable=True),
        sa.Column("staged_id", sa.String(64), nullable=True),
        sa.Column("has_changes", sa.Boolean, server_default="false"),
        sa.Column("need_to_promote", sa.Boolean, server_default="false"),
        sa.Column("promoted_at", sa.DateTime, nullable=True),
        sa.Column("countries", JSONB, server_default="[]"),
        sa.Column("start_date", sa.Date, nullable=True),
        sa.Column("end_date", sa.Date, nullable=True),
        sa.Column("references_json", JSONB, server_default="{}"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("created_by", sa.String(128), server_default=""),
    )
    op.create_index("ix_modules_status", "modules", ["status"])
    op.create_index("ix_modules_promotion_id", "modules", ["promotion_id"])
    op.create_index("ix_modules_staged_id", "modules", ["staged_id"])
    op.create_index("ix_modules_scope", "modules", ["kind", "store_id", "product_id", "env"])
    op.create_index(
        "uq_modules_default_scope", "modules", ["kind", "store_id", "product_id", "env"],
        unique=True, postgresql_where=sa.text("is_default"),
    )

    # ── Module Values ─────────────────────────────────────────────────────────
    op.create_table(
        "module_values",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "module_id", sa.String(64),
            sa.ForeignKey("modules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("field", sa.String(128), server_default=""),
        sa.Column("country", sa.String(16), nullable=True),
        sa.Column("language", sa.String(16), nullable=True),
        sa.Column("value", JSONB, nullable=True),
        sa.Column("reference_id", sa.String(512), nullable=True),
        sa.Column("status", sa.String(32), server_default="incomplete"),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_module_values_module", "module_values", ["module_id"])

    # ── Scope Requirements ────────────────────────────────────────────────────
    op.create_table(
        "scope_requirements",
        sa.Column("store_id", sa.String(64), primary_key=True),
        sa.Column("product_id", sa.String(64), primary_key=True),
        sa.Column("regions", JSONB, server_default="[]"),
        sa.Column("required_fields", JSONB, server_default="{}"),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )

    # ── Publish History ───────────────────────────────────────────────────────
    op.create_table(
        "publish_history",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("module_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("store_id", sa.String(64), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("env", sa.String(32), nullable=False),
        sa.Column("name", sa.String(256), server_default=""),
        sa.Column("snapshot", JSONB, server_default="{}"),
        sa.Column("published_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_publish_history_module_id", "publish_history", ["module_id"])
    op.create_index(
        "ix_publish_history_scope", "publish_history",
        ["store_id", "product_id", "kind", "published_at"],
    )

    # ── Publish Jobs ──────────────────────────────────────────────────────────
    op.create_table(
        "publish_jobs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("module_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("env", sa.String(32), nullable=False),
        sa.Column("state", sa.String(16), server_default="running"),
        sa.Column("target_ids", JSONB, server_default="[]"),
        sa.Column("completed_steps", JSONB, server_default="[]"),
        sa.Column("attempts", sa.Integer, server_default="0"),
        sa.Column("previous_statuses", JSONB, server_default="{}"),
        sa.Column("error", sa.Text, server_default=""),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_publish_jobs_module_id", "publish_jobs", ["module_id"])
    op.create_index("ix_publish_jobs_state", "publish_jobs", ["state"])


def downgrade() -> None:
    op.drop_table("publish_jobs")
    op.drop_table("publish_history")
    op.drop_table("scope_requirements")
    op.drop_table("module_values")
    op.drop_table("modules")
