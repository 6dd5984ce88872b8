"""Create shops, products, recommendations, global_quota and sync_logs.

Revision ID: 20251020_000001
Revises:
Create Date: 2025-10-20 00:00:01.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20251020_000001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = True):
    cols = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]
    if updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)
        )
    return cols


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("shops"):
        op.create_table(
            "shops",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("domain", sa.Text(), nullable=False, unique=True),
            sa.Column("api_key", sa.String(), nullable=False, unique=True),
            sa.Column("plan", sa.String(), nullable=False, server_default="free"),
            sa.Column("plan_name", sa.Text(), nullable=True),
            sa.Column("subscription_started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("initial_sync_done", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("last_refresh_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("product_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("refresh_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("refresh_cycle", sa.String(), nullable=True),
            sa.Column("daily_token_quota", sa.Integer(), nullable=False, server_default=sa.text("10000000")),
            sa.Column("tokens_used_today", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("token_reset_date", sa.Date(), nullable=True),
            sa.Column("api_calls_today", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("api_calls_date", sa.Date(), nullable=True),
            sa.Column("is_sync_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_development_store", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_whitelisted", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.CheckConstraint("plan IN ('free','pro','max')", name="ck_shops_plan"),
        )

    if not inspector.has_table("products"):
        op.create_table(
            "products",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("shop_id", sa.String(), sa.ForeignKey("shops.id", ondelete="CASCADE"), nullable=False),
            sa.Column("product_id", sa.String(), nullable=False),
            sa.Column("handle", sa.Text(), nullable=True),
            sa.Column("title", sa.Text(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("product_type", sa.Text(), nullable=True),
            sa.Column("vendor", sa.Text(), nullable=True),
            sa.Column("price", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("image", sa.Text(), nullable=True),
            sa.Column("tags", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
            *_timestamps(),
            sa.UniqueConstraint("shop_id", "product_id", name="uq_products_shop_product"),
        )
        op.create_index("ix_products_shop", "products", ["shop_id"])
        op.create_index("ix_products_shop_handle", "products", ["shop_id", "handle"])

    if not inspector.has_table("recommendations"):
        op.create_table(
            "recommendations",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("shop_id", sa.String(), sa.ForeignKey("shops.id", ondelete="CASCADE"), nullable=False),
            sa.Column("source_id", sa.String(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
            sa.Column("target_id", sa.String(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("impressions", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("clicks", sa.Integer(), nullable=False, server_default=sa.text("0")),
            *_timestamps(updated=False),
            sa.UniqueConstraint("shop_id", "source_id", "target_id", name="uq_recommendations_edge"),
        )
        op.create_index("ix_recommendations_shop_source", "recommendations", ["shop_id", "source_id"])

    if not inspector.has_table("global_quota"):
        op.create_table(
            "global_quota",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("daily_token_quota", sa.Integer(), nullable=False, server_default=sa.text("10000000")),
            sa.Column("tokens_used_today", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("quota_reset_date", sa.Date(), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        )
        op.execute(
            "INSERT INTO global_quota (id, daily_token_quota, tokens_used_today, quota_reset_date) "
            "VALUES ('global', 10000000, 0, CURRENT_DATE) ON CONFLICT (id) DO NOTHING"
        )

    if not inspector.has_table("sync_logs"):
        op.create_table(
            "sync_logs",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("shop_id", sa.String(), sa.ForeignKey("shops.id", ondelete="CASCADE"), nullable=False),
            sa.Column("mode", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="started"),
            sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("products_scanned", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("products_synced", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("recommendations_generated", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("prompt_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("completion_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("tokens_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("estimated_cost", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("error_code", sa.String(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("error_stack", sa.Text(), nullable=True),
            sa.CheckConstraint("status IN ('started','success','failed')", name="ck_sync_logs_status"),
        )
        op.create_index("ix_sync_logs_shop_started", "sync_logs", ["shop_id", "started_at"])
        op.create_index("ix_sync_logs_status", "sync_logs", ["status"])


def downgrade() -> None:
    op.drop_table("sync_logs")
    op.drop_table("global_quota")
    op.drop_table("recommendations")
    op.drop_table("products")
    op.drop_table("shops")
