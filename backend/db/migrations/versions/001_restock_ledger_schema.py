"""
Initial schema - ledger, catalog, promotions and smart restock (9 tables)

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id() -> sa.Column:
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _timestamps(updated: bool = False) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now())]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()))
    columns.append(sa.Column("deleted_at", sa.DateTime))
    return columns


def upgrade() -> None:
    # 1. Stock movements (append-only)
    op.create_table(
        "stock_movements",
        _id(),
        sa.Column("store_id", sa.String(100), nullable=False),
        sa.Column("product_id", sa.String(100), nullable=False),
        sa.Column("variant_id", sa.String(100), nullable=False),
        sa.Column("movement_type", sa.String(20), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("previous_stock", sa.Integer, nullable=False),
        sa.Column("new_stock", sa.Integer, nullable=False),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("reference_id", sa.String(100)),
        sa.Column("reference_type", sa.String(50), nullable=False),
        sa.Column("notes", sa.Text),
        sa.Column("user_id", sa.String(100), nullable=False, server_default="system"),
        sa.Column("occurred_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        *_timestamps(),
        sa.UniqueConstraint("store_id", "product_id", "variant_id", "sequence", name="uq_movement_key_sequence"),
        sa.CheckConstraint(
            "movement_type IN ('restock', 'sale', 'adjustment', 'transfer', 'return')",
            name="ck_movement_type",
        ),
        sa.CheckConstraint("quantity >= 0", name="ck_movement_quantity"),
        sa.CheckConstraint("new_stock >= 0", name="ck_movement_new_stock"),
    )
    op.create_index(
        "ix_movements_key_occurred",
        "stock_movements",
        ["store_id", "product_id", "variant_id", "occurred_at"],
    )
    op.create_index(
        "ix_movements_product_type",
        "stock_movements",
        ["product_id", "variant_id", "movement_type", "occurred_at"],
    )

    # 2. Stock positions (derived)
    op.create_table(
        "stock_positions",
        _id(),
        sa.Column("store_id", sa.String(100), nullable=False),
        sa.Column("product_id", sa.String(100), nullable=False),
        sa.Column("variant_id", sa.String(100), nullable=False),
        sa.Column("current_stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("minimum_stock", sa.Integer, nullable=False, server_default="10"),
        sa.Column("maximum_stock", sa.Integer, nullable=False, server_default="1000"),
        sa.Column("reserved_stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("available_stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("stock_turnover_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("days_of_inventory", sa.Float),
        sa.Column("low_stock_alert", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("overstock_alert", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_movement_sequence", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_movement_at", sa.DateTime),
        sa.Column("last_restock_at", sa.DateTime),
        sa.Column("last_sale_at", sa.DateTime),
        *_timestamps(updated=True),
        sa.UniqueConstraint("store_id", "product_id", "variant_id", name="uq_position_key"),
        sa.CheckConstraint("available_stock >= 0", name="ck_position_available"),
        sa.CheckConstraint("reserved_stock >= 0", name="ck_position_reserved"),
    )
    op.create_index("ix_positions_store", "stock_positions", ["store_id"])
    op.create_index("ix_positions_product", "stock_positions", ["product_id", "variant_id"])

    # 3. Product variants (catalog)
    op.create_table(
        "product_variants",
        _id(),
        sa.Column("product_id", sa.String(100), nullable=False),
        sa.Column("variant_id", sa.String(100), nullable=False),
        sa.Column("title", sa.String(255)),
        sa.Column("sku", sa.String(100)),
        sa.Column("brand_id", sa.String(100)),
        sa.Column("supplier_id", sa.String(100)),
        sa.Column("unit_cost", sa.Float, nullable=False, server_default="0"),
        sa.Column("unit_price", sa.Float, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("product_id", "variant_id", name="uq_variant_key"),
    )
    op.create_index("ix_variants_supplier", "product_variants", ["supplier_id"])

    # 4. Supplier promotions
    op.create_table(
        "supplier_promotions",
        _id(),
        sa.Column("supplier_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("promotion_type", sa.String(20), nullable=False, server_default="product"),
        sa.Column("discount_type", sa.String(20), nullable=False, server_default="percentage"),
        sa.Column("discount_value", sa.Float, nullable=False, server_default="0"),
        sa.Column("minimum_quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("maximum_quantity", sa.Integer),
        sa.Column("start_date", sa.DateTime, nullable=False),
        sa.Column("end_date", sa.DateTime, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("promotion_type IN ('brand', 'product', 'category')", name="ck_promotion_type"),
        sa.CheckConstraint(
            "discount_type IN ('percentage', 'fixed_amount', 'buy_x_get_y', 'free_shipping')",
            name="ck_promotion_discount_type",
        ),
        sa.CheckConstraint("status IN ('active', 'inactive', 'expired', 'scheduled')", name="ck_promotion_status"),
    )
    op.create_index("ix_supplier_promotions_window", "supplier_promotions", ["status", "start_date", "end_date"])

    # 5. Brand promotion links
    op.create_table(
        "brand_promotions",
        _id(),
        sa.Column(
            "supplier_promotion_id",
            UUID(as_uuid=True),
            sa.ForeignKey("supplier_promotions.id"),
            nullable=False,
        ),
        sa.Column("brand_id", sa.String(100), nullable=False),
        sa.Column("brand_discount_override", sa.Float),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    # 6. Product promotion links
    op.create_table(
        "product_promotions",
        _id(),
        sa.Column(
            "supplier_promotion_id",
            UUID(as_uuid=True),
            sa.ForeignKey("supplier_promotions.id"),
            nullable=False,
        ),
        sa.Column("product_id", sa.String(100), nullable=False),
        sa.Column("variant_id", sa.String(100)),
        sa.Column("product_discount_override", sa.Float),
        sa.Column("product_minimum_quantity", sa.Integer),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    # 7. Product analytics snapshots
    op.create_table(
        "product_analytics_snapshots",
        _id(),
        sa.Column("product_id", sa.String(100), nullable=False),
        sa.Column("variant_id", sa.String(100), nullable=False),
        sa.Column("sales_velocity", sa.Float, nullable=False),
        sa.Column("total_sales", sa.Integer, nullable=False),
        sa.Column("sales_period_days", sa.Integer, nullable=False),
        sa.Column("current_stock", sa.Integer, nullable=False),
        sa.Column("minimum_stock", sa.Integer, nullable=False),
        sa.Column("maximum_stock", sa.Integer, nullable=False),
        sa.Column("reserved_stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("available_stock", sa.Integer, nullable=False),
        sa.Column("stock_turnover_rate", sa.Float, nullable=False),
        sa.Column("days_of_cover", sa.Float),
        sa.Column("unit_cost", sa.Float, nullable=False),
        sa.Column("unit_price", sa.Float, nullable=False),
        sa.Column("profit_margin", sa.Float, nullable=False),
        sa.Column("total_revenue", sa.Float, nullable=False),
        sa.Column("total_profit", sa.Float, nullable=False),
        sa.Column("has_active_promotion", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("promotion_discount", sa.Float, nullable=False, server_default="0"),
        sa.Column("promotion_type", sa.String(20)),
        sa.Column("promotion_end_date", sa.DateTime),
        sa.Column("performance_score", sa.Float, nullable=False),
        sa.Column("risk_level", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("analytics_date", sa.Date, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "product_id",
            "variant_id",
            "sales_period_days",
            "analytics_date",
            name="uq_snapshot_period",
        ),
        sa.CheckConstraint("risk_level IN ('low', 'medium', 'high')", name="ck_snapshot_risk_level"),
    )

    # 8. AI analyses
    op.create_table(
        "ai_analyses",
        _id(),
        sa.Column("restock_order_id", sa.String(100), nullable=False),
        sa.Column("period_days", sa.Integer, nullable=False),
        sa.Column("analytics_date", sa.Date, nullable=False),
        sa.Column("request_data", sa.JSON),
        sa.Column("ai_model", sa.String(100), nullable=False),
        sa.Column("ai_response", sa.JSON),
        sa.Column("analysis_summary", sa.Text),
        sa.Column("recommended_products", sa.JSON),
        sa.Column("priority_scores", sa.JSON),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("confidence_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime),
        sa.Column("processed_at", sa.DateTime),
        *_timestamps(updated=True),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_ai_analysis_status",
        ),
        sa.CheckConstraint("confidence_score >= 0 AND confidence_score <= 1", name="ck_ai_analysis_confidence"),
    )
    op.create_index(
        "uq_ai_analysis_active_key",
        "ai_analyses",
        ["restock_order_id", "period_days", "analytics_date"],
        unique=True,
        postgresql_where=sa.text("status <> 'failed' AND deleted_at IS NULL"),
    )
    op.create_index("ix_ai_analyses_status", "ai_analyses", ["status", "started_at"])

    # 9. Restock recommendations
    op.create_table(
        "restock_recommendations",
        _id(),
        sa.Column("ai_analysis_id", UUID(as_uuid=True), sa.ForeignKey("ai_analyses.id"), nullable=False),
        sa.Column("product_id", sa.String(100), nullable=False),
        sa.Column("variant_id", sa.String(100), nullable=False),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("priority_score", sa.Integer, nullable=False),
        sa.Column("recommended_quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reasoning", sa.Text, nullable=False),
        sa.Column("confidence_level", sa.Float, nullable=False),
        sa.Column("source", sa.String(20), nullable=False, server_default="deterministic"),
        sa.Column("current_stock", sa.Integer, nullable=False),
        sa.Column("current_sales_velocity", sa.Float, nullable=False),
        sa.Column("current_profit_margin", sa.Float, nullable=False),
        sa.Column("has_active_promotion", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("promotion_details", sa.JSON),
        sa.Column("is_implemented", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("implemented_at", sa.DateTime),
        *_timestamps(),
        sa.CheckConstraint(
            "category IN ('fast_moving_low_stock', 'slow_moving_high_stock', 'high_profit_potential', "
            "'supplier_promotions', 'regular_restock')",
            name="ck_recommendation_category",
        ),
        sa.CheckConstraint(
            "source IN ('deterministic', 'ai_override', 'ai_confirmed')",
            name="ck_recommendation_source",
        ),
        sa.CheckConstraint("priority_score >= 1 AND priority_score <= 100", name="ck_recommendation_priority"),
        sa.CheckConstraint("confidence_level >= 0 AND confidence_level <= 1", name="ck_recommendation_confidence"),
        sa.CheckConstraint("recommended_quantity >= 0", name="ck_recommendation_quantity"),
    )
    op.create_index("ix_recommendations_analysis", "restock_recommendations", ["ai_analysis_id"])


def downgrade() -> None:
    op.drop_table("restock_recommendations")
    op.drop_table("ai_analyses")
    op.drop_table("product_analytics_snapshots")
    op.drop_table("product_promotions")
    op.drop_table("brand_promotions")
    op.drop_table("supplier_promotions")
    op.drop_table("product_variants")
    op.drop_table("stock_positions")
    op.drop_table("stock_movements")
