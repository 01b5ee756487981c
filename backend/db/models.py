"""
RestockOps Database Models

Tables for the inventory ledger and the smart-restock engine.
Every table carries a deleted_at soft-delete column; default lookups
exclude soft-deleted rows.

Tables:
  Ledger (1-2):
  1. stock_movements              - Append-only movement log
  2. stock_positions              - Derived stock state per (store, product, variant)

  Consumed reference data (3-6):
  3. product_variants             - Catalog costs/prices, brand and supplier
  4. supplier_promotions          - Supplier promotion headers
  5. brand_promotions             - Brand links (+ discount override)
  6. product_promotions           - Product/variant links (+ discount override)

  Smart Restock (7-9):
  7. product_analytics_snapshots  - Immutable per-period analytics
  8. ai_analyses                  - One analysis run with its lifecycle
  9. restock_recommendations      - Recommendations owned by an analysis
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base

MOVEMENT_TYPES = ("restock", "sale", "adjustment", "transfer", "return")
RISK_LEVELS = ("low", "medium", "high")
ANALYSIS_STATUSES = ("pending", "processing", "completed", "failed")
RECOMMENDATION_CATEGORIES = (
    "fast_moving_low_stock",
    "slow_moving_high_stock",
    "high_profit_potential",
    "supplier_promotions",
    "regular_restock",
)
RECOMMENDATION_SOURCES = ("deterministic", "ai_override", "ai_confirmed")


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ─── 1. Stock Movements ─────────────────────────────────────────────────────


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(String(100), nullable=False)
    product_id = Column(String(100), nullable=False)
    variant_id = Column(String(100), nullable=False)
    movement_type = Column(String(20), nullable=False)
    # Always non-negative; the sign is implied by movement_type.
    # For adjustments this is the counted stock level.
    quantity = Column(Integer, nullable=False)
    previous_stock = Column(Integer, nullable=False)
    new_stock = Column(Integer, nullable=False)
    sequence = Column(Integer, nullable=False)
    reference_id = Column(String(100))
    reference_type = Column(String(50), nullable=False)
    notes = Column(Text)
    user_id = Column(String(100), nullable=False, default="system")
    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("store_id", "product_id", "variant_id", "sequence", name="uq_movement_key_sequence"),
        Index("ix_movements_key_occurred", "store_id", "product_id", "variant_id", "occurred_at"),
        Index("ix_movements_product_type", "product_id", "variant_id", "movement_type", "occurred_at"),
        CheckConstraint(_in_list("movement_type", MOVEMENT_TYPES), name="ck_movement_type"),
        CheckConstraint("quantity >= 0", name="ck_movement_quantity"),
        CheckConstraint("new_stock >= 0", name="ck_movement_new_stock"),
    )


# ─── 2. Stock Positions ─────────────────────────────────────────────────────


class StockPosition(Base):
    __tablename__ = "stock_positions"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(String(100), nullable=False)
    product_id = Column(String(100), nullable=False)
    variant_id = Column(String(100), nullable=False)
    current_stock = Column(Integer, nullable=False, default=0)
    minimum_stock = Column(Integer, nullable=False, default=10)
    maximum_stock = Column(Integer, nullable=False, default=1000)
    reserved_stock = Column(Integer, nullable=False, default=0)
    available_stock = Column(Integer, nullable=False, default=0)
    stock_turnover_rate = Column(Float, nullable=False, default=0.0)
    days_of_inventory = Column(Float)  # NULL when there were no sales in the window
    low_stock_alert = Column(Boolean, nullable=False, default=False)
    overstock_alert = Column(Boolean, nullable=False, default=False)
    last_movement_sequence = Column(Integer, nullable=False, default=0)
    last_movement_at = Column(DateTime)
    last_restock_at = Column(DateTime)
    last_sale_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("store_id", "product_id", "variant_id", name="uq_position_key"),
        Index("ix_positions_store", "store_id"),
        Index("ix_positions_product", "product_id", "variant_id"),
        CheckConstraint("available_stock >= 0", name="ck_position_available"),
        CheckConstraint("reserved_stock >= 0", name="ck_position_reserved"),
    )


# ─── 3. Product Variants ────────────────────────────────────────────────────


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(String(100), nullable=False)
    variant_id = Column(String(100), nullable=False)
    title = Column(String(255))
    sku = Column(String(100))
    brand_id = Column(String(100))
    supplier_id = Column(String(100))
    unit_cost = Column(Float, nullable=False, default=0.0)
    unit_price = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("product_id", "variant_id", name="uq_variant_key"),
        Index("ix_variants_supplier", "supplier_id"),
    )


# ─── 4-6. Promotions ────────────────────────────────────────────────────────


class SupplierPromotion(Base):
    __tablename__ = "supplier_promotions"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    supplier_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    promotion_type = Column(String(20), nullable=False, default="product")  # brand, product, category
    discount_type = Column(String(20), nullable=False, default="percentage")
    discount_value = Column(Float, nullable=False, default=0.0)
    minimum_quantity = Column(Integer, nullable=False, default=1)
    maximum_quantity = Column(Integer)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default="active")
    priority = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("ix_supplier_promotions_window", "status", "start_date", "end_date"),
        CheckConstraint("promotion_type IN ('brand', 'product', 'category')", name="ck_promotion_type"),
        CheckConstraint(
            "discount_type IN ('percentage', 'fixed_amount', 'buy_x_get_y', 'free_shipping')",
            name="ck_promotion_discount_type",
        ),
        CheckConstraint(
            "status IN ('active', 'inactive', 'expired', 'scheduled')",
            name="ck_promotion_status",
        ),
    )

    brand_links = relationship("BrandPromotion", back_populates="promotion", lazy="selectin")
    product_links = relationship("ProductPromotion", back_populates="promotion", lazy="selectin")


class BrandPromotion(Base):
    __tablename__ = "brand_promotions"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    supplier_promotion_id = Column(GUID(), ForeignKey("supplier_promotions.id"), nullable=False)
    brand_id = Column(String(100), nullable=False)
    brand_discount_override = Column(Float)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    promotion = relationship("SupplierPromotion", back_populates="brand_links")


class ProductPromotion(Base):
    __tablename__ = "product_promotions"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    supplier_promotion_id = Column(GUID(), ForeignKey("supplier_promotions.id"), nullable=False)
    product_id = Column(String(100), nullable=False)
    variant_id = Column(String(100))  # NULL = every variant of the product
    product_discount_override = Column(Float)
    product_minimum_quantity = Column(Integer)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    promotion = relationship("SupplierPromotion", back_populates="product_links")


# ─── 7. Product Analytics Snapshots ─────────────────────────────────────────


class ProductAnalyticsSnapshot(Base):
    __tablename__ = "product_analytics_snapshots"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(String(100), nullable=False)
    variant_id = Column(String(100), nullable=False)

    sales_velocity = Column(Float, nullable=False)  # units sold per day
    total_sales = Column(Integer, nullable=False)
    sales_period_days = Column(Integer, nullable=False)

    current_stock = Column(Integer, nullable=False)
    minimum_stock = Column(Integer, nullable=False)
    maximum_stock = Column(Integer, nullable=False)
    reserved_stock = Column(Integer, nullable=False, default=0)
    available_stock = Column(Integer, nullable=False)
    stock_turnover_rate = Column(Float, nullable=False)
    days_of_cover = Column(Float)

    unit_cost = Column(Float, nullable=False)
    unit_price = Column(Float, nullable=False)
    profit_margin = Column(Float, nullable=False)
    total_revenue = Column(Float, nullable=False)
    total_profit = Column(Float, nullable=False)

    has_active_promotion = Column(Boolean, nullable=False, default=False)
    promotion_discount = Column(Float, nullable=False, default=0.0)
    promotion_type = Column(String(20))
    promotion_end_date = Column(DateTime)

    performance_score = Column(Float, nullable=False)  # 0-100
    risk_level = Column(String(10), nullable=False, default="medium")
    analytics_date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint(
            "product_id",
            "variant_id",
            "sales_period_days",
            "analytics_date",
            name="uq_snapshot_period",
        ),
        CheckConstraint(_in_list("risk_level", RISK_LEVELS), name="ck_snapshot_risk_level"),
    )


# ─── 8. AI Analyses ─────────────────────────────────────────────────────────


class AiAnalysis(Base):
    __tablename__ = "ai_analyses"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    restock_order_id = Column(String(100), nullable=False)
    period_days = Column(Integer, nullable=False)
    analytics_date = Column(Date, nullable=False)

    request_data = Column(JSON)
    ai_model = Column(String(100), nullable=False)
    ai_response = Column(JSON)
    analysis_summary = Column(Text)

    recommended_products = Column(JSON)
    priority_scores = Column(JSON)

    status = Column(String(20), nullable=False, default="pending")
    confidence_score = Column(Float, nullable=False, default=0.0)

    started_at = Column(DateTime)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        # At most one non-failed analysis per (restock order, period, date).
        Index(
            "uq_ai_analysis_active_key",
            "restock_order_id",
            "period_days",
            "analytics_date",
            unique=True,
            postgresql_where=text("status <> 'failed' AND deleted_at IS NULL"),
            sqlite_where=text("status <> 'failed' AND deleted_at IS NULL"),
        ),
        Index("ix_ai_analyses_status", "status", "started_at"),
        CheckConstraint(_in_list("status", ANALYSIS_STATUSES), name="ck_ai_analysis_status"),
        CheckConstraint("confidence_score >= 0 AND confidence_score <= 1", name="ck_ai_analysis_confidence"),
    )


# ─── 9. Restock Recommendations ─────────────────────────────────────────────


class RestockRecommendation(Base):
    __tablename__ = "restock_recommendations"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    ai_analysis_id = Column(GUID(), ForeignKey("ai_analyses.id"), nullable=False)
    product_id = Column(String(100), nullable=False)
    variant_id = Column(String(100), nullable=False)

    category = Column(String(30), nullable=False)
    priority_score = Column(Integer, nullable=False)
    recommended_quantity = Column(Integer, nullable=False, default=0)
    reasoning = Column(Text, nullable=False)
    confidence_level = Column(Float, nullable=False)
    source = Column(String(20), nullable=False, default="deterministic")

    current_stock = Column(Integer, nullable=False)
    current_sales_velocity = Column(Float, nullable=False)
    current_profit_margin = Column(Float, nullable=False)

    has_active_promotion = Column(Boolean, nullable=False, default=False)
    promotion_details = Column(JSON)

    is_implemented = Column(Boolean, nullable=False, default=False)
    implemented_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("ix_recommendations_analysis", "ai_analysis_id"),
        CheckConstraint(_in_list("category", RECOMMENDATION_CATEGORIES), name="ck_recommendation_category"),
        CheckConstraint(_in_list("source", RECOMMENDATION_SOURCES), name="ck_recommendation_source"),
        CheckConstraint("priority_score >= 1 AND priority_score <= 100", name="ck_recommendation_priority"),
        CheckConstraint("confidence_level >= 0 AND confidence_level <= 1", name="ck_recommendation_confidence"),
        CheckConstraint("recommended_quantity >= 0", name="ck_recommendation_quantity"),
    )
