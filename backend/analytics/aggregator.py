"""
Analytics Aggregator — per-variant snapshots from ledger history.

Builds one ProductAnalyticsSnapshot per (product, variant, period,
analytics date) from:
  - sale movements in the trailing period (velocity, revenue, profit)
  - current stock positions summed across stores
  - catalog cost/price
  - active supplier promotions

Snapshots are immutable: a second request for the same period and date
returns the stored row, and later dates supersede rather than overwrite.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pandas as pd
import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.metrics import (
    CatalogDistribution,
    days_of_cover,
    performance_score,
    profit_margin,
    risk_level,
    sales_velocity,
)
from core.config import RestockPolicy, get_restock_policy
from core.errors import AnalysisValidationError
from db.models import ProductAnalyticsSnapshot, ProductVariant, StockMovement, StockPosition, SupplierPromotion
from restock.promotions import ApplicablePromotion, VariantRef, applicable_promotions, load_active_promotions

logger = structlog.get_logger()

FRAME_COLUMNS = [
    "product_id",
    "variant_id",
    "brand_id",
    "supplier_id",
    "unit_cost",
    "unit_price",
    "current_stock",
    "minimum_stock",
    "maximum_stock",
    "reserved_stock",
    "available_stock",
    "stock_turnover_rate",
    "total_sales",
]


@dataclass
class CatalogAnalytics:
    """Raw per-variant metrics for one period plus the catalog distribution."""

    period_days: int
    as_of: datetime
    frame: pd.DataFrame
    distribution: CatalogDistribution
    promotions: list[SupplierPromotion] = field(default_factory=list)

    def variant_ref(self, row) -> VariantRef:
        return VariantRef(
            product_id=row.product_id,
            variant_id=row.variant_id,
            brand_id=row.brand_id,
            supplier_id=row.supplier_id,
            unit_price=float(row.unit_price),
        )

    def promotions_for(self, row) -> list[ApplicablePromotion]:
        return applicable_promotions(self.variant_ref(row), self.promotions, self.as_of)


class AnalyticsAggregator:
    """Compute and persist product analytics snapshots."""

    def __init__(self, db: AsyncSession, policy: RestockPolicy | None = None):
        self.db = db
        self.policy = policy or get_restock_policy()

    def validate_period(self, period_days: int) -> None:
        if not self.policy.min_period_days <= period_days <= self.policy.max_period_days:
            raise AnalysisValidationError(
                f"Analysis period must be between {self.policy.min_period_days} and "
                f"{self.policy.max_period_days} days, got {period_days}"
            )

    async def compute_snapshot(
        self,
        product_id: str,
        variant_id: str,
        period_days: int,
        now: datetime | None = None,
    ) -> ProductAnalyticsSnapshot:
        """ComputeSnapshot for a single variant, normalized against the whole catalog."""
        now = now or datetime.utcnow()
        catalog = await self.load_catalog(period_days, now)
        match = catalog.frame[
            (catalog.frame["product_id"] == product_id) & (catalog.frame["variant_id"] == variant_id)
        ]
        if match.empty:
            raise AnalysisValidationError(f"No catalog entry or stock for product {product_id}, variant {variant_id}")
        row = next(match.itertuples(index=False))
        return await self._persist(self.build_snapshot(row, catalog))

    async def compute_catalog_snapshots(
        self,
        period_days: int,
        now: datetime | None = None,
        product_ids: list[str] | None = None,
    ) -> tuple[list[ProductAnalyticsSnapshot], CatalogAnalytics]:
        """Snapshots for every catalog variant (optionally restricted to some products)."""
        now = now or datetime.utcnow()
        catalog = await self.load_catalog(period_days, now)
        frame = catalog.frame
        if product_ids:
            frame = frame[frame["product_id"].isin(product_ids)]

        snapshots = []
        for row in frame.itertuples(index=False):
            snapshots.append(await self._persist(self.build_snapshot(row, catalog)))

        logger.info(
            "analytics.catalog_snapshots",
            period_days=period_days,
            analytics_date=now.date().isoformat(),
            snapshot_count=len(snapshots),
            catalog_size=catalog.distribution.product_count,
        )
        return snapshots, catalog

    async def load_catalog(self, period_days: int, now: datetime) -> CatalogAnalytics:
        self.validate_period(period_days)

        rows: dict[tuple[str, str], dict] = {}

        variants = await self.db.execute(select(ProductVariant).where(ProductVariant.deleted_at.is_(None)))
        for variant in variants.scalars().all():
            if variant.unit_cost is not None and variant.unit_cost < 0:
                raise AnalysisValidationError(f"Negative unit cost for {variant.product_id}/{variant.variant_id}")
            if variant.unit_price is not None and variant.unit_price < 0:
                raise AnalysisValidationError(f"Negative unit price for {variant.product_id}/{variant.variant_id}")
            rows[(variant.product_id, variant.variant_id)] = {
                "product_id": variant.product_id,
                "variant_id": variant.variant_id,
                "brand_id": variant.brand_id,
                "supplier_id": variant.supplier_id,
                "unit_cost": float(variant.unit_cost or 0.0),
                "unit_price": float(variant.unit_price or 0.0),
            }

        positions = await self.db.execute(
            select(
                StockPosition.product_id,
                StockPosition.variant_id,
                func.sum(StockPosition.current_stock),
                func.sum(StockPosition.minimum_stock),
                func.sum(StockPosition.maximum_stock),
                func.sum(StockPosition.reserved_stock),
                func.sum(StockPosition.available_stock),
                func.avg(StockPosition.stock_turnover_rate),
            )
            .where(StockPosition.deleted_at.is_(None))
            .group_by(StockPosition.product_id, StockPosition.variant_id)
        )
        for product_id, variant_id, current, minimum, maximum, reserved, available, turnover in positions.all():
            entry = rows.setdefault(
                (product_id, variant_id),
                {"product_id": product_id, "variant_id": variant_id, "brand_id": None, "supplier_id": None},
            )
            entry.update(
                current_stock=int(current or 0),
                minimum_stock=int(minimum or 0),
                maximum_stock=int(maximum or 0),
                reserved_stock=int(reserved or 0),
                available_stock=int(available or 0),
                stock_turnover_rate=round(float(turnover or 0.0), 4),
            )

        frame = pd.DataFrame(list(rows.values()), columns=FRAME_COLUMNS)
        frame = frame.drop(columns=["total_sales"]).merge(
            await self._sales_frame(period_days, now),
            on=["product_id", "variant_id"],
            how="left",
        )
        defaults = {
            "unit_cost": 0.0,
            "unit_price": 0.0,
            "current_stock": 0,
            "minimum_stock": self.policy.default_min_stock,
            "maximum_stock": self.policy.default_max_stock,
            "reserved_stock": 0,
            "available_stock": 0,
            "stock_turnover_rate": 0.0,
            "total_sales": 0,
        }
        frame = frame.fillna(value=defaults)
        frame = frame.astype(
            {
                "current_stock": int,
                "minimum_stock": int,
                "maximum_stock": int,
                "reserved_stock": int,
                "available_stock": int,
                "total_sales": int,
            }
        )
        frame["sales_velocity"] = [sales_velocity(total, period_days) for total in frame["total_sales"]]
        frame["profit_margin"] = [
            profit_margin(price, cost) for price, cost in zip(frame["unit_price"], frame["unit_cost"])
        ]
        frame = frame.sort_values(["product_id", "variant_id"]).reset_index(drop=True)

        return CatalogAnalytics(
            period_days=period_days,
            as_of=now,
            frame=frame,
            distribution=CatalogDistribution.from_frame(frame, self.policy.normalization_quantile),
            promotions=await load_active_promotions(self.db, now),
        )

    def build_snapshot(self, row, catalog: CatalogAnalytics) -> ProductAnalyticsSnapshot:
        velocity = float(row.sales_velocity)
        margin = float(row.profit_margin)
        turnover = float(row.stock_turnover_rate)
        promotions = catalog.promotions_for(row)
        best = promotions[0] if promotions else None

        return ProductAnalyticsSnapshot(
            product_id=row.product_id,
            variant_id=row.variant_id,
            sales_velocity=velocity,
            total_sales=int(row.total_sales),
            sales_period_days=catalog.period_days,
            current_stock=int(row.current_stock),
            minimum_stock=int(row.minimum_stock),
            maximum_stock=int(row.maximum_stock),
            reserved_stock=int(row.reserved_stock),
            available_stock=int(row.available_stock),
            stock_turnover_rate=turnover,
            days_of_cover=days_of_cover(int(row.available_stock), velocity),
            unit_cost=float(row.unit_cost),
            unit_price=float(row.unit_price),
            profit_margin=margin,
            total_revenue=round(int(row.total_sales) * float(row.unit_price), 2),
            total_profit=round(int(row.total_sales) * (float(row.unit_price) - float(row.unit_cost)), 2),
            has_active_promotion=best is not None,
            promotion_discount=best.discount_percent if best else 0.0,
            promotion_type=best.promotion_type if best else None,
            promotion_end_date=best.end_date if best else None,
            performance_score=performance_score(velocity, margin, turnover, catalog.distribution, self.policy),
            risk_level=risk_level(int(row.available_stock), velocity, self.policy),
            analytics_date=catalog.as_of.date(),
        )

    async def _sales_frame(self, period_days: int, now: datetime) -> pd.DataFrame:
        result = await self.db.execute(
            select(StockMovement.product_id, StockMovement.variant_id, StockMovement.quantity).where(
                StockMovement.movement_type == "sale",
                StockMovement.deleted_at.is_(None),
                StockMovement.occurred_at > now - timedelta(days=period_days),
                StockMovement.occurred_at <= now,
            )
        )
        sales = pd.DataFrame(result.all(), columns=["product_id", "variant_id", "quantity"])
        if sales.empty:
            return pd.DataFrame(columns=["product_id", "variant_id", "total_sales"])
        return (
            sales.groupby(["product_id", "variant_id"], as_index=False)["quantity"]
            .sum()
            .rename(columns={"quantity": "total_sales"})
        )

    async def _persist(self, snapshot: ProductAnalyticsSnapshot) -> ProductAnalyticsSnapshot:
        existing = await self._existing(snapshot)
        if existing is not None:
            return existing
        try:
            async with self.db.begin_nested():
                self.db.add(snapshot)
        except IntegrityError:
            # Another run stored the same period first; keep theirs.
            existing = await self._existing(snapshot)
            if existing is None:
                raise
            return existing

        logger.info(
            "analytics.snapshot_created",
            product_id=snapshot.product_id,
            variant_id=snapshot.variant_id,
            period_days=snapshot.sales_period_days,
            risk_level=snapshot.risk_level,
            performance_score=snapshot.performance_score,
        )
        return snapshot

    async def _existing(self, snapshot: ProductAnalyticsSnapshot) -> ProductAnalyticsSnapshot | None:
        result = await self.db.execute(
            select(ProductAnalyticsSnapshot).where(
                ProductAnalyticsSnapshot.product_id == snapshot.product_id,
                ProductAnalyticsSnapshot.variant_id == snapshot.variant_id,
                ProductAnalyticsSnapshot.sales_period_days == snapshot.sales_period_days,
                ProductAnalyticsSnapshot.analytics_date == snapshot.analytics_date,
                ProductAnalyticsSnapshot.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()
