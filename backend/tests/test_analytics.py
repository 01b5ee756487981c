"""
Tests for analytics math and the snapshot aggregator.
"""

from datetime import timedelta

import pandas as pd
import pytest
from sqlalchemy import func, select

from analytics.aggregator import AnalyticsAggregator
from analytics.metrics import (
    CatalogDistribution,
    days_of_cover,
    performance_score,
    profit_margin,
    recommended_quantity,
    risk_level,
    sales_velocity,
)
from core.config import RestockPolicy
from core.errors import AnalysisValidationError
from db.models import ProductAnalyticsSnapshot, ProductVariant, SupplierPromotion

POLICY = RestockPolicy()


class TestMetrics:
    def test_sales_velocity(self):
        assert sales_velocity(300, 30) == 10.0
        assert sales_velocity(0, 7) == 0.0
        with pytest.raises(ValueError):
            sales_velocity(10, 0)

    def test_profit_margin_is_clamped(self):
        assert profit_margin(25.0, 20.0) == 0.2
        assert profit_margin(0.0, 5.0) == 0.0
        assert profit_margin(10.0, 15.0) == 0.0
        assert profit_margin(10.0, -5.0) == 1.0

    def test_risk_levels(self):
        # 15 units at 10/day covers 1.5 days
        assert risk_level(15, 10.0, POLICY) == "high"
        assert risk_level(100, 10.0, POLICY) == "medium"
        assert risk_level(301, 10.0, POLICY) == "low"
        assert risk_level(5, 0.0, POLICY) == "low"
        assert days_of_cover(15, 10.0) == 1.5
        assert days_of_cover(15, 0.0) is None

    def test_recommended_quantity(self):
        # target = max(20, 10 × 30) = 300, capped at 400
        assert recommended_quantity(15, 20, 400, 10.0, POLICY) == 285
        # capped at maximum
        assert recommended_quantity(15, 20, 100, 10.0, POLICY) == 85
        # no demand: fill to minimum
        assert recommended_quantity(4, 10, 100, 0.0, POLICY) == 6
        # already above target
        assert recommended_quantity(500, 10, 1000, 1.0, POLICY) == 0

    def test_distribution_from_frame(self):
        frame = pd.DataFrame(
            {
                "sales_velocity": [10.0, 0.1, 0.4],
                "profit_margin": [0.2, 0.5, 0.8],
                "stock_turnover_rate": [2.0, 0.1, 0.5],
            }
        )
        distribution = CatalogDistribution.from_frame(frame)
        assert distribution.median_velocity == 0.4
        assert distribution.margin_top_quartile == pytest.approx(0.65)
        assert distribution.product_count == 3

    def test_empty_distribution(self):
        distribution = CatalogDistribution.from_frame(
            pd.DataFrame(columns=["sales_velocity", "profit_margin", "stock_turnover_rate"])
        )
        assert distribution.product_count == 0

    @pytest.mark.parametrize("field", ["velocity", "margin", "turnover"])
    def test_performance_score_is_monotonic(self, field):
        distribution = CatalogDistribution(velocity_reference=5.0, turnover_reference=2.0)
        base = {"velocity": 1.0, "margin": 0.3, "turnover": 0.5}
        previous = None
        for step in range(0, 12):
            values = dict(base)
            values[field] = step * 0.5 if field != "margin" else step / 11
            score = performance_score(
                values["velocity"], values["margin"], values["turnover"], distribution, POLICY
            )
            assert 0 <= score <= 100
            if previous is not None:
                assert score >= previous
            previous = score

    def test_performance_score_bounds(self):
        distribution = CatalogDistribution(velocity_reference=5.0, turnover_reference=2.0)
        assert performance_score(0, 0, 0, distribution, POLICY) == 0.0
        assert performance_score(50, 1.0, 50, distribution, POLICY) == 100.0


class TestAggregator:
    @pytest.mark.asyncio
    async def test_catalog_snapshots(self, test_db, seeded_catalog, policy):
        aggregator = AnalyticsAggregator(test_db, policy)
        snapshots, catalog = await aggregator.compute_catalog_snapshots(30, seeded_catalog["now"])
        await test_db.commit()

        by_product = {s.product_id: s for s in snapshots}
        assert set(by_product) == {"dog-food", "cat-toy", "bird-seed"}

        dog = by_product["dog-food"]
        assert dog.total_sales == 300
        assert dog.sales_velocity == 10.0
        assert dog.current_stock == 15
        assert dog.available_stock == 15
        assert dog.minimum_stock == 20
        assert dog.profit_margin == 0.2
        assert dog.total_revenue == 7500.0
        assert dog.total_profit == 1500.0
        assert dog.risk_level == "high"
        assert dog.days_of_cover == 1.5
        assert dog.analytics_date == seeded_catalog["now"].date()

        assert by_product["cat-toy"].risk_level == "low"
        assert by_product["bird-seed"].risk_level == "medium"
        assert catalog.distribution.median_velocity == 0.4
        assert catalog.distribution.product_count == 3

    @pytest.mark.asyncio
    async def test_sales_outside_period_are_ignored(self, test_db, seeded_catalog, policy):
        aggregator = AnalyticsAggregator(test_db, policy)
        snapshot = await aggregator.compute_snapshot("dog-food", "large", 7, seeded_catalog["now"])
        # one sale a day; the trailing 7 days hold 7 of them
        assert snapshot.total_sales == 70
        assert snapshot.sales_velocity == 10.0
        assert snapshot.sales_period_days == 7

    @pytest.mark.asyncio
    async def test_snapshot_is_created_once_per_period_and_date(self, test_db, seeded_catalog, policy):
        aggregator = AnalyticsAggregator(test_db, policy)
        now = seeded_catalog["now"]
        first = await aggregator.compute_snapshot("bird-seed", "1kg", 30, now)
        await seeded_catalog["ledger"].record_movement(
            seeded_catalog["bird"], "sale", 5, occurred_at=now - timedelta(minutes=5)
        )
        second = await aggregator.compute_snapshot("bird-seed", "1kg", 30, now)
        later = await aggregator.compute_snapshot("bird-seed", "1kg", 30, now + timedelta(days=1))

        assert second.id == first.id
        assert second.total_sales == 12
        assert later.id != first.id
        # the first sale has left the window by the next day
        assert later.total_sales == 16

        count = await test_db.scalar(select(func.count()).select_from(ProductAnalyticsSnapshot))
        assert count == 2

    @pytest.mark.asyncio
    async def test_promotion_is_reflected_in_snapshot(self, test_db, seeded_catalog, policy):
        now = seeded_catalog["now"]
        test_db.add(
            SupplierPromotion(
                supplier_id="supplier-b",
                name="Spring toys",
                promotion_type="product",
                discount_type="percentage",
                discount_value=15.0,
                start_date=now - timedelta(days=3),
                end_date=now + timedelta(days=10),
            )
        )
        await test_db.flush()

        aggregator = AnalyticsAggregator(test_db, policy)
        snapshot = await aggregator.compute_snapshot("cat-toy", "mouse", 30, now)
        assert snapshot.has_active_promotion is True
        assert snapshot.promotion_discount == 15.0
        assert snapshot.promotion_end_date == now + timedelta(days=10)

    @pytest.mark.asyncio
    async def test_variant_without_stock_gets_policy_thresholds(self, test_db, seeded_catalog, policy):
        test_db.add(ProductVariant(product_id="new-item", variant_id="std", unit_cost=1.0, unit_price=3.0))
        await test_db.flush()

        aggregator = AnalyticsAggregator(test_db, policy)
        snapshot = await aggregator.compute_snapshot("new-item", "std", 30, seeded_catalog["now"])
        assert snapshot.current_stock == 0
        assert snapshot.minimum_stock == policy.default_min_stock
        assert snapshot.maximum_stock == policy.default_max_stock
        assert snapshot.sales_velocity == 0.0
        assert snapshot.risk_level == "low"

    @pytest.mark.asyncio
    async def test_invalid_period(self, test_db, policy, now):
        aggregator = AnalyticsAggregator(test_db, policy)
        with pytest.raises(AnalysisValidationError):
            await aggregator.compute_catalog_snapshots(3, now)
        with pytest.raises(AnalysisValidationError):
            await aggregator.compute_catalog_snapshots(400, now)

    @pytest.mark.asyncio
    async def test_unknown_variant(self, test_db, seeded_catalog, policy):
        aggregator = AnalyticsAggregator(test_db, policy)
        with pytest.raises(AnalysisValidationError):
            await aggregator.compute_snapshot("ghost", "none", 30, seeded_catalog["now"])

    @pytest.mark.asyncio
    async def test_negative_cost_fails_validation(self, test_db, policy, now):
        test_db.add(ProductVariant(product_id="bad", variant_id="v", unit_cost=-1.0, unit_price=3.0))
        await test_db.flush()
        with pytest.raises(AnalysisValidationError, match="Negative unit cost"):
            await AnalyticsAggregator(test_db, policy).compute_catalog_snapshots(30, now)
