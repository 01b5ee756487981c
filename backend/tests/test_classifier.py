"""
Tests for the deterministic restock classifier.
"""

import random
from datetime import date, datetime

import pytest

from analytics.metrics import CatalogDistribution, risk_level
from core.config import RestockPolicy
from db.models import RECOMMENDATION_CATEGORIES, ProductAnalyticsSnapshot
from restock.classifier import PRIORITY_BANDS, classify, classify_all, priority_in_band
from restock.promotions import ApplicablePromotion

POLICY = RestockPolicy()
DISTRIBUTION = CatalogDistribution(
    median_velocity=2.0,
    margin_top_quartile=0.6,
    velocity_reference=8.0,
    turnover_reference=1.0,
    product_count=40,
)


def _snapshot(**overrides) -> ProductAnalyticsSnapshot:
    fields = dict(
        product_id="prod-1",
        variant_id="var-1",
        sales_velocity=2.0,
        total_sales=60,
        sales_period_days=30,
        current_stock=40,
        minimum_stock=10,
        maximum_stock=200,
        reserved_stock=0,
        available_stock=40,
        stock_turnover_rate=0.5,
        unit_cost=5.0,
        unit_price=8.0,
        profit_margin=0.375,
        total_revenue=480.0,
        total_profit=180.0,
        has_active_promotion=False,
        promotion_discount=0.0,
        performance_score=50.0,
        analytics_date=date(2026, 3, 2),
    )
    fields.update(overrides)
    if "risk_level" not in overrides:
        fields["risk_level"] = risk_level(fields["available_stock"], fields["sales_velocity"], POLICY)
    return ProductAnalyticsSnapshot(**fields)


def _promotion(discount: float = 20.0, minimum_quantity: int = 1) -> ApplicablePromotion:
    return ApplicablePromotion(
        promotion_id="promo-1",
        supplier_id="supplier-a",
        name="Spring sale",
        scope="supplier",
        promotion_type="product",
        discount_type="percentage",
        discount_value=discount,
        discount_percent=discount,
        minimum_quantity=minimum_quantity,
        start_date=datetime(2026, 3, 1),
        end_date=datetime(2026, 3, 31),
        priority=1,
    )


class TestDecisionList:
    def test_fast_moving_low_stock_example(self):
        snapshot = _snapshot(sales_velocity=10.0, current_stock=15, available_stock=15, minimum_stock=20)
        assert snapshot.risk_level == "high"

        result = classify(snapshot, [], DISTRIBUTION, POLICY)

        assert result.category == "fast_moving_low_stock"
        # 1.5 of 3 days covered → halfway into the 60-100 band
        assert result.priority_score == 80
        assert result.confidence_level == 0.75
        assert result.recommended_quantity == 185
        assert "1.5 days" in result.reasoning

    def test_promotion_wins_over_everything(self):
        snapshot = _snapshot(sales_velocity=10.0, current_stock=15, available_stock=15, minimum_stock=20)
        result = classify(snapshot, [_promotion(discount=25.0, minimum_quantity=500)], DISTRIBUTION, POLICY)

        assert result.category == "supplier_promotions"
        assert result.priority_score == 65
        assert result.recommended_quantity == 500
        assert result.promotion["name"] == "Spring sale"

    def test_snapshot_flag_without_resolved_promotion(self):
        result = classify(_snapshot(has_active_promotion=True, promotion_discount=10.0), None, DISTRIBUTION, POLICY)
        assert result.category == "supplier_promotions"
        assert result.promotion is None

    def test_slow_moving_high_stock(self):
        snapshot = _snapshot(sales_velocity=0.5, current_stock=300, available_stock=300, maximum_stock=200)
        result = classify(snapshot, [], DISTRIBUTION, POLICY)

        assert result.category == "slow_moving_high_stock"
        assert result.recommended_quantity == 0
        assert 1 <= result.priority_score <= 30

    def test_high_stock_but_fast_is_not_slow_mover(self):
        snapshot = _snapshot(sales_velocity=3.0, current_stock=300, available_stock=300, maximum_stock=200)
        assert classify(snapshot, [], DISTRIBUTION, POLICY).category == "regular_restock"

    def test_high_profit_potential(self):
        snapshot = _snapshot(profit_margin=0.7, available_stock=12, current_stock=12, minimum_stock=10)
        result = classify(snapshot, [], DISTRIBUTION, POLICY)

        assert result.category == "high_profit_potential"
        # 12 of a 20-unit threshold → severity 0.4 in the 40-80 band
        assert result.priority_score == 56
        assert result.recommended_quantity >= 8

    def test_zero_margin_is_never_high_profit(self):
        # a catalog sold at cost has a top quartile of zero
        at_cost = CatalogDistribution(median_velocity=2.0, margin_top_quartile=0.0, velocity_reference=8.0)
        snapshot = _snapshot(profit_margin=0.0, available_stock=12, current_stock=12, minimum_stock=10)

        assert classify(snapshot, [], at_cost, POLICY).category == "regular_restock"
        thin = _snapshot(profit_margin=0.05, available_stock=12, current_stock=12, minimum_stock=10)
        assert classify(thin, [], at_cost, POLICY).category == "high_profit_potential"

    def test_high_risk_but_slow_is_not_fast_mover(self):
        snapshot = _snapshot(sales_velocity=1.0, current_stock=2, available_stock=2, minimum_stock=10)
        assert snapshot.risk_level == "high"
        assert classify(snapshot, [], DISTRIBUTION, POLICY).category == "regular_restock"

    def test_regular_restock_without_sales(self):
        snapshot = _snapshot(sales_velocity=0.0, total_sales=0, available_stock=4, current_stock=4)
        result = classify(snapshot, [], DISTRIBUTION, POLICY)

        assert result.category == "regular_restock"
        assert result.recommended_quantity == 6
        assert "No sales" in result.reasoning

    def test_thresholds_are_policy(self):
        snapshot = _snapshot(sales_velocity=10.0, current_stock=40, available_stock=40)
        assert classify(snapshot, [], DISTRIBUTION, POLICY).category == "regular_restock"

        cautious = RestockPolicy(high_risk_days=5.0)
        tighter = _snapshot(
            sales_velocity=10.0,
            current_stock=40,
            available_stock=40,
            risk_level=risk_level(40, 10.0, cautious),
        )
        assert classify(tighter, [], DISTRIBUTION, cautious).category == "fast_moving_low_stock"


class TestScores:
    @pytest.mark.parametrize("category", list(PRIORITY_BANDS))
    def test_priority_stays_in_band(self, category):
        lo, hi = PRIORITY_BANDS[category]
        assert priority_in_band(category, -3) == max(lo, 1)
        assert priority_in_band(category, 7) == hi

    def test_every_snapshot_gets_exactly_one_category(self):
        rng = random.Random(11)
        snapshots = []
        for index in range(200):
            velocity = rng.choice([0.0, 0.2, 1.0, 2.0, 5.0, 40.0])
            current = rng.randint(0, 500)
            reserved = rng.randint(0, current)
            snapshots.append(
                _snapshot(
                    product_id=f"prod-{index}",
                    sales_velocity=velocity,
                    current_stock=current,
                    reserved_stock=reserved,
                    available_stock=current - reserved,
                    minimum_stock=rng.randint(0, 50),
                    maximum_stock=rng.randint(50, 400),
                    profit_margin=rng.random(),
                    has_active_promotion=rng.random() < 0.1,
                )
            )

        results = classify_all(snapshots, {}, DISTRIBUTION, POLICY)

        assert len(results) == len(snapshots)
        for result in results:
            assert result.category in RECOMMENDATION_CATEGORIES
            assert 1 <= result.priority_score <= 100
            assert 0.5 <= result.confidence_level <= 1.0
            assert result.recommended_quantity >= 0

    def test_classify_all_uses_promotions_by_key(self):
        snapshots = [_snapshot(product_id="a"), _snapshot(product_id="b")]
        results = classify_all(snapshots, {("b", "var-1"): [_promotion()]}, DISTRIBUTION, POLICY)
        assert [r.category for r in results] == ["regular_restock", "supplier_promotions"]

    def test_full_reasoning_appends_context(self):
        result = classify(_snapshot(), [], DISTRIBUTION, POLICY)
        result.context.append("AI suggested slow_moving_high_stock.")
        assert result.full_reasoning.endswith("AI suggested slow_moving_high_stock.")
        assert result.full_reasoning.startswith(result.reasoning)
