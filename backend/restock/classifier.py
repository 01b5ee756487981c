"""
Deterministic Restock Classifier

Assigns every analytics snapshot to exactly one recommendation category
with a baseline priority score. Rules are an ordered decision list;
the first matching rule wins:

  1. active promotion for the variant          → supplier_promotions
  2. high risk and velocity above catalog median → fast_moving_low_stock
  3. above maximum and velocity below median    → slow_moving_high_stock
  4. positive top-quartile margin, available < 2×min → high_profit_potential
  5. otherwise                                   → regular_restock

The priority score is placed inside the category's band according to how
far the triggering condition exceeds its threshold (severity in [0, 1]).
No network access, no database: safe to run anywhere.
"""

from dataclasses import dataclass, field
from typing import Any

from analytics.metrics import CatalogDistribution, days_of_cover, recommended_quantity
from core.config import RestockPolicy, get_restock_policy
from restock.promotions import ApplicablePromotion

# (low, high) priority band per category
PRIORITY_BANDS = {
    "fast_moving_low_stock": (60, 100),
    "supplier_promotions": (40, 90),
    "high_profit_potential": (40, 80),
    "regular_restock": (1, 50),
    "slow_moving_high_stock": (1, 30),
}

# Promotions at or above this percentage discount score at the top of their band.
FULL_PROMOTION_DISCOUNT = 50.0


@dataclass
class Classification:
    product_id: str
    variant_id: str
    category: str
    priority_score: int
    recommended_quantity: int
    reasoning: str
    confidence_level: float
    source: str = "deterministic"
    promotion: dict[str, Any] | None = None
    context: list[str] = field(default_factory=list)

    @property
    def full_reasoning(self) -> str:
        if not self.context:
            return self.reasoning
        return " ".join([self.reasoning, *self.context])


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return min(max(value, lo), hi)


def priority_in_band(category: str, severity: float) -> int:
    lo, hi = PRIORITY_BANDS[category]
    return int(_clamp(round(lo + (hi - lo) * _clamp(severity)), 1, 100))


def _confidence(severity: float) -> float:
    return round(0.5 + 0.5 * _clamp(severity), 2)


def classify(
    snapshot,
    promotions: list[ApplicablePromotion] | None,
    distribution: CatalogDistribution,
    policy: RestockPolicy | None = None,
) -> Classification:
    """Classify one snapshot. `promotions` are those applicable to its variant, best first."""
    policy = policy or get_restock_policy()

    velocity = float(snapshot.sales_velocity)
    available = int(snapshot.available_stock)
    current = int(snapshot.current_stock)
    minimum = int(snapshot.minimum_stock)
    maximum = int(snapshot.maximum_stock)
    margin = float(snapshot.profit_margin)
    cover = days_of_cover(available, velocity)
    base_quantity = recommended_quantity(available, minimum, maximum, velocity, policy)

    def result(category: str, severity: float, reasoning: str, quantity: int, promotion=None) -> Classification:
        return Classification(
            product_id=snapshot.product_id,
            variant_id=snapshot.variant_id,
            category=category,
            priority_score=priority_in_band(category, severity),
            recommended_quantity=max(0, int(quantity)),
            reasoning=reasoning,
            confidence_level=_confidence(severity),
            promotion=promotion,
        )

    best = promotions[0] if promotions else None
    if best is not None or snapshot.has_active_promotion:
        discount = best.discount_percent if best else float(snapshot.promotion_discount or 0.0)
        quantity = base_quantity
        if best is not None:
            quantity = max(quantity, best.minimum_quantity)
        name = f"'{best.name}' " if best else ""
        return result(
            "supplier_promotions",
            discount / FULL_PROMOTION_DISCOUNT,
            f"Active supplier promotion {name}({discount:.1f}% off) applies to this variant",
            quantity,
            promotion=best.as_dict() if best else None,
        )

    if snapshot.risk_level == "high" and velocity > distribution.median_velocity:
        # cover is not None: high risk implies demand
        severity = 1.0 - (cover or 0.0) / policy.high_risk_days
        return result(
            "fast_moving_low_stock",
            severity,
            f"High sales velocity ({velocity:.2f} units/day) with only {cover:.1f} days of stock remaining",
            base_quantity,
        )

    if current > maximum and velocity < distribution.median_velocity:
        overage = (current - maximum) / maximum if maximum > 0 else 1.0
        return result(
            "slow_moving_high_stock",
            overage,
            f"Stock of {current} exceeds maximum {maximum} while velocity ({velocity:.2f} units/day) "
            f"is below the catalog median ({distribution.median_velocity:.2f})",
            0,
        )

    if margin > 0 and margin >= distribution.margin_top_quartile and available < minimum * 2:
        threshold = minimum * 2
        return result(
            "high_profit_potential",
            (threshold - available) / threshold,
            f"Top-quartile profit margin ({margin:.0%}) with {available} units available "
            f"against a threshold of {threshold}",
            max(base_quantity, threshold - available),
        )

    shortfall = (minimum - available) / minimum if minimum > 0 else 0.0
    if cover is None:
        reasoning = f"No sales in the last {snapshot.sales_period_days} days; {available} units available"
    else:
        reasoning = f"{cover:.1f} days of cover at {velocity:.2f} units/day; {available} units available"
    return result("regular_restock", shortfall, reasoning, base_quantity)


def classify_all(
    snapshots: list,
    promotions_by_key: dict[tuple[str, str], list[ApplicablePromotion]],
    distribution: CatalogDistribution,
    policy: RestockPolicy | None = None,
) -> list[Classification]:
    policy = policy or get_restock_policy()
    return [
        classify(s, promotions_by_key.get((s.product_id, s.variant_id), []), distribution, policy)
        for s in snapshots
    ]
