"""
Product analytics math.

Pure functions behind ProductAnalyticsSnapshot. Catalog-relative
figures (performance score, classifier medians) are normalized against a
CatalogDistribution computed once per analysis period.
"""

import math
from dataclasses import dataclass

import numpy as np
import pandas as pd

from core.config import RestockPolicy


@dataclass(frozen=True)
class CatalogDistribution:
    """Catalog-wide reference points for one analysis period."""

    median_velocity: float = 0.0
    margin_top_quartile: float = 1.0
    velocity_reference: float = 0.0
    turnover_reference: float = 0.0
    product_count: int = 0

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, quantile: float = 0.9) -> "CatalogDistribution":
        """Build from a frame with sales_velocity, profit_margin and stock_turnover_rate columns."""
        if frame.empty:
            return cls()
        velocity = frame["sales_velocity"].to_numpy(dtype=float)
        margin = frame["profit_margin"].to_numpy(dtype=float)
        turnover = frame["stock_turnover_rate"].to_numpy(dtype=float)
        return cls(
            median_velocity=float(np.median(velocity)),
            margin_top_quartile=float(np.quantile(margin, 0.75)),
            velocity_reference=float(np.quantile(velocity, quantile)),
            turnover_reference=float(np.quantile(turnover, quantile)),
            product_count=int(len(frame)),
        )


def sales_velocity(total_sales: int, period_days: int) -> float:
    if period_days <= 0:
        raise ValueError(f"period_days must be positive, got {period_days}")
    return round(total_sales / period_days, 4)


def profit_margin(unit_price: float, unit_cost: float) -> float:
    """(price − cost) / price clamped to [0, 1]; a zero price yields 0."""
    if not unit_price or unit_price <= 0:
        return 0.0
    margin = (unit_price - unit_cost) / unit_price
    return round(min(max(margin, 0.0), 1.0), 4)


def days_of_cover(available_stock: int, velocity: float) -> float | None:
    """Days the available stock lasts at the current velocity; None without demand."""
    if velocity <= 0:
        return None
    return round(max(available_stock, 0) / velocity, 2)


def risk_level(available_stock: int, velocity: float, policy: RestockPolicy) -> str:
    """
    high:   covers fewer than high_risk_days of projected sales
    low:    covers more than low_risk_days (or there is no demand)
    medium: otherwise
    """
    cover = days_of_cover(available_stock, velocity)
    if cover is None:
        return "low"
    if cover < policy.high_risk_days:
        return "high"
    if cover > policy.low_risk_days:
        return "low"
    return "medium"


def _normalize(value: float, reference: float) -> float:
    if value <= 0:
        return 0.0
    if reference <= 0:
        return 1.0
    return min(value / reference, 1.0)


def performance_score(
    velocity: float,
    margin: float,
    turnover: float,
    distribution: CatalogDistribution,
    policy: RestockPolicy,
) -> float:
    """
    Weighted 0-100 score, non-decreasing in velocity, margin and turnover.

    Velocity and turnover are normalized against the catalog's
    `normalization_quantile` and saturate above it.
    """
    weights = policy.weight_velocity + policy.weight_margin + policy.weight_turnover
    if weights <= 0:
        return 0.0
    combined = (
        policy.weight_velocity * _normalize(velocity, distribution.velocity_reference)
        + policy.weight_margin * min(max(margin, 0.0), 1.0)
        + policy.weight_turnover * _normalize(turnover, distribution.turnover_reference)
    )
    return round(100.0 * combined / weights, 2)


def recommended_quantity(
    available_stock: int,
    minimum_stock: int,
    maximum_stock: int,
    velocity: float,
    policy: RestockPolicy,
) -> int:
    """Units needed to reach target cover, capped at maximum stock."""
    target = max(minimum_stock, math.ceil(velocity * policy.target_cover_days))
    if maximum_stock > 0:
        target = min(target, maximum_stock)
    return max(0, target - max(available_stock, 0))
