"""
Stock Position Projection — pure movement → position math.

A StockPosition is a fold over the ledger: each movement is applied to
the previous position together with the trailing window of movements
that ends at it. Incremental recording and full rebuild both go through
apply_movement(), so replaying history yields exactly the position that
was maintained one movement at a time.

Signed effect by movement type:
  restock, return   → +quantity
  sale, transfer    → −quantity
  adjustment        → counted level (delta = quantity − previous_stock)
"""

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from core.errors import InvalidMovementError

INBOUND_TYPES = ("restock", "return")
OUTBOUND_TYPES = ("sale", "transfer")

DEFAULT_REFERENCE_TYPES = {
    "restock": "restock_order",
    "sale": "order",
    "adjustment": "adjustment",
    "transfer": "transfer",
    "return": "return",
}


@dataclass(frozen=True)
class LedgerEntry:
    """The subset of a StockMovement the projection depends on."""

    movement_type: str
    quantity: int
    previous_stock: int
    new_stock: int
    sequence: int
    occurred_at: datetime

    @classmethod
    def from_row(cls, row) -> "LedgerEntry":
        return cls(
            movement_type=row.movement_type,
            quantity=row.quantity,
            previous_stock=row.previous_stock,
            new_stock=row.new_stock,
            sequence=row.sequence,
            occurred_at=row.occurred_at,
        )


@dataclass(frozen=True)
class PositionState:
    current_stock: int = 0
    minimum_stock: int = 10
    maximum_stock: int = 1000
    reserved_stock: int = 0
    available_stock: int = 0
    stock_turnover_rate: float = 0.0
    days_of_inventory: float | None = None
    low_stock_alert: bool = False
    overstock_alert: bool = False
    last_movement_sequence: int = 0
    last_movement_at: datetime | None = None
    last_restock_at: datetime | None = None
    last_sale_at: datetime | None = None

    @classmethod
    def from_row(cls, row) -> "PositionState":
        return cls(**{name: getattr(row, name) for name in cls.__dataclass_fields__})

    def as_dict(self) -> dict:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


def empty_position(minimum_stock: int, maximum_stock: int) -> PositionState:
    return _with_derived(PositionState(minimum_stock=minimum_stock, maximum_stock=maximum_stock))


def validate_quantity(movement_type: str, quantity: int) -> None:
    if movement_type not in DEFAULT_REFERENCE_TYPES:
        raise InvalidMovementError(f"Invalid movement type: {movement_type}")
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidMovementError(f"Quantity must be an integer, got {quantity!r}")
    if movement_type == "adjustment":
        if quantity < 0:
            raise InvalidMovementError("Adjustment count cannot be negative")
    elif quantity <= 0:
        raise InvalidMovementError(f"Quantity for '{movement_type}' must be positive, got {quantity}")


def signed_delta(movement_type: str, quantity: int, previous_stock: int) -> int:
    validate_quantity(movement_type, quantity)
    if movement_type in INBOUND_TYPES:
        return quantity
    if movement_type in OUTBOUND_TYPES:
        return -quantity
    return quantity - previous_stock


def next_stock(movement_type: str, quantity: int, previous_stock: int) -> int:
    """Stock level after the movement. May be negative; callers reject that."""
    return previous_stock + signed_delta(movement_type, quantity, previous_stock)


def window_metrics(
    window: Iterable[LedgerEntry],
    current_stock: int,
    window_days: int,
) -> tuple[float, float | None]:
    """
    Turnover and days-of-inventory over a trailing window.

    turnover = units sold / average stock level in the window
    days     = current stock / (units sold / window days), None without sales
    """
    units_sold = 0
    levels = []
    for entry in window:
        levels.append(entry.new_stock)
        if entry.movement_type == "sale":
            units_sold += entry.quantity

    if not levels:
        return 0.0, None

    average_stock = sum(levels) / len(levels)
    turnover = round(units_sold / max(average_stock, 1.0), 4)
    if units_sold == 0:
        return turnover, None
    daily_rate = units_sold / window_days
    return turnover, round(current_stock / daily_rate, 2)


def window_start(as_of: datetime, window_days: int) -> datetime:
    return as_of - timedelta(days=window_days)


def apply_movement(
    position: PositionState,
    movement: LedgerEntry,
    window: Sequence[LedgerEntry],
    window_days: int,
) -> PositionState:
    """
    Project one movement onto the previous position.

    `window` holds the movements with occurred_at in
    (movement.occurred_at − window_days, movement.occurred_at],
    including `movement` itself.
    """
    current = movement.new_stock
    turnover, days = window_metrics(window, current, window_days)
    # Reservations can never exceed what is on hand.
    reserved = min(position.reserved_stock, current)

    return _with_derived(
        replace(
            position,
            current_stock=current,
            reserved_stock=reserved,
            stock_turnover_rate=turnover,
            days_of_inventory=days,
            last_movement_sequence=movement.sequence,
            last_movement_at=movement.occurred_at,
            last_restock_at=movement.occurred_at if movement.movement_type == "restock" else position.last_restock_at,
            last_sale_at=movement.occurred_at if movement.movement_type == "sale" else position.last_sale_at,
        )
    )


def replay(
    movements: Iterable[LedgerEntry],
    *,
    minimum_stock: int,
    maximum_stock: int,
    reserved_stock: int,
    window_days: int,
) -> PositionState:
    """
    Rebuild a position from full history (ordered by sequence).

    Reservations are not ledger events; the current reservation is laid
    over the replayed stock at the end, capped at what is on hand.
    """
    position = empty_position(minimum_stock, maximum_stock)
    window: deque[LedgerEntry] = deque()
    for movement in sorted(movements, key=lambda m: m.sequence):
        window.append(movement)
        cutoff = window_start(movement.occurred_at, window_days)
        while window and window[0].occurred_at <= cutoff:
            window.popleft()
        position = apply_movement(position, movement, list(window), window_days)
    return with_reserved(position, min(reserved_stock, position.current_stock))


def with_thresholds(position: PositionState, minimum_stock: int, maximum_stock: int) -> PositionState:
    return _with_derived(replace(position, minimum_stock=minimum_stock, maximum_stock=maximum_stock))


def with_reserved(position: PositionState, reserved_stock: int) -> PositionState:
    return _with_derived(replace(position, reserved_stock=reserved_stock))


def _with_derived(position: PositionState) -> PositionState:
    return replace(
        position,
        available_stock=position.current_stock - position.reserved_stock,
        low_stock_alert=position.current_stock < position.minimum_stock,
        overstock_alert=position.current_stock > position.maximum_stock,
    )
