"""
Tests for the pure stock projection.

The central property: folding movements one at a time through
apply_movement (with the trailing window the ledger would load) gives
the same position as replay() over the full history.
"""

import random
from datetime import datetime, timedelta

import pytest

from core.errors import InvalidMovementError
from inventory.projection import (
    LedgerEntry,
    PositionState,
    apply_movement,
    empty_position,
    next_stock,
    replay,
    signed_delta,
    validate_quantity,
    window_metrics,
    window_start,
    with_reserved,
)

T0 = datetime(2026, 1, 1, 8, 0, 0)
WINDOW_DAYS = 30


def _entry(movement_type: str, quantity: int, previous: int, sequence: int, at: datetime) -> LedgerEntry:
    return LedgerEntry(
        movement_type=movement_type,
        quantity=quantity,
        previous_stock=previous,
        new_stock=next_stock(movement_type, quantity, previous),
        sequence=sequence,
        occurred_at=at,
    )


def _incremental(entries: list[LedgerEntry], minimum: int, maximum: int, reserved: int = 0) -> PositionState:
    position = empty_position(minimum, maximum)
    for index, entry in enumerate(entries):
        cutoff = window_start(entry.occurred_at, WINDOW_DAYS)
        window = [e for e in entries[: index + 1] if e.occurred_at > cutoff]
        position = apply_movement(position, entry, window, WINDOW_DAYS)
    return with_reserved(position, min(reserved, position.current_stock))


def _random_history(rng: random.Random, length: int) -> list[LedgerEntry]:
    entries = []
    stock = 0
    at = T0
    for sequence in range(1, length + 1):
        at += timedelta(hours=rng.choice([0, 1, 6, 30, 24 * 9]))
        movement_type = rng.choice(["restock", "sale", "sale", "adjustment", "transfer", "return"])
        if movement_type in ("sale", "transfer"):
            if stock == 0:
                movement_type = "restock"
                quantity = rng.randint(1, 50)
            else:
                quantity = rng.randint(1, stock)
        elif movement_type == "adjustment":
            quantity = rng.randint(0, stock + 20)
        else:
            quantity = rng.randint(1, 50)
        entry = _entry(movement_type, quantity, stock, sequence, at)
        stock = entry.new_stock
        entries.append(entry)
    return entries


class TestSignedDelta:
    def test_inbound_types_add(self):
        assert signed_delta("restock", 50, 10) == 50
        assert signed_delta("return", 3, 10) == 3

    def test_outbound_types_subtract(self):
        assert signed_delta("sale", 4, 10) == -4
        assert signed_delta("transfer", 10, 10) == -10

    def test_adjustment_is_a_recount(self):
        assert signed_delta("adjustment", 7, 10) == -3
        assert signed_delta("adjustment", 25, 10) == 15
        assert next_stock("adjustment", 0, 10) == 0

    def test_restock_fifty_from_ten(self):
        assert next_stock("restock", 50, 10) == 60

    def test_sale_may_project_negative(self):
        assert next_stock("sale", 70, 60) == -10


class TestValidateQuantity:
    @pytest.mark.parametrize("movement_type", ["restock", "sale", "transfer", "return"])
    def test_rejects_non_positive(self, movement_type):
        with pytest.raises(InvalidMovementError):
            validate_quantity(movement_type, 0)
        with pytest.raises(InvalidMovementError):
            validate_quantity(movement_type, -5)

    def test_adjustment_accepts_zero_but_not_negative(self):
        validate_quantity("adjustment", 0)
        with pytest.raises(InvalidMovementError):
            validate_quantity("adjustment", -1)

    def test_rejects_unknown_type(self):
        with pytest.raises(InvalidMovementError, match="Invalid movement type"):
            validate_quantity("shrinkage", 3)

    @pytest.mark.parametrize("quantity", [1.5, "3", True, None])
    def test_rejects_non_integers(self, quantity):
        with pytest.raises(InvalidMovementError):
            validate_quantity("restock", quantity)


class TestWindowMetrics:
    def test_no_movements(self):
        assert window_metrics([], 10, WINDOW_DAYS) == (0.0, None)

    def test_no_sales_means_unknown_days(self):
        window = [_entry("restock", 40, 0, 1, T0)]
        turnover, days = window_metrics(window, 40, WINDOW_DAYS)
        assert turnover == 0.0
        assert days is None

    def test_turnover_and_days(self):
        window = [
            _entry("restock", 100, 0, 1, T0),
            _entry("sale", 30, 100, 2, T0 + timedelta(days=1)),
            _entry("sale", 30, 70, 3, T0 + timedelta(days=2)),
        ]
        turnover, days = window_metrics(window, 40, WINDOW_DAYS)
        # average level (100 + 70 + 40) / 3 = 70; 60 sold
        assert turnover == round(60 / 70, 4)
        # 2 units/day → 40 units last 20 days
        assert days == 20.0


class TestApplyMovement:
    def test_derived_fields(self):
        position = empty_position(20, 50)
        entry = _entry("restock", 60, 0, 1, T0)
        position = apply_movement(position, entry, [entry], WINDOW_DAYS)

        assert position.current_stock == 60
        assert position.available_stock == 60
        assert position.overstock_alert is True
        assert position.low_stock_alert is False
        assert position.last_restock_at == T0
        assert position.last_sale_at is None
        assert position.last_movement_sequence == 1

    def test_reserved_stock_is_preserved(self):
        position = with_reserved(
            apply_movement(empty_position(10, 100), _entry("restock", 50, 0, 1, T0), [], WINDOW_DAYS),
            20,
        )
        sale = _entry("sale", 25, 50, 2, T0 + timedelta(hours=1))
        position = apply_movement(position, sale, [sale], WINDOW_DAYS)

        assert position.current_stock == 25
        assert position.reserved_stock == 20
        assert position.available_stock == 5
        assert position.last_sale_at == sale.occurred_at


class TestReplayEquivalence:
    def test_empty_history(self):
        state = replay([], minimum_stock=10, maximum_stock=100, reserved_stock=5, window_days=WINDOW_DAYS)
        assert state.current_stock == 0
        assert state.reserved_stock == 0
        assert state.low_stock_alert is True

    def test_replay_matches_incremental_for_known_history(self):
        entries = [
            _entry("restock", 50, 10, 1, T0),
            _entry("sale", 20, 60, 2, T0 + timedelta(days=1)),
            _entry("adjustment", 38, 40, 3, T0 + timedelta(days=2)),
            _entry("return", 2, 38, 4, T0 + timedelta(days=40)),
        ]
        rebuilt = replay(entries, minimum_stock=10, maximum_stock=100, reserved_stock=0, window_days=WINDOW_DAYS)
        assert rebuilt == _incremental(entries, 10, 100)
        assert rebuilt.current_stock == 40
        # the sale dropped out of the window by the last movement
        assert rebuilt.days_of_inventory is None

    def test_replay_ignores_input_order(self):
        entries = _random_history(random.Random(7), 25)
        shuffled = list(entries)
        random.Random(1).shuffle(shuffled)
        kwargs = dict(minimum_stock=5, maximum_stock=60, reserved_stock=0, window_days=WINDOW_DAYS)
        assert replay(shuffled, **kwargs) == replay(entries, **kwargs)

    @pytest.mark.parametrize("seed", range(25))
    def test_replay_matches_incremental_for_random_histories(self, seed):
        rng = random.Random(seed)
        entries = _random_history(rng, rng.randint(1, 60))
        reserved = rng.randint(0, 30)
        minimum = rng.randint(0, 20)
        maximum = minimum + rng.randint(0, 80)

        incremental = _incremental(entries, minimum, maximum, reserved)
        rebuilt = replay(
            entries,
            minimum_stock=minimum,
            maximum_stock=maximum,
            reserved_stock=reserved,
            window_days=WINDOW_DAYS,
        )

        assert rebuilt == incremental
        assert rebuilt.current_stock == entries[-1].new_stock
        assert rebuilt.available_stock == rebuilt.current_stock - rebuilt.reserved_stock
        assert rebuilt.available_stock >= 0
