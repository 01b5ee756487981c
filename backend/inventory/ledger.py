"""
Stock Ledger — append-only movement log with projected positions.

Every stock change is a StockMovement. The StockPosition for a
(store, product, variant) key is recomputed from the previous position
plus the new movement (inventory.projection), never edited directly.
rebuild_position() replays full history for recovery and audit and
must agree with the incrementally maintained row.

Serialization per key:
  - in-process: KeyedLocks around read-compute-write
  - cross-process: SELECT ... FOR UPDATE on the position row
    (held until the caller's transaction commits)

The ledger flushes but never commits; the caller owns the transaction,
as with the receiving and transfer workflows.
"""

import uuid
from datetime import datetime
from typing import Any, NamedTuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import RestockPolicy, get_restock_policy
from core.errors import InsufficientStockError, InvalidMovementError, PositionNotFoundError
from core.locks import KeyedLocks
from db.models import StockMovement, StockPosition
from inventory.projection import (
    DEFAULT_REFERENCE_TYPES,
    LedgerEntry,
    PositionState,
    apply_movement,
    empty_position,
    next_stock,
    replay,
    validate_quantity,
    window_start,
    with_reserved,
    with_thresholds,
)

logger = structlog.get_logger()

_position_locks = KeyedLocks()


class StockKey(NamedTuple):
    store_id: str
    product_id: str
    variant_id: str

    def as_log(self) -> dict[str, str]:
        return {"store_id": self.store_id, "product_id": self.product_id, "variant_id": self.variant_id}


def _validate_key(key: StockKey) -> StockKey:
    key = StockKey(*key)
    for name, value in key._asdict().items():
        if not isinstance(value, str) or not value.strip():
            raise InvalidMovementError(f"{name} is required")
    return key


def _key_filter(model, key: StockKey) -> tuple:
    return (
        model.store_id == key.store_id,
        model.product_id == key.product_id,
        model.variant_id == key.variant_id,
    )


def _write_state(row: StockPosition, state: PositionState) -> None:
    for name, value in state.as_dict().items():
        setattr(row, name, value)


class StockLedger:
    """Record movements and maintain positions for one session."""

    def __init__(self, db: AsyncSession, policy: RestockPolicy | None = None):
        self.db = db
        self.policy = policy or get_restock_policy()

    # ── Movements ──────────────────────────────────────────────────────

    async def record_movement(
        self,
        key: StockKey,
        movement_type: str,
        quantity: int,
        *,
        reference_id: str | None = None,
        reference_type: str | None = None,
        notes: str | None = None,
        user_id: str = "system",
        occurred_at: datetime | None = None,
    ) -> StockMovement:
        """
        Append a movement and project it onto the key's position.

        Raises InvalidMovementError for malformed input and
        InsufficientStockError when stock would go negative or below
        what is reserved. Nothing is written on rejection.
        """
        key = _validate_key(key)
        validate_quantity(movement_type, quantity)
        occurred_at = occurred_at or datetime.utcnow()

        async with _position_locks.hold(key):
            row = await self._position_for_update(key)
            previous = PositionState.from_row(row) if row else self._default_position()

            if previous.last_movement_at and occurred_at < previous.last_movement_at:
                raise InvalidMovementError(
                    f"Movement at {occurred_at.isoformat()} is older than the latest movement "
                    f"({previous.last_movement_at.isoformat()}) for this key"
                )

            new_stock = next_stock(movement_type, quantity, previous.current_stock)
            if new_stock < 0:
                logger.warning(
                    "ledger.movement_rejected",
                    reason="insufficient_stock",
                    movement_type=movement_type,
                    quantity=quantity,
                    current_stock=previous.current_stock,
                    **key.as_log(),
                )
                raise InsufficientStockError(
                    f"Insufficient stock for product {key.product_id}, variant {key.variant_id}: "
                    f"{movement_type} of {quantity} with {previous.current_stock} on hand",
                    current_stock=previous.current_stock,
                    requested=quantity,
                )
            if new_stock < previous.reserved_stock:
                logger.warning(
                    "ledger.movement_rejected",
                    reason="reserved_stock",
                    movement_type=movement_type,
                    quantity=quantity,
                    reserved_stock=previous.reserved_stock,
                    **key.as_log(),
                )
                raise InsufficientStockError(
                    f"{movement_type} would leave {new_stock} on hand but {previous.reserved_stock} are reserved",
                    current_stock=previous.current_stock,
                    requested=quantity,
                )

            movement = StockMovement(
                store_id=key.store_id,
                product_id=key.product_id,
                variant_id=key.variant_id,
                movement_type=movement_type,
                quantity=quantity,
                previous_stock=previous.current_stock,
                new_stock=new_stock,
                sequence=await self._next_sequence(key),
                reference_id=reference_id,
                reference_type=reference_type or DEFAULT_REFERENCE_TYPES[movement_type],
                notes=notes,
                user_id=user_id,
                occurred_at=occurred_at,
            )
            entry = LedgerEntry.from_row(movement)
            window = await self._window_entries(key, occurred_at) + [entry]
            state = apply_movement(previous, entry, window, self.policy.turnover_window_days)

            self.db.add(movement)
            if row is None:
                row = StockPosition(store_id=key.store_id, product_id=key.product_id, variant_id=key.variant_id)
                self.db.add(row)
            _write_state(row, state)
            await self.db.flush()

        logger.info(
            "ledger.movement_recorded",
            movement_id=str(movement.id),
            movement_type=movement_type,
            quantity=quantity,
            previous_stock=movement.previous_stock,
            new_stock=new_stock,
            sequence=movement.sequence,
            **key.as_log(),
        )
        return movement

    async def record_transfer(
        self,
        from_store_id: str,
        to_store_id: str,
        product_id: str,
        variant_id: str,
        quantity: int,
        *,
        reference_id: str | None = None,
        notes: str | None = None,
        user_id: str = "system",
        occurred_at: datetime | None = None,
    ) -> tuple[StockMovement, StockMovement]:
        """Move stock between stores: outbound transfer + inbound restock."""
        if from_store_id == to_store_id:
            raise InvalidMovementError("Transfer source and destination must differ")
        reference_id = reference_id or str(uuid.uuid4())
        outbound = await self.record_movement(
            StockKey(from_store_id, product_id, variant_id),
            "transfer",
            quantity,
            reference_id=reference_id,
            notes=notes,
            user_id=user_id,
            occurred_at=occurred_at,
        )
        inbound = await self.record_movement(
            StockKey(to_store_id, product_id, variant_id),
            "restock",
            quantity,
            reference_id=reference_id,
            reference_type="transfer",
            notes=notes,
            user_id=user_id,
            occurred_at=occurred_at,
        )
        return outbound, inbound

    async def list_movements(self, key: StockKey, include_deleted: bool = False) -> list[StockMovement]:
        key = StockKey(*key)
        query = select(StockMovement).where(*_key_filter(StockMovement, key))
        if not include_deleted:
            query = query.where(StockMovement.deleted_at.is_(None))
        result = await self.db.execute(query.order_by(StockMovement.sequence))
        return list(result.scalars().all())

    async def soft_delete_movement(self, movement_id: uuid.UUID) -> StockPosition:
        """Logically delete a movement and rebuild its key's position."""
        movement = await self.db.get(StockMovement, movement_id)
        if movement is None or movement.deleted_at is not None:
            raise InvalidMovementError(f"Movement {movement_id} not found")
        movement.deleted_at = datetime.utcnow()
        await self.db.flush()
        key = StockKey(movement.store_id, movement.product_id, movement.variant_id)
        logger.info("ledger.movement_deleted", movement_id=str(movement_id), **key.as_log())
        return await self.rebuild_position(key)

    # ── Positions ──────────────────────────────────────────────────────

    async def get_position(self, key: StockKey) -> StockPosition | None:
        key = StockKey(*key)
        result = await self.db.execute(
            select(StockPosition).where(*_key_filter(StockPosition, key), StockPosition.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def require_position(self, key: StockKey) -> StockPosition:
        position = await self.get_position(key)
        if position is None:
            raise PositionNotFoundError(f"Inventory not found for product {key[1]}, variant {key[2]}")
        return position

    async def rebuild_position(self, key: StockKey) -> StockPosition:
        """Recompute the position from the full non-deleted history."""
        key = _validate_key(key)
        async with _position_locks.hold(key):
            row = await self._position_for_update(key)
            config = PositionState.from_row(row) if row else self._default_position()
            state = await self._replay(key, config)
            if row is None:
                row = StockPosition(store_id=key.store_id, product_id=key.product_id, variant_id=key.variant_id)
                self.db.add(row)
            if state.reserved_stock < config.reserved_stock:
                logger.warning(
                    "ledger.reservation_capped",
                    reserved_before=config.reserved_stock,
                    reserved_after=state.reserved_stock,
                    **key.as_log(),
                )
            _write_state(row, state)
            await self.db.flush()

        logger.info("ledger.position_rebuilt", current_stock=state.current_stock, **key.as_log())
        return row

    async def verify_position(self, key: StockKey) -> dict[str, Any]:
        """Audit: compare the stored position with a full rebuild."""
        key = _validate_key(key)
        row = await self.require_position(key)
        stored = PositionState.from_row(row)
        rebuilt = await self._replay(key, stored)
        mismatches = {
            name: {"stored": value, "rebuilt": getattr(rebuilt, name)}
            for name, value in stored.as_dict().items()
            if value != getattr(rebuilt, name)
        }
        if mismatches:
            logger.warning("ledger.position_mismatch", fields=sorted(mismatches), **key.as_log())
        return {"consistent": not mismatches, "mismatches": mismatches}

    async def set_thresholds(self, key: StockKey, minimum_stock: int, maximum_stock: int) -> StockPosition:
        key = _validate_key(key)
        if minimum_stock < 0 or maximum_stock < minimum_stock:
            raise InvalidMovementError(f"Invalid thresholds: minimum={minimum_stock}, maximum={maximum_stock}")
        async with _position_locks.hold(key):
            row = await self._position_for_update(key)
            if row is None:
                row = StockPosition(store_id=key.store_id, product_id=key.product_id, variant_id=key.variant_id)
                self.db.add(row)
                state = empty_position(minimum_stock, maximum_stock)
            else:
                state = with_thresholds(PositionState.from_row(row), minimum_stock, maximum_stock)
            _write_state(row, state)
            await self.db.flush()
        return row

    async def reserve_stock(self, key: StockKey, quantity: int) -> StockPosition:
        key = _validate_key(key)
        if quantity <= 0:
            raise InvalidMovementError(f"Reservation quantity must be positive, got {quantity}")
        async with _position_locks.hold(key):
            row = await self._position_for_update(key)
            if row is None:
                raise PositionNotFoundError(f"Inventory not found for product {key.product_id}, variant {key.variant_id}")
            new_reserved = row.reserved_stock + quantity
            if new_reserved > row.current_stock:
                raise InsufficientStockError(
                    "Cannot reserve more stock than available",
                    current_stock=row.current_stock,
                    requested=quantity,
                )
            _write_state(row, with_reserved(PositionState.from_row(row), new_reserved))
            await self.db.flush()
        logger.info("ledger.stock_reserved", quantity=quantity, reserved_stock=new_reserved, **key.as_log())
        return row

    async def release_reserved_stock(self, key: StockKey, quantity: int) -> StockPosition:
        key = _validate_key(key)
        if quantity <= 0:
            raise InvalidMovementError(f"Release quantity must be positive, got {quantity}")
        async with _position_locks.hold(key):
            row = await self._position_for_update(key)
            if row is None:
                raise PositionNotFoundError(f"Inventory not found for product {key.product_id}, variant {key.variant_id}")
            new_reserved = max(0, row.reserved_stock - quantity)
            _write_state(row, with_reserved(PositionState.from_row(row), new_reserved))
            await self.db.flush()
        logger.info("ledger.stock_released", quantity=quantity, reserved_stock=new_reserved, **key.as_log())
        return row

    async def low_stock_positions(self, store_id: str) -> list[StockPosition]:
        result = await self.db.execute(
            select(StockPosition).where(
                StockPosition.store_id == store_id,
                StockPosition.low_stock_alert.is_(True),
                StockPosition.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def overstock_positions(self, store_id: str) -> list[StockPosition]:
        result = await self.db.execute(
            select(StockPosition).where(
                StockPosition.store_id == store_id,
                StockPosition.overstock_alert.is_(True),
                StockPosition.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def store_metrics(self, store_id: str) -> dict[str, Any]:
        result = await self.db.execute(
            select(StockPosition).where(StockPosition.store_id == store_id, StockPosition.deleted_at.is_(None))
        )
        positions = result.scalars().all()
        total_items = len(positions)
        total_stock = sum(p.current_stock for p in positions)
        return {
            "total_items": total_items,
            "low_stock_items": sum(1 for p in positions if p.low_stock_alert),
            "overstock_items": sum(1 for p in positions if p.overstock_alert),
            "total_stock": total_stock,
            "average_stock": total_stock / total_items if total_items else 0.0,
        }

    # ── Internals ──────────────────────────────────────────────────────

    def _default_position(self) -> PositionState:
        return empty_position(self.policy.default_min_stock, self.policy.default_max_stock)

    async def _position_for_update(self, key: StockKey) -> StockPosition | None:
        result = await self.db.execute(
            select(StockPosition)
            .where(*_key_filter(StockPosition, key), StockPosition.deleted_at.is_(None))
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _next_sequence(self, key: StockKey) -> int:
        # Deleted movements keep their sequence numbers.
        result = await self.db.execute(select(func.max(StockMovement.sequence)).where(*_key_filter(StockMovement, key)))
        return int(result.scalar() or 0) + 1

    async def _window_entries(self, key: StockKey, as_of: datetime) -> list[LedgerEntry]:
        result = await self.db.execute(
            select(StockMovement)
            .where(
                *_key_filter(StockMovement, key),
                StockMovement.deleted_at.is_(None),
                StockMovement.occurred_at > window_start(as_of, self.policy.turnover_window_days),
                StockMovement.occurred_at <= as_of,
            )
            .order_by(StockMovement.sequence)
        )
        return [LedgerEntry.from_row(row) for row in result.scalars().all()]

    async def _replay(self, key: StockKey, config: PositionState) -> PositionState:
        movements = await self.list_movements(key)
        return replay(
            (LedgerEntry.from_row(m) for m in movements),
            minimum_stock=config.minimum_stock,
            maximum_stock=config.maximum_stock,
            reserved_stock=config.reserved_stock,
            window_days=self.policy.turnover_window_days,
        )
