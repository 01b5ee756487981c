"""
Test Configuration — Fixtures for async DB, sessions and a seeded catalog.

Each test gets its own in-memory SQLite database. StaticPool keeps the
single connection alive so every session from the factory sees the same
data, which lets service code open and commit its own transactions.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core.config import RestockPolicy
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture
async def test_engine():
    """Fresh database with all tables built."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def policy():
    return RestockPolicy()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
async def seeded_catalog(test_db, policy):
    """
    Three variants in one store with 30 days of history ending at NOW:

      dog-food/large  fast seller, nearly out of stock, supplier A
      cat-toy/mouse   slow seller, far above maximum,  supplier B
      bird-seed/1kg   high margin, low stock,          brand 'feathers'
    """
    from db.models import ProductVariant
    from inventory.ledger import StockKey, StockLedger

    test_db.add_all(
        [
            ProductVariant(
                product_id="dog-food",
                variant_id="large",
                title="Dog Food 10kg",
                sku="DF-10",
                brand_id="barkly",
                supplier_id="supplier-a",
                unit_cost=20.0,
                unit_price=25.0,
            ),
            ProductVariant(
                product_id="cat-toy",
                variant_id="mouse",
                title="Cat Toy Mouse",
                sku="CT-M",
                brand_id="whiskers",
                supplier_id="supplier-b",
                unit_cost=2.0,
                unit_price=4.0,
            ),
            ProductVariant(
                product_id="bird-seed",
                variant_id="1kg",
                title="Bird Seed 1kg",
                sku="BS-1",
                brand_id="feathers",
                supplier_id="supplier-c",
                unit_cost=2.0,
                unit_price=10.0,
            ),
        ]
    )
    await test_db.flush()

    ledger = StockLedger(test_db, policy)
    dog = StockKey("store-1", "dog-food", "large")
    cat = StockKey("store-1", "cat-toy", "mouse")
    bird = StockKey("store-1", "bird-seed", "1kg")

    await ledger.set_thresholds(dog, 20, 400)
    await ledger.set_thresholds(cat, 5, 50)
    await ledger.set_thresholds(bird, 10, 100)

    start = NOW - timedelta(days=29, hours=12)
    await ledger.record_movement(dog, "restock", 315, occurred_at=start)
    await ledger.record_movement(cat, "restock", 120, occurred_at=start)
    await ledger.record_movement(bird, "restock", 20, occurred_at=start)

    # dog food: 10/day for 30 days → 300 sold, 15 left
    for day in range(30):
        await ledger.record_movement(dog, "sale", 10, occurred_at=start + timedelta(days=day, hours=1))
    # cat toy: 3 sold in the period
    for day in (3, 12, 20):
        await ledger.record_movement(cat, "sale", 1, occurred_at=start + timedelta(days=day, hours=2))
    # bird seed: 1/day for 12 days → 8 left
    for day in range(12):
        await ledger.record_movement(bird, "sale", 1, occurred_at=start + timedelta(days=day, hours=3))

    await test_db.commit()
    return {"ledger": ledger, "dog": dog, "cat": cat, "bird": bird, "now": NOW}
