"""
RestockOps Database Session Management

Async SQLAlchemy engine and session factory builders. Each worker task
runs its own event loop, so it builds (and disposes) its own engine.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import Settings, get_settings


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


def build_engine(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    pool_args = {}
    if not settings.database_url.startswith("sqlite"):
        pool_args = {"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True}
    return create_async_engine(settings.database_url, echo=settings.database_echo, **pool_args)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
