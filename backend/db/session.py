"""
SlotOps Database Session Management

Async SQLAlchemy engine and session factory. Engines are built from an
explicit Settings object so each job owns (and disposes) its own pool.
"""

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import Settings, get_settings


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    kwargs = {"echo": settings.database_echo, "pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        kwargs.update(pool_size=20, max_overflow=10)
    return create_async_engine(settings.database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@lru_cache
def get_engine() -> AsyncEngine:
    """Process-wide engine used by the API."""
    return create_engine_from_settings(get_settings())


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return create_session_factory(get_engine())
