"""Async engine and session factory for the catalog store.

Built explicitly by the entry point and injected into the scheduler and the
webhook API; nothing here connects at import time.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine. In-memory SQLite gets a single shared connection."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            return create_async_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_async_engine(database_url, echo=echo, connect_args={"timeout": 15})
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
