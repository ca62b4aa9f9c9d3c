"""Async database engine and session factory.

Provides:
- create_db_engine(): AsyncEngine factory (asyncpg)
- create_session_factory(): async_sessionmaker bound to engine

The SqlStore (src/infra/store/sql.py) is the only consumer.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def create_db_engine(
    url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 20,
    echo: bool = False,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine for asyncpg.

    Args:
        url: Database URL (must use postgresql+asyncpg:// scheme).
        pool_size: Connection pool size.
        max_overflow: Max overflow connections beyond pool_size.
        echo: Whether to log SQL statements.

    Returns:
        Configured AsyncEngine instance.
    """
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        echo=echo,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the given engine.

    Sessions are configured with expire_on_commit=False so records can be
    read after commit without re-fetching.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
