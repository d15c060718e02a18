"""Async SQLAlchemy engine and session factory.

Learn: The CRM tables are read here (dashboard aggregates) and written by
thin write paths that must notify after commit. One engine with connection
pooling; every reader call opens its own short-lived session.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from oikosync.config import settings

# Reads dominate; a small pool is enough for the aggregation fan-out
# (three concurrent queries per dashboard recompute).
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
