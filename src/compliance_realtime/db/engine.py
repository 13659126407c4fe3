"""Async SQLAlchemy engine.

Learn: The realtime service never queries compliance data itself — change
feeds arrive over dedicated asyncpg LISTEN connections. The engine is
used for Alembic migrations (triggers) and the health check's SELECT 1,
so the pool is kept small.
"""

from sqlalchemy.ext.asyncio import create_async_engine

from compliance_realtime.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=2,
    max_overflow=3,
    pool_pre_ping=True,
)
