"""Database engine, session factory and declarative base."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from fhirstore.config import settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def engine_options(database_url: str) -> dict[str, Any]:
    """Build create_async_engine keyword arguments for a database URL.

    Pool sizing and isolation level only apply to PostgreSQL; SQLite
    (used for local tests) picks its own pool class.
    """
    options: dict[str, Any] = {"echo": settings.debug}
    if database_url.startswith("postgresql"):
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
            isolation_level=settings.db_isolation_level,
        )
    return options


engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
