"""Declarative base, engine construction and the process-wide session factory."""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from entitlements.core.config import get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine tuned for the entitlement write patterns.

    SQLite has no row locks: the per-user touch in ``lock_user`` takes the
    database write lock, so concurrent writers must wait for it instead of
    failing with "database is locked".
    """
    settings = get_settings()
    if make_url(url).get_backend_name() == "sqlite":
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": settings.database_busy_timeout_seconds},
        )
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Services hand ORM rows back after commit
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    # Import all models so metadata is populated before create_all
    import entitlements.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(url: str | None = None, create_tables: bool | None = None) -> None:
    """Initialize the global engine and session factory.

    Args:
        url: Database URL; defaults to ``DATABASE_URL``
        create_tables: Run create_all; defaults to ``DATABASE_CREATE_SCHEMA``.
            Leave it off where ``alembic upgrade head`` manages the schema.
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    if create_tables is None:
        create_tables = settings.database_create_schema

    _engine = build_engine(url or settings.database_url, echo=settings.debug)
    _session_factory = build_session_factory(_engine)

    if create_tables:
        await create_schema(_engine)


async def close_db() -> None:
    """Dispose of the engine and release all connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the configured session factory.

    Raises RuntimeError if init_db() has not been called.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
