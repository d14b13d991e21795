"""Database package — shared engine and session factory."""

from entitlements.db.base import (
    Base,
    build_engine,
    build_session_factory,
    close_db,
    create_schema,
    get_session_factory,
    init_db,
)

__all__ = [
    "Base",
    "build_engine",
    "build_session_factory",
    "close_db",
    "create_schema",
    "get_session_factory",
    "init_db",
]
