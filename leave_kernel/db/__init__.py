"""Database layer - engine, base classes and column types."""

from leave_kernel.db.base import Base, TrackedBase, UUIDString
from leave_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)
from leave_kernel.db.types import DAY_QUANTUM, to_days

__all__ = [
    "Base",
    "TrackedBase",
    "UUIDString",
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "DAY_QUANTUM",
    "to_days",
]
