"""Database layer - engine, base classes, types, and immutability."""

from verifactu_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from verifactu_kernel.db.engine import (
    build_engine,
    create_tables,
    dispose_engine,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)

__all__ = [
    "build_engine",
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "dispose_engine",
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
]
