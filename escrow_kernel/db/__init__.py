"""Database layer: engine, declarative base, column types, immutability."""

from escrow_kernel.db.base import Base, TrackedBase, UUIDString
from escrow_kernel.db.engine import (
    build_engine,
    create_tables,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from escrow_kernel.db.types import CentsAmount, UTCDateTime

__all__ = [
    "build_engine",
    "init_engine_from_url",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "CentsAmount",
    "UTCDateTime",
]
