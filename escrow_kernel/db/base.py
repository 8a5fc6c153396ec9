"""
Declarative base for the escrow tables.

Annotated columns pick their SQL type from the annotation: ``Decimal`` money
is stored as integer cents, ``datetime`` as UTC and ``UUID`` as a 36-char
string so the same models run on SQLite and PostgreSQL.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from escrow_kernel.db.types import CentsAmount, UTCDateTime


class UUIDString(TypeDecorator):
    """UUID in Python, ``VARCHAR(36)`` in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        Decimal: CentsAmount(),
        datetime: UTCDateTime(),
        UUID: UUIDString(),
    }

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Adds row-level ``created_at`` / ``updated_at``.

    These are bookkeeping stamps set by the database.  Business timestamps
    (``submitted_at``, ``reviewed_at``, ``resolved_at``) come from the
    service clock and live on the models themselves.  The immutability
    listeners ignore the two stamps.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(),
    )
