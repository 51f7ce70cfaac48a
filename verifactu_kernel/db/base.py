"""
Module: verifactu_kernel.db.base
Responsibility: Declarative base and column types shared by the chain
    record, compliance configuration and compliance event tables.
Architecture position: Kernel > DB.  Imported by every model; imports
    nothing from models/, services/ or outer layers.

Conventions:
    - Primary keys are uuid4 values stored as 36-character strings so the
      same schema runs on PostgreSQL and SQLite.
    - Every datetime column is timezone-aware.  Naive values are refused on
      write and SQLite results are re-tagged as UTC on read, so backoff and
      certificate deadlines always compare aware datetimes.
    - ``int`` columns are BIGINT; chain sequence numbers never wrap.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID stored as String(36)."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class UTCDateTime(TypeDecorator):
    """Aware datetime column; loads as UTC on backends that drop tzinfo."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        UUID: UUIDString(),
        datetime: UTCDateTime(),
        Decimal: Numeric(18, 2),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Adds ``created_at`` / ``updated_at`` (database clock) and the actor of
    the last administrative change (``updated_by_id``, e.g. a requeue).
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    updated_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
