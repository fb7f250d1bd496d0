"""
Module: procurement_kernel.db.base
Responsibility: Declarative base shared by orders, payments and stock records.
Architecture position: Kernel > DB.  Imported by every model module; imports
    nothing from models/, services/ or outer layers.

Column conventions:
    - Identifiers are uuid4 values persisted as 36-character strings so the
      same schema runs on PostgreSQL and SQLite.
    - Money columns are Numeric(38, 9); amounts are quantized to cents in
      the domain layer, the column never rounds.
    - Timestamps come back timezone-aware in UTC on every backend.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from procurement_kernel.domain.clock import ensure_utc


class UUIDString(TypeDecorator):
    """UUID bound as its canonical string, loaded back as ``uuid.UUID``."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else PyUUID(value)


class UTCDateTime(TypeDecorator):
    """DateTime(timezone=True) that never hands out a naive value."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """Adds ``created_at``/``updated_at`` maintained by the database."""

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now(), nullable=False,
    )


UUID = PyUUID
