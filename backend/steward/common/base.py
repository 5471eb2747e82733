"""
ORM 基础: 声明式 Base、主键/时间戳 Mixin、schema 适配
"""

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import DateTime, String, func
from datetime import datetime, timezone
from typing import Optional, Tuple, Any
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _schema_for(schema: Optional[str]) -> Optional[str]:
    """PostgreSQL keeps the schema; SQLite has none"""
    from steward.common.config import settings

    if settings.database_type == "sqlite":
        return None
    return schema


def get_table_args(*args, schema: Optional[str] = None) -> Tuple[Any, ...]:
    """__table_args__ with the schema appended where the database supports it"""
    schema = _schema_for(schema)
    return (*args, {"schema": schema}) if schema else args


def get_table_ref(table_name: str, schema: Optional[str] = None) -> str:
    """ForeignKey target: ``schema.table`` on PostgreSQL, bare ``table`` on SQLite"""
    schema = _schema_for(schema)
    return f"{schema}.{table_name}" if schema else table_name


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    """created_at / updated_at, set client-side to the microsecond.

    SQLite's CURRENT_TIMESTAMP only has second resolution, which would make
    newest-first ordering ambiguous; the server default covers raw inserts.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )


class UUIDMixin:
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        nullable=False
    )
