"""ORM models — the ``jobs`` table."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Enum, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class JobStatus(str, enum.Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    FAILED = "Failed"


# Stored by value ("Queued", ...) as the native ``job_status`` type on
# PostgreSQL and a CHECK-constrained VARCHAR on SQLite.
JobStatusType = Enum(
    JobStatus,
    name="job_status",
    values_callable=lambda members: [m.value for m in members],
    create_constraint=True,
    validate_strings=True,
)

# SQL NULL (not JSON 'null') for absent params.
JsonColumn = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_id", "status", "id"),
        # AUTOINCREMENT keeps SQLite from reusing the id of a deleted max row.
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    status: Mapped[JobStatus] = mapped_column(JobStatusType, nullable=False, default=JobStatus.QUEUED)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonColumn, nullable=False)
    params: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
