"""ORM models for the lock, aggregate and job tables."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# ── Distributed locks ───────────────────────────────────────────


class LockRecord(Base):
    __tablename__ = "lock"

    resource: Mapped[str] = mapped_column(String(100), primary_key=True)
    # 0 = row placed, 1 = claimed (update-count acquisition policy only)
    updatecount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ── Aggregates ──────────────────────────────────────────────────


class CounterEntry(Base):
    """One signed delta.  A counter's value is the SUM over its key."""

    __tablename__ = "counter"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    expireat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SetEntry(Base):
    __tablename__ = "set"
    __table_args__ = (UniqueConstraint("key", "value"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str] = mapped_column(String(256), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    expireat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ListEntry(Base):
    __tablename__ = "list"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    expireat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class HashEntry(Base):
    __tablename__ = "hash"
    __table_args__ = (UniqueConstraint("key", "field"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    field: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    expireat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ── Jobs ────────────────────────────────────────────────────────


class Job(Base):
    __tablename__ = "job"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stateid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    statename: Mapped[str | None] = mapped_column(String(20), nullable=True)
    invocationdata: Mapped[str] = mapped_column(Text, nullable=False, default="")
    arguments: Mapped[str] = mapped_column(Text, nullable=False, default="")
    createdat: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    expireat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class JobState(Base):
    __tablename__ = "state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    jobid: Mapped[int] = mapped_column(Integer, ForeignKey("job.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    createdat: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    data: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON stored as TEXT


class JobQueueEntry(Base):
    __tablename__ = "jobqueue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    jobid: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    queue: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    fetchedat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
