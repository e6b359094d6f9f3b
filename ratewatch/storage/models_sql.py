"""SQLAlchemy ORM models for rate tracking storage."""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(str, Enum):
    """Credential-level status of the most recent sync."""

    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class RunStatus(str, Enum):
    """Lifecycle of a single sync run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED.value, RunStatus.FAILED.value})


class AlertType(str, Enum):
    """Direction of the competitor price relative to the custom price."""

    PRICE_LOWER = "price_lower"
    PRICE_HIGHER = "price_higher"
    PRICE_EQUAL = "price_equal"


class Base(DeclarativeBase):
    """Declarative base class for ORM models."""


class TrackedEntity(Base):
    """Hotel tracked on the partner portal."""

    __tablename__ = "tracked_entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    external_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    group_label: Mapped[str] = mapped_column(String(100), nullable=False, default="Makkah")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class PriceObservation(Base):
    """Portal price and availability for an entity on a stay date."""

    __tablename__ = "price_observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(
        ForeignKey("tracked_entities.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    display_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    base_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SAR")
    available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_observations_entity_date_captured", "entity_id", "date", "captured_at"),
        Index("ix_observations_date", "date"),
    )


class Credential(Base):
    """Encrypted portal login for one owner."""

    __tablename__ = "portal_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    username: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_secret: Mapped[str] = mapped_column(Text, nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sync_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SyncStatus.IDLE.value
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class SyncRun(Base):
    """One scheduled execution of the entity x date grid for an owner."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=RunStatus.PENDING.value
    )
    total_entities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_dates: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (Index("ix_sync_runs_owner_started", "owner_id", "started_at"),)


class CustomPrice(Base):
    """Owner's own quoted price for an entity on a stay date."""

    __tablename__ = "custom_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_id: Mapped[int] = mapped_column(
        ForeignKey("tracked_entities.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "entity_id", "date", name="uq_custom_price_cell"),
    )


class Alert(Base):
    """Standing notice that the competitor base price undercuts the custom price."""

    __tablename__ = "price_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_id: Mapped[int] = mapped_column(
        ForeignKey("tracked_entities.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    custom_price: Mapped[float] = mapped_column(Float, nullable=False)
    competitor_base_price: Mapped[float] = mapped_column(Float, nullable=False)
    difference: Mapped[float] = mapped_column(Float, nullable=False)
    alert_type: Mapped[str] = mapped_column(String(16), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    dismissed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_alerts_owner_active", "owner_id", "active"),
        Index("ix_alerts_cell", "owner_id", "entity_id", "date"),
    )
