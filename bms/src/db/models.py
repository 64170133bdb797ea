"""
SQLAlchemy ORM models for the estimation store.

Three tables:

- ``batteries``: one row per battery identity; configuration plus the
  degradation-model aggregate, upserted after every processed sample.
- ``processed_readings``: append-only, one row per consumed raw sample. The
  unique ``(queue_id, raw_id)`` pair makes re-processing of a raw sample detectable
  (at-most-once consumption).
- ``events``: append-only lifecycle events.

CHANGELOG:
- 2026-10-18: Key processed readings on (queue_id, raw_id) (STORY-012)
- 2026-10-18: Add unique raw_id to processed_readings (STORY-012)
- 2026-10-18: Initial creation (STORY-012)

TODO:
- None
"""

import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Double,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    false,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all estimation store models."""

    pass


class Battery(Base):
    """Persisted battery configuration and health aggregate.

    ``soh_pct`` is written alongside ``effective_capacity_ah`` from the same
    model step so the two never drift apart.

    Attributes:
        battery_id: Battery identity.
        rated_ah: Rated capacity in Ah.
        effective_capacity_ah: Degradation-model capacity in Ah.
        soh_pct: ``100 * effective_capacity_ah / rated_ah``.
        total_discharged_ah: Lifetime discharged Ah.
        discharge_cycle_ah: Discharged Ah towards the next full cycle.
        cycle_count: Completed cycles.
        last_timestamp: Timestamp of the last applied sample (nullable).
        user_override_soh: Blend the user SOH into reported values.
        user_set_soh_pct: User supplied SOH (nullable).
        user_soh_weight: Blend weight (nullable).
    """

    __tablename__ = "batteries"

    battery_id: Mapped[str] = mapped_column(Text, primary_key=True)
    rated_ah: Mapped[float] = mapped_column(Double, nullable=False)
    effective_capacity_ah: Mapped[float] = mapped_column(Double, nullable=False)
    soh_pct: Mapped[float] = mapped_column(
        Double, nullable=False, server_default=text("100")
    )
    total_discharged_ah: Mapped[float] = mapped_column(
        Double, nullable=False, server_default=text("0")
    )
    discharge_cycle_ah: Mapped[float] = mapped_column(
        Double, nullable=False, server_default=text("0")
    )
    cycle_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    last_timestamp: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    user_override_soh: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=false()
    )
    user_set_soh_pct: Mapped[float | None] = mapped_column(Double, nullable=True)
    user_soh_weight: Mapped[float | None] = mapped_column(Double, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of the Battery."""
        return (
            f"Battery(battery_id={self.battery_id!r}, "
            f"rated_ah={self.rated_ah!r}, soh_pct={self.soh_pct!r})"
        )


class Reading(Base):
    """Processed reading, one per consumed raw sample."""

    __tablename__ = "processed_readings"
    __table_args__ = (
        Index("ix_processed_readings_battery_ts", "battery_id", "timestamp"),
        UniqueConstraint("queue_id", "raw_id", name="uq_processed_readings_queue_raw"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    battery_id: Mapped[str] = mapped_column(Text, nullable=False)
    voltage_v: Mapped[float] = mapped_column(Double, nullable=False)
    current_a: Mapped[float] = mapped_column(Double, nullable=False)
    power_w: Mapped[float] = mapped_column(Double, nullable=False)
    estimated_ah: Mapped[float] = mapped_column(Double, nullable=False)
    soc_ocv: Mapped[float] = mapped_column(Double, nullable=False)
    soc_coulomb: Mapped[float] = mapped_column(Double, nullable=False)
    soc_kalman: Mapped[float] = mapped_column(Double, nullable=False)
    soh_pct: Mapped[float] = mapped_column(Double, nullable=False)
    effective_capacity_ah: Mapped[float] = mapped_column(Double, nullable=False)
    cycle_count: Mapped[int] = mapped_column(Integer, nullable=False)
    soh_kalman_pct: Mapped[float | None] = mapped_column(Double, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of the Reading."""
        return (
            f"Reading(battery_id={self.battery_id!r}, "
            f"timestamp={self.timestamp!r}, soc_kalman={self.soc_kalman!r})"
        )


class Event(Base):
    """Lifecycle event (mode change, low SOC, SOH threshold, cycle)."""

    __tablename__ = "events"
    __table_args__ = (Index("ix_events_battery_ts", "battery_id", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    battery_id: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of the Event."""
        return f"Event(battery_id={self.battery_id!r}, type={self.type!r})"
