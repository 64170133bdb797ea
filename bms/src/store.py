"""
Persistence service for battery aggregates, processed readings, and events.

Wraps the SQLAlchemy async session factory with the operations the pipeline
and its external collaborators need:

- get_or_create_battery(battery_id): lazily materialize a battery with
  defaults (rated capacity, effective capacity = rated).
- is_processed(queue_id, raw_id): whether a raw sample already produced a
  reading.
- commit_sample(...): one transaction that updates the battery aggregate and
  appends the processed reading and its events.
- recent_readings(battery_id, limit): read-only feed for forecasting,
  ordered by time.
- list_events(battery_id, limit): newest-first event log.
- set_battery_config(...): external configuration input (rated capacity and
  user SOH override settings).

SQLite hands back naive datetimes; every datetime leaving this module is
normalized to timezone-aware UTC.

CHANGELOG:
- 2026-10-18: Reject commits computed against a superseded rated capacity (STORY-013)
- 2026-10-18: Key the duplicate guard on (queue_id, raw_id) (STORY-013)
- 2026-10-18: Add set_battery_config for external configuration (STORY-013)
- 2026-10-18: Initial creation (STORY-013)

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bms.src.db.models import Battery, Event, Reading
from bms.src.models import BatteryConfig, BatteryEvent, ProcessedReading

logger = logging.getLogger(__name__)

DEFAULT_USER_SOH_WEIGHT: float = 0.7
"""Weight stored when a user override is switched on without one."""


class StaleBatteryConfigError(RuntimeError):
    """Raised when the rated capacity changed while a sample was being processed."""


def _as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes returned by the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_config(row: Battery) -> BatteryConfig:
    config = BatteryConfig.model_validate(row)
    return config.model_copy(update={"last_timestamp": _as_utc(row.last_timestamp)})


def _to_reading(row: Reading) -> ProcessedReading:
    reading = ProcessedReading.model_validate(row)
    return reading.model_copy(update={"timestamp": _as_utc(row.timestamp)})


def _to_event(row: Event) -> BatteryEvent:
    event = BatteryEvent.model_validate(row)
    return event.model_copy(update={"timestamp": _as_utc(row.timestamp)})


class Store:
    """Async persistence facade used by the ingestion pipeline.

    Args:
        session_factory: SQLAlchemy async session factory.
        default_rated_ah: Rated capacity given to lazily created batteries.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        default_rated_ah: float = 40.0,
    ) -> None:
        self._session_factory = session_factory
        self._default_rated_ah = default_rated_ah

    def _new_battery(self, battery_id: str, rated_ah: float | None = None) -> Battery:
        rated = rated_ah if rated_ah is not None else self._default_rated_ah
        return Battery(
            battery_id=battery_id,
            rated_ah=rated,
            effective_capacity_ah=rated,
            soh_pct=100.0,
            total_discharged_ah=0.0,
            discharge_cycle_ah=0.0,
            cycle_count=0,
            last_timestamp=None,
            user_override_soh=False,
        )

    # ------------------------------------------------------------------
    # Battery aggregate
    # ------------------------------------------------------------------

    async def get_battery(self, battery_id: str) -> BatteryConfig | None:
        """Return the persisted battery, or ``None`` if it does not exist."""
        async with self._session_factory() as session:
            row = await session.get(Battery, battery_id)
            return _to_config(row) if row is not None else None

    async def get_or_create_battery(self, battery_id: str) -> BatteryConfig:
        """Return the battery, creating it with defaults when unseen.

        Unknown batteries are never an error: a new row is inserted with the
        default rated capacity and ``effective_capacity_ah = rated_ah``.
        """
        async with self._session_factory() as session:
            row = await session.get(Battery, battery_id)
            if row is not None:
                return _to_config(row)

            row = self._new_battery(battery_id)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Created concurrently by a configuration write.
                await session.rollback()
                row = await session.get(Battery, battery_id)
                if row is None:
                    raise
            else:
                logger.info(
                    "Created battery '%s' with rated_ah=%s", battery_id, row.rated_ah
                )
            return _to_config(row)

    async def set_battery_config(
        self,
        battery_id: str,
        *,
        rated_ah: float | None = None,
        user_override_soh: bool | None = None,
        user_set_soh_pct: float | None = None,
        user_soh_weight: float | None = None,
    ) -> BatteryConfig:
        """Upsert externally supplied battery configuration.

        Only the arguments that are not ``None`` are written. Changing the
        rated capacity of an existing battery rescales its effective capacity
        so SOH is preserved.

        Raises:
            ValueError: If *rated_ah* is not positive, *user_soh_weight* is
                outside ``[0, 1]`` or *user_set_soh_pct* is negative.
        """
        if rated_ah is not None and rated_ah <= 0:
            raise ValueError("rated_ah must be > 0")
        if user_soh_weight is not None and not 0.0 <= user_soh_weight <= 1.0:
            raise ValueError("user_soh_weight must be within [0, 1]")
        if user_set_soh_pct is not None and user_set_soh_pct < 0:
            raise ValueError("user_set_soh_pct must be >= 0")

        async with self._session_factory() as session, session.begin():
            row = await session.get(Battery, battery_id)
            if row is None:
                row = self._new_battery(battery_id, rated_ah)
                session.add(row)
            elif rated_ah is not None and rated_ah != row.rated_ah:
                ratio = row.effective_capacity_ah / row.rated_ah if row.rated_ah > 0 else 1.0
                row.rated_ah = rated_ah
                row.effective_capacity_ah = ratio * rated_ah

            if user_override_soh is not None:
                row.user_override_soh = user_override_soh
                if user_override_soh and row.user_soh_weight is None and user_soh_weight is None:
                    row.user_soh_weight = DEFAULT_USER_SOH_WEIGHT
            if user_set_soh_pct is not None:
                row.user_set_soh_pct = user_set_soh_pct
            if user_soh_weight is not None:
                row.user_soh_weight = user_soh_weight

        logger.info("Updated configuration for battery '%s'", battery_id)
        return _to_config(row)

    # ------------------------------------------------------------------
    # Processed samples
    # ------------------------------------------------------------------

    async def is_processed(self, queue_id: str, raw_id: int) -> bool:
        """Whether a processed reading already exists for *raw_id* of *queue_id*."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Reading.id)
                .where(Reading.queue_id == queue_id, Reading.raw_id == raw_id)
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def commit_sample(
        self,
        *,
        battery: BatteryConfig,
        reading: ProcessedReading,
        events: list[BatteryEvent],
    ) -> None:
        """Persist one processed sample atomically.

        Updates the health fields of the battery aggregate (configuration
        fields are left alone), appends the reading and appends the events,
        all in one transaction.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: On any storage failure; nothing
                is written in that case.
            StaleBatteryConfigError: If the persisted rated capacity no longer
                matches *battery*; nothing is written and the sample must be
                recomputed.
        """
        async with self._session_factory() as session, session.begin():
            row = await session.get(Battery, battery.battery_id)
            if row is None:
                row = self._new_battery(battery.battery_id, battery.rated_ah)
                session.add(row)
            elif row.rated_ah != battery.rated_ah:
                raise StaleBatteryConfigError(
                    f"Battery '{battery.battery_id}' rated capacity changed "
                    f"from {battery.rated_ah} to {row.rated_ah} Ah"
                )

            row.effective_capacity_ah = battery.effective_capacity_ah
            row.soh_pct = battery.soh_pct
            row.total_discharged_ah = battery.total_discharged_ah
            row.discharge_cycle_ah = battery.discharge_cycle_ah
            row.cycle_count = battery.cycle_count
            row.last_timestamp = battery.last_timestamp

            session.add(Reading(**reading.model_dump()))
            session.add_all(
                Event(
                    timestamp=event.timestamp,
                    battery_id=event.battery_id,
                    type=event.type.value,
                    message=event.message,
                )
                for event in events
            )

    # ------------------------------------------------------------------
    # Read-only feeds
    # ------------------------------------------------------------------

    async def recent_readings(
        self,
        battery_id: str,
        limit: int = 200,
    ) -> list[ProcessedReading]:
        """Return up to *limit* most recent readings, oldest first."""
        if limit < 1:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                select(Reading)
                .where(Reading.battery_id == battery_id)
                .order_by(Reading.timestamp.desc(), Reading.id.desc())
                .limit(limit)
            )
            rows = list(result.scalars())
        rows.reverse()
        return [_to_reading(row) for row in rows]

    async def list_events(
        self,
        battery_id: str | None = None,
        limit: int = 200,
    ) -> list[BatteryEvent]:
        """Return up to *limit* events, newest first (optionally per battery)."""
        if limit < 1:
            return []
        stmt = select(Event).order_by(Event.timestamp.desc(), Event.id.desc()).limit(limit)
        if battery_id is not None:
            stmt = stmt.where(Event.battery_id == battery_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_event(row) for row in result.scalars()]
