"""
Single-consumer ingestion pipeline: raw sample in, estimates and events out.

Each :meth:`IngestionPipeline.tick` handles at most one raw sample, the
globally oldest one in the queue, and walks it through a fixed sequence:

    FETCH -> RESOLVE_BATTERY -> ESTIMATE -> DEGRADE -> DETECT_EVENTS -> COMMIT

1. **FETCH**: peek the oldest raw sample. An empty queue ends the tick
   (``IDLE``). A sample that already produced a processed reading (the
   previous run crashed between commit and delete) is deleted without being
   re-applied (``DUPLICATE``). A malformed sample is deleted (``DROPPED``).
2. **RESOLVE_BATTERY**: load or lazily create the persisted battery, and take
   a working copy of its runtime estimator state from the registry.
3. **ESTIMATE**: OCV SOC, coulomb SOC, SOC filter, SOH filter.
4. **DEGRADE**: capacity fade and cycle counting.
5. **DETECT_EVENTS**: CONNECTED (first sighting in this process), mode
   transitions, LOW_SOC / SOC_RECOVERED, and the degradation events.
6. **COMMIT**: battery aggregate, processed reading and events in one
   transaction; then the working copy is adopted into the registry and the
   raw sample is deleted.

A failed commit leaves the registry and the queue untouched, so the sample
is retried by the next tick with the same starting state. Storage failures
are counted; after ``max_consecutive_storage_failures`` failing ticks in a
row the pipeline raises :class:`StorageUnavailableError` instead of spinning.
A computation error on a single sample drops that sample. A commit refused
because the rated capacity changed mid-tick is a failed tick too; the next
tick recomputes the sample against the new configuration.

CHANGELOG:
- 2026-10-18: Retry samples whose rated capacity changed mid-tick (STORY-016)
- 2026-10-18: Scope the duplicate guard to the queue identity (STORY-016)
- 2026-10-18: Adopt runtime state only after a successful commit (STORY-016)
- 2026-10-18: Initial creation (STORY-016)

TODO:
- None
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from bms.src.config import BmsSettings
from bms.src.coulomb import floor_dt, soc_coulomb
from bms.src.degradation import HealthState, apply_health_update, blend_reported_soh
from bms.src.events import classify_mode, detect_low_soc, detect_mode_change
from bms.src.innovation import InnovationWindow
from bms.src.models import (
    BatteryConfig,
    BatteryEvent,
    EventType,
    ProcessedReading,
    RawSample,
)
from bms.src.normalizer import normalize
from bms.src.queue import RawQueue
from bms.src.registry import BatteryRegistry, BatteryRuntimeState, StateFactory
from bms.src.soc_filter import SocFilter
from bms.src.soh_filter import SohFilter
from bms.src.store import Store

logger = logging.getLogger(__name__)


class TickOutcome(enum.StrEnum):
    """What a single pipeline tick did."""

    IDLE = "IDLE"
    PROCESSED = "PROCESSED"
    DROPPED = "DROPPED"
    DUPLICATE = "DUPLICATE"
    FAILED = "FAILED"


class StorageUnavailableError(RuntimeError):
    """Raised when storage keeps failing and the pipeline must halt."""


@dataclass
class StepResult:
    """Everything one sample produces, before it is committed."""

    state: BatteryRuntimeState
    battery: BatteryConfig
    reading: ProcessedReading
    events: list[BatteryEvent]


# ---------------------------------------------------------------------------
# Runtime state construction
# ---------------------------------------------------------------------------


def _floor_ah(rated_ah: float, settings: BmsSettings) -> float:
    return rated_ah * settings.min_soh_pct / 100.0


def make_state_factory(settings: BmsSettings) -> StateFactory:
    """Return a factory that seeds runtime estimator state for a battery.

    The SOC filter starts at ``soc_initial_pct`` against the rated capacity;
    the SOH filter starts from the persisted effective capacity.
    """

    def _window(r_initial: float) -> InnovationWindow:
        return InnovationWindow(
            size=settings.innovation_window,
            min_samples=settings.innovation_min_samples,
            r_initial=r_initial,
            r_floor=settings.r_floor,
        )

    def factory(config: BatteryConfig, timestamp: datetime) -> BatteryRuntimeState:
        health = HealthState.from_config(config, default_rated_ah=settings.default_rated_ah)
        soc_filter = SocFilter(
            capacity_ah=health.rated_ah,
            initial_soc=settings.soc_initial_pct,
            initial_p=settings.soc_initial_p,
            q_base=settings.soc_q_base,
            q_per_amp=settings.soc_q_per_amp,
            rest_current_a=settings.rest_current_a,
            plausible_min_v=settings.ocv_plausible_min_v,
            plausible_max_v=settings.ocv_plausible_max_v,
            ocv_empty_v=settings.ocv_empty_v,
            ocv_full_v=settings.ocv_full_v,
            window=_window(settings.soc_r_initial),
        )
        soh_filter = SohFilter(
            rated_ah=health.rated_ah,
            initial_capacity_ah=health.effective_capacity_ah,
            floor_ah=_floor_ah(health.rated_ah, settings),
            initial_p=settings.soh_initial_p,
            q_cap=settings.soh_q,
            window=_window(settings.soh_r_initial),
        )
        return BatteryRuntimeState(
            battery_id=config.battery_id,
            last_timestamp=timestamp,
            soc_filter=soc_filter,
            soh_filter=soh_filter,
            last_soc_pct=soc_filter.x,
        )

    return factory


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class IngestionPipeline:
    """Turns raw samples from a :class:`RawQueue` into persisted estimates.

    Args:
        queue: Source of raw samples (single consumer).
        store: Persistence for batteries, readings and events.
        settings: Estimator and pipeline configuration.
        registry: Runtime state registry. A fresh one is created when
            omitted, so independent pipelines never share filter state.
    """

    def __init__(
        self,
        *,
        queue: RawQueue,
        store: Store,
        settings: BmsSettings | None = None,
        registry: BatteryRegistry | None = None,
    ) -> None:
        self._queue = queue
        self._store = store
        self._settings = settings if settings is not None else BmsSettings()
        self._registry = (
            registry if registry is not None else BatteryRegistry(make_state_factory(self._settings))
        )
        self._tunables = self._settings.degradation_tunables()
        self._consecutive_failures = 0

    @property
    def registry(self) -> BatteryRegistry:
        """The runtime state registry owned by this pipeline."""
        return self._registry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def tick(self) -> TickOutcome:
        """Process at most one raw sample.

        Never raises for a single bad sample or a transient storage error;
        those are logged and reported as ``DROPPED`` / ``FAILED``.

        Raises:
            StorageUnavailableError: After too many consecutive failing ticks.
        """
        try:
            outcome = await self._run_tick()
        except Exception as exc:
            self._consecutive_failures += 1
            logger.error(
                "Pipeline tick failed (%d consecutive)",
                self._consecutive_failures,
                exc_info=True,
            )
            if self._consecutive_failures >= self._settings.max_consecutive_storage_failures:
                raise StorageUnavailableError(
                    f"Storage failed on {self._consecutive_failures} consecutive ticks"
                ) from exc
            return TickOutcome.FAILED

        self._consecutive_failures = 0
        return outcome

    # ------------------------------------------------------------------
    # Tick stages
    # ------------------------------------------------------------------

    async def _run_tick(self) -> TickOutcome:
        # FETCH
        head = await self._queue.peek_oldest()
        if head is None:
            return TickOutcome.IDLE
        raw_id, payload = head

        if await self._store.is_processed(self._queue.queue_id, raw_id):
            logger.warning(
                "Raw sample id=%d was already processed, deleting without re-applying",
                raw_id,
            )
            await self._queue.delete(raw_id)
            return TickOutcome.DUPLICATE

        sample = normalize(payload)
        if sample is None:
            logger.warning("Dropping malformed raw sample id=%d", raw_id)
            await self._queue.delete(raw_id)
            return TickOutcome.DROPPED

        # RESOLVE_BATTERY
        config = await self._store.get_or_create_battery(sample.battery_id)

        try:
            step = self._compute(raw_id, sample, config)
        except Exception:
            logger.error(
                "Estimation failed for raw sample id=%d (battery '%s'), dropping",
                raw_id,
                sample.battery_id,
                exc_info=True,
            )
            await self._queue.delete(raw_id)
            return TickOutcome.DROPPED

        # COMMIT
        await self._store.commit_sample(
            battery=step.battery,
            reading=step.reading,
            events=step.events,
        )
        self._registry.adopt(step.state)
        for event in step.events:
            logger.info("Event %s for battery '%s': %s", event.type, event.battery_id, event.message)

        try:
            await self._queue.delete(raw_id)
        except Exception:
            # Committed already; the duplicate guard deletes it on the next fetch.
            logger.error(
                "Failed to delete consumed raw sample id=%d", raw_id, exc_info=True
            )
        return TickOutcome.PROCESSED

    def _resolve_state(
        self,
        config: BatteryConfig,
        health: HealthState,
        sample: RawSample,
    ) -> tuple[BatteryRuntimeState, bool]:
        state, is_new = self._registry.resolve(config, sample.timestamp)
        # Rated capacity may have been reconfigured since the filters were seeded.
        if state.soc_filter.capacity_ah != health.rated_ah:
            state.soc_filter.capacity_ah = health.rated_ah
            state.soh_filter.retarget(health.rated_ah, _floor_ah(health.rated_ah, self._settings))
        return state, is_new

    def _compute(self, raw_id: int, sample: RawSample, config: BatteryConfig) -> StepResult:
        """ESTIMATE, DEGRADE and DETECT_EVENTS for one sample (no I/O)."""
        settings = self._settings
        health = HealthState.from_config(config, default_rated_ah=settings.default_rated_ah)
        state, is_new = self._resolve_state(config, health, sample)

        voltage_v = sample.voltage_v
        current_a = sample.current_a
        timestamp = sample.timestamp

        # ESTIMATE
        dt_s = floor_dt((timestamp - state.last_timestamp).total_seconds())
        soc_estimate = state.soc_filter.update(voltage_v, current_a, dt_s)
        soc_coulomb_pct = soc_coulomb(
            state.last_soc_pct, current_a, dt_s, state.soc_filter.capacity_ah
        )
        soh_estimate = state.soh_filter.update(soc_estimate.z, current_a, dt_s)

        # DEGRADE
        health_update = apply_health_update(health, timestamp, current_a, self._tunables)
        next_health = health_update.next

        # DETECT_EVENTS
        detected: list[tuple[EventType, str]] = []
        if is_new:
            detected.append(
                (EventType.CONNECTED, f"Battery {sample.battery_id} started sending data")
            )

        mode = classify_mode(current_a, settings.mode_epsilon_a)
        mode_event = detect_mode_change(sample.battery_id, state.last_mode, mode, current_a)
        if mode_event is not None:
            detected.append((mode_event.type, mode_event.message))

        low_soc, low_soc_event = detect_low_soc(
            sample.battery_id,
            state.low_soc,
            soc_estimate.soc,
            threshold_pct=settings.low_soc_pct,
            rearm_band_pct=settings.low_soc_rearm_band_pct,
        )
        if low_soc_event is not None:
            detected.append((low_soc_event.type, low_soc_event.message))

        detected.extend((event.type, event.message) for event in health_update.events)

        # Advance the working state; adopted only after the commit succeeds.
        state.last_timestamp = max(state.last_timestamp, timestamp)
        state.last_soc_pct = soc_estimate.soc
        state.last_mode = mode
        state.low_soc = low_soc

        battery = config.model_copy(
            update={
                "rated_ah": next_health.rated_ah,
                "effective_capacity_ah": next_health.effective_capacity_ah,
                "soh_pct": next_health.soh_pct,
                "total_discharged_ah": next_health.total_discharged_ah,
                "discharge_cycle_ah": next_health.discharge_cycle_ah,
                "cycle_count": next_health.cycle_count,
                "last_timestamp": next_health.last_timestamp,
            }
        )
        reported_soh = blend_reported_soh(
            next_health.soh_pct,
            user_override_soh=config.user_override_soh,
            user_set_soh_pct=config.user_set_soh_pct,
            user_soh_weight=config.user_soh_weight,
        )
        reading = ProcessedReading(
            timestamp=timestamp,
            battery_id=sample.battery_id,
            voltage_v=voltage_v,
            current_a=current_a,
            power_w=voltage_v * current_a,
            estimated_ah=health_update.derived.discharged_ah,
            soc_ocv=soc_estimate.z,
            soc_coulomb=soc_coulomb_pct,
            soc_kalman=soc_estimate.soc,
            soh_pct=reported_soh,
            effective_capacity_ah=next_health.effective_capacity_ah,
            cycle_count=next_health.cycle_count,
            soh_kalman_pct=soh_estimate.soh_pct,
            queue_id=self._queue.queue_id,
            raw_id=raw_id,
        )
        events = [
            BatteryEvent(
                timestamp=timestamp,
                battery_id=sample.battery_id,
                type=event_type,
                message=message,
            )
            for event_type, message in detected
        ]

        logger.debug(
            "Battery '%s': soc=%.2f (ocv=%.2f, gated=%s) soh_model=%.2f soh_kf=%.2f dt=%.1fs",
            sample.battery_id,
            soc_estimate.soc,
            soc_estimate.z,
            not soc_estimate.used_measurement,
            next_health.soh_pct,
            soh_estimate.soh_pct,
            dt_s,
        )
        return StepResult(state=state, battery=battery, reading=reading, events=events)
