"""
Integration tests for the ingestion pipeline on temporary SQLite files.

Tests verify:
- A two hour -5 A discharge of a 40 Ah battery, voltage sagging from 12.6 V
  to 11.8 V, counts 10 Ah and drives the fused SOC monotonically down to
  ~75 % while the gated OCV SOC falls to 0 %; resting at the empty voltage then
  pulls SOC below the LOW_SOC threshold.
- Crash between commit and delete: the raw sample is never re-applied.
- A fresh queue file reusing raw ids is not mistaken for duplicates.
- A rated capacity change racing a tick is retried against the new rating.
- A failed commit leaves the queue and runtime state untouched.
- Consecutive storage failures halt the pipeline.
- Malformed samples are dropped, never retried.
- CONNECTED fires once per battery; mode events are edge-triggered.
- Rated capacity changes reach the running filters.
- User SOH override is blended into reported SOH only.

CHANGELOG:
- 2026-10-18: Ramp voltage in the discharge run; cover fresh queues and rated races (STORY-016)
- 2026-10-18: Initial creation (STORY-016)

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from bms.src.config import BmsSettings
from bms.src.models import EventType
from bms.src.pipeline import IngestionPipeline, StorageUnavailableError, TickOutcome
from bms.src.queue import RawQueue
from bms.src.store import Store
from conftest import drain, make_payload
from sqlalchemy.exc import OperationalError


async def _enqueue_series(
    queue: RawQueue,
    *,
    count: int,
    step_s: float,
    start_s: float = 0.0,
    battery_id: str = "B1",
    voltage_v: float = 12.0,
    current_a: float = -5.0,
) -> None:
    for i in range(count):
        await queue.enqueue(
            make_payload(
                battery_id=battery_id,
                offset_s=start_s + i * step_s,
                voltage_v=voltage_v,
                current_a=current_a,
            )
        )


# ---------------------------------------------------------------------------
# End-to-end estimation
# ---------------------------------------------------------------------------


class TestEndToEndDischarge:
    """B1, rated 40 Ah, -5 A for two hours."""

    @pytest.mark.asyncio
    async def test_discharge_counts_ten_amp_hours(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        # Terminal voltage sags linearly from full (12.6 V) to empty (11.8 V).
        for i in range(121):
            await queue.enqueue(
                make_payload(offset_s=i * 60.0, voltage_v=12.6 - 0.8 * i / 120, current_a=-5.0)
            )

        outcomes = await drain(pipeline)
        assert outcomes == [TickOutcome.PROCESSED] * 121
        assert await queue.count() == 0

        readings = await store.recent_readings("B1", limit=500)
        assert len(readings) == 121
        socs = [r.soc_kalman for r in readings]
        assert all(b < a for a, b in zip(socs, socs[1:], strict=False))
        # Under load OCV is gated, so the fused SOC follows coulomb counting.
        assert socs[-1] == pytest.approx(75.0, abs=0.1)
        assert readings[-1].soc_coulomb == pytest.approx(socs[-1], abs=1e-6)
        assert all(r.power_w == pytest.approx(r.voltage_v * r.current_a) for r in readings)
        assert readings[0].soc_ocv == pytest.approx(100.0)
        assert readings[-1].soc_ocv == pytest.approx(0.0, abs=1e-6)

        battery = await store.get_battery("B1")
        assert battery is not None
        assert battery.total_discharged_ah == pytest.approx(10.0, abs=0.01)
        assert battery.cycle_count == 0
        assert battery.effective_capacity_ah < 40.0
        assert battery.effective_capacity_ah == pytest.approx(40.0 - 10.0 * 0.0004, abs=1e-3)
        assert sum(r.estimated_ah for r in readings) == pytest.approx(10.0, abs=0.01)

        events = await store.list_events("B1")
        assert sorted(e.type for e in events) == sorted(
            [EventType.CONNECTED, EventType.DISCHARGING]
        )

    @pytest.mark.asyncio
    async def test_rest_at_empty_voltage_reaches_low_soc(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await _enqueue_series(queue, count=121, step_s=60.0)
        await _enqueue_series(
            queue, count=5, step_s=60.0, start_s=7260.0, voltage_v=11.8, current_a=0.0
        )

        await drain(pipeline)

        readings = await store.recent_readings("B1", limit=500)
        assert readings[-1].soc_ocv == pytest.approx(0.0)
        assert readings[-1].soc_kalman < 25.0

        types = [e.type for e in await store.list_events("B1")]
        assert types.count(EventType.LOW_SOC) == 1
        assert types.count(EventType.IDLE) == 1

    @pytest.mark.asyncio
    async def test_first_sample_uses_one_second(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await queue.enqueue(make_payload(current_a=-36.0, voltage_v=12.0))
        await pipeline.tick()
        reading = (await store.recent_readings("B1"))[0]
        assert reading.estimated_ah == pytest.approx(0.01)
        assert reading.soc_kalman == pytest.approx(100.0 - 100.0 * 0.01 / 40.0)


# ---------------------------------------------------------------------------
# At-most-once and failure handling
# ---------------------------------------------------------------------------


class TestAtMostOnce:
    @pytest.mark.asyncio
    async def test_crash_between_commit_and_delete(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await _enqueue_series(queue, count=2, step_s=60.0)

        with patch.object(queue, "delete", AsyncMock(side_effect=RuntimeError("disk gone"))):
            assert await pipeline.tick() is TickOutcome.PROCESSED
        assert await queue.count() == 2

        assert await pipeline.tick() is TickOutcome.DUPLICATE
        assert await pipeline.tick() is TickOutcome.PROCESSED
        assert await pipeline.tick() is TickOutcome.IDLE

        readings = await store.recent_readings("B1")
        assert len(readings) == 2
        assert len({r.raw_id for r in readings}) == 2
        battery = await store.get_battery("B1")
        # 1 s seed step plus one 60 s step at 5 A.
        assert battery.total_discharged_ah == pytest.approx(5.0 * 61.0 / 3600.0)

    @pytest.mark.asyncio
    async def test_failed_commit_leaves_state_untouched(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await queue.enqueue(make_payload())

        failing = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("locked")))
        with patch.object(store, "commit_sample", failing):
            assert await pipeline.tick() is TickOutcome.FAILED
        assert await queue.count() == 1
        assert "B1" not in pipeline.registry

        assert await pipeline.tick() is TickOutcome.PROCESSED
        assert await queue.count() == 0
        types = [e.type for e in await store.list_events("B1")]
        assert types.count(EventType.CONNECTED) == 1

    @pytest.mark.asyncio
    async def test_fresh_queue_reusing_ids_is_processed(
        self,
        tmp_path: Path,
        pipeline: IngestionPipeline,
        queue: RawQueue,
        store: Store,
        settings: BmsSettings,
    ) -> None:
        """A recreated queue file starts its ids over; those samples are new."""
        first_id = await queue.enqueue(make_payload(offset_s=0))
        assert await pipeline.tick() is TickOutcome.PROCESSED

        async with RawQueue(tmp_path / "fresh_queue.db") as fresh:
            fresh_id = await fresh.enqueue(make_payload(offset_s=60, current_a=-5.0))
            assert fresh_id == first_id
            restarted = IngestionPipeline(queue=fresh, store=store, settings=settings)

            assert await restarted.tick() is TickOutcome.PROCESSED
            assert await fresh.count() == 0

        readings = await store.recent_readings("B1")
        assert len(readings) == 2
        assert readings[0].queue_id == queue.queue_id
        assert readings[1].queue_id == fresh.queue_id

    @pytest.mark.asyncio
    async def test_consecutive_storage_failures_halt(
        self, queue: RawQueue, store: Store, settings: BmsSettings
    ) -> None:
        settings = settings.model_copy(update={"max_consecutive_storage_failures": 3})
        pipeline = IngestionPipeline(queue=queue, store=store, settings=settings)

        with patch.object(queue, "peek_oldest", AsyncMock(side_effect=RuntimeError("io"))):
            assert await pipeline.tick() is TickOutcome.FAILED
            assert await pipeline.tick() is TickOutcome.FAILED
            with pytest.raises(StorageUnavailableError):
                await pipeline.tick()

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(
        self, queue: RawQueue, store: Store, settings: BmsSettings
    ) -> None:
        settings = settings.model_copy(update={"max_consecutive_storage_failures": 2})
        pipeline = IngestionPipeline(queue=queue, store=store, settings=settings)
        broken = AsyncMock(side_effect=RuntimeError("io"))

        with patch.object(queue, "peek_oldest", broken):
            assert await pipeline.tick() is TickOutcome.FAILED
        assert await pipeline.tick() is TickOutcome.IDLE
        with patch.object(queue, "peek_oldest", broken):
            assert await pipeline.tick() is TickOutcome.FAILED


class TestMalformedSamples:
    @pytest.mark.asyncio
    async def test_malformed_samples_are_dropped(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await queue.enqueue("garbage")
        await queue.enqueue(
            '{"batteryId": "B1", "timestamp": "2026-10-18T08:00:00+00:00", '
            '"voltage_V": NaN, "current_A": 0}'
        )

        assert await drain(pipeline) == [TickOutcome.DROPPED, TickOutcome.DROPPED]
        assert await queue.count() == 0
        assert await store.get_battery("B1") is None
        assert await store.recent_readings("B1") == []

    @pytest.mark.asyncio
    async def test_estimation_error_drops_sample(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await queue.enqueue(make_payload())
        with patch(
            "bms.src.pipeline.apply_health_update", side_effect=ValueError("bad state")
        ):
            assert await pipeline.tick() is TickOutcome.DROPPED
        assert await queue.count() == 0
        assert "B1" not in pipeline.registry

    @pytest.mark.asyncio
    async def test_missing_battery_id_uses_default(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await queue.enqueue({"timestamp": "2026-10-18T08:00:00Z", "voltage_V": 12.5, "current_mA": 0})
        assert await pipeline.tick() is TickOutcome.PROCESSED
        assert await store.get_battery("BATT_DEFAULT") is not None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestEvents:
    @pytest.mark.asyncio
    async def test_connected_once_per_battery(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        for i in range(3):
            await queue.enqueue(make_payload(battery_id="A", offset_s=i))
            await queue.enqueue(make_payload(battery_id="B", offset_s=i))
        await drain(pipeline)

        connected = [e for e in await store.list_events() if e.type is EventType.CONNECTED]
        assert sorted(e.battery_id for e in connected) == ["A", "B"]
        assert connected[0].message.endswith("started sending data")

    @pytest.mark.asyncio
    async def test_mode_events_are_edge_triggered(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await _enqueue_series(queue, count=3, step_s=1.0, voltage_v=12.6, current_a=2.0)
        await drain(pipeline)

        types = [e.type for e in await store.list_events("B1")]
        assert types.count(EventType.CHARGING) == 1

    @pytest.mark.asyncio
    async def test_connected_refires_after_restart(
        self, queue: RawQueue, store: Store, settings: BmsSettings
    ) -> None:
        first = IngestionPipeline(queue=queue, store=store, settings=settings)
        await queue.enqueue(make_payload(offset_s=0))
        await first.tick()

        second = IngestionPipeline(queue=queue, store=store, settings=settings)
        await queue.enqueue(make_payload(offset_s=60))
        await second.tick()

        types = [e.type for e in await store.list_events("B1")]
        assert types.count(EventType.CONNECTED) == 2


# ---------------------------------------------------------------------------
# Configuration flowing into the estimators
# ---------------------------------------------------------------------------


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_rated_change_reaches_filters(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await queue.enqueue(make_payload(offset_s=0))
        await pipeline.tick()
        await store.set_battery_config("B1", rated_ah=100.0)

        await queue.enqueue(make_payload(offset_s=60))
        await pipeline.tick()

        state = pipeline.registry.get("B1")
        assert state.soc_filter.capacity_ah == 100.0
        assert state.soh_filter.rated_ah == 100.0
        battery = await store.get_battery("B1")
        assert battery.rated_ah == 100.0

    @pytest.mark.asyncio
    async def test_user_override_blends_reported_soh(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await store.set_battery_config(
            "B1", user_override_soh=True, user_set_soh_pct=80.0, user_soh_weight=0.5
        )
        await queue.enqueue(make_payload(current_a=0.0))
        await pipeline.tick()

        reading = (await store.recent_readings("B1"))[0]
        assert reading.soh_pct == pytest.approx(90.0)
        battery = await store.get_battery("B1")
        assert battery.soh_pct == pytest.approx(100.0)
        assert battery.effective_capacity_ah == pytest.approx(40.0)

    @pytest.mark.asyncio
    async def test_out_of_order_sample_does_not_rewind(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await queue.enqueue(make_payload(offset_s=600))
        await pipeline.tick()
        await queue.enqueue(make_payload(offset_s=0))
        assert await pipeline.tick() is TickOutcome.PROCESSED

        battery = await store.get_battery("B1")
        readings = await store.recent_readings("B1")
        assert battery.last_timestamp == readings[-1].timestamp
        assert pipeline.registry.get("B1").last_timestamp == battery.last_timestamp

    @pytest.mark.asyncio
    async def test_independent_registries(self, tmp_path: Path, store: Store) -> None:
        """Two pipelines never share runtime state."""
        async with RawQueue(tmp_path / "q1.db") as q1, RawQueue(tmp_path / "q2.db") as q2:
            p1 = IngestionPipeline(queue=q1, store=store)
            p2 = IngestionPipeline(queue=q2, store=store)
            assert p1.registry is not p2.registry

    @pytest.mark.asyncio
    async def test_rated_change_during_tick_is_retried(
        self, pipeline: IngestionPipeline, queue: RawQueue, store: Store
    ) -> None:
        await queue.enqueue(make_payload(offset_s=0, current_a=-5.0))
        original = store.get_or_create_battery

        async def _resolve_then_reconfigure(battery_id: str):
            config = await original(battery_id)
            await store.set_battery_config(battery_id, rated_ah=20.0)
            return config

        racing = AsyncMock(side_effect=_resolve_then_reconfigure)
        with patch.object(store, "get_or_create_battery", racing):
            assert await pipeline.tick() is TickOutcome.FAILED
        assert await queue.count() == 1
        assert await store.recent_readings("B1") == []

        assert await pipeline.tick() is TickOutcome.PROCESSED
        battery = await store.get_battery("B1")
        assert battery.rated_ah == 20.0
        assert battery.effective_capacity_ah <= battery.rated_ah
        assert battery.soh_pct == pytest.approx(
            100.0 * battery.effective_capacity_ah / battery.rated_ah
        )
        assert pipeline.registry.get("B1").soc_filter.capacity_ah == 20.0
