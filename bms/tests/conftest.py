"""
Shared test fixtures for the estimation daemon tests.

All BmsSettings environment variables are cleaned before each test to ensure
isolation, and the working directory is moved to tmp_path so no ``.env`` file
is picked up. Async fixtures build a raw queue, a SQLite-backed store and a
pipeline on temporary files.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-018)

TODO:
- None
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from bms.src.config import BmsSettings
from bms.src.db.session import create_engine, create_session_factory, init_schema
from bms.src.pipeline import IngestionPipeline
from bms.src.queue import RawQueue
from bms.src.store import Store

# All BmsSettings environment variable names, used for cleanup.
_ALL_BMS_ENV_VARS = tuple(name.upper() for name in BmsSettings.model_fields)

T0 = datetime(2026, 10, 18, 8, 0, 0, tzinfo=UTC)
"""Reference timestamp used by sample builders."""


def make_payload(
    *,
    battery_id: str = "B1",
    ts: datetime | None = None,
    offset_s: float = 0.0,
    voltage_v: float = 12.6,
    current_a: float = 0.0,
) -> str:
    """Return a raw queue JSON payload in the wire spelling."""
    when = (ts or T0) + timedelta(seconds=offset_s)
    return json.dumps(
        {
            "batteryId": battery_id,
            "timestamp": when.isoformat(),
            "voltage_V": voltage_v,
            "current_A": current_a,
        }
    )


@pytest.fixture(autouse=True)
def _clean_bms_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all BMS env vars and isolate from .env files before each test."""
    for var in _ALL_BMS_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def settings(tmp_path: Path) -> BmsSettings:
    """Default settings pointing at temporary files."""
    return BmsSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'bms.db'}",
        queue_path=str(tmp_path / "raw_queue.db"),
        health_path=str(tmp_path / "health.json"),
    )


@pytest_asyncio.fixture()
async def queue(settings: BmsSettings) -> AsyncIterator[RawQueue]:
    """An opened raw queue on a temporary SQLite file."""
    async with RawQueue(settings.queue_path) as q:
        yield q


@pytest_asyncio.fixture()
async def store(settings: BmsSettings) -> AsyncIterator[Store]:
    """A store on a temporary SQLite database with the schema created."""
    engine = create_engine(settings.database_url)
    await init_schema(engine)
    try:
        yield Store(create_session_factory(engine), default_rated_ah=settings.default_rated_ah)
    finally:
        await engine.dispose()


@pytest.fixture()
def pipeline(queue: RawQueue, store: Store, settings: BmsSettings) -> IngestionPipeline:
    """A pipeline wired to the temporary queue and store."""
    return IngestionPipeline(queue=queue, store=store, settings=settings)


async def drain(pipeline: IngestionPipeline, limit: int = 100_000) -> list[Any]:
    """Tick until the queue reports idle; return the outcomes."""
    from bms.src.pipeline import TickOutcome

    outcomes = []
    for _ in range(limit):
        outcome = await pipeline.tick()
        if outcome is TickOutcome.IDLE:
            break
        outcomes.append(outcome)
    return outcomes
