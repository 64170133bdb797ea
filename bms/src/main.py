"""
Estimation daemon main loop.

Runs a single asyncio consumer loop over the raw sample queue:

1. **Tick**: the IngestionPipeline processes the oldest raw sample (or
   reports the queue as idle).
2. **Pace**: while samples keep arriving the loop drains back to back; once
   the queue is empty (or a tick failed) it waits ``poll_interval_s`` before
   the next tick.

A tick never breaks the loop for a bad sample or a transient storage error.
When storage keeps failing the pipeline raises StorageUnavailableError; the
loop lets it propagate and the process exits non-zero so the supervisor can
restart it. Graceful shutdown on SIGTERM/SIGINT sets a shared asyncio.Event;
the loop finishes its current tick and returns.

Structured JSON logging is used for all events. A HealthWriter instance
tracks last_tick_ts, last_processed_ts and queue_count, writing a JSON health
file after each tick.

CHANGELOG:
- 2026-10-18: Report tracked batteries in the health file (STORY-017)
- 2026-10-18: Exit non-zero when storage is unavailable (STORY-017)
- 2026-10-18: Initial creation (STORY-017)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.engine import make_url

from bms.src.health import HealthWriter
from bms.src.pipeline import StorageUnavailableError, TickOutcome

if TYPE_CHECKING:
    from bms.src.config import BmsSettings
    from bms.src.pipeline import IngestionPipeline
    from bms.src.queue import RawQueue

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the estimation daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.

    Args:
        level: Root log level name, e.g. ``"INFO"`` or ``"DEBUG"``.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def _masked_url(database_url: str) -> str:
    """Return the database URL with any password hidden."""
    try:
        return make_url(database_url).render_as_string(hide_password=True)
    except Exception:
        return "<unparseable>"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: BmsSettings) -> None:
    """Log a config summary at startup, excluding secrets.

    The database URL is logged with its password masked.

    Args:
        settings: The daemon settings.
    """
    logger.info(
        "Estimation daemon starting with config: "
        "database_url=%s, queue_path=%s, health_path=%s, "
        "poll_interval_s=%s, max_consecutive_storage_failures=%s, "
        "default_rated_ah=%s, ocv_empty_v=%s, ocv_full_v=%s, "
        "rest_current_a=%s, low_soc_pct=%s, innovation_window=%s",
        _masked_url(settings.database_url),
        settings.queue_path,
        settings.health_path,
        settings.poll_interval_s,
        settings.max_consecutive_storage_failures,
        settings.default_rated_ah,
        settings.ocv_empty_v,
        settings.ocv_full_v,
        settings.rest_current_a,
        settings.low_soc_pct,
        settings.innovation_window,
    )


# ---------------------------------------------------------------------------
# Single-iteration function (easily testable)
# ---------------------------------------------------------------------------


async def _tick_once(
    *,
    pipeline: IngestionPipeline,
    queue: RawQueue,
    health: HealthWriter | None,
) -> TickOutcome:
    """Execute a single pipeline tick and update the health file.

    Args:
        pipeline: The ingestion pipeline.
        queue: The raw queue, used for the health queue count.
        health: HealthWriter instance, or None to skip health writes.

    Returns:
        The outcome reported by the pipeline.

    Raises:
        StorageUnavailableError: Propagated from the pipeline.
    """
    outcome = await pipeline.tick()

    if health is not None:
        try:
            health.set_queue_count(await queue.count())
            health.set_tracked_batteries(len(pipeline.registry))
            health.record_tick(
                processed=outcome is TickOutcome.PROCESSED,
                dropped=outcome is TickOutcome.DROPPED,
            )
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)

    return outcome


# ---------------------------------------------------------------------------
# Loop runner
# ---------------------------------------------------------------------------


async def run_loop(
    *,
    pipeline: IngestionPipeline,
    queue: RawQueue,
    poll_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Run the consumer loop until shutdown_event is set.

    Ticks back to back while samples are being processed; sleeps for
    poll_interval_s after an idle or failed tick, checking the shutdown
    event while waiting.

    Args:
        pipeline: The ingestion pipeline.
        queue: The raw queue the pipeline consumes.
        poll_interval_s: Seconds to wait when there is nothing to do.
        shutdown_event: Event to signal graceful shutdown.
        health: HealthWriter instance, or None to skip health writes.

    Raises:
        StorageUnavailableError: When storage stays unavailable.
    """
    logger.info("Consumer loop started (poll_interval=%ss)", poll_interval_s)
    while not shutdown_event.is_set():
        outcome = await _tick_once(pipeline=pipeline, queue=queue, health=health)
        if outcome in (TickOutcome.IDLE, TickOutcome.FAILED):
            # Use wait with timeout so we can check shutdown between sleeps
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    shutdown_event.wait(),
                    timeout=poll_interval_s,
                )
        else:
            # Yield so signal handlers and other tasks get a turn while draining.
            await asyncio.sleep(0)
    logger.info("Consumer loop stopped")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run the loop.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    from bms.src.config import BmsSettings
    from bms.src.db.session import create_engine, create_session_factory, init_schema
    from bms.src.pipeline import IngestionPipeline
    from bms.src.queue import RawQueue
    from bms.src.store import Store

    settings = BmsSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    engine = create_engine(settings.database_url)
    try:
        await init_schema(engine)
        store = Store(
            create_session_factory(engine),
            default_rated_ah=settings.default_rated_ah,
        )
        health = HealthWriter(settings.health_path)

        async with RawQueue(settings.queue_path) as queue:
            pipeline = IngestionPipeline(queue=queue, store=store, settings=settings)
            await run_loop(
                pipeline=pipeline,
                queue=queue,
                poll_interval_s=settings.poll_interval_s,
                shutdown_event=shutdown_event,
                health=health,
            )
    finally:
        await engine.dispose()
    logger.info("Shutdown complete")


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the estimation daemon."""
    try:
        asyncio.run(async_main())
    except StorageUnavailableError:
        logger.critical("Storage unavailable, exiting", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
