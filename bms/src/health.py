"""
Health file writer for the estimation daemon.

Writes a JSON health file at a configurable path with six fields:
- last_tick_ts: ISO timestamp of the most recent pipeline tick.
- last_processed_ts: ISO timestamp of the most recent processed sample.
- queue_count: Number of raw samples waiting in the queue.
- processed_count: Samples processed since startup.
- dropped_count: Malformed samples dropped since startup.
- tracked_batteries: Batteries with runtime estimator state in this process.

The file is rewritten on every state change, providing a simple liveness
signal that a container HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-18: Report the number of tracked batteries (STORY-015)
- 2026-10-18: Track processed and dropped counters (STORY-015)
- 2026-10-18: Initial creation (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes daemon health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_tick_ts: str | None = None
        self._last_processed_ts: str | None = None
        self._queue_count: int = 0
        self._processed_count: int = 0
        self._dropped_count: int = 0
        self._tracked_batteries: int = 0

    def record_tick(self, *, processed: bool = False, dropped: bool = False) -> None:
        """Record a pipeline tick and write health file.

        Args:
            processed: The tick committed a processed sample.
            dropped: The tick dropped a malformed sample.
        """
        now = datetime.now(tz=UTC).isoformat()
        self._last_tick_ts = now
        if processed:
            self._last_processed_ts = now
            self._processed_count += 1
        if dropped:
            self._dropped_count += 1
        self._write()

    def set_queue_count(self, count: int) -> None:
        """Update the pending queue count and write health file."""
        self._queue_count = count
        self._write()

    def set_tracked_batteries(self, count: int) -> None:
        """Update the tracked battery count and write health file."""
        self._tracked_batteries = count
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_tick_ts": self._last_tick_ts,
            "last_processed_ts": self._last_processed_ts,
            "queue_count": self._queue_count,
            "processed_count": self._processed_count,
            "dropped_count": self._dropped_count,
            "tracked_batteries": self._tracked_batteries,
        }
        self.path.write_text(json.dumps(data))
