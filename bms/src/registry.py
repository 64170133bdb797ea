"""
In-memory registry of per-battery runtime estimator state.

Holds the SOC/SOH filter instances, last-seen timestamp and edge-detector
state for every battery observed during this process's lifetime. The
registry is owned by one pipeline and injected into it, so independent
pipelines (and tests) never share estimator state.

State is lost on restart: the next sample for a
battery re-seeds it from the persisted :class:`~bms.src.models.BatteryConfig`
with a default SOC of 100 %.

CHANGELOG:
- 2026-10-18: Drop unused discard and iteration (STORY-008)
- 2026-10-18: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from bms.src.events import LowSocState
from bms.src.models import BatteryConfig, Mode
from bms.src.soc_filter import SocFilter
from bms.src.soh_filter import SohFilter

DEFAULT_INITIAL_SOC: float = 100.0


@dataclass
class BatteryRuntimeState:
    """Runtime estimator state for one battery.

    Attributes:
        battery_id: Battery identity.
        last_timestamp: Timestamp of the last sample applied to the filters.
        last_soc_pct: Last fused SOC.
        soc_filter: SOC Kalman filter instance.
        soh_filter: SOH (capacity) Kalman filter instance.
        last_mode: Last classified mode, ``None`` before the first sample.
        low_soc: Low-SOC edge detector state.
    """

    battery_id: str
    last_timestamp: datetime
    soc_filter: SocFilter
    soh_filter: SohFilter
    last_soc_pct: float = DEFAULT_INITIAL_SOC
    last_mode: Mode | None = None
    low_soc: LowSocState = field(default_factory=LowSocState)

    def clone(self) -> BatteryRuntimeState:
        """Return a deep copy suitable for a tentative update."""
        return copy.deepcopy(self)


StateFactory = Callable[[BatteryConfig, datetime], BatteryRuntimeState]


class BatteryRegistry:
    """Keyed store of :class:`BatteryRuntimeState`, one entry per battery.

    Args:
        factory: Builds a fresh runtime state from the persisted battery
            config and the first observed timestamp.
    """

    def __init__(self, factory: StateFactory) -> None:
        self._factory = factory
        self._states: dict[str, BatteryRuntimeState] = {}

    def __contains__(self, battery_id: object) -> bool:
        return battery_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def get(self, battery_id: str) -> BatteryRuntimeState | None:
        """Return the adopted state for *battery_id*, if any."""
        return self._states.get(battery_id)

    def resolve(
        self,
        config: BatteryConfig,
        timestamp: datetime,
    ) -> tuple[BatteryRuntimeState, bool]:
        """Return a working copy of the battery's runtime state.

        The registry itself is not modified; call :meth:`adopt` once the
        step built on the copy has been committed.

        Returns:
            ``(working_state, is_new)`` where *is_new* is ``True`` when the
            battery had no runtime state in this process yet.
        """
        existing = self._states.get(config.battery_id)
        if existing is not None:
            return existing.clone(), False
        return self._factory(config, timestamp), True

    def adopt(self, state: BatteryRuntimeState) -> None:
        """Make *state* the current runtime state for its battery."""
        self._states[state.battery_id] = state
