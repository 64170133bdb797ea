"""
Deterministic capacity-fade and cycle-counting model.

Runs once per processed sample, driven only by timestamps and current, and
independent of which SOC/SOH estimator produced the other fields. Only
discharge contributes: every discharged Ah moves the cycle accumulator and
fades the effective capacity by a small fixed amount, plus a time term while
discharging. With the default tunables roughly 20 % of capacity is lost over
500 full cycles.

:func:`apply_health_update` is pure: it takes the prior :class:`HealthState`
and returns the next one together with derived values and the events the
step produced. SOH threshold events fire when SOH drops to or below a
threshold it was above, so reaching a clamp floor equal to a threshold
fires that event once.

:func:`blend_reported_soh` layers the user override on top of the model SOH
for reporting. The blended value is never written back into the capacity.

CHANGELOG:
- 2026-10-18: Fire threshold events on reaching the threshold, not only passing it (STORY-006)
- 2026-10-18: Add user override blending for reported SOH (STORY-006)
- 2026-10-18: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import math
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from bms.src.coulomb import MIN_DT_S
from bms.src.models import BatteryConfig, EventType

SOH_PCT_CEILING: float = 120.0
"""Upper clamp for any reported model SOH."""

_THRESHOLD_EPS: float = 1e-9
"""Tolerance on SOH threshold comparisons (floor values are computed)."""


class DegradationTunables(BaseModel):
    """Tuning knobs for the degradation and cycle model.

    Attributes:
        loss_ah_per_discharged_ah: Capacity lost (Ah) per discharged Ah.
        loss_ah_per_discharge_hour: Capacity lost (Ah) per hour spent
            discharging.
        discharge_threshold_a: Current below which the battery counts as
            discharging (negative).
        min_soh_pct: Floor for effective capacity, percent of rated.
        max_soh_pct: Ceiling for effective capacity, percent of rated.
        soh_warn_pct: SOH_WARN threshold.
        soh_critical_pct: SOH_CRITICAL threshold.
        emit_cycle_events: Emit CYCLE_COMPLETED events.
        emit_soh_threshold_events: Emit SOH_WARN / SOH_CRITICAL events.
    """

    model_config = ConfigDict(frozen=True)

    loss_ah_per_discharged_ah: float = Field(default=0.0004, ge=0.0)
    loss_ah_per_discharge_hour: float = Field(default=0.00001, ge=0.0)
    discharge_threshold_a: float = -0.05
    min_soh_pct: float = Field(default=70.0, ge=0.0, le=SOH_PCT_CEILING)
    max_soh_pct: float = Field(default=100.0, ge=0.0, le=SOH_PCT_CEILING)
    soh_warn_pct: float = 80.0
    soh_critical_pct: float = 70.0
    emit_cycle_events: bool = True
    emit_soh_threshold_events: bool = True


class HealthState(BaseModel):
    """The persisted part of a battery that the model reads and writes."""

    model_config = ConfigDict(frozen=True)

    rated_ah: float
    effective_capacity_ah: float
    total_discharged_ah: float = 0.0
    discharge_cycle_ah: float = 0.0
    cycle_count: int = 0
    last_timestamp: datetime | None = None

    @property
    def soh_pct(self) -> float:
        """SOH derived from effective and rated capacity."""
        return derive_soh_pct(self.effective_capacity_ah, self.rated_ah)

    @classmethod
    def from_config(cls, config: BatteryConfig, *, default_rated_ah: float = 40.0) -> HealthState:
        """Build the model state from a persisted battery aggregate.

        Non-finite or non-positive rated capacities fall back to
        *default_rated_ah*; a missing effective capacity starts at rated.
        """
        rated = config.rated_ah
        if not math.isfinite(rated) or rated <= 0:
            rated = default_rated_ah
        effective = config.effective_capacity_ah
        if not math.isfinite(effective) or effective <= 0:
            effective = rated
        return cls(
            rated_ah=rated,
            effective_capacity_ah=effective,
            total_discharged_ah=max(0.0, config.total_discharged_ah),
            discharge_cycle_ah=max(0.0, config.discharge_cycle_ah),
            cycle_count=max(0, config.cycle_count),
            last_timestamp=config.last_timestamp,
        )


class HealthDerived(BaseModel):
    """Per-step values useful for logging and processed readings."""

    model_config = ConfigDict(frozen=True)

    dt_s: float
    discharged_ah: float
    is_discharging: bool
    cycles_completed: int


class HealthEvent(BaseModel):
    """An event produced by the model, before it is bound to a battery."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    message: str


class HealthUpdate(BaseModel):
    """Output of :func:`apply_health_update`."""

    model_config = ConfigDict(frozen=True)

    next: HealthState
    derived: HealthDerived
    events: list[HealthEvent]


def derive_soh_pct(effective_capacity_ah: float, rated_ah: float) -> float:
    """Return ``100 * effective / rated`` clamped to ``[0, 120]``."""
    if rated_ah <= 0:
        return 0.0
    return max(0.0, min(SOH_PCT_CEILING, 100.0 * effective_capacity_ah / rated_ah))


def apply_health_update(
    state: HealthState,
    timestamp: datetime,
    current_a: float,
    tunables: DegradationTunables | None = None,
) -> HealthUpdate:
    """Apply degradation and cycle counting for one sample.

    Args:
        state: Health state before this sample.
        timestamp: Sample timestamp.
        current_a: Current in amps, positive while charging.
        tunables: Model parameters; defaults when ``None``.

    Returns:
        A :class:`HealthUpdate` holding the next state, derived step values,
        and any CYCLE_COMPLETED / SOH_WARN / SOH_CRITICAL events.
    """
    tunables = tunables or DegradationTunables()
    events: list[HealthEvent] = []
    rated = state.rated_ah

    if state.last_timestamp is None:
        dt_s = MIN_DT_S
    else:
        dt_s = max(MIN_DT_S, (timestamp - state.last_timestamp).total_seconds())

    is_discharging = current_a < tunables.discharge_threshold_a
    discharged = abs(current_a) * dt_s / 3600.0 if is_discharging else 0.0

    total_discharged = state.total_discharged_ah + discharged
    cycle_ah = state.discharge_cycle_ah + discharged
    cycle_count = state.cycle_count

    completed = 0
    if rated > 0 and cycle_ah >= rated:
        completed = int(cycle_ah // rated)
        cycle_count += completed
        cycle_ah -= completed * rated
        if tunables.emit_cycle_events:
            events.append(
                HealthEvent(
                    type=EventType.CYCLE_COMPLETED,
                    message=f"Completed {completed} cycle(s). Total cycles: {cycle_count}",
                )
            )

    effective = state.effective_capacity_ah
    if is_discharging and discharged > 0:
        loss = (
            discharged * tunables.loss_ah_per_discharged_ah
            + (dt_s / 3600.0) * tunables.loss_ah_per_discharge_hour
        )
        effective -= loss

    min_effective = rated * tunables.min_soh_pct / 100.0
    max_effective = rated * tunables.max_soh_pct / 100.0
    effective = max(min_effective, min(max_effective, effective))

    soh_pct = derive_soh_pct(effective, rated)

    if tunables.emit_soh_threshold_events:
        prev_soh = state.soh_pct
        for threshold, event_type in (
            (tunables.soh_warn_pct, EventType.SOH_WARN),
            (tunables.soh_critical_pct, EventType.SOH_CRITICAL),
        ):
            limit = threshold + _THRESHOLD_EPS
            if prev_soh > limit >= soh_pct:
                events.append(
                    HealthEvent(
                        type=event_type,
                        message=f"SoH dropped to {threshold:g}% or below (now {soh_pct:.1f}%)",
                    )
                )

    # Out-of-order samples must not rewind the clock, or the gap is counted twice.
    if state.last_timestamp is not None and state.last_timestamp > timestamp:
        last_timestamp = state.last_timestamp
    else:
        last_timestamp = timestamp

    next_state = HealthState(
        rated_ah=rated,
        effective_capacity_ah=effective,
        total_discharged_ah=total_discharged,
        discharge_cycle_ah=cycle_ah,
        cycle_count=cycle_count,
        last_timestamp=last_timestamp,
    )
    derived = HealthDerived(
        dt_s=dt_s,
        discharged_ah=discharged,
        is_discharging=is_discharging,
        cycles_completed=completed,
    )
    return HealthUpdate(next=next_state, derived=derived, events=events)


def blend_reported_soh(
    soh_pct: float,
    *,
    user_override_soh: bool,
    user_set_soh_pct: float | None,
    user_soh_weight: float | None,
    default_weight: float = 0.7,
) -> float:
    """Blend a user supplied SOH into the model SOH for reporting.

    ``final = w * user_set + (1 - w) * model`` with ``w`` clamped to
    ``[0, 1]``. Without an active override (or without a user value) the
    model SOH is returned unchanged.
    """
    if not user_override_soh or user_set_soh_pct is None:
        return soh_pct
    weight = default_weight if user_soh_weight is None else user_soh_weight
    weight = max(0.0, min(1.0, weight))
    return weight * user_set_soh_pct + (1.0 - weight) * soh_pct
