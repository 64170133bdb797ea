"""
Coulomb counting helpers.

Sign convention used throughout the service: positive current charges the
battery (SOC rises), negative current discharges it.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

MIN_DT_S: float = 1.0
"""Lower bound for step durations; guards duplicate/out-of-order timestamps."""

MIN_CAPACITY_AH: float = 1e-6
"""Lower bound for capacities used as divisors."""


def floor_dt(dt_s: float) -> float:
    """Clamp a step duration to at least :data:`MIN_DT_S` seconds."""
    return max(MIN_DT_S, dt_s)


def delta_ah(current_a: float, dt_s: float) -> float:
    """Signed charge moved during a step, in Ah (positive while charging)."""
    return current_a * dt_s / 3600.0


def discharged_ah(current_a: float, dt_s: float) -> float:
    """Charge drawn out of the battery during a step, in Ah (never negative)."""
    if current_a >= 0:
        return 0.0
    return -current_a * floor_dt(dt_s) / 3600.0


def soc_coulomb(
    prev_soc_pct: float,
    current_a: float,
    dt_s: float,
    capacity_ah: float,
) -> float:
    """Advance a SOC percentage by integrating current over one step.

    Args:
        prev_soc_pct: SOC before the step, in percent.
        current_a: Current in amps, positive while charging.
        dt_s: Step duration in seconds; floored to one second.
        capacity_ah: Capacity the SOC is expressed against.

    Returns:
        SOC after the step, clamped to ``[0, 100]``.
    """
    step_ah = delta_ah(current_a, floor_dt(dt_s))
    new_soc = prev_soc_pct + 100.0 * step_ah / max(capacity_ah, MIN_CAPACITY_AH)
    return max(0.0, min(100.0, new_soc))
