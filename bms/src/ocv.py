"""
Open-circuit voltage to state-of-charge lookup.

Linear two-point curve for a 12 V lead-acid style pack: the empty voltage
maps to 0 % and the full voltage to 100 %. Values outside the calibration
range are clamped. Only meaningful at rest; the SOC filter decides when to
trust it.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

DEFAULT_EMPTY_V: float = 11.8
"""Resting voltage treated as 0 % SOC."""

DEFAULT_FULL_V: float = 12.6
"""Resting voltage treated as 100 % SOC."""


def soc_ocv(
    voltage_v: float,
    empty_v: float = DEFAULT_EMPTY_V,
    full_v: float = DEFAULT_FULL_V,
) -> float:
    """Return the SOC percentage implied by a resting voltage.

    Args:
        voltage_v: Terminal voltage in volts. Must already be finite.
        empty_v: Calibration voltage for 0 %.
        full_v: Calibration voltage for 100 %. Must be greater than *empty_v*.

    Returns:
        SOC in percent, clamped to ``[0, 100]``.
    """
    fraction = (voltage_v - empty_v) / (full_v - empty_v)
    return max(0.0, min(100.0, fraction * 100.0))
