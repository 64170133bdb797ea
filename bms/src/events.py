"""
Edge-triggered lifecycle event detection.

Mode events fire whenever the classified operating mode differs from the
previous classification for the battery, including the very first one.
LOW_SOC / SOC_RECOVERED fire on threshold crossings only. After a recovery
the LOW_SOC detector stays disarmed until SOC climbs a configurable band
above the threshold, so readings hovering around the threshold do not
produce a stream of warnings.

All functions here are pure; the caller owns the per-battery state.

CHANGELOG:
- 2026-10-18: Add LOW_SOC re-arm band (STORY-007)
- 2026-10-18: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

from bms.src.models import EventType, Mode

_MODE_EVENTS: dict[Mode, EventType] = {
    Mode.CHARGING: EventType.CHARGING,
    Mode.DISCHARGING: EventType.DISCHARGING,
    Mode.IDLE: EventType.IDLE,
}


@dataclass(frozen=True, slots=True)
class DetectedEvent:
    """An event type and message, not yet bound to a battery or timestamp."""

    type: EventType
    message: str


@dataclass(frozen=True, slots=True)
class LowSocState:
    """Edge detector state for the low-SOC threshold.

    Attributes:
        low: Whether the battery is currently reported as low.
        armed: Whether a LOW_SOC event may fire on the next crossing.
    """

    low: bool = False
    armed: bool = True


def classify_mode(current_a: float, epsilon_a: float = 0.05) -> Mode:
    """Classify current into CHARGING / DISCHARGING / IDLE."""
    if current_a > epsilon_a:
        return Mode.CHARGING
    if current_a < -epsilon_a:
        return Mode.DISCHARGING
    return Mode.IDLE


def detect_mode_change(
    battery_id: str,
    previous: Mode | None,
    current: Mode,
    current_a: float,
) -> DetectedEvent | None:
    """Return a mode event when *current* differs from *previous*.

    A ``None`` previous mode (never classified) counts as a transition.
    """
    if previous == current:
        return None
    if previous is None:
        verb = {
            Mode.CHARGING: "charging",
            Mode.DISCHARGING: "discharging",
            Mode.IDLE: "idle",
        }[current]
    else:
        verb = {
            Mode.CHARGING: "started charging",
            Mode.DISCHARGING: "started discharging",
            Mode.IDLE: "is idle",
        }[current]
    return DetectedEvent(
        type=_MODE_EVENTS[current],
        message=f"Battery {battery_id} {verb} ({current_a:.2f}A)",
    )


def detect_low_soc(
    battery_id: str,
    state: LowSocState,
    soc_pct: float,
    *,
    threshold_pct: float = 20.0,
    rearm_band_pct: float = 5.0,
) -> tuple[LowSocState, DetectedEvent | None]:
    """Advance the low-SOC detector by one SOC value.

    Args:
        battery_id: Battery identity used in messages.
        state: Detector state before this value.
        soc_pct: Fused SOC for this sample.
        threshold_pct: SOC at or below which the battery is low.
        rearm_band_pct: Margin above the threshold SOC must reach before
            LOW_SOC can fire again. 0 gives plain edge triggering.

    Returns:
        ``(next_state, event_or_None)``.
    """
    low, armed = state.low, state.armed
    event: DetectedEvent | None = None

    if soc_pct <= threshold_pct:
        if not low and armed:
            low, armed = True, False
            event = DetectedEvent(
                type=EventType.LOW_SOC,
                message=f"Battery {battery_id} low SOC: {soc_pct:.1f}%",
            )
    elif low:
        low = False
        event = DetectedEvent(
            type=EventType.SOC_RECOVERED,
            message=f"Battery {battery_id} SOC recovered: {soc_pct:.1f}%",
        )

    if soc_pct >= threshold_pct + rearm_band_pct:
        armed = True

    return LowSocState(low=low, armed=armed), event
