"""
Pydantic models for battery telemetry, configuration, readings, and events.

These are the domain records passed between the queue, the estimators, the
pipeline and the store. ORM row classes live in :mod:`bms.src.db.models`;
the store converts between the two.

Sign convention: positive current charges the battery.

CHANGELOG:
- 2026-10-18: Add queue_id to ProcessedReading (STORY-009)
- 2026-10-18: Add soh_kalman_pct and raw_id to ProcessedReading (STORY-009)
- 2026-10-18: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class EventType(enum.StrEnum):
    """Lifecycle event kinds written to the event log."""

    CONNECTED = "CONNECTED"
    CHARGING = "CHARGING"
    DISCHARGING = "DISCHARGING"
    IDLE = "IDLE"
    LOW_SOC = "LOW_SOC"
    SOC_RECOVERED = "SOC_RECOVERED"
    SOH_WARN = "SOH_WARN"
    SOH_CRITICAL = "SOH_CRITICAL"
    CYCLE_COMPLETED = "CYCLE_COMPLETED"


class Mode(enum.StrEnum):
    """Operating mode derived from the sign and magnitude of current."""

    CHARGING = "CHARGING"
    DISCHARGING = "DISCHARGING"
    IDLE = "IDLE"


class RawSample(BaseModel):
    """A single validated raw telemetry sample.

    Accepts the wire spelling (``batteryId``, ``voltage_V``, ``current_A``)
    as well as the field names. Non-finite numbers are rejected.

    Attributes:
        battery_id: Identity of the reporting battery.
        timestamp: Measurement time (timezone-aware, UTC).
        voltage_v: Terminal voltage in volts.
        current_a: Current in amps. Positive = charging, negative = discharging.
    """

    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False, frozen=True)

    battery_id: str = Field(alias="batteryId", min_length=1)
    timestamp: datetime
    voltage_v: float = Field(alias="voltage_V")
    current_a: float = Field(alias="current_A")


class BatteryConfig(BaseModel):
    """Persisted per-battery configuration and health aggregate.

    ``soh_pct`` is always derived from ``effective_capacity_ah`` and
    ``rated_ah``; it is never set independently.

    Attributes:
        battery_id: Battery identity (primary key).
        rated_ah: Rated capacity in Ah.
        effective_capacity_ah: Current usable capacity in Ah.
        soh_pct: ``100 * effective_capacity_ah / rated_ah``.
        total_discharged_ah: Lifetime discharged charge in Ah.
        discharge_cycle_ah: Discharged Ah accumulated towards the next cycle.
        cycle_count: Completed full discharge cycles.
        last_timestamp: Timestamp of the last sample applied to the model.
        user_override_soh: Whether a user SOH value is blended into reports.
        user_set_soh_pct: User supplied SOH in percent.
        user_soh_weight: Blend weight of the user value, in ``[0, 1]``.
    """

    model_config = ConfigDict(from_attributes=True)

    battery_id: str
    rated_ah: float = 40.0
    effective_capacity_ah: float = 40.0
    soh_pct: float = 100.0
    total_discharged_ah: float = 0.0
    discharge_cycle_ah: float = 0.0
    cycle_count: int = 0
    last_timestamp: datetime | None = None
    user_override_soh: bool = False
    user_set_soh_pct: float | None = None
    user_soh_weight: float | None = None


class ProcessedReading(BaseModel):
    """One processed record per consumed raw sample (append-only).

    Attributes:
        timestamp: Sample timestamp.
        battery_id: Battery identity.
        voltage_v: Terminal voltage in volts.
        current_a: Current in amps, positive while charging.
        power_w: ``voltage_v * current_a`` (negative while discharging).
        estimated_ah: Ah discharged during this step (never negative).
        soc_ocv: OCV-derived SOC in percent.
        soc_coulomb: Coulomb-counted SOC in percent.
        soc_kalman: Fused SOC filter output in percent.
        soh_pct: Externally reported SOH (user override blended in).
        effective_capacity_ah: Degradation-model capacity after this step.
        cycle_count: Completed cycles after this step.
        soh_kalman_pct: SOH filter estimate in percent.
        queue_id: Identity of the queue the raw sample came from.
        raw_id: Id of the consumed raw sample within its queue.
    """

    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    battery_id: str
    voltage_v: float
    current_a: float
    power_w: float
    estimated_ah: float = Field(ge=0.0)
    soc_ocv: float
    soc_coulomb: float
    soc_kalman: float
    soh_pct: float
    effective_capacity_ah: float
    cycle_count: int
    soh_kalman_pct: float | None = None
    queue_id: str | None = None
    raw_id: int | None = None


class BatteryEvent(BaseModel):
    """A lifecycle event written only on edge transitions.

    Attributes:
        timestamp: Timestamp of the sample that triggered the event.
        battery_id: Battery identity.
        type: Event kind.
        message: Human readable description.
    """

    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    battery_id: str
    type: EventType
    message: str
