"""
Estimation daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Every estimator constant (OCV calibration, gating thresholds, noise
parameters, degradation tunables, event thresholds) is configurable here;
the defaults describe a 40 Ah, 12 V pack.

CHANGELOG:
- 2026-10-18: Add degradation tunables and LOW_SOC re-arm band (STORY-014)
- 2026-10-18: Initial creation (STORY-014)

TODO:
- None
"""

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from bms.src.degradation import DegradationTunables


class BmsSettings(BaseSettings):
    """Configuration for the battery estimation daemon.

    All values are loaded from environment variables (or a ``.env`` file);
    every field has a default.

    Attributes:
        database_url: Async SQLAlchemy URL of the estimation store.
        queue_path: SQLite file of the raw sample queue.
        health_path: JSON health file written after every tick.
        poll_interval_s: Seconds to wait when the queue is empty.
        log_level: Root log level.
        max_consecutive_storage_failures: Failing ticks tolerated before the
            pipeline halts.
        default_rated_ah: Rated capacity for lazily created batteries.
        ocv_empty_v: OCV calibration voltage for 0 % SOC.
        ocv_full_v: OCV calibration voltage for 100 % SOC.
        ocv_plausible_min_v: Lowest voltage accepted as an OCV measurement.
        ocv_plausible_max_v: Highest voltage accepted as an OCV measurement.
        rest_current_a: OCV is trusted only below this current magnitude.
        soc_initial_pct: SOC seeded into a new runtime filter.
        soc_initial_p: Initial SOC filter covariance.
        soc_q_base: SOC process noise per second at zero current.
        soc_q_per_amp: SOC process noise per second per amp.
        soc_r_initial: SOC measurement noise until the window is trusted.
        soh_initial_p: Initial SOH filter covariance (Ah^2).
        soh_q: Capacity random-walk noise per second.
        soh_r_initial: SOH measurement noise until the window is trusted.
        innovation_window: Innovations kept for adaptive R.
        innovation_min_samples: Innovations needed before variance is used.
        r_floor: Lower bound for any adaptive R.
        mode_epsilon_a: Current magnitude separating IDLE from a mode.
        low_soc_pct: LOW_SOC threshold.
        low_soc_rearm_band_pct: Margin above the threshold that re-arms
            LOW_SOC after a recovery.
        discharge_threshold_a: Degradation model discharge threshold.
        loss_ah_per_discharged_ah: Capacity fade per discharged Ah.
        loss_ah_per_discharge_hour: Capacity fade per discharging hour.
        min_soh_pct: Effective capacity floor (% of rated).
        max_soh_pct: Effective capacity ceiling (% of rated).
        soh_warn_pct: SOH_WARN threshold.
        soh_critical_pct: SOH_CRITICAL threshold.
    """

    database_url: str = "sqlite+aiosqlite:////data/bms.db"
    queue_path: str = "/data/raw_queue.db"
    health_path: str = "/data/health.json"
    poll_interval_s: float = 1.5
    log_level: str = "INFO"
    max_consecutive_storage_failures: int = 5

    default_rated_ah: float = 40.0

    ocv_empty_v: float = 11.8
    ocv_full_v: float = 12.6
    ocv_plausible_min_v: float = 10.5
    ocv_plausible_max_v: float = 13.5
    rest_current_a: float = 0.2

    soc_initial_pct: float = 100.0
    soc_initial_p: float = 1.0
    soc_q_base: float = 1e-6
    soc_q_per_amp: float = 1e-5
    soc_r_initial: float = 0.5

    soh_initial_p: float = 1.0
    soh_q: float = 1e-6
    soh_r_initial: float = 1.0

    innovation_window: int = 30
    innovation_min_samples: int = 3
    r_floor: float = 1e-4

    mode_epsilon_a: float = 0.05
    low_soc_pct: float = 20.0
    low_soc_rearm_band_pct: float = 5.0

    discharge_threshold_a: float = -0.05
    loss_ah_per_discharged_ah: float = 0.0004
    loss_ah_per_discharge_hour: float = 0.00001
    min_soh_pct: float = 70.0
    max_soh_pct: float = 100.0
    soh_warn_pct: float = 80.0
    soh_critical_pct: float = 70.0

    @field_validator("poll_interval_s")
    @classmethod
    def poll_interval_must_be_positive(cls, v: float) -> float:
        """Validate the polling interval is positive."""
        if v <= 0:
            raise ValueError("POLL_INTERVAL_S must be > 0")
        return v

    @field_validator("default_rated_ah")
    @classmethod
    def rated_ah_must_be_positive(cls, v: float) -> float:
        """Validate the default rated capacity is positive."""
        if v <= 0:
            raise ValueError("DEFAULT_RATED_AH must be > 0")
        return v

    @field_validator("innovation_window")
    @classmethod
    def innovation_window_must_be_valid(cls, v: int) -> int:
        """Validate the innovation window can hold a sample variance."""
        if v < 2:
            raise ValueError("INNOVATION_WINDOW must be >= 2")
        return v

    @field_validator("max_consecutive_storage_failures")
    @classmethod
    def storage_failures_must_be_positive(cls, v: int) -> int:
        """Validate at least one storage failure is tolerated."""
        if v < 1:
            raise ValueError("MAX_CONSECUTIVE_STORAGE_FAILURES must be >= 1")
        return v

    @field_validator("r_floor", "soc_r_initial", "soh_r_initial")
    @classmethod
    def noise_must_be_positive(cls, v: float) -> float:
        """Validate measurement noise parameters are positive."""
        if v <= 0:
            raise ValueError("measurement noise parameters must be > 0")
        return v

    @model_validator(mode="after")
    def _check_ranges(self) -> "BmsSettings":
        """Validate OCV calibration and SOH thresholds are consistent."""
        if self.ocv_full_v <= self.ocv_empty_v:
            raise ValueError("OCV_FULL_V must be greater than OCV_EMPTY_V")
        if self.ocv_plausible_max_v <= self.ocv_plausible_min_v:
            raise ValueError("OCV_PLAUSIBLE_MAX_V must be greater than OCV_PLAUSIBLE_MIN_V")
        if self.min_soh_pct > self.max_soh_pct:
            raise ValueError("MIN_SOH_PCT must be <= MAX_SOH_PCT")
        return self

    def degradation_tunables(self) -> DegradationTunables:
        """Build the degradation model parameters from these settings."""
        return DegradationTunables(
            loss_ah_per_discharged_ah=self.loss_ah_per_discharged_ah,
            loss_ah_per_discharge_hour=self.loss_ah_per_discharge_hour,
            discharge_threshold_a=self.discharge_threshold_a,
            min_soh_pct=self.min_soh_pct,
            max_soh_pct=self.max_soh_pct,
            soh_warn_pct=self.soh_warn_pct,
            soh_critical_pct=self.soh_critical_pct,
        )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
