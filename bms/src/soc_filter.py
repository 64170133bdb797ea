"""
Adaptive one-state Kalman filter for state of charge.

The prediction step is coulomb counting against the battery capacity. The
measurement is the OCV-derived SOC, which is only trusted near open-circuit
conditions: low current and a physically plausible terminal voltage. Under
load the filter runs open loop (``K = 0``).

Process noise grows with current magnitude. Measurement noise is adapted from
the variance of recent accepted innovations (see :mod:`bms.src.innovation`).

Inputs are expected to be finite; sanitization happens at ingestion, never
here.

CHANGELOG:
- 2026-10-18: Gate OCV measurement on rest current and voltage band (STORY-004)
- 2026-10-18: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

from bms.src.coulomb import MIN_CAPACITY_AH, delta_ah, floor_dt
from bms.src.innovation import InnovationWindow
from bms.src.ocv import DEFAULT_EMPTY_V, DEFAULT_FULL_V, soc_ocv


@dataclass(frozen=True, slots=True)
class SocEstimate:
    """Result of one SOC filter step.

    Attributes:
        soc: Posterior SOC in percent, within ``[0, 100]``.
        p: Posterior error covariance.
        k: Kalman gain applied this step (0 when the measurement was gated).
        r: Measurement noise used (``None`` when the measurement was gated).
        z: OCV-derived SOC for this step, whether or not it was used.
        innovation: ``z - x_prior`` (0 when the measurement was gated).
        used_measurement: Whether the OCV measurement passed the gate.
        dt_s: Step duration after flooring.
    """

    soc: float
    p: float
    k: float
    r: float | None
    z: float
    innovation: float
    used_measurement: bool
    dt_s: float


class SocFilter:
    """Scalar adaptive Kalman estimator of SOC for a single battery.

    Args:
        capacity_ah: Capacity used by the coulomb-counting prediction.
        initial_soc: Starting SOC estimate in percent.
        initial_p: Starting error covariance.
        q_base: Process noise per second at zero current.
        q_per_amp: Additional process noise per second per amp of current.
        rest_current_a: OCV is only trusted while ``|current| <`` this value.
        plausible_min_v: Lowest terminal voltage accepted as a measurement.
        plausible_max_v: Highest terminal voltage accepted as a measurement.
        ocv_empty_v: OCV curve calibration voltage for 0 %.
        ocv_full_v: OCV curve calibration voltage for 100 %.
        window: Innovation window used for adaptive ``R``.
        p_floor: Lower bound on the posterior covariance.
    """

    def __init__(
        self,
        *,
        capacity_ah: float,
        initial_soc: float = 100.0,
        initial_p: float = 1.0,
        q_base: float = 1e-6,
        q_per_amp: float = 1e-5,
        rest_current_a: float = 0.2,
        plausible_min_v: float = 10.5,
        plausible_max_v: float = 13.5,
        ocv_empty_v: float = DEFAULT_EMPTY_V,
        ocv_full_v: float = DEFAULT_FULL_V,
        window: InnovationWindow | None = None,
        p_floor: float = 1e-9,
    ) -> None:
        self.capacity_ah = max(capacity_ah, MIN_CAPACITY_AH)
        self.x = max(0.0, min(100.0, initial_soc))
        self.p = initial_p
        self._q_base = q_base
        self._q_per_amp = q_per_amp
        self._rest_current_a = rest_current_a
        self._plausible_min_v = plausible_min_v
        self._plausible_max_v = plausible_max_v
        self._ocv_empty_v = ocv_empty_v
        self._ocv_full_v = ocv_full_v
        self._window = window if window is not None else InnovationWindow()
        self._p_floor = p_floor

    def process_noise(self, current_a: float) -> float:
        """Process noise per second for the given current."""
        return self._q_base + self._q_per_amp * abs(current_a)

    def accepts_measurement(self, voltage_v: float, current_a: float) -> bool:
        """Whether OCV is trustworthy for this voltage/current pair."""
        return (
            abs(current_a) < self._rest_current_a
            and self._plausible_min_v <= voltage_v <= self._plausible_max_v
        )

    def update(self, voltage_v: float, current_a: float, dt_s: float) -> SocEstimate:
        """Run one predict/update step.

        Args:
            voltage_v: Terminal voltage in volts.
            current_a: Current in amps, positive while charging.
            dt_s: Seconds since the previous step; floored to one second.

        Returns:
            The :class:`SocEstimate` for this step.
        """
        dt_s = floor_dt(dt_s)

        # Predict
        x_prior = self.x + 100.0 * delta_ah(current_a, dt_s) / self.capacity_ah
        x_prior = max(0.0, min(100.0, x_prior))
        p_prior = self.p + self.process_noise(current_a) * dt_s

        z = soc_ocv(voltage_v, self._ocv_empty_v, self._ocv_full_v)

        if not self.accepts_measurement(voltage_v, current_a):
            self.x = x_prior
            self.p = max(p_prior, self._p_floor)
            return SocEstimate(
                soc=self.x,
                p=self.p,
                k=0.0,
                r=None,
                z=z,
                innovation=0.0,
                used_measurement=False,
                dt_s=dt_s,
            )

        innovation = z - x_prior
        self._window.push(innovation)
        r = self._window.variance()

        k = p_prior / (p_prior + r)
        self.x = max(0.0, min(100.0, x_prior + k * innovation))
        self.p = max((1.0 - k) * p_prior, self._p_floor)

        return SocEstimate(
            soc=self.x,
            p=self.p,
            k=k,
            r=r,
            z=z,
            innovation=innovation,
            used_measurement=True,
            dt_s=dt_s,
        )
