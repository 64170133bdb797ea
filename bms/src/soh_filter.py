"""
Extended Kalman filter on effective capacity (state of health).

Capacity is modelled as a slow random walk. The measurement is the OCV-derived
SOC, compared against a coulomb-counting prediction that uses the capacity
prior, so the innovation carries information about capacity only when charge
actually moved during the step. With near-zero current the Jacobian vanishes;
the update is then skipped rather than divided through, as it is on the very
first step when there is no previous measurement to predict from.

User SOH overrides are applied downstream of this filter
(:func:`bms.src.degradation.blend_reported_soh`), never inside it.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

from bms.src.coulomb import MIN_CAPACITY_AH, delta_ah, floor_dt
from bms.src.innovation import InnovationWindow

MIN_DELTA_AH: float = 1e-9
"""Steps moving less charge than this carry no capacity information."""


@dataclass(frozen=True, slots=True)
class SohEstimate:
    """Result of one SOH filter step.

    Attributes:
        capacity_ah: Posterior capacity estimate in Ah.
        soh_pct: ``100 * capacity_ah / rated_ah``.
        k: Gain applied this step (0 when skipped).
        p: Posterior covariance.
        r: Measurement noise used (``None`` when skipped).
        innovation: ``z - soc_pred`` for this step.
        updated: Whether a capacity update was applied.
    """

    capacity_ah: float
    soh_pct: float
    k: float
    p: float
    r: float | None
    innovation: float
    updated: bool


class SohFilter:
    """Scalar EKF estimating usable capacity for one battery.

    Args:
        rated_ah: Rated capacity; also the upper clamp for the estimate.
        initial_capacity_ah: Starting estimate. Defaults to *rated_ah*.
        floor_ah: Lower clamp for the estimate. Defaults to 70 % of rated.
        initial_p: Starting covariance.
        q_cap: Capacity random-walk noise per second (Ah^2/s).
        window: Innovation window used for adaptive ``R``.
        p_floor: Lower bound on the posterior covariance.
    """

    def __init__(
        self,
        *,
        rated_ah: float,
        initial_capacity_ah: float | None = None,
        floor_ah: float | None = None,
        initial_p: float = 1.0,
        q_cap: float = 1e-6,
        window: InnovationWindow | None = None,
        p_floor: float = 1e-9,
    ) -> None:
        self.rated_ah = max(rated_ah, MIN_CAPACITY_AH)
        self.floor_ah = floor_ah if floor_ah is not None else 0.7 * self.rated_ah
        start = initial_capacity_ah if initial_capacity_ah is not None else self.rated_ah
        self.capacity_ah = max(self.floor_ah, min(self.rated_ah, start))
        self.p = initial_p
        self._q_cap = q_cap
        self._window = (
            window if window is not None else InnovationWindow(r_initial=1.0)
        )
        self._p_floor = p_floor
        self._last_soc: float | None = None

    def update(self, soc_ocv_pct: float, current_a: float, dt_s: float) -> SohEstimate:
        """Run one predict/update step.

        Args:
            soc_ocv_pct: OCV-derived SOC for this step (the measurement).
            current_a: Current in amps, positive while charging.
            dt_s: Seconds since the previous step; floored to one second.

        Returns:
            The :class:`SohEstimate` for this step.
        """
        dt_s = floor_dt(dt_s)

        c_prior = self.capacity_ah
        p_prior = self.p + self._q_cap * dt_s

        step_ah = delta_ah(current_a, dt_s)
        soc_prev = self._last_soc
        self._last_soc = soc_ocv_pct
        if soc_prev is None:
            # No previous measurement to predict from yet.
            soc_pred = soc_ocv_pct
        else:
            soc_pred = soc_prev + 100.0 * step_ah / c_prior
        innovation = soc_ocv_pct - soc_pred

        if soc_prev is None or abs(step_ah) < MIN_DELTA_AH:
            self.p = max(p_prior, self._p_floor)
            return SohEstimate(
                capacity_ah=self.capacity_ah,
                soh_pct=self.soh_pct,
                k=0.0,
                p=self.p,
                r=None,
                innovation=innovation,
                updated=False,
            )

        h = -100.0 * step_ah / (c_prior * c_prior)
        self._window.push(innovation)
        r = self._window.variance()

        k = p_prior * h / (h * p_prior * h + r)
        self.capacity_ah = max(self.floor_ah, min(self.rated_ah, c_prior + k * innovation))
        self.p = max((1.0 - k * h) * p_prior, self._p_floor)

        return SohEstimate(
            capacity_ah=self.capacity_ah,
            soh_pct=self.soh_pct,
            k=k,
            p=self.p,
            r=r,
            innovation=innovation,
            updated=True,
        )

    def retarget(self, rated_ah: float, floor_ah: float) -> None:
        """Adopt a new rated capacity, keeping the estimated SOH fraction."""
        rated_ah = max(rated_ah, MIN_CAPACITY_AH)
        fraction = self.capacity_ah / self.rated_ah
        self.rated_ah = rated_ah
        self.floor_ah = floor_ah
        self.capacity_ah = max(floor_ah, min(rated_ah, fraction * rated_ah))

    @property
    def soh_pct(self) -> float:
        """Current capacity estimate as a percentage of rated capacity."""
        return 100.0 * self.capacity_ah / self.rated_ah
