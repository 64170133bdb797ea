"""
Unit tests for the SOH (capacity) extended Kalman filter.

Tests verify:
- Zero-current steps skip the update without dividing by zero.
- Capacity stays within [floor, rated].
- Consistent OCV and coulomb SOC leave the capacity near its prior.
- An OCV drop faster than the prior predicts pulls capacity down.
- retarget keeps the SOH fraction.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import math

import pytest
from bms.src.soh_filter import SohFilter


class TestSkippedUpdate:
    def test_zero_current_skips(self) -> None:
        f = SohFilter(rated_ah=40.0)
        estimate = f.update(80.0, 0.0, 60.0)
        assert not estimate.updated
        assert estimate.k == 0.0
        assert estimate.r is None
        assert estimate.capacity_ah == 40.0

    def test_skipped_step_inflates_covariance(self) -> None:
        f = SohFilter(rated_ah=40.0, initial_p=0.5, q_cap=1e-3)
        estimate = f.update(80.0, 0.0, 10.0)
        assert estimate.p == pytest.approx(0.51)


class TestCapacityUpdate:
    """EKF updates while charge moves."""

    def test_consistent_measurements_keep_capacity(self) -> None:
        f = SohFilter(rated_ah=40.0)
        soc = 100.0
        for _ in range(10):
            # -4 A for 360 s removes 0.4 Ah = 1 % of 40 Ah.
            soc -= 1.0
            estimate = f.update(soc, -4.0, 360.0)
        assert estimate.capacity_ah == pytest.approx(40.0, abs=0.5)

    def test_faster_ocv_drop_lowers_capacity(self) -> None:
        f = SohFilter(rated_ah=40.0, initial_p=4.0)
        soc = 100.0
        f.update(soc, -4.0, 360.0)
        for _ in range(20):
            # OCV falls 1.25 % per 0.4 Ah, i.e. a 32 Ah battery.
            soc -= 1.25
            estimate = f.update(soc, -4.0, 360.0)
        assert estimate.updated
        assert estimate.capacity_ah < 40.0

    def test_capacity_never_leaves_bounds(self) -> None:
        f = SohFilter(rated_ah=40.0, floor_ah=28.0, initial_p=100.0)
        soc = 100.0
        f.update(soc, -4.0, 360.0)
        for _ in range(30):
            soc = max(0.0, soc - 10.0)
            estimate = f.update(soc, -4.0, 360.0)
            assert 28.0 <= estimate.capacity_ah <= 40.0
            assert math.isfinite(estimate.p)

    def test_initial_capacity_is_clamped(self) -> None:
        f = SohFilter(rated_ah=40.0, initial_capacity_ah=50.0)
        assert f.capacity_ah == 40.0
        g = SohFilter(rated_ah=40.0, initial_capacity_ah=10.0)
        assert g.capacity_ah == pytest.approx(28.0)


class TestRetarget:
    def test_keeps_soh_fraction(self) -> None:
        f = SohFilter(rated_ah=40.0, initial_capacity_ah=36.0)
        f.retarget(100.0, 70.0)
        assert f.rated_ah == 100.0
        assert f.capacity_ah == pytest.approx(90.0)
        assert f.soh_pct == pytest.approx(90.0)
