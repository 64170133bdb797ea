"""
Sliding-window measurement noise estimator shared by the Kalman filters.

Both filters estimate their measurement noise ``R`` from the sample variance
of their most recent innovations. Until the window holds enough samples the
variance is not trusted and a fixed initial value is used instead. The result
is always floored so the gain computation never meets a zero-variance
singularity.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

import statistics
from collections import deque


class InnovationWindow:
    """Fixed-size FIFO of innovations with an adaptive variance estimate.

    Args:
        size: Maximum number of innovations kept (oldest dropped first).
        min_samples: Innovations required before the sample variance is used.
        r_initial: Noise variance reported while the window is too short.
        r_floor: Hard lower bound for the reported variance.
    """

    def __init__(
        self,
        *,
        size: int = 30,
        min_samples: int = 3,
        r_initial: float = 0.5,
        r_floor: float = 1e-4,
    ) -> None:
        if size < 2:
            raise ValueError("Innovation window size must be >= 2")
        self._values: deque[float] = deque(maxlen=size)
        self._min_samples = max(2, min_samples)
        self._r_initial = r_initial
        self._r_floor = r_floor

    def __len__(self) -> int:
        return len(self._values)

    def push(self, innovation: float) -> None:
        """Append an innovation, evicting the oldest when full."""
        self._values.append(innovation)

    def variance(self) -> float:
        """Return the current measurement noise estimate ``R``."""
        if len(self._values) < self._min_samples:
            return max(self._r_floor, self._r_initial)
        return max(self._r_floor, statistics.variance(self._values))
