"""Coarse-to-fine regularization schedule.

Reconstruction starts with heavily scaled regularization and relaxes it in
stages. The schedule is a small finite-state machine advanced once per
outer iteration by the driver:

    stage s, counter k
    advance():  k += 1
                if s is not final and k >= steps[s]:  s += 1, k = 0

The regularization weight at stage s is ``scales[s] * lambda0``; the final
stage has scale 1 for every channel, and only there may the driver stop on
a small objective gain.
"""

from typing import Optional, Sequence, Union

import numpy as np

__all__ = ["RegularizationSchedule"]


class RegularizationSchedule:
    """Stage state machine for the regularization weights.

    Args:
        scales: Stage scale factors, shape (S,) shared by all channels or
            (S, C) per channel. The last row must be all ones.
        steps: Outer iterations spent in each non-final stage; a scalar is
            used for every stage.
        num_channels: Number of channels C.

    Example:
        ```python
        sched = RegularizationSchedule([4.0, 2.0, 1.0], steps=2, num_channels=1)
        sched.lam([0.5])  # array([2.])
        ```
    """

    def __init__(
        self,
        scales: Union[Sequence[float], np.ndarray],
        steps: Union[int, Sequence[int]] = 1,
        num_channels: int = 1,
    ):
        scales = np.asarray(scales, dtype=np.float64)
        if scales.ndim == 1:
            scales = np.repeat(scales[:, None], num_channels, axis=1)
        if scales.ndim != 2 or scales.shape[1] != num_channels or scales.shape[0] == 0:
            raise ValueError(
                f"scales must have shape (stages,) or (stages, {num_channels}), "
                f"got {scales.shape}"
            )
        if np.any(scales <= 0):
            raise ValueError("Schedule scales must be positive")
        if not np.all(scales[-1] == 1.0):
            raise ValueError(f"The final stage must have scale 1, got {scales[-1]}")

        num_stages = scales.shape[0]
        if np.isscalar(steps):
            steps = [int(steps)] * max(num_stages - 1, 0)
        steps = [int(s) for s in steps]
        if len(steps) < num_stages - 1:
            raise ValueError(
                f"Need a step threshold for each of the {num_stages - 1} non-final stages, "
                f"got {len(steps)}"
            )
        if any(s < 1 for s in steps):
            raise ValueError(f"Step thresholds must be at least 1, got {steps}")

        self.scales = scales
        self.steps = steps[: num_stages - 1]
        self.stage = 0
        self.counter = 0

    @classmethod
    def constant(cls, num_channels: int = 1) -> "RegularizationSchedule":
        """Single-stage schedule (no decreasing regularization)."""
        return cls([1.0], steps=1, num_channels=num_channels)

    @property
    def num_stages(self) -> int:
        return self.scales.shape[0]

    @property
    def is_final(self) -> bool:
        return self.stage == self.num_stages - 1

    @property
    def scale(self) -> np.ndarray:
        """Current per-channel scale factors."""
        return self.scales[self.stage].copy()

    def lam(self, lam0: Sequence[float]) -> np.ndarray:
        """Regularization weights at the current stage."""
        return self.scale * np.asarray(lam0, dtype=np.float64)

    def advance(self) -> bool:
        """Count one outer iteration; return True if the stage changed."""
        if self.is_final:
            return False
        self.counter += 1
        if self.counter >= self.steps[self.stage]:
            self.stage += 1
            self.counter = 0
            return True
        return False

    def __repr__(self) -> str:
        return (
            f"RegularizationSchedule(stage={self.stage}/{self.num_stages - 1}, "
            f"counter={self.counter}, scale={self.scale.tolist()})"
        )
