"""Slice-selection profiles.

A low-resolution observation integrates the high-resolution signal over
each of its voxels. Along every axis whose observation voxel spans
``ratio`` reconstruction voxels, this integration is modelled by a 1D
kernel of full width at half maximum

    FWHM = (1 - gap) * ratio

where ``gap`` is the fractional slice gap (only along the through-plane
axis, i.e. the axis with the largest voxel size). A negative gap is an
overlap and widens the kernel beyond one observation voxel. Two kernel
shapes are available:

    - "gaussian": sampled Gaussian, σ = FWHM / sqrt(8 ln 2).
    - "rect": box of length FWHM, integrated over unit bins.

Kernels are odd-length, symmetric and sum to one, so the blur preserves
mean intensity. Axes with ``ratio == 1`` get a unit impulse.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import torch

__all__ = [
    "PROFILES",
    "SliceProfile",
    "profile_kernel_1d",
    "through_plane_axis",
]

PROFILES = ("gaussian", "rect")
GAP_UNITS = ("%", "mm")


def profile_kernel_1d(kind: str, fwhm: float) -> np.ndarray:
    """Sampled 1D slice profile.

    Args:
        kind: "gaussian" or "rect".
        fwhm: Full width at half maximum in kernel samples.

    Returns:
        Odd-length, normalised kernel.
    """
    if kind not in PROFILES:
        raise ValueError(f"Slice profile must be one of {PROFILES}, got '{kind}'")
    if fwhm <= 1.0:
        return np.ones(1)
    if kind == "gaussian":
        sigma = fwhm / math.sqrt(8.0 * math.log(2.0))
        half = int(math.ceil(3.0 * sigma))
        t = np.arange(-half, half + 1, dtype=np.float64)
        k = np.exp(-0.5 * (t / sigma) ** 2)
    else:
        half = int(math.ceil(fwhm / 2.0 - 0.5))
        t = np.arange(-half, half + 1, dtype=np.float64)
        lo = np.maximum(t - 0.5, -fwhm / 2.0)
        hi = np.minimum(t + 0.5, fwhm / 2.0)
        k = np.maximum(hi - lo, 0.0)
    return k / k.sum()


def through_plane_axis(vx: Sequence[float], rtol: float = 1e-3) -> Optional[int]:
    """Axis with the largest voxel size, or None for (near) isotropic voxels."""
    vx = np.asarray(vx, dtype=np.float64)
    if vx.max() <= vx.min() * (1.0 + rtol):
        return None
    return int(np.argmax(vx))


@dataclass(frozen=True)
class SliceProfile:
    """Slice-profile configuration shared by all observations.

    Attributes:
        in_plane: Kernel kind for in-plane axes.
        through_plane: Kernel kind for the through-plane axis.
        gap: Slice gap, in percent of the slice thickness or in mm.
            Negative values mean overlapping slices.
        gap_unit: "%" or "mm".
    """

    in_plane: str = "gaussian"
    through_plane: str = "rect"
    gap: float = 0.0
    gap_unit: str = "%"

    def __post_init__(self) -> None:
        for kind in (self.in_plane, self.through_plane):
            if kind not in PROFILES:
                raise ValueError(f"Slice profile must be one of {PROFILES}, got '{kind}'")
        if self.gap_unit not in GAP_UNITS:
            raise ValueError(f"gap_unit must be one of {GAP_UNITS}, got '{self.gap_unit}'")

    def gap_fraction(self, thickness: float) -> float:
        """Gap as a fraction of a slice of the given thickness (mm).

        Negative values are overlaps between neighbouring slices.
        """
        frac = self.gap / 100.0 if self.gap_unit == "%" else self.gap / thickness
        if abs(frac) >= 1.0:
            kind = "gap" if frac > 0 else "overlap"
            raise ValueError(
                f"Slice {kind} ({self.gap}{self.gap_unit}) must be smaller than the "
                f"slice thickness ({thickness:.3f} mm)"
            )
        return frac

    def fwhm(self, ratio: Sequence[int], vx: Sequence[float]) -> Tuple[float, float, float]:
        """Kernel FWHM along each axis, in reconstruction voxels."""
        tp = through_plane_axis(vx)
        out = []
        for d in range(3):
            gap = self.gap_fraction(float(vx[d])) if d == tp else 0.0
            out.append((1.0 - gap) * float(ratio[d]))
        return tuple(out)

    def kernel(
        self,
        ratio: Sequence[int],
        vx: Sequence[float],
        dtype: torch.dtype = torch.float32,
        device: str = "cpu",
    ) -> torch.Tensor:
        """Separable 3D kernel shaped (1, 1, kx, ky, kz) for conv3d.

        Args:
            ratio: Integer subsampling factor per axis.
            vx: Observation voxel size (mm), used to find the
                through-plane axis and convert mm gaps.
        """
        tp = through_plane_axis(vx)
        widths = self.fwhm(ratio, vx)
        kernels = []
        for d in range(3):
            if int(ratio[d]) == 1:
                kernels.append(np.ones(1))
                continue
            kind = self.through_plane if d == tp else self.in_plane
            kernels.append(profile_kernel_1d(kind, widths[d]))
        k3 = np.einsum("i,j,k->ijk", *kernels)
        return torch.as_tensor(k3, dtype=dtype, device=device)[None, None]
