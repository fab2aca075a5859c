"""Synthetic phantoms for reconstruction experiments.

Piecewise-constant and smooth test volumes, additive Gaussian noise, and
simulation of thick-sliced, shifted low-resolution stacks through the same
projection operator the solver uses.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np
import torch

from mtvlib.core import Lattice, Volume
from mtvlib.operators import ProjectionOperator, SliceProfile


def block_phantom(
    shape: Tuple[int, int, int] = (32, 32, 32),
    background: float = 0.2,
    levels: Sequence[float] = (1.0, 0.6),
) -> np.ndarray:
    """Piecewise-constant phantom: a box and a sphere on a flat background.

    Args:
        shape: Volume shape; a trailing 1 gives a single slice.
        background: Background intensity.
        levels: Intensities of the box and the sphere.

    Returns:
        Array of the given shape (float64).

    Example:
        >>> x = block_phantom((32, 32, 1))
        >>> assert x.shape == (32, 32, 1)
    """
    nx, ny, nz = shape
    gx, gy, gz = np.meshgrid(
        np.arange(nx) / nx, np.arange(ny) / ny, np.arange(nz) / max(nz, 1), indexing="ij"
    )
    x = np.full(shape, background, dtype=np.float64)

    box = (gx > 0.15) & (gx < 0.55) & (gy > 0.2) & (gy < 0.7)
    if nz > 1:
        box &= (gz > 0.2) & (gz < 0.8)
    x[box] = levels[0]

    r2 = (gx - 0.65) ** 2 + (gy - 0.6) ** 2
    if nz > 1:
        r2 = r2 + (gz - 0.5) ** 2
    x[r2 < 0.2 ** 2] = levels[1]
    return x


def smooth_phantom(
    shape: Tuple[int, int, int] = (16, 16, 16),
    sigma: float = 3.0,
    offset: float = 0.5,
) -> np.ndarray:
    """Sum of two Gaussian blobs plus a constant, strictly positive.

    Args:
        shape: Volume shape.
        sigma: Blob width in voxels.
        offset: Constant added everywhere.
    """
    centres = [np.array(shape) * f for f in (0.4, 0.65)]
    gx, gy, gz = np.meshgrid(*[np.arange(n, dtype=np.float64) for n in shape], indexing="ij")
    x = np.full(shape, offset, dtype=np.float64)
    for amp, c in zip((1.0, 0.7), centres):
        d2 = (gx - c[0]) ** 2 + (gy - c[1]) ** 2 + (gz - c[2]) ** 2
        x += amp * np.exp(-0.5 * d2 / sigma**2)
    return x


def shared_square(
    shape: Tuple[int, int, int] = (40, 40, 1),
    heights: Sequence[float] = (1.0, 0.3),
    background: float = 0.5,
    size: int = 8,
) -> List[np.ndarray]:
    """One volume per channel with a centred square of different contrast.

    All channels share the same edges; only the square height differs.

    Args:
        shape: Volume shape.
        heights: Square height above background, per channel.
        background: Background intensity.
        size: Side length of the square (voxels).
    """
    lo = [(n - size) // 2 for n in shape[:2]]
    out = []
    for h in heights:
        x = np.full(shape, background, dtype=np.float64)
        x[lo[0]:lo[0] + size, lo[1]:lo[1] + size] += h
        out.append(x)
    return out


def add_gaussian_noise(
    x: np.ndarray,
    sigma: float,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Add white Gaussian noise of standard deviation ``sigma``.

    Args:
        x: Noise-free data.
        sigma: Absolute noise standard deviation.
        rng: NumPy random generator. If None, uses default.

    Returns:
        Noisy copy of ``x``.

    Example:
        >>> x = np.ones((8, 8, 8))
        >>> y = add_gaussian_noise(x, 0.1, np.random.default_rng(0))
    """
    if rng is None:
        rng = np.random.default_rng()
    return x + sigma * rng.standard_normal(x.shape)


def stack_affine(
    thick_axis: int,
    ratio: int,
    shift: Sequence[float] = (0.0, 0.0, 0.0),
) -> np.ndarray:
    """Affine of a stack whose voxels span ``ratio`` mm along one axis.

    Voxel centres along the thick axis sit at the centres of consecutive
    ``ratio``-voxel slabs of a unit-spaced grid, optionally shifted (mm).
    """
    affine = np.eye(4)
    affine[thick_axis, thick_axis] = float(ratio)
    affine[thick_axis, 3] = 0.5 * (ratio - 1)
    affine[:3, 3] += np.asarray(shift, dtype=np.float64)
    return affine


def simulate_stacks(
    truth: np.ndarray,
    ratio: int = 3,
    shifts: Optional[Sequence[Sequence[float]]] = None,
    sigma: float = 0.0,
    profile: Optional[SliceProfile] = None,
    rng: Optional[np.random.Generator] = None,
    dtype: torch.dtype = torch.float64,
) -> Tuple[Lattice, List[Volume]]:
    """Orthogonal thick-sliced stacks of a unit-spaced volume.

    Each stack is thick along a different axis and may be shifted by a
    known offset, encoded in its affine. Stacks are simulated with
    :class:`ProjectionOperator`, then corrupted with Gaussian noise.

    Args:
        truth: High-resolution volume on an identity-affine grid.
        ratio: Slice thickness in voxels.
        shifts: Per-stack translation (mm); zeros by default.
        sigma: Noise standard deviation.
        profile: Slice profile used for simulation.
        rng: NumPy random generator.
        dtype: Tensor dtype.

    Returns:
        Tuple (truth lattice, list of stack volumes).
    """
    if rng is None:
        rng = np.random.default_rng()
    if shifts is None:
        shifts = [(0.0, 0.0, 0.0)] * 3
    latent = Lattice(truth.shape, np.eye(4))
    y = torch.as_tensor(truth, dtype=dtype)

    stacks = []
    for axis, shift in zip(range(3), shifts):
        shape = list(truth.shape)
        shape[axis] = truth.shape[axis] // ratio
        observed = Lattice(tuple(shape), stack_affine(axis, ratio, shift))
        op = ProjectionOperator(latent, observed, profile, dtype=dtype)
        x = op.forward(y).numpy()
        x = add_gaussian_noise(x, sigma, rng) if sigma > 0 else x
        stacks.append(Volume.from_array(x, observed.affine, name=f"stack{axis}.nii", dtype=dtype))
    return latent, stacks


def naive_upsample(stack: Volume, latent: Lattice) -> torch.Tensor:
    """Trilinear interpolation of a stack onto a lattice (no deblurring)."""
    op = ProjectionOperator(stack.lattice(), latent, dtype=stack.data.dtype)
    return op.forward(stack.data)
