"""Voxel lattices: dimensions, orientation and boundary conditions.

A lattice is the pairing of an array shape with a 4x4 affine mapping
0-based voxel indices (i, j, k) to world coordinates (mm). Both the shared
reconstruction grid and every observation grid are lattices.

Two-dimensional data is represented with a trailing singleton axis, i.e.
shape (nx, ny, 1). Such lattices report ``ndim == 2`` and the finite
difference operators skip the singleton axis.
"""

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

__all__ = [
    "Lattice",
    "BOUNDS",
    "voxel_size",
    "bounding_box_lattice",
]

BOUNDS = ("neumann", "circular")


def voxel_size(affine: np.ndarray) -> np.ndarray:
    """Voxel dimensions encoded in the columns of an affine.

    Args:
        affine: 4x4 voxel-to-world matrix.

    Returns:
        Array of 3 voxel sizes (mm).
    """
    affine = np.asarray(affine, dtype=np.float64)
    return np.sqrt(np.sum(affine[:3, :3] ** 2, axis=0))


@dataclass(frozen=True, eq=False)
class Lattice:
    """Immutable voxel grid.

    Attributes:
        shape: Number of voxels along each axis, always three entries.
        affine: 4x4 voxel-to-world matrix (0-based voxel indices).
        bound: Boundary condition for finite differences on this grid,
            "neumann" (zero flux, DCT-II diagonalisable) or "circular".

    Example:
        ```python
        lat = Lattice((64, 64, 32), np.diag([1.0, 1.0, 2.0, 1.0]))
        print(lat.voxel_size)  # [1. 1. 2.]
        ```
    """

    shape: Tuple[int, int, int]
    affine: np.ndarray
    bound: str = "neumann"

    def __post_init__(self) -> None:
        """Validate and normalise fields."""
        shape = tuple(int(s) for s in self.shape)
        if len(shape) == 2:
            shape = shape + (1,)
        if len(shape) != 3:
            raise ValueError(f"Lattice shape must have 2 or 3 entries, got {self.shape}")
        if min(shape) < 1:
            raise ValueError(f"Lattice dimensions must be positive, got {shape}")
        affine = np.array(self.affine, dtype=np.float64)
        if affine.shape != (4, 4):
            raise ValueError(f"Affine must be 4x4, got {affine.shape}")
        if abs(np.linalg.det(affine[:3, :3])) < 1e-12:
            raise ValueError("Affine is singular")
        if self.bound not in BOUNDS:
            raise ValueError(f"bound must be one of {BOUNDS}, got '{self.bound}'")
        object.__setattr__(self, "shape", shape)
        object.__setattr__(self, "affine", affine)

    @property
    def voxel_size(self) -> np.ndarray:
        """Voxel dimensions (mm)."""
        return voxel_size(self.affine)

    @property
    def ndim(self) -> int:
        """Number of spatial dimensions carrying data (2 for single slices)."""
        return 2 if self.shape[2] == 1 else 3

    @property
    def num_voxels(self) -> int:
        return int(np.prod(self.shape))

    def corners(self) -> np.ndarray:
        """World coordinates of the 8 corner voxel centres, shape (8, 3)."""
        hi = np.array(self.shape, dtype=np.float64) - 1
        idx = np.array(
            [[i, j, k, 1.0] for i in (0, hi[0]) for j in (0, hi[1]) for k in (0, hi[2])]
        )
        return (idx @ self.affine.T)[:, :3]

    def with_bound(self, bound: str) -> "Lattice":
        return Lattice(self.shape, self.affine, bound)


def bounding_box_lattice(
    lattices: Sequence[Lattice],
    vx: Sequence[float] = (1.0, 1.0, 1.0),
    bound: str = "neumann",
) -> Lattice:
    """Smallest lattice at a given voxel size covering a set of lattices.

    The orientation (rotation and axis flips) of the first lattice is kept;
    the field of view is the bounding box of all corner voxel centres
    expressed in that orientation. For single-slice inputs the output keeps
    one slice, positioned at the first lattice's plane.

    Args:
        lattices: Observation lattices. Must be non-empty.
        vx: Output voxel size (mm).
        bound: Boundary condition attached to the result.

    Returns:
        Lattice enclosing every input lattice.
    """
    if len(lattices) == 0:
        raise ValueError("bounding_box_lattice needs at least one lattice")
    vx = np.asarray(vx, dtype=np.float64).reshape(-1)
    if vx.size == 1:
        vx = np.repeat(vx, 3)
    if np.any(vx <= 0):
        raise ValueError(f"Voxel size must be positive, got {vx}")

    first = lattices[0]
    rot = first.affine[:3, :3] / first.voxel_size[None, :]

    # Corners in the rotated frame
    pts = np.concatenate([lat.corners() for lat in lattices], axis=0)
    local = pts @ rot  # rot is orthonormal: inverse == transpose
    lo = local.min(axis=0)
    hi = local.max(axis=0)

    shape = np.floor((hi - lo) / vx + 1e-6).astype(int) + 1
    if first.ndim == 2 and all(lat.ndim == 2 for lat in lattices):
        shape[2] = 1
        lo[2] = (first.affine[:3, 3] @ rot)[2]

    affine = np.eye(4)
    affine[:3, :3] = rot * vx[None, :]
    affine[:3, 3] = rot @ lo
    return Lattice(tuple(int(s) for s in shape), affine, bound)
