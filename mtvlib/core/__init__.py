"""Geometry and data containers shared by the operators and solvers."""

from .lattice import (
    Lattice,
    BOUNDS,
    voxel_size,
    bounding_box_lattice,
)
from .rigid import (
    NUM_RIGID_PARAMS,
    rigid_basis,
    rigid_matrix,
    rigid_matrix_derivatives,
    active_rigid_params,
)
from .volume import (
    VolumeStorage,
    InMemoryStorage,
    PagedStorage,
    make_storage,
    Volume,
)

__all__ = [
    # Lattice
    "Lattice",
    "BOUNDS",
    "voxel_size",
    "bounding_box_lattice",
    # Rigid transforms
    "NUM_RIGID_PARAMS",
    "rigid_basis",
    "rigid_matrix",
    "rigid_matrix_derivatives",
    "active_rigid_params",
    # Volumes
    "VolumeStorage",
    "InMemoryStorage",
    "PagedStorage",
    "make_storage",
    "Volume",
]
