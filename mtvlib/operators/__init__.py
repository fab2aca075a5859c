"""Linear operators on voxel lattices.

- **interpolation**: trilinear pull/push/gradient with exact adjoint
- **difference**: finite differences and the spectral elliptic solver
- **slice_profile**: Gaussian / rectangular slice-selection kernels
- **projection**: the observation model A and its adjoint At
"""

from .interpolation import (
    INTERP_BOUNDS,
    grid_pull,
    grid_push,
    grid_grad,
)
from .difference import (
    gradient,
    gradient_adjoint,
    laplacian,
    laplacian_eigenvalues,
    spectral_solve,
    solve_field,
)
from .slice_profile import (
    PROFILES,
    SliceProfile,
    profile_kernel_1d,
    through_plane_axis,
)
from .projection import (
    ProjectionOperator,
    subsampling_ratio,
)

__all__ = [
    # Interpolation
    "INTERP_BOUNDS",
    "grid_pull",
    "grid_push",
    "grid_grad",
    # Finite differences
    "gradient",
    "gradient_adjoint",
    "laplacian",
    "laplacian_eigenvalues",
    "spectral_solve",
    "solve_field",
    # Slice profiles
    "PROFILES",
    "SliceProfile",
    "profile_kernel_1d",
    "through_plane_axis",
    # Projection
    "ProjectionOperator",
    "subsampling_ratio",
]
