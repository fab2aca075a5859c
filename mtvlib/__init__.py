"""mtvlib - Multi-channel total-variation denoising and super-resolution.

A library for jointly reconstructing multi-contrast volumes (e.g. MRI
weightings or CT) from noisy, thick-sliced and possibly misaligned
observations. Channels share edge structure through a multi-channel total
variation prior, optimised with ADMM.

The library is organized into four main modules:

- **core**: lattices, rigid transforms and volume storage
- **operators**: resampling, finite differences, slice profiles and the
  projection operator A / At
- **reconstruction**: the ADMM solver and its nuisance-parameter updates
- **utils**: NIfTI I/O, quality metrics and worker pools

Example:
    >>> from mtvlib import MTVConfig, solve_mtv
    >>> from mtvlib.utils import load_channels, write_reconstruction
    >>>
    >>> # Three contrasts, each a single thick-sliced acquisition
    >>> data = load_channels(["t1.nii", "t2.nii", "pd.nii"])
    >>> config = MTVConfig(method="superres", voxel_size=(1.0, 1.0, 1.0))
    >>> result = solve_mtv(data, config)
    >>> write_reconstruction(result, config.output_directory, config.prefix)

Reference:
    Brudfors, M. et al. (2019). "MRI Super-Resolution Using Multi-channel
    Total Variation." Medical Image Understanding and Analysis, 217-228.
"""

__version__ = "0.1.0"

# =============================================================================
# Core - geometry and storage
# =============================================================================
from .core import (
    Lattice,
    bounding_box_lattice,
    rigid_matrix,
    Volume,
    InMemoryStorage,
    PagedStorage,
)

# =============================================================================
# Operators
# =============================================================================
from .operators import (
    SliceProfile,
    ProjectionOperator,
    gradient,
    gradient_adjoint,
)

# =============================================================================
# Reconstruction
# =============================================================================
from .reconstruction import (
    MTVConfig,
    ReconstructionResult,
    ObjectiveTrace,
    RegularizationSchedule,
    solve_mtv,
)

__all__ = [
    "__version__",
    # Core
    "Lattice",
    "bounding_box_lattice",
    "rigid_matrix",
    "Volume",
    "InMemoryStorage",
    "PagedStorage",
    # Operators
    "SliceProfile",
    "ProjectionOperator",
    "gradient",
    "gradient_adjoint",
    # Reconstruction
    "MTVConfig",
    "ReconstructionResult",
    "ObjectiveTrace",
    "RegularizationSchedule",
    "solve_mtv",
]
