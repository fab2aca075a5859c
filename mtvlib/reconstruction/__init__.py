"""Multi-channel total-variation reconstruction.

The reconstruction problem is formulated as:
    x_cn = A_cn(b_c ⊙ y_c) + noise

where:
    - x_cn: n-th observed volume of channel c
    - y_c: latent high-resolution image of channel c
    - A_cn: projection (rigid transform, slice-profile blur, subsampling)
    - b_c: optional smooth bias field

and the channels share edges through a joint total-variation prior.

Example:
    >>> from mtvlib.reconstruction import MTVConfig, solve_mtv
    >>> from mtvlib.utils import load_channels
    >>>
    >>> data = load_channels([["t2_ax.nii", "t2_cor.nii", "t2_sag.nii"]])
    >>> result = solve_mtv(data, MTVConfig(method="superres"))
    >>> y = result.volumes[0].data
"""

from .base import (
    MTVConfig,
    ObjectiveTrace,
    ReconstructionResult,
    get_gain,
)
from .channel import (
    Observation,
    Channel,
    observation_mask,
)
from .hessian import (
    approximate_hessian,
    update_hessians,
)
from .prox_tv import (
    vectorial_shrinkage,
    tv_energy,
    update_tv,
    rescale_duals,
)
from .image_update import (
    update_channel_image,
    update_images,
)
from .rigid import (
    update_rigid,
    update_observation_rigid,
    mean_correct,
)
from .bias import (
    BiasField,
    dct_basis,
    update_bias,
    bias_log_prior,
    link_groups,
)
from .schedule import (
    RegularizationSchedule,
)
from .hyperparameters import (
    NoiseEstimate,
    Hyperparameters,
    fit_gmm_1d,
    estimate_noise,
    estimate_hyperparameters,
    admm_step_size,
)
from .admm import (
    solve_mtv,
    validate_inputs,
    reconstruction_lattice,
)

__all__ = [
    # Base types
    "MTVConfig",
    "ObjectiveTrace",
    "ReconstructionResult",
    "get_gain",
    # Channels
    "Observation",
    "Channel",
    "observation_mask",
    # Hessian
    "approximate_hessian",
    "update_hessians",
    # Proximal TV
    "vectorial_shrinkage",
    "tv_energy",
    "update_tv",
    "rescale_duals",
    # Image update
    "update_channel_image",
    "update_images",
    # Rigid
    "update_rigid",
    "update_observation_rigid",
    "mean_correct",
    # Bias
    "BiasField",
    "dct_basis",
    "update_bias",
    "bias_log_prior",
    "link_groups",
    # Schedule
    "RegularizationSchedule",
    # Hyperparameters
    "NoiseEstimate",
    "Hyperparameters",
    "fit_gmm_1d",
    "estimate_noise",
    "estimate_hyperparameters",
    "admm_step_size",
    # Driver
    "solve_mtv",
    "validate_inputs",
    "reconstruction_lattice",
]
