"""Configuration, progress trace and result types for MTV reconstruction."""

import math
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Tuple, Union

import numpy as np
import torch

from ..core.lattice import BOUNDS
from ..core.volume import Volume
from ..operators.interpolation import INTERP_BOUNDS
from ..operators.slice_profile import PROFILES, SliceProfile

__all__ = [
    "MTVConfig",
    "ObjectiveTrace",
    "ReconstructionResult",
    "get_gain",
]

METHODS = ("denoise", "superres")
MODALITIES = ("MRI", "CT")
MEAN_CORRECTIONS = ("none", "channel", "global")


def get_gain(values: List[float]) -> float:
    """Relative change between the last two objective values.

    Returns infinity until at least two values are available.
    """
    if len(values) < 2:
        return math.inf
    prev, cur = values[-2], values[-1]
    return abs((prev - cur) / max(abs(cur), 1e-30))


@dataclass(frozen=True)
class MTVConfig:
    """Options of an MTV reconstruction.

    Attributes:
        method: "denoise" or "superres".
        modality: "MRI" or "CT"; selects the lambda rule and noise model.
        max_iter: Maximum number of outer iterations.
        image_iter: Image sweeps per outer iteration.
        gauss_newton_image_iter: Gauss-Newton steps per image sweep
            (projection mode only).
        gauss_newton_rigid_iter: Gauss-Newton steps per rigid update.
        gauss_newton_bias_iter: Gauss-Newton steps per bias update.
        tolerance: Objective gain below which iterations stop (at the final
            regularization stage). Zero runs all ``max_iter`` iterations.
        admm_step_size: Fixed ADMM penalty rho. Zero selects it from tau
            and lambda with :func:`admm_step_size`.
        rho_scale: Multiplier of the automatic rho.
        reg_scale_superres_mri: MRI lambda numerator for super-resolution.
        reg_scale_denoise_mri: MRI lambda numerator for denoising.
        reg_superres_ct: CT lambda for super-resolution.
        reg_denoise_ct: CT lambda for denoising.
        reg_scale: User multiplier applied to every lambda0.
        reg_weight: Optional per-channel lambda0 (bypasses the rule).
        noise_precision: Optional per-channel tau (bypasses estimation).
        decreasing_reg: Coarse-to-fine regularization. None picks the
            default (on for super-resolution, and for denoising with rigid
            estimation).
        reg_schedule: Scale factor of lambda at each stage; the last must
            be 1.
        reg_schedule_steps: Outer iterations spent in each non-final stage.
        voxel_size: Reconstruction voxel size for super-resolution (mm). A
            scalar is used along every axis; None takes the smallest input
            voxel size.
        profile_in_plane: Slice profile along in-plane axes.
        profile_through_plane: Slice profile along the through-plane axis.
        slice_gap: Gap between slices.
        slice_gap_unit: "%" (of slice thickness) or "mm". Negative gaps
            are overlaps.
        observation_profiles: Optional slice profile of every observation,
            nested like the input channels. Overrides the four options
            above.
        estimate_rigid: Estimate rigid alignment of every observation.
        rigid_channels: Channels taking part in rigid estimation (all if None).
        mean_correct_rigid: Remove the mean rigid drift "global"ly, per
            "channel", or not at all ("none").
        rigid_line_search: Maximum step halvings in the rigid line search.
        estimate_bias: Estimate a multiplicative bias field per channel.
        bias_links: Groups of channel indices sharing one bias field.
        bias_basis: Number of DCT basis functions per axis.
        bias_reg: Bending-energy regularization of the bias field.
        bound: Finite-difference boundary, "neumann" or "circular".
        interp_bound: Resampling boundary, "replicate" or "zero".
        cg_max_iter: Maximum PCG iterations in the inner elliptic solve.
        cg_tol: Relative residual tolerance of the inner elliptic solve.
        workers: Requested worker count (0 = sequential, None = one per CPU).
        paged: Keep reconstruction volumes in files between accesses.
        temp_directory: Location of paged volumes.
        clean_up: Delete paged volumes when done.
        output_directory: Where reconstructions are written.
        zero_missing: Reset never-observed voxels to zero. None picks the
            default (on for a single channel with a single observation).
        verbose: 0 silent, 1 per iteration, 2 + timings, 3 + hyperparameters.
        dtype: Tensor dtype.
        device: Tensor device.

    Example:
        ```python
        config = MTVConfig(method="superres", voxel_size=(1.0, 1.0, 1.0))
        ```
    """

    method: Literal["denoise", "superres"] = "denoise"
    modality: Literal["MRI", "CT"] = "MRI"
    max_iter: int = 30
    image_iter: int = 3
    gauss_newton_image_iter: int = 1
    gauss_newton_rigid_iter: int = 1
    gauss_newton_bias_iter: int = 1
    tolerance: float = 1e-4
    admm_step_size: float = 0.0
    rho_scale: float = 1.0
    reg_scale_superres_mri: float = 6.0
    reg_scale_denoise_mri: float = 6.0
    reg_superres_ct: float = 0.06
    reg_denoise_ct: float = 0.06
    reg_scale: float = 1.0
    reg_weight: Optional[Tuple[float, ...]] = None
    noise_precision: Optional[Tuple[float, ...]] = None
    decreasing_reg: Optional[bool] = None
    reg_schedule: Tuple[float, ...] = (8.0, 4.0, 2.0, 1.0)
    reg_schedule_steps: int = 2
    voxel_size: Optional[Union[float, Tuple[float, float, float]]] = (1.0, 1.0, 1.0)
    profile_in_plane: str = "gaussian"
    profile_through_plane: str = "rect"
    slice_gap: float = 0.0
    slice_gap_unit: str = "%"
    observation_profiles: Optional[Tuple[Tuple[SliceProfile, ...], ...]] = None
    estimate_rigid: bool = False
    rigid_channels: Optional[Tuple[int, ...]] = None
    mean_correct_rigid: Literal["none", "channel", "global"] = "global"
    rigid_line_search: int = 12
    estimate_bias: bool = False
    bias_links: Optional[Tuple[Tuple[int, ...], ...]] = None
    bias_basis: Tuple[int, int, int] = (3, 3, 3)
    bias_reg: float = 1.0
    bound: str = "neumann"
    interp_bound: str = "replicate"
    cg_max_iter: int = 16
    cg_tol: float = 1e-5
    workers: Optional[int] = 0
    paged: bool = False
    temp_directory: str = "./tmp"
    clean_up: bool = True
    output_directory: str = "./out"
    zero_missing: Optional[bool] = None
    verbose: int = 1
    dtype: torch.dtype = torch.float32
    device: str = "cpu"

    def __post_init__(self) -> None:
        """Validate options that do not depend on the data."""
        if self.method not in METHODS:
            raise ValueError(f"method must be one of {METHODS}, got '{self.method}'")
        if self.modality not in MODALITIES:
            raise ValueError(f"modality must be one of {MODALITIES}, got '{self.modality}'")
        for name in (
            "max_iter", "image_iter", "gauss_newton_image_iter",
            "gauss_newton_rigid_iter", "gauss_newton_bias_iter", "reg_schedule_steps",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1, got {getattr(self, name)}")
        if self.tolerance < 0:
            raise ValueError(f"tolerance must be non-negative, got {self.tolerance}")
        if self.admm_step_size < 0:
            raise ValueError(f"admm_step_size must be non-negative, got {self.admm_step_size}")
        if self.rho_scale <= 0:
            raise ValueError(f"rho_scale must be positive, got {self.rho_scale}")
        if self.reg_scale <= 0:
            raise ValueError(f"reg_scale must be positive, got {self.reg_scale}")
        if self.reg_weight is not None and any(w <= 0 for w in self.reg_weight):
            raise ValueError(f"reg_weight entries must be positive, got {self.reg_weight}")
        if self.noise_precision is not None and any(t <= 0 for t in self.noise_precision):
            raise ValueError(
                f"noise_precision entries must be positive, got {self.noise_precision}"
            )
        if len(self.reg_schedule) == 0 or any(s <= 0 for s in self.reg_schedule):
            raise ValueError(f"reg_schedule must hold positive scales, got {self.reg_schedule}")
        if self.reg_schedule[-1] != 1.0:
            raise ValueError(
                f"The last reg_schedule stage must have scale 1, got {self.reg_schedule[-1]}"
            )
        if self.voxel_size is not None:
            vx = np.atleast_1d(np.asarray(self.voxel_size, dtype=np.float64))
            if vx.size not in (1, 3) or np.any(vx <= 0):
                raise ValueError(
                    f"voxel_size must be one or 3 positive values, got {self.voxel_size}"
                )
        for name in ("profile_in_plane", "profile_through_plane"):
            if getattr(self, name) not in PROFILES:
                raise ValueError(f"{name} must be one of {PROFILES}, got '{getattr(self, name)}'")
        if self.mean_correct_rigid not in MEAN_CORRECTIONS:
            raise ValueError(
                f"mean_correct_rigid must be one of {MEAN_CORRECTIONS}, "
                f"got '{self.mean_correct_rigid}'"
            )
        if self.bound not in BOUNDS:
            raise ValueError(f"bound must be one of {BOUNDS}, got '{self.bound}'")
        if self.interp_bound not in INTERP_BOUNDS:
            raise ValueError(
                f"interp_bound must be one of {INTERP_BOUNDS}, got '{self.interp_bound}'"
            )
        if len(self.bias_basis) != 3 or any(b < 1 for b in self.bias_basis):
            raise ValueError(f"bias_basis must be 3 positive counts, got {self.bias_basis}")
        if self.bias_reg < 0:
            raise ValueError(f"bias_reg must be non-negative, got {self.bias_reg}")
        if self.workers is not None and self.workers < 0:
            raise ValueError(f"workers must be non-negative, got {self.workers}")
        if self.verbose < 0:
            raise ValueError(f"verbose must be non-negative, got {self.verbose}")
        if self.observation_profiles is not None:
            for profiles in self.observation_profiles:
                for p in profiles:
                    if not isinstance(p, SliceProfile):
                        raise ValueError(
                            f"observation_profiles must hold SliceProfile objects, got {p!r}"
                        )
        # Raises on invalid slice gap units
        self.slice_profile()

    @property
    def use_projection(self) -> bool:
        """Whether observations go through a projection operator."""
        return not (self.method == "denoise" and not self.estimate_rigid)

    @property
    def use_decreasing_reg(self) -> bool:
        if self.decreasing_reg is not None:
            return self.decreasing_reg
        return self.method == "superres" or self.estimate_rigid

    @property
    def prefix(self) -> str:
        """Output file prefix."""
        return "sr" if self.method == "superres" else "den"

    def slice_profile(
        self, channel: Optional[int] = None, index: Optional[int] = None
    ) -> SliceProfile:
        """Slice profile of observation ``index`` of ``channel``.

        Falls back to the shared profile options when no per-observation
        profiles are given or no observation is named.
        """
        if self.observation_profiles is not None and channel is not None:
            return self.observation_profiles[channel][index]
        return SliceProfile(
            in_plane=self.profile_in_plane,
            through_plane=self.profile_through_plane,
            gap=self.slice_gap,
            gap_unit=self.slice_gap_unit,
        )


@dataclass
class ObjectiveTrace:
    """Log-posterior values and the update kind that produced each.

    Attributes:
        values: Objective values in evaluation order.
        kinds: "init", "image", "bias" or "rigid" for each value.
    """

    values: List[float] = field(default_factory=list)
    kinds: List[str] = field(default_factory=list)

    def append(self, value: float, kind: str) -> None:
        self.values.append(float(value))
        self.kinds.append(kind)

    def gain(self, kind: Optional[str] = None) -> float:
        """Gain between the last two values (optionally of one kind)."""
        if kind is None:
            return get_gain(self.values)
        return get_gain([v for v, k in zip(self.values, self.kinds) if k == kind])

    def __len__(self) -> int:
        return len(self.values)


@dataclass
class ReconstructionResult:
    """Result of :func:`solve_mtv`.

    Attributes:
        volumes: One reconstructed volume per channel.
        affine: Voxel-to-world matrix of the reconstructions.
        iterations: Number of outer iterations performed.
        trace: Objective values of every update.
        elapsed: Wall time in seconds.
        converged: Whether the gain fell below tolerance.
        metadata: Estimated hyperparameters, rigid parameters and metrics.
    """

    volumes: List[Volume]
    affine: np.ndarray
    iterations: int
    trace: ObjectiveTrace = field(default_factory=ObjectiveTrace)
    elapsed: float = 0.0
    converged: bool = False
    metadata: dict = field(default_factory=dict)
