"""Per-channel state of an MTV reconstruction.

A channel groups the observations of one contrast and owns every tensor
the solver mutates for it: the latent image ``y``, the TV target ``u``,
the scaled dual ``w`` and the Hessian diagonal ``H``. All of them live in
:class:`~mtvlib.core.volume.Volume` objects, so the storage backend
(resident or paged) is chosen once at construction.

The channel forward model for observation n is

    x_n ≈ A_n(b ⊙ y)

with ``A_n`` the observation's projection operator (identity when the
channel is not projected) and ``b`` the optional multiplicative bias field.
Voxels of ``x_n`` that are zero or non-finite are treated as missing and
excluded from every likelihood and gradient sum.
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import torch

from ..core.lattice import Lattice
from ..core.volume import Volume
from ..operators.projection import ProjectionOperator

__all__ = ["Observation", "Channel", "observation_mask"]


def observation_mask(x: torch.Tensor) -> torch.Tensor:
    """Voxels that carry data: finite and nonzero."""
    return torch.isfinite(x) & (x != 0)


@dataclass
class Observation:
    """One observed volume of a channel.

    Attributes:
        volume: Observed data and orientation.
        tau: Noise precision (1 / sigma²).
        operator: Projection onto the observation lattice, or None when
            the observation lives on the reconstruction lattice.
    """

    volume: Volume
    tau: float = 1.0
    operator: Optional[ProjectionOperator] = None

    def data(self, dtype: torch.dtype, device: str) -> torch.Tensor:
        """Observed intensities with missing voxels set to zero."""
        x = self.volume.data.to(dtype=dtype, device=device)
        return torch.where(observation_mask(x), x, torch.zeros_like(x))

    def mask(self, device: str) -> torch.Tensor:
        return observation_mask(self.volume.data.to(device=device))

    @property
    def q(self) -> np.ndarray:
        if self.operator is None:
            return np.zeros(6)
        return self.operator.q

    def forward(self, y: torch.Tensor) -> torch.Tensor:
        return y if self.operator is None else self.operator.forward(y)

    def adjoint(self, x: torch.Tensor) -> torch.Tensor:
        return x if self.operator is None else self.operator.adjoint(x)


class Channel:
    """Observations and solver state of one contrast.

    Args:
        index: Position of the channel in the input list.
        observations: Observed volumes with their operators.
        lattice: Reconstruction lattice.
        lam0: Base regularization weight.
        paged: Store y, u, w, H in files between accesses.
        directory: Location of paged files.
        dtype: Tensor dtype.
        device: Tensor device.
    """

    def __init__(
        self,
        index: int,
        observations: List[Observation],
        lattice: Lattice,
        lam0: float = 1.0,
        paged: bool = False,
        directory: Optional[str] = None,
        dtype: torch.dtype = torch.float32,
        device: str = "cpu",
    ):
        if len(observations) == 0:
            raise ValueError(f"Channel {index} has no observations")
        self.index = index
        self.observations = observations
        self.lattice = lattice
        self.lam0 = float(lam0)
        self.lam = float(lam0)
        self.dtype = dtype
        self.device = device
        self.bias = None

        zeros = torch.zeros(lattice.shape, dtype=dtype, device=device)
        grad_zeros = torch.zeros((lattice.ndim,) + lattice.shape, dtype=dtype, device=device)
        stem = f"channel{index:02d}"

        def allocate(data: torch.Tensor, kind: str) -> Volume:
            return Volume.from_array(
                data.clone(), lattice.affine, name=f"{stem}_{kind}",
                paged=paged, directory=directory,
            )

        self.y = allocate(zeros, "y")
        self.u = allocate(grad_zeros, "u")
        self.w = allocate(grad_zeros, "w")
        self.hessian = allocate(zeros, "H")

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        name = self.observations[0].volume.name
        return name if name is not None else f"channel{self.index:02d}"

    @property
    def taus(self) -> List[float]:
        return [obs.tau for obs in self.observations]

    @property
    def is_projected(self) -> bool:
        return any(obs.operator is not None for obs in self.observations)

    def image(self) -> torch.Tensor:
        return self.y.data

    def set_image(self, y: torch.Tensor) -> None:
        self.y.assign(y)

    def bias_field(self) -> Optional[torch.Tensor]:
        return None if self.bias is None else self.bias.field()

    # -------------------------------------------------------------------------
    # Forward model
    # -------------------------------------------------------------------------

    def predict(self, y: torch.Tensor) -> List[torch.Tensor]:
        """Predicted observations A_n(b ⊙ y)."""
        b = self.bias_field()
        yb = y if b is None else b * y
        return [obs.forward(yb) for obs in self.observations]

    def backproject(self, residuals: List[torch.Tensor]) -> torch.Tensor:
        """Adjoint of :meth:`predict`: b ⊙ Σ_n At_n(r_n)."""
        out = torch.zeros(self.lattice.shape, dtype=self.dtype, device=self.device)
        for obs, r in zip(self.observations, residuals):
            out = out + obs.adjoint(r)
        b = self.bias_field()
        return out if b is None else b * out

    def log_likelihood(self, y: Optional[torch.Tensor] = None) -> float:
        """Data term ll1 = -Σ_n tau_n/2 ||x_n - A_n(b ⊙ y)||² over observed voxels."""
        if y is None:
            y = self.image()
        ll = 0.0
        for obs, pred in zip(self.observations, self.predict(y)):
            x = obs.data(self.dtype, self.device)
            msk = obs.mask(self.device)
            r = torch.where(msk, x - pred, torch.zeros_like(pred))
            ll -= 0.5 * obs.tau * float(torch.sum(r.double() ** 2))
        return ll

    def data_gradient(self, y: torch.Tensor) -> torch.Tensor:
        """Gradient of -ll1 with respect to y."""
        residuals = []
        for obs, pred in zip(self.observations, self.predict(y)):
            x = obs.data(self.dtype, self.device)
            msk = obs.mask(self.device)
            residuals.append(obs.tau * torch.where(msk, pred - x, torch.zeros_like(pred)))
        return self.backproject(residuals)

    def coverage(self) -> torch.Tensor:
        """Σ_n At_n(m_n): zero where no observation carries data."""
        masks = [obs.mask(self.device).to(self.dtype) for obs in self.observations]
        out = torch.zeros(self.lattice.shape, dtype=self.dtype, device=self.device)
        for obs, m in zip(self.observations, masks):
            out = out + obs.adjoint(m)
        return out

    def release(self) -> None:
        """Free the solver volumes."""
        for vol in (self.y, self.u, self.w, self.hessian):
            vol.release()
