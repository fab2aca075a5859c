"""Smooth multiplicative bias fields.

A bias field is the exponential of a low-frequency DCT expansion on the
reconstruction lattice:

    b = exp( Σ_{abc} β_abc φ_a(x) φ_b(y) φ_c(z) )

with orthonormal DCT-II basis functions φ. The constant (DC) function is
excluded so that intensity scale stays with the latent image. Coefficients
are estimated by Gauss-Newton on

    E(β) = Σ_n (tau_n/2) ||M_n(A_n(b ⊙ y) - x_n)||² + (1/2) β^T P β

where P is a diagonal bending-energy prior. The Gauss-Newton Hessian uses
the diagonal majoriser of the data curvature,

    ∂²E/∂β_k∂β_l ≈ Σ_voxels φ_k φ_l (b ⊙ y)² h,    h = Σ_n tau_n At_n(M_n A_n(b))/b

which is exact when observations live on the reconstruction lattice. The
separable basis keeps all sums as small tensor contractions.

Channels listed together in a link group share one field and are solved
jointly (their gradients and Hessians add).
"""

import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
import torch

from ..core.lattice import Lattice
from .channel import Channel

__all__ = ["BiasField", "dct_basis", "update_bias", "bias_log_prior", "link_groups"]


def dct_basis(n: int, k: int, dtype: torch.dtype = torch.float64, device: str = "cpu") -> torch.Tensor:
    """First ``k`` orthonormal DCT-II basis vectors on ``n`` points, shape (k, n)."""
    k = min(k, n)
    i = torch.arange(n, dtype=torch.float64)
    rows = []
    for f in range(k):
        if f == 0:
            rows.append(torch.full((n,), 1.0 / math.sqrt(n), dtype=torch.float64))
        else:
            rows.append(math.sqrt(2.0 / n) * torch.cos(math.pi * f * (2 * i + 1) / (2 * n)))
    return torch.stack(rows).to(dtype=dtype, device=device)


class BiasField:
    """Bias field coefficients on a lattice.

    Args:
        lattice: Reconstruction lattice (3D).
        num_basis: DCT functions per axis.
        reg: Regularization weight of the bending-energy prior.
        dtype: Tensor dtype of the evaluated field.
        device: Tensor device.
    """

    def __init__(
        self,
        lattice: Lattice,
        num_basis: Sequence[int] = (3, 3, 3),
        reg: float = 1.0,
        dtype: torch.dtype = torch.float32,
        device: str = "cpu",
    ):
        self.lattice = lattice
        self.dtype = dtype
        self.device = device
        self.bases = [dct_basis(n, k, torch.float64, device) for n, k in zip(lattice.shape, num_basis)]
        shape = tuple(b.shape[0] for b in self.bases)
        self.coefficients = torch.zeros(shape, dtype=torch.float64, device=device)

        # Bending energy of each basis function, normalised to a maximum of 1
        vx = lattice.voxel_size
        freq = [
            (np.pi * np.arange(k) / (n * v)) ** 2
            for k, n, v in zip(shape, lattice.shape, vx)
        ]
        energy = freq[0][:, None, None] + freq[1][None, :, None] + freq[2][None, None, :]
        energy = energy / max(float(energy.max()), 1e-30)
        prior = reg * energy**2
        self.precision = torch.as_tensor(prior, dtype=torch.float64, device=device)
        self.free = torch.ones(shape, dtype=torch.bool, device=device)
        self.free[0, 0, 0] = False
        self._field = None

    def log_field(self) -> torch.Tensor:
        bx, by, bz = self.bases
        return torch.einsum("abc,ax,by,cz->xyz", self.coefficients, bx, by, bz)

    def field(self) -> torch.Tensor:
        """b = exp(log field), cached until the coefficients change."""
        if self._field is None:
            self._field = torch.exp(self.log_field()).to(self.dtype)
        return self._field

    def set_coefficients(self, beta: torch.Tensor) -> None:
        self.coefficients = torch.where(self.free, beta, torch.zeros_like(beta))
        self._field = None

    def log_prior(self) -> float:
        """ll3 = -(1/2) β^T P β."""
        return -0.5 * float(torch.sum(self.precision * self.coefficients**2))

    def project(self, s: torch.Tensor) -> torch.Tensor:
        """Σ_voxels φ_abc s, shape of the coefficients."""
        bx, by, bz = self.bases
        return torch.einsum("xyz,ax,by,cz->abc", s.double(), bx, by, bz)

    def curvature(self, s: torch.Tensor) -> torch.Tensor:
        """Σ_voxels φ_k φ_l s as a (K, K) matrix."""
        bx, by, bz = self.bases
        t = torch.einsum("ax,Ax,xyz->aAyz", bx, bx, s.double())
        t = torch.einsum("by,By,aAyz->aAbBz", by, by, t)
        t = torch.einsum("cz,Cz,aAbBz->aAbBcC", bz, bz, t)
        ka, kb, kc = self.coefficients.shape
        k = ka * kb * kc
        return t.permute(0, 2, 4, 1, 3, 5).reshape(k, k)


def link_groups(num_channels: int, links: Optional[Sequence[Sequence[int]]]) -> List[List[int]]:
    """Partition channel indices into bias-sharing groups."""
    groups = [] if links is None else [sorted(set(int(c) for c in g)) for g in links]
    seen = set()
    for g in groups:
        for c in g:
            if c < 0 or c >= num_channels:
                raise ValueError(f"bias_links refers to channel {c}, but there are {num_channels}")
            if c in seen:
                raise ValueError(f"Channel {c} appears in more than one bias link group")
            seen.add(c)
    groups.extend([c] for c in range(num_channels) if c not in seen)
    return groups


def _channel_terms(channel: Channel) -> Tuple[torch.Tensor, torch.Tensor, float]:
    """Per-voxel gradient and curvature weights of -ll1 wrt the log field."""
    y = channel.image()
    b = channel.bias_field()
    yb = b * y
    preds = channel.predict(y)
    residuals = []
    curv = []
    ll1 = 0.0
    ones = torch.ones_like(y)
    for obs, pred, ab in zip(channel.observations, preds, channel.predict(ones)):
        x = obs.data(channel.dtype, channel.device)
        msk = obs.mask(channel.device)
        r = torch.where(msk, pred - x, torch.zeros_like(pred))
        ll1 -= 0.5 * obs.tau * float(torch.sum(r.double() ** 2))
        residuals.append(obs.tau * r)
        curv.append(obs.tau * msk.to(channel.dtype) * ab)
    # d(-ll1)/dlog b = (b ⊙ y) ⊙ Σ At(τ r)
    grad = yb * sum(obs.adjoint(r) for obs, r in zip(channel.observations, residuals))
    # h ⊙ b² ⊙ y², with h b = Σ At(τ M A b)
    hess = yb * y * sum(obs.adjoint(c) for obs, c in zip(channel.observations, curv))
    return grad, hess, ll1


def _energy(channels: List[Channel], field: BiasField) -> float:
    return -sum(ch.log_likelihood() for ch in channels) - field.log_prior()


def update_bias(
    channels: List[Channel],
    links: Optional[Sequence[Sequence[int]]] = None,
    num_steps: int = 1,
    max_halvings: int = 8,
) -> float:
    """Gauss-Newton update of the bias fields.

    Args:
        channels: All channels, each with a ``bias`` attribute; channels of
            one link group must share the same :class:`BiasField`.
        links: Groups of channel indices sharing a field.
        num_steps: Gauss-Newton iterations.
        max_halvings: Line-search halvings.

    Returns:
        ll3, the summed log-prior of all distinct fields.
    """
    for group in link_groups(len(channels), links):
        members = [channels[c] for c in group]
        field = members[0].bias
        free = field.free.reshape(-1)
        for _ in range(num_steps):
            grad = torch.zeros_like(field.coefficients)
            curv = None
            for ch in members:
                g, h, _ = _channel_terms(ch)
                grad = grad + field.project(g)
                c = field.curvature(h)
                curv = c if curv is None else curv + c
            beta = field.coefficients
            grad = (grad + field.precision * beta).reshape(-1)[free]
            H = curv[free][:, free] + torch.diag(field.precision.reshape(-1)[free])
            H = H + 1e-8 * float(torch.max(torch.diagonal(H))) * torch.eye(H.shape[0], dtype=H.dtype)
            delta = torch.zeros_like(beta).reshape(-1)
            delta[free] = torch.linalg.solve(H, grad)
            delta = delta.reshape(beta.shape)

            energy = _energy(members, field)
            step = 1.0
            for _ in range(max_halvings):
                field.set_coefficients(beta - step * delta)
                if _energy(members, field) < energy:
                    break
                step *= 0.5
            else:
                field.set_coefficients(beta)
                break

    fields = {id(ch.bias): ch.bias for ch in channels}
    return sum(f.log_prior() for f in fields.values())


def bias_log_prior(channels: List[Channel]) -> float:
    """ll3 of the current fields (0 without bias estimation)."""
    fields = {id(ch.bias): ch.bias for ch in channels if ch.bias is not None}
    return sum(f.log_prior() for f in fields.values())
