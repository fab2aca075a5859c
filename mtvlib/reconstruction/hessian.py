"""Diagonal approximation of the data-term curvature.

For a channel with forward model x_n ≈ A_n(b ⊙ y) the data term has Hessian

    K = Σ_n tau_n diag(b) A_n^T M_n A_n diag(b)

with M_n the observed-voxel mask. Every factor has non-negative entries,
so the diagonal matrix

    H = diag(K 1) = b ⊙ Σ_n tau_n A_n^T(M_n A_n(b))

majorises K (K ⪯ H). Using H in the image update therefore gives
monotone majorise-minimise steps; for identity operators it is exact.
H is floored to a small fraction of its maximum so that the preconditioned
system stays well-posed where no observation reaches.
"""

from typing import List

import torch

from ..utils.parallel import map_channels
from .channel import Channel

__all__ = ["approximate_hessian", "update_hessians"]

HESSIAN_FLOOR = 1e-6


def approximate_hessian(channel: Channel) -> torch.Tensor:
    """Compute the Hessian diagonal of one channel.

    Args:
        channel: Channel with current operators and bias field.

    Returns:
        Strictly positive tensor on the channel lattice.
    """
    ones = torch.ones(channel.lattice.shape, dtype=channel.dtype, device=channel.device)
    weighted = []
    for obs, pred in zip(channel.observations, channel.predict(ones)):
        msk = obs.mask(channel.device).to(channel.dtype)
        weighted.append(obs.tau * msk * pred)
    h = channel.backproject(weighted)
    h_max = float(h.max())
    floor = HESSIAN_FLOOR * h_max if h_max > 0 else 1.0
    return torch.clamp(h, min=floor)


def update_hessians(channels: List[Channel], workers: int = 0) -> None:
    """Recompute and store the Hessian diagonal of every channel."""
    hessians = map_channels(approximate_hessian, channels, workers)
    for channel, h in zip(channels, hessians):
        channel.hessian.assign(h)
