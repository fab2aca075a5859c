"""Gauss-Newton refinement of per-observation rigid parameters.

With the latent image fixed, each observation's rigid parameters q
minimise its data term

    E(q) = (tau/2) Σ_{observed} (A(q)(b ⊙ y) - x)²

The Jacobian J = dA(q)(b ⊙ y)/dq is computed analytically through the
trilinear interpolant (see :meth:`ProjectionOperator.jacobian_rigid`), giving

    g = tau J^T r,    H = tau J^T J,    Δq = (H + ε I)^{-1} g

followed by a backtracking line search that halves the step until E
decreases. Optionally the mean of q is removed over all observations, or
over the observations of each channel, so the reconstruction lattice does
not drift.
"""

from typing import List

import numpy as np
import torch

from ..core.rigid import active_rigid_params
from .channel import Channel, Observation

__all__ = ["update_rigid", "update_observation_rigid", "mean_correct"]


def _observation_energy(
    obs: Observation,
    yb: torch.Tensor,
    x: torch.Tensor,
    msk: torch.Tensor,
) -> float:
    r = torch.where(msk, obs.operator.forward(yb) - x, torch.zeros_like(x))
    return 0.5 * obs.tau * float(torch.sum(r.double() ** 2))


def update_observation_rigid(
    obs: Observation,
    yb: torch.Tensor,
    ndim: int,
    num_steps: int = 1,
    max_halvings: int = 12,
) -> float:
    """Refine q of one observation.

    Args:
        obs: Observation with a projection operator.
        yb: Latent image times bias field.
        ndim: Spatial dimensionality of the reconstruction lattice.
        num_steps: Gauss-Newton iterations.
        max_halvings: Maximum step halvings in the line search.

    Returns:
        Data energy after the update.
    """
    op = obs.operator
    params = active_rigid_params(ndim)
    x = obs.data(yb.dtype, str(yb.device))
    msk = obs.mask(str(yb.device))
    energy = _observation_energy(obs, yb, x, msk)

    for _ in range(num_steps):
        pred, jac = op.jacobian_rigid(yb, params)
        r = torch.where(msk, pred - x, torch.zeros_like(x)).double().reshape(-1)
        J = (jac.double() * msk[None].to(torch.float64)).reshape(len(params), -1)
        g = obs.tau * (J @ r)
        H = obs.tau * (J @ J.T)
        H = H + 1e-5 * float(torch.max(torch.diagonal(H))) * torch.eye(len(params), dtype=H.dtype)
        dq = torch.linalg.solve(H, g).cpu().numpy()

        q0 = op.q.copy()
        step = 1.0
        accepted = False
        for _ in range(max_halvings):
            q = q0.copy()
            q[params] -= step * dq
            op.q = q
            trial = _observation_energy(obs, yb, x, msk)
            if trial < energy:
                energy = trial
                accepted = True
                break
            step *= 0.5
        if not accepted:
            op.q = q0
            break
    return energy


def mean_correct(channels: List[Channel], scope: str) -> None:
    """Remove the mean of q globally or per channel.

    Groups with a single observation are left unchanged.
    """
    if scope == "none":
        return
    if scope == "global":
        groups = [[obs for ch in channels for obs in ch.observations]]
    else:
        groups = [ch.observations for ch in channels]
    for group in groups:
        group = [obs for obs in group if obs.operator is not None]
        if len(group) < 2:
            continue
        mean_q = np.mean([obs.operator.q for obs in group], axis=0)
        for obs in group:
            obs.operator.q = obs.operator.q - mean_q


def update_rigid(
    channels: List[Channel],
    num_steps: int = 1,
    max_halvings: int = 12,
    mean_correction: str = "global",
) -> float:
    """Rigid update of every projected observation of the given channels.

    Args:
        channels: Channels taking part in registration.
        num_steps: Gauss-Newton iterations per observation.
        max_halvings: Line-search halvings.
        mean_correction: "none", "channel" or "global".

    Returns:
        Total data log-likelihood after the update (before mean correction).
    """
    ll = 0.0
    for ch in channels:
        b = ch.bias_field()
        y = ch.image()
        yb = y if b is None else b * y
        for obs in ch.observations:
            if obs.operator is None:
                continue
            ll -= update_observation_rigid(obs, yb, ch.lattice.ndim, num_steps, max_halvings)
    mean_correct(channels, mean_correction)
    return ll
