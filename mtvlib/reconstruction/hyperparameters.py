"""Noise precision and regularization weights from the data.

Noise:
    MRI: a two-class Gaussian mixture is fitted by EM to the finite,
    nonzero intensities of each observation. The class with the lower mean
    is background; its standard deviation is the noise level and the
    distance between class means is the foreground intensity.
    CT: air voxels ([-1023, -980) HU) give the noise level (inflated by
    1.5 to account for their truncated range) and soft tissue and bone
    ([-100, 3071] HU) the foreground intensity. When too few air voxels
    exist the mixture fit is used instead.

Regularization:
    MRI: lambda0 = scale / mu_fg  (scale 6 for both super-resolution and
    denoising by default); CT: a constant (0.06 by default). Both are then
    multiplied by the user ``reg_scale``.

ADMM penalty:
    rho = rho_scale * sqrt(mean(tau)) * mean(lambda)
which grows with both the data precision and the regularization weight.

All estimates are deterministic: the mixture is initialised from
quantiles and large volumes are subsampled with a fixed stride.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import torch

from ..core.volume import Volume
from .base import MTVConfig
from .channel import observation_mask

__all__ = [
    "NoiseEstimate",
    "Hyperparameters",
    "fit_gmm_1d",
    "estimate_noise",
    "estimate_hyperparameters",
    "admm_step_size",
]

MAX_SAMPLES = 1_000_000
CT_BACKGROUND = (-1023.0, -980.0)
CT_FOREGROUND = (-100.0, 3071.0)
CT_MIN_BACKGROUND = 100


@dataclass(frozen=True)
class NoiseEstimate:
    """Intensity statistics of one observation.

    Attributes:
        sd_bg: Noise standard deviation.
        mu_bg: Mean background intensity.
        mu_fg: Mean foreground intensity.
    """

    sd_bg: float
    mu_bg: float
    mu_fg: float

    @property
    def tau(self) -> float:
        return 1.0 / (self.sd_bg ** 2)

    @property
    def contrast(self) -> float:
        return abs(self.mu_fg - self.mu_bg)


@dataclass
class Hyperparameters:
    """Estimated model hyperparameters.

    Attributes:
        tau: Noise precision per channel and observation.
        lam0: Base regularization weight per channel.
        noise: Underlying noise statistics per channel and observation.
    """

    tau: List[List[float]]
    lam0: np.ndarray
    noise: List[List[NoiseEstimate]]


def fit_gmm_1d(
    values: np.ndarray,
    num_class: int = 2,
    max_iter: int = 200,
    tol: float = 1e-8,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Fit a 1D Gaussian mixture with EM.

    Args:
        values: Samples, shape (N,).
        num_class: Number of mixture components.
        max_iter: Maximum EM iterations.
        tol: Relative log-likelihood change for convergence.

    Returns:
        Tuple (means, standard deviations, weights), sorted by mean.
    """
    x = np.asarray(values, dtype=np.float64).reshape(-1)
    if x.size < num_class:
        raise ValueError(f"Need at least {num_class} samples, got {x.size}")
    spread = float(np.std(x))
    floor = max(spread * 1e-6, 1e-12)

    mu = np.quantile(x, (np.arange(num_class) + 0.5) / num_class)
    sd = np.full(num_class, max(spread / num_class, floor))
    wt = np.full(num_class, 1.0 / num_class)
    prev = -np.inf

    for _ in range(max_iter):
        # E-step (log domain)
        logp = (
            np.log(wt)[None, :]
            - np.log(sd)[None, :]
            - 0.5 * ((x[:, None] - mu[None, :]) / sd[None, :]) ** 2
        )
        lmax = logp.max(axis=1, keepdims=True)
        p = np.exp(logp - lmax)
        norm = p.sum(axis=1, keepdims=True)
        resp = p / norm
        ll = float(np.sum(np.log(norm) + lmax))

        # M-step
        nk = resp.sum(axis=0) + 1e-12
        wt = nk / x.size
        mu = (resp * x[:, None]).sum(axis=0) / nk
        sd = np.sqrt((resp * (x[:, None] - mu[None, :]) ** 2).sum(axis=0) / nk)
        sd = np.maximum(sd, floor)

        if abs(ll - prev) <= tol * abs(ll):
            break
        prev = ll

    order = np.argsort(mu)
    return mu[order], sd[order], wt[order]


def _samples(data: torch.Tensor) -> np.ndarray:
    x = data.detach().cpu().double()
    x = x[observation_mask(x)].numpy()
    if x.size > MAX_SAMPLES:
        x = x[:: int(np.ceil(x.size / MAX_SAMPLES))]
    return x


def estimate_noise(data: torch.Tensor, modality: str = "MRI") -> NoiseEstimate:
    """Noise and intensity statistics of one observation.

    Args:
        data: Observed intensities (any shape).
        modality: "MRI" or "CT".

    Returns:
        NoiseEstimate with a strictly positive ``sd_bg``.
    """
    x = _samples(data)
    if x.size < 2:
        raise ValueError("Cannot estimate noise: fewer than two finite, nonzero voxels")

    if modality == "CT":
        bg = x[(x >= CT_BACKGROUND[0]) & (x < CT_BACKGROUND[1])]
        fg = x[(x >= CT_FOREGROUND[0]) & (x <= CT_FOREGROUND[1])]
        if bg.size >= CT_MIN_BACKGROUND and fg.size > 0:
            sd = 1.5 * float(np.std(bg))
            if sd > 0:
                return NoiseEstimate(sd, float(np.mean(bg)), float(np.mean(fg)))

    mu, sd, _ = fit_gmm_1d(x, num_class=2)
    return NoiseEstimate(float(sd[0]), float(mu[0]), float(mu[1]))


def _lambda_rule(config: MTVConfig, contrast: float) -> float:
    if config.modality == "CT":
        lam = config.reg_superres_ct if config.method == "superres" else config.reg_denoise_ct
    else:
        scale = (
            config.reg_scale_superres_mri if config.method == "superres"
            else config.reg_scale_denoise_mri
        )
        lam = scale / max(contrast, 1e-12)
    return lam * config.reg_scale


def estimate_hyperparameters(
    channels: Sequence[Sequence[Volume]],
    config: MTVConfig,
) -> Hyperparameters:
    """Estimate tau and lambda0 for every channel.

    User overrides in ``config.noise_precision`` / ``config.reg_weight``
    replace the corresponding estimates.

    Args:
        channels: Observed volumes, one list per channel.
        config: Reconstruction options.

    Returns:
        Hyperparameters.
    """
    needs_estimate = config.noise_precision is None or config.reg_weight is None
    tau, lam0, noise = [], [], []
    for c, volumes in enumerate(channels):
        estimates = []
        if needs_estimate:
            estimates = [estimate_noise(v.data, config.modality) for v in volumes]
        noise.append(estimates)
        if config.noise_precision is not None:
            tau.append([float(config.noise_precision[c])] * len(volumes))
        else:
            tau.append([e.tau for e in estimates])
        if config.reg_weight is not None:
            lam0.append(float(config.reg_weight[c]))
        else:
            contrast = float(np.mean([e.contrast for e in estimates]))
            lam0.append(_lambda_rule(config, contrast))
    return Hyperparameters(tau=tau, lam0=np.asarray(lam0), noise=noise)


def admm_step_size(
    tau: Sequence[Sequence[float]],
    lam: Sequence[float],
    scale: float = 1.0,
) -> float:
    """Heuristic ADMM penalty balancing data precision and regularization."""
    all_tau = [t for group in tau for t in group]
    return float(scale * np.sqrt(np.mean(all_tau)) * np.mean(lam))
