"""Image quality against reference volumes."""

from typing import Sequence, Tuple

import numpy as np
import torch
from skimage.metrics import peak_signal_noise_ratio, structural_similarity

__all__ = ["psnr", "ssim", "compare_channels"]


def _as_numpy(x) -> np.ndarray:
    if torch.is_tensor(x):
        x = x.detach().cpu().double().numpy()
    return np.squeeze(np.asarray(x, dtype=np.float64))


def psnr(estimate, reference) -> float:
    """Peak signal-to-noise ratio (dB), data range taken from the reference."""
    ref = _as_numpy(reference)
    est = _as_numpy(estimate)
    data_range = float(ref.max() - ref.min()) or 1.0
    return float(peak_signal_noise_ratio(ref, est, data_range=data_range))


def ssim(estimate, reference) -> float:
    """Structural similarity, data range taken from the reference."""
    ref = _as_numpy(reference)
    est = _as_numpy(estimate)
    data_range = float(ref.max() - ref.min()) or 1.0
    win = min(7, *ref.shape)
    if win % 2 == 0:
        win -= 1
    return float(structural_similarity(ref, est, data_range=data_range, win_size=win))


def compare_channels(
    estimates: Sequence,
    references: Sequence,
) -> Tuple[float, float]:
    """Mean PSNR and SSIM over channels."""
    p = [psnr(e, r) for e, r in zip(estimates, references)]
    s = [ssim(e, r) for e, r in zip(estimates, references)]
    return float(np.mean(p)), float(np.mean(s))
