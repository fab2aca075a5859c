"""Synthetic volumes for reconstruction experiments.

This module provides piecewise-constant and smooth phantoms, additive noise
and simulated thick-sliced acquisitions for algorithm development and
comparison.

Example:
    >>> from toy import block_phantom, simulate_stacks
    >>> from mtvlib import MTVConfig, solve_mtv
    >>>
    >>> # Three orthogonal 3 mm stacks of a 1 mm phantom
    >>> truth = block_phantom((24, 24, 24))
    >>> latent, stacks = simulate_stacks(truth, ratio=3, sigma=0.01)
    >>>
    >>> config = MTVConfig(method="superres", noise_precision=(1e4,), reg_weight=(1.0,))
    >>> result = solve_mtv([stacks], config, lattice=latent)
"""

from .phantoms import (
    block_phantom,
    smooth_phantom,
    shared_square,
    add_gaussian_noise,
    stack_affine,
    simulate_stacks,
    naive_upsample,
)

__all__ = [
    "block_phantom",
    "smooth_phantom",
    "shared_square",
    "add_gaussian_noise",
    "stack_affine",
    "simulate_stacks",
    "naive_upsample",
]
