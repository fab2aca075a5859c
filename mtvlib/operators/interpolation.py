"""Trilinear resampling with exact adjoint.

``grid_pull`` samples an image at arbitrary voxel coordinates,
``grid_push`` splats values at those coordinates back onto the grid, and
``grid_grad`` returns the spatial gradient of the trilinear interpolant.
All three enumerate the same 8 corner indices and weights, so push is the
algebraic transpose of pull:

    <pull(f, c), g> == <f, push(g, c)>

Coordinates are in voxel units of the sampled image (0-based), shape (N, 3).

Boundary handling:
    - "zero": samples outside the grid contribute nothing.
    - "replicate": corner indices are clamped to the grid.
"""

from typing import Iterator, Tuple

import torch

__all__ = [
    "INTERP_BOUNDS",
    "grid_pull",
    "grid_push",
    "grid_grad",
]

INTERP_BOUNDS = ("zero", "replicate")


def _corners(
    coords: torch.Tensor,
    shape: Tuple[int, int, int],
    bound: str,
) -> Iterator[Tuple[torch.Tensor, torch.Tensor, torch.Tensor, Tuple[int, int, int]]]:
    """Yield (flat_index, weight, per-axis factors, offset) for each corner."""
    if bound not in INTERP_BOUNDS:
        raise ValueError(f"bound must be one of {INTERP_BOUNDS}, got '{bound}'")
    base = torch.floor(coords)
    frac = coords - base
    base = base.long()
    nx, ny, nz = shape

    for ox in (0, 1):
        for oy in (0, 1):
            for oz in (0, 1):
                offset = (ox, oy, oz)
                idx = []
                factors = []
                valid = None
                for d, (o, n) in enumerate(zip(offset, shape)):
                    i = base[:, d] + o
                    f = frac[:, d] if o else 1.0 - frac[:, d]
                    if bound == "zero":
                        inside = (i >= 0) & (i < n)
                        valid = inside if valid is None else valid & inside
                    i = i.clamp(0, n - 1)
                    idx.append(i)
                    factors.append(f)
                flat = (idx[0] * ny + idx[1]) * nz + idx[2]
                if valid is not None:
                    factors = [f * valid.to(f.dtype) for f in factors]
                weight = factors[0] * factors[1] * factors[2]
                yield flat, weight, factors, offset


def grid_pull(
    image: torch.Tensor,
    coords: torch.Tensor,
    bound: str = "replicate",
) -> torch.Tensor:
    """Sample ``image`` at ``coords`` with trilinear interpolation.

    Args:
        image: Tensor of shape (nx, ny, nz).
        coords: Voxel coordinates, shape (N, 3), same dtype as ``image``.
        bound: "zero" or "replicate".

    Returns:
        Samples of shape (N,).
    """
    flat_image = image.reshape(-1)
    out = torch.zeros(coords.shape[0], dtype=image.dtype, device=image.device)
    for flat, weight, _, _ in _corners(coords, tuple(image.shape), bound):
        out = out + weight * flat_image[flat]
    return out


def grid_push(
    values: torch.Tensor,
    coords: torch.Tensor,
    shape: Tuple[int, int, int],
    bound: str = "replicate",
) -> torch.Tensor:
    """Adjoint of :func:`grid_pull`: splat ``values`` onto a grid.

    Args:
        values: Tensor of shape (N,).
        coords: Voxel coordinates, shape (N, 3).
        shape: Output grid shape.
        bound: "zero" or "replicate" (must match the pull).

    Returns:
        Tensor of shape ``shape``.
    """
    shape = tuple(int(s) for s in shape)
    out = torch.zeros(shape[0] * shape[1] * shape[2], dtype=values.dtype, device=values.device)
    for flat, weight, _, _ in _corners(coords, shape, bound):
        out.index_add_(0, flat, weight * values)
    return out.reshape(shape)


def grid_grad(
    image: torch.Tensor,
    coords: torch.Tensor,
    bound: str = "replicate",
) -> torch.Tensor:
    """Gradient of the trilinear interpolant with respect to ``coords``.

    Args:
        image: Tensor of shape (nx, ny, nz).
        coords: Voxel coordinates, shape (N, 3).
        bound: "zero" or "replicate".

    Returns:
        Tensor of shape (N, 3): derivative along each voxel axis.
    """
    flat_image = image.reshape(-1)
    grad = torch.zeros(coords.shape[0], 3, dtype=image.dtype, device=image.device)
    for flat, _, factors, offset in _corners(coords, tuple(image.shape), bound):
        v = flat_image[flat]
        for d in range(3):
            sign = 1.0 if offset[d] else -1.0
            # d/dc of the axis-d factor is +-1; out-of-grid masking is
            # already carried by the other two factors
            others = [factors[e] for e in range(3) if e != d]
            grad[:, d] = grad[:, d] + sign * others[0] * others[1] * v
    return grad
