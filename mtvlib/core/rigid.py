"""Rigid-body transforms parameterised on the Lie algebra se(3).

A rigid transform is stored as six parameters q = (tx, ty, tz, rx, ry, rz):
translations in mm followed by rotations in radians. The 4x4 matrix is the
matrix exponential of the weighted sum of the se(3) generators:

    R(q) = expm(Σ_i q_i B_i)

Derivatives dR/dq_i are exact, computed from the block-triangular identity

    expm([[A, E], [0, A]]) = [[expm(A), Dexpm(A)[E]], [0, expm(A)]]

so no finite differencing is involved in the Gauss-Newton updates.
"""

from typing import List, Tuple

import numpy as np
from scipy.linalg import expm

__all__ = [
    "NUM_RIGID_PARAMS",
    "rigid_basis",
    "rigid_matrix",
    "rigid_matrix_derivatives",
    "active_rigid_params",
]

NUM_RIGID_PARAMS = 6


def rigid_basis() -> np.ndarray:
    """Generators of se(3), shape (6, 4, 4)."""
    basis = np.zeros((NUM_RIGID_PARAMS, 4, 4))
    # Translations
    basis[0, 0, 3] = 1.0
    basis[1, 1, 3] = 1.0
    basis[2, 2, 3] = 1.0
    # Rotations about x, y, z
    basis[3, 1, 2], basis[3, 2, 1] = -1.0, 1.0
    basis[4, 0, 2], basis[4, 2, 0] = 1.0, -1.0
    basis[5, 0, 1], basis[5, 1, 0] = -1.0, 1.0
    return basis


def active_rigid_params(ndim: int) -> List[int]:
    """Indices of the parameters that move a lattice within its data planes.

    Single-slice data only supports in-plane motion (tx, ty, rz).
    """
    if ndim == 2:
        return [0, 1, 5]
    return list(range(NUM_RIGID_PARAMS))


def rigid_matrix(q: np.ndarray) -> np.ndarray:
    """4x4 rigid matrix for parameters q.

    Example:
        ```python
        R = rigid_matrix(np.array([1.0, 0, 0, 0, 0, 0]))
        print(R[:3, 3])  # [1. 0. 0.]
        ```
    """
    q = np.asarray(q, dtype=np.float64).reshape(NUM_RIGID_PARAMS)
    return expm(np.tensordot(q, rigid_basis(), axes=1))


def rigid_matrix_derivatives(q: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Rigid matrix and its derivatives with respect to each parameter.

    Returns:
        Tuple (R, dR) with R of shape (4, 4) and dR of shape (6, 4, 4).
    """
    q = np.asarray(q, dtype=np.float64).reshape(NUM_RIGID_PARAMS)
    basis = rigid_basis()
    A = np.tensordot(q, basis, axes=1)
    R = expm(A)
    dR = np.empty_like(basis)
    block = np.zeros((8, 8))
    block[:4, :4] = A
    block[4:, 4:] = A
    for i in range(NUM_RIGID_PARAMS):
        block[:4, 4:] = basis[i]
        dR[i] = expm(block)[:4, 4:]
    return R, dR
