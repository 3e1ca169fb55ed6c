"""Small dense linear-algebra helpers: LU factorisation, solving and transforms."""

from __future__ import annotations

import numpy as np


def _float_matrix(a) -> np.ndarray:
    arr = np.array(a)
    if not np.issubdtype(arr.dtype, np.floating):
        arr = arr.astype(np.float64)
    return arr


def _square(a) -> np.ndarray:
    arr = _float_matrix(a)
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
        raise ValueError(f"expected a square matrix, got shape {arr.shape}")
    return arr


def lu_decomposition(a) -> np.ndarray:
    """Factor ``a`` into L and U without pivoting.

    Returns one matrix holding U on and above the diagonal and the
    multipliers of the unit lower-triangular L below it.  The input is
    left untouched.
    """
    lu = _square(a)
    n = lu.shape[0]
    with np.errstate(divide="ignore", invalid="ignore"):
        for i in range(n - 1):
            lu[i + 1:, i] /= lu[i, i]
            lu[i + 1:, i + 1:] -= np.outer(lu[i + 1:, i], lu[i, i + 1:])
    return lu


def lu_solve(a, b) -> np.ndarray:
    """Solve ``A x = b`` given the combined factor from :func:`lu_decomposition`."""
    lu = _square(a)
    x = _float_matrix(b).astype(np.result_type(lu.dtype, np.float32))
    n = lu.shape[0]
    if x.shape != (n,):
        raise ValueError(f"right-hand side must have shape ({n},), got {x.shape}")
    with np.errstate(divide="ignore", invalid="ignore"):
        for i in range(n):
            x[i] -= lu[i, :i] @ x[:i]
        for i in reversed(range(n)):
            x[i] -= lu[i, i + 1:] @ x[i + 1:]
            x[i] /= lu[i, i]
    return x


def lu_decompose_lr(a) -> tuple[np.ndarray, np.ndarray]:
    """Factor ``a`` into a unit lower-triangular L and an upper-triangular R."""
    r = _square(a)
    n = r.shape[0]
    lower = np.eye(n, dtype=r.dtype)
    with np.errstate(divide="ignore", invalid="ignore"):
        for i in range(n - 1):
            lower[i + 1:, i] = r[i + 1:, i] / r[i, i]
            r[i + 1:, i:] -= np.outer(lower[i + 1:, i], r[i, i:])
    return lower, r


def matrix_mul(a, b) -> np.ndarray:
    """Multiply two matrices, checking that their shapes agree."""
    left = np.asarray(a)
    right = np.asarray(b)
    if left.ndim != 2 or right.ndim != 2 or left.shape[1] != right.shape[0]:
        raise ValueError(f"cannot multiply shapes {left.shape} and {right.shape}")
    return left @ right


def transform_point(mat, point) -> tuple:
    """Apply the rotation and translation of a 4x4 transform to a 3D point.

    Integer inputs give integer results, so this serves both the float
    and the fixed-point paths.
    """
    matrix = np.asarray(mat)
    vector = np.asarray(point)
    if matrix.ndim != 2 or matrix.shape[0] < 3 or matrix.shape[1] != 4:
        raise ValueError(f"expected a 4-column transform, got shape {matrix.shape}")
    if vector.shape != (3,):
        raise ValueError(f"expected a 3D point, got shape {vector.shape}")
    coords = vector.tolist()
    result = []
    for row in matrix[:3].tolist():
        acc = row[3]
        for factor, coord in zip(row[:3], coords):
            acc += factor * coord
        result.append(acc)
    return tuple(result)