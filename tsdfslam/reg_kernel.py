"""Point-to-TSDF registration: Gauss-Newton alignment of a scan with the local map.

Scan points are integer millimetres in the scanner frame.  The map is
sampled at the cell reached by integer division of a transformed point by
``map_resolution``.  Transforms inside one iteration are fixed-point, with
``matrix_resolution`` standing for 1.0.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import numpy as np

from .linalg import lu_decomposition, lu_solve, matrix_mul, transform_point
from .local_map_hw import GridConstants, LocalMapHW

logger = logging.getLogger(__name__)

Vec3 = tuple[int, int, int]


@dataclass(frozen=True, eq=False)
class RegistrationResult:
    """Final pose of a registration and the number of iterations it ran."""

    transform: np.ndarray
    iterations: int


def _tdiv(a: int, b: int) -> int:
    """Integer division truncating towards zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


def _vec(p) -> Vec3:
    x, y, z = (int(c) for c in p)
    return (x, y, z)


def _transform_4x4(transform, dtype) -> np.ndarray:
    matrix = np.array(transform, dtype=dtype)
    if matrix.shape != (4, 4):
        raise ValueError(f"expected a 4x4 transform, got shape {matrix.shape}")
    return matrix


def xi_to_transform(xi, center) -> np.ndarray:
    """Turn a twist ``xi`` into a 4x4 transform rotating about ``center``.

    The first three entries of ``xi`` are the rotation axis scaled by the
    angle, the last three the translation added after the rotation.
    """
    twist = np.asarray(xi, dtype=np.float32)
    if twist.shape != (6,):
        raise ValueError(f"expected six twist components, got shape {twist.shape}")
    origin = np.array(_vec(center), dtype=np.float32)

    transform = np.eye(4, dtype=np.float32)
    omega = twist[:3]
    theta = np.float32(np.sqrt(omega @ omega))
    if theta != 0:
        axis = omega / theta
        skew = np.array(
            [
                [0.0, -axis[2], axis[1]],
                [axis[2], 0.0, -axis[0]],
                [-axis[1], axis[0], 0.0],
            ],
            dtype=np.float32,
        )
        transform[:3, :3] += np.sin(theta) * skew + (np.float32(1) - np.cos(theta)) * (skew @ skew)

    # rotate around the centre: move it to the origin, rotate, move it back
    shift = np.array(transform_point(transform, -origin), dtype=np.float32)
    transform[:3, 3] = shift + origin + twist[3:]
    return transform


def registration_step(
    points: Iterable,
    map_data: Sequence,
    local_map: LocalMapHW,
    transform,
    center,
    constants: GridConstants,
) -> tuple[np.ndarray, np.ndarray, int, int]:
    """Accumulate the normal equations for one registration iteration.

    ``transform`` is the fixed-point 4x4 pose.  Returns ``(h, g, error,
    count)``: the 6x6 matrix and 6-vector of the Gauss-Newton system, the
    summed absolute TSDF value and the number of points that hit a cell
    with non-zero weight.
    """
    matrix = _transform_4x4(transform, np.int64)
    mres = constants.matrix_resolution
    res = constants.map_resolution
    cx, cy, cz = _vec(center)

    h = np.zeros((6, 6), dtype=np.int64)
    g = np.zeros(6, dtype=np.int64)
    error = 0
    count = 0

    for raw in points:
        px, py, pz = (_tdiv(c, mres) for c in transform_point(matrix, _vec(raw)))
        cell = (_tdiv(px, res), _tdiv(py, res), _tdiv(pz, res))

        current = local_map.get(map_data, *cell)
        if current.weight == 0:
            continue

        gradient = [0, 0, 0]
        for axis in range(3):
            lower = list(cell)
            upper = list(cell)
            lower[axis] -= 1
            upper[axis] += 1
            last = local_map.get(map_data, *lower)
            nxt = local_map.get(map_data, *upper)
            if last.weight != 0 and nxt.weight != 0 and (nxt.value > 0) == (last.value > 0):
                gradient[axis] = _tdiv(nxt.value - last.value, 2)

        rx, ry, rz = px - cx, py - cy, pz - cz
        gx, gy, gz = gradient
        jacobi = np.array(
            [ry * gz - rz * gy, rz * gx - rx * gz, rx * gy - ry * gx, gx, gy, gz],
            dtype=np.int64,
        )
        h += np.outer(jacobi, jacobi)
        g += jacobi * current.value
        error += abs(current.value)
        count += 1

    return h, g, error, count


def register(
    points: Iterable,
    map_data: Sequence,
    local_map: LocalMapHW,
    transform,
    max_iterations: int,
    it_weight_gradient: float,
    epsilon: float,
    constants: GridConstants,
) -> RegistrationResult:
    """Align a scan with the map, starting from the pose ``transform``.

    Each iteration solves the damped normal equations, the damping growing
    by ``it_weight_gradient`` per iteration, and composes the resulting
    step with the pose.  Iteration stops early once the mean error differs
    by at most ``epsilon`` from the errors two and four iterations back.

    Raises ``numpy.linalg.LinAlgError`` when the system cannot be solved,
    for example because no point hits the map.
    """
    total = _transform_4x4(transform, np.float32)
    scan = [_vec(p) for p in points]
    mres = constants.matrix_resolution

    alpha = np.float32(0)
    previous_errors = [0.0, 0.0, 0.0, 0.0]
    iterations = max(int(max_iterations), 0)

    for i in range(int(max_iterations)):
        int_transform = np.trunc(total * np.float32(mres)).astype(np.int64)
        center = _vec(total[:3, 3])

        h, g, error, count = registration_step(scan, map_data, local_map, int_transform, center, constants)

        h_float = h.astype(np.float32)
        h_float[np.diag_indices(6)] += np.float32(alpha * count)
        g_float = (-g).astype(np.float32)

        xi = lu_solve(lu_decomposition(h_float), g_float)
        if not np.all(np.isfinite(xi)):
            raise np.linalg.LinAlgError(
                f"registration system is singular in iteration {i + 1} ({count} points matched)"
            )

        total = matrix_mul(xi_to_transform(xi, center), total).astype(np.float32)
        alpha = np.float32(alpha + it_weight_gradient)

        err = error / count if count else math.nan
        d1 = err - previous_errors[2]
        d2 = err - previous_errors[0]
        logger.debug("registration iteration %d / %d: error %s", i + 1, max_iterations, err)
        if abs(d1) <= epsilon and abs(d2) <= epsilon:
            iterations = i
            break
        previous_errors = previous_errors[1:] + [err]

    return RegistrationResult(total, iterations)