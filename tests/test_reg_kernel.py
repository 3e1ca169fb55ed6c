import math

import numpy as np
import pytest

from tsdfslam.linalg import lu_decomposition, lu_solve, matrix_mul, transform_point
from tsdfslam.local_map import CELL_DTYPE
from tsdfslam.local_map_hw import GridConstants, LocalMapHW
from tsdfslam.reg_kernel import (
    RegistrationResult,
    register,
    registration_step,
    xi_to_transform,
)

CONSTANTS = GridConstants(map_resolution=10, weight_resolution=1)
HALF = 20
SIZE = 2 * HALF + 1
WALL = 150
SHIFT = 20


@pytest.fixture
def box_map():
    local_map = LocalMapHW(SIZE, SIZE, SIZE, 0, 0, 0, HALF, HALF, HALF)
    coords = np.arange(-HALF, HALF + 1)
    gx, gy, gz = np.meshgrid(coords, coords, coords, indexing="ij")
    cheb = np.maximum(np.maximum(np.abs(gx), np.abs(gy)), np.abs(gz))
    data = np.zeros(SIZE ** 3, dtype=CELL_DTYPE)
    data["value"] = (WALL - cheb * CONSTANTS.map_resolution).ravel()
    data["weight"] = 1
    return local_map, data


@pytest.fixture
def wall_points():
    grid = (-80, -40, 0, 40, 80)
    points = []
    for axis in range(3):
        for side in (-WALL, WALL):
            for u in grid:
                for v in grid:
                    p = [u, v]
                    p.insert(axis, side)
                    points.append(tuple(c + SHIFT for c in p))
    return points


def identity_fixed():
    return np.eye(4, dtype=np.int64) * CONSTANTS.matrix_resolution


def test_zero_twist_is_identity():
    result = xi_to_transform([0, 0, 0, 0, 0, 0], (3, -4, 5))
    assert np.allclose(result, np.eye(4))


def test_pure_translation_twist():
    result = xi_to_transform([0, 0, 0, 1, 2, 3], (5, 6, 7))
    assert np.allclose(result[:3, :3], np.eye(3))
    assert np.allclose(result[:3, 3], [1, 2, 3])
    assert np.allclose(result[3], [0, 0, 0, 1])


def test_quarter_turn_about_z():
    result = xi_to_transform([0, 0, math.pi / 2, 0, 0, 0], (0, 0, 0))
    expected = np.array([[0, -1, 0], [1, 0, 0], [0, 0, 1]], dtype=float)
    assert np.allclose(result[:3, :3], expected, atol=1e-6)
    assert np.allclose(result[:3, 3], 0, atol=1e-6)


@pytest.mark.parametrize(
    "xi, center",
    [
        ([0.1, -0.2, 0.3, 4.0, 5.0, -6.0], (100, -50, 20)),
        ([0.01, 0.0, -0.05, 0.0, 1.5, 0.0], (-30, 0, 70)),
    ],
)
def test_rotation_about_center(xi, center):
    result = xi_to_transform(xi, center)
    rotation = result[:3, :3].astype(float)
    assert np.allclose(rotation @ rotation.T, np.eye(3), atol=1e-5)
    assert np.linalg.det(rotation) == pytest.approx(1.0, abs=1e-5)
    moved = transform_point(result, np.array(center, dtype=np.float32))
    assert np.allclose(moved, np.array(center) + np.array(xi[3:]), atol=1e-3)


def test_twist_shape_is_checked():
    with pytest.raises(ValueError):
        xi_to_transform([0, 0, 0], (0, 0, 0))


def test_registration_step_sums(box_map, wall_points):
    local_map, data = box_map
    h, g, error, count = registration_step(
        wall_points, data, local_map, identity_fixed(), (0, 0, 0), CONSTANTS
    )
    assert count == len(wall_points)
    assert error == SHIFT * len(wall_points)
    assert np.array_equal(h, h.T)
    assert np.linalg.matrix_rank(h.astype(float)) == 6
    eigen = np.linalg.eigvalsh(h.astype(float))
    assert eigen.min() >= -1e-6 * eigen.max()


def test_registration_step_misses_map(box_map, wall_points):
    local_map, data = box_map
    far = identity_fixed()
    far[0, 3] = 10000 * CONSTANTS.matrix_resolution
    h, g, error, count = registration_step(wall_points, data, local_map, far, (10000, 0, 0), CONSTANTS)
    assert count == 0
    assert error == 0
    assert not h.any()
    assert not g.any()


def test_register_without_iterations_keeps_pose(box_map, wall_points):
    local_map, data = box_map
    pose = np.eye(4)
    pose[:3, 3] = (1.0, 2.0, 3.0)
    result = register(wall_points, data, local_map, pose, 0, 0.0, 0.01, CONSTANTS)
    assert isinstance(result, RegistrationResult)
    assert result.iterations == 0
    assert np.allclose(result.transform, pose)


def test_register_one_iteration_matches_solved_step(box_map, wall_points):
    local_map, data = box_map
    h, g, _, _ = registration_step(wall_points, data, local_map, identity_fixed(), (0, 0, 0), CONSTANTS)
    xi = lu_solve(lu_decomposition(h.astype(np.float32)), (-g).astype(np.float32))
    expected = matrix_mul(xi_to_transform(xi, (0, 0, 0)), np.eye(4, dtype=np.float32))

    result = register(wall_points, data, local_map, np.eye(4), 1, 0.0, 0.01, CONSTANTS)
    assert result.iterations == 1
    assert np.allclose(result.transform, expected, atol=1e-4)
    assert np.allclose(result.transform[3], [0, 0, 0, 1])
    rotation = result.transform[:3, :3].astype(float)
    assert np.allclose(rotation @ rotation.T, np.eye(3), atol=1e-4)


def test_register_fails_when_nothing_matches(box_map):
    local_map, data = box_map
    points = [(5000, 0, 0), (0, 5000, 0)]
    with pytest.raises(np.linalg.LinAlgError):
        register(points, data, local_map, np.eye(4), 5, 0.0, 0.01, CONSTANTS)


def test_register_checks_transform_shape(box_map, wall_points):
    local_map, data = box_map
    with pytest.raises(ValueError):
        register(wall_points, data, local_map, np.eye(3), 1, 0.0, 0.01, CONSTANTS)