import math
from collections import deque

import numpy as np
import pytest

from tsdfslam.global_map import GlobalMap
from tsdfslam.imu_accumulator import ImuMessage
from tsdfslam.local_map import LocalMap
from tsdfslam.local_map_hw import GridConstants
from tsdfslam.registration import Registration, transform_point_cloud

C = GridConstants(map_resolution=64, weight_resolution=64)


@pytest.fixture
def local_map(tmp_path):
    gm = GlobalMap(tmp_path / "map.db", 0, 0)
    yield LocalMap(5, 5, 5, gm)
    gm.close()


def _rot_z(angle):
    m = np.eye(4, dtype=np.float32)
    m[0, 0] = m[1, 1] = math.cos(angle)
    m[0, 1] = -math.sin(angle)
    m[1, 0] = math.sin(angle)
    return m


def test_identity_keeps_points():
    points = [(1, -2, 3), (100, 200, -300)]
    assert transform_point_cloud(points, np.eye(4)).tolist() == [list(p) for p in points]


def test_half_rounds_away_from_zero():
    m = np.eye(4)
    m[:3, 3] = (0.5, -0.5, 0.0)
    assert transform_point_cloud([(0, 0, 0)], m).tolist() == [[1, -1, 0]]


def test_quarter_turn_rotates_points():
    assert transform_point_cloud([(1000, 0, 0)], _rot_z(math.pi / 2)).tolist() == [[0, 1000, 0]]


def test_empty_cloud():
    assert transform_point_cloud([], np.eye(4)).shape == (0, 3)


def test_bad_shapes_raise():
    with pytest.raises(ValueError):
        transform_point_cloud([(1, 2)], np.eye(4))
    with pytest.raises(ValueError):
        transform_point_cloud([(1, 2, 3)], np.eye(3))


def test_constants_required():
    with pytest.raises(ValueError):
        Registration(deque())


def test_without_iterations_pose_is_applied(local_map):
    reg = Registration(deque(), max_iterations=0, constants=C)
    pose = np.eye(4)
    pose[:3, 3] = (100, 0, 0)
    new_pose, cloud = reg.register_cloud(local_map, [(1000, 0, 0)], 1.0, pose)
    assert np.allclose(new_pose, pose)
    assert cloud.tolist() == [[1100, 0, 0]]


def test_imu_rotation_seeds_pose(local_map):
    buffer = deque(
        [ImuMessage(0.0, (0.0, 0.0, math.pi / 2)), ImuMessage(1.0, (0.0, 0.0, math.pi / 2))]
    )
    reg = Registration(buffer, max_iterations=0, constants=C)
    new_pose, cloud = reg.register_cloud(local_map, [(1000, 0, 0)], 1.0, np.eye(4))
    assert cloud.tolist() == [[0, 1000, 0]]
    assert np.allclose(new_pose @ np.array([1.0, 0.0, 0.0, 1.0]), [0.0, 1.0, 0.0, 1.0], atol=1e-6)
    assert len(buffer) == 0


def test_empty_map_cannot_be_registered(local_map):
    reg = Registration(deque(), max_iterations=5, constants=C)
    with pytest.raises(np.linalg.LinAlgError):
        reg.register_cloud(local_map, [(100, 0, 0), (0, 100, 0)], 1.0, np.eye(4))