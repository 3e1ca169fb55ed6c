"""Registration of point clouds against the local map, seeded by the IMU."""

from __future__ import annotations

import logging
from collections import deque

import numpy as np

from .imu_accumulator import ImuAccumulator
from .local_map import LocalMap
from .local_map_hw import GridConstants
from .reg_kernel import register

logger = logging.getLogger(__name__)

_FILTER_WINDOW = 100


def _points_array(points) -> np.ndarray:
    pts = np.asarray(points)
    if pts.size == 0:
        pts = pts.reshape(0, 3)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError(f"expected points of shape (n, 3), got {pts.shape}")
    return pts


def _pose_matrix(pose) -> np.ndarray:
    matrix = np.array(pose, dtype=np.float32)
    if matrix.shape != (4, 4):
        raise ValueError(f"expected a 4x4 transform, got shape {matrix.shape}")
    return matrix


def transform_point_cloud(points, transform) -> np.ndarray:
    """Apply a 4x4 transform to integer points, rounding half away from zero."""
    matrix = _pose_matrix(transform)
    pts = _points_array(points)
    moved = pts.astype(np.float32) @ matrix[:3, :3].T + matrix[:3, 3]
    half = np.float32(0.5)
    rounded = np.where(moved < 0, moved - half, moved + half)
    return np.trunc(rounded).astype(np.int32)


class Registration:
    """Aligns point clouds with the local map, starting from the IMU estimate."""

    def __init__(
        self,
        imu_buffer: deque,
        max_iterations: int = 50,
        it_weight_gradient: float = 0.0,
        epsilon: float = 0.01,
        constants: GridConstants | None = None,
    ) -> None:
        if constants is None:
            raise ValueError("grid constants are required")
        self.max_iterations = int(max_iterations)
        self.it_weight_gradient = float(it_weight_gradient)
        self.epsilon = float(epsilon)
        self.constants = constants
        self.imu_accumulator = ImuAccumulator(imu_buffer)
        self._iterations: deque[int] = deque(maxlen=_FILTER_WINDOW)
        self._runs = 0

    def register_cloud(self, local_map: LocalMap, cloud, cloud_timestamp: float, pose):
        """Register ``cloud`` with the map and return ``(pose, transformed cloud)``.

        The IMU rotation since the last cloud is applied about the scanner
        before the registration refines the pose.
        """
        current = _pose_matrix(pose)
        imu_estimate = self.imu_accumulator.acc_transform(cloud_timestamp)
        current[:3, :3] = imu_estimate[:3, :3] @ current[:3, :3]
        current[:3, 3] += imu_estimate[:3, 3]

        points = _points_array(cloud)
        result = register(
            points,
            local_map.data,
            local_map.hardware_representation(),
            current,
            self.max_iterations,
            self.it_weight_gradient,
            self.epsilon,
            self.constants,
        )

        self._iterations.append(result.iterations)
        self._runs += 1
        if self._runs > _FILTER_WINDOW and self._runs % 20 == 0:
            mean = int(sum(self._iterations) / len(self._iterations))
            logger.info("Average Iterations: %d / %d", mean, self.max_iterations)

        return result.transform, transform_point_cloud(points, result.transform)