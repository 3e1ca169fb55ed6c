"""Accumulation of IMU angular velocities into a rotation between point clouds.

Timestamps are seconds as floats on a common clock.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class ImuMessage:
    """Angular velocity in rad/s around x, y and z, stamped in seconds."""

    timestamp: float
    angular_velocity: tuple[float, float, float]


def _before(ts_1: float, ts_2: float) -> bool:
    """Whether ``ts_1`` is not after ``ts_2``, compared in whole milliseconds."""
    return int((ts_2 - ts_1) * 1000) >= 0


def _axis_rotation(angle: float, axis: int) -> np.ndarray:
    c, s = np.cos(angle), np.sin(angle)
    i, j = [k for k in range(3) if k != axis]
    rot = np.eye(3)
    rot[i, i] = c
    rot[j, j] = c
    rot[i, j] = -s
    rot[j, i] = s
    return rot


class ImuAccumulator:
    """Turns the IMU messages received before a point cloud into one transform."""

    def __init__(self, buffer: deque) -> None:
        self.buffer = buffer
        self._last_timestamp: float | None = None

    def acc_transform(self, pcl_timestamp: float) -> np.ndarray:
        """Consume messages up to ``pcl_timestamp`` and return their rotation as 4x4.

        The very first message ever seen only sets the reference time.
        """
        acc = np.eye(4, dtype=np.float32)
        while self.buffer and _before(self.buffer[0].timestamp, pcl_timestamp):
            msg = self.buffer.popleft()
            if self._last_timestamp is not None:
                acc = self._apply(acc, msg)
            self._last_timestamp = msg.timestamp
        return acc

    def _apply(self, acc: np.ndarray, msg: ImuMessage) -> np.ndarray:
        elapsed = abs(msg.timestamp - self._last_timestamp)
        ox, oy, oz = (float(w) * elapsed for w in msg.angular_velocity)
        rotation = _axis_rotation(ox, 0) @ _axis_rotation(oy, 1) @ _axis_rotation(oz, 2)
        result = acc.copy()
        result[:3, :3] = (rotation.astype(np.float32) @ acc[:3, :3]).astype(np.float32)
        return result