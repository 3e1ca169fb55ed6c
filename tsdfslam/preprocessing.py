"""Filters that thin out and smooth raw lidar point clouds before registration.

Points are integer coordinates in millimetres, given as an ``(n, 3)`` array
or anything convertible to one.  Every filter returns a new array and keeps
the integer dtype of its input.
"""

from __future__ import annotations

import logging
import math

import numpy as np

logger = logging.getLogger(__name__)

Vec3 = tuple[int, int, int]


def _points(points) -> np.ndarray:
    pts = np.asarray(points)
    if pts.size == 0:
        pts = pts.reshape(0, 3)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError(f"expected points of shape (n, 3), got {pts.shape}")
    return pts


def _out_dtype(pts: np.ndarray) -> np.dtype:
    return pts.dtype if np.issubdtype(pts.dtype, np.integer) else np.dtype(np.int32)


def _result(rows, dtype) -> np.ndarray:
    return np.array(list(rows), dtype=dtype).reshape(-1, 3)


def _tdiv(a: int, b: int) -> int:
    """Integer division truncating towards zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


def _squared_norm(p) -> int:
    return sum(int(c) * int(c) for c in p)


def scale_points(points, scale: float) -> np.ndarray:
    """Multiply every coordinate by ``scale``, truncating towards zero."""
    pts = _points(points)
    dtype = _out_dtype(pts)
    if scale == 1.0:
        return pts.astype(dtype, copy=True)
    scaled = pts.astype(np.float32) * np.float32(scale)
    return np.trunc(scaled).astype(dtype)


def median_from_array(points) -> int:
    """Index of the point whose distance to the origin is the median of all points."""
    pts = _points(points)
    if len(pts) == 0:
        raise ValueError("cannot take the median of no points")
    norms = [_squared_norm(p) for p in pts.tolist()]
    order = sorted(range(len(norms)), key=norms.__getitem__)
    return order[len(order) // 2]


class Preprocessor:
    """Voxel reduction and median filtering of lidar scans.

    ``map_bounds`` is the largest absolute coordinate per axis that a point
    may have to be kept; ``map_resolution`` is the voxel edge length.
    """

    def __init__(self, map_bounds, map_resolution: int) -> None:
        bounds = tuple(int(b) for b in map_bounds)
        if len(bounds) != 3:
            raise ValueError(f"map bounds need three components, got {len(bounds)}")
        resolution = int(map_resolution)
        if resolution <= 0:
            raise ValueError(f"map resolution must be positive, got {resolution}")
        self.map_bounds: Vec3 = (bounds[0], bounds[1], bounds[2])
        self.map_resolution = resolution

    def _voxel(self, p) -> Vec3:
        res = self.map_resolution
        return (p[0] // res, p[1] // res, p[2] // res)

    def _voxel_center(self, p) -> Vec3:
        res = self.map_resolution
        half = res // 2
        vx, vy, vz = self._voxel(p)
        return (vx * res + half, vy * res + half, vz * res + half)

    def _usable(self, p) -> bool:
        if p[0] == 0 and p[1] == 0 and p[2] == 0:
            return False
        return all(abs(c) <= b for c, b in zip(p, self.map_bounds))

    def _usable_points(self, pts: np.ndarray):
        return (p for p in pts.tolist() if self._usable(p))

    def reduction_filter_average(self, points) -> np.ndarray:
        """Replace the points of each voxel by their average.

        Zero points and points beyond the map bounds are dropped.  The
        average is truncated towards zero.
        """
        pts = _points(points)
        sums: dict[Vec3, list[int]] = {}
        for p in self._usable_points(pts):
            acc = sums.setdefault(self._voxel(p), [0, 0, 0, 0])
            acc[0] += p[0]
            acc[1] += p[1]
            acc[2] += p[2]
            acc[3] += 1
        return _result(
            ((_tdiv(sx, n), _tdiv(sy, n), _tdiv(sz, n)) for sx, sy, sz, n in sums.values()),
            _out_dtype(pts),
        )

    def reduction_filter_closest(self, points) -> np.ndarray:
        """Keep, for each voxel, the point closest to the voxel centre.

        Zero points and points beyond the map bounds are dropped; among
        equally close points the first one wins.
        """
        pts = _points(points)
        closest: dict[Vec3, tuple[list[int], int]] = {}
        default_distance = self.map_resolution * 2
        for p in self._usable_points(pts):
            center = self._voxel_center(p)
            distance = math.isqrt(_squared_norm(c - m for c, m in zip(p, center)))
            best = closest.get(center)
            best_distance = default_distance if best is None else best[1]
            if distance < best_distance:
                closest[center] = (p, distance)
        return _result((p for p, _ in closest.values()), _out_dtype(pts))

    def reduction_filter_voxel_center(self, points) -> np.ndarray:
        """Replace the points by the centres of the voxels they occupy, once each."""
        pts = _points(points)
        centers = dict.fromkeys(self._voxel_center(p) for p in self._usable_points(pts))
        return _result(centers, _out_dtype(pts))

    def reduction_filter_random_point(self, points, rng=None) -> np.ndarray:
        """Keep one randomly chosen point per voxel.

        Only zero points are dropped; the map bounds are not applied.
        ``rng`` is a :class:`numpy.random.Generator`.
        """
        pts = _points(points)
        if rng is None:
            rng = np.random.default_rng()
        shuffled = pts[rng.permutation(len(pts))]
        chosen: dict[Vec3, list[int]] = {}
        for p in shuffled.tolist():
            if p[0] == 0 and p[1] == 0 and p[2] == 0:
                continue
            chosen.setdefault(self._voxel(p), p)
        return _result(chosen.values(), _out_dtype(pts))

    def median_filter(self, points, rings: int, window_size: int) -> np.ndarray:
        """Replace each point by the median of its neighbours on the same ring.

        Points are stored ring-interleaved: point ``i`` lies on ring
        ``i % rings``.  The window wraps around the cloud.  An even window
        size leaves the cloud unchanged; points after the last complete
        group of rings become zero.
        """
        pts = _points(points)
        dtype = _out_dtype(pts)
        rings = int(rings)
        window_size = int(window_size)
        if rings <= 0:
            raise ValueError(f"number of rings must be positive, got {rings}")
        if window_size <= 0:
            raise ValueError(f"window size must be positive, got {window_size}")
        if window_size % 2 == 0:
            logger.warning("Median filter window must be % 2 == 1, but isn't. Skipping.")
            return pts.astype(dtype, copy=True)

        n = len(pts)
        result = np.zeros((n, 3), dtype=dtype)
        half = window_size // 2
        per_ring = n // rings
        for ring in range(rings):
            for point in range(per_ring):
                i = point * rings + ring
                first = i - half * rings
                window = [(first + j * rings + n) % n for j in range(window_size)]
                result[i] = pts[window[median_from_array(pts[window])]]
        return result