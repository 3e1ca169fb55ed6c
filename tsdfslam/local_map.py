"""Shiftable local TSDF map stored as a ring buffer in every dimension."""

from __future__ import annotations

import itertools
import logging

import numpy as np

from .global_map import GlobalMap, floor_divide
from .local_map_hw import LocalMapHW, TSDFValue

logger = logging.getLogger(__name__)

CELL_DTYPE = np.dtype([("value", "<i4"), ("weight", "<i4")])


def _vector(pos) -> tuple[int, int, int]:
    x, y, z = (int(c) for c in pos)
    return (x, y, z)


def _odd(size: int) -> int:
    size = int(size)
    if size < 0:
        raise ValueError(f"map size must not be negative, got {size}")
    return size if size % 2 == 1 else size + 1


class LocalMap:
    """Cuboid of TSDF cells around ``pos`` that shifts without copying its cells.

    Each axis is a ring: ``offset`` is the array index of the centre cell.
    Cells that leave the cuboid on a shift are stored in the global map and
    cells that enter it are loaded from there.
    """

    def __init__(self, size_x, size_y, size_z, global_map: GlobalMap) -> None:
        requested = (int(size_x), int(size_y), int(size_z))
        self.size: tuple[int, int, int] = _vector(_odd(s) for s in requested)
        if self.size != requested:
            logger.warning(
                "Changed LocalMap size from even %s to odd %s", requested, self.size
            )
        self.pos: tuple[int, int, int] = (0, 0, 0)
        self.offset: tuple[int, int, int] = _vector(s // 2 for s in self.size)
        self.global_map = global_map

        default = global_map.get_value((0, 0, 0))
        self.data = np.empty(int(np.prod(self.size)), dtype=CELL_DTYPE)
        self.data["value"] = default.value
        self.data["weight"] = default.weight

    def _indices(self, x, y, z):
        sx, sy, sz = self.size
        px, py, pz = self.pos
        ox, oy, oz = self.offset
        ix = (x - px + ox + sx) % sx
        iy = (y - py + oy + sy) % sy
        iz = (z - pz + oz + sz) % sz
        return ix * sy * sz + iy * sz + iz

    def in_bounds(self, pos) -> bool:
        """Whether a global cell lies inside the cuboid."""
        return all(
            abs(p - c) <= s // 2 for p, c, s in zip(_vector(pos), self.pos, self.size)
        )

    def _checked_index(self, pos) -> int:
        x, y, z = _vector(pos)
        if not self.in_bounds((x, y, z)):
            raise IndexError("Index out of bounds")
        return int(self._indices(x, y, z))

    def value(self, pos) -> TSDFValue:
        """Value and weight of a global cell; raises IndexError outside the map."""
        entry = self.data[self._checked_index(pos)]
        return TSDFValue(int(entry["value"]), int(entry["weight"]))

    def set_value(self, pos, value) -> None:
        """Store value and weight of a global cell; raises IndexError outside the map."""
        cell = TSDFValue(*value)
        self.data[self._checked_index(pos)] = (cell.value, cell.weight)

    def _transfer(self, corner_a, corner_b, save: bool) -> None:
        start = tuple(min(a, b) for a, b in zip(corner_a, corner_b))
        end = tuple(max(a, b) for a, b in zip(corner_a, corner_b))
        if not (self.in_bounds(start) and self.in_bounds(end)):
            raise ValueError(f"area {start}..{end} is not inside the local map")

        cs = self.global_map.CHUNK_SIZE
        chunk_start = floor_divide(start, cs)
        chunk_end = floor_divide(end, cs)
        chunk_ranges = (range(a, b + 1) for a, b in zip(chunk_start, chunk_end))

        for chunk_pos in itertools.product(*chunk_ranges):
            chunk = self.global_map.activate_chunk(chunk_pos)
            axes = []
            for axis, c in enumerate(chunk_pos):
                lo = max(start[axis], c * cs)
                hi = min(end[axis], c * cs + cs - 1)
                axes.append(np.arange(lo, hi + 1, dtype=np.int64))
            gx = axes[0][:, None, None]
            gy = axes[1][None, :, None]
            gz = axes[2][None, None, :]
            cx, cy, cz = chunk_pos
            chunk_idx = ((gx - cx * cs) * cs + (gy - cy * cs)) * cs + (gz - cz * cs)
            local_idx = self._indices(gx, gy, gz)
            chunk_idx, local_idx = (a.ravel() for a in np.broadcast_arrays(chunk_idx, local_idx))
            if save:
                chunk[chunk_idx] = self.data[local_idx]
            else:
                self.data[local_idx] = chunk[chunk_idx]

    def _save_area(self, bottom, top) -> None:
        self._transfer(bottom, top, save=True)

    def _load_area(self, bottom, top) -> None:
        self._transfer(bottom, top, save=False)

    def _extent(self) -> tuple[list[int], list[int]]:
        start = [p - s // 2 for p, s in zip(self.pos, self.size)]
        end = [p + s // 2 for p, s in zip(self.pos, self.size)]
        return start, end

    def shift(self, new_pos) -> None:
        """Move the centre to ``new_pos``, at most one map size away on each axis."""
        target = _vector(new_pos)
        diff = [t - p for t, p in zip(target, self.pos)]
        if any(abs(d) > s for d, s in zip(diff, self.size)):
            raise ValueError(
                f"cannot shift from {self.pos} to {target}: farther than the map size {self.size}"
            )

        for axis, d in enumerate(diff):
            if d == 0:
                continue
            start, end = self._extent()
            if d > 0:
                end[axis] = start[axis] + d - 1
            else:
                start[axis] = end[axis] + d + 1
            self._save_area(start, end)

            pos = list(self.pos)
            offset = list(self.offset)
            size = self.size[axis]
            pos[axis] += d
            offset[axis] = (offset[axis] + d + size) % size
            self.pos = _vector(pos)
            self.offset = _vector(offset)

            start, end = self._extent()
            if d > 0:
                start[axis] = end[axis] - (d - 1)
            else:
                end[axis] = start[axis] - d - 1
            self._load_area(start, end)

    def swap(self, other: LocalMap) -> None:
        """Exchange all contents with another local map."""
        self.data, other.data = other.data, self.data
        self.size, other.size = other.size, self.size
        self.pos, other.pos = other.pos, self.pos
        self.offset, other.offset = other.offset, self.offset
        self.global_map, other.global_map = other.global_map, self.global_map

    def fill_from(self, other: LocalMap) -> None:
        """Copy the cells and placement of another map with as many cells."""
        if self.data.size != other.data.size:
            raise ValueError("cannot fill from a local map with a different number of cells")
        self.data[:] = other.data
        self.size = other.size
        self.pos = other.pos
        self.offset = other.offset
        self.global_map = other.global_map

    def hardware_representation(self) -> LocalMapHW:
        """Size, position and offset as used by the kernels."""
        return LocalMapHW(*self.size, *self.pos, *self.offset)

    def write_back(self) -> None:
        """Store every cell in the global map and flush the global map to its file."""
        start, end = self._extent()
        self._save_area(start, end)
        self.global_map.write_back()