"""TSDF cell values, grid constants and the ring-buffer view of the local map."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import NamedTuple


class TSDFValue(NamedTuple):
    """A truncated signed distance value together with its weight."""

    value: int
    weight: int


@dataclass(frozen=True)
class GridConstants:
    """Fixed-point scales shared by the map and the kernels.

    ``map_resolution`` is the cell edge length in millimetres,
    ``weight_resolution`` the integer weight standing for 1.0 and
    ``matrix_resolution`` the fixed-point scale of transforms and unit
    vectors.
    """

    map_resolution: int
    weight_resolution: int
    matrix_resolution: int = 1 << 15

    def __post_init__(self) -> None:
        for field in fields(self):
            if getattr(self, field.name) <= 0:
                raise ValueError(f"{field.name} must be positive")


def overflow(val: int, maximum: int) -> int:
    """Wrap ``val`` into ``[0, maximum)`` for values below ``3 * maximum``."""
    if val >= 2 * maximum:
        return val - 2 * maximum
    if val >= maximum:
        return val - maximum
    return val


@dataclass(frozen=True)
class LocalMapHW:
    """Size, position and ring offset of a local map, with cell access."""

    size_x: int
    size_y: int
    size_z: int
    pos_x: int
    pos_y: int
    pos_z: int
    offset_x: int
    offset_y: int
    offset_z: int

    def in_bounds(self, x: int, y: int, z: int) -> bool:
        """Whether the global cell lies inside the map."""
        return (
            abs(x - self.pos_x) <= self.size_x // 2
            and abs(y - self.pos_y) <= self.size_y // 2
            and abs(z - self.pos_z) <= self.size_z // 2
        )

    def get_index(self, x: int, y: int, z: int) -> int:
        """Flat index of a global cell in the ring-buffered data array."""
        ix = overflow(x - self.pos_x + self.offset_x + self.size_x, self.size_x)
        iy = overflow(y - self.pos_y + self.offset_y + self.size_y, self.size_y)
        iz = overflow(z - self.pos_z + self.offset_z + self.size_z, self.size_z)
        return ix * self.size_y * self.size_z + iy * self.size_z + iz

    def get(self, data, x: int, y: int, z: int) -> TSDFValue:
        """Read a cell, or an empty value when the cell is outside the map."""
        if not self.in_bounds(x, y, z):
            return TSDFValue(0, 0)
        entry = data[self.get_index(x, y, z)]
        if isinstance(entry, TSDFValue):
            return entry
        return TSDFValue(int(entry[0]), int(entry[1]))

    def set(self, data, x: int, y: int, z: int, value) -> None:
        """Write a cell; writes outside the map are ignored."""
        if self.in_bounds(x, y, z):
            data[self.get_index(x, y, z)] = TSDFValue(*value)