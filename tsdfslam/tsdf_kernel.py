"""Host-side driver of the TSDF integration of a scan into a local map."""

from __future__ import annotations

import math

import numpy as np

from .local_map import CELL_DTYPE, LocalMap
from .local_map_hw import GridConstants
from .tsdf import tsdf_update

DEFAULT_DZ_PER_DISTANCE = 572


def dz_per_distance_for(vertical_fov_deg: float, rings: int, constants: GridConstants) -> int:
    """Interpolation height per distance for a scanner with ``rings`` evenly spread rings.

    The result is half the angle between neighbouring rings as a
    fixed-point slope, with ``matrix_resolution`` standing for 1.0.
    """
    rings = int(rings)
    if rings < 2:
        raise ValueError(f"a scanner needs at least two rings, got {rings}")
    vertical_fov = float(np.float32(vertical_fov_deg / 180.0 * math.pi))
    return int(math.tan(vertical_fov / (rings - 1.0) / 2.0) * constants.matrix_resolution)


class TSDFKernel:
    """Integrates scans into a local map, keeping the per-scan entries it produced."""

    def __init__(self, map_size: int, constants: GridConstants) -> None:
        map_size = int(map_size)
        if map_size < 0:
            raise ValueError(f"map size must not be negative, got {map_size}")
        self.constants = constants
        self.new_entries = np.zeros(map_size, dtype=CELL_DTYPE)

    def run(
        self,
        local_map: LocalMap,
        scan_points,
        tau: int,
        max_weight: int,
        dz_per_distance: int = DEFAULT_DZ_PER_DISTANCE,
        up=None,
    ) -> None:
        """Integrate ``scan_points`` into ``local_map``.

        ``tau`` is the truncation distance in millimetres and ``max_weight``
        the weight cap as an integer at ``weight_resolution``.
        """
        if local_map.data.size != self.new_entries.size:
            raise ValueError(
                f"kernel holds {self.new_entries.size} cells, the local map has {local_map.data.size}"
            )
        self.new_entries[:] = (0, 0)
        entries = tsdf_update(
            scan_points,
            local_map.data,
            local_map.hardware_representation(),
            int(tau),
            int(max_weight),
            int(dz_per_distance),
            up,
            self.constants,
        )
        self.new_entries[:] = entries

    def synchronized_run(
        self,
        local_map: LocalMap,
        scan_points,
        max_distance: int,
        max_weight: float,
        vertical_fov_deg: float,
        rings: int,
        up=None,
    ) -> None:
        """Integrate a scan using scanner and map settings.

        ``max_distance`` becomes the truncation distance; ``max_weight`` is
        a weight in units of 1.0.
        """
        tau = int(max_distance)
        weight_cap = int(max_weight * self.constants.weight_resolution)
        dz = dz_per_distance_for(vertical_fov_deg, rings, self.constants)
        self.run(local_map, scan_points, tau, weight_cap, dz, up)