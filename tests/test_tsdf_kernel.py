import math

import numpy as np
import pytest

from tsdfslam.global_map import GlobalMap
from tsdfslam.local_map import LocalMap
from tsdfslam.local_map_hw import GridConstants, TSDFValue
from tsdfslam.tsdf_kernel import TSDFKernel, dz_per_distance_for

C = GridConstants(map_resolution=64, weight_resolution=64)
# scanner sits in cell (0, 0, 0), whose centre is (32, 32, 32) mm
POINT = (32 + 5 * 64, 32, 32)
TAU = 3 * 64


@pytest.fixture
def make_local_map(tmp_path):
    maps = []

    def factory(name="map.db", size=21):
        gm = GlobalMap(tmp_path / name, 0, 0)
        maps.append(gm)
        return LocalMap(size, size, size, gm)

    yield factory
    for gm in maps:
        gm.close()


def test_zero_fov_gives_zero():
    assert dz_per_distance_for(0.0, 16, C) == 0


def test_dz_depends_only_on_angle_between_rings():
    assert dz_per_distance_for(30.0, 16, C) == dz_per_distance_for(60.0, 31, C)


def test_dz_decreases_with_more_rings():
    assert dz_per_distance_for(30.0, 64, C) < dz_per_distance_for(30.0, 16, C)


@pytest.mark.parametrize("rings", [0, 1])
def test_dz_needs_two_rings(rings):
    with pytest.raises(ValueError):
        dz_per_distance_for(30.0, rings, C)


def test_run_marks_surface_and_free_space(make_local_map):
    local_map = make_local_map()
    kernel = TSDFKernel(local_map.data.size, C)
    kernel.run(local_map, [POINT], TAU, 100, dz_per_distance=0)

    assert local_map.value((5, 0, 0)) == TSDFValue(0, C.weight_resolution)
    in_front = [local_map.value((x, 0, 0)) for x in (3, 4)]
    assert all(v.weight == C.weight_resolution for v in in_front)
    assert in_front[0].value > in_front[1].value > 0

    behind = local_map.value((6, 0, 0))
    assert behind.value < 0
    assert 0 < behind.weight < C.weight_resolution


def test_run_interpolates_below_the_ray(make_local_map):
    local_map = make_local_map()
    kernel = TSDFKernel(local_map.data.size, C)
    kernel.run(local_map, [POINT], TAU, 100, dz_per_distance=0)
    assert local_map.value((5, 0, -1)) == TSDFValue(0, -C.weight_resolution)


def test_new_entries_hold_last_scan(make_local_map):
    local_map = make_local_map()
    kernel = TSDFKernel(local_map.data.size, C)
    kernel.run(local_map, [POINT], TAU, 100, dz_per_distance=0)
    hw = local_map.hardware_representation()
    entry = kernel.new_entries[hw.get_index(5, 0, 0)]
    assert (int(entry["value"]), int(entry["weight"])) == (0, C.weight_resolution)


def test_weight_is_capped_on_repeated_scans(make_local_map):
    local_map = make_local_map()
    kernel = TSDFKernel(local_map.data.size, C)
    kernel.run(local_map, [POINT], TAU, 100, dz_per_distance=0)
    kernel.run(local_map, [POINT], TAU, 100, dz_per_distance=0)
    assert local_map.value((5, 0, 0)) == TSDFValue(0, 100)


def test_run_without_points_leaves_map(make_local_map):
    local_map = make_local_map()
    before = local_map.data.copy()
    kernel = TSDFKernel(local_map.data.size, C)
    kernel.run(local_map, [], TAU, 100)
    assert np.array_equal(local_map.data, before)


def test_size_mismatch_raises(make_local_map):
    local_map = make_local_map(size=5)
    kernel = TSDFKernel(10, C)
    with pytest.raises(ValueError):
        kernel.run(local_map, [POINT], TAU, 100)


def test_negative_map_size_raises():
    with pytest.raises(ValueError):
        TSDFKernel(-1, C)


def test_synchronized_run_matches_run(make_local_map):
    map_a = make_local_map("a.db")
    map_b = make_local_map("b.db")
    kernel_a = TSDFKernel(map_a.data.size, C)
    kernel_b = TSDFKernel(map_b.data.size, C)

    kernel_a.synchronized_run(map_a, [POINT], TAU, 2, 30.0, 16)
    dz = dz_per_distance_for(30.0, 16, C)
    kernel_b.run(map_b, [POINT], TAU, 2 * C.weight_resolution, dz)

    assert np.array_equal(map_a.data, map_b.data)
    assert map_a.value((5, 0, 0)) == TSDFValue(0, C.weight_resolution)
    assert not math.isnan(float(map_a.value((4, 0, 0)).value))