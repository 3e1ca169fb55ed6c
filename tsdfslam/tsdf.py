"""TSDF integration: ray marching of scan points and the update of the local map.

Coordinates of scan points are integer millimetres, cells are addressed by
integer indices of edge length ``map_resolution`` and a cell index ``i``
stands for the millimetre position of its centre,
``i * map_resolution + map_resolution // 2``.  Unit vectors are fixed-point
with ``matrix_resolution`` standing for 1.0.  Divisions truncate towards
zero, as the integer arithmetic of the kernel does.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, MutableSequence
from dataclasses import dataclass

import numpy as np

from .local_map import CELL_DTYPE
from .local_map_hw import GridConstants, LocalMapHW, TSDFValue

TSDF_SPLIT_FACTOR = 4

Vec3 = tuple[int, int, int]


@dataclass(frozen=True)
class StreamMessage:
    """One TSDF sample on a ray, with the path along which it is interpolated."""

    value: TSDFValue
    index: Vec3
    interpolation_start: Vec3
    interpolation_step: Vec3
    iter_steps: int
    iter_middle: int


def _tdiv(a: int, b: int) -> int:
    """Integer division truncating towards zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


def _vec(p) -> Vec3:
    x, y, z = (int(c) for c in p)
    return (x, y, z)


def _add(a: Vec3, b: Vec3) -> Vec3:
    return (a[0] + b[0], a[1] + b[1], a[2] + b[2])


def _sub(a: Vec3, b: Vec3) -> Vec3:
    return (a[0] - b[0], a[1] - b[1], a[2] - b[2])


def _scale(a: Vec3, mul: int, div: int) -> Vec3:
    return (_tdiv(a[0] * mul, div), _tdiv(a[1] * mul, div), _tdiv(a[2] * mul, div))


def _cross(a: Vec3, b: Vec3) -> Vec3:
    return (
        a[1] * b[2] - a[2] * b[1],
        a[2] * b[0] - a[0] * b[2],
        a[0] * b[1] - a[1] * b[0],
    )


def _norm(a: Vec3) -> int:
    return math.isqrt(a[0] * a[0] + a[1] * a[1] + a[2] * a[2])


def _to_mm(cell: Vec3, res: int) -> Vec3:
    half = res // 2
    return (cell[0] * res + half, cell[1] * res + half, cell[2] * res + half)


def _to_map(mm: Vec3, res: int) -> Vec3:
    return (mm[0] // res, mm[1] // res, mm[2] // res)


def _cell(entry) -> TSDFValue:
    return TSDFValue(int(entry[0]), int(entry[1]))


def _check_resolution(constants: GridConstants) -> None:
    if constants.map_resolution < 2:
        raise ValueError("map_resolution must be at least 2 to march in half-cell steps")


def read_points(
    scan_points: Iterable,
    local_map: LocalMapHW,
    tau: int,
    dz_per_distance: int,
    up,
    constants: GridConstants,
) -> Iterator[StreamMessage]:
    """March from the scanner through every point and yield a TSDF sample per step.

    Samples lie in half-cell steps from one cell away from the scanner to
    ``tau`` behind the point.  Values are positive in front of the point and
    negative behind it; behind it the weight falls linearly to zero.
    """
    _check_resolution(constants)
    res = constants.map_resolution
    mres = constants.matrix_resolution
    wres = constants.weight_resolution
    tau = int(tau)
    up_vec = _vec(up)

    scanner = _to_mm((local_map.pos_x, local_map.pos_y, local_map.pos_z), res)
    weight_epsilon = _tdiv(tau, 10)
    max_distance = (local_map.size_x // 2 + local_map.size_y // 2 + local_map.size_z // 2) * res

    for raw_point in scan_points:
        scan_point = _vec(raw_point)
        direction = _sub(scan_point, scanner)
        distance = _norm(direction)
        if distance == 0:
            continue
        distance_tau = min(distance + tau, max_distance)

        normed_direction = _scale(direction, mres, distance)
        right = _scale(_cross(normed_direction, up_vec), 1, mres)
        interpolation = _cross(normed_direction, right)
        interpolation_norm = _norm(interpolation)
        if interpolation_norm:
            normed_interpolation = _scale(interpolation, mres, interpolation_norm)
        else:
            normed_interpolation = (0, 0, 0)

        for length in range(res, distance_tau + 1, res // 2):
            proj = _add(scanner, _scale(direction, length, distance))
            index = _to_map(proj, res)
            if not local_map.in_bounds(*index):
                continue

            value = min(_norm(_sub(scan_point, _to_mm(index, res))), tau)
            if length > distance:
                value = -value

            weight = wres
            if value < -weight_epsilon:
                weight = _tdiv(wres * (tau + value), tau - weight_epsilon)
            if weight == 0:
                continue

            delta_z = _tdiv(dz_per_distance * length, mres)
            lowest = _sub(proj, _scale(normed_interpolation, delta_z, mres))
            yield StreamMessage(
                value=TSDFValue(value, weight),
                index=index,
                interpolation_start=lowest,
                interpolation_step=normed_interpolation,
                iter_steps=_tdiv(delta_z * 2, res) + 1,
                iter_middle=_tdiv(delta_z, res),
            )


def update_tsdf(
    local_map: LocalMapHW,
    new_entries: MutableSequence,
    messages: Iterable[StreamMessage],
    constants: GridConstants,
) -> None:
    """Write samples and their interpolated neighbours into ``new_entries``.

    Each cell keeps the sample with the smallest absolute value.  Cells
    reached only by interpolation carry a negative weight.  A message with
    weight zero ends the stream, as does running out of messages.
    """
    _check_resolution(constants)
    res = constants.map_resolution
    mres = constants.matrix_resolution

    stream = iter(messages)
    msg: StreamMessage | None = None
    iter_steps = 0
    index: Vec3 = (0, 0, 0)
    old_index: Vec3 = (0, 0, 0)
    step = 1

    while True:
        if step > iter_steps:
            old_index = index
            msg = next(stream, None)
            if msg is None or msg.value.weight == 0:
                break
            index = _vec(msg.index)
            iter_steps = msg.iter_steps
            step = 0

        if index == old_index:
            # the previous sample already covered this cell
            step = iter_steps + 1
            continue

        offset = _scale(_vec(msg.interpolation_step), step * res, mres)
        index = _to_map(_add(_vec(msg.interpolation_start), offset), res)

        if local_map.in_bounds(*index):
            map_index = local_map.get_index(*index)
            old_entry = _cell(new_entries[map_index])

            old_is_interpolated = old_entry.weight <= 0
            current_is_interpolated = step != msg.iter_middle
            current_is_better = (
                abs(msg.value.value) < abs(old_entry.value) or old_entry.weight == 0
            )

            if current_is_better or old_is_interpolated:
                value = msg.value.value if current_is_better else old_entry.value
                weight = old_entry.weight
                if old_is_interpolated:
                    weight = -msg.value.weight if current_is_interpolated else msg.value.weight
                new_entries[map_index] = (value, weight)

        step += 1


def sync_loop(
    map_data: MutableSequence,
    start: int,
    end: int,
    new_entries,
    max_weight: int,
) -> None:
    """Merge new entries into the map for indices in ``[start, end)``.

    Measured values are averaged by weight, with the total weight capped at
    ``max_weight``; interpolated map values are replaced by any new value.
    """
    for index in range(start, end):
        map_entry = _cell(map_data[index])
        new_entry = _cell(new_entries[index])
        new_weight = map_entry.weight + new_entry.weight

        if new_entry.weight > 0 and map_entry.weight > 0:
            value = _tdiv(
                map_entry.value * map_entry.weight + new_entry.value * new_entry.weight,
                new_weight,
            )
            map_data[index] = (value, min(new_weight, max_weight))
        elif new_entry.weight != 0 and map_entry.weight <= 0:
            map_data[index] = (new_entry.value, new_entry.weight)


def tsdf_update(
    scan_points,
    map_data: MutableSequence,
    local_map: LocalMapHW,
    tau: int,
    max_weight: int,
    dz_per_distance: int,
    up=None,
    constants: GridConstants | None = None,
) -> np.ndarray:
    """Integrate a scan into ``map_data`` in place and return the new entries.

    ``up`` defaults to the z axis at matrix resolution.
    """
    if constants is None:
        raise ValueError("grid constants are required")
    if up is None:
        up = (0, 0, constants.matrix_resolution)

    total_size = local_map.size_x * local_map.size_y * local_map.size_z
    if len(map_data) < total_size:
        raise ValueError(f"map data holds {len(map_data)} cells, the map needs {total_size}")

    points = [_vec(p) for p in scan_points]
    new_entries = np.zeros(len(map_data), dtype=CELL_DTYPE)

    step = len(points) // TSDF_SPLIT_FACTOR
    last_step = len(points) - (TSDF_SPLIT_FACTOR - 1) * step
    for part in range(TSDF_SPLIT_FACTOR):
        begin = part * step
        count = last_step if part == TSDF_SPLIT_FACTOR - 1 else step
        messages = read_points(points[begin:begin + count], local_map, tau, dz_per_distance, up, constants)
        update_tsdf(local_map, new_entries, messages, constants)

    sync_step = total_size // TSDF_SPLIT_FACTOR + 1
    bounds = [min(i * sync_step, total_size) for i in range(TSDF_SPLIT_FACTOR)] + [total_size]
    for begin, end in zip(bounds, bounds[1:]):
        sync_loop(map_data, begin, end, new_entries, max_weight)
    return new_entries