# tsdfslam

This package does mapping and scan registration for lidar point clouds, using a
truncated signed distance field (TSDF).

- Scan points are integer millimetres.
- Map cells are integer indices. The edge length of a cell is
  `map_resolution`.
- TSDF values and weights are integers.
- Transforms use fixed point while points are matched. The pose that
  registration returns is a float32 4x4 matrix.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `tsdfslam.linalg`

Small dense helpers:

- `lu_decomposition(a)` returns a new matrix. It holds U, plus the multipliers
  of a unit-lower-triangular L. It does not pivot.
- `lu_solve(a, b)` solves with that factor.
- `lu_decompose_lr(a)` returns L and R as two separate matrices.
- `matrix_mul(a, b)` multiplies two matrices and checks their shapes.
- `transform_point(mat, point)` applies a 4x4 transform to a 3D point.
  Integer inputs give integer results.

### `tsdfslam.local_map_hw`

- `TSDFValue` is a `(value, weight)` named tuple.
- `GridConstants` holds the fixed-point scales. These are `map_resolution`,
  `weight_resolution` and `matrix_resolution`, whose default is 32768.
- `overflow(val, maximum)` does the ring wrap.
- `LocalMapHW` is a flat description of a ring-buffered local map: its size,
  position and offset. It has `in_bounds`, `get_index`, `get` and `set`.
  `get` outside the map returns `TSDFValue(0, 0)`. `set` outside the map is
  ignored.

### `tsdfslam.global_map`

`GlobalMap(path, initial_value, initial_weight)` is an unbounded map made of
cubic chunks. Each chunk has 64 cells per edge.

- Chunks are stored in an SQLite file at `path`. Any existing file at that
  path is removed when the map is created.
- Up to 64 chunks are kept in memory. When that limit is reached, the least
  recently used chunk is written out and replaced.

Methods:

- `get_value` and `set_value` read and write one cell.
- `activate_chunk` returns the live cell array of a chunk.
- `save_pose` appends a translation and quaternion pose.
- `write_back` writes all active chunks and commits.
- `close` commits and closes the file. The map can also be used as a context
  manager.

Helpers: `floor_divide`, `tag_from_chunk_pos` and `index_from_pos`.

### `tsdfslam.local_map`

`LocalMap(size_x, size_y, size_z, global_map)` is a cuboid of cells around
`pos`. Each axis is a ring buffer.

- Even sizes are raised to the next odd number.
- `value` and `set_value` raise `IndexError` outside the map.
- `shift(new_pos)` moves the centre. It raises `ValueError` if the new centre
  is more than one map size away on any axis. Cells that leave the cuboid are
  saved to the global map, and cells that enter it are loaded from there.
- `in_bounds`, `swap` and `fill_from` are also available.
- `hardware_representation()` returns a `LocalMapHW`.
- `write_back()` saves every cell and flushes the global map.

### `tsdfslam.tsdf`

The TSDF update.

- `read_points` marches rays from the scanner through each point, in
  half-cell steps. It yields `StreamMessage` samples.
- `update_tsdf` writes these samples into a buffer of new entries. It
  interpolates between lidar rings, and each cell keeps the smallest absolute
  value.
- `sync_loop` merges the new entries into the map with a weighted average.
  The weight is capped at `max_weight`.
- `tsdf_update` runs the whole update in place. It returns the new entries.

### `tsdfslam.tsdf_kernel`

- `TSDFKernel(map_size, constants)` drives the update for a `LocalMap`.
  - `run` takes a truncation distance `tau` and an integer weight cap.
  - `synchronized_run` takes `max_distance`, a weight cap in units of 1.0, and
    the scanner's vertical field of view and number of rings.
- `dz_per_distance_for(vertical_fov_deg, rings, constants)` gives the
  interpolation slope.

### `tsdfslam.reg_kernel`

Point-to-TSDF registration by Gauss-Newton iterations:

- `xi_to_transform` turns a twist into a transform that rotates about a
  centre.
- `registration_step` builds the normal equations for one iteration.
- `register` iterates until the error settles or `max_iterations` is reached.
  It returns a `RegistrationResult` with the `transform` and the number of
  `iterations`.
- `register` raises `numpy.linalg.LinAlgError` when the system is singular,
  for example when no point hits the map.

### `tsdfslam.imu_accumulator`

- `ImuMessage` holds a timestamp in seconds and an angular velocity in rad/s.
- `ImuAccumulator(buffer)` consumes messages from a `collections.deque`.
  `acc_transform(pcl_timestamp)` returns the accumulated rotation as a 4x4
  matrix.

### `tsdfslam.registration`

- `Registration(imu_buffer, max_iterations, it_weight_gradient, epsilon, constants)`
  combines the IMU estimate with `register`. `register_cloud(local_map, cloud,
  cloud_timestamp, pose)` returns the refined pose and the transformed cloud.
- `transform_point_cloud` applies a pose to integer points, rounding half away
  from zero.

### `tsdfslam.preprocessing`

`Preprocessor(map_bounds, map_resolution)` provides voxel reduction filters:

- `reduction_filter_average`
- `reduction_filter_closest`
- `reduction_filter_voxel_center`
- `reduction_filter_random_point`

It also has `median_filter(points, rings, window_size)`, which works ring by
ring.

Module-level helpers: `scale_points` and `median_from_array`.

## Example

```python
from tsdfslam.global_map import GlobalMap
from tsdfslam.local_map import LocalMap
from tsdfslam.local_map_hw import GridConstants
from tsdfslam.preprocessing import Preprocessor
from tsdfslam.tsdf_kernel import TSDFKernel

constants = GridConstants(map_resolution=64, weight_resolution=64)

points = [(1000, 200, 0), (1010, 205, 3), (1500, -300, 100), (0, 0, 0)]
points = Preprocessor((1300, 1300, 650), 64).reduction_filter_closest(points)

with GlobalMap("map.db", 600, 0) as global_map:
    local_map = LocalMap(41, 41, 21, global_map)
    kernel = TSDFKernel(41 * 41 * 21, constants)
    kernel.synchronized_run(local_map, points, 600, 10.0, 30.0, 16)
    print(local_map.value((15, 3, 0)))
    local_map.write_back()
```

## What the package does not do

The package is a library of the mapping, registration and filtering steps. It
does not do any of the following:

- It has no command-line program.
- It does not read lidar or IMU devices.
- It does not read configuration files.
- It does not run a threaded pipeline that links the steps together.
- It does not send maps or clouds over a network.

The caller supplies the points, the IMU messages and all settings.