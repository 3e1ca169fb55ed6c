"""File-backed global TSDF map split into cubic chunks with LRU caching.

The map file is an SQLite database with two tables:

* ``map(tag, data)``: one row per chunk, ``tag`` being ``"x_y_z"`` of the
  chunk position and ``data`` the cells as little-endian int32
  ``(value, weight)`` pairs in x-major order;
* ``poses(id, data)``: poses numbered from 0, each seven little-endian
  float32 values ``t_x, t_y, t_z, quat_x, quat_y, quat_z, quat_w``.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .local_map_hw import TSDFValue

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64
NUM_CHUNKS = 64

_CHUNK_DTYPE = np.dtype([("value", "<i4"), ("weight", "<i4")])
_POSE_DTYPE = np.dtype("<f4")


def floor_divide(pos, divisor: int) -> tuple[int, int, int]:
    """Divide each coordinate, rounding towards negative infinity."""
    x, y, z = (int(c) // divisor for c in pos)
    return (x, y, z)


def tag_from_chunk_pos(pos) -> str:
    """Name under which a chunk is stored."""
    return "_".join(str(int(c)) for c in pos)


def _chunk_index(pos, chunk_pos, chunk_size: int) -> int:
    x, y, z = (int(p) - int(c) * chunk_size for p, c in zip(pos, chunk_pos))
    return (x * chunk_size + y) * chunk_size + z


def index_from_pos(pos, chunk_pos) -> int:
    """Index of a global cell inside the chunk at ``chunk_pos``."""
    return _chunk_index(pos, chunk_pos, CHUNK_SIZE)


@dataclass
class ActiveChunk:
    """A chunk held in memory together with its LRU age."""

    data: np.ndarray
    pos: tuple[int, int, int]
    age: int


class GlobalMap:
    """Global TSDF map; chunks are loaded on demand and evicted least recently used."""

    CHUNK_SIZE = CHUNK_SIZE
    NUM_CHUNKS = NUM_CHUNKS

    def __init__(self, path, initial_value: int, initial_weight: int) -> None:
        self.path = Path(path)
        self.path.unlink(missing_ok=True)
        self._db = sqlite3.connect(self.path)
        self._db.execute("CREATE TABLE IF NOT EXISTS map (tag TEXT PRIMARY KEY, data BLOB NOT NULL)")
        self._db.execute("CREATE TABLE IF NOT EXISTS poses (id INTEGER PRIMARY KEY, data BLOB NOT NULL)")
        self._db.commit()
        self.initial_value = TSDFValue(int(initial_value), int(initial_weight))
        self.active_chunks: list[ActiveChunk] = []
        self.num_poses = 0

    def __enter__(self) -> GlobalMap:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Commit pending writes and close the map file."""
        self._db.commit()
        self._db.close()

    def _load_chunk(self, tag: str) -> np.ndarray | None:
        row = self._db.execute("SELECT data FROM map WHERE tag = ?", (tag,)).fetchone()
        if row is None:
            return None
        return np.frombuffer(row[0], dtype=_CHUNK_DTYPE).copy()

    def _store_chunk(self, chunk: ActiveChunk) -> None:
        self._db.execute(
            "INSERT OR REPLACE INTO map (tag, data) VALUES (?, ?)",
            (tag_from_chunk_pos(chunk.pos), chunk.data.tobytes()),
        )

    def _new_chunk_data(self) -> np.ndarray:
        data = np.empty(self.CHUNK_SIZE ** 3, dtype=_CHUNK_DTYPE)
        data["value"] = self.initial_value.value
        data["weight"] = self.initial_value.weight
        return data

    def activate_chunk(self, chunk_pos) -> np.ndarray:
        """Return the cells of a chunk, loading or creating it if needed.

        The returned array is the live chunk storage; writes to it are
        kept.  When the cache is full the oldest chunk is written to the
        file and replaced.
        """
        cx, cy, cz = (int(c) for c in chunk_pos)
        pos = (cx, cy, cz)
        index = next((i for i, c in enumerate(self.active_chunks) if c.pos == pos), None)
        if index is None:
            data = self._load_chunk(tag_from_chunk_pos(pos))
            if data is None:
                data = self._new_chunk_data()
            count = len(self.active_chunks)
            if count < self.NUM_CHUNKS:
                index = count
                # oldest possible age, so every other chunk ages by one
                self.active_chunks.append(ActiveChunk(data, pos, count))
            else:
                index = max(range(count), key=lambda i: self.active_chunks[i].age)
                self._store_chunk(self.active_chunks[index])
                self.active_chunks[index] = ActiveChunk(data, pos, 0)
        chunk = self.active_chunks[index]
        for other in self.active_chunks:
            if other.age < chunk.age:
                other.age += 1
        chunk.age = 0
        return chunk.data

    def get_value(self, pos) -> TSDFValue:
        """Value and weight of a global cell."""
        chunk_pos = floor_divide(pos, self.CHUNK_SIZE)
        entry = self.activate_chunk(chunk_pos)[_chunk_index(pos, chunk_pos, self.CHUNK_SIZE)]
        return TSDFValue(int(entry["value"]), int(entry["weight"]))

    def set_value(self, pos, value) -> None:
        """Store value and weight of a global cell."""
        chunk_pos = floor_divide(pos, self.CHUNK_SIZE)
        chunk = self.activate_chunk(chunk_pos)
        chunk[_chunk_index(pos, chunk_pos, self.CHUNK_SIZE)] = tuple(TSDFValue(*value))

    def save_pose(self, t_x, t_y, t_z, quat_x, quat_y, quat_z, quat_w) -> None:
        """Append a pose to the map file."""
        pose = np.array([t_x, t_y, t_z, quat_x, quat_y, quat_z, quat_w], dtype=_POSE_DTYPE)
        self._db.execute("INSERT INTO poses (id, data) VALUES (?, ?)", (self.num_poses, pose.tobytes()))
        self.num_poses += 1

    def write_back(self) -> None:
        """Write every active chunk to the file and flush it."""
        logger.info("GlobalMap: Writing Chunks")
        for chunk in self.active_chunks:
            self._store_chunk(chunk)
        self._db.commit()
        logger.info("GlobalMap: Finished writing Chunks")