"""Core storage and coordinate handling of one resolution level of a rolling voxel map."""

from __future__ import annotations

import copy as _copy
import dataclasses
import math
from collections import deque
from typing import Any, Callable, Iterable, Iterator, Optional, Protocol, Sequence, Tuple

import numpy as np

OCCUPANCY_UNKNOWN = 0.0

Indices = Tuple[int, int, int]


class _Surfel(Protocol):
    def clear(self) -> None: ...

    def unevaluate(self) -> None: ...


class _GridCell(Protocol):
    """Interface a grid cell produced by the cell factory has to provide."""

    occupancy: float
    points: Any
    surfel: _Surfel

    def add_point(self, point: Any) -> None: ...

    def add_occupancy(self, delta: float) -> None: ...

    def subtract_occupancy(self, delta: float) -> None: ...

    def evaluate(self, *args: Any) -> None: ...


def _xyz(point: Any) -> Tuple[float, float, float]:
    """Return the x, y, z coordinates of a point object or a sequence."""
    if hasattr(point, "x"):
        return float(point.x), float(point.y), float(point.z)
    x, y, z = (float(v) for v in list(point)[:3])
    return x, y, z


def _with_xyz(point: Any, x: float, y: float, z: float) -> Any:
    """Return a copy of ``point`` (keeping its other fields) with new coordinates."""
    if dataclasses.is_dataclass(point) and not isinstance(point, type):
        return dataclasses.replace(point, x=x, y=y, z=z)
    if hasattr(point, "_replace"):
        return point._replace(x=x, y=y, z=z)
    if isinstance(point, np.ndarray):
        result = np.array(point, dtype=float, copy=True)
        result[:3] = (x, y, z)
        return result
    if isinstance(point, (list, tuple)):
        return type(point)([x, y, z, *list(point)[3:]])
    raise TypeError(f"unsupported point type: {type(point).__name__}")


def _cell_local(value: float, cell_size: float) -> float:
    local = math.fmod(value, cell_size)
    if local < 0.0:
        local += cell_size
    return local


class MapLevelBase:
    """A cubic grid of cells that scrolls with the sensor.

    Cells are stored as nested ring buffers indexed ``[z][y][x]``; moving the
    map drops cells on one side and inserts fresh cells on the other.
    """

    def __init__(
        self,
        size_in_meters: float,
        resolution: float,
        cell_capacity: int,
        cell_factory: Callable[[int], _GridCell],
    ) -> None:
        self.size = size_in_meters
        self.resolution = resolution
        self.cell_capacity = cell_capacity
        self.cell_size = 1.0 / resolution
        self.cells_per_axis = int(size_in_meters * resolution)
        self._cell_factory = cell_factory
        self.translation_increment = np.zeros(3)
        self.clamping_thresh_min = -2.0
        self.clamping_thresh_max = 3.5
        self.prob_hit = 0.85
        self.prob_miss = -0.4
        self.coarser_level: Optional[MapLevelBase] = None
        n = self.cells_per_axis
        self._map: deque = deque((self._new_plane() for _ in range(n)), maxlen=n)
        self._update_mask = np.ones((n, n, n), dtype=bool)
        self.set_all_occupancies(OCCUPANCY_UNKNOWN)

    # -- construction helpers -------------------------------------------------

    def _new_row(self) -> deque:
        n = self.cells_per_axis
        return deque((self._cell_factory(self.cell_capacity) for _ in range(n)), maxlen=n)

    def _new_plane(self) -> deque:
        n = self.cells_per_axis
        return deque((self._new_row() for _ in range(n)), maxlen=n)

    def _iter_cells(self) -> Iterator[Tuple[int, int, int, _GridCell]]:
        """Yield ``(ix, iy, iz, cell)`` for every cell, z outermost."""
        for iz, plane in enumerate(self._map):
            for iy, row in enumerate(plane):
                for ix, cell in enumerate(row):
                    yield ix, iy, iz, cell

    def _cell_at(self, ix: int, iy: int, iz: int) -> _GridCell:
        return self._map[iz][iy][ix]

    def copy(self) -> "MapLevelBase":
        """Return an independent copy; the coarser level link is not carried over."""
        clone = _copy.copy(self)
        clone._map = _copy.deepcopy(self._map)
        clone._update_mask = self._update_mask.copy()
        clone.translation_increment = self.translation_increment.copy()
        clone.coarser_level = None
        return clone

    # -- coordinates -----------------------------------------------------------

    def calc_indices(self, point: Any) -> Optional[Indices]:
        """Return the ``(x, y, z)`` cell indices of a point, or None if outside."""
        mid_point = int(self.size * self.resolution / 2)
        max_point = int(self.size * self.resolution)
        scaled = [self.resolution * c + mid_point for c in _xyz(point)]
        if not all(0.0 <= f < float(max_point) for f in scaled):
            return None
        x, y, z = (int(f) for f in scaled)
        return x, y, z

    def cell_origin(self, x: int, y: int, z: int) -> np.ndarray:
        """Return the map-frame corner of the cell with the given indices."""
        half = self.size / 2.0
        origin = np.array([x / self.resolution - half, y / self.resolution - half, z / self.resolution - half])
        return origin - self.translation_increment

    def cell_to_map_frame(self, point: Any, x: int, y: int, z: int) -> Any:
        """Convert a point stored in cell coordinates back to the map frame."""
        origin = self.cell_origin(x, y, z)
        px, py, pz = _xyz(point)
        return _with_xyz(point, px + origin[0], py + origin[1], pz + origin[2])

    def to_cell_coordinate(self, point: Any) -> Optional[Tuple[Any, Indices]]:
        """Return the point in its cell's frame together with the cell indices."""
        shifted = np.array(_xyz(point)) + self.translation_increment
        indices = self.calc_indices(shifted)
        if indices is None:
            return None
        local = [_cell_local(float(c), self.cell_size) for c in shifted]
        return _with_xyz(point, *local), indices

    def get_cell(self, point: Any, include_empty: bool = False) -> Optional[Tuple[_GridCell, np.ndarray]]:
        """Return ``(cell, cell_origin)`` for a map-frame point, or None."""
        shifted = np.array(_xyz(point)) + self.translation_increment
        indices = self.calc_indices(shifted)
        if indices is None:
            return None
        ix, iy, iz = indices
        cell = self._cell_at(ix, iy, iz)
        if include_empty or cell.occupancy > 0:
            return cell, self.cell_origin(ix, iy, iz)
        return None

    def in_center(self, x: int, y: int, z: int) -> bool:
        """Whether the indices lie in the inner region covered by a finer level."""
        half = self.cells_per_axis // 2
        quarter = self.cells_per_axis // 4
        low, high = quarter + 1, half + quarter - 1
        return all(low <= v < high for v in (x, y, z))

    # -- moving ----------------------------------------------------------------

    def _shifted_indices(self, steps: int) -> range:
        n = self.cells_per_axis
        k = min(abs(steps), n)
        if steps > 0:
            return range(n - 1, n - 1 - k, -1)
        return range(k)

    def move_map(self, translation: Any) -> None:
        """Scroll the grid by whole cells, refilling new cells from the coarser level."""
        mx, my, mz = (int(t * self.resolution) for t in _xyz(translation))
        n = self.cells_per_axis

        for _ in range(max(mz, 0)):
            self._map.append(self._new_plane())
        for _ in range(max(-mz, 0)):
            self._map.appendleft(self._new_plane())
        for iz in self._shifted_indices(mz):
            for iy in range(n):
                for ix in range(n):
                    self.retain_points(iz, iy, ix)

        for plane in self._map:
            for _ in range(max(my, 0)):
                plane.append(self._new_row())
            for _ in range(max(-my, 0)):
                plane.appendleft(self._new_row())
        for iy in self._shifted_indices(my):
            for iz in range(n):
                for ix in range(n):
                    self.retain_points(iz, iy, ix)

        for plane in self._map:
            for row in plane:
                for _ in range(max(mx, 0)):
                    row.append(self._cell_factory(self.cell_capacity))
                for _ in range(max(-mx, 0)):
                    row.appendleft(self._cell_factory(self.cell_capacity))
        for ix in self._shifted_indices(mx):
            for iz in range(n):
                for iy in range(n):
                    self.retain_points(iz, iy, ix)

    def translate_map(self, translation: Any) -> None:
        """Accumulate a translation and scroll the grid once it reaches a full cell."""
        values = _xyz(translation)
        if any(math.isnan(v) for v in values):
            return
        self.translation_increment += np.array(values)
        for axis in range(3):
            increment = float(self.translation_increment[axis])
            if abs(increment) >= self.cell_size:
                displacement = float(int(increment / self.cell_size)) * self.cell_size
                map_displacement = [0.0, 0.0, 0.0]
                map_displacement[axis] = displacement
                self.translation_increment[axis] -= displacement
                self.move_map(map_displacement)

    def retain_points(self, iz: int, iy: int, ix: int) -> None:
        """Fill a freshly inserted cell with points and occupancy from the coarser level."""
        if self.coarser_level is None:
            return
        world = self.cell_origin(ix, iy, iz)
        found = self.coarser_level.get_cell(world)
        if found is None:
            return
        coarse_cell, offset = found
        for stored in list(coarse_cell.points):
            sx, sy, sz = _xyz(stored)
            map_coords = np.array([offset[0] + sx, offset[1] + sy, offset[2] + sz])
            if self.calc_indices(map_coords + self.translation_increment) == (ix, iy, iz):
                self.set(_with_xyz(stored, *map_coords.tolist()))
        self._cell_at(ix, iy, iz).occupancy = coarse_cell.occupancy

    def set_coarser_level(self, coarser_level: Optional["MapLevelBase"]) -> None:
        self.coarser_level = coarser_level

    # -- cell updates ----------------------------------------------------------

    def set(self, point: Any, update_occupancy: bool = True) -> bool:
        """Store a map-frame point in its cell; False if it lies outside the grid."""
        converted = self.to_cell_coordinate(point)
        if converted is None:
            return False
        local, (x, y, z) = converted
        cell = self._cell_at(x, y, z)
        if update_occupancy:
            if cell.occupancy <= OCCUPANCY_UNKNOWN:
                cell.points.clear()
            cell.occupancy = 1.0
        cell.add_point(local)
        return True

    def set_points(self, points: Iterable[Any], update_occupancy: bool = True) -> None:
        """Store every point of an iterable; points outside the grid are dropped."""
        for point in points:
            self.set(point, update_occupancy)

    def decrease_all(self, decrease_rate: float) -> None:
        """Lower the occupancy of every cell enabled in the update mask."""
        for ix, iy, iz, cell in self._iter_cells():
            if self._update_mask[iz, iy, ix]:
                cell.subtract_occupancy(decrease_rate)

    def evaluate_all(self, skip_scan: Optional[int] = None) -> None:
        """Recompute the surfel of every cell, optionally leaving out one scan."""
        for _, _, _, cell in self._iter_cells():
            cell.surfel.clear()
            if skip_scan is None:
                cell.evaluate()
            else:
                cell.evaluate(skip_scan)

    def unevaluate_all(self) -> None:
        for _, _, _, cell in self._iter_cells():
            cell.surfel.unevaluate()

    def set_all_occupancies(self, occupancy: float) -> None:
        for _, _, _, cell in self._iter_cells():
            cell.occupancy = occupancy

    def set_occupancy_parameters(
        self,
        clamping_thresh_min: float,
        clamping_thresh_max: float,
        prob_hit: float,
        prob_miss: float,
    ) -> None:
        self.clamping_thresh_min = clamping_thresh_min
        self.clamping_thresh_max = clamping_thresh_max
        self.prob_hit = prob_hit
        self.prob_miss = prob_miss

    def _shape(self) -> Sequence[int]:
        return tuple(self._update_mask.shape)