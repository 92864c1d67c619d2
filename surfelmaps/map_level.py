"""Map level with ray casting and update masks for occupancy mapping."""

from __future__ import annotations

import enum
import math
from typing import Any, Optional

import numpy as np

from surfelmaps.map_level_base import _cell_local, _with_xyz, _xyz
from surfelmaps.map_level_queries import MapLevelQueries

MIN_SURFEL_POINTS = 10


class DebugState(enum.Enum):
    """Last classification a cell received while inserting rays."""

    UNKNOWN = "unknown"
    OCCUPIED = "occupied"
    FREE = "free"


class MapLevel(MapLevelQueries):
    """A map level that integrates sensor rays into cell occupancies.

    Besides the base cell interface, cells must provide ``is_end_point``,
    ``debug_state`` and a ``surfel`` with ``num_points``, ``evaluated``,
    ``mean`` (cell frame) and ``invcov``.
    """

    def insert_ray(self, point: Any, sensor_transform: Any) -> bool:
        """Mark the endpoint cell as hit and the traversed cells as free.

        Returns whether the endpoint lies inside the map.
        """
        px, py, pz = _xyz(point)
        if any(math.isnan(v) for v in (px, py, pz)):
            return False

        increment = self.translation_increment
        p_map = np.array([px, py, pz]) + increment
        origin = np.asarray(sensor_transform, dtype=float)[:3, 3] + increment
        direction = p_map - origin
        length = float(np.linalg.norm(direction))

        indices = self.calc_indices(origin)
        if indices is None:
            return False
        current = self.get_cell(origin, include_empty=True)
        if current is None:
            return False
        current_cell, current_offset = current

        endpoint_cell: Optional[Any] = None
        endpoint = self.get_cell((px, py, pz), include_empty=True)
        if endpoint is not None:
            endpoint_cell = endpoint[0]
            endpoint_cell.add_occupancy(self.prob_hit)
            if endpoint_cell.occupancy > self.clamping_thresh_max:
                endpoint_cell.occupancy = self.clamping_thresh_max
            local = [_cell_local(float(v), self.cell_size) for v in p_map]
            endpoint_cell.add_point(_with_xyz(point, *local))
            endpoint_cell.debug_state = DebugState.OCCUPIED
            if endpoint_cell is current_cell:
                return True

        endpoint_in_map = endpoint_cell is not None
        if length == 0.0:
            return endpoint_in_map
        direction = direction / length

        steps = []
        t_max = []
        t_delta = []
        for axis in range(3):
            d = float(direction[axis])
            step = 1 if d > 0.0 else (-1 if d < 0.0 else 0)
            steps.append(step)
            if step:
                border = float(current_offset[axis]) + step * self.cell_size * 0.5
                t_max.append((border - float(origin[axis])) / d)
                t_delta.append(self.cell_size / abs(d))
            else:
                t_max.append(math.inf)
                t_delta.append(math.inf)

        index = list(indices)
        n = self.cells_per_axis
        while True:
            if t_max[0] < t_max[1]:
                dim = 0 if t_max[0] < t_max[2] else 2
            else:
                dim = 1 if t_max[1] < t_max[2] else 2

            index[dim] += steps[dim]
            if not all(0 <= v < n for v in index):
                return endpoint_in_map

            cell = self._cell_at(*index)
            t_max[dim] += t_delta[dim]

            if endpoint_in_map and cell is endpoint_cell:
                break
            # the ray is already longer than the measured range
            if min(t_max) + self.cell_size > length:
                break
            if not cell.is_end_point:
                self._free_cell(cell, index, direction)

        return endpoint_in_map

    def _free_cell(self, cell: Any, index: list, direction: np.ndarray) -> None:
        surfel = cell.surfel
        if surfel.num_points > MIN_SURFEL_POINTS and surfel.evaluated:
            mean_in_map = np.asarray(surfel.mean, dtype=float) + self.cell_origin(*index)
            projected = direction * float(direction @ mean_in_map)
            diff = projected - mean_in_map
            dist = math.sqrt(float(diff @ np.asarray(surfel.invcov, dtype=float) @ diff))
            if dist < 1.0:
                cell.add_occupancy(self.prob_miss)
        else:
            cell.add_occupancy(self.prob_miss)

        if cell.occupancy < self.clamping_thresh_min:
            cell.occupancy = self.clamping_thresh_min
            cell.points.clear()
            cell.debug_state = DebugState.FREE

    def set_update_mask(self, update_mask: Any) -> None:
        """Replace the mask of cells that ``decrease_all`` may change."""
        mask = np.asarray(update_mask, dtype=bool)
        n = self.cells_per_axis
        if mask.shape != (n, n, n):
            raise ValueError(f"update mask must have shape {(n, n, n)}, got {mask.shape}")
        self._update_mask[...] = mask

    def set_conical_update_mask(self, position: Any, orientation: Any, angle: float) -> None:
        """Exclude cells at the far end of a cone from occupancy decrease."""
        position = np.array(_xyz(position))
        orientation = np.array(_xyz(orientation))
        coords = np.arange(self.cells_per_axis) / self.resolution - self.size / 2.0
        grid_z, grid_y, grid_x = np.meshgrid(coords, coords, coords, indexing="ij")
        centers = np.stack([grid_x, grid_y, grid_z], axis=-1) - self.translation_increment + self.cell_size / 2.0
        vec = centers - position

        length = float(np.linalg.norm(orientation))
        length2 = length * length
        with np.errstate(divide="ignore", invalid="ignore"):
            dot = vec @ orientation
            along = np.clip(dot / length2, 0.0, 1.0)
        dot = np.clip(dot, 0.0, length2)
        off_axis = vec - along[..., None] * orientation
        distance = np.linalg.norm(off_axis, axis=-1)
        limit = math.tan(angle / 2.0) * length

        hidden = (
            (dot > 0.0)
            & (dot <= length2)
            & (distance < limit)
            & (dot >= length2 - (self.cell_size / 2.0) ** 2)
        )
        self._update_mask[hidden] = False

    def set_all_end_point_flags(self, end_point: bool) -> None:
        for _, _, _, cell in self._iter_cells():
            cell.is_end_point = end_point

    def set_end_point_flag(self, point: Any, sensor_transform: Any = None) -> None:
        """Flag the cell containing a scan endpoint so rays do not clear it."""
        coords = _xyz(point)
        if any(math.isnan(v) for v in coords):
            return
        found = self.get_cell(coords, include_empty=True)
        if found is not None:
            found[0].is_end_point = True