"""Read and bulk-edit queries over the cells of one map level."""

from __future__ import annotations

from typing import Any, List, Optional, Tuple

import numpy as np

from surfelmaps.map_level_base import OCCUPANCY_UNKNOWN, MapLevelBase, _xyz

_LOCAL_OCCUPANCY_THRESHOLD = 0.5


def _matches_scan(point: Any, scan_id: int, scan_line_id: Optional[int]) -> bool:
    """Whether a stored point carries the given scan (and scan line) label."""
    if point.scan_nr != scan_id:
        return False
    return scan_line_id is None or point.scanline_nr == scan_line_id


class MapLevelQueries(MapLevelBase):
    """A map level with queries for cells, offsets and stored points."""

    def _unshifted_origin(self, ix: int, iy: int, iz: int) -> np.ndarray:
        half = self.size / 2.0
        return np.array([ix / self.resolution - half, iy / self.resolution - half, iz / self.resolution - half])

    def _skip_or_clear(self, ix: int, iy: int, iz: int, cell: Any, omit_center: bool) -> bool:
        """Skip centre cells; clear and skip cells that are not occupied."""
        if omit_center and self.in_center(ix, iy, iz):
            return True
        if cell.occupancy <= OCCUPANCY_UNKNOWN:
            cell.points.clear()
            return True
        return False

    def get_local_cell_points(self, point: Any) -> Optional[Tuple[List[Any], np.ndarray]]:
        """Return the cell-frame points and the cell corner for a grid-frame point.

        The point is not shifted by the translation increment. None is returned
        when the point is outside the grid or its cell is not occupied enough.
        """
        indices = self.calc_indices(point)
        if indices is None:
            return None
        ix, iy, iz = indices
        cell = self._cell_at(ix, iy, iz)
        if cell.occupancy <= _LOCAL_OCCUPANCY_THRESHOLD:
            return None
        return list(cell.points), self._unshifted_origin(ix, iy, iz)

    def get_cell_points_at(self, point: Any) -> List[Any]:
        """Return the map-frame points of the cell at a grid-frame point."""
        indices = self.calc_indices(point)
        if indices is None:
            return []
        ix, iy, iz = indices
        cell = self._cell_at(ix, iy, iz)
        if cell.occupancy <= _LOCAL_OCCUPANCY_THRESHOLD:
            return []
        return [self.cell_to_map_frame(p, ix, iy, iz) for p in cell.points]

    def occupied_cell_offsets(self, omit_center: bool = False) -> List[np.ndarray]:
        """Return the map-frame corner of every occupied cell."""
        return [
            self.cell_origin(ix, iy, iz)
            for ix, iy, iz, cell in self._iter_cells()
            if cell.occupancy > OCCUPANCY_UNKNOWN and not (omit_center and self.in_center(ix, iy, iz))
        ]

    def cells_with_offset(
        self, omit_center: bool = False, occupancy_threshold: float = OCCUPANCY_UNKNOWN
    ) -> List[Tuple[Any, np.ndarray]]:
        """Return ``(cell, corner)`` pairs for cells above an occupancy threshold."""
        return [
            (cell, self.cell_origin(ix, iy, iz))
            for ix, iy, iz, cell in self._iter_cells()
            if cell.occupancy > occupancy_threshold and not (omit_center and self.in_center(ix, iy, iz))
        ]

    def occupied_cells_with_offset(self, omit_center: bool = False) -> List[Tuple[Any, np.ndarray]]:
        """Return ``(cell, corner)`` pairs for every occupied cell."""
        return self.cells_with_offset(omit_center, OCCUPANCY_UNKNOWN)

    def occupied_cells(self, omit_center: bool = False) -> List[Any]:
        """Return every cell with positive occupancy."""
        return [
            cell
            for ix, iy, iz, cell in self._iter_cells()
            if cell.occupancy > 0.0 and not (omit_center and self.in_center(ix, iy, iz))
        ]

    def cell_points_downsampled(self, points_per_cell: int) -> List[Any]:
        """Return a strided subset of the points of every occupied cell.

        Cells that are not occupied lose their stored points.
        """
        result: List[Any] = []
        for ix, iy, iz, cell in self._iter_cells():
            if cell.occupancy <= OCCUPANCY_UNKNOWN:
                cell.points.clear()
                continue
            stride = min(max(len(cell.points) // points_per_cell, 1), self.cell_capacity)
            counter = 0
            for stored in cell.points:
                previous = counter
                counter += 1
                if previous == stride:
                    result.append(self.cell_to_map_frame(stored, ix, iy, iz))
                    counter = 0
        return result

    def cell_points(self, omit_center: bool = False) -> List[Any]:
        """Return all points of occupied cells in the map frame.

        Cells that are not occupied lose their stored points.
        """
        result: List[Any] = []
        for ix, iy, iz, cell in self._iter_cells():
            if self._skip_or_clear(ix, iy, iz, cell, omit_center):
                continue
            result.extend(self.cell_to_map_frame(p, ix, iy, iz) for p in cell.points)
        return result

    def cell_points_by_scan_label(
        self, scan_id: int, scan_line_id: Optional[int] = None, omit_center: bool = False
    ) -> List[Any]:
        """Return the map-frame points carrying a scan label (and scan line label)."""
        result: List[Any] = []
        for ix, iy, iz, cell in self._iter_cells():
            if self._skip_or_clear(ix, iy, iz, cell, omit_center):
                continue
            result.extend(
                self.cell_to_map_frame(p, ix, iy, iz)
                for p in cell.points
                if _matches_scan(p, scan_id, scan_line_id)
            )
        return result

    def delete_cell_points_by_scan_label(
        self, scan_id: int, scan_line_id: Optional[int] = None, omit_center: bool = False
    ) -> List[Any]:
        """Remove the points carrying a scan label and return them in the map frame."""
        removed: List[Any] = []
        for ix, iy, iz, cell in self._iter_cells():
            if self._skip_or_clear(ix, iy, iz, cell, omit_center):
                continue
            kept = []
            for stored in cell.points:
                if _matches_scan(stored, scan_id, scan_line_id):
                    removed.append(self.cell_to_map_frame(stored, ix, iy, iz))
                else:
                    kept.append(stored)
            if len(kept) != len(cell.points):
                cell.points.clear()
                cell.points.extend(kept)
        return removed

    def num_cell_points(self) -> int:
        """Count the points stored in occupied cells."""
        return sum(len(cell.points) for _, _, _, cell in self._iter_cells() if cell.occupancy > OCCUPANCY_UNKNOWN)

    def get_cells_around(self, point: Any, level: int, neighbors: int) -> List[Tuple[Any, np.ndarray, int]]:
        """Return ``(cell, corner, level)`` for occupied cells around a map-frame point.

        An empty list is returned when the point is outside the grid or the
        neighbourhood crosses the grid border, so that a coarser level is used.
        """
        shifted = np.array(_xyz(point)) + self.translation_increment
        indices = self.calc_indices(shifted)
        if indices is None:
            return []
        ix, iy, iz = indices
        n = self.cells_per_axis
        span = range(-neighbors, neighbors + 1)
        found: List[Tuple[Any, np.ndarray, int]] = []
        for dx in span:
            for dy in span:
                for dz in span:
                    jx, jy, jz = ix + dx, iy + dy, iz + dz
                    if not all(0 <= j < n for j in (jx, jy, jz)):
                        return []
                    cell = self._cell_at(jx, jy, jz)
                    if cell.occupancy > OCCUPANCY_UNKNOWN:
                        found.append((cell, self.cell_origin(jx, jy, jz), level))
        return found