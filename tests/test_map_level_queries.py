from collections import deque
from dataclasses import dataclass

import numpy as np
import pytest

from surfelmaps.map_level_queries import MapLevelQueries


@dataclass
class Point:
    x: float
    y: float
    z: float
    scan_nr: int = 0
    scanline_nr: int = 0


class Surfel:
    def clear(self):
        pass

    def unevaluate(self):
        pass


class Cell:
    def __init__(self, capacity):
        self.occupancy = 0.0
        self.points = deque(maxlen=capacity)
        self.surfel = Surfel()

    def add_point(self, point):
        self.points.append(point)

    def add_occupancy(self, delta):
        self.occupancy += delta

    def subtract_occupancy(self, delta):
        self.occupancy -= delta

    def evaluate(self, *args):
        pass


def make_level(size=4, resolution=1.0, capacity=100):
    return MapLevelQueries(size, resolution, capacity, Cell)


def coords(p):
    return (p.x, p.y, p.z)


def test_cell_points_round_trip():
    level = make_level()
    pts = [Point(0.5, 0.5, 0.5), Point(-1.25, 0.75, 1.5), Point(1.1, -0.3, -1.9)]
    level.set_points(pts)
    out = sorted(coords(p) for p in level.cell_points())
    expected = sorted(coords(p) for p in pts)
    assert len(out) == len(expected)
    for got, want in zip(out, expected):
        assert got == pytest.approx(want)


def test_round_trip_with_translation_increment():
    level = make_level()
    level.translate_map([0.3, -0.2, 0.1])
    p = Point(0.4, 0.6, -0.7)
    assert level.set(p)
    (out,) = level.cell_points()
    assert coords(out) == pytest.approx(coords(p))


def test_num_cell_points_counts_occupied_cells():
    level = make_level()
    level.set_points([Point(0.5, 0.5, 0.5), Point(0.6, 0.5, 0.5), Point(-1.5, -1.5, -1.5)])
    assert level.num_cell_points() == 3


def test_unoccupied_cells_are_cleared():
    level = make_level()
    p = Point(0.5, 0.5, 0.5)
    level.set(p, update_occupancy=False)
    cell, _ = level.get_cell(p, include_empty=True)
    assert len(cell.points) == 1
    assert level.num_cell_points() == 0
    assert level.cell_points() == []
    assert len(cell.points) == 0


def test_scan_label_filter():
    level = make_level()
    level.set_points(
        [
            Point(0.5, 0.5, 0.5, scan_nr=1, scanline_nr=0),
            Point(0.6, 0.5, 0.5, scan_nr=1, scanline_nr=2),
            Point(-0.5, 0.5, 0.5, scan_nr=2, scanline_nr=2),
        ]
    )
    by_scan = level.cell_points_by_scan_label(1)
    assert sorted(p.scanline_nr for p in by_scan) == [0, 2]
    by_line = level.cell_points_by_scan_label(1, 2)
    assert [(p.scan_nr, p.scanline_nr) for p in by_line] == [(1, 2)]
    assert coords(by_line[0]) == pytest.approx((0.6, 0.5, 0.5))


def test_delete_by_scan_label_removes_points():
    level = make_level()
    level.set_points([Point(0.5, 0.5, 0.5, scan_nr=1), Point(0.6, 0.5, 0.5, scan_nr=2)])
    removed = level.delete_cell_points_by_scan_label(1)
    assert [p.scan_nr for p in removed] == [1]
    assert coords(removed[0]) == pytest.approx((0.5, 0.5, 0.5))
    assert [p.scan_nr for p in level.cell_points()] == [2]
    assert level.delete_cell_points_by_scan_label(1) == []


def test_occupied_cell_offsets_match_cell_origin():
    level = make_level()
    p = Point(0.5, 0.5, 0.5)
    level.set(p)
    offsets = level.occupied_cell_offsets()
    assert len(offsets) == 1
    indices = level.calc_indices(p)
    np.testing.assert_allclose(offsets[0], level.cell_origin(*indices))


def test_cells_with_offset_threshold():
    level = make_level()
    level.set(Point(0.5, 0.5, 0.5))
    pairs = level.occupied_cells_with_offset()
    assert len(pairs) == 1
    cell, offset = pairs[0]
    found_cell, found_offset = level.get_cell(Point(0.5, 0.5, 0.5))
    assert cell is found_cell
    np.testing.assert_allclose(offset, found_offset)
    assert level.cells_with_offset(False, 1.0) == []


def test_omit_center():
    level = make_level(size=8)
    center = Point(0.5, 0.5, 0.5)
    border = Point(-3.5, -3.5, -3.5)
    level.set_points([center, border])
    assert level.in_center(*level.calc_indices(center))
    assert len(level.occupied_cells()) == 2
    assert len(level.occupied_cells(omit_center=True)) == 1
    kept = level.cell_points(omit_center=True)
    assert [coords(p) for p in kept] == [pytest.approx(coords(border))]


def test_downsampled_points_are_subset():
    level = make_level()
    pts = [Point(0.05 * i, 0.5, 0.5, scan_nr=i) for i in range(10)]
    level.set_points(pts)
    out = level.cell_points_downsampled(2)
    assert len(out) == 1
    assert out[0].scan_nr == 5
    assert len(out) <= len(pts)


def test_get_local_cell_points():
    level = make_level()
    level.set(Point(0.5, 0.25, 0.75))
    points, offset = level.get_local_cell_points(Point(0.5, 0.25, 0.75))
    assert [coords(p) for p in points] == [pytest.approx((0.5, 0.25, 0.75))]
    np.testing.assert_allclose(offset, level.cell_origin(2, 2, 2))
    assert level.get_local_cell_points(Point(-1.5, 0.5, 0.5)) is None
    assert level.get_local_cell_points(Point(10.0, 0.5, 0.5)) is None


def test_get_cell_points_at():
    level = make_level()
    p = Point(0.5, 0.25, 0.75)
    level.set(p)
    (out,) = level.get_cell_points_at(p)
    assert coords(out) == pytest.approx(coords(p))
    assert level.get_cell_points_at(Point(10.0, 0.0, 0.0)) == []


def test_get_cells_around_interior_and_border():
    level = make_level(size=8)
    p = Point(0.5, 0.5, 0.5)
    level.set(p)
    around = level.get_cells_around(p, 3, 1)
    assert len(around) == 1
    cell, offset, lvl = around[0]
    assert lvl == 3
    assert cell is level.get_cell(p)[0]
    level.set(Point(-3.5, -3.5, -3.5))
    assert level.get_cells_around(Point(-3.5, -3.5, -3.5), 0, 1) == []
    assert len(level.get_cells_around(Point(-3.5, -3.5, -3.5), 0, 0)) == 1