# surfelmaps

This package provides grid map levels for 3-D laser data and surfel-based scan registration.

A map level is a cube of grid cells centred on the robot. Each cell stores the
points that fall into it in cell-local coordinates, together with an occupancy
value and a surfel. The level can follow the robot by scrolling whole slices of
cells. When new cells come into view, it can fill them from a coarser level.

Registration aligns a scene map with a model map. Each scene surfel is paired
with the model surfels around its transformed mean. The pose is then fitted
with Levenberg–Marquardt over a soft-assignment likelihood.

## Installation

```
pip install .
```

The only runtime dependency is numpy. To install pytest as well:

```
pip install ".[test]"
```

## Modules

- `surfelmaps.map_level_base` provides `MapLevelBase`. It keeps the grid as ring
  buffers indexed `[z][y][x]`, and it handles:
  - coordinates: `calc_indices`, `to_cell_coordinate`, `cell_origin`,
    `cell_to_map_frame`, `get_cell`, `in_center`;
  - point insertion: `set`, `set_points`;
  - scrolling: `translate_map`, `move_map`, plus `retain_points` and
    `set_coarser_level`, which refill new cells from a coarser level;
  - occupancy: `decrease_all`, `set_all_occupancies`, `set_occupancy_parameters`;
  - surfel evaluation: `evaluate_all`, `unevaluate_all`;
  - copying: `copy`.
- `surfelmaps.map_level_queries` provides `MapLevelQueries`, which adds queries:
  - `cell_points`, `cell_points_downsampled`, `get_cell_points_at`,
    `get_local_cell_points`;
  - `occupied_cells`, `occupied_cell_offsets`, `cells_with_offset`,
    `occupied_cells_with_offset`;
  - filtering by scan label: `cell_points_by_scan_label`,
    `delete_cell_points_by_scan_label`;
  - `num_cell_points`;
  - `get_cells_around`, the neighbourhood lookup around a point.

  Queries that walk all cells also clear the stored points of cells that are
  not occupied.
- `surfelmaps.map_level` provides `MapLevel`. It adds ray insertion with voxel
  traversal (`insert_ray`), update masks (`set_update_mask`,
  `set_conical_update_mask`) and end-point flags (`set_all_end_point_flags`,
  `set_end_point_flag`). It also defines the `DebugState` enum.
- `surfelmaps.transforms` converts between quaternions, rotation matrices,
  4x4 transforms and 6-vector poses `(tx, ty, tz, qx, qy, qz)`. It provides
  `quaternion_to_matrix`, `matrix_to_quaternion`, `transform_to_pose` and
  `pose_to_transform`.
- `surfelmaps.association` holds the registration data classes:
  `RegistrationParameters`, `CellInfo`, `SingleAssociation`,
  `SceneSurfelAssociation` and `RegistrationFunctionParameters`. It also has
  `associate`, which pairs each scene surfel with the model surfels in and
  around its cell, and `evaluate_associations`, which computes errors,
  soft-assignment weights and Jacobians.
- `surfelmaps.registration` provides `MultiResolutionSurfelRegistration` and
  `RegistrationError`.

## What you supply

The package contains no grid cell or surfel class, and no multi-resolution map
that combines several levels. You pass these in yourself.

### Cells

A level builds its cells through `cell_factory(cell_capacity)`. Each cell
needs the following.

| Needed by | Member | Kind |
|---|---|---|
| every level | `occupancy` | attribute, float |
| every level | `points` | container with `clear()`, `extend()`, `len()` and iteration |
| every level | `add_point(point)` | method |
| `decrease_all` | `subtract_occupancy(delta)` | method |
| `evaluate_all` | `evaluate()`, or `evaluate(skip_scan)` when a scan is skipped | method |
| `evaluate_all` | `surfel.clear()` | method |
| `unevaluate_all` | `surfel.unevaluate()` | method |
| `MapLevel` | `add_occupancy(delta)` | method |
| `MapLevel` | `is_end_point` | attribute |
| `MapLevel` | `debug_state` | attribute |
| `MapLevel` | `surfel.num_points`, `surfel.evaluated`, `surfel.mean`, `surfel.invcov` | surfel attributes |
| registration | `surfel.mean`, `surfel.cov`, `surfel.num_points` | surfel attributes |

### Points

A point is one of:

- an object with `x`, `y` and `z`, such as a dataclass or named tuple;
- a list;
- a tuple;
- a numpy array.

The other fields of the point are kept when its coordinates are rewritten. The
scan-label queries read `scan_nr` and `scanline_nr` from the point.

### Maps for registration

Registration takes model and scene maps with these methods:

- `is_evaluated()`;
- `occupied_cells_with_offset()`, returning `(cell, offset)` pairs;
- `num_cell_points()`;
- `get_cells(point, neighbors)`, returning `(cell, offset, level)` triples;
- `get_cell_size(level)`.

## Example: a map level

```python
from collections import deque
from typing import NamedTuple

from surfelmaps.map_level import MapLevel


class Point(NamedTuple):
    x: float
    y: float
    z: float


class Cell:
    def __init__(self, capacity):
        self.occupancy = 0.0
        self.points = deque(maxlen=capacity)
        self.surfel = None

    def add_point(self, point):
        self.points.append(point)


level = MapLevel(size_in_meters=4, resolution=2, cell_capacity=100, cell_factory=Cell)
level.set(Point(0.3, -0.2, 1.1))

level.num_cell_points()         # 1
level.occupied_cell_offsets()   # [array([ 0. , -0.5,  1. ])]
level.cell_points()             # [Point(x≈0.3, y≈-0.2, z≈1.1)]
```

## Example: registration

```python
import numpy as np

from surfelmaps.association import RegistrationParameters
from surfelmaps.registration import MultiResolutionSurfelRegistration

registration = MultiResolutionSurfelRegistration(RegistrationParameters())

# model and scene are evaluated surfel maps as described above
transform = registration.estimate_transformation(
    model, scene, np.eye(4), max_iterations=100, correspondences=None
)
covariance = registration.estimate_pose_covariance()
```

### Parameters

`RegistrationParameters` has these defaults:

| Parameter | Default |
|---|---|
| `associate_once` | `True` |
| `prior_prob` | `0.9` |
| `sigma_size_factor` | `0.45` |
| `soft_assoc_c1` | `1.0` |
| `soft_assoc_c2` | `8.0` |
| `soft_assoc_c3` | `1.0` |
| `max_iterations` | `100` |

### Pose prior and correspondences

`set_prior_pose` adds a Gaussian prior on the pose. Its covariance is diagonal.

Pass a pair of lists as `correspondences` to record matches. The lists receive
the model and scene means of the last evaluated matches, each stored as
`(position, (r, g, b))` and coloured by the match weight.

### Errors

`estimate_transformation` raises `RegistrationError` when:

- a map is not evaluated;
- no association carries weight;
- the pose leaves the valid quaternion range.

### Covariance

`estimate_pose_covariance_unscented` estimates the translational covariance
from a finite-difference Hessian of the error. It fills only the upper-left
3x3 block of the 6x6 result.

## Running the tests

```
pytest
```