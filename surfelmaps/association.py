"""Data association between scene and model surfels and per-association error terms."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from surfelmaps.transforms import quaternion_to_matrix

# With soft assignment the model cell and its direct neighbours are candidates.
SOFT_ASSIGN_NEIGHBORS = 1

_PI3 = math.pi ** 3

_DR_QX = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, -2.0], [0.0, 2.0, 0.0]])
_DR_QY = np.array([[0.0, 0.0, 2.0], [0.0, 0.0, 0.0], [-2.0, 0.0, 0.0]])
_DR_QZ = np.array([[0.0, -2.0, 0.0], [2.0, 0.0, 0.0], [0.0, 0.0, 0.0]])


class SurfelMap(Protocol):
    """What registration needs from a surfel map."""

    def get_cells(self, point: Any, neighbors: int) -> Sequence[Tuple[Any, np.ndarray, int]]:
        """Return ``(cell, cell_offset, level)`` for occupied cells around a point."""
        ...

    def get_cell_size(self, level: int) -> float: ...


@dataclass
class RegistrationParameters:
    """Tuning of the surfel registration."""

    associate_once: bool = True
    prior_prob: float = 0.9
    sigma_size_factor: float = 0.45
    soft_assoc_c1: float = 1.0
    soft_assoc_c2: float = 8.0
    soft_assoc_c3: float = 1.0
    max_iterations: int = 100


@dataclass
class CellInfo:
    """A scene cell together with the map-frame offset of its corner."""

    cell: Any
    offset: np.ndarray


@dataclass
class SingleAssociation:
    """One candidate pairing of a scene surfel with a model surfel."""

    cell_scene: Any
    cell_model: Any
    model_mean: np.ndarray = field(default_factory=lambda: np.zeros(3))
    scene_mean: np.ndarray = field(default_factory=lambda: np.zeros(3))
    level: int = 0
    sigma: float = 1.0
    inv_sigma2: float = 1.0
    match: bool = True
    weight: float = 1.0
    error: float = 0.0
    z: np.ndarray = field(default_factory=lambda: np.zeros(3))
    f: np.ndarray = field(default_factory=lambda: np.zeros(3))
    df_dx: np.ndarray = field(default_factory=lambda: np.zeros((3, 6)))
    W: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))


@dataclass
class SceneSurfelAssociation:
    """All model candidates found for one scene surfel."""

    cell_scene: Any
    model_points: int = 0
    associations: List[SingleAssociation] = field(default_factory=list)


@dataclass
class RegistrationFunctionParameters:
    """State shared by the registration error functions."""

    model: Any = None
    scene: Any = None
    scene_cells: List[CellInfo] = field(default_factory=list)
    model_num_points: float = 0.0
    scene_num_points: float = 0.0
    transform: Optional[np.ndarray] = None
    prior_prob: float = 0.9
    sigma_size_factor: float = 0.45
    soft_assoc_c1: float = 1.0
    soft_assoc_c2: float = 8.0
    soft_assoc_c3: float = 1.0
    last_w_sign: float = 1.0
    correspondences_source: Optional[list] = None
    correspondences_target: Optional[list] = None


def _inverse(matrix: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.inv(matrix)
    except np.linalg.LinAlgError:
        return np.full(matrix.shape, np.nan)


def associate(
    scene_cells: Sequence[CellInfo],
    model: SurfelMap,
    transform: Any,
    sigma_size_factor: float,
) -> List[SceneSurfelAssociation]:
    """Pair every scene surfel with the model surfels around its transformed mean."""
    t = np.asarray(transform, dtype=float)
    rotation, translation = t[:3, :3], t[:3, 3]
    result: List[SceneSurfelAssociation] = []

    for info in scene_cells:
        scene_mean = np.asarray(info.offset, dtype=float) + np.asarray(info.cell.surfel.mean, dtype=float)
        transformed = rotation @ scene_mean + translation
        assoc = SceneSurfelAssociation(cell_scene=info.cell)

        candidates = list(model.get_cells(transformed, SOFT_ASSOC_NEIGHBORS_OR_DEFAULT()))
        level = candidates[0][2] if candidates else 0
        sigma = sigma_size_factor * model.get_cell_size(level)
        inv_sigma2 = 1.0 / (sigma * sigma) if sigma != 0.0 else math.inf

        for cell, offset, _ in candidates:
            model_mean = np.asarray(offset, dtype=float) + np.asarray(cell.surfel.mean, dtype=float)
            dist2 = float(np.sum((model_mean - transformed) ** 2))
            if not dist2 < np.finfo(float).max:
                continue
            assoc.associations.append(
                SingleAssociation(
                    cell_scene=info.cell,
                    cell_model=cell,
                    model_mean=model_mean,
                    scene_mean=scene_mean.copy(),
                    level=level,
                    sigma=sigma,
                    inv_sigma2=inv_sigma2,
                )
            )
            assoc.model_points += cell.surfel.num_points
        result.append(assoc)
    return result


def SOFT_ASSOC_NEIGHBORS_OR_DEFAULT() -> int:  # noqa: N802
    """Number of neighbouring cells searched on each side during association."""
    return SOFT_ASSIGN_NEIGHBORS


def evaluate_associations(
    associations: Sequence[SceneSurfelAssociation],
    params: RegistrationFunctionParameters,
    x: Any,
    derivs: bool = False,
) -> None:
    """Compute errors, soft-assignment weights and optionally Jacobians at pose ``x``.

    ``x`` is ``(tx, ty, tz, qx, qy, qz)``; the sign of ``qw`` is taken from
    ``params.last_w_sign``. The associations are updated in place.
    """
    pose = np.asarray(x, dtype=float).reshape(-1)
    tx, ty, tz, qx, qy, qz = (float(v) for v in pose[:6])
    remainder = 1.0 - qx * qx - qy * qy - qz * qz
    qw = params.last_w_sign * math.sqrt(remainder) if remainder >= 0.0 else math.nan

    rotation = quaternion_to_matrix(qw, qx, qy, qz)
    rotation_t = rotation.T
    translation = np.array([tx, ty, tz])
    identity = np.eye(3)

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        for assoc in associations:
            _evaluate_one(assoc, params, rotation, rotation_t, translation, identity, derivs)


def _evaluate_one(
    assoc: SceneSurfelAssociation,
    params: RegistrationFunctionParameters,
    rotation: np.ndarray,
    rotation_t: np.ndarray,
    translation: np.ndarray,
    identity: np.ndarray,
    derivs: bool,
) -> None:
    c1 = np.float64(params.soft_assoc_c1)
    c2 = np.float64(params.soft_assoc_c2)
    sigma = 1.0

    for single in assoc.associations:
        sigma = single.sigma
        if not single.match:
            return
        mean_scene = np.asarray(single.scene_mean, dtype=float)
        mean_model = np.asarray(single.model_mean, dtype=float)

        cov_scene = 0.0001 * float(np.linalg.norm(mean_scene)) * identity + np.asarray(
            single.cell_scene.surfel.cov, dtype=float
        )
        cov_model = np.asarray(single.cell_model.surfel.cov, dtype=float)

        transformed = rotation @ mean_scene + translation
        diff = mean_model - transformed

        cov = cov_model + rotation @ cov_scene @ rotation_t
        invcov = _inverse(cov)

        single.error = float(diff @ invcov @ diff)
        single.z = mean_model.copy()
        single.f = transformed

        cov_ps = cov + single.sigma * single.sigma * identity
        invcov_ps = _inverse(cov_ps)
        num_points = np.float64(single.cell_model.surfel.num_points)
        single.weight = float(
            num_points * c1 / np.sqrt(c2 * _PI3 * np.linalg.det(cov_ps)) * np.exp(-0.5 * float(diff @ invcov_ps @ diff))
        )

        if derivs:
            df_dx = np.zeros((3, 6))
            df_dx[:, :3] = identity
            df_dx[:, 3] = _DR_QX @ transformed
            df_dx[:, 4] = _DR_QY @ transformed
            df_dx[:, 5] = _DR_QZ @ transformed
            single.df_dx = df_dx
            single.W = invcov

    cov_scene_total = rotation @ np.asarray(assoc.cell_scene.surfel.cov, dtype=float) @ rotation_t + sigma * sigma * identity

    prior = np.float64(params.prior_prob)
    point_ratio = np.float64(params.model_num_points) / np.float64(params.scene_num_points)
    sum_weight = (prior / (np.float64(1.0) - prior)) * point_ratio * c1 / np.sqrt(
        c2 * _PI3 * np.linalg.det(cov_scene_total)
    )
    sum_weight = float(sum_weight) + sum(s.weight for s in assoc.associations if s.match)

    if sum_weight > 0.0:
        scale = float(assoc.cell_scene.surfel.num_points) / sum_weight
        for single in assoc.associations:
            if single.match:
                single.weight *= scale