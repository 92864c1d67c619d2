"""Levenberg-Marquardt registration of a scene surfel map onto a model surfel map."""

from __future__ import annotations

import logging
import math
import sys
from typing import Any, Iterator, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from surfelmaps.association import (
    CellInfo,
    RegistrationFunctionParameters,
    RegistrationParameters,
    SceneSurfelAssociation,
    SingleAssociation,
    associate,
    evaluate_associations,
)
from surfelmaps.transforms import pose_to_transform, transform_to_pose

logger = logging.getLogger(__name__)

_MIN_SUM_WEIGHT = 1e-10
_LM_TAU = 10e-5
_LM_MIN_DELTA = 1e-3
_COVARIANCE_STEP = 0.1


class RegistrationError(RuntimeError):
    """Raised when two surfel maps cannot be registered."""


class RegistrationMap(Protocol):
    """What registration needs from the model and scene maps."""

    def is_evaluated(self) -> bool: ...

    def occupied_cells_with_offset(self) -> Sequence[Tuple[Any, Any]]: ...

    def num_cell_points(self) -> int: ...

    def get_cells(self, point: Any, neighbors: int) -> Sequence[Tuple[Any, np.ndarray, int]]: ...

    def get_cell_size(self, level: int) -> float: ...


def _inverse(matrix: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.inv(matrix)
    except np.linalg.LinAlgError:
        return np.full(matrix.shape, np.nan)


def _matched(associations: Sequence[SceneSurfelAssociation]) -> Iterator[SingleAssociation]:
    for assoc in associations:
        for single in assoc.associations:
            if single.match:
                yield single


def _channel(value: float) -> int:
    if math.isnan(value):
        return 0
    return int(min(max(value, 0.0), 255.0))


def _begin_correspondences(params: RegistrationFunctionParameters) -> None:
    if params.correspondences_source is not None:
        params.correspondences_source.clear()
    if params.correspondences_target is not None:
        params.correspondences_target.clear()


def _record_correspondence(params: RegistrationFunctionParameters, single: SingleAssociation) -> None:
    """Store the model and scene means of a match, coloured by its weight."""
    if params.correspondences_source is None or params.correspondences_target is None:
        return
    weight = float(single.weight)
    color = (_channel(weight * 255.0), 0, _channel((1.0 - weight) * 255.0))
    params.correspondences_source.append((np.asarray(single.model_mean, dtype=float).copy(), color))
    params.correspondences_target.append((np.asarray(single.scene_mean, dtype=float).copy(), color))


def _warn_if_unstable(x: np.ndarray) -> None:
    if float(x[3] ** 2 + x[4] ** 2 + x[5] ** 2) > 1.0:
        logger.error("quaternion not stable")


class MultiResolutionSurfelRegistration:
    """Estimates the rigid transform aligning a scene surfel map to a model map."""

    def __init__(self, params: Optional[RegistrationParameters] = None) -> None:
        self.use_prior_pose = False
        self.prior_pose_mean = np.zeros(6)
        self.prior_pose_invcov = np.eye(6)
        self._last_cov = np.zeros((6, 6))
        self.set_registration_parameters(params if params is not None else RegistrationParameters())

    def set_registration_parameters(self, params: RegistrationParameters) -> None:
        self.associate_once = params.associate_once
        self.prior_prob = params.prior_prob
        self.sigma_size_factor = params.sigma_size_factor
        self.soft_assoc_c1 = params.soft_assoc_c1
        self.soft_assoc_c2 = params.soft_assoc_c2
        self.soft_assoc_c3 = params.soft_assoc_c3
        self.max_iterations = params.max_iterations

    def set_prior_pose(self, enabled: bool, prior_pose_mean: Any, prior_pose_variances: Any) -> None:
        """Add a Gaussian prior on the pose with a diagonal covariance."""
        self.use_prior_pose = enabled
        self.prior_pose_mean = np.asarray(prior_pose_mean, dtype=float).reshape(6)
        variances = np.asarray(prior_pose_variances, dtype=float).reshape(6)
        self.prior_pose_invcov = np.diag(1.0 / variances)

    # -- error functions --------------------------------------------------------

    def _finish_error(self, sum_error: float, sum_weight: float) -> float:
        if sum_weight <= _MIN_SUM_WEIGHT:
            raise RegistrationError("no usable surfel associations")
        return sum_error / sum_weight

    def error_function(
        self,
        x: Any,
        params: RegistrationFunctionParameters,
        associations: Sequence[SceneSurfelAssociation],
    ) -> float:
        """Return the weighted mean matching error at pose ``x``.

        Raises RegistrationError when no association carries weight.
        """
        x = np.asarray(x, dtype=float).reshape(6)
        _warn_if_unstable(x)
        evaluate_associations(associations, params, x, derivs=False)
        _begin_correspondences(params)

        sum_error = 0.0
        sum_weight = 0.0
        for single in _matched(associations):
            weight = float(single.weight)
            if math.isnan(single.error) or math.isnan(weight):
                logger.debug("skipping nan values")
            else:
                sum_error += weight * single.error
                sum_weight += weight
            _record_correspondence(params, single)

        f = self._finish_error(sum_error, sum_weight)
        if self.use_prior_pose:
            diff = self.prior_pose_mean - x
            f += float(diff @ self.prior_pose_invcov @ diff)
        return f

    def error_function_with_derivatives(
        self,
        x: Any,
        params: RegistrationFunctionParameters,
        associations: Sequence[SceneSurfelAssociation],
    ) -> Tuple[float, np.ndarray, np.ndarray]:
        """Return the error, its gradient term and its Gauss-Newton Hessian at ``x``."""
        x = np.asarray(x, dtype=float).reshape(6)
        _warn_if_unstable(x)
        evaluate_associations(associations, params, x, derivs=True)
        _begin_correspondences(params)

        df = np.zeros(6)
        d2f = np.zeros((6, 6))
        sum_error = 0.0
        sum_weight = 0.0
        with np.errstate(invalid="ignore", over="ignore"):
            for single in _matched(associations):
                weight = float(single.weight)
                if math.isnan(single.error) or math.isnan(weight):
                    logger.debug("skipping nan values")
                else:
                    jtw = weight * single.df_dx.T @ single.W
                    df += jtw @ (single.z - single.f)
                    d2f += jtw @ single.df_dx
                    sum_error += weight * single.error
                    sum_weight += weight
                _record_correspondence(params, single)

        f = self._finish_error(sum_error, sum_weight)
        df = df / sum_weight
        d2f = d2f / sum_weight

        if self.use_prior_pose:
            diff = x - self.prior_pose_mean
            f += float(diff @ self.prior_pose_invcov @ diff)
            df = df + self.prior_pose_invcov @ (self.prior_pose_mean - x)
            d2f = d2f + self.prior_pose_invcov
        logger.debug("df %s d2f %s sum_weight %s sum_error %s", df, d2f, sum_weight, sum_error)
        return f, df, d2f

    # -- estimation -------------------------------------------------------------

    def _function_parameters(
        self, model: RegistrationMap, scene: RegistrationMap, transform: np.ndarray
    ) -> RegistrationFunctionParameters:
        scene_cells: List[CellInfo] = [
            CellInfo(cell=cell, offset=np.asarray(offset, dtype=float))
            for cell, offset in scene.occupied_cells_with_offset()
        ]
        return RegistrationFunctionParameters(
            model=model,
            scene=scene,
            scene_cells=scene_cells,
            model_num_points=float(model.num_cell_points()),
            scene_num_points=float(len(scene_cells)),
            transform=transform,
            prior_prob=self.prior_prob,
            sigma_size_factor=self.sigma_size_factor,
            soft_assoc_c1=self.soft_assoc_c1,
            soft_assoc_c2=self.soft_assoc_c2,
            soft_assoc_c3=self.soft_assoc_c3,
        )

    def estimate_transformation(
        self,
        model: RegistrationMap,
        scene: RegistrationMap,
        transform: Any,
        max_iterations: Optional[int] = None,
        correspondences: Optional[Tuple[list, list]] = None,
    ) -> np.ndarray:
        """Refine ``transform`` (scene to model) and return the result.

        ``correspondences`` may be a pair of lists that receive the model and
        scene means of the last evaluated matches, each as ``(position, rgb)``.
        Raises RegistrationError if the maps are not evaluated or the
        optimisation fails.
        """
        if not model.is_evaluated():
            raise RegistrationError("model map not evaluated")
        if not scene.is_evaluated():
            raise RegistrationError("scene map not evaluated")
        if max_iterations is None:
            max_iterations = self.max_iterations

        transform = np.array(transform, dtype=float)
        self._last_cov = np.zeros((6, 6))
        params = self._function_parameters(model, scene, transform)
        if correspondences is not None:
            params.correspondences_source, params.correspondences_target = correspondences

        x, params.last_w_sign = transform_to_pose(transform)
        identity6 = np.eye(6)
        mu = -1.0
        nu = 2.0
        last_error = sys.float_info.max
        df = np.zeros(6)
        d2f = np.zeros((6, 6))
        associations: List[SceneSurfelAssociation] = []
        reassociate = True
        reevaluate_gradient = True

        for iteration in range(max_iterations):
            logger.debug("transform at iteration %d %s", iteration, transform)
            if reevaluate_gradient:
                if not self.associate_once or reassociate:
                    associations = associate(params.scene_cells, model, transform, self.sigma_size_factor)
                last_error, df, d2f = self.error_function_with_derivatives(x, params, associations)
            reevaluate_gradient = False

            if mu < 0:
                mu = _LM_TAU * max(float(d2f.max()), float(-d2f.min()))

            delta_x = np.zeros(6)
            if abs(float(np.linalg.det(d2f))) > np.finfo(float).eps:
                delta_x = _inverse(d2f + mu * identity6) @ df

            if float(np.linalg.norm(delta_x)) < _LM_MIN_DELTA:
                if reassociate:
                    self._last_cov = _inverse(d2f)
                    break
                reassociate = True
                reevaluate_gradient = True
            else:
                reassociate = False

            current = pose_to_transform(x, params.last_w_sign)
            delta = pose_to_transform(delta_x, 1.0)
            x_new, _ = transform_to_pose(delta @ current)

            new_error = self.error_function(x_new, params, associations)
            denominator = float(delta_x @ (mu * delta_x + df))
            rho = (last_error - new_error) / denominator if denominator != 0.0 else math.nan

            if rho > 0:
                x = x_new
                self._last_cov = _inverse(d2f)
                mu *= max(0.333, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                reevaluate_gradient = True
            else:
                mu *= nu
                nu *= 2.0

            qx, qy, qz = (float(v) for v in x[3:])
            if 1.0 - qx * qx - qy * qy - qz * qz < 0.0 or max(abs(qx), abs(qy), abs(qz)) > 1.0:
                raise RegistrationError("pose estimate left the valid rotation range")
            transform = pose_to_transform(x, params.last_w_sign)

        return transform

    def estimate_pose_covariance(self) -> np.ndarray:
        """Return the pose covariance of the last registration."""
        return self._last_cov.copy()

    def estimate_pose_covariance_unscented(
        self, model: RegistrationMap, scene: RegistrationMap, transform: Any
    ) -> np.ndarray:
        """Estimate the translational covariance from a finite-difference Hessian.

        Only the upper-left 3x3 block of the returned 6x6 matrix is filled.
        """
        transform = np.array(transform, dtype=float)
        h = _COVARIANCE_STEP
        pose, qw_sign = transform_to_pose(transform)
        params = self._function_parameters(model, scene, transform)
        params.last_w_sign = qw_sign

        def error_at(x: np.ndarray, t: np.ndarray) -> float:
            associations = associate(params.scene_cells, model, t, self.sigma_size_factor)
            try:
                return self.error_function(x, params, associations)
            except RegistrationError:
                return 0.0

        def shifted_error(*shifts: Tuple[int, float]) -> float:
            x = pose.copy()
            for index, amount in shifts:
                x[index] += amount
            return error_at(x, pose_to_transform(x, qw_sign))

        pose_cov = np.zeros((6, 6))
        error = error_at(pose, transform)
        for i in range(3):
            for j in range(i + 1):
                if i == j:
                    e_p2 = shifted_error((i, 2 * h))
                    e_p = shifted_error((i, h))
                    e_m2 = shifted_error((i, -2 * h))
                    e_m = shifted_error((i, -h))
                    pose_cov[i, i] = (-e_p2 + 16.0 * e_p - 30.0 * error + 16.0 * e_m - e_m2) / (12.0 * h * h)
                else:
                    e_pp = shifted_error((i, h), (j, h))
                    e_pm = shifted_error((i, h), (j, -h))
                    e_mp = shifted_error((i, -h), (j, h))
                    e_mm = shifted_error((i, -h), (j, -h))
                    value = (e_pp - e_pm - e_mp + e_mm) / (4.0 * h * h)
                    pose_cov[i, j] = value
                    pose_cov[j, i] = value

        pose_cov[:3, :3] = _inverse(pose_cov[:3, :3])
        return pose_cov