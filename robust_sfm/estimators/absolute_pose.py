"""
Absolute pose estimators: calibrated P3P and camera position from a known
orientation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from robust_sfm.geometry.pnp import p3p, position_from_known_orientation, refine_pose_pnp
from robust_sfm.solvers.estimator import Estimator
from robust_sfm.solvers.ransac_variants import RansacType, create_and_initialize_ransac_variant
from robust_sfm.solvers.sample_consensus import RansacParameters, RansacSummary

logger = logging.getLogger(__name__)


@dataclass
class CalibratedAbsolutePose:
    """World-to-camera rotation and translation (x_cam = R X + t)."""

    rotation: np.ndarray
    translation: np.ndarray

    @property
    def position(self) -> np.ndarray:
        return -self.rotation.T @ self.translation


class CalibratedAbsolutePoseEstimator(Estimator):
    """
    P3P inside RANSAC.

    Data rows are (x, y, X, Y, Z): a normalized image point and its 3D point.
    The error is the squared normalized reprojection error; points behind the
    camera get an infinite error.
    """

    sample_size = 3
    max_num_models = 4

    def estimate_model(self, data: np.ndarray) -> List[CalibratedAbsolutePose]:
        return [
            CalibratedAbsolutePose(R, t)
            for R, t in p3p(data[:, :2], data[:, 2:5])
        ]

    def error(self, datum: np.ndarray, model: CalibratedAbsolutePose) -> float:
        return float(self.residuals(datum.reshape(1, -1), model)[0])

    def residuals(self, data: np.ndarray, model: CalibratedAbsolutePose) -> np.ndarray:
        points_cam = data[:, 2:5] @ model.rotation.T + model.translation
        depth = points_cam[:, 2]
        with np.errstate(divide="ignore", invalid="ignore"):
            projected = points_cam[:, :2] / depth[:, None]
        errors = np.sum((projected - data[:, :2]) ** 2, axis=1)
        return np.where(depth > 0, errors, np.inf)

    def refine_model(
        self,
        data: np.ndarray,
        model: CalibratedAbsolutePose,
    ) -> Optional[CalibratedAbsolutePose]:
        refined = refine_pose_pnp(data[:, :2], data[:, 2:5], model.rotation, model.translation)
        if refined is None:
            return None
        return CalibratedAbsolutePose(*refined)


class PositionFromKnownOrientationEstimator(Estimator):
    """
    Camera centre from rays whose world orientation is already known.

    Data rows are (dx, dy, dz, X, Y, Z): a world-frame viewing ray and the 3D
    point it should pass through. The error is the squared ratio of the
    point's distance from the ray to its depth along the ray, which matches
    the squared normalized reprojection error for small deviations.
    """

    sample_size = 2
    max_num_models = 1

    def estimate_model(self, data: np.ndarray) -> List[np.ndarray]:
        return [position_from_known_orientation(data[:, :3], data[:, 3:6])]

    def error(self, datum: np.ndarray, model: np.ndarray) -> float:
        return float(self.residuals(datum.reshape(1, -1), model)[0])

    def residuals(self, data: np.ndarray, model: np.ndarray) -> np.ndarray:
        d = data[:, :3] / np.linalg.norm(data[:, :3], axis=1, keepdims=True)
        v = data[:, 3:6] - model
        along = np.sum(v * d, axis=1)
        perp_sq = np.sum(v * v, axis=1) - along**2
        with np.errstate(divide="ignore", invalid="ignore"):
            errors = np.maximum(perp_sq, 0.0) / along**2
        return np.where(along > 0, errors, np.inf)

    def refine_model(self, data: np.ndarray, model: np.ndarray) -> Optional[np.ndarray]:
        return position_from_known_orientation(data[:, :3], data[:, 3:6])


def estimate_calibrated_absolute_pose_robust(
    params: RansacParameters,
    ransac_type: RansacType | str,
    normalized_points: np.ndarray,
    world_points: np.ndarray,
) -> Tuple[bool, Optional[CalibratedAbsolutePose], RansacSummary]:
    """
    Robust calibrated absolute pose from 2D-3D correspondences.

    Args:
        params: RANSAC parameters; `error_thresh` is a squared normalized
            reprojection error (pixels^2 / focal^2).
        ransac_type: Which sample-consensus variant to run.
        normalized_points: Normalized image points (N, 2).
        world_points: 3D points (N, 3).

    Returns:
        Tuple of (success, pose, summary).
    """
    data = np.hstack(
        [
            np.asarray(normalized_points, dtype=np.float64).reshape(-1, 2),
            np.asarray(world_points, dtype=np.float64).reshape(-1, 3),
        ]
    )
    ransac = create_and_initialize_ransac_variant(
        ransac_type, params, CalibratedAbsolutePoseEstimator()
    )
    return ransac.estimate(data)


def estimate_position_with_known_orientation_robust(
    params: RansacParameters,
    ransac_type: RansacType | str,
    world_rays: np.ndarray,
    world_points: np.ndarray,
) -> Tuple[bool, Optional[np.ndarray], RansacSummary]:
    """Robust camera position given world-frame viewing rays and their 3D points."""
    data = np.hstack(
        [
            np.asarray(world_rays, dtype=np.float64).reshape(-1, 3),
            np.asarray(world_points, dtype=np.float64).reshape(-1, 3),
        ]
    )
    ransac = create_and_initialize_ransac_variant(
        ransac_type, params, PositionFromKnownOrientationEstimator()
    )
    return ransac.estimate(data)


__all__ = [
    "CalibratedAbsolutePose",
    "CalibratedAbsolutePoseEstimator",
    "PositionFromKnownOrientationEstimator",
    "estimate_calibrated_absolute_pose_robust",
    "estimate_position_with_known_orientation_robust",
]
