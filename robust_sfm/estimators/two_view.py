"""
Two-view estimators (fundamental, essential, relative pose, homography)
and their robust wrappers.

Data rows are (x1, y1, x2, y2): pixels for F and H, normalized image
coordinates for E and relative pose.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from robust_sfm.errors import DegenerateModel
from robust_sfm.geometry.essential import (
    count_points_in_front,
    extract_RT_essential_matrix,
    five_point_essential_matrix,
    linear_essential_matrix,
)
from robust_sfm.geometry.fundamental import (
    eight_point_fundamental_matrix,
    sampson_distance_sq,
    seven_point_fundamental_matrix,
)
from robust_sfm.geometry.homography import dlt_homography, symmetric_transfer_error_sq
from robust_sfm.solvers.estimator import Estimator
from robust_sfm.solvers.ransac_variants import RansacType, create_and_initialize_ransac_variant
from robust_sfm.solvers.sample_consensus import RansacParameters, RansacSummary

logger = logging.getLogger(__name__)


def correspondences(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """Stack matched points into (N, 4) rows."""
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    if len(pts1) != len(pts2):
        raise ValueError(f"Point sets differ in size: {len(pts1)} vs {len(pts2)}")
    return np.hstack([pts1, pts2])


class FundamentalMatrixEstimator(Estimator):
    """Normalized 8-point algorithm."""

    sample_size = 8
    max_num_models = 1

    def estimate_model(self, data: np.ndarray) -> List[np.ndarray]:
        return [eight_point_fundamental_matrix(data[:, :2], data[:, 2:4])]

    def error(self, datum: np.ndarray, model: np.ndarray) -> float:
        return float(self.residuals(datum.reshape(1, -1), model)[0])

    def residuals(self, data: np.ndarray, model: np.ndarray) -> np.ndarray:
        return sampson_distance_sq(model, data[:, :2], data[:, 2:4])

    def refine_model(self, data: np.ndarray, model: np.ndarray) -> Optional[np.ndarray]:
        return eight_point_fundamental_matrix(data[:, :2], data[:, 2:4])


class SevenPointFundamentalMatrixEstimator(FundamentalMatrixEstimator):
    sample_size = 7
    max_num_models = 3

    def estimate_model(self, data: np.ndarray) -> List[np.ndarray]:
        return seven_point_fundamental_matrix(data[:, :2], data[:, 2:4])


class EssentialMatrixEstimator(Estimator):
    """Five-point algorithm on normalized coordinates."""

    sample_size = 5
    max_num_models = 10

    def estimate_model(self, data: np.ndarray) -> List[np.ndarray]:
        return five_point_essential_matrix(data[:, :2], data[:, 2:4])

    def error(self, datum: np.ndarray, model: np.ndarray) -> float:
        return float(self.residuals(datum.reshape(1, -1), model)[0])

    def residuals(self, data: np.ndarray, model: np.ndarray) -> np.ndarray:
        return sampson_distance_sq(model, data[:, :2], data[:, 2:4])

    def refine_model(self, data: np.ndarray, model: np.ndarray) -> Optional[np.ndarray]:
        if len(data) < 8:
            return None
        return linear_essential_matrix(data[:, :2], data[:, 2:4])


@dataclass
class RelativePose:
    """
    Relative pose between two calibrated cameras.

    `rotation` maps camera-1 coordinates to camera-2 coordinates and
    `position` is the unit-norm camera-2 centre in camera-1 coordinates.
    """

    essential_matrix: np.ndarray
    rotation: np.ndarray
    position: np.ndarray

    @property
    def translation(self) -> np.ndarray:
        return -self.rotation @ self.position


class RelativePoseEstimator(Estimator):
    """Five-point essential matrix plus cheirality-based pose disambiguation."""

    sample_size = 5
    max_num_models = 10

    def _poses_from_essential(self, E: np.ndarray, data: np.ndarray) -> RelativePose:
        R, t, _ = extract_RT_essential_matrix(E, data[:, :2], data[:, 2:4])
        return RelativePose(essential_matrix=E, rotation=R, position=-R.T @ t)

    def estimate_model(self, data: np.ndarray) -> List[RelativePose]:
        poses = []
        for E in five_point_essential_matrix(data[:, :2], data[:, 2:4]):
            try:
                poses.append(self._poses_from_essential(E, data))
            except DegenerateModel:
                continue
        return poses

    def error(self, datum: np.ndarray, model: RelativePose) -> float:
        return float(self.residuals(datum.reshape(1, -1), model)[0])

    def residuals(self, data: np.ndarray, model: RelativePose) -> np.ndarray:
        errors = sampson_distance_sq(model.essential_matrix, data[:, :2], data[:, 2:4])
        _, in_front = count_points_in_front(
            model.rotation, model.translation, data[:, :2], data[:, 2:4]
        )
        return np.where(in_front, errors, np.inf)

    def refine_model(self, data: np.ndarray, model: RelativePose) -> Optional[RelativePose]:
        if len(data) < 8:
            return None
        return self._poses_from_essential(linear_essential_matrix(data[:, :2], data[:, 2:4]), data)


class HomographyEstimator(Estimator):
    """Normalized 4-point DLT."""

    sample_size = 4
    max_num_models = 1

    def estimate_model(self, data: np.ndarray) -> List[np.ndarray]:
        return [dlt_homography(data[:, :2], data[:, 2:4])]

    def error(self, datum: np.ndarray, model: np.ndarray) -> float:
        return float(self.residuals(datum.reshape(1, -1), model)[0])

    def residuals(self, data: np.ndarray, model: np.ndarray) -> np.ndarray:
        return symmetric_transfer_error_sq(model, data[:, :2], data[:, 2:4])

    def refine_model(self, data: np.ndarray, model: np.ndarray) -> Optional[np.ndarray]:
        return dlt_homography(data[:, :2], data[:, 2:4])


def _run(
    estimator: Estimator,
    params: RansacParameters,
    ransac_type: RansacType | str,
    data: np.ndarray,
) -> Tuple[bool, object, RansacSummary]:
    ransac = create_and_initialize_ransac_variant(ransac_type, params, estimator)
    return ransac.estimate(data)


def estimate_fundamental_matrix_robust(
    params: RansacParameters,
    ransac_type: RansacType | str,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> Tuple[bool, Optional[np.ndarray], RansacSummary]:
    """
    Robustly estimate a fundamental matrix from pixel correspondences.

    Args:
        params: RANSAC parameters; `error_thresh` is a squared Sampson
            distance in pixels^2.
        ransac_type: Which sample-consensus variant to run.
        pts1: Points in first image (N, 2).
        pts2: Points in second image (N, 2).

    Returns:
        Tuple of (success, F, summary).
    """
    return _run(FundamentalMatrixEstimator(), params, ransac_type, correspondences(pts1, pts2))


def estimate_essential_matrix_robust(
    params: RansacParameters,
    ransac_type: RansacType | str,
    x1: np.ndarray,
    x2: np.ndarray,
) -> Tuple[bool, Optional[np.ndarray], RansacSummary]:
    """Robust five-point essential matrix from normalized correspondences."""
    return _run(EssentialMatrixEstimator(), params, ransac_type, correspondences(x1, x2))


def estimate_relative_pose_robust(
    params: RansacParameters,
    ransac_type: RansacType | str,
    x1: np.ndarray,
    x2: np.ndarray,
) -> Tuple[bool, Optional[RelativePose], RansacSummary]:
    """Robust relative pose (R, unit position) from normalized correspondences."""
    return _run(RelativePoseEstimator(), params, ransac_type, correspondences(x1, x2))


def estimate_homography_robust(
    params: RansacParameters,
    ransac_type: RansacType | str,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> Tuple[bool, Optional[np.ndarray], RansacSummary]:
    """Robust homography; `error_thresh` is a squared symmetric transfer error."""
    return _run(HomographyEstimator(), params, ransac_type, correspondences(pts1, pts2))


__all__ = [
    "correspondences",
    "FundamentalMatrixEstimator",
    "SevenPointFundamentalMatrixEstimator",
    "EssentialMatrixEstimator",
    "RelativePose",
    "RelativePoseEstimator",
    "HomographyEstimator",
    "estimate_fundamental_matrix_robust",
    "estimate_essential_matrix_robust",
    "estimate_relative_pose_robust",
    "estimate_homography_robust",
]
