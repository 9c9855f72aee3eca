"""
Robust N-view triangulation of a single track.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from robust_sfm.geometry.triangulation import (
    triangulate_midpoint,
    triangulate_nview_svd,
    triangulation_inputs,
)
from robust_sfm.solvers.estimator import Estimator


class TriangulationEstimator(Estimator):
    """
    Two-view triangulation inside RANSAC.

    Data rows hold a single observation index; the observations (camera poses
    and normalized image points) are given at construction. A hypothesis is
    the midpoint of two viewing rays; the error is the squared normalized
    reprojection error, infinite behind the camera.
    """

    sample_size = 2
    max_num_models = 1

    def __init__(
        self,
        orientations: Sequence[np.ndarray],
        positions: Sequence[np.ndarray],
        normalized_points: np.ndarray,
    ) -> None:
        self.orientations = np.array([np.asarray(R, dtype=np.float64) for R in orientations])
        self.positions = np.array([np.asarray(c, dtype=np.float64) for c in positions])
        self.normalized_points = np.asarray(normalized_points, dtype=np.float64)
        self.origins, self.rays, self.poses = triangulation_inputs(
            self.orientations, self.positions, self.normalized_points
        )

    def observation_indices(self) -> np.ndarray:
        """Data matrix to hand to the sample-consensus loop."""
        return np.arange(len(self.normalized_points)).reshape(-1, 1)

    def estimate_model(self, data: np.ndarray) -> List[np.ndarray]:
        idx = data[:, 0].astype(np.int64)
        return [triangulate_midpoint(self.origins[idx], self.rays[idx])]

    def error(self, datum: np.ndarray, model: np.ndarray) -> float:
        return float(self.residuals(datum.reshape(1, -1), model)[0])

    def residuals(self, data: np.ndarray, model: np.ndarray) -> np.ndarray:
        idx = data[:, 0].astype(np.int64)
        X = model[:3] / model[3]
        points_cam = np.einsum("nij,nj->ni", self.orientations[idx], X - self.positions[idx])
        depth = points_cam[:, 2]
        with np.errstate(divide="ignore", invalid="ignore"):
            projected = points_cam[:, :2] / depth[:, None]
        errors = np.sum((projected - self.normalized_points[idx]) ** 2, axis=1)
        return np.where(depth > 0, errors, np.inf)

    def refine_model(self, data: np.ndarray, model: np.ndarray) -> Optional[np.ndarray]:
        idx = data[:, 0].astype(np.int64)
        return triangulate_nview_svd([self.poses[i] for i in idx], self.normalized_points[idx])


__all__ = ["TriangulationEstimator"]
