"""
Hypothesis scoring for sample-consensus estimation.

Every quality measurement maps a residual vector to a (score, inliers) pair.
Scores are tuples compared lexicographically; lower is better.
"""

from __future__ import annotations

import abc
from typing import Tuple

import numpy as np

Score = Tuple[float, ...]

# 1.4826 is the consistency factor of the median absolute deviation for
# Gaussian noise.
_MAD_CONSTANT = 1.4826
_LMED_INLIER_SIGMAS = 2.5


class QualityMeasurement(abc.ABC):
    """
    Scores a hypothesis from its residuals.

    Args:
        error_thresh: Inlier threshold on the (squared) residual.
    """

    def __init__(self, error_thresh: float) -> None:
        self.error_thresh = float(error_thresh)

    @abc.abstractmethod
    def compute_cost(self, residuals: np.ndarray) -> Tuple[Score, np.ndarray]:
        """
        Args:
            residuals: (N,) squared residuals.

        Returns:
            Tuple of (score, inlier_indices).
        """

    def inliers(self, residuals: np.ndarray) -> np.ndarray:
        return np.flatnonzero(residuals < self.error_thresh)

    def support(self, residuals: np.ndarray) -> int:
        """
        Number of residuals below `error_thresh`.

        This, not the returned inlier set, drives the adaptive iteration
        budget and early stopping.
        """
        return int(np.count_nonzero(residuals < self.error_thresh))


class InlierSupport(QualityMeasurement):
    """Classic RANSAC: more inliers is better, ties broken by inlier residual sum."""

    def compute_cost(self, residuals: np.ndarray) -> Tuple[Score, np.ndarray]:
        inliers = self.inliers(residuals)
        return (-float(len(inliers)), float(np.sum(residuals[inliers]))), inliers


class MLEQualityMeasurement(QualityMeasurement):
    """MSAC-style truncated quadratic cost; ties broken by inlier count."""

    def compute_cost(self, residuals: np.ndarray) -> Tuple[Score, np.ndarray]:
        inliers = self.inliers(residuals)
        cost = float(np.sum(np.minimum(residuals, self.error_thresh)))
        return (cost, -float(len(inliers))), inliers


class LMedQualityMeasurement(QualityMeasurement):
    """
    Least median of squares.

    The score is the median residual. Inliers are selected with the robust
    standard deviation estimate of Rousseeuw:
    sigma = 1.4826 * (1 + 5 / (N - s)) * sqrt(median), inlier iff
    residual < (2.5 * sigma)^2. The iteration budget uses the fixed-threshold
    `support`, not these inliers.
    """

    def __init__(self, error_thresh: float, min_num_samples: int) -> None:
        super().__init__(error_thresh)
        self.min_num_samples = min_num_samples

    def compute_cost(self, residuals: np.ndarray) -> Tuple[Score, np.ndarray]:
        median = float(np.median(residuals))
        dof = max(len(residuals) - self.min_num_samples, 1)
        sigma = _MAD_CONSTANT * (1.0 + 5.0 / dof) * np.sqrt(median)
        inliers = np.flatnonzero(residuals <= (_LMED_INLIER_SIGMAS * sigma) ** 2)
        return (median, -float(len(inliers))), inliers


__all__ = [
    "Score",
    "QualityMeasurement",
    "InlierSupport",
    "MLEQualityMeasurement",
    "LMedQualityMeasurement",
]
