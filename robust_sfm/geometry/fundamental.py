"""
Fundamental matrix solvers: normalized 8-point and 7-point algorithms.
"""

from __future__ import annotations

from typing import List, Tuple

import numpy as np

from robust_sfm.errors import DegenerateModel


def normalize_points(pts: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Normalize 2D points by centering and scaling (Hartley normalization).

    Args:
        pts: Array of points (N, 2).

    Returns:
        Tuple of (normalized_pts, T) where:
        - normalized_pts: Normalized points (N, 2) with mean distance sqrt(2).
        - T: Transformation matrix (3x3) that normalizes pts.
    """
    pts = np.asarray(pts, dtype=np.float64)
    mean = np.mean(pts, axis=0)
    centered = pts - mean
    mean_dist = np.mean(np.linalg.norm(centered, axis=1))
    scale = np.sqrt(2.0) / mean_dist if mean_dist > 1e-12 else 1.0

    T = np.array(
        [
            [scale, 0, -scale * mean[0]],
            [0, scale, -scale * mean[1]],
            [0, 0, 1],
        ],
        dtype=np.float64,
    )
    return centered * scale, T


def _epipolar_design_matrix(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """Rows of x2^T F x1 = 0 for each correspondence (N x 9)."""
    x1, y1 = pts1[:, 0], pts1[:, 1]
    x2, y2 = pts2[:, 0], pts2[:, 1]
    ones = np.ones_like(x1)
    return np.column_stack([x2 * x1, x2 * y1, x2, y2 * x1, y2 * y1, y2, x1, y1, ones])


def constrain_F(F: np.ndarray) -> np.ndarray:
    """
    Enforce the rank-2 constraint on a fundamental matrix using SVD.

    Args:
        F: Fundamental matrix (3x3).

    Returns:
        Rank-2 constrained fundamental matrix (3x3).
    """
    U, S, Vt = np.linalg.svd(F)
    S[2] = 0
    return U @ np.diag(S) @ Vt


def eight_point_fundamental_matrix(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    Estimate a fundamental matrix using the normalized 8-point algorithm.

    Args:
        pts1: Points in first image (N, 2), N >= 8.
        pts2: Points in second image (N, 2).

    Returns:
        Fundamental matrix F (3x3) with x2^T F x1 = 0, unit Frobenius norm.

    Raises:
        ValueError: If fewer than 8 point correspondences are provided.
        DegenerateModel: If the correspondences do not constrain F.
    """
    if len(pts1) < 8:
        raise ValueError(f"Need at least 8 point correspondences, got {len(pts1)}")

    pts1_norm, T1 = normalize_points(pts1)
    pts2_norm, T2 = normalize_points(pts2)
    A = _epipolar_design_matrix(pts1_norm, pts2_norm)

    _, S, Vt = np.linalg.svd(A)
    if len(S) >= 8 and S[7] < 1e-12 * max(S[0], 1e-300):
        raise DegenerateModel("8-point design matrix is rank deficient")
    F = constrain_F(Vt[-1].reshape(3, 3))

    # Denormalize: F = T2^T @ F @ T1
    F = T2.T @ F @ T1
    return F / np.linalg.norm(F)


def seven_point_fundamental_matrix(pts1: np.ndarray, pts2: np.ndarray) -> List[np.ndarray]:
    """
    Estimate up to three fundamental matrices from exactly 7 correspondences.

    F is a combination a*F1 + (1-a)*F2 of the two null-space solutions; the
    rank-2 condition det(F) = 0 gives a cubic in a.

    Returns:
        List of 0..3 fundamental matrices (3x3).
    """
    if len(pts1) != 7:
        raise ValueError(f"Seven-point algorithm needs exactly 7 points, got {len(pts1)}")

    pts1_norm, T1 = normalize_points(pts1)
    pts2_norm, T2 = normalize_points(pts2)
    A = _epipolar_design_matrix(pts1_norm, pts2_norm)

    _, _, Vt = np.linalg.svd(A, full_matrices=True)
    F1 = Vt[-2].reshape(3, 3)
    F2 = Vt[-1].reshape(3, 3)

    # det(a F1 + (1 - a) F2) is a cubic in a; fit it exactly from 4 samples.
    samples = np.array([-1.0, 0.0, 1.0, 2.0])
    dets = [np.linalg.det(a * F1 + (1.0 - a) * F2) for a in samples]
    coeffs = np.polyfit(samples, dets, 3)
    if np.all(np.abs(coeffs) < 1e-15):
        raise DegenerateModel("Seven-point cubic vanishes identically")

    solutions = []
    for root in np.roots(coeffs):
        if abs(root.imag) > 1e-8:
            continue
        a = root.real
        F = a * F1 + (1.0 - a) * F2
        F = T2.T @ F @ T1
        norm = np.linalg.norm(F)
        if norm > 1e-12:
            solutions.append(F / norm)
    return solutions


def sampson_distance_sq(F: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    Squared Sampson distance of each correspondence to the epipolar geometry.

    Args:
        F: Fundamental (or essential) matrix (3x3), x2^T F x1 = 0.
        pts1, pts2: Corresponding points (N, 2).

    Returns:
        (N,) squared first-order geometric errors.
    """
    pts1 = np.atleast_2d(pts1)
    pts2 = np.atleast_2d(pts2)
    ones = np.ones((len(pts1), 1))
    x1 = np.hstack([pts1, ones])
    x2 = np.hstack([pts2, ones])
    Fx1 = x1 @ F.T
    Ftx2 = x2 @ F
    numerator = np.sum(x2 * Fx1, axis=1) ** 2
    denominator = Fx1[:, 0] ** 2 + Fx1[:, 1] ** 2 + Ftx2[:, 0] ** 2 + Ftx2[:, 1] ** 2
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(denominator > 0, numerator / denominator, np.inf)


__all__ = [
    "normalize_points",
    "constrain_F",
    "eight_point_fundamental_matrix",
    "seven_point_fundamental_matrix",
    "sampson_distance_sq",
]
