"""
Essential matrix solvers and camera pose extraction.

All points here are normalized image coordinates (intrinsics removed).
"""

from __future__ import annotations

from typing import List, Tuple

import cv2
import numpy as np

from robust_sfm.errors import DegenerateModel
from robust_sfm.geometry.fundamental import eight_point_fundamental_matrix

# Threshold handed to OpenCV; irrelevant when exactly five points are given
# because the minimal solver runs once and returns every root.
_CV_FIVE_POINT_THRESHOLD = 1e-3


def project_to_essential_manifold(E: np.ndarray) -> np.ndarray:
    """Closest essential matrix: equal non-zero singular values."""
    U, _, Vt = np.linalg.svd(E)
    E = U @ np.diag([1.0, 1.0, 0.0]) @ Vt
    return E / np.linalg.norm(E)


def five_point_essential_matrix(x1: np.ndarray, x2: np.ndarray) -> List[np.ndarray]:
    """
    Nister's five-point solver (via OpenCV).

    Args:
        x1: Normalized points in the first image (5, 2).
        x2: Normalized points in the second image (5, 2).

    Returns:
        List of up to 10 essential matrices with x2^T E x1 = 0.
    """
    if len(x1) != 5 or len(x2) != 5:
        raise ValueError(f"Five-point solver needs exactly 5 points, got {len(x1)}")
    E, _ = cv2.findEssentialMat(
        np.ascontiguousarray(x1, dtype=np.float64),
        np.ascontiguousarray(x2, dtype=np.float64),
        cameraMatrix=np.eye(3),
        method=cv2.RANSAC,
        prob=0.999,
        threshold=_CV_FIVE_POINT_THRESHOLD,
    )
    if E is None or E.size == 0:
        return []
    # Multiple roots come back stacked vertically.
    return [E[i : i + 3].copy() for i in range(0, E.shape[0] - 2, 3)]


def linear_essential_matrix(x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """Essential matrix from >= 8 normalized correspondences (8-point + projection)."""
    return project_to_essential_manifold(eight_point_fundamental_matrix(x1, x2))


def decompose_essential_matrix(E: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
    """The four (R, t) candidates of an essential matrix; t has unit norm."""
    R1, R2, t = cv2.decomposeEssentialMat(E)
    t = t.ravel()
    return [(R1, t), (R1, -t), (R2, t), (R2, -t)]


def count_points_in_front(
    R: np.ndarray,
    t: np.ndarray,
    x1: np.ndarray,
    x2: np.ndarray,
) -> Tuple[int, np.ndarray]:
    """
    Triangulate each correspondence with P1 = [I | 0], P2 = [R | t] and count
    those with positive depth in both cameras.
    """
    P1 = np.hstack([np.eye(3), np.zeros((3, 1))])
    P2 = np.hstack([R, t.reshape(3, 1)])
    X = cv2.triangulatePoints(P1, P2, x1.T.astype(np.float64), x2.T.astype(np.float64))
    with np.errstate(divide="ignore", invalid="ignore"):
        X = X[:3] / X[3]
    depth1 = X[2]
    depth2 = (R @ X + t.reshape(3, 1))[2]
    mask = np.isfinite(depth1) & (depth1 > 0) & (depth2 > 0)
    return int(mask.sum()), mask


def extract_RT_essential_matrix(
    E: np.ndarray,
    x1: np.ndarray,
    x2: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Extract camera rotation and translation from an essential matrix.

    Chooses the decomposition with the most points in front of both cameras.

    Args:
        E: Essential matrix (3x3).
        x1: Normalized points in first image (N, 2).
        x2: Normalized points in second image (N, 2).

    Returns:
        Tuple of (R, t, mask) where:
        - R: Rotation matrix (3x3) from first to second camera.
        - t: Unit translation (3,) from first to second camera.
        - mask: (N,) points in front of both cameras.

    Raises:
        DegenerateModel: If no decomposition puts any point in front.
    """
    best = None
    for R, t in decompose_essential_matrix(E):
        count, mask = count_points_in_front(R, t, x1, x2)
        if best is None or count > best[0]:
            best = (count, R, t, mask)
    if best is None or best[0] == 0:
        raise DegenerateModel("No essential matrix decomposition passes cheirality")
    _, R, t, mask = best
    return R, t, mask


__all__ = [
    "project_to_essential_manifold",
    "five_point_essential_matrix",
    "linear_essential_matrix",
    "decompose_essential_matrix",
    "count_points_in_front",
    "extract_RT_essential_matrix",
]
