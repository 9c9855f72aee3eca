"""
3D point triangulation from two or more views.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy.optimize import least_squares

from robust_sfm.errors import DegenerateModel

logger = logging.getLogger(__name__)


class TriangulationMethod(enum.Enum):
    MIDPOINT = "midpoint"
    SVD = "svd"
    L2_MINIMIZATION = "l2_minimization"


def triangulate_two_views(
    P1: np.ndarray,
    P2: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """
    Triangulate matched 2D correspondences in two views (OpenCV DLT).

    Args:
        P1: Projection matrix of the first camera (3x4).
        P2: Projection matrix of the second camera (3x4).
        pts1: Points in first image (N, 2), in the coordinates P1 maps to.
        pts2: Points in second image (N, 2).

    Returns:
        Homogeneous points (N, 4).
    """
    if len(pts1) == 0:
        return np.zeros((0, 4))
    points_4d = cv2.triangulatePoints(
        np.asarray(P1, dtype=np.float64),
        np.asarray(P2, dtype=np.float64),
        np.asarray(pts1, dtype=np.float64).T,
        np.asarray(pts2, dtype=np.float64).T,
    )
    return points_4d.T


def triangulate_midpoint(origins: np.ndarray, directions: np.ndarray) -> np.ndarray:
    """
    Point closest (least squares) to every ray c_i + s d_i.

    Args:
        origins: Camera centres (N, 3).
        directions: Viewing rays (N, 3), any length.

    Returns:
        Homogeneous point (4,).

    Raises:
        DegenerateModel: If the rays are (nearly) parallel.
    """
    c = np.asarray(origins, dtype=np.float64)
    d = np.asarray(directions, dtype=np.float64)
    d = d / np.linalg.norm(d, axis=1, keepdims=True)
    projectors = np.eye(3)[None, :, :] - d[:, :, None] * d[:, None, :]
    A = projectors.sum(axis=0)
    b = np.einsum("nij,nj->i", projectors, c)
    if np.linalg.cond(A) > 1e12:
        raise DegenerateModel("Rays are parallel")
    return np.append(np.linalg.solve(A, b), 1.0)


def triangulate_nview_svd(
    projection_matrices: Sequence[np.ndarray],
    points: np.ndarray,
) -> np.ndarray:
    """
    Linear N-view triangulation (DLT).

    Args:
        projection_matrices: N pose matrices [R | t] (3x4) for normalized
            coordinates, or full K [R | t] matrices for pixels.
        points: (N, 2) image points matching the matrices.

    Returns:
        Homogeneous point (4,) with unit norm.
    """
    rows = []
    for P, (x, y) in zip(projection_matrices, np.asarray(points, dtype=np.float64)):
        P = np.asarray(P, dtype=np.float64)
        P = P / np.linalg.norm(P)
        rows.append(x * P[2] - P[0])
        rows.append(y * P[2] - P[1])
    A = np.array(rows)
    _, S, Vt = np.linalg.svd(A)
    if S[0] <= 0 or (len(S) >= 3 and S[2] < 1e-12 * S[0]):
        raise DegenerateModel("Triangulation system is rank deficient")
    return Vt[-1]


def _reprojection_residuals(
    X: np.ndarray,
    projection_matrices: np.ndarray,
    points: np.ndarray,
) -> np.ndarray:
    Xh = np.append(X, 1.0)
    proj = projection_matrices @ Xh
    return (proj[:, :2] / proj[:, 2:3] - points).ravel()


def triangulate_nview_l2(
    projection_matrices: Sequence[np.ndarray],
    points: np.ndarray,
    initial_point: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    N-view triangulation minimising the squared reprojection error.

    Starts from the DLT solution (or `initial_point`) and refines the
    Euclidean point with scipy's trust-region least squares.

    Returns:
        Homogeneous point (4,) with w == 1.
    """
    Ps = np.array([np.asarray(P, dtype=np.float64) for P in projection_matrices])
    points = np.asarray(points, dtype=np.float64)
    if initial_point is None:
        initial_point = triangulate_nview_svd(Ps, points)
    initial_point = np.asarray(initial_point, dtype=np.float64)
    if initial_point.size == 4:
        if abs(initial_point[3]) < 1e-12:
            raise DegenerateModel("Initial point is at infinity")
        initial_point = initial_point[:3] / initial_point[3]

    result = least_squares(
        _reprojection_residuals,
        initial_point,
        args=(Ps, points),
        method="trf",
        max_nfev=50,
    )
    if not np.all(np.isfinite(result.x)):
        raise DegenerateModel("Nonlinear triangulation diverged")
    return np.append(result.x, 1.0)


def _unit_rays(rays: np.ndarray) -> np.ndarray:
    rays = np.asarray(rays, dtype=np.float64)
    return rays / np.linalg.norm(rays, axis=1, keepdims=True)


def max_triangulation_angle_degrees(rays: np.ndarray) -> float:
    """Largest angle between any two viewing rays (N, 3), in degrees."""
    if len(rays) < 2:
        return 0.0
    u = _unit_rays(rays)
    cosines = np.clip(u @ u.T, -1.0, 1.0)
    return float(np.degrees(np.arccos(cosines.min())))


def sufficient_triangulation_angle(rays: np.ndarray, min_angle_degrees: float) -> bool:
    """True if at least one pair of rays meets at >= `min_angle_degrees`."""
    return max_triangulation_angle_degrees(rays) >= min_angle_degrees


def is_point_in_front_of_cameras(
    point: np.ndarray,
    orientations: Sequence[np.ndarray],
    positions: Sequence[np.ndarray],
) -> bool:
    """True if the point has positive depth in every camera."""
    point = np.asarray(point, dtype=np.float64)
    if point.size == 4:
        if abs(point[3]) < 1e-12:
            return False
        point = point[:3] / point[3]
    for R, c in zip(orientations, positions):
        if (np.asarray(R) @ (point - np.asarray(c)))[2] <= 0:
            return False
    return True


def triangulate(
    method: TriangulationMethod,
    origins: np.ndarray,
    rays: np.ndarray,
    pose_matrices: Sequence[np.ndarray],
    normalized_points: np.ndarray,
) -> np.ndarray:
    """
    Dispatch to the configured triangulation method.

    Args:
        method: TriangulationMethod.
        origins: Camera centres (N, 3), used by MIDPOINT.
        rays: World-frame viewing rays (N, 3), used by MIDPOINT.
        pose_matrices: [R | t] matrices (3x4), used by SVD / L2.
        normalized_points: Normalized image points (N, 2), used by SVD / L2.

    Returns:
        Homogeneous point (4,).
    """
    if method == TriangulationMethod.MIDPOINT:
        return triangulate_midpoint(origins, rays)
    if method == TriangulationMethod.SVD:
        return triangulate_nview_svd(pose_matrices, normalized_points)
    if method == TriangulationMethod.L2_MINIMIZATION:
        return triangulate_nview_l2(pose_matrices, normalized_points)
    raise ValueError(f"Unknown triangulation method {method}")


def triangulation_inputs(
    orientations: Sequence[np.ndarray],
    positions: Sequence[np.ndarray],
    normalized_points: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, list]:
    """World rays, camera centres and [R | t] matrices for a set of observations."""
    normalized_points = np.asarray(normalized_points, dtype=np.float64)
    homogeneous = np.hstack([normalized_points, np.ones((len(normalized_points), 1))])
    rays = np.array([R.T @ x for R, x in zip(orientations, homogeneous)])
    origins = np.array([np.asarray(c, dtype=np.float64) for c in positions])
    poses = [np.hstack([R, (-R @ c).reshape(3, 1)]) for R, c in zip(orientations, positions)]
    return origins, rays, poses


__all__ = [
    "TriangulationMethod",
    "triangulate_two_views",
    "triangulate_midpoint",
    "triangulate_nview_svd",
    "triangulate_nview_l2",
    "max_triangulation_angle_degrees",
    "sufficient_triangulation_angle",
    "is_point_in_front_of_cameras",
    "triangulate",
    "triangulation_inputs",
]
