"""
Absolute pose solvers: P3P, iterative PnP refinement and camera position
from known orientation.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import cv2
import numpy as np

from robust_sfm.errors import DegenerateModel

logger = logging.getLogger(__name__)

# solvePnP with SOLVEPNP_ITERATIVE is only reliable with a few extra points.
_MIN_POINTS_FOR_REFINEMENT = 6


def p3p(
    normalized_points: np.ndarray,
    world_points: np.ndarray,
) -> List[Tuple[np.ndarray, np.ndarray]]:
    """
    Calibrated absolute pose from exactly three 2D-3D correspondences.

    Args:
        normalized_points: Normalized image points (3, 2).
        world_points: 3D points in world coordinates (3, 3).

    Returns:
        List of up to 4 (R, t) world-to-camera poses.
    """
    if len(normalized_points) != 3 or len(world_points) != 3:
        raise ValueError("P3P needs exactly 3 correspondences")
    try:
        _, rvecs, tvecs = cv2.solveP3P(
            np.ascontiguousarray(world_points, dtype=np.float64).reshape(3, 1, 3),
            np.ascontiguousarray(normalized_points, dtype=np.float64).reshape(3, 1, 2),
            np.eye(3),
            None,
            flags=cv2.SOLVEPNP_P3P,
        )
    except cv2.error as exc:
        raise DegenerateModel(f"P3P failed: {exc}") from exc

    poses = []
    for rvec, tvec in zip(rvecs, tvecs):
        R, _ = cv2.Rodrigues(rvec)
        t = np.asarray(tvec, dtype=np.float64).reshape(3)
        if np.all(np.isfinite(R)) and np.all(np.isfinite(t)):
            poses.append((R, t))
    return poses


def refine_pose_pnp(
    normalized_points: np.ndarray,
    world_points: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """
    Refine a pose on a set of inlier correspondences (Levenberg-Marquardt).

    Returns:
        Refined (R, t), or None when too few points are given or OpenCV fails.
    """
    if len(world_points) < _MIN_POINTS_FOR_REFINEMENT:
        return None
    rvec, _ = cv2.Rodrigues(R)
    ok, rvec, tvec = cv2.solvePnP(
        np.ascontiguousarray(world_points, dtype=np.float64).reshape(-1, 1, 3),
        np.ascontiguousarray(normalized_points, dtype=np.float64).reshape(-1, 1, 2),
        np.eye(3),
        None,
        rvec.copy(),
        np.asarray(t, dtype=np.float64).reshape(3, 1).copy(),
        useExtrinsicGuess=True,
        flags=cv2.SOLVEPNP_ITERATIVE,
    )
    if not ok:
        return None
    R_refined, _ = cv2.Rodrigues(rvec)
    return R_refined, tvec.reshape(3)


def position_from_known_orientation(
    ray_directions: np.ndarray,
    world_points: np.ndarray,
) -> np.ndarray:
    """
    Camera centre c such that every world point lies on its viewing ray.

    Each correspondence constrains (I - d d^T)(X - c) = 0 with d the unit
    world-frame viewing direction, giving a 3x3 linear system.

    Args:
        ray_directions: World-frame viewing rays (N, 3), N >= 2.
        world_points: 3D points (N, 3).

    Returns:
        Camera position (3,).

    Raises:
        DegenerateModel: If the rays are (nearly) parallel.
    """
    d = np.asarray(ray_directions, dtype=np.float64)
    d = d / np.linalg.norm(d, axis=1, keepdims=True)
    X = np.asarray(world_points, dtype=np.float64)
    projectors = np.eye(3)[None, :, :] - d[:, :, None] * d[:, None, :]
    A = projectors.sum(axis=0)
    b = np.einsum("nij,nj->i", projectors, X)
    if np.linalg.cond(A) > 1e12:
        raise DegenerateModel("Viewing rays are parallel; position is unconstrained")
    return np.linalg.solve(A, b)


__all__ = ["p3p", "refine_pose_pnp", "position_from_known_orientation"]
