"""
Rotation and similarity-transform helpers.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy.spatial.transform import Rotation


def relative_rotation(R1: np.ndarray, R2: np.ndarray) -> np.ndarray:
    """Rotation taking camera-1 coordinates to camera-2 coordinates: R2 R1^T."""
    return R2 @ R1.T


def rotation_angle_degrees(R1: np.ndarray, R2: np.ndarray) -> float:
    """Angle of the rotation between two orientations, in degrees."""
    return float(np.degrees(Rotation.from_matrix(R1.T @ R2).magnitude()))


def align_point_clouds(src: np.ndarray, dst: np.ndarray) -> Tuple[float, np.ndarray, np.ndarray]:
    """
    Least-squares similarity transform dst ~ s * R @ src + t (Umeyama).

    Args:
        src: (N, 3) source points, N >= 3.
        dst: (N, 3) target points.

    Returns:
        Tuple of (s, R, t).
    """
    src = np.asarray(src, dtype=np.float64)
    dst = np.asarray(dst, dtype=np.float64)
    if src.shape != dst.shape or len(src) < 3:
        raise ValueError("Need two (N, 3) point sets with N >= 3")

    mu_src = src.mean(axis=0)
    mu_dst = dst.mean(axis=0)
    src_c = src - mu_src
    dst_c = dst - mu_dst
    cov = dst_c.T @ src_c / len(src)
    U, S, Vt = np.linalg.svd(cov)
    D = np.eye(3)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        D[2, 2] = -1.0
    R = U @ D @ Vt
    var_src = np.sum(src_c**2) / len(src)
    s = float(np.trace(np.diag(S) @ D) / var_src) if var_src > 0 else 1.0
    t = mu_dst - s * R @ mu_src
    return s, R, t


__all__ = [
    "relative_rotation",
    "rotation_angle_degrees",
    "align_point_clouds",
]
