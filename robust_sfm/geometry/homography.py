"""
Planar homography estimation (normalized DLT).
"""

from __future__ import annotations

import numpy as np

from robust_sfm.errors import DegenerateModel
from robust_sfm.geometry.fundamental import normalize_points


def dlt_homography(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    Estimate H with x2 ~ H x1 from >= 4 correspondences.

    Args:
        pts1: Points in first image (N, 2).
        pts2: Points in second image (N, 2).

    Returns:
        Homography (3x3) normalized so that H[2, 2] == 1 when possible.

    Raises:
        DegenerateModel: If the points are (nearly) collinear.
    """
    if len(pts1) < 4:
        raise ValueError(f"Need at least 4 correspondences, got {len(pts1)}")

    p1, T1 = normalize_points(pts1)
    p2, T2 = normalize_points(pts2)
    n = len(p1)
    A = np.zeros((2 * n, 9))
    x1, y1 = p1[:, 0], p1[:, 1]
    x2, y2 = p2[:, 0], p2[:, 1]
    A[0::2, 0] = -x1
    A[0::2, 1] = -y1
    A[0::2, 2] = -1.0
    A[0::2, 6] = x2 * x1
    A[0::2, 7] = x2 * y1
    A[0::2, 8] = x2
    A[1::2, 3] = -x1
    A[1::2, 4] = -y1
    A[1::2, 5] = -1.0
    A[1::2, 6] = y2 * x1
    A[1::2, 7] = y2 * y1
    A[1::2, 8] = y2

    _, S, Vt = np.linalg.svd(A)
    if S[7] < 1e-10 * S[0]:
        raise DegenerateModel("Homography design matrix is rank deficient")
    H = np.linalg.inv(T2) @ Vt[-1].reshape(3, 3) @ T1
    if abs(H[2, 2]) > 1e-12:
        H = H / H[2, 2]
    return H


def symmetric_transfer_error_sq(H: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """Squared forward plus backward transfer error for each correspondence (N,)."""
    pts1 = np.atleast_2d(pts1)
    pts2 = np.atleast_2d(pts2)
    ones = np.ones((len(pts1), 1))
    try:
        H_inv = np.linalg.inv(H)
    except np.linalg.LinAlgError:
        return np.full(len(pts1), np.inf)

    with np.errstate(divide="ignore", invalid="ignore"):
        fwd = np.hstack([pts1, ones]) @ H.T
        fwd = fwd[:, :2] / fwd[:, 2:3]
        bwd = np.hstack([pts2, ones]) @ H_inv.T
        bwd = bwd[:, :2] / bwd[:, 2:3]
    err = np.sum((fwd - pts2) ** 2, axis=1) + np.sum((bwd - pts1) ** 2, axis=1)
    return np.where(np.isfinite(err), err, np.inf)


__all__ = ["dlt_homography", "symmetric_transfer_error_sq"]
