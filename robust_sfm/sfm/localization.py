"""
Registering a new view against the estimated tracks of a reconstruction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Tuple

import numpy as np

from robust_sfm.ba.bundle_adjustment import (
    BundleAdjustmentOptions,
    OptimizeIntrinsicsType,
    bundle_adjust_view,
)
from robust_sfm.estimators.absolute_pose import (
    estimate_calibrated_absolute_pose_robust,
    estimate_position_with_known_orientation_robust,
)
from robust_sfm.sfm.data_structures import Reconstruction
from robust_sfm.solvers.ransac_variants import RansacType
from robust_sfm.solvers.sample_consensus import RansacParameters, RansacSummary

logger = logging.getLogger(__name__)


@dataclass
class LocalizeViewOptions:
    ransac_type: RansacType = RansacType.RANSAC
    ransac_params: RansacParameters = field(
        default_factory=lambda: RansacParameters(error_thresh=1e-5, max_iterations=1000)
    )
    # Inlier threshold in pixels; converted to normalized units per camera.
    reprojection_error_threshold_pixels: float = 4.0
    min_num_inliers: int = 30
    bundle_adjust_view: bool = True
    ba_options: BundleAdjustmentOptions = field(
        default_factory=lambda: BundleAdjustmentOptions(
            intrinsics_to_optimize=OptimizeIntrinsicsType.NONE
        )
    )


def _correspondences(view_id: int, reconstruction: Reconstruction) -> Tuple[np.ndarray, np.ndarray]:
    view = reconstruction.view(view_id)
    pixels, points = [], []
    for track_id in sorted(view.track_ids()):
        track = reconstruction.track(track_id)
        if track.is_estimated:
            pixels.append(view.get_feature(track_id).point)
            points.append(track.inhomogeneous_point())
    return np.array(pixels).reshape(-1, 2), np.array(points).reshape(-1, 3)


def _ransac_params(options: LocalizeViewOptions, focal_length: float) -> RansacParameters:
    threshold = (options.reprojection_error_threshold_pixels / focal_length) ** 2
    return replace(
        options.ransac_params,
        error_thresh=threshold,
        min_num_inliers=max(options.ransac_params.min_num_inliers, options.min_num_inliers),
    )


def localize_view_to_reconstruction(
    view_id: int,
    reconstruction: Reconstruction,
    options: LocalizeViewOptions,
) -> Tuple[bool, RansacSummary]:
    """
    Estimate a view's pose from its 2D-3D correspondences (P3P RANSAC).

    The view's intrinsics must be known. On success the camera pose is set,
    the view is marked estimated and optionally bundle-adjusted.

    Returns:
        Tuple of (success, ransac_summary).

    Raises:
        ConcurrencyContractViolation: If another writer holds the view.
    """
    writer = reconstruction.new_writer_name(f"localize_view_{view_id}")
    with reconstruction.claim(view_ids=[view_id], writer=writer):
        return _localize_view(view_id, reconstruction, options)


def _localize_view(
    view_id: int,
    reconstruction: Reconstruction,
    options: LocalizeViewOptions,
) -> Tuple[bool, RansacSummary]:
    view = reconstruction.view(view_id)
    camera = view.camera
    pixels, points = _correspondences(view_id, reconstruction)
    if len(pixels) < max(3, options.min_num_inliers):
        logger.debug(f"View {view_id}: only {len(pixels)} 2D-3D correspondences")
        return False, RansacSummary(failure_reason="Too few 2D-3D correspondences")

    normalized = camera.pixel_to_normalized_coordinates(pixels)
    success, pose, summary = estimate_calibrated_absolute_pose_robust(
        _ransac_params(options, camera.focal_length),
        options.ransac_type,
        normalized,
        points,
    )
    if not success:
        logger.debug(f"View {view_id}: localization failed ({summary.failure_reason})")
        return False, summary

    camera.set_pose_from_rt(pose.rotation, pose.translation)
    view.is_estimated = True
    logger.info(
        f"Localized view {view_id} ({view.name}) with "
        f"{summary.num_inliers}/{len(pixels)} inliers"
    )
    if options.bundle_adjust_view:
        bundle_adjust_view(options.ba_options, view_id, reconstruction)
    return True, summary


def estimate_position_with_known_orientation(
    view_id: int,
    reconstruction: Reconstruction,
    options: LocalizeViewOptions,
) -> Tuple[bool, RansacSummary]:
    """
    Estimate a view's camera centre when its orientation is already set.

    Returns:
        Tuple of (success, ransac_summary).

    Raises:
        ConcurrencyContractViolation: If another writer holds the view.
    """
    writer = reconstruction.new_writer_name(f"position_view_{view_id}")
    with reconstruction.claim(view_ids=[view_id], writer=writer):
        return _estimate_position(view_id, reconstruction, options)


def _estimate_position(
    view_id: int,
    reconstruction: Reconstruction,
    options: LocalizeViewOptions,
) -> Tuple[bool, RansacSummary]:
    view = reconstruction.view(view_id)
    camera = view.camera
    pixels, points = _correspondences(view_id, reconstruction)
    if len(pixels) < max(2, options.min_num_inliers):
        return False, RansacSummary(failure_reason="Too few 2D-3D correspondences")

    rays = camera.pixels_to_unit_depth_rays(pixels)
    success, position, summary = estimate_position_with_known_orientation_robust(
        _ransac_params(options, camera.focal_length),
        options.ransac_type,
        rays,
        points,
    )
    if not success:
        logger.debug(f"View {view_id}: position estimation failed ({summary.failure_reason})")
        return False, summary

    camera.position = position
    view.is_estimated = True
    logger.info(
        f"Positioned view {view_id} ({view.name}) with "
        f"{summary.num_inliers}/{len(pixels)} inliers"
    )
    if options.bundle_adjust_view:
        bundle_adjust_view(options.ba_options, view_id, reconstruction)
    return True, summary


__all__ = [
    "LocalizeViewOptions",
    "localize_view_to_reconstruction",
    "estimate_position_with_known_orientation",
]
