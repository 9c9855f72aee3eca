"""
Reconstruction maintenance: outlier filtering, similarity transforms and
summary statistics.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

import numpy as np

from robust_sfm.geometry.triangulation import max_triangulation_angle_degrees
from robust_sfm.sfm.data_structures import Reconstruction

logger = logging.getLogger(__name__)


def set_outlier_tracks_to_unestimated(
    reconstruction: Reconstruction,
    max_reprojection_error_pixels: float,
    min_triangulation_angle_degrees: float,
    track_ids: Optional[Iterable[int]] = None,
) -> int:
    """
    Clear `is_estimated` on tracks that no longer satisfy the acceptance tests.

    A track is an outlier when any estimated observing view sees it behind
    the camera or beyond `max_reprojection_error_pixels`, or when the
    viewing rays of its estimated views meet at less than
    `min_triangulation_angle_degrees`.

    Returns:
        Number of tracks set to unestimated.
    """
    if track_ids is None:
        track_ids = reconstruction.estimated_track_ids()

    num_outliers = 0
    for track_id in track_ids:
        track = reconstruction.track(track_id)
        if not track.is_estimated:
            continue
        point = track.inhomogeneous_point()
        rays = []
        bad = False
        for view_id in track.view_ids:
            view = reconstruction.view(view_id)
            if not view.is_estimated:
                continue
            pixel, depth = view.camera.project_point(point)
            feature = view.get_feature(track_id).point
            if depth <= 0 or not np.linalg.norm(pixel - feature) <= max_reprojection_error_pixels:
                bad = True
                break
            rays.append(point - view.camera.position)
        if not bad and (
            len(rays) < 2
            or max_triangulation_angle_degrees(np.array(rays)) < min_triangulation_angle_degrees
        ):
            bad = True
        if bad:
            track.set_estimated(False)
            num_outliers += 1

    if num_outliers:
        logger.info(f"Set {num_outliers} outlier tracks to unestimated")
    return num_outliers


def set_underconstrained_views_to_unestimated(
    reconstruction: Reconstruction,
    min_num_estimated_tracks: int = 6,
) -> int:
    """
    Clear `is_estimated` on views that see too few estimated tracks.

    Returns:
        Number of views set to unestimated.
    """
    count = 0
    for view_id in reconstruction.estimated_view_ids():
        view = reconstruction.view(view_id)
        num_tracks = sum(
            1 for track_id in view.track_ids() if reconstruction.track(track_id).is_estimated
        )
        if num_tracks < min_num_estimated_tracks:
            view.is_estimated = False
            count += 1
            logger.info(f"View {view_id} observes only {num_tracks} estimated tracks")
    return count


def transform_reconstruction(
    reconstruction: Reconstruction,
    scale: float,
    rotation: np.ndarray,
    translation: np.ndarray,
) -> None:
    """Apply X -> s R X + t to every camera and track in place."""
    rotation = np.asarray(rotation, dtype=np.float64)
    translation = np.asarray(translation, dtype=np.float64).reshape(3)
    for view_id in reconstruction.view_ids():
        camera = reconstruction.view(view_id).camera
        camera.position = scale * rotation @ camera.position + translation
        camera.orientation = camera.orientation @ rotation.T
    for track_id in reconstruction.track_ids():
        track = reconstruction.track(track_id)
        if track.has_valid_point():
            track.set_point(scale * rotation @ track.inhomogeneous_point() + translation)


def reconstruction_statistics(reconstruction: Reconstruction) -> Dict[str, float]:
    """Counts, mean track length and reprojection error of the estimated part."""
    errors = []
    track_lengths = []
    for track_id in reconstruction.estimated_track_ids():
        track = reconstruction.track(track_id)
        length = 0
        for view_id in track.view_ids:
            view = reconstruction.view(view_id)
            if not view.is_estimated:
                continue
            length += 1
            pixel, depth = view.camera.project_point(track.point)
            if depth > 0:
                errors.append(np.linalg.norm(pixel - view.get_feature(track_id).point))
        track_lengths.append(length)

    return {
        "num_views": reconstruction.num_views(),
        "num_estimated_views": len(reconstruction.estimated_view_ids()),
        "num_tracks": reconstruction.num_tracks(),
        "num_estimated_tracks": len(reconstruction.estimated_track_ids()),
        "mean_track_length": float(np.mean(track_lengths)) if track_lengths else 0.0,
        "mean_reprojection_error": float(np.mean(errors)) if errors else 0.0,
        "median_reprojection_error": float(np.median(errors)) if errors else 0.0,
    }


__all__ = [
    "set_outlier_tracks_to_unestimated",
    "set_underconstrained_views_to_unestimated",
    "transform_reconstruction",
    "reconstruction_statistics",
]
