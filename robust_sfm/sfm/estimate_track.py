"""
Multithreaded triangulation of reconstruction tracks.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Set

import numpy as np

from robust_sfm.ba.bundle_adjustment import (
    BundleAdjustmentOptions,
    bundle_adjust_track,
    bundle_adjust_track_and_views,
)
from robust_sfm.errors import ConcurrencyContractViolation, DegenerateModel, GeometricRejection
from robust_sfm.geometry.triangulation import (
    TriangulationMethod,
    sufficient_triangulation_angle,
    triangulate,
    triangulation_inputs,
)
from robust_sfm.sfm.data_structures import Reconstruction

logger = logging.getLogger(__name__)


@dataclass
class TrackEstimatorOptions:
    num_threads: int = 1
    # An accepted track reprojects within this many pixels in every view.
    max_acceptable_reprojection_error_pixels: float = 5.0
    # At least one pair of viewing rays must meet at this angle.
    min_triangulation_angle_degrees: float = 3.0
    # Refine each accepted track on its own right after triangulation.
    bundle_adjustment: bool = True
    ba_options: BundleAdjustmentOptions = field(default_factory=BundleAdjustmentOptions)
    # Also refine the observing cameras with the track; single-threaded only.
    bundle_adjust_views: bool = False
    # Tracks per unit of work handed to the thread pool.
    multithreaded_step_size: int = 100
    triangulation_method: TriangulationMethod = TriangulationMethod.MIDPOINT


@dataclass
class TrackEstimatorSummary:
    # Tracks that were already estimated on input.
    input_num_estimated_tracks: int = 0
    # Unestimated tracks with at least two observing views.
    num_triangulation_attempts: int = 0
    estimated_tracks: Set[int] = field(default_factory=set)
    num_bad_angles: int = 0
    num_failed_triangulations: int = 0
    num_bad_reprojections: int = 0


class TrackEstimator:
    """
    Assigns a 3D point to every unestimated track seen by two or more
    estimated views, subject to triangulation-angle and reprojection checks.

    Tracks are processed in disjoint chunks on a thread pool; each chunk
    claims its tracks on the reconstruction and merges its counters into the
    summary once, under a single lock.
    """

    def __init__(self, options: TrackEstimatorOptions, reconstruction: Reconstruction) -> None:
        if options.bundle_adjust_views and options.bundle_adjustment and options.num_threads > 1:
            raise ConcurrencyContractViolation(
                "Adjusting cameras together with tracks requires num_threads == 1"
            )
        if options.multithreaded_step_size < 1:
            raise ValueError("multithreaded_step_size must be positive")
        self.options = options
        self.reconstruction = reconstruction
        self._lock = threading.Lock()

    def estimate_all_tracks(self) -> TrackEstimatorSummary:
        return self.estimate_tracks(self.reconstruction.track_ids())

    def estimate_tracks(self, track_ids: Iterable[int]) -> TrackEstimatorSummary:
        """
        Triangulate the given tracks.

        Raises:
            ConcurrencyContractViolation: If `track_ids` contains duplicates,
                which would put one track in two concurrent chunks.
        """
        track_ids = list(track_ids)
        if len(set(track_ids)) != len(track_ids):
            duplicates = sorted(t for t, n in Counter(track_ids).items() if n > 1)
            raise ConcurrencyContractViolation(f"Duplicate track ids: {duplicates}")

        start = time.perf_counter()
        summary = TrackEstimatorSummary()
        to_estimate: List[int] = []
        for track_id in track_ids:
            track = self.reconstruction.track(track_id)
            if track.is_estimated:
                summary.input_num_estimated_tracks += 1
            elif track.num_views() >= 2:
                to_estimate.append(track_id)
        summary.num_triangulation_attempts = len(to_estimate)

        step = self.options.multithreaded_step_size
        writer = self.reconstruction.new_writer_name("track_estimator")
        chunks = [to_estimate[i : i + step] for i in range(0, len(to_estimate), step)]
        if self.options.num_threads <= 1 or len(chunks) <= 1:
            for index, chunk in enumerate(chunks):
                self._estimate_chunk(f"{writer}_chunk_{index}", chunk, summary)
        else:
            with ThreadPoolExecutor(max_workers=self.options.num_threads) as executor:
                futures = [
                    executor.submit(self._estimate_chunk, f"{writer}_chunk_{index}", chunk, summary)
                    for index, chunk in enumerate(chunks)
                ]
                for future in futures:
                    future.result()

        logger.info(
            f"Estimated {len(summary.estimated_tracks)} of {summary.num_triangulation_attempts} "
            f"attempted tracks ({summary.input_num_estimated_tracks} already estimated; "
            f"rejected: {summary.num_bad_angles} angle, {summary.num_failed_triangulations} "
            f"triangulation, {summary.num_bad_reprojections} reprojection) "
            f"in {time.perf_counter() - start:.2f}s"
        )
        return summary

    def _estimate_chunk(
        self,
        writer: str,
        chunk: List[int],
        summary: TrackEstimatorSummary,
    ) -> None:
        estimated: List[int] = []
        rejections: Counter = Counter()
        view_ids: Set[int] = set()
        if self.options.bundle_adjustment and self.options.bundle_adjust_views:
            for track_id in chunk:
                view_ids.update(
                    view_id
                    for view_id in self.reconstruction.track(track_id).view_ids
                    if self.reconstruction.view(view_id).is_estimated
                )
        with self.reconstruction.claim(view_ids=view_ids, track_ids=chunk, writer=writer):
            for track_id in chunk:
                try:
                    if self._estimate_track(track_id):
                        estimated.append(track_id)
                except GeometricRejection as exc:
                    rejections[exc.reason] += 1
                    logger.debug(f"Track {track_id} rejected: {exc}")

        with self._lock:
            summary.estimated_tracks.update(estimated)
            summary.num_bad_angles += rejections[GeometricRejection.ANGLE]
            summary.num_failed_triangulations += rejections[GeometricRejection.TRIANGULATION]
            summary.num_bad_reprojections += rejections[GeometricRejection.REPROJECTION]

    def _estimate_track(self, track_id: int) -> bool:
        """
        Triangulate one track.

        Returns:
            False when fewer than two observing views are estimated.

        Raises:
            GeometricRejection: If an acceptance test fails.
        """
        options = self.options
        track = self.reconstruction.track(track_id)
        views = [
            self.reconstruction.view(view_id)
            for view_id in sorted(track.view_ids)
            if self.reconstruction.view(view_id).is_estimated
        ]
        if len(views) < 2:
            return False

        cameras = [view.camera for view in views]
        pixels = np.array([view.get_feature(track_id).point for view in views])
        normalized = np.array(
            [cam.pixel_to_normalized_coordinates(px)[0] for cam, px in zip(cameras, pixels)]
        )
        origins, rays, poses = triangulation_inputs(
            [cam.orientation for cam in cameras],
            [cam.position for cam in cameras],
            normalized,
        )

        if not sufficient_triangulation_angle(rays, options.min_triangulation_angle_degrees):
            raise GeometricRejection(GeometricRejection.ANGLE, f"track {track_id}: angle too small")

        try:
            point = triangulate(options.triangulation_method, origins, rays, poses, normalized)
        except (DegenerateModel, np.linalg.LinAlgError) as exc:
            raise GeometricRejection(GeometricRejection.TRIANGULATION, str(exc)) from exc
        if not np.all(np.isfinite(point)) or abs(point[3]) < 1e-12:
            raise GeometricRejection(
                GeometricRejection.TRIANGULATION, f"track {track_id}: degenerate point"
            )
        point = point / point[3]
        self._check_reprojection(track_id, cameras, pixels, point)

        track.set_point(point)
        track.set_estimated(True)

        if options.bundle_adjustment:
            if options.bundle_adjust_views:
                bundle_adjust_track_and_views(options.ba_options, track_id, self.reconstruction)
            else:
                bundle_adjust_track(options.ba_options, track_id, self.reconstruction)
            # Keep the refined point only if it still reprojects within bounds.
            try:
                self._check_reprojection(track_id, cameras, pixels, track.point)
            except GeometricRejection:
                track.set_point(point)
                try:
                    self._check_reprojection(track_id, cameras, pixels, point)
                except GeometricRejection:
                    track.set_estimated(False)
                    raise
                logger.debug(f"Track {track_id}: bundle adjustment result discarded")
        return True

    def _check_reprojection(
        self, track_id: int, cameras, pixels: np.ndarray, point: np.ndarray
    ) -> None:
        max_error = self.options.max_acceptable_reprojection_error_pixels
        for camera, pixel in zip(cameras, pixels):
            projected, depth = camera.project_point(point)
            if depth <= 0 or not np.linalg.norm(projected - pixel) <= max_error:
                raise GeometricRejection(
                    GeometricRejection.REPROJECTION,
                    f"track {track_id}: reprojection failed (depth {depth:.3g})",
                )


__all__ = ["TrackEstimatorOptions", "TrackEstimatorSummary", "TrackEstimator"]
