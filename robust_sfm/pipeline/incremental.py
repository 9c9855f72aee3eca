"""
Incremental Structure-from-Motion pipeline.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Tuple

import numpy as np

from robust_sfm.ba.bundle_adjustment import (
    bundle_adjust_partial_reconstruction,
    bundle_adjust_reconstruction,
)
from robust_sfm.pipeline.reconstruction_estimator import (
    ReconstructionEstimator,
    ReconstructionEstimatorState,
    ReconstructionEstimatorSummary,
)
from robust_sfm.sfm.data_structures import Reconstruction
from robust_sfm.sfm.estimate_track import TrackEstimator
from robust_sfm.sfm.localization import LocalizeViewOptions, localize_view_to_reconstruction
from robust_sfm.sfm.view_graph import TwoViewInfo, ViewGraph

logger = logging.getLogger(__name__)

_MAX_ADDITIONS_PER_VIEW = 2


class IncrementalReconstructionEstimator(ReconstructionEstimator):
    """
    Grow the reconstruction one view at a time from a well-conditioned seed
    pair: localize, triangulate, bundle adjust, filter outliers.
    """

    def choose_initial_view_pair(self, view_graph: ViewGraph) -> Optional[Tuple[int, int]]:
        """
        Pick the seed pair.

        Candidates are ranked by the number of verified matches; the first one
        whose homography-inlier fraction is below `max_homography_inlier_ratio`
        wins, falling back to the best-connected pair.
        """
        candidates = sorted(
            view_graph.edges(),
            key=lambda e: (-e[2].num_verified_matches, e[0], e[1]),
        )
        if not candidates:
            return None
        for u, v, info in candidates:
            matches = max(info.num_verified_matches, 1)
            if info.num_homography_inliers / matches < self.options.max_homography_inlier_ratio:
                return u, v
        u, v, _ = candidates[0]
        return u, v

    def initialize_seed_pair(
        self,
        reconstruction: Reconstruction,
        view_id_1: int,
        view_id_2: int,
        info: TwoViewInfo,
    ) -> None:
        """First camera at the origin with identity orientation; second from the two-view info."""
        camera1 = reconstruction.view(view_id_1).camera
        camera1.orientation = np.eye(3)
        camera1.position = np.zeros(3)
        camera2 = reconstruction.view(view_id_2).camera
        camera2.orientation = info.rotation_matrix()
        camera2.position = info.position_2
        reconstruction.view(view_id_1).is_estimated = True
        reconstruction.view(view_id_2).is_estimated = True

    def next_view_candidates(
        self,
        reconstruction: Reconstruction,
        view_graph: ViewGraph,
    ) -> List[int]:
        """Unestimated views ranked by how many estimated tracks they observe."""
        scored = []
        for view_id in view_graph.view_ids():
            view = reconstruction.view(view_id)
            if view.is_estimated:
                continue
            count = self.num_visible_estimated_tracks(reconstruction, view_id)
            if count > 0:
                scored.append((-count, view_id))
        return [view_id for _, view_id in sorted(scored)]

    @staticmethod
    def num_visible_estimated_tracks(reconstruction: Reconstruction, view_id: int) -> int:
        view = reconstruction.view(view_id)
        return sum(
            1 for track_id in view.track_ids() if reconstruction.track(track_id).is_estimated
        )

    def localize(
        self,
        view_id: int,
        reconstruction: Reconstruction,
        options: LocalizeViewOptions,
    ) -> bool:
        success, _ = localize_view_to_reconstruction(view_id, reconstruction, options)
        return success

    def localize_options(self) -> LocalizeViewOptions:
        return self.localize_view_options()

    def estimate(
        self,
        view_graph: ViewGraph,
        reconstruction: Reconstruction,
    ) -> ReconstructionEstimatorSummary:
        summary = ReconstructionEstimatorSummary()
        start = time.perf_counter()
        graph = self.filter_view_graph(view_graph, reconstruction)

        if self.prepare(graph, reconstruction, summary) is False:
            return self.finalize_summary(reconstruction, graph, summary)

        seed = self.choose_initial_view_pair(graph)
        if seed is None:
            summary.message = "No view pair with enough verified matches"
            return self.finalize_summary(reconstruction, graph, summary)
        view_id_1, view_id_2 = seed
        logger.info(f"Initializing from views {view_id_1} and {view_id_2}")
        self.initialize_seed_pair(
            reconstruction, view_id_1, view_id_2, graph.get_edge(view_id_1, view_id_2)
        )
        self.estimate_tracks(reconstruction)
        bundle_adjust_reconstruction(
            self.bundle_adjustment_options(fix_first_view=True), reconstruction
        )
        self.remove_outliers(reconstruction)
        summary.state = ReconstructionEstimatorState.PARTIALLY_ESTIMATED
        summary.timings["initialization"] = time.perf_counter() - start

        grow_start = time.perf_counter()
        self.grow(graph, reconstruction)
        summary.timings["growth"] = time.perf_counter() - grow_start

        self.refine_until_stable(reconstruction, summary)
        summary.timings["total"] = time.perf_counter() - start
        return self.finalize_summary(reconstruction, graph, summary)

    def prepare(
        self,
        graph: ViewGraph,
        reconstruction: Reconstruction,
        summary: ReconstructionEstimatorSummary,
    ) -> bool:
        """Hook run before the seed pair is chosen; returning False aborts."""
        return True

    def grow(self, graph: ViewGraph, reconstruction: Reconstruction) -> None:
        localize_options = self.localize_options()
        num_at_last_full_ba = len(reconstruction.estimated_view_ids())
        recent: List[int] = []
        # view id -> number of estimated tracks it saw when localization failed;
        # a view is only retried once it sees more.
        failed: Dict[int, int] = {}
        # Views dropped again by outlier filtering are not re-added forever.
        num_additions: Dict[int, int] = {}

        while True:
            added = None
            for view_id in self.next_view_candidates(reconstruction, graph):
                if num_additions.get(view_id, 0) >= _MAX_ADDITIONS_PER_VIEW:
                    continue
                visible = self.num_visible_estimated_tracks(reconstruction, view_id)
                if failed.get(view_id, -1) >= visible:
                    continue
                if self.localize(view_id, reconstruction, localize_options):
                    added = view_id
                    num_additions[view_id] = num_additions.get(view_id, 0) + 1
                    failed.pop(view_id, None)
                    break
                failed[view_id] = visible
            if added is None:
                break
            recent.append(added)

            new_tracks = [
                track_id
                for track_id in reconstruction.view(added).track_ids()
                if not reconstruction.track(track_id).is_estimated
            ]
            self.estimate_tracks_subset(reconstruction, new_tracks)

            num_estimated = len(reconstruction.estimated_view_ids())
            growth = 100.0 * (num_estimated - num_at_last_full_ba) / max(num_at_last_full_ba, 1)
            if growth >= self.options.full_bundle_adjustment_growth_percent:
                bundle_adjust_reconstruction(
                    self.bundle_adjustment_options(fix_first_view=True), reconstruction
                )
                num_at_last_full_ba = num_estimated
                recent = []
            else:
                views = recent[-self.options.partial_bundle_adjustment_num_views :]
                tracks = sorted(
                    {
                        track_id
                        for view_id in views
                        for track_id in reconstruction.view(view_id).track_ids()
                        if reconstruction.track(track_id).is_estimated
                    }
                )
                bundle_adjust_partial_reconstruction(
                    self.bundle_adjustment_options(), views, tracks, reconstruction
                )
            self.remove_outliers(reconstruction)

    def estimate_tracks_subset(self, reconstruction: Reconstruction, track_ids: List[int]) -> int:
        estimator = TrackEstimator(self.track_estimator_options(), reconstruction)
        return len(estimator.estimate_tracks(track_ids).estimated_tracks)


__all__ = ["IncrementalReconstructionEstimator"]
