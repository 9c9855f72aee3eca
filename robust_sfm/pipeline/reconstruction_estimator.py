"""
Shared options, summary and refinement loop of the reconstruction pipelines.
"""

from __future__ import annotations

import abc
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Dict

from robust_sfm.ba.bundle_adjustment import (
    BundleAdjustmentOptions,
    LossFunctionType,
    OptimizeIntrinsicsType,
    bundle_adjust_reconstruction,
)
from robust_sfm.geometry.triangulation import TriangulationMethod
from robust_sfm.sfm.data_structures import Reconstruction
from robust_sfm.sfm.estimate_track import TrackEstimator, TrackEstimatorOptions
from robust_sfm.sfm.localization import LocalizeViewOptions
from robust_sfm.sfm.reconstruction_utils import (
    reconstruction_statistics,
    set_outlier_tracks_to_unestimated,
    set_underconstrained_views_to_unestimated,
)
from robust_sfm.sfm.view_graph import ViewGraph
from robust_sfm.solvers.ransac_variants import RansacType
from robust_sfm.solvers.sample_consensus import RansacParameters

logger = logging.getLogger(__name__)


class ReconstructionEstimatorType(enum.Enum):
    INCREMENTAL = "incremental"
    GLOBAL = "global"
    HYBRID = "hybrid"


class ReconstructionEstimatorState(enum.Enum):
    UNESTIMATED = "unestimated"
    PARTIALLY_ESTIMATED = "partially_estimated"
    REFINED = "refined"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class ReconstructionEstimatorOptions:
    reconstruction_estimator_type: ReconstructionEstimatorType = (
        ReconstructionEstimatorType.INCREMENTAL
    )
    num_threads: int = 1
    seed: int = 0

    # View graph / two-view filtering.
    min_num_two_view_inliers: int = 30
    max_relative_rotation_difference_degrees: float = 5.0
    # Seed pairs with more homography inliers than this fraction of their
    # verified matches are avoided (likely planar or low-parallax).
    max_homography_inlier_ratio: float = 0.8

    # Localization.
    ransac_type: RansacType = RansacType.RANSAC
    absolute_pose_reprojection_error_threshold: float = 4.0
    min_num_absolute_pose_inliers: int = 30
    ransac_max_iterations: int = 1000

    # Triangulation.
    max_reprojection_error_in_pixels: float = 5.0
    min_triangulation_angle_degrees: float = 3.0
    triangulation_method: TriangulationMethod = TriangulationMethod.MIDPOINT
    bundle_adjust_tracks: bool = True
    multithreaded_step_size: int = 100

    # Bundle adjustment.
    bundle_adjustment_loss_function_type: LossFunctionType = LossFunctionType.SOFT_L1
    bundle_adjustment_robust_loss_width: float = 10.0
    intrinsics_to_optimize: OptimizeIntrinsicsType = OptimizeIntrinsicsType.NONE
    max_bundle_adjustment_iterations: int = 200
    # Incremental: run full BA once the model grew by this percentage,
    # otherwise only the most recent views.
    full_bundle_adjustment_growth_percent: float = 5.0
    partial_bundle_adjustment_num_views: int = 20
    min_num_estimated_tracks_per_view: int = 6

    # Refine -> filter -> re-triangulate loop.
    max_num_refinement_iterations: int = 3

    def __post_init__(self) -> None:
        # Localization has no match distances to feed EVSAC.
        if self.ransac_type in (RansacType.EVSAC, RansacType.EVSAC.value):
            raise ValueError(
                "ransac_type 'evsac' needs nearest-neighbour match distances and "
                "cannot be used for localization"
            )


@dataclass
class ReconstructionEstimatorSummary:
    success: bool = False
    state: ReconstructionEstimatorState = ReconstructionEstimatorState.UNESTIMATED
    estimated_views: int = 0
    estimated_tracks: int = 0
    num_iterations: int = 0
    # Phase name -> seconds.
    timings: Dict[str, float] = field(default_factory=dict)
    message: str = ""


class ReconstructionEstimator(abc.ABC):
    """Base class of the incremental, global and hybrid pipelines."""

    def __init__(self, options: ReconstructionEstimatorOptions) -> None:
        self.options = options

    @abc.abstractmethod
    def estimate(
        self,
        view_graph: ViewGraph,
        reconstruction: Reconstruction,
    ) -> ReconstructionEstimatorSummary:
        """
        Estimate cameras and tracks of `reconstruction` from `view_graph`.

        The caller's view graph is not modified.
        """

    # ------------------------------------------------------------------
    # Option builders
    # ------------------------------------------------------------------
    def bundle_adjustment_options(self, **overrides) -> BundleAdjustmentOptions:
        opts = self.options
        ba_options = BundleAdjustmentOptions(
            loss_function_type=opts.bundle_adjustment_loss_function_type,
            robust_loss_width=opts.bundle_adjustment_robust_loss_width,
            max_num_iterations=opts.max_bundle_adjustment_iterations,
            num_threads=opts.num_threads,
            intrinsics_to_optimize=opts.intrinsics_to_optimize,
        )
        for key, value in overrides.items():
            setattr(ba_options, key, value)
        return ba_options

    def track_estimator_options(self) -> TrackEstimatorOptions:
        opts = self.options
        return TrackEstimatorOptions(
            num_threads=opts.num_threads,
            max_acceptable_reprojection_error_pixels=opts.max_reprojection_error_in_pixels,
            min_triangulation_angle_degrees=opts.min_triangulation_angle_degrees,
            bundle_adjustment=opts.bundle_adjust_tracks,
            ba_options=self.bundle_adjustment_options(
                intrinsics_to_optimize=OptimizeIntrinsicsType.NONE,
                num_threads=1,
            ),
            multithreaded_step_size=opts.multithreaded_step_size,
            triangulation_method=opts.triangulation_method,
        )

    def localize_view_options(self, **ba_overrides) -> LocalizeViewOptions:
        opts = self.options
        return LocalizeViewOptions(
            ransac_type=opts.ransac_type,
            ransac_params=RansacParameters(
                error_thresh=1e-5,
                max_iterations=opts.ransac_max_iterations,
                min_iterations=min(100, opts.ransac_max_iterations),
                seed=opts.seed,
            ),
            reprojection_error_threshold_pixels=opts.absolute_pose_reprojection_error_threshold,
            min_num_inliers=opts.min_num_absolute_pose_inliers,
            ba_options=self.bundle_adjustment_options(
                intrinsics_to_optimize=OptimizeIntrinsicsType.NONE,
                num_threads=1,
                **ba_overrides,
            ),
        )

    # ------------------------------------------------------------------
    # Shared phases
    # ------------------------------------------------------------------
    def filter_view_graph(self, view_graph: ViewGraph, reconstruction: Reconstruction) -> ViewGraph:
        """Copy the view graph, dropping weak edges and views unknown to the reconstruction."""
        graph = view_graph.copy()
        known = set(reconstruction.view_ids())
        for u, v, info in list(graph.edges()):
            if u not in known or v not in known:
                graph.remove_edge(u, v)
            elif info.num_verified_matches < self.options.min_num_two_view_inliers:
                graph.remove_edge(u, v)
        graph.restrict_to_views(graph.largest_connected_component())
        return graph

    def estimate_tracks(self, reconstruction: Reconstruction) -> int:
        estimator = TrackEstimator(self.track_estimator_options(), reconstruction)
        return len(estimator.estimate_all_tracks().estimated_tracks)

    def remove_outliers(self, reconstruction: Reconstruction) -> int:
        opts = self.options
        num_tracks = set_outlier_tracks_to_unestimated(
            reconstruction,
            opts.max_reprojection_error_in_pixels,
            opts.min_triangulation_angle_degrees,
        )
        num_views = set_underconstrained_views_to_unestimated(
            reconstruction, opts.min_num_estimated_tracks_per_view
        )
        return num_tracks + num_views

    def refine_until_stable(
        self,
        reconstruction: Reconstruction,
        summary: ReconstructionEstimatorSummary,
    ) -> None:
        """Bundle adjust, filter outliers and re-triangulate until nothing changes."""
        start = time.perf_counter()
        ba_options = self.bundle_adjustment_options(fix_first_view=True)
        for _ in range(self.options.max_num_refinement_iterations):
            summary.num_iterations += 1
            ba_summary = bundle_adjust_reconstruction(ba_options, reconstruction)
            if not ba_summary.success:
                logger.warning(f"Full bundle adjustment failed: {ba_summary.message}")
            num_removed = self.remove_outliers(reconstruction)
            num_added = self.estimate_tracks(reconstruction)
            logger.info(
                f"Refinement iteration {summary.num_iterations}: "
                f"{num_removed} removed, {num_added} tracks re-estimated"
            )
            if num_removed == 0 and num_added == 0:
                break
        summary.state = ReconstructionEstimatorState.REFINED
        summary.timings["refinement"] = (
            summary.timings.get("refinement", 0.0) + time.perf_counter() - start
        )

    def finalize_summary(
        self,
        reconstruction: Reconstruction,
        view_graph: ViewGraph,
        summary: ReconstructionEstimatorSummary,
    ) -> ReconstructionEstimatorSummary:
        summary.estimated_views = len(reconstruction.estimated_view_ids())
        summary.estimated_tracks = len(reconstruction.estimated_track_ids())
        if summary.estimated_views == 0:
            summary.success = False
            summary.state = ReconstructionEstimatorState.FAILED
            summary.message = summary.message or "No views could be estimated"
            logger.warning(summary.message)
            return summary

        summary.success = True
        expected = set(view_graph.view_ids()) or set(reconstruction.view_ids())
        if expected.issubset(set(reconstruction.estimated_view_ids())):
            summary.state = ReconstructionEstimatorState.SUCCESS
        else:
            summary.state = ReconstructionEstimatorState.PARTIAL
        stats = reconstruction_statistics(reconstruction)
        logger.info(
            f"Reconstruction {summary.state.value}: {summary.estimated_views} views, "
            f"{summary.estimated_tracks} tracks, mean reprojection error "
            f"{stats['mean_reprojection_error']:.3f}px"
        )
        return summary


__all__ = [
    "ReconstructionEstimatorType",
    "ReconstructionEstimatorState",
    "ReconstructionEstimatorOptions",
    "ReconstructionEstimatorSummary",
    "ReconstructionEstimator",
]
