"""
Global Structure-from-Motion pipeline.

All camera orientations are estimated at once by rotation averaging, then
all camera positions from the relative translation directions; tracks are
triangulated afterwards and the whole model is refined.
"""

from __future__ import annotations

import logging
import time

from robust_sfm.errors import OptimizationDivergence
from robust_sfm.global_pose.position_estimation import LeastUnsquaredDeviationPositionEstimator
from robust_sfm.pipeline.hybrid import estimate_global_orientations
from robust_sfm.pipeline.reconstruction_estimator import (
    ReconstructionEstimator,
    ReconstructionEstimatorState,
    ReconstructionEstimatorSummary,
)
from robust_sfm.sfm.data_structures import Reconstruction
from robust_sfm.sfm.view_graph import ViewGraph

logger = logging.getLogger(__name__)


class GlobalReconstructionEstimator(ReconstructionEstimator):
    def estimate(
        self,
        view_graph: ViewGraph,
        reconstruction: Reconstruction,
    ) -> ReconstructionEstimatorSummary:
        summary = ReconstructionEstimatorSummary()
        start = time.perf_counter()
        graph = self.filter_view_graph(view_graph, reconstruction)
        if graph.num_edges == 0:
            summary.message = "No view pair with enough verified matches"
            return self.finalize_summary(reconstruction, graph, summary)

        try:
            orientations = estimate_global_orientations(
                graph, self.options.max_relative_rotation_difference_degrees
            )
            summary.timings["rotation_estimation"] = time.perf_counter() - start

            position_start = time.perf_counter()
            positions = LeastUnsquaredDeviationPositionEstimator().estimate_positions(
                graph, orientations
            )
            summary.timings["position_estimation"] = time.perf_counter() - position_start
        except OptimizationDivergence as exc:
            summary.message = str(exc)
            logger.warning(f"Global pose estimation failed: {exc}")
            return self.finalize_summary(reconstruction, graph, summary)

        for view_id, position in positions.items():
            view = reconstruction.view(view_id)
            view.camera.orientation = orientations[view_id]
            view.camera.position = position
            view.is_estimated = True
        logger.info(f"Estimated global poses of {len(positions)} views")
        summary.state = ReconstructionEstimatorState.PARTIALLY_ESTIMATED

        triangulation_start = time.perf_counter()
        self.estimate_tracks(reconstruction)
        summary.timings["triangulation"] = time.perf_counter() - triangulation_start

        self.refine_until_stable(reconstruction, summary)
        summary.timings["total"] = time.perf_counter() - start
        return self.finalize_summary(reconstruction, graph, summary)


__all__ = ["GlobalReconstructionEstimator"]
