"""
Hybrid Structure-from-Motion: global rotations, incremental positions.

Orientations of every view are fixed up front by rotation averaging over the
view graph, so registering a new view only needs its camera centre. Growth,
triangulation and refinement follow the incremental pipeline.
"""

from __future__ import annotations

import logging
import time
from typing import Dict

import numpy as np

from robust_sfm.errors import OptimizationDivergence
from robust_sfm.global_pose.rotation_estimation import (
    RobustRotationEstimator,
    filter_view_pairs_from_orientation,
    orientations_from_maximum_spanning_tree,
)
from robust_sfm.pipeline.incremental import IncrementalReconstructionEstimator
from robust_sfm.pipeline.reconstruction_estimator import ReconstructionEstimatorSummary
from robust_sfm.sfm.data_structures import Reconstruction
from robust_sfm.sfm.localization import (
    LocalizeViewOptions,
    estimate_position_with_known_orientation,
)
from robust_sfm.sfm.view_graph import TwoViewInfo, ViewGraph

logger = logging.getLogger(__name__)


class HybridReconstructionEstimator(IncrementalReconstructionEstimator):
    def __init__(self, options) -> None:
        super().__init__(options)
        self.orientations: Dict[int, np.ndarray] = {}

    def prepare(
        self,
        graph: ViewGraph,
        reconstruction: Reconstruction,
        summary: ReconstructionEstimatorSummary,
    ) -> bool:
        start = time.perf_counter()
        try:
            self.orientations = estimate_global_orientations(
                graph, self.options.max_relative_rotation_difference_degrees
            )
        except OptimizationDivergence as exc:
            summary.message = str(exc)
            logger.warning(f"Global rotation estimation failed: {exc}")
            return False
        summary.timings["rotation_estimation"] = time.perf_counter() - start
        if len(self.orientations) < 2:
            summary.message = "Too few views with a global orientation"
            return False

        for view_id, orientation in self.orientations.items():
            reconstruction.view(view_id).camera.orientation = orientation
        return True

    def initialize_seed_pair(
        self,
        reconstruction: Reconstruction,
        view_id_1: int,
        view_id_2: int,
        info: TwoViewInfo,
    ) -> None:
        """Keep the global orientations; place the second camera along the relative direction."""
        camera1 = reconstruction.view(view_id_1).camera
        camera1.position = np.zeros(3)
        camera2 = reconstruction.view(view_id_2).camera
        camera2.position = self.orientations[view_id_1].T @ info.position_2
        reconstruction.view(view_id_1).is_estimated = True
        reconstruction.view(view_id_2).is_estimated = True

    def localize(
        self,
        view_id: int,
        reconstruction: Reconstruction,
        options: LocalizeViewOptions,
    ) -> bool:
        if view_id not in self.orientations:
            return False
        reconstruction.view(view_id).camera.orientation = self.orientations[view_id]
        success, _ = estimate_position_with_known_orientation(view_id, reconstruction, options)
        return success

    def localize_options(self) -> LocalizeViewOptions:
        return self.localize_view_options(constant_camera_orientation=True)


def estimate_global_orientations(
    graph: ViewGraph,
    max_relative_rotation_difference_degrees: float,
) -> Dict[int, np.ndarray]:
    """
    Spanning-tree initialization, robust rotation averaging and removal of
    view pairs that disagree with the result. `graph` is restricted in place
    to the largest component that survives the filtering.

    Raises:
        OptimizationDivergence: If rotation averaging fails.
    """
    initial = orientations_from_maximum_spanning_tree(graph)
    orientations = RobustRotationEstimator().estimate_rotations(graph, initial)
    filter_view_pairs_from_orientation(
        graph, orientations, max_relative_rotation_difference_degrees
    )
    graph.restrict_to_views(graph.largest_connected_component())
    keep = set(graph.view_ids())
    return {view_id: R for view_id, R in orientations.items() if view_id in keep}


__all__ = ["HybridReconstructionEstimator", "estimate_global_orientations"]
