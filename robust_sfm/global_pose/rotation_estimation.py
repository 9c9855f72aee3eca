"""
Global camera orientations from pairwise relative rotations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import networkx as nx
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation

from robust_sfm.errors import OptimizationDivergence
from robust_sfm.geometry.rotation import relative_rotation, rotation_angle_degrees
from robust_sfm.sfm.view_graph import ViewGraph

logger = logging.getLogger(__name__)


def orientations_from_maximum_spanning_tree(
    view_graph: ViewGraph,
    root: Optional[int] = None,
) -> Dict[int, np.ndarray]:
    """
    Chain relative rotations along the maximum spanning tree.

    Edge weights are the number of verified matches. The root (default: the
    lowest view id of the largest component) gets the identity orientation.

    Returns:
        view id -> world-to-camera rotation (3x3) for the root's component.
    """
    if view_graph.num_edges == 0:
        return {}
    tree = view_graph.maximum_spanning_tree()
    if root is None:
        root = min(view_graph.largest_connected_component())

    orientations = {root: np.eye(3)}
    for parent, child in nx.bfs_edges(tree, root):
        relative = view_graph.get_edge(parent, child).rotation_matrix()
        orientations[child] = relative @ orientations[parent]
    return orientations


@dataclass
class RobustRotationEstimatorOptions:
    max_num_iterations: int = 100
    # Soft-L1 scale in radians.
    robust_loss_width: float = 0.1
    function_tolerance: float = 1e-8


class RobustRotationEstimator:
    """
    Rotation averaging: minimise sum rho(|log(R_ij^T R_j R_i^T)|) over all
    view-graph edges, starting from an initial guess. Each rotation is
    updated by a left-multiplied angle-axis increment; the first view is held
    fixed.
    """

    def __init__(self, options: Optional[RobustRotationEstimatorOptions] = None) -> None:
        self.options = options or RobustRotationEstimatorOptions()

    def estimate_rotations(
        self,
        view_graph: ViewGraph,
        initial_orientations: Dict[int, np.ndarray],
    ) -> Dict[int, np.ndarray]:
        """
        Raises:
            OptimizationDivergence: If the solver fails or diverges.
        """
        view_ids = sorted(initial_orientations)
        if len(view_ids) < 2:
            return dict(initial_orientations)
        row = {v: i for i, v in enumerate(view_ids)}
        edges = [
            (row[u], row[v], info.rotation_matrix())
            for u, v, info in view_graph.edges()
            if u in row and v in row
        ]
        if not edges:
            return dict(initial_orientations)

        R0 = np.array([initial_orientations[v] for v in view_ids])
        i_idx = np.array([e[0] for e in edges])
        j_idx = np.array([e[1] for e in edges])
        measured_T = np.array([e[2].T for e in edges])
        num_free = len(view_ids) - 1

        def rotations(x: np.ndarray) -> np.ndarray:
            R = R0.copy()
            R[1:] = Rotation.from_rotvec(x.reshape(num_free, 3)).as_matrix() @ R0[1:]
            return R

        def residuals(x: np.ndarray) -> np.ndarray:
            R = rotations(x)
            error = measured_T @ R[j_idx] @ np.transpose(R[i_idx], (0, 2, 1))
            return Rotation.from_matrix(error).as_rotvec().ravel()

        sparsity = lil_matrix((3 * len(edges), 3 * num_free), dtype=int)
        for k, (i, j) in enumerate(zip(i_idx, j_idx)):
            for view in (i, j):
                if view == 0:
                    continue
                cols = range(3 * (view - 1), 3 * view)
                for r in range(3 * k, 3 * k + 3):
                    for c in cols:
                        sparsity[r, c] = 1

        x0 = np.zeros(3 * num_free)
        try:
            result = least_squares(
                residuals,
                x0,
                jac_sparsity=sparsity,
                method="trf",
                loss="soft_l1",
                f_scale=self.options.robust_loss_width,
                ftol=self.options.function_tolerance,
                max_nfev=self.options.max_num_iterations,
            )
        except ValueError as exc:
            raise OptimizationDivergence(f"Rotation averaging failed: {exc}") from exc
        if not np.all(np.isfinite(result.x)):
            raise OptimizationDivergence("Rotation averaging produced non-finite rotations")

        R = rotations(result.x)
        logger.info(
            f"Rotation averaging over {len(view_ids)} views / {len(edges)} edges: "
            f"cost {result.cost:.4e}"
        )
        return {v: R[i] for i, v in enumerate(view_ids)}


def filter_view_pairs_from_orientation(
    view_graph: ViewGraph,
    orientations: Dict[int, np.ndarray],
    max_relative_rotation_difference_degrees: float,
) -> int:
    """
    Remove edges whose measured relative rotation disagrees with the global
    orientations, and edges touching views without an orientation.

    Returns:
        Number of removed edges.
    """
    to_remove: List[tuple] = []
    for u, v, info in view_graph.edges():
        if u not in orientations or v not in orientations:
            to_remove.append((u, v))
            continue
        predicted = relative_rotation(orientations[u], orientations[v])
        error = rotation_angle_degrees(predicted, info.rotation_matrix())
        if error > max_relative_rotation_difference_degrees:
            to_remove.append((u, v))
    for u, v in to_remove:
        view_graph.remove_edge(u, v)
    if to_remove:
        logger.info(f"Removed {len(to_remove)} view pairs inconsistent with global rotations")
    return len(to_remove)


__all__ = [
    "orientations_from_maximum_spanning_tree",
    "RobustRotationEstimatorOptions",
    "RobustRotationEstimator",
    "filter_view_pairs_from_orientation",
]
