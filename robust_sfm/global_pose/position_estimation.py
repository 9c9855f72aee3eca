"""
Global camera positions from relative translation directions.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from robust_sfm.errors import OptimizationDivergence
from robust_sfm.sfm.view_graph import ViewGraph

logger = logging.getLogger(__name__)


@dataclass
class LeastUnsquaredDeviationOptions:
    max_num_iterations: int = 200
    # Soft-L1 scale; small values approach the unsquared (L1) objective.
    robust_loss_width: float = 0.1
    function_tolerance: float = 1e-10


class LeastUnsquaredDeviationPositionEstimator:
    """
    Least unsquared deviations (Ozyesil & Singer, CVPR 2015).

    Minimises sum_ij rho(c_j - c_i - s_ij t_ij) with world-frame unit
    directions t_ij, scales s_ij >= 1 and the first camera pinned at the
    origin. The lower bound on the scales removes the trivial collapsed
    solution.
    """

    def __init__(self, options: Optional[LeastUnsquaredDeviationOptions] = None) -> None:
        self.options = options or LeastUnsquaredDeviationOptions()

    @staticmethod
    def _directions(
        view_graph: ViewGraph,
        orientations: Dict[int, np.ndarray],
    ) -> Dict[tuple, np.ndarray]:
        directions = {}
        for u, v, info in view_graph.edges():
            if u not in orientations or v not in orientations:
                continue
            d = orientations[u].T @ info.position_2
            norm = np.linalg.norm(d)
            if norm > 1e-12:
                directions[(u, v)] = d / norm
        return directions

    @staticmethod
    def _initial_positions(
        view_ids: list,
        directions: Dict[tuple, np.ndarray],
    ) -> Dict[int, np.ndarray]:
        """Breadth-first chaining of unit steps from the first view."""
        adjacency: Dict[int, list] = {v: [] for v in view_ids}
        for (u, v), d in directions.items():
            adjacency[u].append((v, d))
            adjacency[v].append((u, -d))
        positions = {view_ids[0]: np.zeros(3)}
        queue = deque([view_ids[0]])
        while queue:
            u = queue.popleft()
            for v, d in adjacency[u]:
                if v not in positions:
                    positions[v] = positions[u] + d
                    queue.append(v)
        return positions

    def estimate_positions(
        self,
        view_graph: ViewGraph,
        orientations: Dict[int, np.ndarray],
    ) -> Dict[int, np.ndarray]:
        """
        Returns:
            view id -> camera centre for the views reachable from the first view.

        Raises:
            OptimizationDivergence: If the solver fails.
        """
        directions = self._directions(view_graph, orientations)
        view_ids = sorted({v for edge in directions for v in edge})
        if len(view_ids) < 2:
            return {v: np.zeros(3) for v in view_ids}

        initial = self._initial_positions(view_ids, directions)
        view_ids = [v for v in view_ids if v in initial]
        directions = {e: d for e, d in directions.items() if e[0] in initial and e[1] in initial}
        row = {v: i for i, v in enumerate(view_ids)}
        edges = list(directions.keys())
        num_free = len(view_ids) - 1
        num_edges = len(edges)
        i_idx = np.array([row[u] for u, _ in edges])
        j_idx = np.array([row[v] for _, v in edges])
        t = np.array([directions[e] for e in edges])

        c0 = np.array([initial[v] for v in view_ids])
        s0 = np.maximum(1.0, np.sum((c0[j_idx] - c0[i_idx]) * t, axis=1))
        x0 = np.concatenate([c0[1:].ravel(), s0])

        def residuals(x: np.ndarray) -> np.ndarray:
            c = np.vstack([np.zeros((1, 3)), x[: 3 * num_free].reshape(num_free, 3)])
            s = x[3 * num_free :]
            return (c[j_idx] - c[i_idx] - s[:, None] * t).ravel()

        sparsity = lil_matrix((3 * num_edges, 3 * num_free + num_edges), dtype=int)
        for k, (i, j) in enumerate(zip(i_idx, j_idx)):
            for r in range(3):
                for view in (i, j):
                    if view > 0:
                        sparsity[3 * k + r, 3 * (view - 1) + r] = 1
                sparsity[3 * k + r, 3 * num_free + k] = 1

        lower = np.concatenate([np.full(3 * num_free, -np.inf), np.ones(num_edges)])
        upper = np.full(3 * num_free + num_edges, np.inf)
        try:
            result = least_squares(
                residuals,
                np.clip(x0, lower, upper),
                jac_sparsity=sparsity,
                bounds=(lower, upper),
                method="trf",
                loss="soft_l1",
                f_scale=self.options.robust_loss_width,
                ftol=self.options.function_tolerance,
                max_nfev=self.options.max_num_iterations,
            )
        except ValueError as exc:
            raise OptimizationDivergence(f"Position estimation failed: {exc}") from exc
        if not np.all(np.isfinite(result.x)):
            raise OptimizationDivergence("Position estimation produced non-finite positions")

        c = np.vstack([np.zeros((1, 3)), result.x[: 3 * num_free].reshape(num_free, 3)])
        logger.info(
            f"Estimated {len(view_ids)} positions from {num_edges} directions: "
            f"cost {result.cost:.4e}"
        )
        return {v: c[i] for i, v in enumerate(view_ids)}


__all__ = ["LeastUnsquaredDeviationOptions", "LeastUnsquaredDeviationPositionEstimator"]
