"""
View-pair graph built from verified two-view matches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Set, Tuple

import cv2
import networkx as nx
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class TwoViewInfo:
    """
    Relative geometry between two views.

    The first camera sits at the origin with identity orientation. `rotation_2`
    is the angle-axis rotation taking camera-1 coordinates to camera-2
    coordinates and `position_2` is the camera-2 centre in camera-1
    coordinates (unit length when estimated from an essential matrix).
    """

    focal_length_1: float = 0.0
    focal_length_2: float = 0.0
    position_2: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation_2: np.ndarray = field(default_factory=lambda: np.zeros(3))
    num_verified_matches: int = 0
    num_homography_inliers: int = 0
    visibility_score: int = 0

    def __post_init__(self) -> None:
        self.position_2 = np.asarray(self.position_2, dtype=np.float64).reshape(3)
        self.rotation_2 = np.asarray(self.rotation_2, dtype=np.float64).reshape(3)

    def rotation_matrix(self) -> np.ndarray:
        """`rotation_2` as a 3x3 matrix."""
        R, _ = cv2.Rodrigues(self.rotation_2.reshape(3, 1))
        return R

    def swap(self) -> "TwoViewInfo":
        """Return the same relative geometry expressed from camera 2's side."""
        R = self.rotation_matrix()
        return replace(
            self,
            focal_length_1=self.focal_length_2,
            focal_length_2=self.focal_length_1,
            position_2=-R @ self.position_2,
            rotation_2=-self.rotation_2,
        )


class ViewGraph:
    """
    Undirected graph of views connected by TwoViewInfo edges.

    Edges are stored with the smaller view id first; `get_edge` re-orients
    the info for the caller's argument order.
    """

    def __init__(self) -> None:
        self._graph = nx.Graph()

    def add_edge(self, view_id_1: int, view_id_2: int, info: TwoViewInfo) -> None:
        """
        Add or replace the edge between two views.

        Args:
            view_id_1: View whose camera frame `info` is expressed in.
            view_id_2: The other view.
            info: Relative geometry of view 2 with respect to view 1. It is
                swapped before storage when view_id_1 > view_id_2.

        Raises:
            ValueError: If both ids are the same view.
        """
        if view_id_1 == view_id_2:
            raise ValueError(f"Cannot add a self edge on view {view_id_1}")
        if view_id_1 > view_id_2:
            view_id_1, view_id_2 = view_id_2, view_id_1
            info = info.swap()
        self._graph.add_edge(
            view_id_1,
            view_id_2,
            info=info,
            weight=info.num_verified_matches,
        )

    def has_edge(self, view_id_1: int, view_id_2: int) -> bool:
        """True if the two views are connected, in either order."""
        return self._graph.has_edge(view_id_1, view_id_2)

    def get_edge(self, view_id_1: int, view_id_2: int) -> TwoViewInfo:
        """
        Relative geometry of `view_id_2` expressed in `view_id_1`'s frame.

        Raises:
            KeyError: If the views are not connected.
        """
        if not self.has_edge(view_id_1, view_id_2):
            raise KeyError(f"No edge between views {view_id_1} and {view_id_2}")
        info = self._graph.edges[view_id_1, view_id_2]["info"]
        return info if view_id_1 < view_id_2 else info.swap()

    def remove_edge(self, view_id_1: int, view_id_2: int) -> bool:
        """
        Remove the edge between two views; both views stay in the graph.

        Returns:
            False if there was no such edge.
        """
        if not self.has_edge(view_id_1, view_id_2):
            return False
        self._graph.remove_edge(view_id_1, view_id_2)
        return True

    def remove_view(self, view_id: int) -> bool:
        """
        Remove a view and its incident edges.

        Returns:
            False if the view was not in the graph.
        """
        if view_id not in self._graph:
            return False
        self._graph.remove_node(view_id)
        return True

    def neighbors(self, view_id: int) -> List[int]:
        """Sorted ids of the views sharing an edge with `view_id`."""
        if view_id not in self._graph:
            return []
        return sorted(self._graph.neighbors(view_id))

    def view_ids(self) -> List[int]:
        """Sorted ids of every view in the graph."""
        return sorted(self._graph.nodes)

    def edges(self) -> Iterator[Tuple[int, int, TwoViewInfo]]:
        """Yield (view_id_1, view_id_2, info) with view_id_1 < view_id_2."""
        for u, v, data in self._graph.edges(data=True):
            if u > v:
                u, v = v, u
            yield u, v, data["info"]

    def edge_dict(self) -> Dict[Tuple[int, int], TwoViewInfo]:
        """Edges keyed by (smaller id, larger id)."""
        return {(u, v): info for u, v, info in self.edges()}

    @property
    def num_views(self) -> int:
        return self._graph.number_of_nodes()

    @property
    def num_edges(self) -> int:
        return self._graph.number_of_edges()

    def largest_connected_component(self) -> Set[int]:
        """View ids of the largest connected component; empty for an empty graph."""
        if self._graph.number_of_nodes() == 0:
            return set()
        return set(max(nx.connected_components(self._graph), key=len))

    def restrict_to_views(self, view_ids: Set[int]) -> None:
        """Drop every view (and incident edge) not in `view_ids`."""
        to_remove = [v for v in self._graph.nodes if v not in view_ids]
        self._graph.remove_nodes_from(to_remove)
        if to_remove:
            logger.debug(f"Removed {len(to_remove)} views outside the kept component")

    def maximum_spanning_tree(self) -> nx.Graph:
        """Spanning tree maximising the number of verified matches."""
        return nx.maximum_spanning_tree(self._graph, weight="weight")

    def copy(self) -> "ViewGraph":
        """Independent copy; edits to the copy or its edge infos leave this graph alone."""
        clone = ViewGraph()
        clone._graph.add_nodes_from(self._graph.nodes)
        for u, v, info in self.edges():
            clone.add_edge(
                u,
                v,
                replace(info, position_2=info.position_2.copy(), rotation_2=info.rotation_2.copy()),
            )
        return clone

    @property
    def graph(self) -> nx.Graph:
        """The underlying networkx graph; edges carry `info` and `weight` attributes."""
        return self._graph


__all__ = ["TwoViewInfo", "ViewGraph"]
