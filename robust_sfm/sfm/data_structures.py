"""
Shared core data structures for reconstruction.

These containers are used across:
- sample-consensus estimation (read-only queries)
- track triangulation
- bundle adjustment
- the reconstruction pipelines
"""

from __future__ import annotations

import contextlib
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

import numpy as np

from robust_sfm.camera.camera import Camera
from robust_sfm.errors import ConcurrencyContractViolation

logger = logging.getLogger(__name__)


@dataclass
class Feature:
    """
    A 2D observation of a track in a particular view.

    `point` is a (2,) numpy array in pixel coordinates.
    """

    point: np.ndarray
    # Optional 2x2 covariance of the measurement, in pixels^2.
    covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.point = np.asarray(self.point, dtype=np.float64).reshape(2)
        if self.covariance is not None:
            self.covariance = np.asarray(self.covariance, dtype=np.float64).reshape(2, 2)

    @property
    def x(self) -> float:
        return float(self.point[0])

    @property
    def y(self) -> float:
        return float(self.point[1])


@dataclass
class View:
    """Represents a single image, its camera and its observations."""

    id: int
    name: str
    camera: Camera = field(default_factory=Camera)
    timestamp: float = 0.0
    is_estimated: bool = False
    # track id -> Feature. A view observes a track at most once.
    features: Dict[int, Feature] = field(default_factory=dict)

    def track_ids(self) -> List[int]:
        return list(self.features.keys())

    def get_feature(self, track_id: int) -> Optional[Feature]:
        return self.features.get(track_id)

    def num_features(self) -> int:
        return len(self.features)


@dataclass
class Track:
    """A single 3D point in the global scene and the views that observe it."""

    id: int
    # Homogeneous 3D location (X, Y, Z, W) in world coordinates.
    point: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0]))
    view_ids: Set[int] = field(default_factory=set)
    is_estimated: bool = False
    # Optional RGB color (3,) uint8.
    color: Optional[np.ndarray] = None

    def num_views(self) -> int:
        return len(self.view_ids)

    def set_point(self, point: np.ndarray) -> None:
        """Set from a (3,) Euclidean or (4,) homogeneous point."""
        point = np.asarray(point, dtype=np.float64).ravel()
        if point.size == 3:
            point = np.append(point, 1.0)
        if point.size != 4:
            raise ValueError(f"Track point must have 3 or 4 entries, got {point.size}")
        self.point = point

    def set_estimated(self, estimated: bool) -> None:
        """
        Mark the track estimated or unestimated.

        Raises:
            ValueError: If marking estimated while the point is non-finite or
                at infinity.
        """
        if estimated and not self.has_valid_point():
            raise ValueError(f"Track {self.id} has a degenerate point {self.point}")
        self.is_estimated = bool(estimated)

    def has_valid_point(self) -> bool:
        return bool(np.all(np.isfinite(self.point)) and abs(self.point[3]) > 1e-12)

    def inhomogeneous_point(self) -> np.ndarray:
        return self.point[:3] / self.point[3]


class Reconstruction:
    """
    Owns every View and Track of a reconstruction.

    Ids are assigned monotonically and never reused. Views and tracks are
    never deleted; rejection is modelled by clearing `is_estimated`.
    """

    def __init__(self) -> None:
        self._views: Dict[int, View] = {}
        self._tracks: Dict[int, Track] = {}
        self._view_name_to_id: Dict[str, int] = {}
        self._next_view_id = itertools.count()
        self._next_track_id = itertools.count()
        # Active writer phases: writer name -> (view ids, track ids, thread id).
        self._claims: Dict[str, Tuple[frozenset, frozenset, int]] = {}
        self._next_writer_id = itertools.count()
        self._claims_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def add_view(
        self,
        name: str,
        timestamp: float = 0.0,
        camera: Optional[Camera] = None,
    ) -> int:
        """
        Add a new view.

        Raises:
            ValueError: If a view with the same name already exists.
        """
        if name in self._view_name_to_id:
            raise ValueError(f"View '{name}' already exists in the reconstruction")
        view_id = next(self._next_view_id)
        self._views[view_id] = View(
            id=view_id,
            name=name,
            camera=camera if camera is not None else Camera(),
            timestamp=timestamp,
        )
        self._view_name_to_id[name] = view_id
        return view_id

    def add_track(
        self,
        observations: Optional[Iterable[Tuple[int, Feature]]] = None,
    ) -> int:
        """
        Add a new track, optionally with its observations.

        Args:
            observations: (view_id, Feature) pairs; the views must be distinct.

        Returns:
            The new track id.

        Raises:
            ValueError: If two observations reference the same view.
            KeyError: If a view id is unknown.
        """
        observations = list(observations or [])
        view_ids = [view_id for view_id, _ in observations]
        if len(set(view_ids)) != len(view_ids):
            raise ValueError(f"Track observations must come from distinct views: {view_ids}")
        for view_id in view_ids:
            self.view(view_id)

        track_id = next(self._next_track_id)
        self._tracks[track_id] = Track(id=track_id)
        for view_id, feature in observations:
            self.add_observation(view_id, track_id, feature)
        return track_id

    def add_observation(self, view_id: int, track_id: int, feature: Feature) -> bool:
        """
        Link `feature` in `view_id` to `track_id`.

        Returns:
            False if the view already observes the track.
        """
        view = self.view(view_id)
        track = self.track(track_id)
        if track_id in view.features:
            logger.debug(f"View {view_id} already observes track {track_id}")
            return False
        if not isinstance(feature, Feature):
            feature = Feature(np.asarray(feature))
        view.features[track_id] = feature
        track.view_ids.add(view_id)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def view(self, view_id: int) -> View:
        """
        Return the view with id `view_id`.

        Raises:
            KeyError: If the id is unknown.
        """
        try:
            return self._views[view_id]
        except KeyError:
            raise KeyError(f"Unknown view id {view_id}") from None

    def track(self, track_id: int) -> Track:
        """
        Return the track with id `track_id`.

        Raises:
            KeyError: If the id is unknown.
        """
        try:
            return self._tracks[track_id]
        except KeyError:
            raise KeyError(f"Unknown track id {track_id}") from None

    def view_id_from_name(self, name: str) -> Optional[int]:
        """Id of the view called `name`, or None if there is no such view."""
        return self._view_name_to_id.get(name)

    def view_ids(self) -> List[int]:
        """All view ids in insertion order."""
        return list(self._views.keys())

    def track_ids(self) -> List[int]:
        """All track ids in insertion order."""
        return list(self._tracks.keys())

    def num_views(self) -> int:
        """Number of views, estimated or not."""
        return len(self._views)

    def num_tracks(self) -> int:
        """Number of tracks, estimated or not."""
        return len(self._tracks)

    def estimated_view_ids(self) -> List[int]:
        """Ids of the views whose pose is currently estimated."""
        return [vid for vid, view in self._views.items() if view.is_estimated]

    def estimated_track_ids(self) -> List[int]:
        """Ids of the tracks whose point is currently estimated."""
        return [tid for tid, track in self._tracks.items() if track.is_estimated]

    def num_observations(self) -> int:
        """Total number of (view, track) observations."""
        return sum(view.num_features() for view in self._views.values())

    def estimated_points(self) -> np.ndarray:
        """(M, 3) Euclidean points of every estimated track."""
        points = [self._tracks[t].inhomogeneous_point() for t in self.estimated_track_ids()]
        return np.array(points).reshape(-1, 3)

    # ------------------------------------------------------------------
    # Concurrent writer phases
    # ------------------------------------------------------------------
    @contextlib.contextmanager
    def claim(
        self,
        view_ids: Iterable[int] = (),
        track_ids: Iterable[int] = (),
        writer: str = "writer",
    ) -> Iterator[None]:
        """
        Register an exclusive writer over a set of views and tracks.

        A claim made from a thread whose active claims already cover every
        requested view and track is nested inside them and is granted
        without being registered. Any other claim must be disjoint from all
        active claims, including those of the calling thread.

        Args:
            view_ids: Views the writer may mutate.
            track_ids: Tracks the writer may mutate.
            writer: Name reported in violations; see `new_writer_name`.

        Raises:
            ConcurrencyContractViolation: If another active writer already
                claims any of the same views or tracks, or the writer name is
                already active.
        """
        views = frozenset(view_ids)
        tracks = frozenset(track_ids)
        thread_id = threading.get_ident()
        with self._claims_lock:
            owned_views: Set[int] = set()
            owned_tracks: Set[int] = set()
            for other_views, other_tracks, owner in self._claims.values():
                if owner == thread_id:
                    owned_views |= other_views
                    owned_tracks |= other_tracks
            nested = bool(owned_views or owned_tracks) and views <= owned_views and tracks <= owned_tracks
            if not nested:
                if writer in self._claims:
                    raise ConcurrencyContractViolation(f"Writer '{writer}' is already active")
                for other, (other_views, other_tracks, _) in self._claims.items():
                    shared_views = views & other_views
                    shared_tracks = tracks & other_tracks
                    if shared_views or shared_tracks:
                        raise ConcurrencyContractViolation(
                            f"Writer '{writer}' overlaps '{other}': "
                            f"views {sorted(shared_views)}, tracks {sorted(shared_tracks)}"
                        )
                self._claims[writer] = (views, tracks, thread_id)
        if nested:
            yield
            return
        try:
            yield
        finally:
            with self._claims_lock:
                self._claims.pop(writer, None)

    def new_writer_name(self, prefix: str) -> str:
        """Return a writer name unique to this reconstruction, e.g. "bundle_adjustment_3"."""
        with self._claims_lock:
            return f"{prefix}_{next(self._next_writer_id)}"

    def __repr__(self) -> str:
        return (
            f"Reconstruction(views={self.num_views()} "
            f"({len(self.estimated_view_ids())} estimated), "
            f"tracks={self.num_tracks()} ({len(self.estimated_track_ids())} estimated))"
        )


__all__ = ["Feature", "View", "Track", "Reconstruction"]
