"""
Packing of bundle-adjustment variables into a flat parameter vector.

Only non-constant blocks enter the vector. Camera orientations are
parameterised by a local angle-axis increment composed on the left of the
current rotation, so the initial vector for every rotation block is zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set, Tuple, Type

import numpy as np
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation

from robust_sfm.camera.intrinsics import CameraIntrinsicsModel
from robust_sfm.sfm.data_structures import Reconstruction

logger = logging.getLogger(__name__)


@dataclass
class IntrinsicsGroup:
    """Views sharing one intrinsics model class, solved in one vectorised call."""

    model_cls: Type[CameraIntrinsicsModel]
    # Rows into the layout's view arrays.
    view_rows: np.ndarray
    # (Vg, P) initial parameters.
    params: np.ndarray
    # Local rows (into `params`) of views whose intrinsics vary.
    var_rows: np.ndarray
    # Parameter indices optimised for those views.
    var_param_indices: Tuple[int, ...]
    # (len(var_rows), len(var_param_indices)) columns into x.
    cols: np.ndarray
    # Observation indices handled by this group.
    obs: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    # Local intrinsics row per observation in `obs`.
    obs_rows: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))


class ParameterLayout:
    """
    Problem description for one bundle-adjustment run.

    Args:
        reconstruction: Reconstruction to read initial values from.
        variable_view_ids: Views whose parameters may change.
        variable_track_ids: Tracks whose points may change.
        constant_orientation: Keep every rotation fixed.
        constant_position: Keep every camera centre fixed.
        intrinsics_names: Names of the intrinsics parameters to optimise
            (filtered per model).
        fixed_view_ids: Variable views whose extrinsics are nevertheless held
            fixed (gauge).
    """

    def __init__(
        self,
        reconstruction: Reconstruction,
        variable_view_ids: Sequence[int],
        variable_track_ids: Sequence[int],
        constant_orientation: bool = False,
        constant_position: bool = False,
        intrinsics_names: Tuple[str, ...] = (),
        fixed_view_ids: Set[int] = frozenset(),
    ) -> None:
        variable_views = set(variable_view_ids)
        variable_tracks = set(variable_track_ids)

        obs_view_ids: List[int] = []
        obs_track_ids: List[int] = []
        observed: List[np.ndarray] = []
        seen: Set[Tuple[int, int]] = set()

        def add_observation(view_id: int, track_id: int) -> None:
            if (view_id, track_id) in seen:
                return
            seen.add((view_id, track_id))
            obs_view_ids.append(view_id)
            obs_track_ids.append(track_id)
            observed.append(reconstruction.view(view_id).get_feature(track_id).point)

        for view_id in sorted(variable_views):
            view = reconstruction.view(view_id)
            if not view.is_estimated:
                continue
            for track_id in sorted(view.track_ids()):
                if reconstruction.track(track_id).is_estimated:
                    add_observation(view_id, track_id)
        for track_id in sorted(variable_tracks):
            track = reconstruction.track(track_id)
            if not track.is_estimated:
                continue
            for view_id in sorted(track.view_ids):
                if reconstruction.view(view_id).is_estimated:
                    add_observation(view_id, track_id)

        self.view_ids: List[int] = sorted(set(obs_view_ids))
        self.track_ids: List[int] = sorted(set(obs_track_ids))
        view_row: Dict[int, int] = {v: i for i, v in enumerate(self.view_ids)}
        track_row: Dict[int, int] = {t: i for i, t in enumerate(self.track_ids)}

        self.obs_view = np.array([view_row[v] for v in obs_view_ids], dtype=np.int64)
        self.obs_track = np.array([track_row[t] for t in obs_track_ids], dtype=np.int64)
        self.observed = np.array(observed, dtype=np.float64).reshape(-1, 2)

        cameras = [reconstruction.view(v).camera for v in self.view_ids]
        self.rotations0 = np.array([c.orientation for c in cameras]).reshape(-1, 3, 3)
        self.positions0 = np.array([c.position for c in cameras]).reshape(-1, 3)
        self.points0 = np.array(
            [reconstruction.track(t).inhomogeneous_point() for t in self.track_ids]
        ).reshape(-1, 3)

        num_params = 0

        def allocate(count: int, width: int) -> np.ndarray:
            nonlocal num_params
            cols = np.arange(num_params, num_params + count * width).reshape(count, width)
            num_params += count * width
            return cols

        extrinsic_rows = np.array(
            [
                i
                for i, v in enumerate(self.view_ids)
                if v in variable_views and v not in fixed_view_ids
            ],
            dtype=np.int64,
        )
        self.rot_rows = extrinsic_rows if not constant_orientation else np.zeros(0, dtype=np.int64)
        self.rot_cols = allocate(len(self.rot_rows), 3)
        self.pos_rows = extrinsic_rows if not constant_position else np.zeros(0, dtype=np.int64)
        self.pos_cols = allocate(len(self.pos_rows), 3)

        groups: Dict[Type[CameraIntrinsicsModel], List[int]] = {}
        for i, camera in enumerate(cameras):
            groups.setdefault(type(camera.intrinsics), []).append(i)
        self.groups: List[IntrinsicsGroup] = []
        for model_cls, rows in groups.items():
            rows_arr = np.array(rows, dtype=np.int64)
            params = np.array([cameras[i].intrinsics.parameters for i in rows])
            indices = tuple(
                model_cls.PARAMETER_NAMES.index(n)
                for n in intrinsics_names
                if n in model_cls.PARAMETER_NAMES
            )
            var_local = np.array(
                [k for k, i in enumerate(rows) if self.view_ids[i] in variable_views],
                dtype=np.int64,
            )
            if not indices:
                var_local = np.zeros(0, dtype=np.int64)
            cols = allocate(len(var_local), len(indices))
            local_of = {i: k for k, i in enumerate(rows)}
            obs = np.flatnonzero(np.isin(self.obs_view, rows_arr))
            obs_rows = np.array([local_of[i] for i in self.obs_view[obs]], dtype=np.int64)
            self.groups.append(
                IntrinsicsGroup(model_cls, rows_arr, params, var_local, indices, cols, obs, obs_rows)
            )

        self.point_rows = np.array(
            [i for i, t in enumerate(self.track_ids) if t in variable_tracks],
            dtype=np.int64,
        )
        self.point_cols = allocate(len(self.point_rows), 3)
        self.num_params = num_params

    # ------------------------------------------------------------------
    @property
    def num_observations(self) -> int:
        return len(self.observed)

    @property
    def num_residuals(self) -> int:
        return 2 * self.num_observations

    def initial_vector(self) -> np.ndarray:
        x = np.zeros(self.num_params)
        x[self.pos_cols.ravel()] = self.positions0[self.pos_rows].ravel()
        for group in self.groups:
            if group.cols.size:
                x[group.cols.ravel()] = group.params[
                    np.ix_(group.var_rows, group.var_param_indices)
                ].ravel()
        x[self.point_cols.ravel()] = self.points0[self.point_rows].ravel()
        return x

    def unpack(
        self,
        x: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, List[np.ndarray], np.ndarray]:
        """
        Returns:
            Tuple of (rotations (V, 3, 3), positions (V, 3), per-group
            intrinsics arrays, points (T, 3)).
        """
        rotations = self.rotations0.copy()
        if len(self.rot_rows):
            deltas = Rotation.from_rotvec(x[self.rot_cols])
            rotations[self.rot_rows] = (
                deltas.as_matrix() @ self.rotations0[self.rot_rows]
            )
        positions = self.positions0.copy()
        positions[self.pos_rows] = x[self.pos_cols]
        intrinsics = []
        for group in self.groups:
            params = group.params.copy()
            if group.cols.size:
                params[np.ix_(group.var_rows, group.var_param_indices)] = x[group.cols]
            intrinsics.append(params)
        points = self.points0.copy()
        points[self.point_rows] = x[self.point_cols]
        return rotations, positions, intrinsics, points

    def jac_sparsity(self) -> lil_matrix:
        """Residual/parameter dependency pattern (2 rows per observation)."""
        sparsity = lil_matrix((self.num_residuals, self.num_params), dtype=int)
        view_cols: Dict[int, List[int]] = {}
        for rows, cols in ((self.rot_rows, self.rot_cols), (self.pos_rows, self.pos_cols)):
            for r, c in zip(rows, cols):
                view_cols.setdefault(int(r), []).extend(c.tolist())
        for group in self.groups:
            for local, c in zip(group.var_rows, group.cols):
                view_cols.setdefault(int(group.view_rows[local]), []).extend(c.tolist())
        point_cols = {int(r): c.tolist() for r, c in zip(self.point_rows, self.point_cols)}

        for i, (v, t) in enumerate(zip(self.obs_view, self.obs_track)):
            cols = view_cols.get(int(v), []) + point_cols.get(int(t), [])
            for row in (2 * i, 2 * i + 1):
                for col in cols:
                    sparsity[row, col] = 1
        return sparsity


__all__ = ["IntrinsicsGroup", "ParameterLayout"]
