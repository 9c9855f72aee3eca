"""
Bundle adjustment for refining camera poses, intrinsics and 3D point positions.
"""

from __future__ import annotations

import enum
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple

import numpy as np
from scipy.optimize import least_squares

from robust_sfm.ba.parameter_layout import ParameterLayout
from robust_sfm.errors import OptimizationDivergence
from robust_sfm.sfm.data_structures import Reconstruction

logger = logging.getLogger(__name__)

# Below this many observations residuals are evaluated on the calling thread.
_MIN_OBSERVATIONS_PER_THREAD = 2000


class LossFunctionType(enum.Enum):
    TRIVIAL = "linear"
    HUBER = "huber"
    SOFT_L1 = "soft_l1"
    CAUCHY = "cauchy"
    ARCTAN = "arctan"


class OptimizeIntrinsicsType(enum.Flag):
    NONE = 0
    FOCAL_LENGTH = 1
    ASPECT_RATIO = 2
    SKEW = 4
    PRINCIPAL_POINTS = 8
    RADIAL_DISTORTION = 16
    TANGENTIAL_DISTORTION = 32
    ALL = 63


_INTRINSICS_FLAG_TO_NAMES = {
    OptimizeIntrinsicsType.FOCAL_LENGTH: ("focal_length",),
    OptimizeIntrinsicsType.ASPECT_RATIO: ("aspect_ratio",),
    OptimizeIntrinsicsType.SKEW: ("skew",),
    OptimizeIntrinsicsType.PRINCIPAL_POINTS: ("principal_point_x", "principal_point_y"),
    OptimizeIntrinsicsType.RADIAL_DISTORTION: (
        "radial_distortion_1",
        "radial_distortion_2",
        "radial_distortion_3",
        "radial_distortion_4",
    ),
    OptimizeIntrinsicsType.TANGENTIAL_DISTORTION: (
        "tangential_distortion_1",
        "tangential_distortion_2",
    ),
}


def intrinsics_parameter_names(flags: OptimizeIntrinsicsType) -> Tuple[str, ...]:
    names: List[str] = []
    for flag, flag_names in _INTRINSICS_FLAG_TO_NAMES.items():
        if flag in flags:
            names.extend(flag_names)
    return tuple(names)


@dataclass
class BundleAdjustmentOptions:
    loss_function_type: LossFunctionType = LossFunctionType.TRIVIAL
    # Scale (in pixels) beyond which the robust loss kicks in.
    robust_loss_width: float = 10.0
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8
    max_num_iterations: int = 500
    max_solver_time_in_seconds: float = 3600.0
    num_threads: int = 1
    intrinsics_to_optimize: OptimizeIntrinsicsType = (
        OptimizeIntrinsicsType.FOCAL_LENGTH | OptimizeIntrinsicsType.RADIAL_DISTORTION
    )
    constant_camera_orientation: bool = False
    constant_camera_position: bool = False
    # Hold the extrinsics of the lowest-id view fixed when several views are
    # optimised together (removes the similarity gauge freedom partially).
    fix_first_view: bool = False
    verbose: bool = False


@dataclass
class BundleAdjustmentSummary:
    success: bool = False
    initial_cost: float = 0.0
    final_cost: float = 0.0
    num_iterations: int = 0
    num_residuals: int = 0
    elapsed_time: float = 0.0
    message: str = ""


class _SolverTimeout(Exception):
    pass


def _robust_cost(residuals: np.ndarray, loss: LossFunctionType, width: float) -> float:
    """0.5 * sum of rho(r^2) using scipy's loss definitions."""
    z = (residuals / width) ** 2
    if loss == LossFunctionType.TRIVIAL:
        rho = z
    elif loss == LossFunctionType.HUBER:
        rho = np.where(z <= 1.0, z, 2.0 * np.sqrt(z) - 1.0)
    elif loss == LossFunctionType.SOFT_L1:
        rho = 2.0 * (np.sqrt(1.0 + z) - 1.0)
    elif loss == LossFunctionType.CAUCHY:
        rho = np.log1p(z)
    else:
        rho = np.arctan(z)
    return float(0.5 * width**2 * np.sum(rho))


class BundleAdjuster:
    """
    Nonlinear least-squares refinement over a scope of views and tracks.

    Views added with `add_view` have their extrinsics (and the selected
    intrinsics) optimised; tracks added with `add_track` have their points
    optimised. Every estimated view/track that shares an observation with the
    scope contributes residuals with its parameters held constant.
    """

    def __init__(self, options: BundleAdjustmentOptions, reconstruction: Reconstruction) -> None:
        self.options = options
        self.reconstruction = reconstruction
        self._view_ids: Set[int] = set()
        self._track_ids: Set[int] = set()

    def add_view(self, view_id: int) -> None:
        self.reconstruction.view(view_id)
        self._view_ids.add(view_id)

    def add_track(self, track_id: int) -> None:
        self.reconstruction.track(track_id)
        self._track_ids.add(track_id)

    # ------------------------------------------------------------------
    def _build_layout(self) -> ParameterLayout:
        opts = self.options
        fixed: Set[int] = set()
        if opts.fix_first_view and len(self._view_ids) > 1:
            fixed.add(min(self._view_ids))
        return ParameterLayout(
            self.reconstruction,
            sorted(self._view_ids),
            sorted(self._track_ids),
            constant_orientation=opts.constant_camera_orientation,
            constant_position=opts.constant_camera_position,
            intrinsics_names=intrinsics_parameter_names(opts.intrinsics_to_optimize),
            fixed_view_ids=fixed,
        )

    @staticmethod
    def _block_residuals(
        layout: ParameterLayout,
        unpacked: Tuple[np.ndarray, np.ndarray, List[np.ndarray], np.ndarray],
        obs: np.ndarray,
        model_cls: type,
        intrinsics: np.ndarray,
        obs_rows: np.ndarray,
    ) -> np.ndarray:
        rotations, positions, _, points = unpacked
        v = layout.obs_view[obs]
        t = layout.obs_track[obs]
        points_cam = np.einsum("nij,nj->ni", rotations[v], points[t] - positions[v])
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            pixels = model_cls.camera_to_pixel_with_parameters(intrinsics[obs_rows], points_cam)
        return pixels - layout.observed[obs]

    def _residual_function(self, layout: ParameterLayout, executor, deadline: float):
        num_threads = self.options.num_threads

        def residuals(x: np.ndarray) -> np.ndarray:
            if time.perf_counter() > deadline:
                raise _SolverTimeout()
            unpacked = layout.unpack(x)
            out = np.empty((layout.num_observations, 2))
            jobs = []
            for group, intrinsics in zip(layout.groups, unpacked[2]):
                if len(group.obs) == 0:
                    continue
                if executor is None:
                    blocks = [np.arange(len(group.obs))]
                else:
                    blocks = np.array_split(np.arange(len(group.obs)), num_threads)
                for block in blocks:
                    if len(block) == 0:
                        continue
                    jobs.append((group, intrinsics, block))

            def run(job) -> Tuple[np.ndarray, np.ndarray]:
                group, intrinsics, block = job
                obs = group.obs[block]
                r = self._block_residuals(
                    layout, unpacked, obs, group.model_cls, intrinsics, group.obs_rows[block]
                )
                return obs, r

            results = executor.map(run, jobs) if executor is not None else map(run, jobs)
            for obs, r in results:
                out[obs] = r
            # Points behind a camera produce inf/nan pixels; give them a large
            # finite residual so the solver keeps a usable cost.
            return np.nan_to_num(out.ravel(), nan=1e6, posinf=1e6, neginf=-1e6)

        return residuals

    def optimize(self) -> BundleAdjustmentSummary:
        """
        Run the optimisation and write results back on success.

        The adjusted views and tracks are claimed for the whole run, from
        reading the initial parameters to the write-back.

        On divergence (solver error, non-finite result or time cap) nothing is
        written back and `success` is False.

        Raises:
            ConcurrencyContractViolation: If another writer holds any of the
                adjusted views or tracks.
        """
        writer = self.reconstruction.new_writer_name("bundle_adjustment")
        with self.reconstruction.claim(
            view_ids=self._view_ids, track_ids=self._track_ids, writer=writer
        ):
            return self._optimize()

    def _optimize(self) -> BundleAdjustmentSummary:
        opts = self.options
        summary = BundleAdjustmentSummary()
        start = time.perf_counter()

        layout = self._build_layout()
        summary.num_residuals = layout.num_residuals
        if layout.num_observations == 0:
            summary.message = "No residuals in the bundle adjustment scope"
            logger.debug(summary.message)
            return summary

        use_threads = (
            opts.num_threads > 1
            and layout.num_observations >= _MIN_OBSERVATIONS_PER_THREAD
        )
        executor = ThreadPoolExecutor(max_workers=opts.num_threads) if use_threads else None
        try:
            fun = self._residual_function(
                layout, executor, start + opts.max_solver_time_in_seconds
            )
            x0 = layout.initial_vector()
            initial = fun(x0)
            summary.initial_cost = _robust_cost(
                initial, opts.loss_function_type, opts.robust_loss_width
            )

            if layout.num_params == 0:
                summary.success = True
                summary.final_cost = summary.initial_cost
                summary.message = "No free parameters"
                summary.elapsed_time = time.perf_counter() - start
                return summary

            if opts.verbose:
                logger.info(
                    f"Bundle adjustment: {len(layout.view_ids)} views, "
                    f"{len(layout.track_ids)} tracks, {layout.num_observations} observations, "
                    f"{layout.num_params} parameters"
                )
            result = self._solve(fun, x0, layout)
        except (OptimizationDivergence, _SolverTimeout) as exc:
            summary.final_cost = summary.initial_cost
            summary.message = str(exc) or "Solver time limit reached"
            summary.elapsed_time = time.perf_counter() - start
            logger.warning(f"Bundle adjustment failed: {summary.message}")
            return summary
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        summary.final_cost = float(result.cost)
        summary.num_iterations = int(result.njev if result.njev is not None else result.nfev)
        summary.message = result.message
        summary.elapsed_time = time.perf_counter() - start

        if not np.all(np.isfinite(result.x)):
            summary.message = "Solver returned non-finite parameters"
            summary.final_cost = summary.initial_cost
            logger.warning(summary.message)
            return summary

        self._write_back(layout, result.x)
        summary.success = True
        log = logger.info if opts.verbose else logger.debug
        log(
            f"Bundle adjustment done: cost {summary.initial_cost:.4e} -> "
            f"{summary.final_cost:.4e} in {summary.num_iterations} iterations "
            f"({summary.elapsed_time:.2f}s)"
        )
        return summary

    def _solve(self, fun, x0: np.ndarray, layout: ParameterLayout):
        opts = self.options
        try:
            return least_squares(
                fun,
                x0,
                jac_sparsity=layout.jac_sparsity(),
                method="trf",
                loss=opts.loss_function_type.value,
                f_scale=opts.robust_loss_width,
                ftol=opts.function_tolerance,
                xtol=opts.parameter_tolerance,
                gtol=opts.gradient_tolerance,
                max_nfev=opts.max_num_iterations,
                x_scale="jac",
                verbose=2 if opts.verbose else 0,
            )
        except (ValueError, np.linalg.LinAlgError) as exc:
            raise OptimizationDivergence(f"least_squares failed: {exc}") from exc

    def _write_back(self, layout: ParameterLayout, x: np.ndarray) -> None:
        rotations, positions, intrinsics, points = layout.unpack(x)
        for row, view_id in enumerate(layout.view_ids):
            if view_id not in self._view_ids:
                continue
            camera = self.reconstruction.view(view_id).camera
            camera.orientation = rotations[row]
            camera.position = positions[row]
        for group, params in zip(layout.groups, intrinsics):
            for local, row in enumerate(group.view_rows):
                view_id = layout.view_ids[row]
                if view_id in self._view_ids:
                    self.reconstruction.view(view_id).camera.intrinsics.parameters = params[local]
        for row in layout.point_rows:
            self.reconstruction.track(layout.track_ids[row]).set_point(points[row])


# ----------------------------------------------------------------------
# Convenience entry points
# ----------------------------------------------------------------------
def bundle_adjust_partial_reconstruction(
    options: BundleAdjustmentOptions,
    view_ids: Iterable[int],
    track_ids: Iterable[int],
    reconstruction: Reconstruction,
) -> BundleAdjustmentSummary:
    """
    Refine the given views and tracks.

    Cameras of other estimated views observing the tracks are held constant,
    as are the points of other estimated tracks seen by the views.

    Args:
        options: Solver and loss configuration.
        view_ids: Views whose cameras are optimised.
        track_ids: Tracks whose points are optimised.
        reconstruction: Reconstruction read and updated in place.

    Returns:
        The solver summary; nothing is written back unless `success`.

    Raises:
        ConcurrencyContractViolation: If another writer holds any of the
            views or tracks.
    """
    ba = BundleAdjuster(options, reconstruction)
    for view_id in view_ids:
        ba.add_view(view_id)
    for track_id in track_ids:
        ba.add_track(track_id)
    return ba.optimize()


def bundle_adjust_reconstruction(
    options: BundleAdjustmentOptions,
    reconstruction: Reconstruction,
) -> BundleAdjustmentSummary:
    """Refine every estimated view and track."""
    return bundle_adjust_partial_reconstruction(
        options,
        reconstruction.estimated_view_ids(),
        reconstruction.estimated_track_ids(),
        reconstruction,
    )


def bundle_adjust_view(
    options: BundleAdjustmentOptions,
    view_id: int,
    reconstruction: Reconstruction,
) -> BundleAdjustmentSummary:
    """Refine one view's camera; the points it observes stay constant."""
    return bundle_adjust_partial_reconstruction(options, [view_id], [], reconstruction)


def bundle_adjust_track(
    options: BundleAdjustmentOptions,
    track_id: int,
    reconstruction: Reconstruction,
) -> BundleAdjustmentSummary:
    """Refine one track's point; the observing cameras stay constant."""
    return bundle_adjust_partial_reconstruction(options, [], [track_id], reconstruction)


def bundle_adjust_track_and_views(
    options: BundleAdjustmentOptions,
    track_id: int,
    reconstruction: Reconstruction,
) -> BundleAdjustmentSummary:
    """Refine one track together with every estimated view observing it."""
    track = reconstruction.track(track_id)
    view_ids = [v for v in track.view_ids if reconstruction.view(v).is_estimated]
    return bundle_adjust_partial_reconstruction(options, view_ids, [track_id], reconstruction)


def reprojection_errors(
    reconstruction: Reconstruction,
    track_ids: Optional[Iterable[int]] = None,
) -> np.ndarray:
    """Pixel reprojection error of every observation of the given estimated tracks."""
    if track_ids is None:
        track_ids = reconstruction.estimated_track_ids()
    errors = []
    for track_id in track_ids:
        track = reconstruction.track(track_id)
        if not track.is_estimated:
            continue
        for view_id in track.view_ids:
            view = reconstruction.view(view_id)
            if not view.is_estimated:
                continue
            pixel, depth = view.camera.project_point(track.point)
            errors.append(
                np.inf if depth <= 0 else float(np.linalg.norm(pixel - view.get_feature(track_id).point))
            )
    return np.array(errors)


__all__ = [
    "LossFunctionType",
    "OptimizeIntrinsicsType",
    "BundleAdjustmentOptions",
    "BundleAdjustmentSummary",
    "BundleAdjuster",
    "intrinsics_parameter_names",
    "bundle_adjust_partial_reconstruction",
    "bundle_adjust_reconstruction",
    "bundle_adjust_view",
    "bundle_adjust_track",
    "bundle_adjust_track_and_views",
    "reprojection_errors",
]
