"""
Camera intrinsics models.

Every model stores its parameters in a flat float64 vector so the bundle
adjuster can optimise them directly. Projection is vectorised: the
`*_with_parameters` class methods accept either one parameter vector shared by
all points or one parameter row per point, which lets a single residual
evaluation cover many cameras at once.

Distortion is applied in normalized image coordinates (after dividing by
depth and before applying focal length / principal point).
"""

from __future__ import annotations

import enum
import logging
from typing import Dict, Tuple, Type

import numpy as np

logger = logging.getLogger(__name__)

_UNDISTORT_ITERATIONS = 20


class CameraIntrinsicsModelType(enum.Enum):
    PINHOLE = "pinhole"
    PINHOLE_RADIAL_TANGENTIAL = "pinhole_radial_tangential"
    FISHEYE = "fisheye"
    DIVISION_UNDISTORTION = "division_undistortion"


class CameraIntrinsicsModel:
    """
    Base class for intrinsics models.

    Subclasses declare PARAMETER_NAMES / DEFAULTS and implement `_distort` and
    `_undistort` on (N, 2) normalized coordinates with (N, P) parameters.
    """

    MODEL_TYPE: CameraIntrinsicsModelType
    PARAMETER_NAMES: Tuple[str, ...] = ()
    DEFAULTS: Tuple[float, ...] = ()

    # Index groups used by the bundle adjuster to select what to optimise.
    FOCAL_LENGTH = ("focal_length",)
    ASPECT_RATIO = ("aspect_ratio",)
    SKEW = ("skew",)
    PRINCIPAL_POINTS = ("principal_point_x", "principal_point_y")
    RADIAL_DISTORTION: Tuple[str, ...] = ()
    TANGENTIAL_DISTORTION: Tuple[str, ...] = ()

    def __init__(self, **params: float) -> None:
        self._parameters = np.array(self.DEFAULTS, dtype=np.float64)
        for name, value in params.items():
            self.set_parameter(name, value)

    # ------------------------------------------------------------------
    # Parameter access
    # ------------------------------------------------------------------
    @property
    def model_type(self) -> CameraIntrinsicsModelType:
        return self.MODEL_TYPE

    @property
    def num_parameters(self) -> int:
        return len(self.PARAMETER_NAMES)

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        return self.PARAMETER_NAMES

    @property
    def parameters(self) -> np.ndarray:
        return self._parameters.copy()

    @parameters.setter
    def parameters(self, values: np.ndarray) -> None:
        values = np.asarray(values, dtype=np.float64).ravel()
        if values.size != self.num_parameters:
            raise ValueError(
                f"{type(self).__name__} expects {self.num_parameters} parameters, "
                f"got {values.size}"
            )
        self._parameters = values.copy()

    def parameter_index(self, name: str) -> int:
        try:
            return self.PARAMETER_NAMES.index(name)
        except ValueError:
            raise KeyError(f"{type(self).__name__} has no parameter '{name}'") from None

    def get_parameter(self, name: str) -> float:
        return float(self._parameters[self.parameter_index(name)])

    def set_parameter(self, name: str, value: float) -> None:
        self._parameters[self.parameter_index(name)] = float(value)

    @property
    def focal_length(self) -> float:
        return self.get_parameter("focal_length")

    @focal_length.setter
    def focal_length(self, value: float) -> None:
        self.set_parameter("focal_length", value)

    @property
    def principal_point(self) -> Tuple[float, float]:
        return (
            self.get_parameter("principal_point_x"),
            self.get_parameter("principal_point_y"),
        )

    def set_principal_point(self, x: float, y: float) -> None:
        self.set_parameter("principal_point_x", x)
        self.set_parameter("principal_point_y", y)

    @property
    def K(self) -> np.ndarray:
        """Intrinsic calibration matrix (distortion excluded)."""
        f = self.focal_length
        aspect = self.get_parameter("aspect_ratio")
        skew = self.get_parameter("skew") if "skew" in self.PARAMETER_NAMES else 0.0
        cx, cy = self.principal_point
        return np.array(
            [
                [f, skew, cx],
                [0.0, f * aspect, cy],
                [0.0, 0.0, 1.0],
            ]
        )

    def intrinsics_matrix(self) -> np.ndarray:
        return self.K

    def indices_for(self, names: Tuple[str, ...]) -> Tuple[int, ...]:
        return tuple(self.parameter_index(n) for n in names if n in self.PARAMETER_NAMES)

    # ------------------------------------------------------------------
    # Vectorised projection
    # ------------------------------------------------------------------
    @classmethod
    def _as_rows(cls, params: np.ndarray, n: int) -> np.ndarray:
        params = np.asarray(params, dtype=np.float64)
        if params.ndim == 1:
            params = np.broadcast_to(params, (n, params.size))
        return params

    @classmethod
    def _focal_terms(cls, p: np.ndarray) -> Tuple[np.ndarray, ...]:
        names = cls.PARAMETER_NAMES
        f = p[:, names.index("focal_length")]
        aspect = p[:, names.index("aspect_ratio")]
        skew = p[:, names.index("skew")] if "skew" in names else np.zeros_like(f)
        cx = p[:, names.index("principal_point_x")]
        cy = p[:, names.index("principal_point_y")]
        return f, aspect, skew, cx, cy

    @classmethod
    def camera_to_pixel_with_parameters(
        cls,
        params: np.ndarray,
        points_cam: np.ndarray,
    ) -> np.ndarray:
        """
        Project camera-frame points to pixels.

        Args:
            params: (P,) or (N, P) intrinsics parameters.
            points_cam: (N, 3) points in camera coordinates.

        Returns:
            (N, 2) pixel coordinates.
        """
        points_cam = np.atleast_2d(points_cam)
        p = cls._as_rows(params, points_cam.shape[0])
        normalized = points_cam[:, :2] / points_cam[:, 2:3]
        distorted = cls._distort(p, normalized)
        f, aspect, skew, cx, cy = cls._focal_terms(p)
        u = f * distorted[:, 0] + skew * distorted[:, 1] + cx
        v = f * aspect * distorted[:, 1] + cy
        return np.column_stack([u, v])

    @classmethod
    def pixel_to_camera_with_parameters(
        cls,
        params: np.ndarray,
        pixels: np.ndarray,
    ) -> np.ndarray:
        """
        Back-project pixels to unit-depth rays in camera coordinates.

        Returns:
            (N, 3) rays with z == 1.
        """
        pixels = np.atleast_2d(np.asarray(pixels, dtype=np.float64))
        p = cls._as_rows(params, pixels.shape[0])
        f, aspect, skew, cx, cy = cls._focal_terms(p)
        y = (pixels[:, 1] - cy) / (f * aspect)
        x = (pixels[:, 0] - cx - skew * y) / f
        undistorted = cls._undistort(p, np.column_stack([x, y]))
        return np.column_stack([undistorted, np.ones(len(undistorted))])

    def camera_to_pixel(self, points_cam: np.ndarray) -> np.ndarray:
        return self.camera_to_pixel_with_parameters(self._parameters, points_cam)

    def pixel_to_camera(self, pixels: np.ndarray) -> np.ndarray:
        return self.pixel_to_camera_with_parameters(self._parameters, pixels)

    @classmethod
    def _distort(cls, p: np.ndarray, xy: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    @classmethod
    def _undistort(cls, p: np.ndarray, xy: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict:
        data = {name: float(v) for name, v in zip(self.PARAMETER_NAMES, self._parameters)}
        data["model"] = self.MODEL_TYPE.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "CameraIntrinsicsModel":
        model_type = CameraIntrinsicsModelType(data.get("model", "pinhole"))
        params = {k: v for k, v in data.items() if k != "model"}
        return create_intrinsics_model(model_type, **params)

    def copy(self) -> "CameraIntrinsicsModel":
        clone = type(self)()
        clone.parameters = self._parameters
        return clone

    def __repr__(self) -> str:
        values = ", ".join(f"{n}={v:.6g}" for n, v in zip(self.PARAMETER_NAMES, self._parameters))
        return f"{type(self).__name__}({values})"


class PinholeCameraModel(CameraIntrinsicsModel):
    """Pinhole camera with two radial distortion coefficients."""

    MODEL_TYPE = CameraIntrinsicsModelType.PINHOLE
    PARAMETER_NAMES = (
        "focal_length",
        "aspect_ratio",
        "skew",
        "principal_point_x",
        "principal_point_y",
        "radial_distortion_1",
        "radial_distortion_2",
    )
    DEFAULTS = (1.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0)
    RADIAL_DISTORTION = ("radial_distortion_1", "radial_distortion_2")

    @classmethod
    def _radial(cls, p: np.ndarray, r2: np.ndarray) -> np.ndarray:
        k1, k2 = p[:, 5], p[:, 6]
        return 1.0 + k1 * r2 + k2 * r2 * r2

    @classmethod
    def _distort(cls, p: np.ndarray, xy: np.ndarray) -> np.ndarray:
        r2 = np.sum(xy * xy, axis=1)
        return xy * cls._radial(p, r2)[:, None]

    @classmethod
    def _undistort(cls, p: np.ndarray, xy: np.ndarray) -> np.ndarray:
        undistorted = xy.copy()
        for _ in range(_UNDISTORT_ITERATIONS):
            r2 = np.sum(undistorted * undistorted, axis=1)
            undistorted = xy / cls._radial(p, r2)[:, None]
        return undistorted


class PinholeRadialTangentialCameraModel(CameraIntrinsicsModel):
    """Brown-Conrady model: three radial and two tangential coefficients."""

    MODEL_TYPE = CameraIntrinsicsModelType.PINHOLE_RADIAL_TANGENTIAL
    PARAMETER_NAMES = (
        "focal_length",
        "aspect_ratio",
        "skew",
        "principal_point_x",
        "principal_point_y",
        "radial_distortion_1",
        "radial_distortion_2",
        "radial_distortion_3",
        "tangential_distortion_1",
        "tangential_distortion_2",
    )
    DEFAULTS = (1.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
    RADIAL_DISTORTION = ("radial_distortion_1", "radial_distortion_2", "radial_distortion_3")
    TANGENTIAL_DISTORTION = ("tangential_distortion_1", "tangential_distortion_2")

    @classmethod
    def _terms(cls, p: np.ndarray, xy: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        k1, k2, k3, t1, t2 = p[:, 5], p[:, 6], p[:, 7], p[:, 8], p[:, 9]
        x, y = xy[:, 0], xy[:, 1]
        r2 = x * x + y * y
        radial = 1.0 + k1 * r2 + k2 * r2 * r2 + k3 * r2 * r2 * r2
        dx = 2.0 * t1 * x * y + t2 * (r2 + 2.0 * x * x)
        dy = t1 * (r2 + 2.0 * y * y) + 2.0 * t2 * x * y
        return radial, np.column_stack([dx, dy])

    @classmethod
    def _distort(cls, p: np.ndarray, xy: np.ndarray) -> np.ndarray:
        radial, tangential = cls._terms(p, xy)
        return xy * radial[:, None] + tangential

    @classmethod
    def _undistort(cls, p: np.ndarray, xy: np.ndarray) -> np.ndarray:
        undistorted = xy.copy()
        for _ in range(_UNDISTORT_ITERATIONS):
            radial, tangential = cls._terms(p, undistorted)
            undistorted = (xy - tangential) / radial[:, None]
        return undistorted


class FisheyeCameraModel(CameraIntrinsicsModel):
    """Equidistant fisheye model with four polynomial coefficients on theta."""

    MODEL_TYPE = CameraIntrinsicsModelType.FISHEYE
    PARAMETER_NAMES = (
        "focal_length",
        "aspect_ratio",
        "skew",
        "principal_point_x",
        "principal_point_y",
        "radial_distortion_1",
        "radial_distortion_2",
        "radial_distortion_3",
        "radial_distortion_4",
    )
    DEFAULTS = (1.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
    RADIAL_DISTORTION = (
        "radial_distortion_1",
        "radial_distortion_2",
        "radial_distortion_3",
        "radial_distortion_4",
    )

    @classmethod
    def _theta_d(cls, p: np.ndarray, theta: np.ndarray) -> np.ndarray:
        k1, k2, k3, k4 = p[:, 5], p[:, 6], p[:, 7], p[:, 8]
        t2 = theta * theta
        return theta * (1.0 + t2 * (k1 + t2 * (k2 + t2 * (k3 + t2 * k4))))

    @classmethod
    def _distort(cls, p: np.ndarray, xy: np.ndarray) -> np.ndarray:
        r = np.linalg.norm(xy, axis=1)
        theta = np.arctan(r)
        theta_d = cls._theta_d(p, theta)
        scale = np.ones_like(r)
        nonzero = r > 1e-12
        scale[nonzero] = theta_d[nonzero] / r[nonzero]
        return xy * scale[:, None]

    @classmethod
    def _undistort(cls, p: np.ndarray, xy: np.ndarray) -> np.ndarray:
        theta_d = np.linalg.norm(xy, axis=1)
        theta = theta_d.copy()
        k1, k2, k3, k4 = p[:, 5], p[:, 6], p[:, 7], p[:, 8]
        # Newton iterations on theta_d(theta) - theta_d = 0.
        for _ in range(_UNDISTORT_ITERATIONS):
            t2 = theta * theta
            f = cls._theta_d(p, theta) - theta_d
            df = 1.0 + t2 * (3.0 * k1 + t2 * (5.0 * k2 + t2 * (7.0 * k3 + t2 * 9.0 * k4)))
            theta = theta - f / df
        scale = np.ones_like(theta_d)
        nonzero = theta_d > 1e-12
        scale[nonzero] = np.tan(theta[nonzero]) / theta_d[nonzero]
        return xy * scale[:, None]


class DivisionUndistortionCameraModel(CameraIntrinsicsModel):
    """
    Single-parameter division model (Fitzgibbon).

    undistorted = distorted / (1 + k * |distorted|^2)
    """

    MODEL_TYPE = CameraIntrinsicsModelType.DIVISION_UNDISTORTION
    PARAMETER_NAMES = (
        "focal_length",
        "aspect_ratio",
        "principal_point_x",
        "principal_point_y",
        "radial_distortion_1",
    )
    DEFAULTS = (1.0, 1.0, 0.0, 0.0, 0.0)
    SKEW = ()
    RADIAL_DISTORTION = ("radial_distortion_1",)

    @classmethod
    def _distort(cls, p: np.ndarray, xy: np.ndarray) -> np.ndarray:
        k = p[:, 4]
        ru2 = np.sum(xy * xy, axis=1)
        scale = np.ones_like(ru2)
        active = (np.abs(k) > 1e-15) & (ru2 > 1e-24)
        # Closed-form inverse of the division model; picks the root that
        # tends to the identity as k -> 0.
        disc = np.clip(1.0 - 4.0 * k[active] * ru2[active], 0.0, None)
        scale[active] = (1.0 - np.sqrt(disc)) / (2.0 * k[active] * ru2[active])
        return xy * scale[:, None]

    @classmethod
    def _undistort(cls, p: np.ndarray, xy: np.ndarray) -> np.ndarray:
        k = p[:, 4]
        rd2 = np.sum(xy * xy, axis=1)
        return xy / (1.0 + k * rd2)[:, None]


_MODEL_CLASSES: Dict[CameraIntrinsicsModelType, Type[CameraIntrinsicsModel]] = {
    CameraIntrinsicsModelType.PINHOLE: PinholeCameraModel,
    CameraIntrinsicsModelType.PINHOLE_RADIAL_TANGENTIAL: PinholeRadialTangentialCameraModel,
    CameraIntrinsicsModelType.FISHEYE: FisheyeCameraModel,
    CameraIntrinsicsModelType.DIVISION_UNDISTORTION: DivisionUndistortionCameraModel,
}


def create_intrinsics_model(
    model_type: CameraIntrinsicsModelType | str = CameraIntrinsicsModelType.PINHOLE,
    **params: float,
) -> CameraIntrinsicsModel:
    """
    Create an intrinsics model by type.

    Args:
        model_type: CameraIntrinsicsModelType or its string value.
        **params: Initial parameter values by name.

    Returns:
        A new CameraIntrinsicsModel instance.
    """
    if isinstance(model_type, str):
        model_type = CameraIntrinsicsModelType(model_type)
    return _MODEL_CLASSES[model_type](**params)


__all__ = [
    "CameraIntrinsicsModelType",
    "CameraIntrinsicsModel",
    "PinholeCameraModel",
    "PinholeRadialTangentialCameraModel",
    "FisheyeCameraModel",
    "DivisionUndistortionCameraModel",
    "create_intrinsics_model",
]
