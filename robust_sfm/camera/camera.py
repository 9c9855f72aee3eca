"""
Camera: intrinsics model plus world pose and image size.
"""

from __future__ import annotations

import copy
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from robust_sfm.camera.intrinsics import (
    CameraIntrinsicsModel,
    CameraIntrinsicsModelType,
    create_intrinsics_model,
)


class Camera:
    """
    A single camera.

    `orientation` is the world-to-camera rotation R and `position` the camera
    centre c in world coordinates, so a world point X maps to R (X - c) in the
    camera frame. The equivalent (R, t) pair used by OpenCV has t = -R c.
    """

    def __init__(
        self,
        intrinsics: Optional[CameraIntrinsicsModel] = None,
        position: Optional[np.ndarray] = None,
        orientation: Optional[np.ndarray] = None,
        image_width: int = 0,
        image_height: int = 0,
    ) -> None:
        self.intrinsics = intrinsics if intrinsics is not None else create_intrinsics_model()
        self._position = np.zeros(3)
        self._orientation = np.eye(3)
        if position is not None:
            self.position = position
        if orientation is not None:
            self.orientation = orientation
        self.image_width = int(image_width)
        self.image_height = int(image_height)

    # ------------------------------------------------------------------
    # Extrinsics
    # ------------------------------------------------------------------
    @property
    def position(self) -> np.ndarray:
        return self._position

    @position.setter
    def position(self, value: np.ndarray) -> None:
        self._position = np.asarray(value, dtype=np.float64).reshape(3).copy()

    @property
    def orientation(self) -> np.ndarray:
        return self._orientation

    @orientation.setter
    def orientation(self, value: np.ndarray) -> None:
        self._orientation = np.asarray(value, dtype=np.float64).reshape(3, 3).copy()

    @property
    def translation(self) -> np.ndarray:
        """World-to-camera translation t = -R c."""
        return -self._orientation @ self._position

    def set_pose_from_rt(self, R: np.ndarray, t: np.ndarray) -> None:
        """Set the pose from a world-to-camera (R, t) pair."""
        R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        t = np.asarray(t, dtype=np.float64).reshape(3)
        self.orientation = R
        self.position = -R.T @ t

    def set_orientation_from_angle_axis(self, angle_axis: np.ndarray) -> None:
        R, _ = cv2.Rodrigues(np.asarray(angle_axis, dtype=np.float64).reshape(3, 1))
        self.orientation = R

    def orientation_as_angle_axis(self) -> np.ndarray:
        rvec, _ = cv2.Rodrigues(self._orientation)
        return rvec.ravel()

    # ------------------------------------------------------------------
    # Intrinsics helpers
    # ------------------------------------------------------------------
    @property
    def focal_length(self) -> float:
        return self.intrinsics.focal_length

    @focal_length.setter
    def focal_length(self, value: float) -> None:
        self.intrinsics.focal_length = value

    @property
    def K(self) -> np.ndarray:
        return self.intrinsics.K

    @property
    def is_initialized(self) -> bool:
        """True once image size and a positive focal length are known."""
        return self.image_width > 0 and self.image_height > 0 and self.focal_length > 0

    def set_from_image_size_prior(
        self,
        image_width: int,
        image_height: int,
        focal_length: Optional[float] = None,
    ) -> None:
        """
        Initialise intrinsics from the image size.

        The focal length defaults to 1.2 * max(width, height) and the principal
        point to the image centre.
        """
        self.image_width = int(image_width)
        self.image_height = int(image_height)
        if focal_length is None:
            focal_length = 1.2 * max(image_width, image_height)
        self.intrinsics.focal_length = focal_length
        self.intrinsics.set_principal_point(image_width / 2.0, image_height / 2.0)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------
    def projection_matrix(self) -> np.ndarray:
        """3x4 pinhole projection matrix K [R | t] (distortion excluded)."""
        return self.K @ np.hstack([self._orientation, self.translation.reshape(3, 1)])

    def world_to_camera(self, points: np.ndarray) -> np.ndarray:
        """Transform (N, 3) world points or (N, 4) homogeneous points to the camera frame."""
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        if points.shape[1] == 4:
            local = points[:, :3] - points[:, 3:4] * self._position
        else:
            local = points - self._position
        return local @ self._orientation.T

    def project_points(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Project world points to pixels.

        Args:
            points: (N, 3) points or (N, 4) homogeneous points.

        Returns:
            Tuple of (pixels (N, 2), depths (N,)). Depth is the camera-frame z
            coordinate; a non-positive depth means the point is behind the
            camera and its pixel is meaningless.
        """
        points_cam = self.world_to_camera(points)
        depths = points_cam[:, 2].copy()
        with np.errstate(divide="ignore", invalid="ignore"):
            pixels = self.intrinsics.camera_to_pixel(points_cam)
        return pixels, depths

    def project_point(self, point: np.ndarray) -> Tuple[np.ndarray, float]:
        pixels, depths = self.project_points(np.asarray(point).reshape(1, -1))
        return pixels[0], float(depths[0])

    def pixel_to_normalized_coordinates(self, pixels: np.ndarray) -> np.ndarray:
        """Remove intrinsics and distortion; returns (N, 2) normalized coordinates."""
        return self.intrinsics.pixel_to_camera(pixels)[:, :2]

    def pixels_to_unit_depth_rays(self, pixels: np.ndarray) -> np.ndarray:
        """(N, 2) pixels to (N, 3) viewing rays in the world frame (not normalised)."""
        rays_cam = self.intrinsics.pixel_to_camera(pixels)
        return rays_cam @ self._orientation

    def pixel_to_unit_depth_ray(self, pixel: np.ndarray) -> np.ndarray:
        return self.pixels_to_unit_depth_rays(np.asarray(pixel).reshape(1, 2))[0]

    # ------------------------------------------------------------------
    # Copy / serialization
    # ------------------------------------------------------------------
    def deep_copy(self) -> "Camera":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict:
        return {
            "intrinsics": self.intrinsics.to_dict(),
            "position": self._position.tolist(),
            "orientation": self.orientation_as_angle_axis().tolist(),
            "image_width": self.image_width,
            "image_height": self.image_height,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Camera":
        intrinsics = CameraIntrinsicsModel.from_dict(
            data.get("intrinsics", {"model": CameraIntrinsicsModelType.PINHOLE.value})
        )
        camera = cls(
            intrinsics=intrinsics,
            position=data.get("position"),
            image_width=data.get("image_width", 0),
            image_height=data.get("image_height", 0),
        )
        if "orientation" in data:
            camera.set_orientation_from_angle_axis(np.asarray(data["orientation"]))
        return camera

    def __repr__(self) -> str:
        return (
            f"Camera(position={np.round(self._position, 4).tolist()}, "
            f"f={self.focal_length:.2f}, size=({self.image_width}x{self.image_height}))"
        )


__all__ = ["Camera"]
