"""
Synthetic scenes shared by the test modules.
"""

from __future__ import annotations

from typing import List, Tuple

import cv2
import numpy as np
import pytest

from robust_sfm.camera.camera import Camera
from robust_sfm.camera.intrinsics import create_intrinsics_model
from robust_sfm.sfm.data_structures import Feature, Reconstruction
from robust_sfm.sfm.view_graph import TwoViewInfo, ViewGraph

FOCAL_LENGTH = 500.0
IMAGE_SIZE = 1000


def make_camera(position, angle_axis=(0.0, 0.0, 0.0)) -> Camera:
    camera = Camera(
        intrinsics=create_intrinsics_model(
            "pinhole",
            focal_length=FOCAL_LENGTH,
            principal_point_x=IMAGE_SIZE / 2,
            principal_point_y=IMAGE_SIZE / 2,
        ),
        position=np.asarray(position, dtype=np.float64),
        image_width=IMAGE_SIZE,
        image_height=IMAGE_SIZE,
    )
    camera.set_orientation_from_angle_axis(np.asarray(angle_axis, dtype=np.float64))
    return camera


def look_at(position: np.ndarray, target: np.ndarray) -> np.ndarray:
    """World-to-camera rotation of a camera at `position` looking at `target`."""
    z = target - position
    z = z / np.linalg.norm(z)
    x = np.cross(np.array([0.0, 1.0, 0.0]), z)
    x = x / np.linalg.norm(x)
    y = np.cross(z, x)
    return np.vstack([x, y, z])


def random_points(rng: np.random.Generator, num_points: int) -> np.ndarray:
    return np.column_stack(
        [
            rng.uniform(-5.0, 5.0, num_points),
            rng.uniform(-5.0, 5.0, num_points),
            rng.uniform(4.0, 10.0, num_points),
        ]
    )


class SyntheticScene:
    """Ground-truth cameras and points plus a Reconstruction of their observations."""

    def __init__(self, cameras: List[Camera], points: np.ndarray, noise: float, seed: int) -> None:
        rng = np.random.default_rng(seed)
        self.cameras = cameras
        self.points = points
        self.reconstruction = Reconstruction()
        self.view_ids = []
        for i, camera in enumerate(cameras):
            observed = camera.deep_copy()
            # Unknown pose for the reconstruction under test.
            observed.position = np.zeros(3)
            observed.orientation = np.eye(3)
            self.view_ids.append(self.reconstruction.add_view(f"view_{i}", camera=observed))

        self.track_ids = []
        for point in points:
            observations = []
            for view_id, camera in zip(self.view_ids, cameras):
                pixel, depth = camera.project_point(point)
                if depth <= 0:
                    continue
                pixel = pixel + rng.normal(0.0, noise, 2) if noise > 0 else pixel
                observations.append((view_id, Feature(pixel)))
            self.track_ids.append(self.reconstruction.add_track(observations))

    def set_true_poses(self, view_ids=None) -> None:
        for view_id in view_ids if view_ids is not None else self.view_ids:
            camera = self.reconstruction.view(view_id).camera
            truth = self.cameras[self.view_ids.index(view_id)]
            camera.orientation = truth.orientation
            camera.position = truth.position
            self.reconstruction.view(view_id).is_estimated = True

    def view_graph(self) -> ViewGraph:
        """Noise-free two-view geometry for every pair of views."""
        graph = ViewGraph()
        for a in range(len(self.view_ids)):
            for b in range(a + 1, len(self.view_ids)):
                c1, c2 = self.cameras[a], self.cameras[b]
                R_rel = c2.orientation @ c1.orientation.T
                position = c1.orientation @ (c2.position - c1.position)
                rvec, _ = cv2.Rodrigues(R_rel)
                shared = len(
                    set(self.reconstruction.view(self.view_ids[a]).track_ids())
                    & set(self.reconstruction.view(self.view_ids[b]).track_ids())
                )
                graph.add_edge(
                    self.view_ids[a],
                    self.view_ids[b],
                    TwoViewInfo(
                        focal_length_1=FOCAL_LENGTH,
                        focal_length_2=FOCAL_LENGTH,
                        position_2=position / np.linalg.norm(position),
                        rotation_2=rvec.ravel(),
                        num_verified_matches=shared,
                    ),
                )
        return graph


def ring_scene(
    num_views: int = 6,
    num_points: int = 200,
    noise: float = 0.0,
    seed: int = 7,
) -> SyntheticScene:
    """Cameras on an arc in front of the point cloud, all looking at its centre."""
    rng = np.random.default_rng(seed)
    points = random_points(rng, num_points)
    target = np.array([0.0, 0.0, 7.0])
    cameras = []
    for i in range(num_views):
        angle = np.deg2rad(-25.0 + 50.0 * i / max(num_views - 1, 1))
        position = target + 14.0 * np.array([np.sin(angle), 0.1 * np.cos(3 * angle), -np.cos(angle)])
        camera = make_camera(position)
        camera.orientation = look_at(position, target)
        cameras.append(camera)
    return SyntheticScene(cameras, points, noise, seed)


def correspondences_with_outliers(
    rng: np.random.Generator,
    num_points: int,
    inlier_ratio: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Normalized two-view correspondences with a fraction of random outliers.

    Returns:
        (x1, x2, R, t, inlier_mask) where camera 1 is [I | 0] and camera 2 is [R | t].
    """
    R, _ = cv2.Rodrigues(np.array([0.05, -0.2, 0.03]))
    t = np.array([1.0, 0.1, 0.05])
    X = random_points(rng, num_points)
    x1 = X[:, :2] / X[:, 2:3]
    X2 = X @ R.T + t
    x2 = X2[:, :2] / X2[:, 2:3]
    inliers = rng.random(num_points) < inlier_ratio
    outliers = ~inliers
    x2[outliers] = rng.uniform(-0.8, 0.8, (int(outliers.sum()), 2))
    return x1, x2, R, t, inliers


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


@pytest.fixture
def scene() -> SyntheticScene:
    return ring_scene()
