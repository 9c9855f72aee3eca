import threading

import numpy as np
import pytest

from conftest import make_camera, random_points, ring_scene
from robust_sfm.ba.bundle_adjustment import (
    BundleAdjustmentOptions,
    LossFunctionType,
    OptimizeIntrinsicsType,
    bundle_adjust_reconstruction,
    bundle_adjust_track,
    bundle_adjust_view,
    intrinsics_parameter_names,
    reprojection_errors,
)
from robust_sfm.errors import ConcurrencyContractViolation
from robust_sfm.sfm.data_structures import Feature, Reconstruction


def _single_view_reconstruction(num_points: int, pixel_noise: float, seed: int = 52):
    rng = np.random.default_rng(seed)
    camera = make_camera(rng.uniform(-1.0, 1.0, 3), 0.2 * rng.uniform(-1.0, 1.0, 3))
    reconstruction = Reconstruction()
    view_id = reconstruction.add_view("0", camera=camera)
    reconstruction.view(view_id).is_estimated = True
    for point in random_points(rng, num_points):
        track_id = reconstruction.add_track()
        track = reconstruction.track(track_id)
        track.set_point(point)
        track.set_estimated(True)
        pixel, depth = camera.project_point(point)
        if pixel_noise > 0.0:
            pixel = pixel + rng.normal(0.0, pixel_noise, 2)
        if depth > 0.0:
            reconstruction.add_observation(view_id, track_id, Feature(pixel))
    return reconstruction, view_id


def test_optimize_view_without_noise():
    reconstruction, view_id = _single_view_reconstruction(100, 0.0)
    summary = bundle_adjust_view(BundleAdjustmentOptions(), view_id, reconstruction)

    assert summary.success
    num_features = reconstruction.view(view_id).num_features()
    assert 2.0 * summary.final_cost / num_features < 1e-15


def test_optimize_view_with_noise():
    noise = 0.1
    reconstruction, view_id = _single_view_reconstruction(100, noise)
    summary = bundle_adjust_view(BundleAdjustmentOptions(), view_id, reconstruction)

    assert summary.success
    num_features = reconstruction.view(view_id).num_features()
    assert 2.0 * summary.final_cost / num_features < noise
    assert summary.final_cost <= summary.initial_cost


def test_optimize_view_recovers_perturbed_pose():
    reconstruction, view_id = _single_view_reconstruction(100, 0.0, seed=5)
    camera = reconstruction.view(view_id).camera
    true_position = camera.position.copy()
    true_orientation = camera.orientation.copy()
    camera.position = true_position + np.array([0.05, -0.03, 0.02])
    camera.set_orientation_from_angle_axis(camera.orientation_as_angle_axis() + 0.01)

    options = BundleAdjustmentOptions(intrinsics_to_optimize=OptimizeIntrinsicsType.NONE)
    summary = bundle_adjust_view(options, view_id, reconstruction)

    assert summary.success
    np.testing.assert_allclose(camera.position, true_position, atol=1e-5)
    np.testing.assert_allclose(camera.orientation, true_orientation, atol=1e-6)


def test_constant_orientation_is_left_untouched():
    reconstruction, view_id = _single_view_reconstruction(60, 0.0, seed=9)
    camera = reconstruction.view(view_id).camera
    orientation = camera.orientation.copy()
    camera.position = camera.position + 0.1

    options = BundleAdjustmentOptions(
        constant_camera_orientation=True,
        intrinsics_to_optimize=OptimizeIntrinsicsType.NONE,
    )
    summary = bundle_adjust_view(options, view_id, reconstruction)

    assert summary.success
    np.testing.assert_array_equal(camera.orientation, orientation)
    assert summary.final_cost < summary.initial_cost


def test_failed_optimization_writes_nothing_back():
    reconstruction, view_id = _single_view_reconstruction(50, 0.1, seed=1)
    camera = reconstruction.view(view_id).camera
    camera.position = camera.position + 0.2
    position = camera.position.copy()

    options = BundleAdjustmentOptions(max_solver_time_in_seconds=0.0)
    summary = bundle_adjust_view(options, view_id, reconstruction)

    assert not summary.success
    assert summary.final_cost == summary.initial_cost
    np.testing.assert_array_equal(camera.position, position)


def test_bundle_adjust_track_moves_only_the_point(scene):
    scene.set_true_poses()
    track_id = scene.track_ids[0]
    track = scene.reconstruction.track(track_id)
    track.set_point(scene.points[0] + np.array([0.1, -0.1, 0.2]))
    track.set_estimated(True)
    positions = {v: scene.reconstruction.view(v).camera.position.copy() for v in scene.view_ids}

    summary = bundle_adjust_track(BundleAdjustmentOptions(), track_id, scene.reconstruction)

    assert summary.success
    np.testing.assert_allclose(track.inhomogeneous_point(), scene.points[0], atol=1e-6)
    for view_id, position in positions.items():
        np.testing.assert_array_equal(scene.reconstruction.view(view_id).camera.position, position)


def test_full_bundle_adjustment_reduces_reprojection_error():
    scene = ring_scene(num_views=4, num_points=80, noise=0.5, seed=21)
    scene.set_true_poses()
    rng = np.random.default_rng(0)
    for track_id, point in zip(scene.track_ids, scene.points):
        track = scene.reconstruction.track(track_id)
        track.set_point(point + rng.normal(0.0, 0.05, 3))
        track.set_estimated(True)
    before = np.mean(reprojection_errors(scene.reconstruction))

    options = BundleAdjustmentOptions(
        loss_function_type=LossFunctionType.HUBER,
        intrinsics_to_optimize=OptimizeIntrinsicsType.NONE,
        fix_first_view=True,
        num_threads=2,
    )
    summary = bundle_adjust_reconstruction(options, scene.reconstruction)

    assert summary.success
    assert np.mean(reprojection_errors(scene.reconstruction)) < before
    assert np.mean(reprojection_errors(scene.reconstruction)) < 1.0
    first = scene.reconstruction.view(scene.view_ids[0]).camera
    np.testing.assert_array_equal(first.position, scene.cameras[0].position)


@pytest.mark.parametrize(
    "flags, expected",
    [
        (OptimizeIntrinsicsType.NONE, ()),
        (OptimizeIntrinsicsType.FOCAL_LENGTH, ("focal_length",)),
        (
            OptimizeIntrinsicsType.FOCAL_LENGTH | OptimizeIntrinsicsType.PRINCIPAL_POINTS,
            ("focal_length", "principal_point_x", "principal_point_y"),
        ),
    ],
)
def test_intrinsics_parameter_names(flags, expected):
    assert intrinsics_parameter_names(flags) == expected


def _estimated_scene(scene):
    scene.set_true_poses()
    for track_id, point in zip(scene.track_ids, scene.points):
        track = scene.reconstruction.track(track_id)
        track.set_point(point)
        track.set_estimated(True)
    return scene.reconstruction


def test_bundle_adjustment_respects_active_claims(scene):
    reconstruction = _estimated_scene(scene)
    track_ids = reconstruction.estimated_track_ids()
    points = {t: reconstruction.track(t).point.copy() for t in track_ids}

    with reconstruction.claim(track_ids=track_ids[:5], writer="phase_a"):
        with pytest.raises(ConcurrencyContractViolation):
            bundle_adjust_reconstruction(BundleAdjustmentOptions(), reconstruction)

    for track_id, point in points.items():
        np.testing.assert_array_equal(reconstruction.track(track_id).point, point)
    # Disjoint from the claim, and the claim is released afterwards.
    with reconstruction.claim(track_ids=track_ids[:5], writer="phase_a"):
        assert bundle_adjust_track(BundleAdjustmentOptions(), track_ids[5], reconstruction).success
    assert bundle_adjust_track(BundleAdjustmentOptions(), track_ids[0], reconstruction).success


def test_view_claimed_by_another_thread_blocks_bundle_adjustment(scene):
    reconstruction = _estimated_scene(scene)
    view_id = scene.view_ids[1]
    errors = []

    def adjust():
        try:
            bundle_adjust_view(BundleAdjustmentOptions(), view_id, reconstruction)
        except ConcurrencyContractViolation as exc:
            errors.append(exc)

    with reconstruction.claim(view_ids=[view_id], writer="localization"):
        thread = threading.Thread(target=adjust)
        thread.start()
        thread.join()

    assert len(errors) == 1
