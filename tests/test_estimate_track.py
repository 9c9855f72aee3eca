import numpy as np
import pytest

from conftest import make_camera, ring_scene
from robust_sfm.ba.bundle_adjustment import BundleAdjustmentSummary, reprojection_errors
from robust_sfm.errors import ConcurrencyContractViolation
from robust_sfm.geometry.triangulation import TriangulationMethod
from robust_sfm.sfm import estimate_track
from robust_sfm.sfm.data_structures import Feature, Reconstruction
from robust_sfm.sfm.estimate_track import TrackEstimator, TrackEstimatorOptions


def _two_view_reconstruction(position_2, point):
    reconstruction = Reconstruction()
    cameras = [make_camera((0.0, 0.0, 0.0)), make_camera(position_2)]
    observations = []
    for i, camera in enumerate(cameras):
        view_id = reconstruction.add_view(str(i), camera=camera)
        reconstruction.view(view_id).is_estimated = True
        pixel, _ = camera.project_point(np.asarray(point))
        observations.append((view_id, Feature(pixel)))
    track_id = reconstruction.add_track(observations)
    return reconstruction, track_id


def test_estimates_every_track_seen_by_two_estimated_views(scene):
    scene.set_true_poses()
    options = TrackEstimatorOptions(max_acceptable_reprojection_error_pixels=5.0)
    summary = TrackEstimator(options, scene.reconstruction).estimate_all_tracks()

    assert summary.num_triangulation_attempts == len(scene.track_ids)
    assert summary.estimated_tracks == set(scene.track_ids)
    assert np.all(reprojection_errors(scene.reconstruction) <= 5.0)
    for track_id, point in zip(scene.track_ids, scene.points):
        estimated = scene.reconstruction.track(track_id).inhomogeneous_point()
        np.testing.assert_allclose(estimated, point, atol=1e-6)


@pytest.mark.parametrize(
    "method",
    [TriangulationMethod.MIDPOINT, TriangulationMethod.SVD, TriangulationMethod.L2_MINIMIZATION],
)
def test_triangulation_methods_agree_on_noisy_scene(method):
    scene = ring_scene(num_views=4, num_points=50, noise=0.5, seed=3)
    scene.set_true_poses()
    options = TrackEstimatorOptions(triangulation_method=method, bundle_adjustment=False)
    summary = TrackEstimator(options, scene.reconstruction).estimate_all_tracks()

    assert len(summary.estimated_tracks) == len(scene.track_ids)
    assert np.all(reprojection_errors(scene.reconstruction) <= 5.0)


def test_second_pass_estimates_nothing_and_keeps_points(scene):
    scene.set_true_poses()
    estimator = TrackEstimator(TrackEstimatorOptions(), scene.reconstruction)
    estimator.estimate_all_tracks()
    before = {t: scene.reconstruction.track(t).point.copy() for t in scene.track_ids}

    summary = estimator.estimate_all_tracks()

    assert summary.estimated_tracks == set()
    assert summary.num_triangulation_attempts == 0
    assert summary.input_num_estimated_tracks == len(scene.track_ids)
    for track_id, point in before.items():
        np.testing.assert_array_equal(scene.reconstruction.track(track_id).point, point)


def test_small_triangulation_angle_is_rejected_once():
    reconstruction, track_id = _two_view_reconstruction((0.0, 0.0, 1.0), (0.1, 0.1, 10.0))
    summary = TrackEstimator(TrackEstimatorOptions(), reconstruction).estimate_all_tracks()

    assert summary.num_triangulation_attempts == 1
    assert summary.num_bad_angles == 1
    assert summary.num_failed_triangulations == 0
    assert summary.num_bad_reprojections == 0
    assert not reconstruction.track(track_id).is_estimated


def test_wide_baseline_pair_is_estimated():
    reconstruction, track_id = _two_view_reconstruction((2.0, 0.0, 0.0), (0.5, -0.3, 8.0))
    summary = TrackEstimator(TrackEstimatorOptions(), reconstruction).estimate_all_tracks()

    assert summary.estimated_tracks == {track_id}
    np.testing.assert_allclose(
        reconstruction.track(track_id).inhomogeneous_point(), [0.5, -0.3, 8.0], atol=1e-6
    )


def test_single_view_track_is_never_attempted():
    reconstruction = Reconstruction()
    view_id = reconstruction.add_view("0", camera=make_camera((0.0, 0.0, 0.0)))
    reconstruction.view(view_id).is_estimated = True
    track_id = reconstruction.add_track([(view_id, Feature(np.array([510.0, 490.0])))])

    summary = TrackEstimator(TrackEstimatorOptions(), reconstruction).estimate_all_tracks()

    assert summary.num_triangulation_attempts == 0
    assert summary.num_bad_angles == 0
    assert summary.num_failed_triangulations == 0
    assert summary.num_bad_reprojections == 0
    assert not reconstruction.track(track_id).is_estimated


def test_unestimated_views_are_ignored(scene):
    scene.set_true_poses(scene.view_ids[:1])
    summary = TrackEstimator(TrackEstimatorOptions(), scene.reconstruction).estimate_all_tracks()

    assert summary.estimated_tracks == set()
    assert scene.reconstruction.estimated_track_ids() == []


def test_duplicate_track_ids_are_rejected(scene):
    scene.set_true_poses()
    estimator = TrackEstimator(TrackEstimatorOptions(), scene.reconstruction)
    with pytest.raises(ConcurrencyContractViolation):
        estimator.estimate_tracks([scene.track_ids[0], scene.track_ids[1], scene.track_ids[0]])


def test_adjusting_views_requires_single_thread(scene):
    options = TrackEstimatorOptions(num_threads=4, bundle_adjust_views=True)
    with pytest.raises(ConcurrencyContractViolation):
        TrackEstimator(options, scene.reconstruction)


def test_multithreaded_result_matches_single_threaded():
    single = ring_scene(num_views=5, num_points=120, noise=0.3, seed=11)
    multi = ring_scene(num_views=5, num_points=120, noise=0.3, seed=11)
    single.set_true_poses()
    multi.set_true_poses()

    summary_1 = TrackEstimator(
        TrackEstimatorOptions(num_threads=1), single.reconstruction
    ).estimate_all_tracks()
    summary_4 = TrackEstimator(
        TrackEstimatorOptions(num_threads=4, multithreaded_step_size=10), multi.reconstruction
    ).estimate_all_tracks()

    assert summary_1.estimated_tracks == summary_4.estimated_tracks
    assert summary_1.num_bad_reprojections == summary_4.num_bad_reprojections
    for track_id in summary_1.estimated_tracks:
        np.testing.assert_allclose(
            single.reconstruction.track(track_id).point,
            multi.reconstruction.track(track_id).point,
        )


def test_chunk_writers_do_not_collide_with_other_phases(scene):
    scene.set_true_poses()
    first, rest = scene.track_ids[:10], scene.track_ids[10:]
    estimator = TrackEstimator(TrackEstimatorOptions(), scene.reconstruction)

    with scene.reconstruction.claim(track_ids=first, writer="track_chunk_0"):
        summary = estimator.estimate_tracks(rest)

    assert summary.estimated_tracks == set(rest)
    assert not any(scene.reconstruction.track(t).is_estimated for t in first)


def test_claimed_tracks_are_not_estimated_by_another_phase(scene):
    scene.set_true_poses()
    estimator = TrackEstimator(TrackEstimatorOptions(), scene.reconstruction)

    with scene.reconstruction.claim(track_ids=scene.track_ids[:10], writer="other_phase"):
        with pytest.raises(ConcurrencyContractViolation):
            estimator.estimate_tracks(scene.track_ids[5:])


def test_diverged_track_adjustment_keeps_triangulated_point(monkeypatch):
    reconstruction, track_id = _two_view_reconstruction((2.0, 0.0, 0.0), (0.5, -0.3, 8.0))

    def diverge(options, track_id, reconstruction):
        reconstruction.track(track_id).set_point(np.array([40.0, 40.0, 3.0]))
        return BundleAdjustmentSummary(success=True)

    monkeypatch.setattr(estimate_track, "bundle_adjust_track", diverge)
    summary = TrackEstimator(TrackEstimatorOptions(), reconstruction).estimate_all_tracks()

    assert summary.estimated_tracks == {track_id}
    assert summary.num_bad_reprojections == 0
    np.testing.assert_allclose(
        reconstruction.track(track_id).inhomogeneous_point(), [0.5, -0.3, 8.0], atol=1e-6
    )


def test_track_is_rejected_when_adjusted_cameras_no_longer_agree(monkeypatch):
    reconstruction, track_id = _two_view_reconstruction((2.0, 0.0, 0.0), (0.5, -0.3, 8.0))

    def diverge(options, track_id, reconstruction):
        view_id = max(reconstruction.track(track_id).view_ids)
        camera = reconstruction.view(view_id).camera
        camera.position = camera.position + np.array([0.0, 3.0, 0.0])
        return BundleAdjustmentSummary(success=True)

    monkeypatch.setattr(estimate_track, "bundle_adjust_track_and_views", diverge)
    options = TrackEstimatorOptions(bundle_adjust_views=True)
    summary = TrackEstimator(options, reconstruction).estimate_all_tracks()

    assert summary.estimated_tracks == set()
    assert summary.num_bad_reprojections == 1
    assert not reconstruction.track(track_id).is_estimated
