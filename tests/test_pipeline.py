import numpy as np
import pytest

from conftest import ring_scene
from robust_sfm.geometry.rotation import align_point_clouds
from robust_sfm.pipeline.factory import create_reconstruction_estimator
from robust_sfm.pipeline.global_estimator import GlobalReconstructionEstimator
from robust_sfm.pipeline.hybrid import HybridReconstructionEstimator
from robust_sfm.pipeline.incremental import IncrementalReconstructionEstimator
from robust_sfm.pipeline.reconstruction_estimator import (
    ReconstructionEstimatorOptions,
    ReconstructionEstimatorState,
    ReconstructionEstimatorType,
)
from robust_sfm.sfm.reconstruction_utils import (
    reconstruction_statistics,
    set_outlier_tracks_to_unestimated,
    transform_reconstruction,
)
from robust_sfm.sfm.view_graph import ViewGraph


def _assert_recovered_up_to_similarity(scene, atol):
    reconstruction = scene.reconstruction
    track_ids = reconstruction.estimated_track_ids()
    assert len(track_ids) >= 0.9 * len(scene.track_ids)

    estimated = np.array([reconstruction.track(t).inhomogeneous_point() for t in track_ids])
    truth = np.array([scene.points[scene.track_ids.index(t)] for t in track_ids])
    s, R, t = align_point_clouds(estimated, truth)
    np.testing.assert_allclose(s * estimated @ R.T + t, truth, atol=atol)

    for view_id, camera in zip(scene.view_ids, scene.cameras):
        position = reconstruction.view(view_id).camera.position
        np.testing.assert_allclose(s * R @ position + t, camera.position, atol=atol)


@pytest.mark.parametrize(
    "estimator_type",
    [
        ReconstructionEstimatorType.INCREMENTAL,
        ReconstructionEstimatorType.GLOBAL,
        ReconstructionEstimatorType.HYBRID,
    ],
)
def test_pipelines_recover_synthetic_scene(estimator_type):
    scene = ring_scene(num_views=6, num_points=150, noise=0.0, seed=7)
    options = ReconstructionEstimatorOptions(reconstruction_estimator_type=estimator_type)
    estimator = create_reconstruction_estimator(options)
    view_graph = scene.view_graph()
    num_edges = view_graph.num_edges

    summary = estimator.estimate(view_graph, scene.reconstruction)

    assert summary.success
    assert summary.state == ReconstructionEstimatorState.SUCCESS
    assert summary.estimated_views == len(scene.view_ids)
    assert summary.num_iterations >= 1
    # The caller's view graph is left alone.
    assert view_graph.num_edges == num_edges
    _assert_recovered_up_to_similarity(scene, atol=1e-2)
    assert reconstruction_statistics(scene.reconstruction)["mean_reprojection_error"] < 1.0


def test_incremental_pipeline_with_noise():
    scene = ring_scene(num_views=6, num_points=200, noise=0.5, seed=19)
    options = ReconstructionEstimatorOptions(num_threads=2, seed=3)
    summary = IncrementalReconstructionEstimator(options).estimate(
        scene.view_graph(), scene.reconstruction
    )

    assert summary.state == ReconstructionEstimatorState.SUCCESS
    _assert_recovered_up_to_similarity(scene, atol=0.15)
    stats = reconstruction_statistics(scene.reconstruction)
    assert stats["mean_reprojection_error"] < 1.5


def test_empty_view_graph_fails_without_raising(scene):
    for cls in (
        IncrementalReconstructionEstimator,
        GlobalReconstructionEstimator,
        HybridReconstructionEstimator,
    ):
        summary = cls(ReconstructionEstimatorOptions()).estimate(ViewGraph(), scene.reconstruction)
        assert not summary.success
        assert summary.state == ReconstructionEstimatorState.FAILED
        assert summary.message


def test_weak_edges_are_filtered(scene):
    options = ReconstructionEstimatorOptions(min_num_two_view_inliers=10_000)
    summary = IncrementalReconstructionEstimator(options).estimate(
        scene.view_graph(), scene.reconstruction
    )

    assert summary.state == ReconstructionEstimatorState.FAILED
    assert scene.reconstruction.estimated_view_ids() == []


def test_outlier_tracks_are_unestimated(scene):
    scene.set_true_poses()
    for track_id, point in zip(scene.track_ids, scene.points):
        track = scene.reconstruction.track(track_id)
        track.set_point(point)
        track.set_estimated(True)
    scene.reconstruction.track(scene.track_ids[0]).set_point(scene.points[0] + 1.0)

    removed = set_outlier_tracks_to_unestimated(scene.reconstruction, 5.0, 3.0)

    assert removed == 1
    assert not scene.reconstruction.track(scene.track_ids[0]).is_estimated


def test_transform_reconstruction_preserves_projections(scene):
    scene.set_true_poses()
    track = scene.reconstruction.track(scene.track_ids[0])
    track.set_point(scene.points[0])
    view = scene.reconstruction.view(scene.view_ids[0])
    before, _ = view.camera.project_point(track.point)

    R, _ = np.linalg.qr(np.random.default_rng(0).normal(size=(3, 3)))
    R *= np.sign(np.linalg.det(R))
    transform_reconstruction(scene.reconstruction, 2.5, R, np.array([1.0, -2.0, 0.5]))

    after, _ = view.camera.project_point(track.point)
    np.testing.assert_allclose(after, before, atol=1e-9)


def test_factory_rejects_unknown_type():
    options = ReconstructionEstimatorOptions()
    options.reconstruction_estimator_type = "sequential"
    with pytest.raises(ValueError):
        create_reconstruction_estimator(options)
