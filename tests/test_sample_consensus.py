import cv2
import numpy as np
import pytest

from conftest import correspondences_with_outliers, random_points
from robust_sfm.errors import DegenerateModel, SamplingExhausted
from robust_sfm.estimators.absolute_pose import (
    CalibratedAbsolutePoseEstimator,
    estimate_calibrated_absolute_pose_robust,
)
from robust_sfm.estimators.two_view import (
    EssentialMatrixEstimator,
    SevenPointFundamentalMatrixEstimator,
    correspondences,
    estimate_relative_pose_robust,
)
from robust_sfm.geometry.rotation import rotation_angle_degrees
from robust_sfm.solvers.estimator import Estimator
from robust_sfm.solvers.quality_measurement import (
    InlierSupport,
    LMedQualityMeasurement,
    MLEQualityMeasurement,
)
from robust_sfm.solvers.ransac_variants import RansacType, create_and_initialize_ransac_variant
from robust_sfm.solvers.sample_consensus import (
    RansacParameters,
    SampleConsensusEstimator,
    compute_max_iterations,
)
from robust_sfm.solvers.samplers import ExhaustiveSampler, ProsacSampler, RandomSampler


class LineEstimator(Estimator):
    """2D line a x + b y + c = 0 with (a, b) unit length."""

    sample_size = 2
    max_num_models = 1

    def estimate_model(self, data):
        p, q = data[0], data[1]
        direction = q - p
        norm = np.linalg.norm(direction)
        if norm < 1e-12:
            raise DegenerateModel("coincident points")
        normal = np.array([-direction[1], direction[0]]) / norm
        return [np.append(normal, -normal @ p)]

    def error(self, datum, model):
        return float((model[:2] @ datum + model[2]) ** 2)

    def residuals(self, data, model):
        return (data @ model[:2] + model[2]) ** 2

    def refine_model(self, data, model):
        centroid = data.mean(axis=0)
        _, _, vt = np.linalg.svd(data - centroid)
        normal = vt[-1]
        return np.append(normal, -normal @ centroid)


def _line_data(rng, num_points=200, inlier_ratio=0.6, noise=0.01):
    # y = 0.5 x + 1
    x = rng.uniform(-10.0, 10.0, num_points)
    y = 0.5 * x + 1.0 + rng.normal(0.0, noise, num_points)
    inliers = rng.random(num_points) < inlier_ratio
    y[~inliers] = rng.uniform(-10.0, 10.0, int((~inliers).sum()))
    return np.column_stack([x, y]), inliers


def _same_line(model, slope=0.5, intercept=1.0, tol=5e-2):
    a, b, c = model
    return abs(b) > 1e-9 and abs(-a / b - slope) < tol and abs(-c / b - intercept) < tol


def test_compute_max_iterations():
    assert compute_max_iterations(10, 1000, 0.5, 4, 0.01) == 72
    assert compute_max_iterations(10, 1000, 1.0, 4, 0.01) == 10
    assert compute_max_iterations(10, 1000, 0.0, 4, 0.01) == 1000
    assert compute_max_iterations(10, 50, 0.1, 8, 0.01) == 50


def test_ransac_parameters_are_validated():
    with pytest.raises(ValueError):
        RansacParameters(failure_probability=0.0)
    with pytest.raises(ValueError):
        RansacParameters(error_thresh=-1.0)
    with pytest.raises(ValueError):
        RansacParameters(min_iterations=10, max_iterations=5)


@pytest.mark.parametrize("use_mle", [True, False])
def test_ransac_recovers_line(rng, use_mle):
    data, truth = _line_data(rng)
    params = RansacParameters(error_thresh=0.01, use_mle=use_mle, seed=1)
    success, model, summary = SampleConsensusEstimator(params, LineEstimator()).estimate(data)

    assert success
    assert _same_line(model)
    assert np.mean(summary.inlier_mask == truth) > 0.95
    assert summary.num_iterations <= params.max_iterations
    assert summary.confidence > 0.99


def test_local_optimization_keeps_best_model(rng):
    data, _ = _line_data(rng, noise=0.05)
    params = RansacParameters(error_thresh=0.05, use_lo=True, lo_start_iterations=1, seed=2)
    success, model, _ = SampleConsensusEstimator(params, LineEstimator()).estimate(data)

    assert success
    assert _same_line(model)


def test_result_does_not_depend_on_thread_count(rng):
    data, _ = _line_data(rng, inlier_ratio=0.4)
    results = []
    for num_threads in (1, 3, 8):
        params = RansacParameters(error_thresh=0.01, num_threads=num_threads, seed=123)
        results.append(SampleConsensusEstimator(params, LineEstimator()).estimate(data))

    _, reference_model, reference_summary = results[0]
    for success, model, summary in results[1:]:
        assert success
        np.testing.assert_array_equal(model, reference_model)
        np.testing.assert_array_equal(summary.inliers, reference_summary.inliers)
        assert summary.num_iterations == reference_summary.num_iterations


def test_too_few_points_fails():
    params = RansacParameters(seed=0)
    success, model, summary = SampleConsensusEstimator(params, LineEstimator()).estimate(
        np.zeros((1, 2))
    )
    assert not success
    assert model is None
    assert summary.failure_reason


def test_min_num_inliers_is_enforced(rng):
    data, _ = _line_data(rng, num_points=50)
    params = RansacParameters(error_thresh=0.01, min_num_inliers=1000, seed=0)
    success, model, summary = SampleConsensusEstimator(params, LineEstimator()).estimate(data)

    assert not success
    assert model is not None
    assert "inliers" in summary.failure_reason


@pytest.mark.parametrize(
    "ransac_type",
    [RansacType.RANSAC, RansacType.PROSAC, RansacType.LMED, RansacType.EXHAUSTIVE],
)
def test_variants_recover_line(ransac_type):
    rng = np.random.default_rng(17)
    num_points = 40 if ransac_type == RansacType.EXHAUSTIVE else 200
    data, truth = _line_data(rng, num_points=num_points, inlier_ratio=0.7)
    if ransac_type == RansacType.PROSAC:
        # Best-quality rows first.
        data = np.vstack([data[truth], data[~truth]])
    params = RansacParameters(error_thresh=0.01, seed=4)
    ransac = create_and_initialize_ransac_variant(ransac_type, params, LineEstimator())
    success, model, _ = ransac.estimate(data)

    assert success
    assert _same_line(model)


@pytest.mark.parametrize(
    "ransac_type",
    [RansacType.RANSAC, RansacType.PROSAC, RansacType.LMED, RansacType.EXHAUSTIVE],
)
def test_early_stop_before_the_iteration_budget(ransac_type):
    rng = np.random.default_rng(23)
    num_points = 40 if ransac_type == RansacType.EXHAUSTIVE else 200
    data, truth = _line_data(rng, num_points=num_points, inlier_ratio=0.9, noise=0.001)
    if ransac_type in (RansacType.PROSAC, RansacType.EXHAUSTIVE):
        data = np.vstack([data[truth], data[~truth]])
    params = RansacParameters(error_thresh=1e-4, early_stop_inlier_ratio=0.8, seed=6)
    ransac = create_and_initialize_ransac_variant(ransac_type, params, LineEstimator())
    success, _, summary = ransac.estimate(data)

    assert success
    assert summary.num_iterations < params.min_iterations


def test_lmed_runs_the_adaptive_budget(rng):
    data, _ = _line_data(rng, inlier_ratio=0.7, noise=0.001)
    params = RansacParameters(error_thresh=1e-4, seed=9)
    ransac = create_and_initialize_ransac_variant(RansacType.LMED, params, LineEstimator())
    success, model, summary = ransac.estimate(data)

    assert success
    assert _same_line(model)
    # Without a perfect fit the budget never drops below min_iterations.
    assert summary.num_iterations >= params.min_iterations
    assert summary.confidence > 0.99


def test_repeated_trials_meet_the_failure_probability():
    failure_probability = 0.05
    num_trials = 100
    successes = 0
    for seed in range(num_trials):
        rng = np.random.default_rng(1000 + seed)
        data, _ = _line_data(rng, num_points=100, inlier_ratio=0.5, noise=0.001)
        params = RansacParameters(
            error_thresh=1e-4,
            failure_probability=failure_probability,
            min_iterations=1,
            seed=seed,
        )
        success, model, _ = SampleConsensusEstimator(params, LineEstimator()).estimate(data)
        successes += int(success and _same_line(model))

    assert successes >= (1.0 - failure_probability) * num_trials


def test_evsac_recovers_line():
    rng = np.random.default_rng(8)
    data, truth = _line_data(rng, inlier_ratio=0.5)
    nearest = np.where(truth, rng.uniform(0.05, 0.3, len(data)), rng.uniform(0.5, 1.0, len(data)))
    second = nearest + rng.uniform(0.4, 0.8, len(data))
    distances = np.column_stack([nearest, second])

    params = RansacParameters(error_thresh=0.01, seed=4)
    ransac = create_and_initialize_ransac_variant(RansacType.EVSAC, params, LineEstimator(), distances)
    success, model, _ = ransac.estimate(data)

    assert success
    assert _same_line(model)


def test_evsac_requires_distances():
    with pytest.raises(ValueError):
        create_and_initialize_ransac_variant("evsac", RansacParameters(), LineEstimator())


def test_relative_pose_ransac_recovers_motion(rng):
    x1, x2, R, t, _ = correspondences_with_outliers(rng, 200, 0.7)
    params = RansacParameters(error_thresh=1e-6, seed=3)
    success, pose, summary = estimate_relative_pose_robust(params, RansacType.RANSAC, x1, x2)

    assert success
    assert rotation_angle_degrees(pose.rotation, R) < 0.1
    expected_position = -R.T @ t
    expected_position /= np.linalg.norm(expected_position)
    np.testing.assert_allclose(pose.position, expected_position, atol=1e-3)
    assert summary.num_inliers >= 100


def test_absolute_pose_ransac_recovers_camera(rng):
    R, _ = cv2.Rodrigues(np.array([0.1, -0.05, 0.2]))
    t = np.array([0.3, -0.2, 1.0])
    world = random_points(rng, 150)
    cam = world @ R.T + t
    normalized = cam[:, :2] / cam[:, 2:3]
    outliers = rng.random(len(world)) < 0.3
    normalized[outliers] = rng.uniform(-0.5, 0.5, (int(outliers.sum()), 2))

    params = RansacParameters(error_thresh=1e-6, seed=5)
    success, pose, summary = estimate_calibrated_absolute_pose_robust(
        params, RansacType.RANSAC, normalized, world
    )

    assert success
    assert rotation_angle_degrees(pose.rotation, R) < 0.1
    np.testing.assert_allclose(pose.translation, t, atol=1e-3)
    assert set(np.flatnonzero(~outliers)) <= set(summary.inliers.tolist())


# ----------------------------------------------------------------------
# Multi-root minimal solvers
# ----------------------------------------------------------------------
def _skew(v):
    return np.array([[0.0, -v[2], v[1]], [v[2], 0.0, -v[0]], [-v[1], v[0], 0.0]])


def _matches_up_to_scale(A, B, tol):
    A = A / np.linalg.norm(A)
    B = B / np.linalg.norm(B)
    return min(np.linalg.norm(A - B), np.linalg.norm(A + B)) < tol


def test_five_point_returns_true_essential_among_roots(rng):
    x1, x2, R, t, _ = correspondences_with_outliers(rng, 5, 1.0)
    models = EssentialMatrixEstimator().estimate_model(correspondences(x1, x2))

    assert 1 <= len(models) <= EssentialMatrixEstimator.max_num_models
    for E in models:
        h1 = np.hstack([x1, np.ones((5, 1))])
        h2 = np.hstack([x2, np.ones((5, 1))])
        assert np.max(np.abs(np.sum(h2 * (h1 @ E.T), axis=1))) < 1e-6
    assert any(_matches_up_to_scale(E, _skew(t) @ R, 1e-4) for E in models)


def test_seven_point_roots_satisfy_epipolar_constraint(rng):
    x1, x2, R, t, _ = correspondences_with_outliers(rng, 7, 1.0)
    models = SevenPointFundamentalMatrixEstimator().estimate_model(correspondences(x1, x2))

    assert 1 <= len(models) <= 3
    h1 = np.hstack([x1, np.ones((7, 1))])
    h2 = np.hstack([x2, np.ones((7, 1))])
    for F in models:
        F = F / np.linalg.norm(F)
        assert np.max(np.abs(np.sum(h2 * (h1 @ F.T), axis=1))) < 1e-7
        assert abs(np.linalg.det(F)) < 1e-7
    assert any(_matches_up_to_scale(F, _skew(t) @ R, 1e-4) for F in models)


def test_p3p_returns_true_pose_among_roots(rng):
    R, _ = cv2.Rodrigues(np.array([0.2, 0.1, -0.1]))
    t = np.array([0.1, 0.2, 0.5])
    world = random_points(rng, 3)
    cam = world @ R.T + t
    data = np.hstack([cam[:, :2] / cam[:, 2:3], world])

    models = CalibratedAbsolutePoseEstimator().estimate_model(data)

    assert 1 <= len(models) <= CalibratedAbsolutePoseEstimator.max_num_models
    assert any(
        rotation_angle_degrees(m.rotation, R) < 1e-2 and np.allclose(m.translation, t, atol=1e-4)
        for m in models
    )


# ----------------------------------------------------------------------
# Samplers and quality measurements
# ----------------------------------------------------------------------
def test_exhaustive_sampler_visits_every_subset_then_raises():
    sampler = ExhaustiveSampler(3)
    sampler.initialize(5)
    subsets = {tuple(sampler.sample()) for _ in range(10)}

    assert len(subsets) == 10
    with pytest.raises(SamplingExhausted):
        sampler.sample()


def test_random_sampler_never_repeats_a_subset():
    sampler = RandomSampler(2, seed=0)
    sampler.initialize(6)
    subsets = [tuple(sampler.sample()) for _ in range(15)]

    assert len(set(subsets)) == 15
    assert all(len(set(s)) == 2 for s in subsets)
    with pytest.raises(SamplingExhausted):
        sampler.sample()


def test_sampler_needs_enough_points():
    with pytest.raises(SamplingExhausted):
        RandomSampler(4, seed=0).initialize(3)


def test_prosac_starts_from_the_best_rows():
    sampler = ProsacSampler(3, seed=0)
    sampler.initialize(1000)
    first = np.concatenate([sampler.sample() for _ in range(5)])

    assert first.max() < 50


def test_quality_measurements_rank_hypotheses():
    good = np.array([0.0, 0.1, 0.2, 5.0])
    bad = np.array([0.0, 3.0, 4.0, 5.0])

    for quality in (InlierSupport(1.0), MLEQualityMeasurement(1.0)):
        good_score, good_inliers = quality.compute_cost(good)
        bad_score, bad_inliers = quality.compute_cost(bad)
        assert good_score < bad_score
        assert list(good_inliers) == [0, 1, 2]
        assert list(bad_inliers) == [0]

    lmed = LMedQualityMeasurement(1.0, min_num_samples=2)
    assert lmed.compute_cost(good)[0] < lmed.compute_cost(bad)[0]
