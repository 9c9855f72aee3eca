import threading

import numpy as np
import pytest

from robust_sfm.errors import ConcurrencyContractViolation
from robust_sfm.sfm.localization import (
    LocalizeViewOptions,
    estimate_position_with_known_orientation,
    localize_view_to_reconstruction,
)
from robust_sfm.solvers.sample_consensus import RansacParameters


def _options(**kwargs):
    return LocalizeViewOptions(
        ransac_params=RansacParameters(error_thresh=1e-5, max_iterations=1000, seed=5),
        **kwargs,
    )


@pytest.fixture
def localizable(scene):
    """Every view but the last is posed and every track is at its true point."""
    scene.set_true_poses(scene.view_ids[:-1])
    for track_id, point in zip(scene.track_ids, scene.points):
        track = scene.reconstruction.track(track_id)
        track.set_point(point)
        track.set_estimated(True)
    return scene


def test_localize_view(localizable):
    view_id = localizable.view_ids[-1]
    success, summary = localize_view_to_reconstruction(
        view_id, localizable.reconstruction, _options()
    )

    assert success
    assert summary.num_inliers >= 30
    view = localizable.reconstruction.view(view_id)
    assert view.is_estimated
    truth = localizable.cameras[-1]
    np.testing.assert_allclose(view.camera.orientation, truth.orientation, atol=1e-5)
    np.testing.assert_allclose(view.camera.position, truth.position, atol=1e-5)


def test_estimate_position_with_known_orientation(localizable):
    view_id = localizable.view_ids[-1]
    camera = localizable.reconstruction.view(view_id).camera
    camera.orientation = localizable.cameras[-1].orientation

    success, _ = estimate_position_with_known_orientation(
        view_id, localizable.reconstruction, _options(bundle_adjust_view=False)
    )

    assert success
    np.testing.assert_allclose(camera.position, localizable.cameras[-1].position, atol=1e-5)


def test_too_few_correspondences(localizable):
    view_id = localizable.view_ids[-1]
    success, summary = localize_view_to_reconstruction(
        view_id, localizable.reconstruction, _options(min_num_inliers=10_000)
    )

    assert not success
    assert summary.failure_reason
    assert not localizable.reconstruction.view(view_id).is_estimated


@pytest.mark.parametrize(
    "localize", [localize_view_to_reconstruction, estimate_position_with_known_orientation]
)
def test_localization_respects_view_claim(localizable, localize):
    view_id = localizable.view_ids[-1]
    camera = localizable.reconstruction.view(view_id).camera
    position = camera.position.copy()
    errors = []

    def run():
        try:
            localize(view_id, localizable.reconstruction, _options())
        except ConcurrencyContractViolation as exc:
            errors.append(exc)

    with localizable.reconstruction.claim(view_ids=[view_id], writer="other_phase"):
        thread = threading.Thread(target=run)
        thread.start()
        thread.join()

    assert len(errors) == 1
    assert not localizable.reconstruction.view(view_id).is_estimated
    np.testing.assert_array_equal(camera.position, position)
