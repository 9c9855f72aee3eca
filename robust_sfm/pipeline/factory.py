"""
Construction of a reconstruction pipeline from its options.
"""

from __future__ import annotations

from robust_sfm.pipeline.global_estimator import GlobalReconstructionEstimator
from robust_sfm.pipeline.hybrid import HybridReconstructionEstimator
from robust_sfm.pipeline.incremental import IncrementalReconstructionEstimator
from robust_sfm.pipeline.reconstruction_estimator import (
    ReconstructionEstimator,
    ReconstructionEstimatorOptions,
    ReconstructionEstimatorType,
)

_ESTIMATORS = {
    ReconstructionEstimatorType.INCREMENTAL: IncrementalReconstructionEstimator,
    ReconstructionEstimatorType.GLOBAL: GlobalReconstructionEstimator,
    ReconstructionEstimatorType.HYBRID: HybridReconstructionEstimator,
}


def create_reconstruction_estimator(
    options: ReconstructionEstimatorOptions,
) -> ReconstructionEstimator:
    """
    Raises:
        ValueError: For an unknown `reconstruction_estimator_type`.
    """
    try:
        cls = _ESTIMATORS[options.reconstruction_estimator_type]
    except KeyError:
        raise ValueError(
            f"Unknown reconstruction estimator type: {options.reconstruction_estimator_type!r}"
        ) from None
    return cls(options)


__all__ = ["create_reconstruction_estimator"]
