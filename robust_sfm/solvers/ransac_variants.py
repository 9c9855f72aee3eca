"""
Named RANSAC variants and a factory to build them.
"""

from __future__ import annotations

import enum
from typing import Optional

import numpy as np

from robust_sfm.solvers.estimator import Estimator
from robust_sfm.solvers.quality_measurement import LMedQualityMeasurement
from robust_sfm.solvers.sample_consensus import RansacParameters, SampleConsensusEstimator
from robust_sfm.solvers.samplers import (
    EvsacSampler,
    ExhaustiveSampler,
    ProsacSampler,
    RandomSampler,
)


class RansacType(enum.Enum):
    RANSAC = "ransac"
    PROSAC = "prosac"
    LMED = "lmed"
    EVSAC = "evsac"
    EXHAUSTIVE = "exhaustive"


class Ransac(SampleConsensusEstimator):
    """Uniform random sampling."""

    def __init__(self, params: RansacParameters, estimator: Estimator) -> None:
        super().__init__(params, estimator, RandomSampler(estimator.sample_size, params.seed))


class Prosac(SampleConsensusEstimator):
    """Progressive sampling; data rows must be sorted by decreasing quality."""

    def __init__(self, params: RansacParameters, estimator: Estimator) -> None:
        super().__init__(params, estimator, ProsacSampler(estimator.sample_size, params.seed))


class LMed(SampleConsensusEstimator):
    """Least median of squares; `error_thresh` only bounds the support count."""

    def __init__(self, params: RansacParameters, estimator: Estimator) -> None:
        super().__init__(
            params,
            estimator,
            RandomSampler(estimator.sample_size, params.seed),
            LMedQualityMeasurement(params.error_thresh, estimator.sample_size),
        )


class Evsac(SampleConsensusEstimator):
    """Sampling weighted by extreme-value-theory inlier posteriors."""

    def __init__(
        self,
        params: RansacParameters,
        estimator: Estimator,
        sorted_distances: np.ndarray,
        predictor_threshold: float = 0.65,
    ) -> None:
        sampler = EvsacSampler(
            estimator.sample_size,
            sorted_distances,
            predictor_threshold=predictor_threshold,
            seed=params.seed,
        )
        super().__init__(params, estimator, sampler)


class ExhaustiveRansac(SampleConsensusEstimator):
    """Tries every minimal subset (small problems only)."""

    def __init__(self, params: RansacParameters, estimator: Estimator) -> None:
        super().__init__(params, estimator, ExhaustiveSampler(estimator.sample_size))


def create_and_initialize_ransac_variant(
    ransac_type: RansacType | str,
    params: RansacParameters,
    estimator: Estimator,
    sorted_distances: Optional[np.ndarray] = None,
) -> SampleConsensusEstimator:
    """
    Build a sample-consensus estimator of the requested type.

    Args:
        ransac_type: RansacType or its string value.
        params: Shared RANSAC parameters.
        estimator: Model estimator to wrap.
        sorted_distances: (N, k) nearest-neighbour descriptor distances, only
            used (and required) for EVSAC.

    Raises:
        ValueError: If EVSAC is requested without `sorted_distances`.
    """
    if isinstance(ransac_type, str):
        ransac_type = RansacType(ransac_type.lower())

    if ransac_type == RansacType.RANSAC:
        return Ransac(params, estimator)
    if ransac_type == RansacType.PROSAC:
        return Prosac(params, estimator)
    if ransac_type == RansacType.LMED:
        return LMed(params, estimator)
    if ransac_type == RansacType.EXHAUSTIVE:
        return ExhaustiveRansac(params, estimator)
    if sorted_distances is None:
        raise ValueError("EVSAC requires sorted nearest-neighbour distances")
    return Evsac(params, estimator, sorted_distances)


__all__ = [
    "RansacType",
    "Ransac",
    "Prosac",
    "LMed",
    "Evsac",
    "ExhaustiveRansac",
    "create_and_initialize_ransac_variant",
]
