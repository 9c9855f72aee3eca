"""
Generic sample-consensus (RANSAC-family) estimation loop.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import numpy as np

from robust_sfm.errors import DegenerateModel, SamplingExhausted
from robust_sfm.solvers.estimator import Estimator
from robust_sfm.solvers.quality_measurement import (
    InlierSupport,
    MLEQualityMeasurement,
    QualityMeasurement,
    Score,
)
from robust_sfm.solvers.samplers import RandomSampler, Sampler

logger = logging.getLogger(__name__)


@dataclass
class RansacParameters:
    """Options shared by every sample-consensus variant."""

    # Inlier threshold on the estimator's (squared) residual.
    error_thresh: float = 1.0
    # 1 - confidence that an all-inlier sample has been drawn.
    failure_probability: float = 0.01
    # The iteration budget only adapts once a model reaches this inlier ratio.
    min_inlier_ratio: float = 0.0
    min_iterations: int = 100
    max_iterations: int = 10000
    # A model needs max(min_num_inliers, sample_size) inliers to be accepted.
    min_num_inliers: int = 0
    # Stop as soon as the best model explains this fraction of the data.
    early_stop_inlier_ratio: float = 1.0
    # Score with the truncated quadratic (MSAC) cost instead of inlier count.
    use_mle: bool = True
    # Local optimisation: refit the model on its inliers after this many
    # iterations whenever a new best model is found.
    use_lo: bool = False
    lo_start_iterations: int = 10
    num_threads: int = 1
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if not 0.0 < self.failure_probability < 1.0:
            raise ValueError(f"failure_probability must be in (0, 1), got {self.failure_probability}")
        if self.error_thresh <= 0:
            raise ValueError(f"error_thresh must be positive, got {self.error_thresh}")
        if self.min_iterations > self.max_iterations:
            raise ValueError("min_iterations must not exceed max_iterations")
        if self.num_threads < 1:
            raise ValueError(f"num_threads must be >= 1, got {self.num_threads}")


@dataclass
class RansacSummary:
    inliers: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    inlier_mask: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=bool))
    num_iterations: int = 0
    num_hypotheses: int = 0
    # Probability that at least one all-inlier sample was drawn.
    confidence: float = 0.0
    failure_reason: str = ""

    @property
    def num_inliers(self) -> int:
        return int(len(self.inliers))


def compute_max_iterations(
    min_iterations: int,
    max_iterations: int,
    inlier_ratio: float,
    sample_size: int,
    failure_probability: float,
) -> int:
    """
    Iterations needed to draw an all-inlier sample with the given confidence.

    iters = log(failure_probability) / log(1 - r^s), clamped to
    [min_iterations, max_iterations].
    """
    if inlier_ratio >= 1.0:
        return min_iterations
    if inlier_ratio <= 0.0:
        return max_iterations
    log_prob_outlier_sample = math.log1p(-(inlier_ratio**sample_size))
    if log_prob_outlier_sample >= 0.0:
        return max_iterations
    iterations = math.ceil(math.log(failure_probability) / log_prob_outlier_sample)
    return int(min(max(iterations, min_iterations), max_iterations))


class SampleConsensusEstimator:
    """
    Sample -> estimate -> score -> keep best, with an adaptive iteration budget.

    The sampler is always queried from the calling thread, so a fixed seed
    produces the same sequence of minimal samples (and the same result)
    regardless of `num_threads`. Hypothesis estimation and scoring for a batch
    of samples fan out over a thread pool.
    """

    def __init__(
        self,
        params: RansacParameters,
        estimator: Estimator,
        sampler: Optional[Sampler] = None,
        quality_measurement: Optional[QualityMeasurement] = None,
    ) -> None:
        self.params = params
        self.estimator = estimator
        self.sampler = sampler or RandomSampler(estimator.sample_size, seed=params.seed)
        if self.sampler.min_num_samples != estimator.sample_size:
            raise ValueError(
                f"Sampler draws {self.sampler.min_num_samples} points but the "
                f"estimator needs {estimator.sample_size}"
            )
        if quality_measurement is None:
            quality_cls = MLEQualityMeasurement if params.use_mle else InlierSupport
            quality_measurement = quality_cls(params.error_thresh)
        self.quality_measurement = quality_measurement

    # ------------------------------------------------------------------
    # Hypothesis generation / scoring
    # ------------------------------------------------------------------
    def _hypotheses(self, data: np.ndarray, indices: np.ndarray) -> List[Any]:
        try:
            models = self.estimator.estimate_model(data[indices])
        except DegenerateModel as exc:
            logger.debug(f"Degenerate sample {indices.tolist()}: {exc}")
            return []
        except np.linalg.LinAlgError as exc:
            logger.debug(f"Solver failed on sample {indices.tolist()}: {exc}")
            return []
        return list(models)[: self.estimator.max_num_models]

    def _score(self, data: np.ndarray, model: Any) -> Tuple[Score, np.ndarray, int]:
        """Returns (score, inliers, support)."""
        residuals = np.asarray(self.estimator.residuals(data, model), dtype=np.float64)
        residuals = np.where(np.isfinite(residuals), residuals, np.inf)
        score, inliers = self.quality_measurement.compute_cost(residuals)
        return score, inliers, self.quality_measurement.support(residuals)

    def _evaluate_sample(
        self,
        data: np.ndarray,
        indices: np.ndarray,
    ) -> List[Tuple[Score, Any, np.ndarray, int]]:
        results = []
        for model in self._hypotheses(data, indices):
            score, inliers, support = self._score(data, model)
            results.append((score, model, inliers, support))
        return results

    def _local_optimize(
        self,
        data: np.ndarray,
        model: Any,
        score: Score,
        inliers: np.ndarray,
        support: int,
    ) -> Tuple[Score, Any, np.ndarray, int]:
        unchanged = score, model, inliers, support
        if len(inliers) <= self.estimator.sample_size:
            return unchanged
        try:
            refined = self.estimator.refine_model(data[inliers], model)
        except (DegenerateModel, np.linalg.LinAlgError) as exc:
            logger.debug(f"Local optimisation failed: {exc}")
            return unchanged
        if refined is None:
            return unchanged
        refined_score, refined_inliers, refined_support = self._score(data, refined)
        if refined_score < score:
            return refined_score, refined, refined_inliers, refined_support
        return unchanged

    def _draw_samples(self, count: int) -> Tuple[List[np.ndarray], bool]:
        samples = []
        for _ in range(count):
            try:
                samples.append(self.sampler.sample())
            except SamplingExhausted:
                return samples, True
        return samples, False

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    def estimate(self, data: np.ndarray) -> Tuple[bool, Optional[Any], RansacSummary]:
        """
        Robustly estimate a model from `data`.

        Args:
            data: (N, D) array, one correspondence per row.

        Returns:
            Tuple of (success, model, summary). `model` is the best hypothesis
            found even when it does not reach the minimum inlier count.
        """
        data = np.asarray(data)
        num_data = len(data)
        sample_size = self.estimator.sample_size
        params = self.params
        summary = RansacSummary(inlier_mask=np.zeros(num_data, dtype=bool))

        if num_data < sample_size:
            summary.failure_reason = (
                f"Need at least {sample_size} data points, got {num_data}"
            )
            logger.debug(summary.failure_reason)
            return False, None, summary

        try:
            self.sampler.initialize(num_data)
        except SamplingExhausted as exc:
            summary.failure_reason = str(exc)
            return False, None, summary

        best_score: Optional[Score] = None
        best_model: Any = None
        best_inliers = np.zeros(0, dtype=np.int64)
        best_support = 0
        max_iterations = params.max_iterations
        exhausted = False
        batch = params.num_threads

        stop = False
        executor = ThreadPoolExecutor(max_workers=params.num_threads) if batch > 1 else None
        try:
            while summary.num_iterations < max_iterations and not exhausted and not stop:
                count = min(batch, max_iterations - summary.num_iterations)
                samples, exhausted = self._draw_samples(count)
                if not samples:
                    break
                if executor is not None:
                    batch_results = list(
                        executor.map(lambda idx: self._evaluate_sample(data, idx), samples)
                    )
                else:
                    batch_results = [self._evaluate_sample(data, idx) for idx in samples]

                # Results are consumed in sample order; anything drawn past the
                # (possibly shrunk) budget is discarded so the outcome does not
                # depend on the batch size.
                for sample_results in batch_results:
                    if summary.num_iterations >= max_iterations:
                        break
                    summary.num_iterations += 1
                    for score, model, inliers, support in sample_results:
                        summary.num_hypotheses += 1
                        if best_score is not None and not score < best_score:
                            continue
                        if params.use_lo and summary.num_iterations >= params.lo_start_iterations:
                            score, model, inliers, support = self._local_optimize(
                                data, model, score, inliers, support
                            )
                        best_score, best_model, best_inliers = score, model, inliers
                        best_support = support
                        inlier_ratio = support / num_data
                        if inlier_ratio >= params.min_inlier_ratio:
                            max_iterations = compute_max_iterations(
                                params.min_iterations,
                                params.max_iterations,
                                inlier_ratio,
                                sample_size,
                                params.failure_probability,
                            )

                    if best_support / num_data >= params.early_stop_inlier_ratio:
                        logger.debug(
                            f"Early stop after {summary.num_iterations} iterations: "
                            f"inlier ratio {best_support / num_data:.3f}"
                        )
                        stop = True
                        break
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        inlier_ratio = best_support / num_data
        summary.confidence = 1.0 - (1.0 - inlier_ratio**sample_size) ** summary.num_iterations
        summary.inliers = np.asarray(best_inliers, dtype=np.int64)
        summary.inlier_mask[summary.inliers] = True

        required = max(params.min_num_inliers, sample_size)
        if best_model is None:
            summary.failure_reason = "No hypothesis could be estimated"
            logger.debug(f"{summary.failure_reason} after {summary.num_iterations} iterations")
            return False, None, summary
        if len(best_inliers) < required:
            summary.failure_reason = (
                f"Best model has {len(best_inliers)} inliers, need {required}"
            )
            logger.debug(summary.failure_reason)
            return False, best_model, summary

        logger.debug(
            f"{type(self.estimator).__name__}: {len(best_inliers)}/{num_data} inliers, "
            f"{summary.num_iterations} iterations, {summary.num_hypotheses} hypotheses"
        )
        return True, best_model, summary


__all__ = [
    "RansacParameters",
    "RansacSummary",
    "SampleConsensusEstimator",
    "compute_max_iterations",
]
