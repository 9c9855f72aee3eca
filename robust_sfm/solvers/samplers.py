"""
Minimal-sample generators for sample-consensus estimation.

All samplers hand out index subsets of size `min_num_samples` and raise
SamplingExhausted when no new distinct subset can be produced.
"""

from __future__ import annotations

import abc
import itertools
import logging
import math
from typing import Iterator, Optional, Set, Tuple

import numpy as np
from scipy import stats

from robust_sfm.errors import SamplingExhausted

logger = logging.getLogger(__name__)

# Number of redraws tried before a sampler gives up on finding an unused
# subset by chance and enumerates what is left.
_MAX_REDRAWS = 100


class Sampler(abc.ABC):
    """Base sampler; remembers which subsets were already handed out."""

    def __init__(self, min_num_samples: int, seed: Optional[int] = None) -> None:
        if min_num_samples < 1:
            raise ValueError(f"min_num_samples must be positive, got {min_num_samples}")
        self.min_num_samples = min_num_samples
        self.rng = np.random.default_rng(seed)
        self.num_datapoints = 0
        self._used: Set[Tuple[int, ...]] = set()
        self._num_subsets = 0

    def initialize(self, num_datapoints: int) -> None:
        """
        Prepare to sample from `num_datapoints` rows.

        Raises:
            SamplingExhausted: If fewer rows than the minimal sample size exist.
        """
        if num_datapoints < self.min_num_samples:
            raise SamplingExhausted(
                f"Need at least {self.min_num_samples} data points, got {num_datapoints}"
            )
        self.num_datapoints = num_datapoints
        self._used = set()
        self._num_subsets = math.comb(num_datapoints, self.min_num_samples)

    @property
    def num_used_subsets(self) -> int:
        return len(self._used)

    def is_exhausted(self) -> bool:
        return len(self._used) >= self._num_subsets

    @abc.abstractmethod
    def _draw(self) -> np.ndarray:
        """Propose a subset; may repeat an earlier one."""

    def sample(self) -> np.ndarray:
        """
        Return a new, never-before-returned index subset.

        Raises:
            SamplingExhausted: If every distinct subset has been used.
        """
        if self.num_datapoints == 0:
            raise SamplingExhausted("Sampler used before initialize()")
        if self.is_exhausted():
            raise SamplingExhausted(
                f"All {self._num_subsets} subsets of size {self.min_num_samples} used"
            )
        for _ in range(_MAX_REDRAWS):
            key = tuple(sorted(int(i) for i in self._draw()))
            if key not in self._used:
                return self._accept(key)
        return self._accept(self._first_unused())

    def _accept(self, key: Tuple[int, ...]) -> np.ndarray:
        self._used.add(key)
        return np.array(key, dtype=np.int64)

    def _first_unused(self) -> Tuple[int, ...]:
        for subset in itertools.combinations(range(self.num_datapoints), self.min_num_samples):
            if subset not in self._used:
                return subset
        raise SamplingExhausted("No unused subset left")


class RandomSampler(Sampler):
    """Uniform sampling without replacement."""

    def _draw(self) -> np.ndarray:
        return self.rng.choice(self.num_datapoints, size=self.min_num_samples, replace=False)


class ExhaustiveSampler(Sampler):
    """Enumerates every subset in lexicographic order."""

    def initialize(self, num_datapoints: int) -> None:
        super().initialize(num_datapoints)
        self._iterator: Iterator[Tuple[int, ...]] = itertools.combinations(
            range(num_datapoints), self.min_num_samples
        )

    def _draw(self) -> np.ndarray:
        return np.array(next(self._iterator), dtype=np.int64)

    def sample(self) -> np.ndarray:
        if self.num_datapoints == 0:
            raise SamplingExhausted("Sampler used before initialize()")
        try:
            subset = next(self._iterator)
        except StopIteration:
            raise SamplingExhausted(
                f"All {self._num_subsets} subsets of size {self.min_num_samples} used"
            ) from None
        return self._accept(subset)


class ProsacSampler(Sampler):
    """
    Progressive sampling (Chum & Matas, CVPR 2005).

    Data rows must be sorted by decreasing quality. Samples are drawn from a
    growing prefix of the data; the growth schedule makes PROSAC fall back to
    plain RANSAC after `ransac_convergence_iterations` samples.
    """

    def __init__(
        self,
        min_num_samples: int,
        seed: Optional[int] = None,
        ransac_convergence_iterations: int = 20000,
    ) -> None:
        super().__init__(min_num_samples, seed)
        self.ransac_convergence_iterations = ransac_convergence_iterations

    def initialize(self, num_datapoints: int) -> None:
        super().initialize(num_datapoints)
        m = self.min_num_samples
        t_n = float(self.ransac_convergence_iterations)
        for i in range(m):
            t_n *= (m - i) / (num_datapoints - i)
        self._t_n = t_n
        self._t_n_prime = 1
        self._n = m
        self._sample_number = 0

    def _draw(self) -> np.ndarray:
        m = self.min_num_samples
        self._sample_number += 1
        if self._sample_number == self._t_n_prime and self._n < self.num_datapoints:
            t_n_next = self._t_n * (self._n + 1) / (self._n + 1 - m)
            self._t_n_prime += int(math.ceil(t_n_next - self._t_n))
            self._t_n = t_n_next
            self._n += 1

        if self._t_n_prime < self._sample_number or self._n == m:
            return self.rng.choice(self._n, size=m, replace=False)
        # m - 1 points from the first n - 1 rows plus the n-th row.
        head = self.rng.choice(self._n - 1, size=m - 1, replace=False)
        return np.append(head, self._n - 1)


class EvsacSampler(Sampler):
    """
    Extreme-value-theory sampler (Fragoso et al., ICCV 2013).

    Each correspondence comes with its sorted nearest-neighbour descriptor
    distances. Correct-match distances are modelled with a gamma
    distribution and incorrect-match distances with a reverse Weibull
    distribution fitted to the second-nearest distances. Samples are drawn
    with probability proportional to the posterior of being correct.
    """

    def __init__(
        self,
        min_num_samples: int,
        sorted_distances: np.ndarray,
        predictor_threshold: float = 0.65,
        seed: Optional[int] = None,
    ) -> None:
        super().__init__(min_num_samples, seed)
        sorted_distances = np.asarray(sorted_distances, dtype=np.float64)
        if sorted_distances.ndim != 2 or sorted_distances.shape[1] < 2:
            raise ValueError("sorted_distances must be (N, k) with k >= 2")
        self.sorted_distances = sorted_distances
        self.predictor_threshold = predictor_threshold
        self.probabilities = self._compute_posteriors()

    def _compute_posteriors(self) -> np.ndarray:
        d1 = self.sorted_distances[:, 0]
        d2 = self.sorted_distances[:, 1]
        n = len(d1)
        ratio = d1 / np.maximum(d2, 1e-12)
        predicted_correct = ratio < self.predictor_threshold
        inlier_ratio = float(np.clip(predicted_correct.mean(), 1.0 / n, 1.0 - 1.0 / n))

        correct = d1[predicted_correct] if predicted_correct.sum() >= 2 else d1
        try:
            shape, loc, scale = stats.gamma.fit(correct, floc=0.0)
            f_correct = stats.gamma.pdf(d1, shape, loc=loc, scale=scale)
            c, w_loc, w_scale = stats.weibull_max.fit(d2)
            f_incorrect = stats.weibull_max.pdf(d1, c, loc=w_loc, scale=w_scale)
        except (ValueError, RuntimeError, FloatingPointError) as exc:
            logger.warning(f"EVSAC distribution fit failed ({exc}); using uniform weights")
            return np.full(n, 1.0 / n)

        numerator = inlier_ratio * f_correct
        denominator = numerator + (1.0 - inlier_ratio) * f_incorrect
        with np.errstate(divide="ignore", invalid="ignore"):
            posterior = np.where(denominator > 0, numerator / denominator, 0.0)
        posterior = np.nan_to_num(posterior, nan=0.0) + 1e-9
        logger.debug(
            f"EVSAC: predicted inlier ratio {inlier_ratio:.3f}, "
            f"mean posterior {posterior.mean():.3f}"
        )
        return posterior / posterior.sum()

    def initialize(self, num_datapoints: int) -> None:
        if num_datapoints != len(self.probabilities):
            raise ValueError(
                f"EVSAC was built for {len(self.probabilities)} correspondences, "
                f"got {num_datapoints}"
            )
        super().initialize(num_datapoints)

    def _draw(self) -> np.ndarray:
        return self.rng.choice(
            self.num_datapoints,
            size=self.min_num_samples,
            replace=False,
            p=self.probabilities,
        )


__all__ = [
    "Sampler",
    "RandomSampler",
    "ExhaustiveSampler",
    "ProsacSampler",
    "EvsacSampler",
]
