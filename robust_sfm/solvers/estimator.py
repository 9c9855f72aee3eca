"""
Estimator interface plugged into the sample-consensus framework.
"""

from __future__ import annotations

import abc
from typing import Any, List, Optional

import numpy as np


class Estimator(abc.ABC):
    """
    A model estimator over rows of a data matrix.

    Subclasses set `sample_size` (minimal number of rows per hypothesis) and
    `max_num_models` (upper bound on hypotheses a single minimal sample may
    produce), and implement `estimate_model` and `error`.
    """

    sample_size: int = 1
    max_num_models: int = 1

    @abc.abstractmethod
    def estimate_model(self, data: np.ndarray) -> List[Any]:
        """
        Estimate model hypotheses from a (sample_size, D) data subset.

        Returns:
            A list of 0..max_num_models models. An empty list means the sample
            was degenerate.
        """

    @abc.abstractmethod
    def error(self, datum: np.ndarray, model: Any) -> float:
        """Residual of a single data row under `model` (squared units)."""

    def residuals(self, data: np.ndarray, model: Any) -> np.ndarray:
        """
        Residuals of all rows under `model`.

        The default evaluates `error` row by row; subclasses override with a
        vectorised version.
        """
        return np.array([self.error(datum, model) for datum in data], dtype=np.float64)

    def refine_model(self, data: np.ndarray, model: Any) -> Optional[Any]:
        """
        Re-estimate a model from a (possibly non-minimal) inlier set.

        Used for local optimisation. Returns None when refinement is not
        supported or fails.
        """
        return None


__all__ = ["Estimator"]
