"""
Exception types shared by the estimation, triangulation and refinement code.
"""

from __future__ import annotations


class SfmError(Exception):
    """Base class for all robust_sfm errors."""


class SamplingExhausted(SfmError):
    """Raised by a sampler when no new distinct minimal sample can be drawn."""


class DegenerateModel(SfmError):
    """Raised by a solver when the input configuration admits no model."""


class GeometricRejection(SfmError):
    """
    A track failed one of the geometric acceptance tests.

    `reason` is one of "angle", "triangulation" or "reprojection".
    """

    ANGLE = "angle"
    TRIANGULATION = "triangulation"
    REPROJECTION = "reprojection"

    def __init__(self, reason: str, message: str = "") -> None:
        if reason not in (self.ANGLE, self.TRIANGULATION, self.REPROJECTION):
            raise ValueError(f"Unknown rejection reason: {reason}")
        self.reason = reason
        super().__init__(message or reason)


class OptimizationDivergence(SfmError):
    """The nonlinear solver failed or produced non-finite parameters."""


class ConcurrencyContractViolation(SfmError):
    """Two concurrent phases tried to write overlapping views or tracks."""


__all__ = [
    "SfmError",
    "SamplingExhausted",
    "DegenerateModel",
    "GeometricRejection",
    "OptimizationDivergence",
    "ConcurrencyContractViolation",
]
