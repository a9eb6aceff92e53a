"""
Typed failures raised by the Plenum core.

Construction-time validation failures derive from ``ValueError`` and
numerical failures from ``ArithmeticError`` so callers can catch either
the Plenum specific class or the builtin category.
"""

from __future__ import annotations


class PlenumError(Exception):
    """Base class for every error raised by the Plenum core."""


class InvalidMatrixError(PlenumError, ValueError):
    """Raised when a redistribution matrix fails validation.

    The usual cause is an antisymmetry violation larger than the
    configured tolerance. No simulation is created from invalid input.
    """


class InvalidConstraintError(InvalidMatrixError):
    """Raised when a constraint set is not self-consistent.

    Ratio and percentage sets must be non-negative and sum to one, and a
    redistribution matrix must not couple channels the transfer mask
    forbids.
    """


class NonFiniteStateError(PlenumError, ArithmeticError):
    """Raised when a state contains NaN or infinite values.

    A step that produces non-finite values is discarded and the prior
    state is kept; the caller may retry with a smaller ``dt``.
    """


class UnstableTimestepError(PlenumError):
    """Raised before an explicit Laplacian transport sweep whose ``dt``
    exceeds the stability bound. The step is refused."""

    def __init__(self, dt: float, limit: float):
        super().__init__(f"timestep {dt!r} violates the stability bound dt < {limit!r}")
        self.dt = dt
        self.limit = limit


class SeriesConvergenceError(PlenumError, ArithmeticError):
    """Raised when the truncated exponential series fails to converge."""


class SimulationStateError(PlenumError, RuntimeError):
    """Raised on an invalid lifecycle transition or concurrent writer."""
