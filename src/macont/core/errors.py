"""
Exceptions raised by the solvers and the continuation engine.

The numerical failures derive from numpy's LinAlgError, so that callers
catching linear algebra failures also catch them.
"""

from __future__ import annotations

import numpy as np

from .types import Array


class MacontError(Exception):
    """Base class for all errors raised by macont."""


class NonConvergence(MacontError, np.linalg.LinAlgError):
    """The Newton iteration exhausted its budget without meeting the tolerance."""

    def __init__(
        self,
        message: str,
        u: Array | None = None,
        residual: float | None = None,
        iterations: int | None = None,
    ) -> None:
        super().__init__(message)
        #: the last iterate of the failed solve
        self.u = u
        #: the norm of the residuals at the last iterate
        self.residual = residual
        #: the number of iterations that were taken
        self.iterations = iterations


class SingularJacobian(MacontError, np.linalg.LinAlgError):
    """The linear oracle reported a non-invertible operator."""

    def __init__(self, message: str, u: Array | None = None, p: float | None = None) -> None:
        super().__init__(message)
        #: the point at which the singular operator was encountered (if known)
        self.u = u
        self.p = p


class BorderingSingular(SingularJacobian):
    """
    The bordering vectors of a minimally augmented problem make the
    bordered operator singular. Alternate bordering vectors are needed.
    """


class ContinuationStalled(MacontError):
    """The continuation step size fell below its lower bound."""

    def __init__(self, message: str, ds: float | None = None) -> None:
        super().__init__(message)
        #: the step size at which the continuation gave up
        self.ds = ds


class IntegrationDiverged(MacontError, np.linalg.LinAlgError):
    """The flow map (ODE integrator) failed to integrate the trajectory."""

    def __init__(self, message: str, x0: Array | None = None, t: float | None = None) -> None:
        super().__init__(message)
        self.x0 = x0
        self.t = t
