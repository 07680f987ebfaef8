"""The common base of all periodic orbit discretizations."""

from __future__ import annotations

from collections.abc import Callable
from typing import NamedTuple

import numpy as np
import scipy.linalg

from macont.core.problem import BifurcationProblem, ContinuationProblem
from macont.core.solution import SpecialPoint
from macont.core.types import Array, ComplexArray, Matrix, Parameters, RealArray


class PeriodicOrbit(NamedTuple):
    """A periodic orbit sampled at the times t in [0, T], u has the shape (n, len(t))"""

    t: RealArray
    u: Array


class PeriodicOrbitProblem(ContinuationProblem):
    """
    Abstract base class for the periodic orbit problems. The unknowns U are a
    discretization of one period of the orbit of the underlying problem, with the
    period T appended as the last entry. The monitored spectrum is made of the
    Floquet exponents log(mu) of the monodromy matrix, without the trivial one.
    """

    spectrum_type = "discrete"

    def __init__(self, problem: BifurcationProblem) -> None:
        super().__init__()
        #: the problem of the underlying vector field
        self.problem = problem
        # the initial guess, set by initial_guess / guess_from_hopf
        self._x0: Array | None = None
        self._p0: float | None = None

    @property
    def n(self) -> int:
        """the dimension of the underlying vector field"""
        return self.problem.ndofs

    @property
    def x0(self) -> Array:
        if self._x0 is None:
            raise ValueError("No initial guess for the periodic orbit, use initial_guess() or guess_from_hopf()")
        return self._x0

    @property
    def p0(self) -> float:
        return self.problem.p0 if self._p0 is None else self._p0

    @property
    def parameter_name(self) -> str:
        return self.problem.parameter_name

    def params_at(self, p: float, x: Array | None = None) -> Parameters:
        return self.problem.params_at(p)

    def no_reference_error(self) -> ValueError:
        return ValueError("No reference orbit for the phase condition, use initial_guess() or update_section()")

    def vector_field(self, u: Array, p: float) -> Array:
        """the underlying vector field at a single state u"""
        return self.problem.residual(u, p)

    def get_period(self, x: Array, p: float) -> float:
        """the period of the orbit"""
        return float(x[-1])

    def get_orbit(self, x: Array, p: float) -> PeriodicOrbit:
        """the orbit as a function of time"""
        raise NotImplementedError

    def discretize(self, orbit: Callable[[RealArray], Array], T: float) -> Array:
        """
        Create the unknowns from an orbit given as a function of the
        normalized time s in [0, 1) and the period T
        """
        raise NotImplementedError

    def initial_guess(self, orbit: Callable[[RealArray], Array], T: float, p: float | None = None) -> Array:
        """
        Set the initial guess of the problem from a function orbit(s) of the normalized
        time s = t / T that returns the states with shape (n, len(s)).
        """
        if not T > 0:
            raise ValueError(f"The period must be positive, got T = {T}")
        x0 = self.discretize(orbit, T)
        self._x0 = x0
        if p is not None:
            self._p0 = float(p)
        self.update_section(x0, self.p0)
        return x0

    def guess_from_hopf(self, special_point: SpecialPoint, amplitude: float,
                        center: Array | None = None) -> Array:
        """
        Initial guess for the orbit that is born in a Hopf point:
        u(t) = u_H + amplitude * Re(q exp(2 pi i t / T)) with the period T = 2 pi / omega
        """
        if special_point.kind != "hopf":
            raise ValueError(f"Expected a Hopf point, got '{special_point.kind}'")
        omega = special_point.omega
        q = special_point.v
        if omega is None or q is None:
            # take the critical eigenpair from the Jacobian
            eigenvalues, eigenvectors = scipy.linalg.eig(
                np.asarray(self.problem.jacobian(special_point.u, special_point.p)))
            complex_ev = np.flatnonzero(eigenvalues.imag > 0)
            i = complex_ev[np.argmin(np.abs(eigenvalues[complex_ev].real))]
            omega, q = eigenvalues[i].imag, eigenvectors[:, i]
        q = np.asarray(q, dtype=complex) / np.linalg.norm(q)
        center = special_point.u if center is None else center

        def orbit(s: RealArray) -> Array:
            return center[:, np.newaxis] + amplitude * np.real(np.outer(q, np.exp(2j * np.pi * s)))

        return self.initial_guess(orbit, 2 * np.pi / abs(omega), p=special_point.p)

    def monodromy(self, x: Array, p: float) -> Matrix:
        """the monodromy matrix of the orbit"""
        raise NotImplementedError

    def floquet_multipliers(self, x: Array, p: float) -> ComplexArray:
        """The Floquet multipliers: the eigenvalues of the monodromy matrix"""
        return scipy.linalg.eigvals(np.asarray(self.monodromy(x, p)))

    def eigenvalues(self, x: Array, p: float, nev: int | None = None) -> tuple[ComplexArray, ComplexArray]:
        """
        The Floquet exponents log(mu), sorted by decreasing real part. The trivial
        multiplier (the one closest to 1) is removed.
        """
        multipliers, vectors = scipy.linalg.eig(np.asarray(self.monodromy(x, p)))
        keep = np.ones(multipliers.size, dtype=bool)
        keep[np.argmin(np.abs(multipliers - 1))] = False
        exponents = np.log(multipliers[keep].astype(complex))
        vectors = vectors[:, keep].T
        order = np.argsort(exponents.real)[::-1]
        if nev is not None:
            order = order[:nev]
        return exponents[order], vectors[order]

    def amplitude(self, x: Array, p: float) -> float:
        """half of the largest peak-to-peak excursion of the components"""
        u = self.get_orbit(x, p).u
        return float(np.max(np.max(u, axis=1) - np.min(u, axis=1)) / 2)

    def norm(self, x: Array, p: float) -> float:
        return self.amplitude(x, p)
