"""
Continuation of period-doubling and Neimark-Sacker points of periodic orbits
in two parameters, with minimally augmented shooting problems.

The critical multiplier (-1 resp. exp(i theta)) of the monodromy matrix is
an eigenvalue 1 of the monodromy after rotating the closure of the last
shooting section. The singularity of the resulting block-cyclic operator is
expressed by the test function sigma of a bordered system, as for folds
and Hopf points of equilibria.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import numpy as np
import scipy.linalg

from macont.continuation.continuation import ContinuationSettings, continuation
from macont.core.errors import BorderingSingular, SingularJacobian
from macont.core.problem import ContinuationProblem, ParameterLens, as_lens
from macont.core.solution import Branch, BranchPoint, SpecialPoint
from macont.core.solvers import bordered_solve
from macont.core.types import Array, ComplexArray, Parameters

from .shooting import ShootingProblem


class CycleBifurcationProblem(ContinuationProblem):
    """
    Common base of the augmented shooting problems. The unknowns are the shooting
    unknowns U, the first parameter p1 and possibly further unknowns, the
    continuation parameter is the second parameter p2.
    """

    codim = 2
    spectrum_type = "discrete"
    #: number of extra unknowns appended to the shooting unknowns
    nextra = 1

    def __init__(self, shooting: ShootingProblem, special_point: SpecialPoint,
                 lens2: str | ParameterLens) -> None:
        super().__init__()
        base = shooting.problem
        params = special_point.params if special_point.params is not None else base.params
        #: the problem of the vector field, with the parameters of the special point
        self.problem = base.set(params=base.lens.set(params, special_point.p))
        #: the shooting problem of the orbit
        self.shooting = shooting.with_problem(self.problem)
        self.shooting.update_section(special_point.u, special_point.p)
        #: lens onto the second parameter
        self.lens2 = as_lens(lens2)
        self._p0 = float(self.lens2.get(self.problem.params))
        #: finite-difference for the derivatives of sigma
        self.sigma_epsilon = 1e-6

    @property
    def p0(self) -> float:
        return self._p0

    @property
    def parameter_name(self) -> str:
        return self.lens2.name

    @property
    def nshoot(self) -> int:
        """number of shooting unknowns, including the period"""
        return self.shooting.n * self.shooting.M + 1

    def shooting_at(self, p2: float) -> ShootingProblem:
        """the shooting problem with the second parameter set to p2"""
        return self.shooting.with_problem(self.problem.set(params=self.lens2.set(self.problem.params, p2)))

    def params_at(self, p: float, x: Array | None = None) -> Parameters:
        params = self.problem.params
        if x is not None:
            params = self.problem.lens.set(params, x[self.nshoot])
        return self.lens2.set(params, p)

    def eigenvalues(self, x: Array, p: float, nev: int | None = None) -> tuple[ComplexArray, ComplexArray]:
        # the Floquet exponents of the orbit
        U, p1 = x[:self.nshoot], x[self.nshoot]
        return self.shooting_at(p).eigenvalues(U, p1, nev)

    def norm(self, x: Array, p: float) -> float:
        return self.shooting_at(p).amplitude(x[:self.nshoot], x[self.nshoot])

    def update_section(self, x: Array, p: float) -> None:
        shooting = self.shooting_at(p)
        shooting.update_section(x[:self.nshoot], x[self.nshoot])
        self.shooting.xref, self.shooting.fref = shooting.xref, shooting.fref

    @staticmethod
    def noncritical_multipliers(exponents: ComplexArray, critical: list[complex]) -> ComplexArray:
        """the Floquet multipliers without the ones closest to the critical multipliers"""
        multipliers = np.exp(exponents)
        for mu in critical:
            multipliers = np.delete(multipliers, np.argmin(np.abs(multipliers - mu)))
        return multipliers

    def closure(self, x: Array) -> complex:
        """the factor of the closure block of the last section"""
        raise NotImplementedError

    def bordered_solutions(self, x: Array, p: float) -> tuple[Array, Array, complex]:
        """the approximate right and left null vectors of the rotated operator and sigma"""
        U, p1 = x[:self.nshoot], x[self.nshoot]
        _, transfer = self.shooting_at(p).evolve_sections_with_jacobian(U, p1)
        A = self.shooting.linear_operator(transfer, closure=self.closure(x))
        N = A.shape[0]
        try:
            v, sigma = bordered_solve(A, self.b, self.c, 0.0, np.zeros(N, dtype=A.dtype), 1.0)
            w, _ = bordered_solve(A.conj().T, self.c, self.b, 0.0, np.zeros(N, dtype=A.dtype), 1.0)
        except SingularJacobian as err:
            raise BorderingSingular(
                "The bordered matrix of the cycle problem is singular, "
                "choose other bordering vectors b, c", u=x, p=p) from err
        return v, w, sigma

    def sigma(self, x: Array, p: float) -> complex:
        return self.bordered_solutions(x, p)[2]

    def sigma_gradient(self, x: Array, p: float) -> ComplexArray:
        """derivatives of sigma w.r.t. all unknowns with forward finite differences"""
        sigma0 = self.sigma(x, p)
        grad = np.zeros(x.size, dtype=complex)
        x1 = x.copy()
        for i in range(x.size):
            k = x1[i]
            eps = self.sigma_epsilon * max(1.0, abs(k))
            x1[i] = k + eps
            grad[i] = (self.sigma(x1, p) - sigma0) / eps
            x1[i] = k
        return grad

    def _initial_borders(self, x: Array) -> None:
        """borders from the singular vectors of the smallest singular value"""
        U, p1 = x[:self.nshoot], x[self.nshoot]
        _, transfer = self.shooting.evolve_sections_with_jacobian(U, p1)
        A = self.shooting.linear_operator(transfer, closure=self.closure(x))
        left, _, right = scipy.linalg.svd(A)
        #: right bordering vector
        self.c = right[-1].conj()
        #: left bordering vector
        self.b = left[:, -1]

    def update_bordering(self, x: Array, p: float) -> None:
        """set the borders to the current normalized null vectors"""
        v, w, _ = self.bordered_solutions(x, p)
        self.c = v / np.linalg.norm(v)
        self.b = w / np.linalg.norm(w)


class PeriodDoublingProblem(CycleBifurcationProblem):
    """
    Minimally augmented shooting problem for the continuation of period-doubling
    points. The unknowns are x = (U, p1), the residuals read [G(U, p1, p2); sigma],
    where sigma vanishes if the monodromy matrix has the multiplier -1.
    """

    def __init__(self, shooting: ShootingProblem, special_point: SpecialPoint,
                 lens2: str | ParameterLens) -> None:
        super().__init__(shooting, special_point, lens2)
        self._x0 = np.append(special_point.u, special_point.p)
        self._initial_borders(self._x0)
        self.c, self.b = self.c.real, self.b.real
        self.bordered_solutions(self._x0, self._p0)

    @property
    def x0(self) -> Array:
        return self._x0

    def closure(self, x: Array) -> complex:
        return -1.0

    def residual(self, x: Array, p: float) -> Array:
        U, p1 = x[:self.nshoot], x[self.nshoot]
        return np.append(self.shooting_at(p).residual(U, p1), np.real(self.sigma(x, p)))

    def jacobian(self, x: Array, p: float) -> Array:
        U, p1 = x[:self.nshoot], x[self.nshoot]
        shooting = self.shooting_at(p)
        top = np.hstack((shooting.jacobian(U, p1), shooting.dp(U, p1).reshape((-1, 1))))
        return np.vstack((top, self.sigma_gradient(x, p).real))

    def codim2_test_functions(self, x: Array, p: float,
                              eigenvalues: ComplexArray | None) -> dict[str, float]:
        """foldFlip: the product of mu - 1 over the other non-trivial multipliers mu"""
        if eigenvalues is None:
            return {}
        multipliers = self.noncritical_multipliers(eigenvalues, [-1.0])
        return {"foldFlip": float(np.prod(multipliers - 1).real)}


class NeimarkSackerProblem(CycleBifurcationProblem):
    """
    Minimally augmented shooting problem for the continuation of Neimark-Sacker
    points. The unknowns are x = (U, p1, theta), the residuals read
    [G(U, p1, p2); Re sigma; Im sigma], where sigma vanishes if the monodromy
    matrix has the multiplier exp(i theta).
    """

    nextra = 2

    def __init__(self, shooting: ShootingProblem, special_point: SpecialPoint,
                 lens2: str | ParameterLens, theta: float | None = None) -> None:
        super().__init__(shooting, special_point, lens2)
        if theta is None:
            if special_point.omega is None:
                raise ValueError("The rotation angle theta of the Neimark-Sacker point is unknown")
            theta = special_point.omega
        self._x0 = np.concatenate((special_point.u, [special_point.p, abs(theta)]))
        self._initial_borders(self._x0)
        self.bordered_solutions(self._x0, self._p0)

    @property
    def x0(self) -> Array:
        return self._x0

    def closure(self, x: Array) -> complex:
        return np.exp(1j * x[-1])

    def residual(self, x: Array, p: float) -> Array:
        U, p1 = x[:self.nshoot], x[self.nshoot]
        sigma = self.sigma(x, p)
        return np.concatenate((self.shooting_at(p).residual(U, p1), [sigma.real, sigma.imag]))

    def jacobian(self, x: Array, p: float) -> Array:
        U, p1 = x[:self.nshoot], x[self.nshoot]
        shooting = self.shooting_at(p)
        top = np.hstack((shooting.jacobian(U, p1), shooting.dp(U, p1).reshape((-1, 1)),
                         np.zeros((self.nshoot, 1))))
        grad = self.sigma_gradient(x, p)
        return np.vstack((top, grad.real, grad.imag))

    def codim2_test_functions(self, x: Array, p: float,
                              eigenvalues: ComplexArray | None) -> dict[str, float]:
        """
        foldNS: the product of mu - 1 over the other non-trivial multipliers mu,
        flipNS: the product of mu + 1 over the same multipliers
        """
        if eigenvalues is None:
            return {}
        theta = x[-1]
        multipliers = self.noncritical_multipliers(eigenvalues, [np.exp(1j * theta), np.exp(-1j * theta)])
        return {
            "foldNS": float(np.prod(multipliers - 1).real),
            "flipNS": float(np.prod(multipliers + 1).real),
        }


def continuation_pd(
    shooting: ShootingProblem,
    branch: Branch,
    special_point: SpecialPoint | int,
    lens2: str | ParameterLens,
    settings: ContinuationSettings | None = None,
    bothside: bool = False,
    callback: Callable[[BranchPoint], Any] | None = None,
    stop: Callable[[BranchPoint], bool] | None = None,
    **kwargs: Any,
) -> Branch:
    """
    Continue a period-doubling point of a branch of periodic orbits in two parameters.
    The branch must be computed with a ShootingProblem.
    """
    sp = branch.special_points[special_point] if isinstance(special_point, int) else special_point
    if sp.kind != "pd":
        raise ValueError(f"Expected a period-doubling point, got '{sp.kind}'")
    pd_problem = PeriodDoublingProblem(shooting, sp, lens2)
    return continuation(pd_problem, settings, bothside=bothside, callback=callback, stop=stop, **kwargs)


def continuation_ns(
    shooting: ShootingProblem,
    branch: Branch,
    special_point: SpecialPoint | int,
    lens2: str | ParameterLens,
    settings: ContinuationSettings | None = None,
    theta: float | None = None,
    bothside: bool = False,
    callback: Callable[[BranchPoint], Any] | None = None,
    stop: Callable[[BranchPoint], bool] | None = None,
    **kwargs: Any,
) -> Branch:
    """
    Continue a Neimark-Sacker point of a branch of periodic orbits in two parameters.
    The branch must be computed with a ShootingProblem. The unknowns of the resulting
    branch hold the rotation angle theta of the critical multipliers as last entry.
    """
    sp = branch.special_points[special_point] if isinstance(special_point, int) else special_point
    if sp.kind != "ns":
        raise ValueError(f"Expected a Neimark-Sacker point, got '{sp.kind}'")
    ns_problem = NeimarkSackerProblem(shooting, sp, lens2, theta=theta)
    return continuation(ns_problem, settings, bothside=bothside, callback=callback, stop=stop, **kwargs)
