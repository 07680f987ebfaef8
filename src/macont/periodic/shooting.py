"""Periodic orbits with (multiple) shooting on the flow of the vector field."""

from __future__ import annotations

import copy
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import scipy.integrate
import scipy.sparse as sp

from macont.core.errors import IntegrationDiverged
from macont.core.problem import BifurcationProblem
from macont.core.types import Array, RealArray

from .base import PeriodicOrbit, PeriodicOrbitProblem


class Flow:
    """
    The flow map of the vector field of a problem, phi(x0, t), integrated with
    scipy's solve_ivp. The derivative dphi/dx0 is obtained from the variational
    equations. Failed integrations raise IntegrationDiverged.
    """

    def __init__(self, problem: BifurcationProblem, method: str = "DOP853",
                 rtol: float = 1e-11, atol: float = 1e-12) -> None:
        #: the problem that defines the vector field
        self.problem = problem
        #: the integration method of solve_ivp
        self.method = method
        #: relative and absolute tolerance of the integrator
        self.rtol = rtol
        self.atol = atol

    def _jacobian(self, x: Array, p: float) -> Array:
        J = self.problem.jacobian(x, p)
        return J.toarray() if sp.issparse(J) else np.asarray(J)

    def _integrate(self, rhs: Callable[[float, Array], Array], y0: Array, t: float,
                   t_eval: RealArray | None = None):
        sol = scipy.integrate.solve_ivp(rhs, (0.0, t), y0, method=self.method, t_eval=t_eval,
                                        rtol=self.rtol, atol=self.atol)
        if not sol.success or not np.all(np.isfinite(sol.y)):
            raise IntegrationDiverged(f"Integration of the flow failed: {sol.message}", x0=y0, t=t)
        return sol

    def evolve(self, x0: Array, t: float, p: float) -> Array:
        """the state phi(x0, t)"""
        sol = self._integrate(lambda _, x: self.problem.residual(x, p), x0, t)
        return sol.y[:, -1]

    def evolve_with_jacobian(self, x0: Array, t: float, p: float) -> tuple[Array, Array]:
        """the state phi(x0, t) and the derivative dphi/dx0"""
        n = x0.size

        def rhs(_: float, y: Array) -> Array:
            x, Phi = y[:n], y[n:].reshape((n, n))
            return np.append(self.problem.residual(x, p), self._jacobian(x, p) @ Phi)

        y0 = np.append(x0, np.eye(n).ravel())
        sol = self._integrate(rhs, y0, t)
        y = sol.y[:, -1]
        return y[:n], y[n:].reshape((n, n))

    def trajectory(self, x0: Array, t: RealArray, p: float) -> Array:
        """the states phi(x0, t_i) at the given times, shape (n, len(t))"""
        sol = self._integrate(lambda _, x: self.problem.residual(x, p), x0, t[-1], t_eval=t)
        return sol.y


class ShootingProblem(PeriodicOrbitProblem):
    """
    Periodic orbit problem with (multiple) shooting. The unknowns are the states
    x_i at the beginning of the M sections and the period T. The residuals read
    phi(x_i, T / M) - x_{i+1} for all sections, where the last section closes into
    the first, complemented by the section phase condition <x_1 - x_ref, F(x_ref)> = 0.
    The sections are independent and may be integrated in parallel.
    """

    def __init__(self, problem: BifurcationProblem, M: int = 1, flow: Flow | None = None,
                 parallel: bool = False, max_workers: int | None = None) -> None:
        super().__init__(problem)
        if M < 1:
            raise ValueError(f"At least one shooting section is required, got M = {M}")
        #: the number of shooting sections
        self.M = M
        #: the flow map oracle
        self.flow = Flow(problem) if flow is None else flow
        #: integrate the sections on a thread pool?
        self.parallel = parallel
        #: the maximum number of worker threads
        self.max_workers = max_workers
        #: number of samples per section for get_orbit
        self.samples_per_section = 50
        #: reference point of the phase condition and the vector field at this point
        self.xref: Array | None = None
        self.fref: Array | None = None

    def with_problem(self, problem: BifurcationProblem) -> ShootingProblem:
        """a copy of the shooting problem for another (reparametrized) problem"""
        new = copy.copy(self)
        new.problem = problem
        new.flow = copy.copy(self.flow)
        new.flow.problem = problem
        return new

    def sections(self, x: Array) -> Array:
        """The section states, shape (M, n)"""
        return x[:-1].reshape((self.M, self.n))

    def discretize(self, orbit: Callable[[RealArray], Array], T: float) -> Array:
        u = np.asarray(orbit(np.arange(self.M) / self.M), dtype=float)
        return np.append(u.T.ravel(), T)

    def update_section(self, x: Array, p: float) -> None:
        """the first section state is the new reference of the phase condition"""
        self.xref = self.sections(x)[0].copy()
        self.fref = self.vector_field(self.xref, p)

    def _map_sections(self, func: Callable[[Array], object], x: Array) -> list:
        """apply func to all section states, the results are ordered by section index"""
        states = list(self.sections(x))
        if self.parallel and self.M > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                return list(executor.map(func, states))
        return [func(xi) for xi in states]

    def evolve_sections(self, x: Array, p: float) -> Array:
        """the states at the end of every section"""
        dt = x[-1] / self.M
        return np.array(self._map_sections(lambda xi: self.flow.evolve(xi, dt, p), x))

    def evolve_sections_with_jacobian(self, x: Array, p: float) -> tuple[Array, list[Array]]:
        """the states at the end of every section and the transfer matrices of the sections"""
        dt = x[-1] / self.M
        results = self._map_sections(lambda xi: self.flow.evolve_with_jacobian(xi, dt, p), x)
        return np.array([r[0] for r in results]), [r[1] for r in results]

    def residual(self, x: Array, p: float) -> Array:
        if self.xref is None or self.fref is None:
            raise self.no_reference_error()
        xs = self.sections(x)
        ends = self.evolve_sections(x, p)
        res = ends - np.roll(xs, -1, axis=0)
        phase = np.dot(xs[0] - self.xref, self.fref)
        return np.append(res.ravel(), phase)

    def linear_operator(self, transfer: list[Array], closure: complex = 1.0) -> np.ndarray:
        """
        The block-cyclic operator of the linearized shooting equations,
        with the closure block of the last section multiplied by the given factor
        """
        n, M = self.n, self.M
        dtype = complex if np.iscomplexobj(closure) else float
        A = np.zeros((n * M, n * M), dtype=dtype)
        Id = np.eye(n)
        for i in range(M):
            A[i * n:(i + 1) * n, i * n:(i + 1) * n] = transfer[i]
            j = (i + 1) % M
            factor = closure if i == M - 1 else 1.0
            A[i * n:(i + 1) * n, j * n:(j + 1) * n] -= factor * Id
        return A

    def jacobian(self, x: Array, p: float) -> Array:
        if self.fref is None:
            raise self.no_reference_error()
        n, M = self.n, self.M
        ends, transfer = self.evolve_sections_with_jacobian(x, p)
        jac = np.zeros((n * M + 1, n * M + 1))
        jac[:n * M, :n * M] = self.linear_operator(transfer)
        # derivative w.r.t. the period: d/dT phi(x_i, T / M) = F(phi) / M
        jac[:n * M, -1] = np.array([self.vector_field(e, p) for e in ends]).ravel() / M
        jac[-1, :n] = self.fref
        return jac

    def monodromy(self, x: Array, p: float) -> Array:
        """The monodromy matrix Phi_M ... Phi_1 of the sections' transfer matrices"""
        _, transfer = self.evolve_sections_with_jacobian(x, p)
        mon_mat = np.eye(self.n)
        for Phi in transfer:
            mon_mat = Phi @ mon_mat
        return mon_mat

    def get_orbit(self, x: Array, p: float) -> PeriodicOrbit:
        T = self.get_period(x, p)
        dt = T / self.M
        t_section = np.linspace(0, dt, self.samples_per_section + 1)[:-1]
        parts = self._map_sections(lambda xi: self.flow.trajectory(xi, t_section, p), x)
        t = np.append((np.arange(self.M)[:, np.newaxis] * dt + t_section).ravel(), T)
        u = np.hstack(parts + [self.sections(x)[0].reshape((-1, 1))])
        return PeriodicOrbit(t, u)
