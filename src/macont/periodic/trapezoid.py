"""Periodic orbits with the implicit trapezoidal rule on a periodic time mesh."""

from __future__ import annotations

from collections.abc import Callable

import numpy as np
import scipy.sparse as sp

from macont.core.problem import BifurcationProblem
from macont.core.types import Array, Matrix, RealArray

from .base import PeriodicOrbit, PeriodicOrbitProblem


class PeriodicOrbitTrapProblem(PeriodicOrbitProblem):
    """
    Periodic orbit problem that uses an implicit time-stepping with the
    trapezoidal rule on a uniform periodic time-mesh of (unknown) period length T.
    The unknowns are the states u_i at the M points in (normalized) time
    s_i = i / M and the period T:

        u_{i+1} - u_i - h T / 2 (F(u_i) + F(u_{i+1})) = 0,   u_M = u_0,

    with h = 1 / M, complemented by the integral phase condition
    sum_i <u_i - uref_i, uref'_i> h = 0.
    """

    def __init__(self, problem: BifurcationProblem, M: int = 100) -> None:
        super().__init__(problem)
        if M < 3:
            raise ValueError(f"At least 3 points in time are required, got M = {M}")
        #: the number of points in time
        self.M = M
        #: the reference orbit of the phase condition (shape (M, n))
        self.uref: Array | None = None
        #: the time derivative of the reference orbit (shape (M, n))
        self.uref_dot: Array | None = None

    @property
    def h(self) -> float:
        """the (normalized) time step"""
        return 1.0 / self.M

    @property
    def t(self) -> RealArray:
        """the (normalized) temporal mesh"""
        return np.arange(self.M) * self.h

    def u_orbit(self, x: Array) -> Array:
        """The unknowns in separate arrays for each point in time, shape (M, n)"""
        return x[:-1].reshape((self.M, self.n))

    def discretize(self, orbit: Callable[[RealArray], Array], T: float) -> Array:
        u = np.asarray(orbit(self.t), dtype=float)
        return np.append(u.T.ravel(), T)

    def get_orbit(self, x: Array, p: float) -> PeriodicOrbit:
        T = self.get_period(x, p)
        u = self.u_orbit(x)
        # close the orbit
        u = np.vstack((u, u[:1])).T
        return PeriodicOrbit(np.linspace(0, T, self.M + 1), u)

    def update_section(self, x: Array, p: float) -> None:
        """take the given orbit as the reference of the phase condition"""
        self.uref = self.u_orbit(x).copy()
        self.uref_dot = np.array([self.vector_field(u, p) for u in self.uref])

    def residual(self, x: Array, p: float) -> Array:
        """Calculate the residuals of the discretized orbit and the phase condition"""
        if self.uref is None or self.uref_dot is None:
            raise self.no_reference_error()
        T = x[-1]
        u = self.u_orbit(x)
        f = np.array([self.vector_field(ui, p) for ui in u])
        # shifted copies: u_{i+1}, F(u_{i+1})
        u_next = np.roll(u, -1, axis=0)
        f_next = np.roll(f, -1, axis=0)
        res = u_next - u - self.h * T / 2 * (f + f_next)
        phase = np.sum((u - self.uref) * self.uref_dot) * self.h
        return np.append(res.ravel(), phase)

    def jacobians(self, x: Array, p: float) -> list[Matrix]:
        """the Jacobians of the vector field at every point in time"""
        return [self.problem.jacobian(ui, p) for ui in self.u_orbit(x)]

    def jacobian(self, x: Array, p: float) -> Matrix:
        """Calculate the sparse Jacobian of the residuals"""
        if self.uref_dot is None:
            raise self.no_reference_error()
        M, n, h = self.M, self.n, self.h
        T = x[-1]
        u = self.u_orbit(x)
        f = np.array([self.vector_field(ui, p) for ui in u])
        # block diagonal of the Jacobians J(u_i)
        D = sp.block_diag([sp.csr_matrix(J) for J in self.jacobians(x, p)], format="csr")
        Id = sp.eye(M * n, format="csr")
        # cyclic shift u_i -> u_{i+1}
        S = sp.kron(sp.diags([np.ones(M - 1), np.ones(1)], [1, -(M - 1)], shape=(M, M)), sp.eye(n))
        # The different contributions to the jacobian: ((#1, #2), (#3, #4))
        # 1.: bulk equations du
        d_bulk_du = S @ (Id - h * T / 2 * D) - (Id + h * T / 2 * D)
        # 2.: bulk equations dT
        d_bulk_dT = -h / 2 * (f + np.roll(f, -1, axis=0)).reshape((-1, 1))
        # 3.: phase condition du
        d_phase_du = (self.uref_dot * h).reshape((1, -1))
        # 4.: phase condition dT
        d_phase_dT = np.zeros((1, 1))
        return sp.bmat([[d_bulk_du, sp.csr_matrix(d_bulk_dT)],
                        [sp.csr_matrix(d_phase_du), sp.csr_matrix(d_phase_dT)]], format="csr")

    def monodromy(self, x: Array, p: float) -> Array:
        """
        Calculate the monodromy matrix as the product of the transfer matrices
        (I - h T / 2 J_{i+1})^-1 (I + h T / 2 J_i) of the time steps.
        """
        T = x[-1]
        n = self.n
        jacs = [J.toarray() if sp.issparse(J) else np.asarray(J) for J in self.jacobians(x, p)]
        Id = np.eye(n)
        a = self.h * T / 2
        mon_mat = Id
        for i in range(self.M):
            J_next = jacs[(i + 1) % self.M]
            transfer = np.linalg.solve(Id - a * J_next, Id + a * jacs[i])
            mon_mat = transfer @ mon_mat
        return mon_mat
