"""Periodic orbits with orthogonal collocation on a (non-uniform) periodic mesh."""

from __future__ import annotations

from collections.abc import Callable

import numdifftools.fornberg as fornberg
import numpy as np
import scipy.sparse as sp

from macont.core.problem import BifurcationProblem
from macont.core.types import Array, RealArray

from .base import PeriodicOrbit, PeriodicOrbitProblem


def lagrange_basis(nodes: RealArray, z: RealArray) -> RealArray:
    """
    Values of the Lagrange polynomials of the given nodes at the points z,
    L[l, k] = L_k(z_l)
    """
    z = np.atleast_1d(z)
    L = np.ones((z.size, nodes.size))
    for k, xk in enumerate(nodes):
        for i, xi in enumerate(nodes):
            if i != k:
                L[:, k] *= (z - xi) / (xk - xi)
    return L


class PeriodicOrbitOCollProblem(PeriodicOrbitProblem):
    """
    Periodic orbit problem with orthogonal collocation. The normalized period
    [0, 1] is divided into Ntst mesh intervals. On each interval, the orbit is
    a polynomial of degree m through m+1 equally spaced nodes (neighboring
    intervals share their end nodes, the last one closes into the first). The
    differential equation u' = T F(u) is imposed at the m Gauss-Legendre points
    of every interval. The phase condition is the integral condition
    int_0^1 <u - uref, uref'> ds = 0, evaluated with Gauss quadrature.
    """

    def __init__(self, problem: BifurcationProblem, Ntst: int = 20, m: int = 4) -> None:
        super().__init__(problem)
        if Ntst < 1 or m < 1:
            raise ValueError(f"Invalid collocation discretization Ntst = {Ntst}, m = {m}")
        #: number of mesh intervals
        self.Ntst = Ntst
        #: degree of the collocation polynomials
        self.m = m
        #: the mesh in normalized time, starts at 0 and ends at 1
        self.mesh = np.linspace(0, 1, Ntst + 1)
        #: the local nodes of the polynomials in an interval
        self.nodes = np.linspace(0, 1, m + 1)
        # Gauss-Legendre points and weights on [0, 1]
        z, w = np.polynomial.legendre.leggauss(m)
        #: the collocation points in an interval
        self.gauss_points = (z + 1) / 2
        #: the quadrature weights of the collocation points
        self.gauss_weights = w / 2
        #: values of the Lagrange polynomials at the collocation points
        self.L = lagrange_basis(self.nodes, self.gauss_points)
        #: derivatives of the Lagrange polynomials at the collocation points
        self.D = np.array([fornberg.fd_weights(x=self.nodes, x0=z_l, n=1) for z_l in self.gauss_points])
        #: the reference orbit of the phase condition (shape (Ntst * m, n))
        self.uref: Array | None = None

    @property
    def npoints(self) -> int:
        """total number of (distinct) nodes"""
        return self.Ntst * self.m

    @property
    def dt(self) -> RealArray:
        """lengths of the mesh intervals"""
        return np.diff(self.mesh)

    @property
    def t(self) -> RealArray:
        """the nodes in normalized time"""
        return self.mesh_nodes(self.mesh)

    def mesh_nodes(self, mesh: RealArray) -> RealArray:
        """the nodes in normalized time on the given mesh"""
        return (mesh[:-1, np.newaxis] + np.outer(np.diff(mesh), self.nodes[:-1])).ravel()

    def get_mesh(self) -> RealArray:
        return self.mesh.copy()

    def u_orbit(self, x: Array) -> Array:
        """The unknowns in separate arrays for each node, shape (Ntst * m, n)"""
        return x[:-1].reshape((self.npoints, self.n))

    def interval_nodes(self, j: int) -> np.ndarray:
        """indices of the m+1 nodes of interval j"""
        return (j * self.m + np.arange(self.m + 1)) % self.npoints

    def discretize(self, orbit: Callable[[RealArray], Array], T: float) -> Array:
        u = np.asarray(orbit(self.t), dtype=float)
        return np.append(u.T.ravel(), T)

    def get_orbit(self, x: Array, p: float, mesh: RealArray | None = None) -> PeriodicOrbit:
        """
        The orbit at its nodes. Unknowns that were recorded before a mesh adaption
        must be read with their own mesh, e.g. the mesh of their branch point.
        """
        mesh = self.mesh if mesh is None else np.asarray(mesh)
        T = self.get_period(x, p)
        u = self.u_orbit(x)
        u = np.vstack((u, u[:1])).T
        return PeriodicOrbit(T * np.append(self.mesh_nodes(mesh), 1.0), u)

    def interpolate(self, x: Array, s: RealArray, mesh: RealArray | None = None) -> Array:
        """Evaluate the collocation polynomials at the normalized times s, shape (len(s), n)"""
        mesh = self.mesh if mesh is None else np.asarray(mesh)
        dt = np.diff(mesh)
        s = np.mod(np.atleast_1d(s), 1.0)
        u = self.u_orbit(x)
        j = np.clip(np.searchsorted(mesh, s, side="right") - 1, 0, self.Ntst - 1)
        result = np.zeros((s.size, self.n))
        for i, (si, ji) in enumerate(zip(s, j)):
            local = (si - mesh[ji]) / dt[ji]
            result[i] = lagrange_basis(self.nodes, local)[0] @ u[self.interval_nodes(ji)]
        return result

    def update_section(self, x: Array, p: float) -> None:
        """take the given orbit as the reference of the phase condition"""
        self.uref = self.u_orbit(x).copy()

    def _reference(self) -> Array:
        if self.uref is None:
            raise self.no_reference_error()
        return self.uref

    def _reference_derivative(self) -> list[Array]:
        """derivative of the reference orbit at the collocation points, per interval"""
        uref = self._reference()
        return [self.D @ uref[self.interval_nodes(j)] / self.dt[j] for j in range(self.Ntst)]

    def residual(self, x: Array, p: float) -> Array:
        T = x[-1]
        u = self.u_orbit(x)
        uref_dot = self._reference_derivative()
        uref = self._reference()
        res = np.zeros((self.Ntst, self.m, self.n))
        phase = 0.0
        for j in range(self.Ntst):
            uj = u[self.interval_nodes(j)]
            # the polynomial and its derivative at the collocation points
            u_col = self.L @ uj
            du_col = self.D @ uj / self.dt[j]
            f_col = np.array([self.vector_field(ui, p) for ui in u_col])
            res[j] = du_col - T * f_col
            # integral phase condition with Gauss quadrature
            uref_col = self.L @ uref[self.interval_nodes(j)]
            phase += self.dt[j] * np.sum(self.gauss_weights[:, np.newaxis] * (u_col - uref_col) * uref_dot[j])
        return np.append(res.ravel(), phase)

    def _interval_blocks(self, x: Array, p: float, j: int) -> tuple[list[list[Array]], Array]:
        """
        The linearization of the collocation equations of interval j:
        blocks[l][k] = d(eq_l) / d(u_k) and the derivative d(eq) / dT
        """
        T = x[-1]
        uj = self.u_orbit(x)[self.interval_nodes(j)]
        u_col = self.L @ uj
        Id = np.eye(self.n)
        blocks = []
        dT = np.zeros((self.m, self.n))
        for l, ul in enumerate(u_col):
            J = self.problem.jacobian(ul, p)
            J = J.toarray() if sp.issparse(J) else np.asarray(J)
            blocks.append([self.D[l, k] / self.dt[j] * Id - T * self.L[l, k] * J for k in range(self.m + 1)])
            dT[l] = -self.vector_field(ul, p)
        return blocks, dT

    def jacobian(self, x: Array, p: float) -> sp.csr_matrix:
        n, m = self.n, self.m
        N = self.npoints * n
        uref_dot = self._reference_derivative()
        rows, cols, vals = [], [], []

        def add(row0: int, col0: int, block: Array) -> None:
            r, c = np.indices(block.shape)
            rows.append(row0 + r.ravel())
            cols.append(col0 + c.ravel())
            vals.append(block.ravel())

        for j in range(self.Ntst):
            blocks, dT = self._interval_blocks(x, p, j)
            node_idx = self.interval_nodes(j)
            for l in range(m):
                row0 = (j * m + l) * n
                for k in range(m + 1):
                    add(row0, node_idx[k] * n, blocks[l][k])
                add(row0, N, dT[l].reshape((n, 1)))
            # phase condition
            for k in range(m + 1):
                weight = self.dt[j] * (self.gauss_weights * self.L[:, k]) @ uref_dot[j]
                add(N, node_idx[k] * n, weight.reshape((1, n)))
        return sp.csr_matrix((np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                             shape=(N + 1, N + 1))

    def monodromy(self, x: Array, p: float) -> Array:
        """
        Calculate the monodromy matrix by condensation: on every interval the
        linearized collocation equations are solved for the end node in terms of
        the first node, the monodromy is the product of these transfer matrices.
        """
        n, m = self.n, self.m
        mon_mat = np.eye(n)
        for j in range(self.Ntst):
            blocks, _ = self._interval_blocks(x, p, j)
            A = np.block(blocks)
            # [A_first | A_rest] (u_0, u_1, ..., u_m) = 0
            A_first, A_rest = A[:, :n], A[:, n:]
            transfer = -np.linalg.solve(A_rest, A_first)[(m - 1) * n:]
            mon_mat = transfer @ mon_mat
        return mon_mat

    def adapt_mesh(self, x: Array, p: float) -> Array:
        """
        Redistribute the mesh, such that every interval holds the same share of the
        arclength of the orbit in (s, u)-space. The number of intervals is unchanged.
        Returns the unknowns interpolated onto the new mesh.
        """
        u = self.u_orbit(x)
        s = np.append(self.t, 1.0)
        u_closed = np.vstack((u, u[:1]))
        # the error monitor: normalized arclength
        T = x[-1]
        ds = np.sqrt(np.diff(s) ** 2 + np.sum(np.diff(u_closed, axis=0) ** 2, axis=1))
        arclength = np.append(0, np.cumsum(ds))
        arclength /= arclength[-1]
        new_mesh = np.interp(np.linspace(0, 1, self.Ntst + 1), arclength, s)
        new_mesh[0], new_mesh[-1] = 0.0, 1.0
        # interpolate the old solution onto the new nodes
        old_x = x.copy()
        new_u = self.interpolate(old_x, self.mesh_nodes(new_mesh))
        self.mesh = new_mesh
        new_x = np.append(new_u.ravel(), T)
        # the reference orbit lives on the mesh
        self.update_section(new_x, p)
        return new_x
