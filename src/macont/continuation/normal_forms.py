"""
Null vectors and normal form coefficients of equilibrium bifurcations.

The formulas follow Kuznetsov, Elements of Applied Bifurcation Theory:
with A q = 0 (resp. A q = i omega q) and the adjoint vector p normalized
to <p, q> = 1, the coefficients are projections of the multilinear forms
B = d^2F/du^2 and C = d^3F/du^3 onto p.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import scipy.sparse as sp

from macont.core.solvers import LinearSolver, bordered_solve
from macont.core.types import Array, ComplexArray, Matrix

if TYPE_CHECKING:
    from macont.core.problem import BifurcationProblem


def _dense(J: Matrix) -> np.ndarray:
    return J.toarray() if sp.issparse(J) else np.asarray(J)


def fold_null_vectors(J: Matrix, v0: Array, w0: Array | None = None,
                      solver: LinearSolver | None = None) -> tuple[Array, Array]:
    """
    Right and left null vectors of a (nearly) singular Jacobian from bordered solves
    with the approximate null vectors v0, w0 as borders.
    The right null vector v is normalized to |v| = 1, the left one w to <w, v> = 1.
    """
    J = _dense(J)
    v0 = np.real(v0)
    w0 = v0 if w0 is None else np.real(w0)
    N = v0.size
    v, _ = bordered_solve(J, w0, v0, 0.0, np.zeros(N), 1.0, solver)
    w, _ = bordered_solve(J.T, v0, w0, 0.0, np.zeros(N), 1.0, solver)
    v /= np.linalg.norm(v)
    w /= np.dot(w, v)
    return v, w


def fold_normal_form(problem: BifurcationProblem, u: Array, p: float,
                     v0: Array, w0: Array | None = None) -> tuple[Array, Array, dict[str, float]]:
    """
    Null vectors and normal form coefficients of a fold, where the flow on
    the center manifold reads x' = a x^2 + b x^3. The quadratic coefficient a
    vanishes at a cusp point, b is the cusp coefficient.
    """
    J = _dense(problem.jacobian(u, p))
    v, w = fold_null_vectors(J, v0, w0)
    Bvv = problem.d2F(u, p, v, v)
    a = 0.5 * np.dot(w, Bvv)
    # second order term of the center manifold, orthogonal to w
    h2, _ = bordered_solve(J, v, w, 0.0, -(Bvv - np.dot(w, Bvv) * v), 0.0)
    b = (np.dot(w, problem.d3F(u, p, v, v, v)) + 3 * np.dot(w, problem.d2F(u, p, v, h2))) / 6
    return v, w, {"a": float(a), "b": float(b)}


def hopf_null_vectors(J: Matrix, omega: float, q0: ComplexArray,
                      p0: ComplexArray | None = None,
                      solver: LinearSolver | None = None) -> tuple[ComplexArray, ComplexArray]:
    """
    Eigenvector q with J q = i omega q (|q| = 1) and adjoint vector p with
    p^H J = i omega p^H, normalized to <p, q> = p^H q = 1.
    """
    J = _dense(J)
    N = q0.size
    p0 = q0 if p0 is None else p0
    A = J - 1j * omega * np.eye(N)
    zero = np.zeros(N, dtype=complex)
    q, _ = bordered_solve(A, p0, q0, 0.0, zero, 1.0, solver)
    pvec, _ = bordered_solve(A.conj().T, q0, p0, 0.0, zero, 1.0, solver)
    q /= np.linalg.norm(q)
    pvec /= np.conj(np.vdot(pvec, q))
    return q, pvec


def first_lyapunov_coefficient(problem: BifurcationProblem, u: Array, p: float, omega: float,
                               q: ComplexArray, pvec: ComplexArray) -> float:
    """
    The first Lyapunov coefficient l1 of a Hopf point (Kuznetsov's formula).
    l1 < 0: supercritical Hopf bifurcation, l1 > 0: subcritical.
    """
    J = _dense(problem.jacobian(u, p))
    N = u.size
    qb = np.conj(q)
    Bqqb = problem.d2F(u, p, q, qb).real
    Bqq = problem.d2F(u, p, q, q)
    h11 = np.linalg.solve(J, Bqqb)
    h20 = np.linalg.solve(2j * omega * np.eye(N) - J, Bqq)
    c = (np.vdot(pvec, problem.d3F(u, p, q, q, qb))
         - 2 * np.vdot(pvec, problem.d2F(u, p, q, h11))
         + np.vdot(pvec, problem.d2F(u, p, qb, h20)))
    return float(np.real(c) / (2 * omega))


def hopf_crossing_speed(problem: BifurcationProblem, u: Array, p: float,
                        q: ComplexArray, pvec: ComplexArray) -> float:
    """
    The speed d Re(lambda)/dp at which the critical pair crosses the imaginary axis
    along the branch of equilibria u(p), where u_p = -J^{-1} F_p.
    """
    J = _dense(problem.jacobian(u, p))
    u_p = -np.linalg.solve(J, problem.dp(u, p))
    dJq = problem.jacobian_dp_vector(u, p, q) + problem.d2F(u, p, q, u_p)
    return float(np.real(np.vdot(pvec, dJq)))


def hopf_normal_form(problem: BifurcationProblem, u: Array, p: float, omega: float,
                     q0: ComplexArray) -> tuple[ComplexArray, ComplexArray, dict[str, float]]:
    """
    Null vectors, frequency, first Lyapunov coefficient and the crossing speed
    of the critical pair at a Hopf point
    """
    J = problem.jacobian(u, p)
    q, pvec = hopf_null_vectors(J, omega, q0)
    l1 = first_lyapunov_coefficient(problem, u, p, omega, q, pvec)
    try:
        speed = hopf_crossing_speed(problem, u, p, q, pvec)
    except np.linalg.LinAlgError:
        # J is singular at a zero-Hopf point
        speed = np.nan
    return q, pvec, {"l1": l1, "omega": float(omega), "crossing_speed": speed}
