"""Linear solvers, eigensolvers and the Newton corrector."""

from __future__ import annotations

import warnings
from collections.abc import Callable
from typing import NamedTuple

import numpy as np
import scipy.linalg
import scipy.sparse as sp
import scipy.sparse.linalg

from .errors import NonConvergence, SingularJacobian
from .types import Array, ComplexArray, Matrix


class LinearSolver:
    """
    The linear oracle: solves A*x = b for dense or sparse operators A.
    Raises SingularJacobian if the operator is not invertible.
    """

    def __init__(self) -> None:
        #: convert dense matrices to sparse ones before solving?
        self.use_sparse_matrices = False
        #: how many linear solves were done with this solver
        self.nsolves = 0

    def solve(self, A: Matrix, b: Array) -> Array:
        """Solve the linear system A*x = b for x and return x"""
        self.nsolves += 1
        # if desired, convert A to sparse matrix
        if self.use_sparse_matrices and not sp.issparse(A):
            A = sp.csc_matrix(A)
        try:
            if sp.issparse(A):
                # spsolve only warns on exactly singular matrices, make it an error
                with warnings.catch_warnings():
                    warnings.simplefilter("error", scipy.sparse.linalg.MatrixRankWarning)
                    x = scipy.sparse.linalg.spsolve(sp.csc_matrix(A), b)
            else:
                x = np.linalg.solve(A, b)
        except (np.linalg.LinAlgError, scipy.sparse.linalg.MatrixRankWarning) as err:
            raise SingularJacobian(f"Linear solve failed: {err}") from err
        if not np.all(np.isfinite(x)):
            raise SingularJacobian("Linear solve produced non-finite values, operator is singular!")
        return np.asarray(x)


def bordered_solve(
    A: Matrix,
    b: Array,
    c: Array,
    d: complex,
    f: Array,
    g: complex,
    solver: LinearSolver | None = None,
) -> tuple[Array, complex]:
    r"""
    Solve the bordered linear system

        / A    b \ / x \   / f \
        |        | |   | = |   |
        \ c^H  d / \ s /   \ g /

    for x and the scalar s. Complex borders are supported, e.g. for
    the shifted Jacobian (J - i*omega*I) of Hopf points.
    """
    if solver is None:
        solver = LinearSolver()
    n = b.size
    is_complex = any(np.iscomplexobj(x) for x in (A, b, c, d, f, g))
    dtype = np.complex128 if is_complex else np.float64
    if sp.issparse(A):
        M = sp.bmat([[A, sp.csr_matrix(b.reshape((n, 1)))],
                     [sp.csr_matrix(np.conj(c).reshape((1, n))), sp.csr_matrix(np.array([[d]]))]],
                    format="csc").astype(dtype)
    else:
        M = np.block([[np.asarray(A), b.reshape((n, 1))],
                      [np.conj(c).reshape((1, n)), np.array([[d]])]]).astype(dtype)
    rhs = np.append(f, g).astype(dtype)
    sol = solver.solve(M, rhs)
    return sol[:n], sol[n]


class NewtonResult(NamedTuple):
    """The outcome of a Newton solve"""
    #: the (approximate) root
    u: Array
    #: did the iteration meet the tolerance?
    converged: bool
    #: number of iterations taken
    iterations: int
    #: norm of the residuals at u
    residual: float


class NewtonSolver:
    """
    A 'text book' Newton solver, used as the corrector in continuation.

    Each iteration solves J(u_k) du = -f(u_k) with the linear oracle and updates
    u_{k+1} = u_k + damping * du. With line_search enabled, the damping factor is
    halved until the norm of the residuals decreases.
    """

    def __init__(self) -> None:
        #: maximum number of steps during solve
        self.max_iterations = 25
        #: absolute convergence tolerance for norm or residuals
        self.convergence_tolerance = 1e-10
        #: fixed damping factor of the Newton update
        self.damping = 1.0
        #: use a backtracking line search on the damping factor?
        self.line_search = False
        #: lower bound for the damping in the line search
        self.min_damping = 1e-4
        #: throw a NonConvergence error if the solver did not converge?
        self.raise_on_failure = True
        #: how verbose should the solving be? 0 = quiet, larger numbers = print more details
        self.verbosity = 0
        #: the linear oracle
        self.linear_solver = LinearSolver()
        # internal storage for the number of iterations taken during last solve
        self._iteration_count: int | None = None

    @property
    def niterations(self) -> int | None:
        """access to the number of iterations taken in the last Newton solve"""
        return self._iteration_count

    def norm(self, residuals: Array) -> float:
        """the norm used for checking the residuals for convergence"""
        if residuals.size == 0:
            return 0.0
        return float(np.max(np.abs(residuals)))

    def log(self, *args, **kwargs) -> None:
        """print() wrapper that only prints if verbosity is switched on"""
        if self.verbosity > 0:
            print(*args, **kwargs)

    def solve(self, f: Callable[[Array], Array], u0: Array,
              jac: Callable[[Array], Matrix]) -> NewtonResult:
        """solve the system f(u) = 0 with the initial guess u0 and the Jacobian jac(u)"""
        self._iteration_count = 0
        u = np.array(u0, dtype=np.result_type(u0, np.float64), copy=True)
        res = f(u)
        err = self.norm(res)
        while err >= self.convergence_tolerance and self._iteration_count < self.max_iterations:
            # classical Newton step
            try:
                du = self.linear_solver.solve(jac(u), -res)
            except SingularJacobian as sj:
                raise SingularJacobian(
                    f"Singular Jacobian in Newton step #{self._iteration_count + 1}", u=u) from sj
            damping = self.damping
            u_new = u + damping * du
            res_new = f(u_new)
            err_new = self.norm(res_new)
            # optionally backtrack until the residuals decrease
            if self.line_search:
                while not err_new < err and damping > self.min_damping:
                    damping /= 2
                    u_new = u + damping * du
                    res_new = f(u_new)
                    err_new = self.norm(res_new)
            u, res, err = u_new, res_new, err_new
            self._iteration_count += 1
            if self.verbosity > 1:
                print(f"Newton step #{self._iteration_count}, max. residuals: {err:.2e}, damping: {damping:.2e}")
            if not np.isfinite(err):
                raise SingularJacobian("Newton iteration diverged to non-finite values", u=u)
        converged = err < self.convergence_tolerance
        if converged:
            self.log("NewtonSolver converged after", self._iteration_count, "iterations, error:", err)
        elif self.raise_on_failure:
            self.throw_no_convergence_error(u, err)
        return NewtonResult(u, converged, self._iteration_count, err)

    def throw_no_convergence_error(self, u: Array | None = None, res: float | None = None) -> None:
        """throw an error when the solver failed to converge"""
        msg = f"{type(self).__name__} did not converge"
        if self.niterations is not None:
            msg += f" after {self.niterations} iterations"
        msg += "!"
        if res is not None:
            msg += f" Max. residuals: {res:.2e}"
        raise NonConvergence(msg, u=u, residual=res, iterations=self.niterations)


class EigenSolver:
    """
    The eigen oracle, a wrapper to scipy's direct eigensolver and to
    the iterative eigensolver ARPACK, that finds eigenvalues and
    eigenvectors of an eigenproblem.
    """

    def __init__(self) -> None:
        #: The shift used for the shift-invert method in the iterative eigensolver.
        #: If shift != None, the eigensolver will find the eigenvalues near the
        #: value of the shift first
        self.shift = 0.0
        #: results of the latest eigenvalue computation
        self.latest_eigenvalues: ComplexArray | None = None
        #: results of the latest eigenvector computation
        self.latest_eigenvectors: ComplexArray | None = None
        #: convergence tolerance of the iterative eigensolver
        self.tol = 1e-10
        #: problems with less unknowns are always solved with the direct solver
        self.direct_solver_threshold = 200

    def solve(self, A: Matrix, k: int | None = None,
              M: Matrix | None = None) -> tuple[ComplexArray, ComplexArray]:
        """
        Solve the eigenproblem A*x = v*x for the eigenvalues v and the eigenvectors x.

        If an integer `k` is given, only k eigenvalues are computed: the k with the
        largest real part from the direct solver, the k closest to the shift from
        ARPACK in shift-invert mode for large sparse problems. Results are sorted by
        decreasing real part and eigenvectors are returned row-wise:
        eigenvectors[i] belongs to eigenvalues[i].

        If a mass matrix `M` is given, the generalized eigenvalue A*x = v*M*x will be solved.
        """
        N = A.shape[0]
        if k is None or N <= self.direct_solver_threshold or k >= N - 1:
            # direct eigensolver for all eigenvalues
            A = A.toarray() if sp.issparse(A) else np.asarray(A)
            M = M.toarray() if sp.issparse(M) else M
            eigenvalues, eigenvectors = scipy.linalg.eig(A, M)
            eigenvectors = eigenvectors.T
            if k is not None:
                # keep the k most unstable eigenvalues
                idx = np.argsort(-eigenvalues.real, kind="stable")[:k]
                eigenvalues, eigenvectors = eigenvalues[idx], eigenvectors[idx]
        else:
            # iterative eigensolver (Arnoldi method) in shift-invert mode.
            # v0 is fixed to make the result deterministic
            eigenvalues, eigenvectors = scipy.sparse.linalg.eigs(
                A, k=k, M=M, sigma=self.shift, which="LM", tol=self.tol, v0=np.ones(N))
            eigenvectors = eigenvectors.T
        # filter infinite eigenvalues and sort by largest real part
        finite = np.isfinite(eigenvalues)
        eigenvalues, eigenvectors = eigenvalues[finite], eigenvectors[finite]
        idx = np.lexsort((-eigenvalues.imag, -eigenvalues.real))
        self.latest_eigenvalues = eigenvalues[idx].astype(complex)
        self.latest_eigenvectors = eigenvectors[idx].astype(complex)
        return (self.latest_eigenvalues, self.latest_eigenvectors)
