"""
Minimally augmented systems for the continuation of fold and Hopf points
in two parameters.

The singularity of the Jacobian is expressed by a scalar test function sigma
that is obtained from a bordered linear system. Solving F = 0 together with
sigma = 0 pins the bifurcation point down as a regular root, without the need
to compute the null-space in every step.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import numpy as np
import scipy.linalg
import scipy.sparse as sp

from macont.core.errors import BorderingSingular, SingularJacobian
from macont.core.problem import BifurcationProblem, ContinuationProblem, ParameterLens, as_lens
from macont.core.solution import Branch, BranchPoint, SpecialPoint
from macont.core.solvers import bordered_solve
from macont.core.types import Array, ComplexArray, Matrix, Parameters

from .bifurcations import pair_sum_product, symmetric_pair_is_complex
from .continuation import ContinuationSettings, continuation
from .normal_forms import first_lyapunov_coefficient


def _dense(J: Matrix) -> np.ndarray:
    return J.toarray() if sp.issparse(J) else np.asarray(J)


def _eigenvector(A: np.ndarray, target: complex) -> ComplexArray:
    """the eigenvector of A to the eigenvalue closest to the target"""
    eigenvalues, eigenvectors = scipy.linalg.eig(A)
    return eigenvectors[:, np.argmin(np.abs(eigenvalues - target))]


class MinimallyAugmentedProblem(ContinuationProblem):
    """
    Common base of the minimally augmented problems: the unknowns are the state u,
    the first parameter and possibly further unknowns, the continuation parameter
    is the second parameter.
    """

    codim = 2
    #: number of extra unknowns appended to the state u
    nextra = 1

    def __init__(self, problem: BifurcationProblem, special_point: SpecialPoint,
                 lens2: str | ParameterLens) -> None:
        super().__init__()
        params = special_point.params if special_point.params is not None else problem.params
        #: the original problem, with the parameters of the special point
        self.problem = problem.set(params=problem.lens.set(params, special_point.p))
        #: lens onto the second parameter, the continuation parameter of the curve
        self.lens2 = as_lens(lens2)
        self._p0 = float(self.lens2.get(self.problem.params))
        #: eigenvalues with an imaginary part larger than this are complex
        self.tol_complex = 1e-8

    @property
    def p0(self) -> float:
        return self._p0

    @property
    def parameter_name(self) -> str:
        return self.lens2.name

    def problem_at(self, p2: float) -> BifurcationProblem:
        """the original problem with the second parameter set to p2"""
        return self.problem.set(params=self.lens2.set(self.problem.params, p2))

    def split(self, x: Array) -> tuple[Array, float]:
        """split the unknowns into the state u and the first parameter"""
        n = self.problem.ndofs
        return x[:n], float(x[n])

    def params_at(self, p: float, x: Array | None = None) -> Parameters:
        params = self.problem.params
        if x is not None:
            params = self.problem.lens.set(params, self.split(x)[1])
        return self.lens2.set(params, p)

    def eigenvalues(self, x: Array, p: float, nev: int | None = None) -> tuple[ComplexArray, ComplexArray]:
        # the spectrum of the original problem along the curve
        u, p1 = self.split(x)
        return self.problem_at(p).eigenvalues(u, p1, nev)

    def norm(self, x: Array, p: float) -> float:
        u, p1 = self.split(x)
        return self.problem.norm(u, p1)


class FoldProblem(MinimallyAugmentedProblem):
    """
    Minimally augmented system for the continuation of fold points. The
    unknowns are x = (u, p1) and the residuals read [F(u, p1, p2); sigma],
    where sigma is the last component of the solution of the bordered system

        / J   w \\ / r     \\   / 0 \\
        |       | |       | = |   |
        \\ v^T 0 / \\ sigma /   \\ 1 /

    that vanishes exactly where J is singular.
    """

    def __init__(self, problem: BifurcationProblem, special_point: SpecialPoint,
                 lens2: str | ParameterLens, v: Array | None = None, w: Array | None = None) -> None:
        super().__init__(problem, special_point, lens2)
        self._x0 = np.append(special_point.u, special_point.p)
        J = _dense(self.problem.jacobian(special_point.u, special_point.p))
        # choose the borders: given vectors, null vectors of the point, or eigenvectors
        if v is None:
            v = special_point.v if special_point.v is not None else _eigenvector(J, 0.0)
        if w is None:
            w = special_point.w if special_point.w is not None else _eigenvector(J.T, 0.0)
        v, w = np.real(v), np.real(w)
        #: right bordering vector
        self.v = v / np.linalg.norm(v)
        #: left bordering vector
        self.w = w / np.linalg.norm(w)
        # check that the borders are suitable
        self.bordered_solutions(self.problem, special_point.u, special_point.p)

    @property
    def x0(self) -> Array:
        return self._x0

    def bordered_solutions(self, problem: BifurcationProblem, u: Array, p1: float) -> tuple[Array, Array, Array, float]:
        """
        Solve the bordered system and its transpose.
        Returns the Jacobian, the approximate right and left null vectors and sigma.
        """
        J = _dense(problem.jacobian(u, p1))
        N = u.size
        try:
            v, sigma = bordered_solve(J, self.w, self.v, 0.0, np.zeros(N), 1.0)
            w, _ = bordered_solve(J.T, self.v, self.w, 0.0, np.zeros(N), 1.0)
        except SingularJacobian as err:
            raise BorderingSingular(
                "The bordered matrix of the fold problem is singular, "
                "choose other bordering vectors v, w", u=u, p=p1) from err
        return J, v, w, float(np.real(sigma))

    def residual(self, x: Array, p: float) -> Array:
        u, p1 = self.split(x)
        problem = self.problem_at(p)
        _, _, _, sigma = self.bordered_solutions(problem, u, p1)
        return np.append(problem.residual(u, p1), sigma)

    def jacobian(self, x: Array, p: float) -> Matrix:
        u, p1 = self.split(x)
        problem = self.problem_at(p)
        J, v, w, _ = self.bordered_solutions(problem, u, p1)
        # derivatives of sigma: sigma_z = -w^T J_z v
        sigma_u = -problem.hessian_vector(u, p1, v).T @ w
        sigma_p = -np.dot(w, problem.jacobian_dp_vector(u, p1, v))
        return np.block([[J, problem.dp(u, p1).reshape((-1, 1))],
                         [sigma_u.reshape((1, -1)), np.array([[sigma_p]])]])

    def update_bordering(self, x: Array, p: float) -> None:
        """set the borders to the current normalized null vectors"""
        u, p1 = self.split(x)
        _, v, w, _ = self.bordered_solutions(self.problem_at(p), u, p1)
        self.v = v / np.linalg.norm(v)
        self.w = w / np.linalg.norm(w)

    def codim2_test_functions(self, x: Array, p: float,
                              eigenvalues: ComplexArray | None) -> dict[str, float]:
        """
        cusp: the quadratic normal form coefficient,
        bt: <w, v>, vanishes when the zero eigenvalue becomes double,
        zh: the product of lambda_i + lambda_j over the eigenvalues without the
        zero one, vanishes when a pair reaches the imaginary axis
        """
        u, p1 = self.split(x)
        problem = self.problem_at(p)
        _, v, w, _ = self.bordered_solutions(problem, u, p1)
        v = v / np.linalg.norm(v)
        w = w / np.linalg.norm(w)
        tests = {
            "cusp": float(np.dot(w, problem.d2F(u, p1, v, v))),
            "bt": float(np.dot(w, v)),
        }
        if eigenvalues is not None:
            tests["zh"] = pair_sum_product(self.nonzero_eigenvalues(eigenvalues))
        return tests

    def nonzero_eigenvalues(self, eigenvalues: ComplexArray) -> ComplexArray:
        """the spectrum without the eigenvalue of the fold"""
        return np.delete(eigenvalues, np.argmin(np.abs(eigenvalues)))

    def is_codim2_point(self, kind: str, x: Array, p: float, eigenvalues: ComplexArray | None) -> bool:
        # reject neutral saddles, where two real eigenvalues add up to zero
        if kind != "zh" or eigenvalues is None:
            return True
        return symmetric_pair_is_complex(self.nonzero_eigenvalues(eigenvalues), self.tol_complex)


class HopfProblem(MinimallyAugmentedProblem):
    """
    Minimally augmented system for the continuation of Hopf points. The
    unknowns are x = (u, p1, omega) and the residuals read
    [F(u, p1, p2); Re sigma; Im sigma], where sigma is the last component
    of the solution of the complex bordered system

        / J - i omega I   b \\ / r     \\   / 0 \\
        |                   | |       | = |   |
        \\ c^H             0 / \\ sigma /   \\ 1 /
    """

    nextra = 2

    def __init__(self, problem: BifurcationProblem, special_point: SpecialPoint,
                 lens2: str | ParameterLens, b: ComplexArray | None = None,
                 c: ComplexArray | None = None) -> None:
        super().__init__(problem, special_point, lens2)
        J = _dense(self.problem.jacobian(special_point.u, special_point.p))
        omega = special_point.omega
        if omega is None:
            # take the eigenvalue pair closest to the imaginary axis
            eigenvalues = scipy.linalg.eigvals(J)
            complex_ev = eigenvalues[eigenvalues.imag > self.tol_complex]
            omega = float(complex_ev[np.argmin(np.abs(complex_ev.real))].imag)
        self._x0 = np.concatenate((special_point.u, [special_point.p, abs(omega)]))
        omega = abs(omega)
        # choose the borders: given vectors, null vectors of the point, or eigenvectors
        if c is None:
            c = special_point.v if special_point.v is not None else _eigenvector(J, 1j * omega)
        if b is None:
            b = special_point.w if special_point.w is not None else _eigenvector(J.conj().T, -1j * omega)
        #: right bordering vector
        self.c = np.asarray(c, dtype=complex) / np.linalg.norm(c)
        #: left bordering vector
        self.b = np.asarray(b, dtype=complex) / np.linalg.norm(b)
        # check that the borders are suitable
        self.bordered_solutions(self.problem, special_point.u, special_point.p, omega)

    @property
    def x0(self) -> Array:
        return self._x0

    def split_hopf(self, x: Array) -> tuple[Array, float, float]:
        """split the unknowns into the state u, the first parameter and the frequency"""
        n = self.problem.ndofs
        return x[:n], float(x[n]), float(x[n + 1])

    def bordered_solutions(self, problem: BifurcationProblem, u: Array, p1: float,
                           omega: float) -> tuple[np.ndarray, ComplexArray, ComplexArray, complex]:
        """
        Solve the complex bordered system and its adjoint. Returns the Jacobian,
        the approximate eigenvector q, the adjoint vector p and sigma.
        """
        J = _dense(problem.jacobian(u, p1))
        N = u.size
        A = J - 1j * omega * np.eye(N)
        zero = np.zeros(N, dtype=complex)
        try:
            q, sigma = bordered_solve(A, self.b, self.c, 0.0, zero, 1.0)
            p, _ = bordered_solve(A.conj().T, self.c, self.b, 0.0, zero, 1.0)
        except SingularJacobian as err:
            raise BorderingSingular(
                "The bordered matrix of the Hopf problem is singular, "
                "choose other bordering vectors b, c", u=u, p=p1) from err
        return J, q, p, complex(sigma)

    def residual(self, x: Array, p: float) -> Array:
        u, p1, omega = self.split_hopf(x)
        problem = self.problem_at(p)
        _, _, _, sigma = self.bordered_solutions(problem, u, p1, omega)
        return np.concatenate((problem.residual(u, p1), [sigma.real, sigma.imag]))

    def jacobian(self, x: Array, p: float) -> Matrix:
        u, p1, omega = self.split_hopf(x)
        problem = self.problem_at(p)
        J, q, padj, _ = self.bordered_solutions(problem, u, p1, omega)
        # derivatives of sigma: sigma_z = -p^H (J - i omega I)_z q
        sigma_u = -problem.hessian_vector(u, p1, q).T @ np.conj(padj)
        sigma_p = -np.vdot(padj, problem.jacobian_dp_vector(u, p1, q))
        sigma_omega = 1j * np.vdot(padj, q)
        N = u.size
        jac = np.zeros((N + 2, N + 2))
        jac[:N, :N] = J
        jac[:N, N] = problem.dp(u, p1)
        jac[N, :N], jac[N + 1, :N] = sigma_u.real, sigma_u.imag
        jac[N, N], jac[N + 1, N] = sigma_p.real, sigma_p.imag
        jac[N, N + 1], jac[N + 1, N + 1] = sigma_omega.real, sigma_omega.imag
        return jac

    def update_bordering(self, x: Array, p: float) -> None:
        """set the borders to the current normalized eigenvector and adjoint vector"""
        u, p1, omega = self.split_hopf(x)
        _, q, padj, _ = self.bordered_solutions(self.problem_at(p), u, p1, omega)
        self.c = q / np.linalg.norm(q)
        self.b = padj / np.linalg.norm(padj)

    def codim2_test_functions(self, x: Array, p: float,
                              eigenvalues: ComplexArray | None) -> dict[str, float]:
        """
        bt: the frequency omega, vanishes when the pair becomes a double zero,
        zh: the product of the other eigenvalues, vanishes with a zero eigenvalue,
        hh: the product of lambda_i + lambda_j over the other eigenvalues,
        gh: the first Lyapunov coefficient
        """
        u, p1, omega = self.split_hopf(x)
        problem = self.problem_at(p)
        tests = {"bt": omega}
        if eigenvalues is not None:
            others = self.other_eigenvalues(eigenvalues, omega)
            tests["zh"] = float(np.prod(others).real) if others.size else np.nan
            tests["hh"] = pair_sum_product(others)
        if omega > 0:
            _, q, padj, _ = self.bordered_solutions(problem, u, p1, omega)
            q = q / np.linalg.norm(q)
            padj = padj / np.conj(np.vdot(padj, q))
            try:
                tests["gh"] = first_lyapunov_coefficient(problem, u, p1, omega, q, padj)
            except np.linalg.LinAlgError:
                # singular Jacobian, e.g. in a zero-Hopf point
                tests["gh"] = np.nan
        return tests

    def other_eigenvalues(self, eigenvalues: ComplexArray, omega: float) -> ComplexArray:
        """the spectrum without the tracked pair +-i omega"""
        i = np.argmin(np.abs(eigenvalues - 1j * omega))
        others = np.delete(eigenvalues, i)
        return np.delete(others, np.argmin(np.abs(others + 1j * omega)))

    def is_codim2_point(self, kind: str, x: Array, p: float, eigenvalues: ComplexArray | None) -> bool:
        if kind != "hh" or eigenvalues is None:
            return True
        _, _, omega = self.split_hopf(x)
        return symmetric_pair_is_complex(self.other_eigenvalues(eigenvalues, omega), self.tol_complex)

    def split(self, x: Array) -> tuple[Array, float]:
        u, p1, _ = self.split_hopf(x)
        return u, p1


def continuation_fold(
    problem: BifurcationProblem,
    branch: Branch,
    special_point: SpecialPoint | int,
    lens2: str | ParameterLens,
    settings: ContinuationSettings | None = None,
    v: Array | None = None,
    w: Array | None = None,
    bothside: bool = False,
    callback: Callable[[BranchPoint], Any] | None = None,
    stop: Callable[[BranchPoint], bool] | None = None,
    **kwargs: Any,
) -> Branch:
    """
    Continue a fold point of a branch in two parameters.

    Parameters
    ----------
    problem
        The problem the branch was computed with.
    branch
        The branch holding the fold point.
    special_point
        The fold point, or its index in branch.special_points.
    lens2
        The second parameter, that is used as continuation parameter of the fold curve.
    settings
        The continuation settings, keyword arguments override single settings.
    v, w
        Alternative bordering vectors, e.g. if the default ones raise BorderingSingular.

    Returns
    -------
    Branch
        The fold curve. Its points hold x = (u, p1) and p = p2.
    """
    sp_ = branch.special_points[special_point] if isinstance(special_point, int) else special_point
    if sp_.kind not in ("fold", "bp"):
        raise ValueError(f"Expected a fold point, got '{sp_.kind}'")
    fold_problem = FoldProblem(problem, sp_, lens2, v=v, w=w)
    return continuation(fold_problem, settings, bothside=bothside, callback=callback, stop=stop, **kwargs)


def continuation_hopf(
    problem: BifurcationProblem,
    branch: Branch,
    special_point: SpecialPoint | int,
    lens2: str | ParameterLens,
    settings: ContinuationSettings | None = None,
    b: ComplexArray | None = None,
    c: ComplexArray | None = None,
    bothside: bool = False,
    callback: Callable[[BranchPoint], Any] | None = None,
    stop: Callable[[BranchPoint], bool] | None = None,
    **kwargs: Any,
) -> Branch:
    """
    Continue a Hopf point of a branch in two parameters.

    Parameters
    ----------
    problem
        The problem the branch was computed with.
    branch
        The branch holding the Hopf point.
    special_point
        The Hopf point, or its index in branch.special_points.
    lens2
        The second parameter, that is used as continuation parameter of the Hopf curve.
    settings
        The continuation settings, keyword arguments override single settings.
    b, c
        Alternative bordering vectors, e.g. if the default ones raise BorderingSingular.

    Returns
    -------
    Branch
        The Hopf curve. Its points hold x = (u, p1, omega) and p = p2.
    """
    sp_ = branch.special_points[special_point] if isinstance(special_point, int) else special_point
    if sp_.kind != "hopf":
        raise ValueError(f"Expected a Hopf point, got '{sp_.kind}'")
    hopf_problem = HopfProblem(problem, sp_, lens2, b=b, c=c)
    return continuation(hopf_problem, settings, bothside=bothside, callback=callback, stop=stop, **kwargs)
