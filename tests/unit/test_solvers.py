"""Unit tests for the solver classes."""

import numpy as np
import pytest
import scipy.sparse as sp

from macont.core.errors import NonConvergence, SingularJacobian
from macont.core.solvers import EigenSolver, LinearSolver, NewtonSolver, bordered_solve
from macont.core.types import Array, Matrix


def system_2d(u: Array) -> Array:
    """
    Solve a 2D system of equations.

    f1 = x^2 + y^2 - 1 (circle radius 1)
    f2 = x - y (line x=y)
    Solutions: x=y=1/sqrt(2) approx 0.707.
    """
    x, y = u
    return np.array([x**2 + y**2 - 1, x - y])


def system_2d_jacobian(u: Array) -> Matrix:
    """Calculate the Jacobian of the 2D system."""
    x, y = u
    return np.array([[2 * x, 2 * y], [1, -1]])


def test_linear_solver_dense_and_sparse() -> None:
    """Dense and sparse operators give the same solution."""
    A = np.array([[4.0, 1.0, 0.0], [1.0, 3.0, 1.0], [0.0, 1.0, 2.0]])
    b = np.array([1.0, 2.0, 3.0])
    solver = LinearSolver()
    x_dense = solver.solve(A, b)
    x_sparse = solver.solve(sp.csr_matrix(A), b)
    np.testing.assert_allclose(A @ x_dense, b)
    np.testing.assert_allclose(x_sparse, x_dense)
    assert solver.nsolves == 2


def test_linear_solver_singular() -> None:
    """Singular operators raise a SingularJacobian error."""
    A = np.array([[1.0, 2.0], [2.0, 4.0]])
    solver = LinearSolver()
    with pytest.raises(SingularJacobian):
        solver.solve(A, np.ones(2))
    with pytest.raises(SingularJacobian):
        solver.solve(sp.csr_matrix(A), np.ones(2))


def test_bordered_solve_real() -> None:
    """The bordered solve agrees with the solution of the full block system."""
    rng = np.random.default_rng(1)
    A = rng.normal(size=(4, 4))
    b, c, f = rng.normal(size=4), rng.normal(size=4), rng.normal(size=4)
    x, s = bordered_solve(A, b, c, 0.5, f, 2.0)
    M = np.block([[A, b[:, None]], [c[None, :], np.array([[0.5]])]])
    expected = np.linalg.solve(M, np.append(f, 2.0))
    np.testing.assert_allclose(x, expected[:4])
    assert s == pytest.approx(expected[4])


def test_bordered_solve_complex() -> None:
    """Complex borders are conjugated in the last row."""
    rng = np.random.default_rng(2)
    A = rng.normal(size=(3, 3)) - 1j * np.eye(3)
    b = rng.normal(size=3) + 1j * rng.normal(size=3)
    c = rng.normal(size=3) + 1j * rng.normal(size=3)
    f = np.zeros(3, dtype=complex)
    x, s = bordered_solve(A, b, c, 0.0, f, 1.0)
    np.testing.assert_allclose(A @ x + s * b, f, atol=1e-12)
    assert np.vdot(c, x) == pytest.approx(1.0)


def test_bordered_solve_sparse() -> None:
    """Sparse operators are bordered with sparse blocks."""
    A = sp.diags([1.0, 2.0, 3.0]).tocsr()
    b, c = np.array([0.0, 0.0, 1.0]), np.array([1.0, 0.0, 0.0])
    x, s = bordered_solve(A, b, c, 0.0, np.array([1.0, 2.0, 3.0]), 0.5)
    M = np.block([[A.toarray(), b[:, None]], [c[None, :], np.zeros((1, 1))]])
    expected = np.linalg.solve(M, [1.0, 2.0, 3.0, 0.5])
    np.testing.assert_allclose(np.append(x, s), expected)


def test_newton_solver_system() -> None:
    """Test the NewtonSolver with a 2D system."""
    solver = NewtonSolver()
    result = solver.solve(system_2d, np.array([0.5, 0.5]), system_2d_jacobian)
    expected = np.array([1.0 / np.sqrt(2), 1.0 / np.sqrt(2)])
    np.testing.assert_allclose(result.u, expected, atol=1e-10)
    assert result.converged
    assert result.residual < solver.convergence_tolerance
    assert solver.niterations == result.iterations > 0


def test_newton_solver_already_converged() -> None:
    """An exact root does not require any iterations."""
    solver = NewtonSolver()
    u0 = np.array([1.0, 1.0]) / np.sqrt(2)
    result = solver.solve(system_2d, u0, system_2d_jacobian)
    assert result.iterations == 0


def test_newton_solver_no_convergence() -> None:
    """u^2 + 1 = 0 has no real root."""
    solver = NewtonSolver()
    solver.max_iterations = 10

    def f(u: Array) -> Array:
        return u**2 + 1

    def jac(u: Array) -> Matrix:
        return np.diag(2 * u)

    with pytest.raises(NonConvergence) as excinfo:
        solver.solve(f, np.array([1.0]), jac)
    assert excinfo.value.iterations == 10
    assert excinfo.value.u is not None
    # errors are numpy LinAlgErrors as well
    assert isinstance(excinfo.value, np.linalg.LinAlgError)

    solver.raise_on_failure = False
    result = solver.solve(f, np.array([1.0]), jac)
    assert not result.converged
    assert result.iterations == 10


def test_newton_solver_singular_jacobian() -> None:
    """A vanishing Jacobian during the iteration raises a SingularJacobian error."""
    solver = NewtonSolver()
    with pytest.raises(SingularJacobian):
        solver.solve(lambda u: u**2 + 1, np.array([0.0]), lambda u: np.diag(2 * u))


def test_newton_solver_line_search() -> None:
    """The undamped Newton iteration on arctan diverges for |u0| > 1.39, the line search fixes it."""
    solver = NewtonSolver()
    solver.line_search = True
    result = solver.solve(np.arctan, np.array([3.0]), lambda u: np.diag(1 / (1 + u**2)))
    assert result.converged
    np.testing.assert_allclose(result.u, [0.0], atol=1e-10)


def test_eigensolver_ordering() -> None:
    """Eigenvalues are sorted by decreasing real part, eigenvectors row-wise."""
    A = np.array([[-1.0, 0.0, 0.0, 0.0],
                  [0.0, 2.0, 0.0, 0.0],
                  [0.0, 0.0, 0.5, -3.0],
                  [0.0, 0.0, 3.0, 0.5]])
    eigenvalues, eigenvectors = EigenSolver().solve(A)
    np.testing.assert_allclose(eigenvalues.real, [2.0, 0.5, 0.5, -1.0])
    np.testing.assert_allclose(eigenvalues[1:3].imag, [3.0, -3.0])
    for ev, vec in zip(eigenvalues, eigenvectors):
        np.testing.assert_allclose(A @ vec, ev * vec, atol=1e-12)



def test_eigensolver_dense_keeps_most_unstable() -> None:
    """With k given, the direct solver keeps the eigenvalues with the largest real part."""
    A = np.diag([-0.1, 50.0, -0.2, -10.0, -20.0])
    eigenvalues, eigenvectors = EigenSolver().solve(A, k=2)
    np.testing.assert_allclose(eigenvalues, [50.0, -0.1])
    assert eigenvectors.shape == (2, 5)
    np.testing.assert_allclose(np.abs(eigenvectors[0]), [0, 1, 0, 0, 0], atol=1e-12)


def test_eigensolver_sparse_arpack() -> None:
    """Only the eigenvalues closest to the shift are computed for large sparse matrices."""
    N = 300
    A = sp.diags(-np.arange(1.0, N + 1)).tocsc()
    solver = EigenSolver()
    eigenvalues, eigenvectors = solver.solve(A, k=3)
    np.testing.assert_allclose(eigenvalues, [-1.0, -2.0, -3.0])
    assert eigenvectors.shape == (3, N)
