"""Model systems with known bifurcation structure, shared by the tests."""

import numpy as np
import pytest

from macont import BifurcationProblem
from macont.core.types import Array


def fold_hopf_rhs(u: Array, par: dict) -> Array:
    """
    Equilibria x = -+sqrt(-p), y = z = 0 with a fold at p = 0 and a
    supercritical Hopf point at p = -1/4 (for c = -1/2), the orbits
    x = (1 - sqrt(3 - 4p)) / 2, y^2 + z^2 = x + 1/2 have the period 2 pi.
    """
    x, y, z = u
    r2 = y**2 + z**2
    return np.array([par["p"] + x**2 - par["kappa"] * r2,
                     (x - par["c"]) * y - z - y * r2,
                     y + (x - par["c"]) * z - z * r2])


def fold_hopf_jac(u: Array, par: dict) -> Array:
    x, y, z = u
    r2 = y**2 + z**2
    a = x - par["c"]
    return np.array([[2 * x, -2 * par["kappa"] * y, -2 * par["kappa"] * z],
                     [y, a - r2 - 2 * y**2, -1 - 2 * y * z],
                     [z, 1 - 2 * y * z, a - r2 - 2 * z**2]])


def circle_rhs(u: Array, par: dict) -> Array:
    """Hopf normal form with a stable limit cycle of radius sqrt(beta) and period 2 pi"""
    x, y = u
    r2 = x**2 + y**2
    return np.array([par["beta"] * x - y - x * r2,
                     x + par["beta"] * y - y * r2])


def circle_jac(u: Array, par: dict) -> Array:
    x, y = u
    r2 = x**2 + y**2
    b = par["beta"]
    return np.array([[b - r2 - 2 * x**2, -1 - 2 * x * y],
                     [1 - 2 * x * y, b - r2 - 2 * y**2]])


def pitchfork_rhs(u: Array, par: dict) -> Array:
    """trivial branch x = 0 with a pitchfork at p = 0 onto x^2 = p"""
    return np.array([par["p"] * u[0] - u[0] ** 3, -u[1]])


def moebius_rhs(x: float, y: float, a: float, b: float, mu_a: float, mu_b: float = -1.0) -> list[float]:
    """
    A Moebius band (a, b) along the unit circle (x, y) with period 2 pi:
    the Floquet multipliers are -exp(2 pi mu_a) and -exp(2 pi mu_b).
    """
    s, d = (mu_a + mu_b) / 2, (mu_a - mu_b) / 2
    return [-b / 2 + s * a + d * (x * a + y * b),
            a / 2 + s * b + d * (y * a - x * b)]


def moebius_jac(x: float, y: float, a: float, b: float, mu_a: float, mu_b: float = -1.0) -> Array:
    """derivatives of moebius_rhs w.r.t. (x, y, a, b)"""
    s, d = (mu_a + mu_b) / 2, (mu_a - mu_b) / 2
    return np.array([[d * a, d * b, s + d * x, -0.5 + d * y],
                     [-d * b, d * a, 0.5 + d * y, s - d * x]])


def circle_block_jac(x: float, y: float) -> Array:
    r2 = x**2 + y**2
    return np.array([[1 - r2 - 2 * x**2, -1 - 2 * x * y],
                     [1 - 2 * x * y, 1 - r2 - 2 * y**2]])


def period_doubling_rhs(u: Array, par: dict) -> Array:
    """
    The unit circle (x, y) with period 2 pi, transversally a Moebius band (a, b):
    the Floquet multipliers are -exp(2 pi (alpha - beta)) and -exp(-2 pi).
    """
    x, y, a, b = u
    r2 = x**2 + y**2
    return np.array([x - y - x * r2,
                     x + y - y * r2,
                     *moebius_rhs(x, y, a, b, par["alpha"] - par["beta"])])


def period_doubling_jac(u: Array, par: dict) -> Array:
    x, y, a, b = u
    J = np.zeros((4, 4))
    J[:2, :2] = circle_block_jac(x, y)
    J[2:] = moebius_jac(x, y, a, b, par["alpha"] - par["beta"])
    return J


def torus_rhs(u: Array, par: dict) -> Array:
    """
    The unit circle (x, y) with period 2 pi and a transversal focus (a, b):
    the Floquet multipliers are exp(2 pi (alpha - beta +- i omega)).
    """
    x, y, a, b = u
    r2 = x**2 + y**2
    mu, w = par["alpha"] - par["beta"], par["omega"]
    return np.array([x - y - x * r2,
                     x + y - y * r2,
                     mu * a - w * b,
                     w * a + mu * b])


def torus_jac(u: Array, par: dict) -> Array:
    x, y, _, _ = u
    r2 = x**2 + y**2
    mu, w = par["alpha"] - par["beta"], par["omega"]
    return np.array([[1 - r2 - 2 * x**2, -1 - 2 * x * y, 0, 0],
                     [1 - 2 * x * y, 1 - r2 - 2 * y**2, 0, 0],
                     [0, 0, mu, -w],
                     [0, 0, w, mu]])



def fold_flip_rhs(u: Array, par: dict) -> Array:
    """period_doubling_rhs with a decoupled direction c of multiplier exp(2 pi gamma)"""
    return np.append(period_doubling_rhs(u[:4], par), par["gamma"] * u[4])


def fold_flip_jac(u: Array, par: dict) -> Array:
    J = np.zeros((5, 5))
    J[:4, :4] = period_doubling_jac(u[:4], par)
    J[4, 4] = par["gamma"]
    return J


def fold_ns_rhs(u: Array, par: dict) -> Array:
    """torus_rhs with a decoupled direction c of multiplier exp(2 pi gamma)"""
    return np.append(torus_rhs(u[:4], par), par["gamma"] * u[4])


def fold_ns_jac(u: Array, par: dict) -> Array:
    J = np.zeros((5, 5))
    J[:4, :4] = torus_jac(u[:4], par)
    J[4, 4] = par["gamma"]
    return J


def flip_ns_rhs(u: Array, par: dict) -> Array:
    """torus_rhs with a Moebius band (d, e) of multipliers -exp(2 pi gamma) and -exp(-2 pi)"""
    x, y, d, e = u[0], u[1], u[4], u[5]
    return np.concatenate([torus_rhs(u[:4], par), moebius_rhs(x, y, d, e, par["gamma"])])


def flip_ns_jac(u: Array, par: dict) -> Array:
    x, y, d, e = u[0], u[1], u[4], u[5]
    J = np.zeros((6, 6))
    J[:4, :4] = torus_jac(u[:4], par)
    band = moebius_jac(x, y, d, e, par["gamma"])
    J[4:, :2] = band[:, :2]
    J[4:, 4:] = band[:, 2:]
    return J

@pytest.fixture
def fold_hopf_problem() -> BifurcationProblem:
    """stable equilibrium x = -1 at p = -1"""
    params = {"p": -1.0, "c": -0.5, "kappa": 1.0}
    return BifurcationProblem(fold_hopf_rhs, [-1.0, 0.0, 0.0], params, "p", J=fold_hopf_jac)


@pytest.fixture
def circle_problem() -> BifurcationProblem:
    """the limit cycle of the Hopf normal form at beta = 1"""
    return BifurcationProblem(circle_rhs, [1.0, 0.0], {"beta": 1.0}, "beta", J=circle_jac)


@pytest.fixture
def pitchfork_problem() -> BifurcationProblem:
    return BifurcationProblem(pitchfork_rhs, [0.0, 0.0], {"p": -0.5}, "p")


@pytest.fixture
def period_doubling_problem() -> BifurcationProblem:
    params = {"alpha": -0.5, "beta": 0.0}
    return BifurcationProblem(period_doubling_rhs, [1.0, 0.0, 0.0, 0.0], params, "alpha", J=period_doubling_jac)


@pytest.fixture
def torus_problem() -> BifurcationProblem:
    params = {"alpha": -0.5, "beta": 0.0, "omega": 0.3}
    return BifurcationProblem(torus_rhs, [1.0, 0.0, 0.0, 0.0], params, "alpha", J=torus_jac)


def unit_circle(n: int):
    """the unit circle in the first two of n components as a function of the normalized time"""
    def orbit(s):
        s = np.asarray(s)
        u = np.zeros((n, s.size))
        u[0], u[1] = np.cos(2 * np.pi * s), np.sin(2 * np.pi * s)
        return u
    return orbit


@pytest.fixture
def circle_orbit():
    """factory for the unit circle orbit of an n-dimensional system"""
    return unit_circle


@pytest.fixture
def fold_flip_problem() -> BifurcationProblem:
    params = {"alpha": -0.5, "beta": 0.0, "gamma": -0.3}
    return BifurcationProblem(fold_flip_rhs, [1.0, 0.0, 0.0, 0.0, 0.0], params, "alpha", J=fold_flip_jac)


@pytest.fixture
def fold_ns_problem() -> BifurcationProblem:
    params = {"alpha": -0.5, "beta": 0.0, "omega": 0.3, "gamma": -0.3}
    return BifurcationProblem(fold_ns_rhs, [1.0, 0.0, 0.0, 0.0, 0.0], params, "alpha", J=fold_ns_jac)


@pytest.fixture
def flip_ns_problem() -> BifurcationProblem:
    params = {"alpha": -0.5, "beta": 0.0, "omega": 0.3, "gamma": -0.3}
    return BifurcationProblem(flip_ns_rhs, [1.0, 0.0, 0.0, 0.0, 0.0, 0.0], params, "alpha", J=flip_ns_jac)
