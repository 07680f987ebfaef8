"""Integration tests for the continuation of fold and Hopf points and their codim-2 bifurcations."""

import numpy as np
import pytest

from macont import BifurcationProblem, continuation, continuation_fold, continuation_hopf
from macont.core.types import Array


def cusp_rhs(u: Array, par: dict) -> Array:
    """x' = p + q x - x^3, folds at q = 3 x^2, p = -2 x^3 and a cusp at q = p = 0"""
    x, y = u
    return np.array([par["p"] + par["q"] * x - x**3, -y])


def bogdanov_takens_rhs(u: Array, par: dict) -> Array:
    """Bogdanov-Takens normal form: folds at beta1 = 0, Hopf points at beta2 = x = -sqrt(-beta1)"""
    x, y = u
    return np.array([y, par["beta1"] + par["beta2"] * y + x**2 - x * y])


def bautin_rhs(u: Array, par: dict) -> Array:
    """Bautin normal form: Hopf at beta1 = 0 with l1 = 2 beta2"""
    x, y = u
    r2 = x**2 + y**2
    b1, b2 = par["beta1"], par["beta2"]
    return np.array([b1 * x - y + b2 * x * r2 - x * r2**2,
                     x + b1 * y + b2 * y * r2 - y * r2**2])


def double_hopf_rhs(u: Array, par: dict) -> Array:
    """two uncoupled Hopf normal forms with the frequencies 1 and 2"""
    x1, y1, x2, y2 = u
    r1, r2 = x1**2 + y1**2, x2**2 + y2**2
    b1, b2 = par["beta1"], par["beta2"]
    return np.array([b1 * x1 - y1 - x1 * r1,
                     x1 + b1 * y1 - y1 * r1,
                     b2 * x2 - 2 * y2 - x2 * r2,
                     2 * x2 + b2 * y2 - y2 * r2])


def collision_rhs(u: Array, par: dict) -> Array:
    """
    A fold at p = x = 0 next to a stable focus (y1, y2) and a source (z1, z2) with the
    eigenvalues 1/2 +- sqrt(q), which collide into a complex pair at q = 0
    """
    x, y1, y2, z1, z2 = u
    return np.array([par["p"] + x**2, -y1 - y2, y1 - y2, 0.5 * z1 + z2, par["q"] * z1 + 0.5 * z2])


def neutral_saddle_rhs(u: Array, par: dict) -> Array:
    """A fold at p = x = 0 with the real eigenvalues q and -0.3, a neutral saddle at q = 0.3"""
    x, y1, y2, z1, z2 = u
    return np.array([par["p"] + x**2, -y1 - y2, y1 - y2, par["q"] * z1, -0.3 * z2])


def first_special_point(problem: BifurcationProblem, kind: str, **kwargs):
    branch = continuation(problem, **kwargs)
    return branch, branch.get_special_points(kind)[0]


def test_fold_curve_zero_hopf(fold_hopf_problem: BifurcationProblem) -> None:
    """The fold curve x = p = 0 meets the zero-Hopf point at c = 0."""
    branch, fold = first_special_point(fold_hopf_problem, "fold", ds=0.05, dsmax=0.05, max_steps=60)
    curve = continuation_fold(fold_hopf_problem, branch, fold, "c", ds=0.12, dsmax=0.12, p_max=0.5,
                              detect_codim2_bifurcation=True)
    assert curve.parameter_name == "c"
    assert curve.termination == "parameter_bounds"
    for point in curve:
        # x = (u, p)
        np.testing.assert_allclose(point.u, 0, atol=1e-8)
    assert [sp.kind for sp in curve.special_points] == ["zh"]
    zh = curve.special_points[0]
    assert zh.p == pytest.approx(0.0, abs=1e-6)
    assert zh.params["c"] == zh.p
    assert zh.params["p"] == pytest.approx(0.0, abs=1e-8)
    # a zero eigenvalue and a purely imaginary pair
    assert np.min(np.abs(zh.eigenvalues)) < 1e-6
    assert np.max(np.abs(zh.eigenvalues.imag)) == pytest.approx(1.0, abs=1e-6)


def test_fold_curve_eigenvalue_collision() -> None:
    """Real eigenvalues that collide into a complex pair off the imaginary axis are no zero-Hopf point."""
    prob = BifurcationProblem(collision_rhs, [-1.0, 0, 0, 0, 0], {"p": -1.0, "q": 0.04}, "p")
    branch, fold = first_special_point(prob, "fold", ds=0.05, dsmax=0.05, max_steps=60)
    assert fold.p == pytest.approx(0.0, abs=1e-6)
    curve = continuation_fold(prob, branch, fold, "q", ds=-0.03, dsmax=0.03, p_min=-0.1,
                              detect_codim2_bifurcation=True)
    assert curve.termination == "parameter_bounds"

    def ncomplex(point):
        return np.sum(np.abs(point.eigenvalues.imag) > 1e-8)

    assert ncomplex(curve[0]) == 2
    assert ncomplex(curve[-1]) == 4
    assert curve.special_points == []


def test_fold_curve_neutral_saddle() -> None:
    """The zero-Hopf test function also vanishes in a neutral saddle, which is rejected."""
    prob = BifurcationProblem(neutral_saddle_rhs, [-1.0, 0, 0, 0, 0], {"p": -1.0, "q": 0.5}, "p")
    branch, fold = first_special_point(prob, "fold", ds=0.05, dsmax=0.05, max_steps=60)
    curve = continuation_fold(prob, branch, fold, "q", ds=-0.07, dsmax=0.07, p_min=0.1,
                              detect_codim2_bifurcation=True)
    assert curve.termination == "parameter_bounds"
    assert curve[0].test_values["zh"] * curve[-1].test_values["zh"] < 0
    assert curve.special_points == []


def test_fold_curve_cusp() -> None:
    """The fold curve q = 3 x^2 turns around in the cusp point."""
    x0 = np.roots([-1, 0, 1, -1]).real.min()
    prob = BifurcationProblem(cusp_rhs, [x0, 0.0], {"p": -1.0, "q": 1.0}, "p")
    branch, fold = first_special_point(prob, "fold", ds=0.05, dsmax=0.05, max_steps=60)
    assert fold.p == pytest.approx(2 / (3 * np.sqrt(3)), abs=1e-6)
    curve = continuation_fold(prob, branch, fold, "q", ds=-0.05, dsmax=0.05, max_steps=40,
                              detect_codim2_bifurcation=True)
    for point in curve:
        x, p = point.u[0], point.u[2]
        assert point.p == pytest.approx(3 * x**2, abs=1e-7)
        assert p == pytest.approx(-2 * x**3, abs=1e-7)
    cusps = curve.get_special_points("cusp")
    assert len(cusps) == 1
    assert cusps[0].p == pytest.approx(0.0, abs=1e-6)
    np.testing.assert_allclose(cusps[0].u, 0, atol=1e-4)
    assert curve.get_special_points("bt") == []
    # the curve continues on the other side of the cusp
    assert curve[-1].u[0] > 0


def test_fold_curve_bogdanov_takens() -> None:
    """Along the fold curve beta1 = 0, the second eigenvalue beta2 vanishes in the BT point."""
    params = {"beta1": -1.0, "beta2": -0.5}
    prob = BifurcationProblem(bogdanov_takens_rhs, [-1.0, 0.0], params, "beta1")
    branch = continuation(prob, ds=0.05, dsmax=0.05, max_steps=60, p_max=0.5)
    assert [sp.kind for sp in branch.special_points][:2] == ["hopf", "fold"]
    hopf, fold = branch.special_points[:2]
    assert hopf.p == pytest.approx(-0.25, abs=1e-6)
    assert fold.p == pytest.approx(0.0, abs=1e-6)
    curve = continuation_fold(prob, branch, fold, "beta2", ds=0.12, dsmax=0.12, p_max=0.5,
                              detect_codim2_bifurcation=True)
    assert [sp.kind for sp in curve.special_points] == ["bt"]
    bt = curve.special_points[0]
    assert bt.p == pytest.approx(0.0, abs=1e-6)
    assert bt.params["beta1"] == pytest.approx(0.0, abs=1e-8)
    np.testing.assert_allclose(bt.eigenvalues, 0, atol=1e-3)


def test_hopf_curve_bautin() -> None:
    """The first Lyapunov coefficient changes its sign in the Bautin point."""
    params = {"beta1": -0.5, "beta2": -0.5}
    prob = BifurcationProblem(bautin_rhs, [0.0, 0.0], params, "beta1")
    branch, hopf = first_special_point(prob, "hopf", ds=0.1, dsmax=0.1, max_steps=20)
    assert hopf.p == pytest.approx(0.0, abs=1e-6)
    assert hopf.normal_form["l1"] == pytest.approx(-1.0, rel=1e-3)
    curve = continuation_hopf(prob, branch, hopf, "beta2", ds=0.12, dsmax=0.12, p_max=0.5,
                              detect_codim2_bifurcation=True)
    assert curve.termination == "parameter_bounds"
    for point in curve:
        # x = (u, beta1, omega)
        np.testing.assert_allclose(point.u, [0, 0, 0, 1], atol=1e-8)
        assert point.test_values["gh"] == pytest.approx(2 * point.p, abs=1e-3)
    assert [sp.kind for sp in curve.special_points] == ["gh"]
    assert curve.special_points[0].p == pytest.approx(0.0, abs=1e-4)


def test_hopf_curve_double_hopf() -> None:
    """A second pair of eigenvalues crosses the imaginary axis in the double Hopf point."""
    params = {"beta1": -0.5, "beta2": -0.5}
    prob = BifurcationProblem(double_hopf_rhs, np.zeros(4), params, "beta1")
    branch, hopf = first_special_point(prob, "hopf", ds=0.1, dsmax=0.1, max_steps=20)
    assert hopf.omega == pytest.approx(1.0, abs=1e-6)
    curve = continuation_hopf(prob, branch, hopf, "beta2", ds=0.12, dsmax=0.12, p_max=0.5,
                              detect_codim2_bifurcation=True)
    assert [sp.kind for sp in curve.special_points] == ["hh"]
    hh = curve.special_points[0]
    assert hh.p == pytest.approx(0.0, abs=1e-6)
    # both pairs are on the imaginary axis
    np.testing.assert_allclose(np.sort(np.abs(hh.eigenvalues.imag)), [1, 1, 2, 2], atol=1e-6)
    np.testing.assert_allclose(hh.eigenvalues.real, 0, atol=1e-6)


def test_curves_need_matching_points(fold_hopf_problem: BifurcationProblem) -> None:
    """Fold curves only start in fold points."""
    branch, hopf = first_special_point(fold_hopf_problem, "hopf", ds=0.05, dsmax=0.05, max_steps=30)
    with pytest.raises(ValueError):
        continuation_fold(fold_hopf_problem, branch, hopf, "c")
