"""Integration tests for branches of equilibria: detection, localization and branch switching."""

import numpy as np
import pytest

from macont import BifurcationDiagram, BifurcationProblem, Branch, SpecialPoint, continuation, switch_branch


@pytest.fixture
def equilibrium_branch(fold_hopf_problem: BifurcationProblem) -> Branch:
    return continuation(fold_hopf_problem, ds=0.05, dsmax=0.05, max_steps=100, p_min=-1.2)


def test_fold_hopf_branch(equilibrium_branch: Branch) -> None:
    """The lower branch loses stability in a Hopf point and turns back in a fold."""
    branch = equilibrium_branch
    assert branch.termination == "parameter_bounds"
    assert [sp.kind for sp in branch.special_points] == ["hopf", "fold"]
    # all points are equilibria x = -+sqrt(-p)
    for point in branch:
        assert point.u[0] ** 2 == pytest.approx(-point.p, abs=1e-8)
        np.testing.assert_allclose(point.u[1:], 0, atol=1e-10)
    assert branch[0].is_stable()
    assert not branch[-1].is_stable()
    assert branch[-1].nunstable_eigenvalues == 3
    assert branch[-1].u[0] > 0


def test_hopf_point(equilibrium_branch: Branch) -> None:
    """The Hopf point at p = -1/4 is supercritical with the frequency 1."""
    hopf = equilibrium_branch.get_special_points("hopf")[0]
    assert hopf.status == "converged"
    assert hopf.p == pytest.approx(-0.25, abs=1e-6)
    np.testing.assert_allclose(hopf.u, [-0.5, 0, 0], atol=1e-6)
    assert hopf.omega == pytest.approx(1.0, abs=1e-6)
    assert hopf.normal_form["l1"] < 0
    # the eigenvector of i omega lives in the (y, z)-plane
    assert abs(hopf.v[0]) < 1e-6
    assert hopf.params["p"] == hopf.p
    # the located point lies within the step that detected it
    assert hopf.interval[0] <= hopf.p <= hopf.interval[1]
    branch = equilibrium_branch
    assert branch[hopf.index].is_stable()
    assert branch[hopf.index + 1].nunstable_eigenvalues == 2


def test_fold_point(equilibrium_branch: Branch) -> None:
    """The fold at p = 0 turns the branch back to negative parameter values."""
    fold = equilibrium_branch.get_special_points("fold")[0]
    assert fold.status == "converged"
    assert fold.p == pytest.approx(0.0, abs=1e-6)
    assert fold.u[0] == pytest.approx(0.0, abs=1e-6)
    np.testing.assert_allclose(np.abs(fold.v), [1, 0, 0], atol=1e-6)
    assert np.dot(fold.w, fold.v) == pytest.approx(1.0)
    # F = p + x^2 - ...: the quadratic coefficient does not vanish
    assert abs(fold.normal_form["a"]) > 0.1
    assert np.max(equilibrium_branch.parameter_vals()) < 1e-6


def test_save_and_load(equilibrium_branch: Branch, tmp_path) -> None:
    """A branch can be stored and restored into a bifurcation diagram."""
    filename = str(tmp_path / "branch.npz")
    equilibrium_branch.save(filename)
    diagram = BifurcationDiagram()
    branch = diagram.load_branch(filename)
    assert diagram.branches == [branch]
    assert diagram.parameter_name == "p"
    np.testing.assert_allclose(branch.parameter_vals(), equilibrium_branch.parameter_vals())
    np.testing.assert_allclose(branch.norm_vals(), equilibrium_branch.norm_vals())
    assert [sp.kind for sp in branch.special_points] == ["hopf", "fold"]
    assert branch.special_points[0].p == equilibrium_branch.special_points[0].p
    assert branch.termination == equilibrium_branch.termination
    assert [point.is_stable() for point in branch] == [point.is_stable() for point in equilibrium_branch]


def test_switch_branch(pitchfork_problem: BifurcationProblem) -> None:
    """In the pitchfork, the continuation switches onto the branch x^2 = p."""
    trivial = continuation(pitchfork_problem, ds=0.07, dsmax=0.07, max_steps=15)
    bp = trivial.get_special_points("bp")[0]
    branch = switch_branch(pitchfork_problem, trivial, bp, ds=0.05, dsmax=0.05, max_steps=10,
                           detect_bifurcation=False)
    assert len(branch) == 11
    x = np.array([point.u[0] for point in branch])
    np.testing.assert_allclose(x**2, branch.parameter_vals(), atol=1e-8)
    assert abs(x[-1]) > 0.2
    # the bifurcating branch leaves the trivial one transversally
    assert abs(branch[0].tangent[0]) == pytest.approx(1.0, abs=1e-6)
    # only branch points can be switched at
    hopf = SpecialPoint(kind="hopf", index=0, u=np.zeros(2), p=0.0)
    with pytest.raises(ValueError):
        switch_branch(pitchfork_problem, trivial, hopf, ds=0.05)
