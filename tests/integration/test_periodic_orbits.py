"""Integration tests for branches of periodic orbits started in a Hopf point."""

import numpy as np
import pytest

from macont import BifurcationProblem, Branch, continuation, continuation_from_hopf
from macont.core.errors import IntegrationDiverged
from macont.core.types import Array
from macont.periodic import Flow, PeriodicOrbitOCollProblem, PeriodicOrbitTrapProblem, ShootingProblem


def orbit_x(p: float) -> float:
    """x on the periodic orbits of the fold-Hopf system, y^2 + z^2 = x + 1/2"""
    return (1 - np.sqrt(3 - 4 * p)) / 2


DISCRETIZATIONS = {
    "trapezoid": lambda prob: PeriodicOrbitTrapProblem(prob, M=40),
    "collocation": lambda prob: PeriodicOrbitOCollProblem(prob, Ntst=10, m=4),
    "shooting": lambda prob: ShootingProblem(prob, M=2),
}


def bautin_rhs(u: Array, par: dict) -> Array:
    """
    Bautin normal form, subcritical for beta2 > 0: the small unstable orbits
    r^2 = (beta2 - sqrt(beta2^2 + 4 beta1)) / 2 exist for beta1 < 0, period 2 pi
    """
    x, y = u
    r2 = x**2 + y**2
    b1, b2 = par["beta1"], par["beta2"]
    return np.array([b1 * x - y + b2 * x * r2 - x * r2**2,
                     x + b1 * y + b2 * y * r2 - y * r2**2])


def bautin_jac(u: Array, par: dict) -> Array:
    x, y = u
    r2 = x**2 + y**2
    b1, b2 = par["beta1"], par["beta2"]
    xy = 2 * b2 * x * y - 4 * x * y * r2
    return np.array([[b1 + b2 * (r2 + 2 * x**2) - r2**2 - 4 * x**2 * r2, -1 + xy],
                     [1 + xy, b1 + b2 * (r2 + 2 * y**2) - r2**2 - 4 * y**2 * r2]])


def expected_period(name: str) -> float:
    if name == "trapezoid":
        # the trapezoidal rule rotates by 2 arctan(T / 2M) per step
        return 2 * 40 * np.tan(np.pi / 40)
    return 2 * np.pi


@pytest.fixture
def hopf_branch(fold_hopf_problem: BifurcationProblem) -> tuple[BifurcationProblem, Branch]:
    """the equilibria of the fold-Hopf system up to the Hopf point"""
    prob = fold_hopf_problem
    branch = continuation(prob, ds=0.05, dsmax=0.05, max_steps=30, p_max=-0.1)
    return prob, branch


@pytest.mark.parametrize("name", DISCRETIZATIONS)
def test_orbits_from_hopf(hopf_branch, name: str) -> None:
    """The branch of orbits born in the Hopf point agrees with the exact orbits."""
    prob, branch = hopf_branch
    hopf = branch.get_special_points("hopf")[0]
    po = DISCRETIZATIONS[name](prob)
    orbits = continuation_from_hopf(prob, branch, hopf, po, ds=0.02, dsmax=0.05, max_steps=8,
                                    p_max=0.3, newton_tolerance=1e-8)
    assert len(orbits) > 3
    assert orbits.parameter_name == "p"
    assert orbits[0].p == pytest.approx(hopf.p + 0.02)
    for point in orbits:
        assert po.get_period(point.u, point.p) == pytest.approx(expected_period(name), rel=1e-6)
        orbit = po.get_orbit(point.u, point.p)
        x_orb = orbit_x(point.p)
        np.testing.assert_allclose(orbit.u[0], x_orb, atol=1e-5)
        radius = np.sqrt(orbit.u[1] ** 2 + orbit.u[2] ** 2)
        np.testing.assert_allclose(radius, np.sqrt(x_orb + 0.5), atol=1e-5)
        # the orbits are stable
        assert point.is_stable()
    # the amplitude grows with the distance from the Hopf point
    assert np.all(np.diff(orbits.norm_vals()) > 0)
    assert orbits.special_points == []


def test_collocation_with_mesh_adaption(hopf_branch) -> None:
    """Adapting the collocation mesh during the continuation keeps the orbits on track."""
    prob, branch = hopf_branch
    po = PeriodicOrbitOCollProblem(prob, Ntst=8, m=4)
    orbits = continuation_from_hopf(prob, branch, 0, po, ds=0.02, dsmax=0.05, max_steps=6,
                                    adapt_mesh_every_step=2, detect_bifurcation=False)
    assert len(orbits) == 7
    assert np.all(np.diff(po.mesh) > 0)
    for point in orbits:
        assert point.u[-1] == pytest.approx(2 * np.pi, rel=1e-6)
        # every point is read with the mesh it was computed on
        assert point.mesh.shape == (9,)
        orbit = po.get_orbit(point.u, point.p, mesh=point.mesh)
        np.testing.assert_allclose(orbit.u[0], orbit_x(point.p), atol=1e-5)
        radius = np.sqrt(orbit.u[1] ** 2 + orbit.u[2] ** 2)
        np.testing.assert_allclose(radius, np.sqrt(orbit_x(point.p) + 0.5), atol=1e-5)
        # the orbits rotate with unit speed, so the angle grows like the time of the nodes
        angle = np.unwrap(np.arctan2(orbit.u[2], orbit.u[1]))
        np.testing.assert_allclose(angle - orbit.t, angle[0] - orbit.t[0], atol=1e-4)


def test_amplitude_from_normal_form(hopf_branch) -> None:
    """The initial amplitude estimated from l1 is close to the exact amplitude."""
    prob, branch = hopf_branch
    hopf = branch.get_special_points("hopf")[0]
    po = PeriodicOrbitTrapProblem(prob, M=30)
    orbits = continuation_from_hopf(prob, branch, hopf, po, dp=0.01, max_steps=0, detect_bifurcation=False)
    assert len(orbits) == 1
    assert orbits[0].p == pytest.approx(hopf.p + 0.01)
    # the first orbit needs only a few Newton iterations from the initial guess
    assert orbits[0].newton_iterations <= 6
    assert po.amplitude(orbits[0].u, orbits[0].p) == pytest.approx(np.sqrt(orbit_x(hopf.p + 0.01) + 0.5), rel=0.05)


@pytest.mark.parametrize("name", ["collocation", "shooting"])
def test_orbits_from_subcritical_hopf(name: str) -> None:
    """The unstable orbits of a subcritical Hopf point are found before the Hopf point."""
    prob = BifurcationProblem(bautin_rhs, [0.0, 0.0], {"beta1": -0.23, "beta2": 0.5}, "beta1", J=bautin_jac)
    branch = continuation(prob, ds=0.05, dsmax=0.05, max_steps=10, p_max=0.1)
    hopf = branch.get_special_points("hopf")[0]
    assert hopf.p == pytest.approx(0.0, abs=1e-6)
    assert hopf.normal_form["l1"] > 0
    assert hopf.normal_form["crossing_speed"] == pytest.approx(1.0, rel=1e-4)
    po = ShootingProblem(prob, M=1) if name == "shooting" else DISCRETIZATIONS[name](prob)
    orbits = continuation_from_hopf(prob, branch, hopf, po, ds=0.02, dsmax=0.02, max_steps=5,
                                    newton_tolerance=1e-8)
    assert orbits.termination == "max_steps"
    assert orbits[0].p == pytest.approx(hopf.p - 0.02)
    # continued away from the Hopf point
    assert np.all(np.diff(orbits.parameter_vals()) < 0)
    for point in orbits:
        assert po.get_period(point.u, point.p) == pytest.approx(2 * np.pi, rel=1e-6)
        orbit = po.get_orbit(point.u, point.p)
        radius = np.sqrt(orbit.u[0] ** 2 + orbit.u[1] ** 2)
        np.testing.assert_allclose(radius**2, (0.5 - np.sqrt(0.25 + 4 * point.p)) / 2, atol=1e-5)
        # one unstable Floquet exponent
        assert point.nunstable_eigenvalues == 1
    assert orbits.special_points == []


class FailingFlow(Flow):
    """a flow whose next integration fails once it is armed"""

    def __init__(self, problem: BifurcationProblem) -> None:
        super().__init__(problem)
        self.armed = False
        self.failures = 0

    def _integrate(self, rhs, y0, t, t_eval=None):
        if self.armed:
            self.armed = False
            self.failures += 1
            raise IntegrationDiverged("Integration of the flow failed: blow up", x0=y0, t=t)
        return super()._integrate(rhs, y0, t, t_eval)


def test_diverged_integration_shrinks_step(circle_problem: BifurcationProblem, circle_orbit) -> None:
    """A failed integration in the corrector halves the step and retries it."""
    flow = FailingFlow(circle_problem)
    shooting = ShootingProblem(circle_problem, M=1, flow=flow)
    shooting.initial_guess(circle_orbit(2), 2 * np.pi)

    def arm(point):
        if point.step == 2:
            flow.armed = True

    orbits = continuation(shooting, ds=0.1, dsmax=0.1, max_steps=5, ndesired_newton_steps=10,
                          ds_increase_factor=1.0, detect_bifurcation=False, callback=arm)
    assert orbits.termination == "max_steps"
    assert flow.failures == 1
    assert [point.ds for point in orbits.points[1:]] == pytest.approx([0.1, 0.1, 0.05, 0.05, 0.05])
    assert np.all(np.diff(orbits.parameter_vals()) > 0)
