"""The continuation engine: settings, the step loop and branch switching."""

from __future__ import annotations

import copy
import dataclasses
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, cast

import numpy as np
import scipy.linalg
import scipy.sparse

from macont.core.errors import (
    ContinuationStalled,
    IntegrationDiverged,
    NonConvergence,
    SingularJacobian,
)
from macont.core.problem import BifurcationProblem
from macont.core.solution import Branch, BranchPoint, SpecialPoint
from macont.core.solvers import NewtonSolver
from macont.core.types import Array

from .bifurcations import BifurcationDetector
from .continuation_steppers import (
    ContinuationStepper,
    NaturalContinuation,
    PseudoArclengthContinuation,
    extended_matrix,
)

if TYPE_CHECKING:
    from macont.core.problem import ContinuationProblem

    from macont.periodic.base import PeriodicOrbitProblem


class ContinuationSettings:
    """
    Settings of a continuation run. Keyword arguments override the defaults,
    unknown names raise a TypeError.
    """

    def __init__(self, **kwargs: Any) -> None:
        #: initial step size, its sign gives the direction w.r.t. the initial tangent
        self.ds = 1e-2
        #: minimum step size
        self.dsmin = 1e-8
        #: maximum step size
        self.dsmax = 1e-1
        #: lower bound of the continuation parameter
        self.p_min = -np.inf
        #: upper bound of the continuation parameter
        self.p_max = np.inf
        #: maximum number of continuation steps
        self.max_steps = 100
        #: the continuation method: "pseudo_arclength" or "natural"
        self.stepper = "pseudo_arclength"
        #: should the step size be adapted while stepping?
        self.adapt_stepsize = True
        #: the desired number of newton iterations for solving,
        #: step size is adapted if we over/undershoot this number
        self.ndesired_newton_steps = 3
        #: ds increases by this factor when less than desired_newton_steps are performed
        self.ds_increase_factor = 1.1
        #: ds decreases by this factor when more than desired_newton_steps are performed
        #: and when the corrector failed
        self.ds_decrease_factor = 0.5
        #: rescales the parameter component of the arclength condition
        self.parameter_arclength_proportion = 1.0
        #: convergence tolerance of the Newton corrector (max. norm of the residuals),
        #: also eigenvalues with an imaginary part larger than this are complex
        self.newton_tolerance = 1e-10
        #: maximum number of Newton iterations per step
        self.max_newton_iterations = 15
        #: detect codim-1 bifurcations from changes in the number of unstable eigenvalues?
        self.detect_bifurcation = True
        #: detect codim-2 bifurcations from the test functions of augmented problems?
        self.detect_codim2_bifurcation = False
        #: locate the detected special points with bisection?
        self.locate_bifurcation = True
        #: compute the eigenvalues at every point, even without bifurcation detection?
        self.compute_eigenvalues = False
        #: number of eigenvalues to compute, None for all
        self.nev: int | None = None
        #: eigenvalues with a real part larger than this are unstable
        self.tol_stability = 1e-8
        #: bisection stops when the crossing eigenvalue / test function is smaller than this
        self.tol_bisection_eigenvalue = 1e-7
        #: maximum number of bisection steps for locating a special point
        self.max_bisection_steps = 30
        #: refresh the bordering vectors of minimally augmented problems after every step?
        self.update_minaug_every_step = True
        #: refresh the phase condition of periodic orbits every n steps (0 = never)
        self.update_section_every_step = 1
        #: adapt the mesh of periodic orbits every n steps (0 = never)
        self.adapt_mesh_every_step = 0
        #: how verbose should the continuation be? 0 = quiet, larger numbers = print more details
        self.verbosity = 0
        for key, value in kwargs.items():
            if not hasattr(self, key):
                raise TypeError(f"Unknown continuation setting '{key}'")
            setattr(self, key, value)
        if self.stepper not in ("pseudo_arclength", "natural"):
            raise ValueError(f"Unknown continuation stepper '{self.stepper}'")

    def copy(self, **kwargs: Any) -> ContinuationSettings:
        """Return a copy of the settings with some values replaced"""
        new = copy.copy(self)
        for key, value in kwargs.items():
            if not hasattr(new, key):
                raise TypeError(f"Unknown continuation setting '{key}'")
            setattr(new, key, value)
        return new


class Continuation:
    """
    The continuation engine: performs predictor-corrector steps on a problem,
    monitors the steps for bifurcations and assembles the branch.
    """

    def __init__(
        self,
        problem: ContinuationProblem,
        settings: ContinuationSettings | None = None,
        callback: Callable[[BranchPoint], Any] | None = None,
        stop: Callable[[BranchPoint], bool] | None = None,
    ) -> None:
        #: the problem to continue
        self.problem = problem
        #: the settings of the run
        self.settings = ContinuationSettings() if settings is None else settings
        #: called with every accepted branch point
        self.callback = callback
        #: stopping predicate, continuation stops when it returns True
        self.stop = stop
        #: the bifurcation detector
        self.detector = BifurcationDetector(self.settings)

    def log(self, *args, **kwargs) -> None:
        """print() wrapper that only prints if verbosity is switched on"""
        if self.settings.verbosity > 0:
            print(*args, **kwargs)

    def make_stepper(self, ds: float, method: str | None = None) -> ContinuationStepper:
        """Create and configure the continuation stepper"""
        s = self.settings
        method = s.stepper if method is None else method
        stepper: ContinuationStepper
        if method == "natural":
            stepper = NaturalContinuation(ds)
        else:
            stepper = PseudoArclengthContinuation(ds)
            stepper.convergence_tolerance = s.newton_tolerance
            stepper.max_newton_iterations = s.max_newton_iterations
            stepper.adapt_stepsize = s.adapt_stepsize
            stepper.ndesired_newton_steps = s.ndesired_newton_steps
            stepper.ds_increase_factor = s.ds_increase_factor
            stepper.ds_decrease_factor = s.ds_decrease_factor
            stepper.ds_max = s.dsmax
            stepper.ds_min = s.dsmin
            stepper.parameter_arc_length_proportion = s.parameter_arclength_proportion
        stepper.newton_solver.convergence_tolerance = s.newton_tolerance
        stepper.newton_solver.max_iterations = s.max_newton_iterations
        stepper.verbosity = s.verbosity
        stepper.newton_solver.verbosity = max(s.verbosity - 1, 0)
        return stepper

    def run(self, ds: float | None = None, tangent: Array | None = None, x0: Array | None = None,
            p0: float | None = None, direction: int = 1) -> Branch:
        """
        Continue the problem from the initial guess (x0, p0), or from the problem's own
        initial guess, until one of the termination conditions is met.
        """
        s = self.settings
        problem = self.problem
        ds = s.ds if ds is None else ds
        stepper = self.make_stepper(ds)
        # special points are always located with the pseudo-arclength corrector
        locator = cast(PseudoArclengthContinuation,
                       stepper if isinstance(stepper, PseudoArclengthContinuation)
                       else self.make_stepper(ds, "pseudo_arclength"))
        branch = Branch(parameter_name=problem.parameter_name)

        # converge onto the starting point
        x = problem.x0 if x0 is None else np.asarray(x0, dtype=float)
        p = problem.p0 if p0 is None else float(p0)
        solver = NewtonSolver()
        solver.convergence_tolerance = s.newton_tolerance
        solver.max_iterations = s.max_newton_iterations
        try:
            result = problem.newton_solve(x, p, solver)
        except (NonConvergence, SingularJacobian, IntegrationDiverged) as err:
            self.log(f"No solution at the starting point of branch #{branch.id}: {err}")
            branch.termination = "not_converged"
            branch.error = err
            return branch
        x = result.u
        self.log(f"Starting point converged after {result.iterations} Newton iterations")
        point = BranchPoint(x, p, ds=ds, step=0, newton_iterations=result.iterations, norm=problem.norm(x, p))
        point.mesh = problem.get_mesh()
        try:
            if tangent is None:
                point.tangent = stepper.tangent(problem, x, p)
            else:
                point.tangent = np.asarray(tangent, dtype=float) / np.linalg.norm(tangent)
        except SingularJacobian as err:
            self.detector.analyze(problem, point)
            branch.add_point(point)
            branch.termination = "singular"
            branch.error = err
            return branch
        self.detector.analyze(problem, point)
        branch.add_point(point)
        if self.callback is not None:
            self.callback(point)
        if self.stop is not None and self.stop(point):
            branch.termination = "stopped"
            return branch

        nsteps = 0
        while True:
            if nsteps >= s.max_steps:
                branch.termination = "max_steps"
                break
            # do continuation step
            try:
                new = stepper.step(problem, point)
            except ContinuationStalled as err:
                self.log(f"Branch #{branch.id} stalled: {err}")
                branch.termination = "stalled"
                branch.error = err
                break
            except (NonConvergence, IntegrationDiverged) as err:
                # the natural stepper does not adapt its step size
                branch.termination = "stalled"
                branch.error = ContinuationStalled(str(err), ds=stepper.ds)
                break
            except SingularJacobian as err:
                self.log(f"Branch #{branch.id} hit a singular Jacobian: {err}")
                branch.termination = "singular"
                branch.error = err
                break
            # check whether the parameter limits were exceeded, discard the point if so
            if not s.p_min <= new.p <= s.p_max:
                self.log(f"Parameter limits exceeded for branch #{branch.id}. Parameter: {new.p}")
                branch.termination = "parameter_bounds"
                break
            nsteps += 1
            new.step = point.step + direction
            new.norm = problem.norm(new.u, new.p)
            self.detector.analyze(problem, new)
            special_points = self.detector.detect(problem, len(branch) - 1, point, new, locator)
            # per step updates of the problem
            try:
                self.update_problem(problem, stepper, point, new, nsteps)
            except SingularJacobian as err:
                branch.termination = "singular"
                branch.error = err
                break
            new.mesh = problem.get_mesh()
            branch.add_point(new)
            for sp in special_points:
                branch.add_special_point(sp)
            self.log(f"Branch #{branch.id}, Step #{new.step}, {branch.parameter_name}={new.p:.6g}, "
                     f"ds={stepper.ds:.2e}, #+EVs: {new.nunstable_eigenvalues}")
            point = new
            if self.callback is not None:
                self.callback(new)
            if self.stop is not None and self.stop(new):
                branch.termination = "stopped"
                break
        return branch

    def update_problem(self, problem: ContinuationProblem, stepper: ContinuationStepper,
                       previous: BranchPoint, new: BranchPoint, nsteps: int) -> None:
        """the per step hooks: bordering vectors, phase condition and mesh adaption"""
        s = self.settings
        if s.update_minaug_every_step:
            problem.update_bordering(new.u, new.p)
        if s.update_section_every_step and nsteps % s.update_section_every_step == 0:
            problem.update_section(new.u, new.p)
        if s.adapt_mesh_every_step and nsteps % s.adapt_mesh_every_step == 0:
            new.u = problem.adapt_mesh(new.u, new.p)
            # after a mesh change, the tangent must be recomputed from scratch
            tangent = stepper.tangent(problem, new.u, new.p)
            if previous.tangent is not None and tangent[-1] * previous.tangent[-1] < 0:
                tangent = -tangent
            new.tangent = tangent


def merge_branches(negative: Branch, positive: Branch) -> Branch:
    """
    Merge the two halves of a bothside continuation into one branch,
    ordered from the negative end to the positive end.
    """
    branch = Branch(parameter_name=positive.parameter_name)
    n = len(negative) - 1
    for point in reversed(negative.points):
        branch.add_point(point)
    for point in positive.points[1:]:
        branch.add_point(point)
    # reindex the special points to the merged branch
    for sp in negative.special_points:
        branch.add_special_point(dataclasses.replace(sp, index=n - sp.index - 1))
    for sp in positive.special_points:
        branch.add_special_point(dataclasses.replace(sp, index=n + sp.index))
    branch.termination = positive.termination
    branch.error = positive.error if positive.error is not None else negative.error
    return branch


def continuation(
    problem: ContinuationProblem,
    settings: ContinuationSettings | None = None,
    bothside: bool = False,
    callback: Callable[[BranchPoint], Any] | None = None,
    stop: Callable[[BranchPoint], bool] | None = None,
    tangent: Array | None = None,
    x0: Array | None = None,
    p0: float | None = None,
    **kwargs: Any,
) -> Branch:
    """
    Compute a branch of solutions of the problem with pseudo-arclength continuation.

    Parameters
    ----------
    problem
        The problem to continue, e.g. a BifurcationProblem.
    settings
        The continuation settings, keyword arguments override single settings.
    bothside
        Continue in both directions from the starting point and merge the results
        into one branch, ordered from the negative to the positive end.
    callback
        Called with every accepted branch point.
    stop
        Stopping predicate, called with every accepted branch point.
    tangent
        Initial tangent in (u, p)-space, e.g. for branch switching.
    x0, p0
        Starting point, defaults to the initial guess of the problem.

    Returns
    -------
    Branch
        The computed branch with its special points and termination reason. It is
        empty, with the termination "not_converged", if the Newton solver finds no
        solution at the starting point.
    """
    if settings is None:
        settings = ContinuationSettings(**kwargs)
    elif kwargs:
        settings = settings.copy(**kwargs)
    engine = Continuation(problem, settings, callback=callback, stop=stop)
    if not bothside:
        return engine.run(tangent=tangent, x0=x0, p0=p0)
    negative = engine.run(ds=-settings.ds, tangent=tangent, x0=x0, p0=p0, direction=-1)
    if negative.is_empty():
        return negative
    positive = engine.run(ds=settings.ds, tangent=tangent, x0=x0, p0=p0)
    return merge_branches(negative, positive)


def _get_special_point(branch: Branch, special_point: SpecialPoint | int, kinds: tuple[str, ...]) -> SpecialPoint:
    sp = branch.special_points[special_point] if isinstance(special_point, int) else special_point
    if sp.kind not in kinds:
        raise ValueError(f"Expected a special point of kind {' or '.join(kinds)}, got '{sp.kind}'")
    return sp


def bifurcating_tangent(problem: ContinuationProblem, u: Array, p: float, tangent: Array) -> Array:
    """
    The tangent of the bifurcating branch at a simple branch point: the direction in
    the two-dimensional kernel of [F_u, F_p] that is orthogonal to the given tangent.
    """
    N = u.size
    jac = extended_matrix(problem.jacobian(u, p), problem.dp(u, p), np.zeros(N + 1))[:N]
    jac = jac.toarray() if scipy.sparse.issparse(jac) else np.asarray(jac)
    # the right singular vectors of the two smallest singular values span the kernel
    _, _, vh = scipy.linalg.svd(jac)
    kernel = vh[-2:].T
    # project the old tangent onto the kernel and take the orthogonal direction
    c = kernel.T @ tangent
    new_tangent = kernel @ np.array([-c[1], c[0]])
    return new_tangent / np.linalg.norm(new_tangent)


def switch_branch(
    problem: ContinuationProblem,
    branch: Branch,
    special_point: SpecialPoint | int,
    settings: ContinuationSettings | None = None,
    bothside: bool = False,
    callback: Callable[[BranchPoint], Any] | None = None,
    stop: Callable[[BranchPoint], bool] | None = None,
    **kwargs: Any,
) -> Branch:
    """
    Attempt to switch branches in a simple branch point and continue the
    bifurcating branch.

    Parameters
    ----------
    problem
        The problem the branch was computed with.
    branch
        The branch that holds the branch point.
    special_point
        The branch point, or its index in branch.special_points.
    settings
        The continuation settings for the new branch.

    Returns
    -------
    Branch
        The bifurcating branch.
    """
    sp = _get_special_point(branch, special_point, ("bp",))
    if sp.tau is None:
        raise ValueError("The branch point has no tangent to switch from")
    tangent = bifurcating_tangent(problem, sp.u, sp.p, sp.tau)
    return continuation(problem, settings, bothside=bothside, callback=callback, stop=stop,
                        tangent=tangent, x0=sp.u, p0=sp.p, **kwargs)


def hopf_amplitude(problem: BifurcationProblem, sp: SpecialPoint, p: float) -> tuple[float, Array]:
    """
    Estimate the amplitude of the periodic orbit born in a Hopf point at the
    parameter value p from the first Lyapunov coefficient.
    Returns the amplitude and the equilibrium at p.
    """
    if sp.omega is None:
        raise ValueError("The special point has no Hopf frequency")
    u_eq = problem.newton_solve(sp.u, p).u
    eigenvalues, _ = problem.eigenvalues(u_eq, p)
    # real part of the critical pair
    mu = eigenvalues[np.argmin(np.abs(eigenvalues - 1j * sp.omega))].real
    l1 = sp.normal_form.get("l1", np.nan)
    if not np.isfinite(l1) or l1 == 0:
        return np.sqrt(abs(mu)), u_eq
    return 2 * np.sqrt(abs(mu / (l1 * sp.omega))), u_eq


def hopf_side(sp: SpecialPoint, ds: float) -> float:
    """
    The side of the Hopf point (+1 or -1 in the parameter) where the small orbits exist.
    With mu = crossing_speed * (p - p_hopf), the orbits are born where mu * l1 < 0.
    Without normal form the sign of ds is used.
    """
    l1 = sp.normal_form.get("l1", np.nan)
    speed = sp.normal_form.get("crossing_speed", np.nan)
    if not (np.isfinite(l1) and np.isfinite(speed)) or l1 * speed == 0:
        return 1.0 if ds >= 0 else -1.0
    return -float(np.sign(l1 * speed))


def continuation_from_hopf(
    problem: BifurcationProblem,
    branch: Branch,
    special_point: SpecialPoint | int,
    po_problem: PeriodicOrbitProblem,
    settings: ContinuationSettings | None = None,
    amplitude: float | None = None,
    dp: float | None = None,
    callback: Callable[[BranchPoint], Any] | None = None,
    stop: Callable[[BranchPoint], bool] | None = None,
    **kwargs: Any,
) -> Branch:
    """
    Start the continuation of periodic orbits from a Hopf point.

    Parameters
    ----------
    problem
        The problem of the equilibrium branch.
    branch
        The branch that holds the Hopf point.
    special_point
        The Hopf point, or its index in branch.special_points.
    po_problem
        The periodic orbit problem (trapezoid, collocation or shooting) of the same system.
    amplitude
        Amplitude of the initial orbit, estimated from the normal form if not given.
    dp
        Signed parameter distance of the initial orbit from the Hopf point. Defaults to |ds|
        on the side where the small orbits exist, as given by the signs of the first
        Lyapunov coefficient and of the crossing speed of the critical pair.
        The branch is continued away from the Hopf point.

    Returns
    -------
    Branch
        The branch of periodic orbits.
    """
    if settings is None:
        settings = ContinuationSettings(**kwargs)
    elif kwargs:
        settings = settings.copy(**kwargs)
    sp = _get_special_point(branch, special_point, ("hopf",))
    if dp is None:
        dp = hopf_side(sp, settings.ds) * abs(settings.ds)
    p_start = sp.p + dp
    settings = settings.copy(ds=float(np.copysign(settings.ds, dp)))
    amplitude_estimate, center = hopf_amplitude(problem, sp, p_start)
    amplitude = amplitude_estimate if amplitude is None else amplitude
    x0 = po_problem.guess_from_hopf(sp, amplitude, center=center)
    po_problem.update_section(x0, p_start)
    return continuation(po_problem, settings, callback=callback, stop=stop, x0=x0, p0=p_start)
