"""Predictor-corrector steppers for parameter continuation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import scipy.sparse as sp

from macont.core.errors import ContinuationStalled, IntegrationDiverged, NonConvergence
from macont.core.solution import BranchPoint
from macont.core.solvers import LinearSolver, NewtonSolver
from macont.core.types import Array, Matrix

if TYPE_CHECKING:
    from macont.core.problem import ContinuationProblem


def extended_matrix(jac: Matrix, column: Array, row: Array) -> Matrix:
    """
    Border the matrix jac with an additional column and row:
    [[jac, column], [row^T]]. Sparse matrices stay sparse.
    """
    N = column.size
    if sp.issparse(jac):
        ext = sp.hstack((jac, column.reshape((N, 1))))
        return sp.vstack((ext, row.reshape((1, N + 1)))).tocsc()
    return np.vstack((np.hstack((np.asarray(jac), column.reshape((N, 1)))), row.reshape((1, N + 1))))


class ContinuationStepper:
    """
    Abstract base class for all parameter continuation-steppers.
    Specifies attributes and methods that all continuation-steppers should have.
    """

    # constructor
    def __init__(self, ds: float = 1e-2) -> None:
        #: continuation step size
        self.ds = ds
        #: the Newton corrector
        self.newton_solver = NewtonSolver()
        #: the linear oracle for the tangent computation
        self.linear_solver = LinearSolver()
        #: how verbose should the stepping be?
        self.verbosity = 0

    def step(self, problem: ContinuationProblem, point: BranchPoint) -> BranchPoint:
        """Perform a continuation step from the given point, return the new point"""
        raise NotImplementedError(
            "'ContinuationStepper' is an abstract base class - "
            "do not use for actual parameter continuation!")

    def tangent(self, problem: ContinuationProblem, u: Array, p: float,
                previous: Array | None = None) -> Array:
        """
        Calculate the unit tangent in (u, p)-space from the extended Jacobian
        [[F_u, F_p], [previous^T]] t = [0, 1]. Without a previous tangent, the
        last row is the unit vector in parameter direction and the tangent is
        oriented in positive parameter direction.
        """
        N = u.size
        if previous is None:
            last_row = np.zeros(N + 1)
            last_row[N] = 1
        else:
            last_row = previous
        jac = extended_matrix(problem.jacobian(u, p), problem.dp(u, p), last_row)
        rhs = np.zeros(N + 1)
        rhs[N] = 1
        tangent = self.linear_solver.solve(jac, rhs)
        tangent /= np.linalg.norm(tangent)
        if previous is None:
            # make sure that the tangent points in positive parameter direction
            if tangent[N] < 0:
                tangent = -tangent
        elif np.dot(tangent, previous) < 0:
            # orientation consistent with the previous tangent
            tangent = -tangent
        return tangent

    def log(self, *args, **kwargs) -> None:
        """print() wrapper that only prints if verbosity is switched on"""
        if self.verbosity > 0:
            print(*args, **kwargs)


class NaturalContinuation(ContinuationStepper):
    """
    Natural parameter continuation stepper:
    increments the parameter and Newton-solves F(u, p) = 0.
    Cannot pass folds.
    """

    def step(self, problem: ContinuationProblem, point: BranchPoint) -> BranchPoint:
        """Perform a continuation step on a problem"""
        # update the parameter value
        p = point.p + self.ds
        # solve the problem with a Newton solver
        result = problem.newton_solve(point.u, p, self.newton_solver)
        # secant approximation of the tangent
        tangent = np.append(result.u - point.u, p - point.p)
        tangent /= np.linalg.norm(tangent)
        return BranchPoint(result.u, p, tangent=tangent, ds=self.ds, newton_iterations=result.iterations)


class PseudoArclengthContinuation(ContinuationStepper):
    """
    Pseudo-arclength parameter continuation stepper.

    Predicts along the tangent and corrects on the hyperplane orthogonal to the
    tangent at distance ds, so that folds with dp/ds = 0 are passed.
    """

    def __init__(self, ds: float = 1e-2) -> None:
        super().__init__(ds)
        #: convergence tolerance for the newton solver in the continuation step
        self.convergence_tolerance = 1e-10
        #: maximum number of newton iterations for solving
        self.max_newton_iterations = 15
        #: should the step size be adapted while stepping?
        self.adapt_stepsize = True
        #: the desired number of newton iterations for solving,
        #: step size is adapted if we over/undershoot this number
        self.ndesired_newton_steps = 3
        #: ds decreases by this factor when more than desired_newton_steps are performed
        self.ds_decrease_factor = 0.5
        #: ds increases by this factor when less than desired_newton_steps are performed
        self.ds_increase_factor = 1.1
        #: maximum step size
        self.ds_max = 1e0
        #: minimum step size
        self.ds_min = 1e-9
        #: Rescale the parameter constraint, for numerical stability.
        #: May be decreased, e.g. for very sharp folds.
        self.parameter_arc_length_proportion = 1.0

    def corrector(self, problem: ContinuationProblem, point: BranchPoint,
                  ds: float) -> tuple[Array, float, int]:
        """
        Predict along the tangent of the given point and correct the prediction with
        Newton's method on the extended system [F(u, p); arclength condition] = 0.
        Returns the new unknowns, parameter and the number of Newton iterations.
        """
        u_old, p_old = point.u, point.p
        tangent = point.tangent
        if tangent is None:
            raise ValueError("The branch point has no tangent to predict along")
        N = u_old.size
        theta = self.parameter_arc_length_proportion
        # last row of extended jacobian: the (rescaled) tangent
        row = np.append(tangent[:N], theta * tangent[N])

        def rhs_ext(x: Array) -> Array:
            u, p = x[:N], x[N]
            arclength_condition = (u - u_old).dot(tangent[:N]) + (p - p_old) * tangent[N] * theta - ds
            return np.append(problem.residual(u, p), arclength_condition)

        def jac_ext(x: Array) -> Matrix:
            u, p = x[:N], x[N]
            return extended_matrix(problem.jacobian(u, p), problem.dp(u, p), row)

        # make initial guess: u -> u + ds * tangent
        x0 = np.append(u_old + ds * tangent[:N], p_old + ds * tangent[N])
        self.newton_solver.convergence_tolerance = self.convergence_tolerance
        self.newton_solver.max_iterations = self.max_newton_iterations
        self.newton_solver.linear_solver = self.linear_solver
        result = self.newton_solver.solve(rhs_ext, x0, jac_ext)
        if not result.converged:
            self.newton_solver.throw_no_convergence_error(result.u, result.residual)
        return result.u[:N], float(result.u[N]), result.iterations

    def step(self, problem: ContinuationProblem, point: BranchPoint) -> BranchPoint:
        """Perform a continuation step from the given point"""
        while True:
            ds = self.ds
            try:
                u, p, count = self.corrector(problem, point, ds)
                break
            except (NonConvergence, IntegrationDiverged) as err:
                # if step size is already minimal, give up on this branch
                if abs(ds * self.ds_decrease_factor) < self.ds_min:
                    raise ContinuationStalled(
                        f"Continuation stalled, step size would drop below {self.ds_min:.1e}", ds=ds) from err
                # else, retry with a smaller step size
                self.ds = ds * self.ds_decrease_factor
                self.log(f"{type(err).__name__}: {err} Trying again with ds = {self.ds:.3e}")
        # the new tangent is oriented along the previous one
        tangent = self.tangent(problem, u, p, previous=point.tangent)
        new_point = BranchPoint(u, p, tangent=tangent, ds=ds, newton_iterations=count)
        # adapt step size
        if self.adapt_stepsize:
            if count > self.ndesired_newton_steps:
                # decrease step size
                self.ds = max(abs(self.ds) * self.ds_decrease_factor, self.ds_min) * np.sign(self.ds)
            elif count < self.ndesired_newton_steps:
                # increase step size
                self.ds = min(abs(self.ds) * self.ds_increase_factor, self.ds_max) * np.sign(self.ds)
        return new_point
