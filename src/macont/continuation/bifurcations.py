"""
Detection, classification and localization of bifurcations along a branch.

Codim-1 bifurcations are detected from changes of the number of unstable
eigenvalues between two consecutive branch points, codim-2 bifurcations of
augmented problems from sign changes of their test functions.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import numpy as np

from macont.core.problem import BifurcationProblem
from macont.core.solution import BranchPoint, SpecialPoint
from macont.core.types import Array, ComplexArray

from .continuation_steppers import ContinuationStepper
from .normal_forms import fold_normal_form, hopf_normal_form

if TYPE_CHECKING:
    from macont.core.problem import ContinuationProblem

    from .continuation import ContinuationSettings
    from .continuation_steppers import PseudoArclengthContinuation


def crossing_type(kind: str) -> Callable[[ComplexArray, float], np.ndarray]:
    """
    Return a mask function selecting the eigenvalues (or Floquet exponents)
    that can be responsible for a special point of the given kind
    """
    if kind == "hopf":
        return lambda ev, tol: np.abs(ev.imag) > tol
    if kind == "ns":
        return lambda ev, tol: (np.abs(ev.imag) > tol) & (np.abs(np.abs(ev.imag) - np.pi) > tol)
    if kind == "pd":
        return lambda ev, tol: np.abs(np.abs(ev.imag) - np.pi) <= tol
    return lambda ev, tol: np.abs(ev.imag) <= tol


def closest_real_part(eigenvalues: ComplexArray | None, mask: np.ndarray | None = None) -> float:
    """The real part of the (selected) eigenvalue that is closest to the imaginary axis"""
    if eigenvalues is None:
        return np.nan
    ev = eigenvalues if mask is None else eigenvalues[mask]
    if ev.size == 0:
        return np.nan
    return float(ev[np.argmin(np.abs(ev.real))].real)


def pair_sum_product(eigenvalues: ComplexArray) -> float:
    """
    The product of lambda_i + lambda_j over all pairs i < j. It vanishes when two
    eigenvalues lie symmetric to the imaginary axis, e.g. a purely imaginary pair,
    and stays continuous where eigenvalues collide and split. Real for spectra
    that are closed under conjugation. NaN for less than two eigenvalues.
    """
    if eigenvalues.size < 2:
        return np.nan
    i, j = np.triu_indices(eigenvalues.size, k=1)
    return float(np.prod(eigenvalues[i] + eigenvalues[j]).real)


def symmetric_pair_is_complex(eigenvalues: ComplexArray, tol: float) -> bool:
    """Is the pair that is closest to symmetric w.r.t. the imaginary axis a complex pair?"""
    if eigenvalues.size < 2:
        return False
    i, j = np.triu_indices(eigenvalues.size, k=1)
    k = np.argmin(np.abs(eigenvalues[i] + eigenvalues[j]))
    return bool(abs(eigenvalues[i[k]].imag) > tol)


class BifurcationDetector:
    """
    Monitors the spectrum of the continued problem at every branch point,
    classifies the special points and locates them with bisection.
    """

    def __init__(self, settings: ContinuationSettings) -> None:
        #: the settings of the continuation run
        self.settings = settings

    def log(self, *args, **kwargs) -> None:
        """print() wrapper that only prints if verbosity is switched on"""
        if self.settings.verbosity > 0:
            print(*args, **kwargs)

    def analyze(self, problem: ContinuationProblem, point: BranchPoint) -> None:
        """Compute the eigenvalues, stability counts and test functions of a branch point"""
        s = self.settings
        if not (s.detect_bifurcation or s.detect_codim2_bifurcation or s.compute_eigenvalues):
            return
        eigenvalues, _ = problem.eigenvalues(point.u, point.p, s.nev)
        point.eigenvalues = eigenvalues
        point.nunstable_eigenvalues, point.nunstable_imaginary_eigenvalues = self.count_unstable(eigenvalues)
        if problem.codim == 2 and s.detect_codim2_bifurcation:
            point.test_values = problem.codim2_test_functions(point.u, point.p, eigenvalues)

    def count_unstable(self, eigenvalues: ComplexArray) -> tuple[int, int]:
        """
        count the true positive eigenvalues and the true positive imaginary ones, an
        eigenvalue is complex if its imaginary part exceeds the Newton tolerance
        """
        s = self.settings
        unstable = eigenvalues.real > s.tol_stability
        nunstable = int(np.sum(unstable))
        nunstable_imaginary = int(np.sum(unstable & (np.abs(eigenvalues.imag) > s.newton_tolerance)))
        return nunstable, nunstable_imaginary

    def classify(self, problem: ContinuationProblem, previous: BranchPoint, current: BranchPoint) -> str | None:
        """What type of codim-1 bifurcation lies between the two points?"""
        if previous.nunstable_eigenvalues is None or current.nunstable_eigenvalues is None:
            return None
        nev_crossed = current.nunstable_eigenvalues - previous.nunstable_eigenvalues
        # if no eigenvalues crossed zero, there is no bifurcation
        if nev_crossed == 0:
            return None
        nev_imag_crossed = current.nunstable_imaginary_eigenvalues - previous.nunstable_imaginary_eigenvalues
        discrete = problem.spectrum_type == "discrete"
        # a complex pair crossed the imaginary axis
        if abs(nev_imag_crossed) > 1:
            return "ns" if discrete else "hopf"
        if discrete:
            # a single exponent with Im = pi is a multiplier crossing -1
            return "pd" if abs(nev_imag_crossed) == 1 else "fold"
        # a real eigenvalue crossed zero: folds turn back in the parameter
        if previous.tangent is None or current.tangent is None:
            raise ValueError("Folds and branch points are told apart by the tangents of the branch points")
        if previous.tangent[-1] * current.tangent[-1] < 0:
            return "fold"
        return "bp"

    def detect(self, problem: ContinuationProblem, index: int, previous: BranchPoint,
               current: BranchPoint, stepper: PseudoArclengthContinuation) -> list[SpecialPoint]:
        """
        Detect the special points between the previous and the current branch point.
        The index is the position of the previous point in the branch.
        """
        s = self.settings
        found = []
        if problem.codim == 1 and s.detect_bifurcation:
            kind = self.classify(problem, previous, current)
            if kind is not None:
                found.append(self.locate_codim1(problem, kind, index, previous, current, stepper))
        if problem.codim == 2 and s.detect_codim2_bifurcation:
            for name, value in current.test_values.items():
                old_value = previous.test_values.get(name, np.nan)
                # sign change of the test function
                if np.isfinite(value) and np.isfinite(old_value) and value * old_value < 0:
                    sp = self.locate_codim2(problem, name, index, previous, current, stepper)
                    if problem.is_codim2_point(name, sp.u, sp.p, sp.eigenvalues):
                        found.append(sp)
                    else:
                        self.log(f"Rejected {name} at p={sp.p:.6g}, it is not confirmed by the spectrum")
        for sp in found:
            self.log(f"Special point detected: {sp}")
        return found

    def bisection(self, problem: ContinuationProblem, previous: BranchPoint, current: BranchPoint,
                  stepper: PseudoArclengthContinuation,
                  test: Callable[[Array, float], tuple[bool, float]]) -> tuple[Array, float, float, tuple[float, float], str]:
        """
        Locate the special point with bisection on the arclength of the step interval.
        test(u, p) returns whether the point lies on the side of the previous point
        and the current value of the quantity that vanishes at the special point.
        Returns (u, p, precision, interval, status).
        """
        s = self.settings
        # bisection interval in units of the arclength
        lo, hi = 0.0, current.ds
        p_lo, p_hi = previous.p, current.p
        u, p = current.u, current.p
        _, precision = test(u, p)
        n = 0
        while abs(precision) > s.tol_bisection_eigenvalue and n < s.max_bisection_steps:
            self.log(f"Bisection: [{lo:.6e} {hi:.6e}], test: {precision:e}")
            mid = (lo + hi) / 2
            try:
                u_mid, p_mid, _ = stepper.corrector(problem, previous, mid)
            except np.linalg.LinAlgError as err:
                print("Warning: error while trying to locate a bifurcation point:")
                print(err)
                break
            same_side, value = test(u_mid, p_mid)
            u, p, precision = u_mid, p_mid, value
            if same_side:
                lo, p_lo = mid, p_mid
            else:
                hi, p_hi = mid, p_mid
            n += 1
        status = "converged" if abs(precision) <= s.tol_bisection_eigenvalue else "guess"
        if status == "guess":
            print("Warning: Failed to converge onto bifurcation point.")
        return u, p, abs(precision), (min(p_lo, p_hi), max(p_lo, p_hi)), status

    def locate_codim1(self, problem: ContinuationProblem, kind: str, index: int, previous: BranchPoint,
                      current: BranchPoint, stepper: PseudoArclengthContinuation) -> SpecialPoint:
        """Locate a fold / bp / hopf / pd / ns point and process it"""
        s = self.settings
        mask = crossing_type(kind)
        count_before = (previous.nunstable_eigenvalues, previous.nunstable_imaginary_eigenvalues)

        def test(u: Array, p: float) -> tuple[bool, float]:
            eigenvalues, _ = problem.eigenvalues(u, p, s.nev)
            counts = self.count_unstable(eigenvalues)
            return counts == count_before, closest_real_part(eigenvalues, mask(eigenvalues, s.newton_tolerance))

        if s.locate_bifurcation:
            u, p, precision, interval, status = self.bisection(problem, previous, current, stepper, test)
        else:
            u, p = current.u, current.p
            precision = abs(test(u, p)[1])
            interval = (min(previous.p, current.p), max(previous.p, current.p))
            status = "guess"
        return self.process(problem, kind, index, u, p, precision, interval, status, previous)

    def locate_codim2(self, problem: ContinuationProblem, kind: str, index: int, previous: BranchPoint,
                      current: BranchPoint, stepper: PseudoArclengthContinuation) -> SpecialPoint:
        """Locate a codim-2 point from the sign change of its test function"""
        s = self.settings
        sign_before = np.sign(previous.test_values[kind])

        def test(u: Array, p: float) -> tuple[bool, float]:
            eigenvalues, _ = problem.eigenvalues(u, p, s.nev)
            value = problem.codim2_test_functions(u, p, eigenvalues).get(kind, np.nan)
            return bool(np.sign(value) == sign_before), value

        if s.locate_bifurcation:
            u, p, precision, interval, status = self.bisection(problem, previous, current, stepper, test)
        else:
            u, p = current.u, current.p
            precision = abs(current.test_values[kind])
            interval = (min(previous.p, current.p), max(previous.p, current.p))
            status = "guess"
        return self.process(problem, kind, index, u, p, precision, interval, status, previous)

    def process(self, problem: ContinuationProblem, kind: str, index: int, u: Array, p: float,
                precision: float, interval: tuple[float, float], status: str,
                previous: BranchPoint) -> SpecialPoint:
        """Compute the tangent, eigenvalues, null vectors and normal form of a located point"""
        s = self.settings
        eigenvalues, eigenvectors = problem.eigenvalues(u, p, s.nev)
        try:
            tau = self.tangent_at(problem, u, p, previous)
        except np.linalg.LinAlgError:
            tau = previous.tangent
        v = w = None
        omega = None
        normal_form: dict = {}
        mask = crossing_type(kind)(eigenvalues, s.newton_tolerance)
        if kind in ("fold", "bp", "hopf", "pd", "ns") and np.any(mask):
            # the eigenvalue closest to the imaginary axis among the relevant ones
            candidates = np.flatnonzero(mask)
            ev_index = candidates[np.argmin(np.abs(eigenvalues[candidates].real))]
            if kind in ("hopf", "ns"):
                # prefer the eigenvalue with positive imaginary part
                ev_index = candidates[np.argmin(np.abs(eigenvalues[candidates] - 1j * abs(eigenvalues[ev_index].imag)))]
                omega = float(abs(eigenvalues[ev_index].imag))
            if isinstance(problem, BifurcationProblem):
                try:
                    if kind == "hopf":
                        v, w, normal_form = hopf_normal_form(problem, u, p, omega, eigenvectors[ev_index])
                    else:
                        v, w, normal_form = fold_normal_form(problem, u, p, eigenvectors[ev_index].real)
                except np.linalg.LinAlgError as err:
                    print(f"Warning: failed to compute the normal form of the {kind} point:")
                    print(err)
            else:
                v = eigenvectors[ev_index]
        return SpecialPoint(
            kind=kind,
            index=index,
            u=u,
            p=p,
            tau=tau,
            interval=interval,
            precision=precision,
            status=status,
            normal_form=normal_form,
            v=v,
            w=w,
            eigenvalues=eigenvalues,
            omega=omega,
            params=problem.params_at(p, u),
            norm=problem.norm(u, p),
        )

    def tangent_at(self, problem: ContinuationProblem, u: Array, p: float, previous: BranchPoint) -> Array:
        """the tangent at a located special point, oriented along the previous tangent"""
        return ContinuationStepper().tangent(problem, u, p, previous=previous.tangent)
