"""
Continuation and bifurcation tracking functionality.

This package provides the continuation engine (natural, pseudo-arclength),
the detection and localization of bifurcations, branch switching and the
minimally augmented systems for the continuation of codim-2 bifurcations.
"""

from .bifurcations import BifurcationDetector
from .continuation import (
    Continuation,
    ContinuationSettings,
    continuation,
    continuation_from_hopf,
    switch_branch,
)
from .continuation_steppers import ContinuationStepper, NaturalContinuation, PseudoArclengthContinuation
from .minimally_augmented import FoldProblem, HopfProblem, continuation_fold, continuation_hopf
from .normal_forms import first_lyapunov_coefficient, fold_normal_form, hopf_normal_form

__all__ = [
    "ContinuationSettings",
    "Continuation",
    "continuation",
    "switch_branch",
    "continuation_from_hopf",
    "ContinuationStepper",
    "NaturalContinuation",
    "PseudoArclengthContinuation",
    "BifurcationDetector",
    "FoldProblem",
    "HopfProblem",
    "continuation_fold",
    "continuation_hopf",
    "fold_normal_form",
    "hopf_normal_form",
    "first_lyapunov_coefficient",
]
