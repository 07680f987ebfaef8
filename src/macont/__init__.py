"""
macont: Minimally Augmented CONTinuation.

A numerical continuation and bifurcation analysis package written in Python.
It tracks branches of equilibria and periodic orbits of parametrized systems,
detects and locates their bifurcations and continues fold, Hopf,
period-doubling and Neimark-Sacker points in two parameters.
"""

from . import periodic
from .continuation import (
    ContinuationSettings,
    continuation,
    continuation_fold,
    continuation_from_hopf,
    continuation_hopf,
    switch_branch,
)
from .core import (
    BifurcationDiagram,
    BifurcationProblem,
    Branch,
    BranchPoint,
    EigenSolver,
    LinearSolver,
    NewtonSolver,
    ParameterLens,
    SpecialPoint,
)

__all__ = [
    "BifurcationProblem",
    "ParameterLens",
    "ContinuationSettings",
    "continuation",
    "switch_branch",
    "continuation_from_hopf",
    "continuation_fold",
    "continuation_hopf",
    "Branch",
    "BranchPoint",
    "SpecialPoint",
    "BifurcationDiagram",
    "LinearSolver",
    "NewtonSolver",
    "EigenSolver",
    "periodic",
]
