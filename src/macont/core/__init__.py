"""
The 'core' package contains the problem wrapper, the solvers and the data model.
"""

from .errors import (
    BorderingSingular,
    ContinuationStalled,
    IntegrationDiverged,
    MacontError,
    NonConvergence,
    SingularJacobian,
)
from .problem import BifurcationProblem, ContinuationProblem, ParameterLens
from .solution import BifurcationDiagram, Branch, BranchPoint, SpecialPoint
from .solvers import EigenSolver, LinearSolver, NewtonResult, NewtonSolver, bordered_solve

__all__ = [
    "ContinuationProblem",
    "BifurcationProblem",
    "ParameterLens",
    "BranchPoint",
    "SpecialPoint",
    "Branch",
    "BifurcationDiagram",
    "LinearSolver",
    "NewtonSolver",
    "NewtonResult",
    "EigenSolver",
    "bordered_solve",
    "MacontError",
    "NonConvergence",
    "SingularJacobian",
    "BorderingSingular",
    "ContinuationStalled",
    "IntegrationDiverged",
]
