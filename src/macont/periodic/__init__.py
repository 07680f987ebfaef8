"""
Periodic orbits: the discretizations by trapezoidal time-stepping, orthogonal
collocation and shooting, and the continuation of their codim-2 bifurcations.
"""

from .base import PeriodicOrbit, PeriodicOrbitProblem
from .codim2 import NeimarkSackerProblem, PeriodDoublingProblem, continuation_ns, continuation_pd
from .collocation import PeriodicOrbitOCollProblem
from .shooting import Flow, ShootingProblem
from .trapezoid import PeriodicOrbitTrapProblem

__all__ = [
    "PeriodicOrbit",
    "PeriodicOrbitProblem",
    "PeriodicOrbitTrapProblem",
    "PeriodicOrbitOCollProblem",
    "ShootingProblem",
    "Flow",
    "PeriodDoublingProblem",
    "NeimarkSackerProblem",
    "continuation_pd",
    "continuation_ns",
]
