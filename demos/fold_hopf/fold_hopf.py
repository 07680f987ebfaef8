r"""
Fold-Hopf system

x' = p + x^2 - kappa (y^2 + z^2)
y' = (x - c) y - z - y (y^2 + z^2)
z' = y + (x - c) z - z (y^2 + z^2)

The equilibria x = -+sqrt(-p) lose stability in a supercritical Hopf point at
p = -c^2 and turn around in a fold at p = 0. We continue the equilibria,
the periodic orbits born in the Hopf point, and the fold and Hopf points in
the second parameter c, which meet in the zero-Hopf point at c = 0.
"""

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from macont import (
    BifurcationDiagram,
    BifurcationProblem,
    continuation,
    continuation_fold,
    continuation_from_hopf,
    continuation_hopf,
)
from macont.periodic import PeriodicOrbitOCollProblem


def rhs(u, par):
    x, y, z = u
    r2 = y**2 + z**2
    return np.array([par["p"] + x**2 - par["kappa"] * r2,
                     (x - par["c"]) * y - z - y * r2,
                     y + (x - par["c"]) * z - z * r2])


problem = BifurcationProblem(rhs, [-1.0, 0.0, 0.0], {"p": -1.0, "c": -0.5, "kappa": 1.0}, "p")

# equilibria
equilibria = continuation(problem, ds=0.05, dsmax=0.05, max_steps=100, p_min=-1.2, verbosity=1)
hopf = equilibria.get_special_points("hopf")[0]
fold = equilibria.get_special_points("fold")[0]

# periodic orbits from the Hopf point
po = PeriodicOrbitOCollProblem(problem, Ntst=20, m=4)
orbits = continuation_from_hopf(problem, equilibria, hopf, po, ds=0.02, dsmax=0.05, max_steps=40, p_max=0.3)

# two-parameter curves
fold_curve = continuation_fold(problem, equilibria, fold, "c", ds=0.1, dsmax=0.1, p_max=0.5,
                               detect_codim2_bifurcation=True)
hopf_curve = continuation_hopf(problem, equilibria, hopf, "c", ds=0.05, dsmax=0.05, p_max=0.3,
                               detect_codim2_bifurcation=True)

fig, ax = plt.subplots(1, 3, figsize=(15, 5))

diagram = BifurcationDiagram([equilibria, orbits])
diagram.plot(ax[0])
ax[0].set_title("bifurcation diagram")

for point in orbits[::5]:
    orbit = po.get_orbit(point.u, point.p)
    ax[1].plot(orbit.u[1], orbit.u[2], linewidth=0.8)
ax[1].set_xlabel("y")
ax[1].set_ylabel("z")
ax[1].set_title("periodic orbits")

for curve, label in [(fold_curve, "fold"), (hopf_curve, "hopf")]:
    # the first continuation parameter is the last unknown but omega
    p = [point.u[problem.ndofs] for point in curve]
    ax[2].plot(curve.parameter_vals(), p, label=label)
    for sp in curve.special_points:
        ax[2].plot(sp.p, sp.params["p"], "*", color="k")
        ax[2].annotate(" " + sp.kind, (sp.p, sp.params["p"]))
ax[2].set_xlabel("c")
ax[2].set_ylabel("p")
ax[2].legend()

fig.savefig(Path(__file__).with_suffix(".png"))
plt.show(block=True)
