"""
This file describes a data structure for branch points, special points,
branches and bifurcation diagrams produced by the continuation.
"""

from __future__ import annotations

import dataclasses
import math
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .errors import MacontError
from .types import Array, Axes, ComplexArray, DataDict, Parameters


class BranchPoint:
    """
    Stores a single converged point of a branch, including the value of the
    continuation parameter and some information on its stability.
    """

    def __init__(
        self,
        u: Array,
        p: float,
        tangent: Array | None = None,
        ds: float = 0.0,
        step: int = 0,
        newton_iterations: int = 0,
        norm: float | None = None,
    ) -> None:
        #: the unknowns
        self.u = u
        #: value of the continuation parameter
        self.p = float(p)
        #: the unit tangent in (u, p)-space
        self.tangent = tangent
        #: the step size that was used to reach this point
        self.ds = ds
        #: the step index, counted from the starting point
        self.step = step
        #: number of Newton iterations the corrector needed
        self.newton_iterations = newton_iterations
        #: value of the solution norm
        self.norm = float(np.linalg.norm(u)) if norm is None else float(norm)
        #: the monitored eigenvalues (or Floquet exponents)
        self.eigenvalues: ComplexArray | None = None
        #: number of true positive eigenvalues
        self.nunstable_eigenvalues: int | None = None
        #: number of true positive and imaginary eigenvalues
        self.nunstable_imaginary_eigenvalues: int | None = None
        #: values of the codim-2 test functions
        self.test_values: dict[str, float] = {}
        #: the mesh the unknowns are discretized on, for problems with an adaptive mesh
        self.mesh: Array | None = None
        #: optional reference to the corresponding branch
        self.branch: Branch | None = None

    def is_stable(self) -> bool | None:
        """Is the solution stable?"""
        # if we don't know the number of eigenvalues, return None
        if self.nunstable_eigenvalues is None:
            return None
        return self.nunstable_eigenvalues == 0

    @property
    def neigenvalues_crossed(self) -> int | None:
        """How many eigenvalues have crossed the imaginary axis with this point?"""
        previous = self.get_neighboring_point(-1)
        if previous is None or previous.nunstable_eigenvalues is None or self.nunstable_eigenvalues is None:
            return None
        return self.nunstable_eigenvalues - previous.nunstable_eigenvalues

    def get_neighboring_point(self, distance: int) -> BranchPoint | None:
        """Get access to a neighboring point in the branch"""
        if self.branch is None:
            return None
        index = self.branch.points.index(self) + distance
        # if index out of range, there is no neighbor at requested distance
        if index < 0 or index >= len(self.branch.points):
            return None
        return self.branch.points[index]

    def __repr__(self) -> str:
        return f"BranchPoint(step={self.step}, p={self.p:.6g}, norm={self.norm:.6g})"


@dataclass(frozen=True, eq=False)
class SpecialPoint:
    """
    A bifurcation point that was detected on a branch. Special points are
    immutable once recorded.
    """

    #: type of the point: fold, bp, hopf, cusp, bt, zh, hh, gh, pd, ns, foldFlip, foldNS, flipNS
    kind: str
    #: index of the branch point after which the special point was located
    index: int
    #: the unknowns at the special point
    u: Array
    #: value of the continuation parameter
    p: float
    #: the tangent at the special point
    tau: Array | None = None
    #: parameter values bracketing the special point
    interval: tuple[float, float] = (math.nan, math.nan)
    #: absolute value of the test function after localization
    precision: float = math.nan
    #: "converged" if the localization met its tolerance, "guess" otherwise
    status: str = "guess"
    #: normal form coefficients
    normal_form: dict[str, Any] = field(default_factory=dict)
    #: right null-vector
    v: Array | None = None
    #: left null-vector
    w: Array | None = None
    #: the eigenvalues at the special point
    eigenvalues: ComplexArray | None = None
    #: frequency of Hopf and Neimark-Sacker points
    omega: float | None = None
    #: the full parameter record at the special point
    params: Parameters = None
    #: solution norm at the special point
    norm: float = math.nan

    def __str__(self) -> str:
        return f"{self.kind} at p={self.p:.8g} ({self.status}, index {self.index})"


class Branch:
    """
    A branch is obtained from a parameter continuation and stores an ordered,
    append-only list of branch points, the detected special points and the
    reason why the continuation terminated.
    """

    # static variable counting the number of Branch instances
    _branch_count = 0

    def __init__(self, parameter_name: str = "p") -> None:
        # generate branch ID
        Branch._branch_count += 1
        #: unique identifier of the branch
        self.id = Branch._branch_count
        #: list of points along the branch
        self.points: list[BranchPoint] = []
        #: list of detected special points
        self.special_points: list[SpecialPoint] = []
        #: name of the continuation parameter
        self.parameter_name = parameter_name
        #: why did the continuation terminate?
        #: "running", "parameter_bounds", "max_steps", "stopped", "stalled", "singular"
        #: or "not_converged" (no solution at the starting point)
        self.termination = "running"
        #: the exception that ended the branch, if any
        self.error: MacontError | None = None

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[BranchPoint]:
        return iter(self.points)

    def __getitem__(self, index: int) -> BranchPoint:
        return self.points[index]

    def is_empty(self) -> bool:
        """Is the current branch empty?"""
        return len(self.points) == 0

    def add_point(self, point: BranchPoint) -> None:
        """Add a point to the branch"""
        # assign this branch as the point's branch
        point.branch = self
        self.points.append(point)

    def add_special_point(self, special_point: SpecialPoint) -> None:
        """Add a special point to the branch"""
        self.special_points.append(special_point)

    def get_special_points(self, kind: str | None = None) -> list[SpecialPoint]:
        """List the special points on the branch, optionally of a given kind only"""
        if kind is None:
            return list(self.special_points)
        return [s for s in self.special_points if s.kind == kind]

    def parameter_vals(self) -> np.ndarray:
        """List of continuation parameter values along the branch"""
        return np.array([s.p for s in self.points])

    def norm_vals(self) -> np.ndarray:
        """list of solution norm values along the branch"""
        return np.array([s.norm for s in self.points])

    def data(self, only: str | None = None) -> tuple[np.ndarray, np.ndarray]:
        """
        Returns the list of parameters and norms of the branch
        optional argument only (str) may restrict the data to:
        - only="stable": stable parts only
        - only="unstable": unstable parts only
        """
        condition: Any = False
        if only == "stable":
            condition = [not s.is_stable() for s in self.points]
        elif only == "unstable":
            condition = [s.is_stable() is not False for s in self.points]
        # mask lists where condition is met and return
        pvals = np.ma.masked_where(condition, self.parameter_vals())
        nvals = np.ma.masked_where(condition, self.norm_vals())
        return (pvals, nvals)

    def save(self, filename: str) -> None:
        """
        Store the branch to the disk in a format that allows for restoring it later.
        The parameter records of the special points are pickled, so their types
        must be importable when loading.
        """
        data: DataDict = {}
        data["parameter_name"] = self.parameter_name
        data["termination"] = self.termination
        data["u"] = _pack([s.u for s in self.points])
        data["p"] = self.parameter_vals()
        data["norm"] = self.norm_vals()
        data["tangent"] = _pack([s.tangent for s in self.points])
        data["ds"] = np.array([s.ds for s in self.points])
        data["step"] = np.array([s.step for s in self.points])
        data["newton_iterations"] = np.array([s.newton_iterations for s in self.points])
        data["eigenvalues"] = _pack([s.eigenvalues for s in self.points])
        data["nunstable_eigenvalues"] = _pack([s.nunstable_eigenvalues for s in self.points])
        data["nunstable_imaginary_eigenvalues"] = _pack([s.nunstable_imaginary_eigenvalues for s in self.points])
        data["mesh"] = _pack([s.mesh for s in self.points])
        # shallow field dicts, the parameter records are pickled as they are
        data["special_points"] = _pack([{f.name: getattr(s, f.name) for f in dataclasses.fields(s)}
                                        for s in self.special_points])
        # save everything to the file
        np.savez(filename, **data)

    @classmethod
    def load(cls, filename: str) -> Branch:
        """Load a branch from a file, that was stored with Branch.save(filename)"""
        data = np.load(filename, allow_pickle=True)
        branch = cls(parameter_name=str(data["parameter_name"]))
        branch.termination = str(data["termination"])
        # restore the points and their data
        for i in range(len(data["p"])):
            point = BranchPoint(
                np.asarray(data["u"][i]), data["p"][i],
                tangent=data["tangent"][i],
                ds=float(data["ds"][i]),
                step=int(data["step"][i]),
                newton_iterations=int(data["newton_iterations"][i]),
                norm=data["norm"][i],
            )
            point.eigenvalues = data["eigenvalues"][i]
            point.nunstable_eigenvalues = data["nunstable_eigenvalues"][i]
            point.nunstable_imaginary_eigenvalues = data["nunstable_imaginary_eigenvalues"][i]
            if "mesh" in data.files:
                point.mesh = data["mesh"][i]
            branch.add_point(point)
        for sp_data in data["special_points"]:
            branch.add_special_point(SpecialPoint(**sp_data))
        return branch

    def __repr__(self) -> str:
        return (f"Branch(id={self.id}, npoints={len(self.points)}, "
                f"special_points={[s.kind for s in self.special_points]}, termination={self.termination!r})")


def _pack(items: list) -> np.ndarray:
    """pack a list of (possibly ragged) items into a 1d object array"""
    arr = np.empty(len(items), dtype=object)
    for i, item in enumerate(items):
        arr[i] = item
    return arr


class BifurcationDiagram:
    """
    Basically just a list of branches and methods to act upon.
    Also: a fancy plotting method.
    """

    def __init__(self, branches: list[Branch] | None = None) -> None:
        #: list of branches
        self.branches: list[Branch] = [] if branches is None else list(branches)
        #: x-limits of the diagram
        self.xlim: tuple[float, float] | None = None
        #: y-limits of the diagram
        self.ylim: tuple[float, float] | None = None
        #: name of the continuation parameter
        self.parameter_name = self.branches[0].parameter_name if self.branches else ""
        #: name of the norm
        self.norm_name = "norm"

    def add_branch(self, branch: Branch) -> None:
        """Add a branch to the diagram"""
        self.branches.append(branch)
        if not self.parameter_name:
            self.parameter_name = branch.parameter_name

    def get_branch_by_ID(self, branch_id: int) -> Branch | None:
        """Return a branch by its ID"""
        for branch in self.branches:
            if branch.id == branch_id:
                return branch
        return None

    def remove_branch_by_ID(self, branch_id: int) -> None:
        """Remove a branch from the BifurcationDiagram by its ID"""
        self.branches = [b for b in self.branches if b.id != branch_id]

    def special_points(self, kind: str | None = None) -> list[SpecialPoint]:
        """List the special points of all branches"""
        return [s for b in self.branches for s in b.get_special_points(kind)]

    def plot(self, ax: Axes) -> None:
        """Plot the bifurcation diagram"""
        if self.xlim is not None:
            ax.set_xlim(self.xlim)
        if self.ylim is not None:
            ax.set_ylim(self.ylim)
        # plot every branch separately
        for n, branch in enumerate(self.branches):
            color = f"C{n % 10}"
            p, norm = branch.data()
            ax.plot(p, norm, linewidth=0.7, color=color)
            p, norm = branch.data(only="stable")
            ax.plot(p, norm, linewidth=1.8, color=color)
            # annotate special points with their types
            for sp in branch.special_points:
                ax.plot(sp.p, sp.norm, "*", color="k")
                ax.annotate(" " + sp.kind, (sp.p, sp.norm))
        ax.plot(np.nan, np.nan, "*", color="k", label="special points")
        ax.set_xlabel(self.parameter_name)
        ax.set_ylabel(self.norm_name)
        ax.legend()

    def load_branch(self, filename: str) -> Branch:
        """Load a branch from a file into the diagram, that was stored with Branch.save(filename)"""
        branch = Branch.load(filename)
        self.add_branch(branch)
        return branch
