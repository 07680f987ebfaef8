"""The problem wrapper: vector field, parameter lens and initial guess."""

from __future__ import annotations

import copy
import dataclasses
from collections.abc import Callable
from typing import Any

import numdifftools as nd
import numpy as np
import scipy.sparse as sp

from .solvers import EigenSolver, NewtonResult, NewtonSolver
from .types import Array, ArrayLike, ComplexArray, JacobianFunction, Matrix, Parameters, VectorField


class ParameterLens:
    """
    A projection onto a named scalar of a parameter record.

    The record may be a dict, a namedtuple, a dataclass or any object with
    attributes. Setting a value returns an updated copy of the record, the
    original record is never modified.
    """

    def __init__(self, name: str) -> None:
        #: name of the key / attribute the lens points to
        self.name = name

    def get(self, record: Parameters) -> float:
        """Return the value of the parameter in the given record"""
        if isinstance(record, dict):
            return record[self.name]
        return getattr(record, self.name)

    def set(self, record: Parameters, value: float) -> Parameters:
        """Return a copy of the record, where the parameter is set to the given value"""
        if isinstance(record, dict):
            if self.name not in record:
                raise KeyError(f"Parameter record has no entry '{self.name}'")
            new = dict(record)
            new[self.name] = value
            return new
        if not hasattr(record, self.name):
            raise AttributeError(f"Parameter record has no attribute '{self.name}'")
        # namedtuples
        if hasattr(record, "_replace"):
            return record._replace(**{self.name: value})
        if dataclasses.is_dataclass(record) and not isinstance(record, type):
            return dataclasses.replace(record, **{self.name: value})
        new = copy.copy(record)
        setattr(new, self.name, value)
        return new

    def __repr__(self) -> str:
        return f"ParameterLens({self.name!r})"


def as_lens(lens: str | ParameterLens) -> ParameterLens:
    """Convert parameter names to lenses"""
    return lens if isinstance(lens, ParameterLens) else ParameterLens(lens)


class ContinuationProblem:
    """
    Abstract base class for everything that can be continued: equilibria,
    periodic orbits and the augmented systems of codim-2 continuation.

    The continuation engine only knows about this contract: the residual
    G(x, p), its Jacobian dG/dx, its parameter derivative dG/dp and the
    spectrum that is monitored for bifurcation detection.
    """

    #: is the monitored spectrum of a continuous system (eigenvalues of a
    #: Jacobian) or of a discrete system (Floquet exponents of a cycle)?
    spectrum_type = "continuous"
    #: codimension of the tracked solutions: 1 for plain solution branches,
    #: 2 for curves of bifurcation points
    codim = 1

    def __init__(self) -> None:
        #: finite-difference for calculating parameter derivatives
        self.fd_epsilon = 1e-7
        #: The eigensolver for eigenvalues and -vectors
        self.eigen_solver = EigenSolver()

    @property
    def x0(self) -> Array:
        """the initial guess for the unknowns"""
        raise NotImplementedError

    @property
    def p0(self) -> float:
        """the initial value of the continuation parameter"""
        raise NotImplementedError

    @property
    def parameter_name(self) -> str:
        """name of the continuation parameter"""
        return "p"

    def residual(self, x: Array, p: float) -> Array:
        """Calculate the residuals G(x, p)"""
        raise NotImplementedError(
            "'ContinuationProblem' is an abstract base class - do not use for actual continuation!")

    def jacobian(self, x: Array, p: float) -> Matrix:
        """Calculate the Jacobian dG/dx"""
        raise NotImplementedError(
            "'ContinuationProblem' is an abstract base class - do not use for actual continuation!")

    def dp(self, x: Array, p: float) -> Array:
        """Calculate the parameter derivative dG/dp with central finite differences"""
        eps = self.fd_epsilon * max(1.0, abs(p))
        return (self.residual(x, p + eps) - self.residual(x, p - eps)) / (2 * eps)

    def eigenvalues(self, x: Array, p: float, nev: int | None = None) -> tuple[ComplexArray, ComplexArray]:
        """The spectrum that is monitored for stability and bifurcations"""
        return self.eigen_solver.solve(self.jacobian(x, p), k=nev)

    def norm(self, x: Array, p: float) -> float:
        """the norm of the solution that is stored in the branch"""
        return float(np.linalg.norm(x))

    def params_at(self, p: float, x: Array | None = None) -> Parameters:
        """
        the full parameter record for the given value of the continuation parameter,
        augmented problems also read the parameters that are part of the unknowns x
        """
        return {"p": p}

    def codim2_test_functions(self, x: Array, p: float,
                              eigenvalues: ComplexArray | None) -> dict[str, float]:
        """test functions for codim-2 bifurcations, their zeros mark special points"""
        return {}

    def is_codim2_point(self, kind: str, x: Array, p: float, eigenvalues: ComplexArray | None) -> bool:
        """check a located zero of a test function, e.g. to reject a neutral saddle"""
        return True

    def update_bordering(self, x: Array, p: float) -> None:
        """refresh the bordering vectors of augmented problems"""

    def update_section(self, x: Array, p: float) -> None:
        """refresh the phase condition of periodic orbit problems"""

    def adapt_mesh(self, x: Array, p: float) -> Array:
        """adapt the discretization to the solution, return the new unknowns"""
        return x

    def get_mesh(self) -> Array | None:
        """the current mesh of problems with an adaptive mesh, recorded with every branch point"""
        return None

    def newton_solve(self, x: Array | None = None, p: float | None = None,
                     solver: NewtonSolver | None = None) -> NewtonResult:
        """Solve G(x, p) = 0 for x with fixed p using Newton's method"""
        x = self.x0 if x is None else x
        p = self.p0 if p is None else p
        solver = NewtonSolver() if solver is None else solver
        return solver.solve(lambda y: self.residual(y, p), x, lambda y: self.jacobian(y, p))


class BifurcationProblem(ContinuationProblem):
    """
    Packages a vector field F(u, params), an initial guess u0, the parameter
    record and the lens onto the continuation parameter.

    The Jacobian J = dF/du is either supplied by the user (J=...), or obtained
    automatically: jacobian="fd" uses forward finite differences, while
    jacobian="autodiff" uses the adaptive differentiation of numdifftools.
    """

    def __init__(
        self,
        F: VectorField,
        u0: ArrayLike,
        params: Parameters,
        lens: str | ParameterLens,
        J: JacobianFunction | None = None,
        jacobian: str = "fd",
        norm: Callable[[Array], float] | None = None,
    ) -> None:
        super().__init__()
        if jacobian not in ("fd", "autodiff"):
            raise ValueError(f"Unknown jacobian method '{jacobian}', use 'fd' or 'autodiff'")
        #: the vector field
        self.F = F
        #: the user supplied Jacobian (optional)
        self.J = J
        #: method of obtaining the Jacobian if it is not supplied
        self.jacobian_method = jacobian
        #: the initial guess
        self.u0 = np.asarray(u0, dtype=float).ravel()
        #: the parameter record
        self.params = params
        #: the lens onto the continuation parameter
        self.lens = as_lens(lens)
        # make sure the lens points to an existing parameter
        self.lens.get(params)
        # custom norm for the branch
        self._norm = norm
        #: finite-difference for the Jacobian
        self.jacobian_epsilon = 1e-8
        #: finite-difference for second and third order derivatives
        self.hessian_epsilon = 1e-4
        self.third_derivative_epsilon = 1e-3

    @property
    def x0(self) -> Array:
        return self.u0

    @property
    def p0(self) -> float:
        return float(self.lens.get(self.params))

    @property
    def parameter_name(self) -> str:
        return self.lens.name

    @property
    def ndofs(self) -> int:
        """The number of unknowns / degrees of freedom of the vector field"""
        return self.u0.size

    def set(self, **kwargs: Any) -> BifurcationProblem:
        """
        Return a copy of the problem with some attributes replaced,
        e.g. prob.set(u0=u, params=par, lens="q")
        """
        new = copy.copy(self)
        new.eigen_solver = EigenSolver()
        for key, value in kwargs.items():
            if key == "u0":
                value = np.asarray(value, dtype=float).ravel()
            elif key == "lens":
                value = as_lens(value)
            elif not hasattr(new, key):
                raise TypeError(f"BifurcationProblem has no attribute '{key}'")
            setattr(new, key, value)
        new.lens.get(new.params)
        return new

    def params_at(self, p: float, x: Array | None = None) -> Parameters:
        return self.lens.set(self.params, p)

    def residual(self, x: Array, p: float) -> Array:
        return np.asarray(self.F(x, self.params_at(p)), dtype=np.result_type(x, float)).ravel()

    def jacobian(self, x: Array, p: float) -> Matrix:
        par = self.params_at(p)
        if self.J is not None:
            J = self.J(x, par)
            return J if sp.issparse(J) else np.atleast_2d(np.asarray(J, dtype=float))
        if self.jacobian_method == "autodiff":
            jac = nd.Jacobian(lambda y: np.asarray(self.F(y, par), dtype=float).ravel())(x)
            return np.asarray(jac, dtype=float).reshape((x.size, x.size))
        return self._fd_jacobian(x, par)

    def _fd_jacobian(self, u: Array, par: Parameters) -> Array:
        """Calculate the Jacobian dF/du with forward finite differences"""
        N = u.size
        J = np.zeros((N, N), dtype=u.dtype)
        f0 = np.asarray(self.F(u, par)).ravel()
        u1 = u.copy()
        # perturb every degree of freedom and calculate Jacobian using FD
        for i in range(N):
            k = u1[i]
            eps = self.jacobian_epsilon * max(1.0, abs(k))
            u1[i] = k + eps
            J[:, i] = (np.asarray(self.F(u1, par)).ravel() - f0) / eps
            u1[i] = k
        return J

    def eigenvalues(self, x: Array, p: float, nev: int | None = None) -> tuple[ComplexArray, ComplexArray]:
        return self.eigen_solver.solve(self.jacobian(x, p), k=nev)

    def norm(self, x: Array, p: float) -> float:
        if self._norm is not None:
            return float(self._norm(x))
        return float(np.linalg.norm(x))

    # Higher order derivatives for normal forms and minimally augmented systems.
    # They are all multilinear, so complex arguments are split into real and imaginary parts.

    def d2F(self, u: Array, p: float, dx1: Array, dx2: Array) -> Array:
        """The bilinear form B(dx1, dx2) = d^2F/du^2 (dx1, dx2)"""
        if np.iscomplexobj(dx1):
            return self.d2F(u, p, dx1.real, dx2) + 1j * self.d2F(u, p, dx1.imag, dx2)
        if np.iscomplexobj(dx2):
            return self.d2F(u, p, dx1, dx2.real) + 1j * self.d2F(u, p, dx1, dx2.imag)
        # polarization identity
        return (self._second_difference(u, p, dx1 + dx2) - self._second_difference(u, p, dx1 - dx2)) / 4

    def d3F(self, u: Array, p: float, dx1: Array, dx2: Array, dx3: Array) -> Array:
        """The trilinear form C(dx1, dx2, dx3) = d^3F/du^3 (dx1, dx2, dx3)"""
        if np.iscomplexobj(dx1):
            return self.d3F(u, p, dx1.real, dx2, dx3) + 1j * self.d3F(u, p, dx1.imag, dx2, dx3)
        if np.iscomplexobj(dx2):
            return self.d3F(u, p, dx1, dx2.real, dx3) + 1j * self.d3F(u, p, dx1, dx2.imag, dx3)
        if np.iscomplexobj(dx3):
            return self.d3F(u, p, dx1, dx2, dx3.real) + 1j * self.d3F(u, p, dx1, dx2, dx3.imag)
        # polarization identity
        res = np.zeros(u.size)
        for s in (1, -1):
            for t in (1, -1):
                res += s * t * self._third_difference(u, p, dx1 + s * dx2 + t * dx3)
        return res / 24

    def _second_difference(self, u: Array, p: float, dx: Array) -> Array:
        nrm = np.linalg.norm(dx)
        if nrm == 0:
            return np.zeros(u.size)
        h = self.hessian_epsilon / nrm
        return (self.residual(u + h * dx, p) - 2 * self.residual(u, p) + self.residual(u - h * dx, p)) / h**2

    def _third_difference(self, u: Array, p: float, dx: Array) -> Array:
        nrm = np.linalg.norm(dx)
        if nrm == 0:
            return np.zeros(u.size)
        h = self.third_derivative_epsilon / nrm
        return (self.residual(u + 2 * h * dx, p) - 2 * self.residual(u + h * dx, p)
                + 2 * self.residual(u - h * dx, p) - self.residual(u - 2 * h * dx, p)) / (2 * h**3)

    def hessian_vector(self, u: Array, p: float, v: Array) -> Array:
        """
        The matrix H with H @ y = d^2F/du^2 (v, y), i.e. the derivative of J(u) v w.r.t. u.
        For a supplied or autodiff Jacobian this is the directional derivative of J along v.
        """
        if np.iscomplexobj(v):
            return self.hessian_vector(u, p, v.real) + 1j * self.hessian_vector(u, p, v.imag)
        N = u.size
        nrm = np.linalg.norm(v)
        if nrm == 0:
            return np.zeros((N, N))
        if self.J is not None or self.jacobian_method == "autodiff":
            h = 1e-6 / nrm
            Jp = self.jacobian(u + h * v, p)
            Jm = self.jacobian(u - h * v, p)
            H = (Jp - Jm) / (2 * h)
            return H.toarray() if sp.issparse(H) else np.asarray(H)
        # otherwise use mixed second order differences of F
        H = np.zeros((N, N))
        for k in range(N):
            ek = np.zeros(N)
            ek[k] = 1.0
            H[:, k] = self.d2F(u, p, v, ek)
        return H

    def jacobian_dp_vector(self, u: Array, p: float, v: Array) -> Array:
        """The derivative of J(u, p) v w.r.t. the continuation parameter p"""
        if np.iscomplexobj(v):
            return self.jacobian_dp_vector(u, p, v.real) + 1j * self.jacobian_dp_vector(u, p, v.imag)
        eps = 1e-6 * max(1.0, abs(p))
        if self.J is not None or self.jacobian_method == "autodiff":
            return (self.jacobian(u, p + eps) @ v - self.jacobian(u, p - eps) @ v) / (2 * eps)
        nrm = np.linalg.norm(v)
        if nrm == 0:
            return np.zeros(u.size)
        h = self.hessian_epsilon / nrm
        eps = self.hessian_epsilon * max(1.0, abs(p))
        return (self.residual(u + h * v, p + eps) - self.residual(u - h * v, p + eps)
                - self.residual(u + h * v, p - eps) + self.residual(u - h * v, p - eps)) / (4 * h * eps)

    def __repr__(self) -> str:
        return f"BifurcationProblem(ndofs={self.ndofs}, lens={self.lens!r})"
