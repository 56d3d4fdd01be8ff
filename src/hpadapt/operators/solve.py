# operators/solve.py
from __future__ import annotations

import logging
import warnings
from typing import Dict, Optional, Tuple

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from ..core.errors import SingularSystemError
from ..core.mesh import Order
from ..core.problem import PoissonProblem
from ..core.space import ApproximationSpace, SpaceLayout
from .assemble import DEFAULT_PENALTY, assemble_dg_system
from .basis import evaluate, from_reference, tensor_quadrature

logger = logging.getLogger(__name__)


# ============================
# Discrete solution
# ============================

class Solution:
    """
    Coefficient vector tied to one frozen space layout. Read-only: refining
    the mesh afterwards does not affect it.
    """

    def __init__(self, layout: SpaceLayout, coeffs: np.ndarray) -> None:
        c = np.array(coeffs, dtype=float).reshape(-1)
        if c.size != layout.ndof:
            raise ValueError(f"Solution: {c.size} coefficients for a space with {layout.ndof} DOF")
        c.setflags(write=False)
        self.layout = layout
        self.coeffs = c

    @property
    def ndof(self) -> int:
        return self.layout.ndof

    def element_coeffs(self, k: int) -> np.ndarray:
        return self.coeffs[self.layout.offsets[k]:self.layout.offsets[k + 1]]

    def evaluate_element(self, k: int, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Value and gradient at physical points of the k-th element."""
        return evaluate(self.element_coeffs(k), self.layout.rects[k], self.layout.orders[k], x, y)

    def order_map(self) -> Dict[int, Order]:
        return dict(zip(self.layout.ids, self.layout.orders))

    def element_grid(self, k: int, n: int = 6) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """(X, Y, U) on an n-by-n grid of the k-th element (plotting)."""
        t = np.linspace(-1.0, 1.0, n)
        XI, ETA = np.meshgrid(t, t, indexing="ij")
        X, Y = from_reference(self.layout.rects[k], XI, ETA)
        u, _, _ = self.evaluate_element(k, X.reshape(-1), Y.reshape(-1))
        return X, Y, u.reshape(n, n)

    def h1_norm(self) -> float:
        total = 0.0
        for k, (rect, order) in enumerate(zip(self.layout.rects, self.layout.orders)):
            nq = max(order) + 1
            x, y, w = tensor_quadrature(rect, nq, nq)
            u, ux, uy = self.evaluate_element(k, x, y)
            total += float(np.sum(w * (u * u + ux * ux + uy * uy)))
        return float(np.sqrt(total))


# ============================
# Low-level linear algebra
# ============================

def solve_linear_system(A: sp.spmatrix, f: np.ndarray) -> np.ndarray:
    """
    Sparse direct solve. A singular factorisation or a non-finite result
    raises SingularSystemError.
    """
    with warnings.catch_warnings():
        warnings.simplefilter("error", spla.MatrixRankWarning)
        try:
            u = spla.spsolve(A.tocsc(), f)
        except (spla.MatrixRankWarning, RuntimeError) as exc:
            raise SingularSystemError(f"linear system is singular: {exc}") from exc
    u = np.asarray(u, dtype=float).reshape(-1)
    if not np.all(np.isfinite(u)):
        raise SingularSystemError("linear solve produced non-finite values")
    return u


def compute_residual(A: sp.spmatrix, u: np.ndarray, f: np.ndarray) -> np.ndarray:
    """
    r = f - A u
    """
    return f - A @ u


def residual_norms(A: sp.spmatrix, u: np.ndarray, f: np.ndarray) -> Dict[str, float]:
    r = compute_residual(A, u, f)
    fn = float(np.linalg.norm(f))
    rn = float(np.linalg.norm(r))
    return {
        "||r||2": rn,
        "||f||2": fn,
        "||r||2/||f||2": rn / fn if fn > 0 else np.nan,
        "||u||2": float(np.linalg.norm(u)),
    }


# ============================
# Solve service
# ============================

class SolveService:
    """
    Blocking solve/projection service consumed by the adaptivity loop.

    solve(space)                     assemble + factorise on the given space
    project(fine, coarse_space)      H1 projection of a fine solution, no solve
    """

    def __init__(self, problem: Optional[PoissonProblem] = None, *, penalty: float = DEFAULT_PENALTY) -> None:
        if not penalty > 0.0:
            raise ValueError("SolveService: penalty must be > 0")
        self.problem = problem or PoissonProblem()
        self.penalty = float(penalty)

    def solve(self, space: ApproximationSpace) -> Solution:
        A, f, layout = assemble_dg_system(space, self.problem, penalty=self.penalty)
        u = solve_linear_system(A, f)
        logger.debug("solve: ndof=%d, %s", layout.ndof, residual_norms(A, u, f))
        return Solution(layout, u)

    def project(self, fine: Solution, coarse_space: ApproximationSpace, sampler=None) -> Solution:
        # imported here: project.py depends on Solution
        from .project import project_solution

        return project_solution(fine, coarse_space.snapshot(), sampler=sampler)
