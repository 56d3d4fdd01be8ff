from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

from .problem import ExactSolution, PoissonProblem
from .space import BoundaryConditions, DirichletBC


@dataclass(frozen=True)
class BenchmarkCase:
    name: str
    mesh_description: Dict[str, Any]
    problem: PoissonProblem
    bc: BoundaryConditions
    exact: Optional[ExactSolution] = None


def _lshape_angle(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    # angle from the positive y axis; the missing quadrant x < 0, y < 0 is
    # the cut, so (-pi/2, pi] covers the domain
    a = np.arctan2(x, y)
    return np.where(a < -0.5 * np.pi - 1e-12, a + 2.0 * np.pi, a)


def lshape_exact_value(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """u = r^(2/3) sin(2a/3 + pi/3): harmonic, zero on the re-entrant edges."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    r = np.sqrt(x * x + y * y)
    a = _lshape_angle(x, y)
    return r ** (2.0 / 3.0) * np.sin(2.0 * a / 3.0 + np.pi / 3.0)


def lshape_exact_gradient(x: np.ndarray, y: np.ndarray):
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    r2 = x * x + y * y
    phi = 2.0 * _lshape_angle(x, y) / 3.0 + np.pi / 3.0
    with np.errstate(divide="ignore", invalid="ignore"):
        c = (2.0 / 3.0) * r2 ** (-2.0 / 3.0)
    s, co = np.sin(phi), np.cos(phi)
    return c * (x * s + y * co), c * (y * s - x * co)


def lshape_mesh_description() -> Dict[str, Any]:
    """[-1, 1]^2 without the quadrant x < 0, y < 0; three unit squares."""
    return {
        "vertices": [
            [0.0, -1.0],
            [1.0, -1.0],
            [-1.0, 0.0],
            [0.0, 0.0],
            [1.0, 0.0],
            [-1.0, 1.0],
            [0.0, 1.0],
            [1.0, 1.0],
        ],
        "elements": [
            [0, 1, 4, 3, 0],
            [3, 4, 7, 6, 0],
            [2, 3, 6, 5, 0],
        ],
        "boundaries": [
            [0, 1, 1],
            [1, 4, 2],
            [3, 0, 4],
            [4, 7, 2],
            [7, 6, 3],
            [2, 3, 4],
            [6, 5, 3],
            [5, 2, 1],
        ],
    }


def make_lshape_case() -> BenchmarkCase:
    """
    Standard benchmark for adaptive FEM: a harmonic function on the L-shaped
    domain with a singular gradient at the re-entrant corner. Dirichlet data
    from the exact solution on the whole boundary.
    """
    exact = ExactSolution(value=lshape_exact_value, gradient=lshape_exact_gradient)
    return BenchmarkCase(
        name="lshape",
        mesh_description=lshape_mesh_description(),
        problem=PoissonProblem(name="laplace"),
        bc=DirichletBC(lshape_exact_value),
        exact=exact,
    )


def make_default_cases() -> Dict[str, BenchmarkCase]:
    cases = [make_lshape_case()]
    return {c.name: c for c in cases}
