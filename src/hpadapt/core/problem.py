from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

Field = Callable[[np.ndarray, np.ndarray], np.ndarray]
GradField = Callable[[np.ndarray, np.ndarray], Tuple[np.ndarray, np.ndarray]]


@dataclass(frozen=True)
class PoissonProblem:
    """
    -Δu = f in the domain. rhs_func None means f = 0 (Laplace).
    """

    name: str = "laplace"
    rhs_func: Optional[Field] = None

    def rhs(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        if self.rhs_func is None:
            return np.zeros_like(x, dtype=float)
        return np.asarray(self.rhs_func(x, y), dtype=float) * np.ones_like(x)


@dataclass(frozen=True)
class ExactSolution:
    """Closed-form reference: value and gradient functions."""

    value: Field
    gradient: GradField

    def __call__(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        return np.asarray(self.value(x, y), dtype=float)
