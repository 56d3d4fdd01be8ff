"""
Element-wise H1 error measures between a coarse solution and a reference
(the fine-space solution, or a closed-form exact solution).
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Tuple

import numpy as np

from ..core.errors import EstimatorDivergenceError
from ..core.problem import ExactSolution
from ..operators.basis import tensor_quadrature
from ..operators.project import FineSampler
from ..operators.solve import Solution

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorEstimate:
    """
    Per-element error contributions (absolute H1 norms) and the H1 norm of
    the reference they were measured against.
    """

    element_errors: Mapping[int, float]
    reference_norm: float
    kind: str = "estimate"

    def __post_init__(self) -> None:
        errs = dict(self.element_errors)
        for eid, e in errs.items():
            if not math.isfinite(e):
                raise EstimatorDivergenceError(f"{self.kind} error of element {eid} is not finite ({e})")
            if e < 0.0:
                raise ValueError(f"ErrorEstimate: negative contribution {e} for element {eid}")
        if not math.isfinite(self.reference_norm):
            raise EstimatorDivergenceError(f"{self.kind} reference norm is not finite")
        object.__setattr__(self, "element_errors", MappingProxyType(errs))

    @property
    def total(self) -> float:
        """sqrt of the sum of squared contributions."""
        return float(math.sqrt(sum(e * e for e in self.element_errors.values())))

    @property
    def relative(self) -> float:
        if self.reference_norm <= 0.0:
            return 0.0 if self.total == 0.0 else math.inf
        return self.total / self.reference_norm

    @property
    def percent(self) -> float:
        return 100.0 * self.relative

    @property
    def max_error(self) -> float:
        return max(self.element_errors.values(), default=0.0)

    def ranked(self) -> List[Tuple[int, float]]:
        """(element id, error) by descending error, ties by id."""
        return sorted(self.element_errors.items(), key=lambda kv: (-kv[1], kv[0]))


class ErrorEstimator(ABC):
    kind = "estimate"

    @abstractmethod
    def estimate(self, coarse: Solution) -> ErrorEstimate:
        ...


class ReferenceEstimator(ErrorEstimator):
    """
    A posteriori estimate: ||u_fine - u_coarse||_H1 on each coarse element,
    relative to ||u_fine||_H1 over the domain.
    """

    kind = "estimate"

    def __init__(self, sampler: FineSampler) -> None:
        self.sampler = sampler

    def estimate(self, coarse: Solution) -> ErrorEstimate:
        errors: Dict[int, float] = {}
        ref2 = 0.0
        for k, (eid, rect) in enumerate(zip(coarse.layout.ids, coarse.layout.rects)):
            s = self.sampler.sample(rect)
            u, ux, uy = coarse.evaluate_element(k, s.x, s.y)
            d2 = float(np.sum(s.w * ((s.u - u) ** 2 + (s.ux - ux) ** 2 + (s.uy - uy) ** 2)))
            errors[eid] = math.sqrt(d2)
            ref2 += s.norm2()
        est = ErrorEstimate(errors, math.sqrt(ref2), kind=self.kind)
        logger.debug("estimate: total=%.6g, norm=%.6g", est.total, est.reference_norm)
        return est


class ExactEstimator(ErrorEstimator):
    """
    Exact error ||u_exact - u_coarse||_H1 per element, with `extra_points`
    Gauss points per direction beyond the element order.
    """

    kind = "exact"

    def __init__(self, exact: ExactSolution, extra_points: int = 6) -> None:
        self.exact = exact
        self.extra_points = int(extra_points)

    def estimate(self, coarse: Solution) -> ErrorEstimate:
        errors: Dict[int, float] = {}
        ref2 = 0.0
        for k, (eid, rect, order) in enumerate(zip(coarse.layout.ids, coarse.layout.rects, coarse.layout.orders)):
            nq = max(order) + self.extra_points
            x, y, w = tensor_quadrature(rect, nq, nq)
            ue = np.asarray(self.exact.value(x, y), dtype=float)
            gx, gy = self.exact.gradient(x, y)
            u, ux, uy = coarse.evaluate_element(k, x, y)
            d2 = float(np.sum(w * ((ue - u) ** 2 + (gx - ux) ** 2 + (gy - uy) ** 2)))
            errors[eid] = math.sqrt(d2)
            ref2 += float(np.sum(w * (ue ** 2 + gx ** 2 + gy ** 2)))
        return ErrorEstimate(errors, math.sqrt(ref2), kind=self.kind)
