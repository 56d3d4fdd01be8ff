# operators/project.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

from ..core.errors import IncompatibleSpaceError
from ..core.mesh import Order, Rect
from ..core.space import SpaceLayout
from .basis import local_h1_gram, physical_basis, tensor_quadrature
from .solve import Solution


@dataclass(frozen=True)
class FineSample:
    """Quadrature data (points, weights, value, gradient) of a fine solution."""

    x: np.ndarray
    y: np.ndarray
    w: np.ndarray
    u: np.ndarray
    ux: np.ndarray
    uy: np.ndarray

    def restrict(self, rect: Rect) -> "FineSample":
        x0, x1, y0, y1 = rect
        m = (self.x > x0) & (self.x < x1) & (self.y > y0) & (self.y < y1)
        return FineSample(self.x[m], self.y[m], self.w[m], self.u[m], self.ux[m], self.uy[m])

    def norm2(self) -> float:
        return float(np.sum(self.w * (self.u ** 2 + self.ux ** 2 + self.uy ** 2)))


class FineSampler:
    """
    Quadrature of a fine solution over coarse rectangles.

    Each coarse rectangle must be tiled exactly by fine elements (the fine
    space is a refinement of the coarse one); otherwise
    IncompatibleSpaceError. Rules use max(order) + 2 points per direction on
    every fine element, exact for squared differences between the fine
    solution and any polynomial of one degree more than the fine order.
    Results are cached per rectangle.
    """

    def __init__(self, fine: Solution) -> None:
        self.fine = fine
        self._rects = fine.layout.rect_array()
        self._cache: Dict[Rect, FineSample] = {}

    def covering_rows(self, rect: Rect) -> np.ndarray:
        x0, x1, y0, y1 = rect
        R = self._rects
        tol = 1e-12 * ((x1 - x0) + (y1 - y0))
        inside = (R[:, 0] >= x0 - tol) & (R[:, 1] <= x1 + tol) & (R[:, 2] >= y0 - tol) & (R[:, 3] <= y1 + tol)
        rows = np.flatnonzero(inside)
        area = float(np.sum((R[rows, 1] - R[rows, 0]) * (R[rows, 3] - R[rows, 2])))
        target = (x1 - x0) * (y1 - y0)
        if rows.size == 0 or abs(area - target) > 1e-9 * target:
            raise IncompatibleSpaceError(
                f"coarse element {rect} is not tiled by the fine space "
                f"(covered area {area:.6g} of {target:.6g})"
            )
        return rows

    def sample(self, rect: Rect) -> FineSample:
        rect = tuple(float(v) for v in rect)
        hit = self._cache.get(rect)
        if hit is not None:
            return hit
        parts = []
        for r in self.covering_rows(rect):
            order = self.fine.layout.orders[r]
            nq = max(order) + 2
            x, y, w = tensor_quadrature(self.fine.layout.rects[r], nq, nq)
            u, ux, uy = self.fine.evaluate_element(int(r), x, y)
            parts.append((x, y, w, u, ux, uy))
        s = FineSample(*(np.concatenate(col) for col in zip(*parts)))
        self._cache[rect] = s
        return s


def project_sample(sample: FineSample, rect: Rect, order: Order) -> Tuple[np.ndarray, float]:
    """
    H1 projection of the sampled function onto Q_{px,py}(rect), using the
    sample points inside rect.

    Returns (coefficients, squared H1 norm of the projection error).
    """
    s = sample.restrict(rect)
    phi, phi_x, phi_y = physical_basis(rect, order, s.x, s.y)
    b = phi @ (s.w * s.u) + phi_x @ (s.w * s.ux) + phi_y @ (s.w * s.uy)
    c = np.linalg.solve(local_h1_gram(rect, order), b)
    eu = s.u - c @ phi
    ex = s.ux - c @ phi_x
    ey = s.uy - c @ phi_y
    return c, float(np.sum(s.w * (eu * eu + ex * ex + ey * ey)))


def project_solution(fine: Solution, layout: SpaceLayout, sampler: Optional[FineSampler] = None) -> Solution:
    """
    Projection of a fine solution onto a coarser discontinuous space.

    The broken H1 inner product decouples element by element, so the global
    projection is the collection of local ones.
    """
    sampler = sampler if sampler is not None else FineSampler(fine)
    if sampler.fine is not fine:
        raise IncompatibleSpaceError("sampler belongs to a different fine solution")
    coeffs = np.zeros(layout.ndof)
    for k, (rect, order) in enumerate(zip(layout.rects, layout.orders)):
        c, _ = project_sample(sampler.sample(rect), rect, order)
        coeffs[layout.offsets[k]:layout.offsets[k + 1]] = c
    return Solution(layout, coeffs)
