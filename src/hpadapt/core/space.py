# core/space.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Tuple

import numpy as np

from .mesh import Marker, Mesh, Order, Rect


class BCType(Enum):
    ESSENTIAL = "essential"
    NATURAL = "natural"


class BoundaryConditions(ABC):
    """Boundary-condition classifier + value function, keyed by boundary marker."""

    @abstractmethod
    def classify(self, marker: Marker) -> BCType:
        ...

    @abstractmethod
    def value(self, marker: Marker, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        """Dirichlet value (essential) or normal flux (natural) at the points."""


class DirichletBC(BoundaryConditions):
    """Every marker essential, values from one function g(x, y)."""

    def __init__(self, g: Callable[[np.ndarray, np.ndarray], np.ndarray]) -> None:
        self.g = g

    def classify(self, marker: Marker) -> BCType:
        return BCType.ESSENTIAL

    def value(self, marker: Marker, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        return np.asarray(self.g(x, y), dtype=float) * np.ones_like(x)


class MarkerBC(BoundaryConditions):
    """
    Per-marker types and value functions. Markers missing from `types` get
    `default`; markers missing from `values` get zero data.
    """

    def __init__(
        self,
        types: Mapping[Marker, BCType],
        values: Optional[Mapping[Marker, Callable[[np.ndarray, np.ndarray], np.ndarray]]] = None,
        default: BCType = BCType.ESSENTIAL,
    ) -> None:
        self.types = dict(types)
        self.values = dict(values or {})
        self.default = default

    def classify(self, marker: Marker) -> BCType:
        return self.types.get(marker, self.default)

    def value(self, marker: Marker, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        fn = self.values.get(marker)
        if fn is None:
            return np.zeros_like(x, dtype=float)
        return np.asarray(fn(x, y), dtype=float) * np.ones_like(x)


@dataclass(frozen=True)
class SpaceLayout:
    """
    Frozen DOF numbering of a space: one row per active element, ordered by
    element id. Element k owns coefficients offsets[k]:offsets[k+1], laid out
    as a (px+1, py+1) array of tensor Legendre modes.
    """

    ids: Tuple[int, ...]
    rects: Tuple[Rect, ...]
    orders: Tuple[Order, ...]
    offsets: Tuple[int, ...]

    @property
    def ndof(self) -> int:
        return self.offsets[-1]

    def __len__(self) -> int:
        return len(self.ids)

    def dofs(self, k: int) -> np.ndarray:
        return np.arange(self.offsets[k], self.offsets[k + 1])

    def rect_array(self) -> np.ndarray:
        return np.asarray(self.rects, dtype=float).reshape(-1, 4)


class ApproximationSpace:
    """
    Discontinuous tensor-Legendre space on a mesh.

    The space holds the mesh it is built on; the per-element orders live on
    the mesh elements, so refining the mesh and changing orders both go
    through here or through the mesh directly.
    """

    def __init__(self, mesh: Mesh, bc: BoundaryConditions, p_init: Optional[int] = None) -> None:
        if not isinstance(bc, BoundaryConditions):
            raise ValueError("ApproximationSpace: bc must be a BoundaryConditions instance")
        self.mesh = mesh
        self.bc = bc
        if p_init is not None:
            self.set_uniform_order(p_init)

    def set_uniform_order(self, p: int) -> None:
        for e in self.mesh.active_elements():
            self.mesh.set_order(e.id, (p, p))

    def get_order(self, eid: int) -> Order:
        return self.mesh[eid].order

    def set_order(self, eid: int, order: Order) -> None:
        self.mesh.set_order(eid, order)

    def order_map(self) -> Dict[int, Order]:
        return {e.id: e.order for e in self.mesh.active_elements()}

    @property
    def ndof(self) -> int:
        return sum(e.ndof for e in self.mesh.active_elements())

    def snapshot(self) -> SpaceLayout:
        act = self.mesh.active_elements()
        offsets = np.concatenate([[0], np.cumsum([e.ndof for e in act])]).astype(int)
        return SpaceLayout(
            ids=tuple(e.id for e in act),
            rects=tuple(e.rect for e in act),
            orders=tuple(e.order for e in act),
            offsets=tuple(int(v) for v in offsets),
        )

    def reference_space(self, order_increase: int = 1) -> "ApproximationSpace":
        """
        Globally refined counterpart: copy of the mesh with every active
        element split isotropically and every order raised by `order_increase`.
        """
        fine_mesh = self.mesh.copy()
        for e in fine_mesh.active_elements():
            px, py = e.order
            q = (px + order_increase, py + order_increase)
            fine_mesh.refine_element(e.id, orders=[q] * 4)
        return ApproximationSpace(fine_mesh, self.bc)
