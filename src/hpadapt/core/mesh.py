# core/mesh.py
from __future__ import annotations

import copy
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import MeshLoadError

logger = logging.getLogger(__name__)

Rect = Tuple[float, float, float, float]  # (x0, x1, y0, y1)
Order = Tuple[int, int]  # (px, py)
Marker = Union[int, str]


class Side(Enum):
    SOUTH = 0
    EAST = 1
    NORTH = 2
    WEST = 3

    @property
    def normal(self) -> Tuple[float, float]:
        return _NORMALS[self]

    @property
    def is_vertical(self) -> bool:
        """True for the sides lying on a line x = const."""
        return self in (Side.EAST, Side.WEST)


_NORMALS = {
    Side.SOUTH: (0.0, -1.0),
    Side.EAST: (1.0, 0.0),
    Side.NORTH: (0.0, 1.0),
    Side.WEST: (-1.0, 0.0),
}


class Split(Enum):
    """
    Element subdivisions.

    ISO cuts both ranges (sons SW, SE, NE, NW), X cuts the x range
    (sons W, E), Y cuts the y range (sons S, N).
    """

    ISO = "iso"
    X = "x"
    Y = "y"


# parent sides each son lies on, in son order
_SON_SIDES: Dict[Split, Tuple[Tuple[Side, ...], ...]] = {
    Split.ISO: (
        (Side.SOUTH, Side.WEST),
        (Side.SOUTH, Side.EAST),
        (Side.NORTH, Side.EAST),
        (Side.NORTH, Side.WEST),
    ),
    Split.X: (
        (Side.SOUTH, Side.NORTH, Side.WEST),
        (Side.SOUTH, Side.NORTH, Side.EAST),
    ),
    Split.Y: (
        (Side.SOUTH, Side.EAST, Side.WEST),
        (Side.NORTH, Side.EAST, Side.WEST),
    ),
}


def split_rect(rect: Rect, split: Split) -> List[Rect]:
    """Son rectangles of `rect` for the given split, in son order."""
    x0, x1, y0, y1 = rect
    xm = 0.5 * (x0 + x1)
    ym = 0.5 * (y0 + y1)
    if split is Split.ISO:
        return [(x0, xm, y0, ym), (xm, x1, y0, ym), (xm, x1, ym, y1), (x0, xm, ym, y1)]
    if split is Split.X:
        return [(x0, xm, y0, y1), (xm, x1, y0, y1)]
    if split is Split.Y:
        return [(x0, x1, y0, ym), (x0, x1, ym, y1)]
    raise ValueError(f"split_rect: unknown split {split!r}")


def n_sons(split: Split) -> int:
    return len(_SON_SIDES[split])


def _check_order(order: Sequence[int]) -> Order:
    px, py = int(order[0]), int(order[1])
    if px < 1 or py < 1:
        raise ValueError(f"polynomial order must be >= 1 in both directions, got {(px, py)}")
    return (px, py)


@dataclass(eq=False)
class Element:
    """
    Axis-aligned rectangular element [x0, x1] x [y0, y1].

    Only leaves of the refinement tree are active. `markers` holds the
    boundary marker of each side that lies on the domain boundary.
    """

    id: int
    x0: float
    x1: float
    y0: float
    y1: float
    order: Order = (1, 1)
    markers: Dict[Side, Marker] = field(default_factory=dict)
    emarker: Marker = 0
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)
    split: Optional[Split] = None
    active: bool = True

    @property
    def rect(self) -> Rect:
        return (self.x0, self.x1, self.y0, self.y1)

    @property
    def hx(self) -> float:
        return self.x1 - self.x0

    @property
    def hy(self) -> float:
        return self.y1 - self.y0

    @property
    def area(self) -> float:
        return self.hx * self.hy

    @property
    def ndof(self) -> int:
        return (self.order[0] + 1) * (self.order[1] + 1)

    def side_span(self, side: Side) -> Tuple[float, float, float]:
        """(line coordinate, start, end) of a side."""
        if side is Side.SOUTH:
            return self.y0, self.x0, self.x1
        if side is Side.NORTH:
            return self.y1, self.x0, self.x1
        if side is Side.WEST:
            return self.x0, self.y0, self.y1
        return self.x1, self.y0, self.y1

    def side_length(self, side: Side) -> float:
        return self.hy if side.is_vertical else self.hx

    def normal_extent(self, side: Side) -> float:
        """Element size measured across the given side."""
        return self.hx if side.is_vertical else self.hy


@dataclass(frozen=True)
class Face:
    """
    Face segment [t0, t1] on the line `line`.

    Interior faces have b set; the normal (side.normal of a) points from a
    to b. Boundary faces have b None and carry the side's marker.
    """

    a: int
    side: Side
    b: Optional[int]
    line: float
    t0: float
    t1: float
    marker: Optional[Marker] = None

    @property
    def is_boundary(self) -> bool:
        return self.b is None

    @property
    def length(self) -> float:
        return self.t1 - self.t0

    @property
    def normal(self) -> Tuple[float, float]:
        return self.side.normal

    def points(self, t: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Physical points for parameters t in [-1, 1] along the segment."""
        s = 0.5 * (self.t0 + self.t1) + 0.5 * self.length * np.asarray(t, dtype=float)
        line = np.full_like(s, self.line)
        if self.side.is_vertical:
            return line, s
        return s, line


def _overlaps(lo: List[Element], hi: List[Element], vertical: bool) -> Iterator[Tuple[Element, Element, float, float]]:
    """
    Overlapping spans of two families of sides on the same line (each family
    is a set of disjoint intervals). Two-pointer sweep.
    """
    if vertical:
        span = lambda e: (e.y0, e.y1)  # noqa: E731
    else:
        span = lambda e: (e.x0, e.x1)  # noqa: E731
    lo = sorted(lo, key=span)
    hi = sorted(hi, key=span)
    i = j = 0
    while i < len(lo) and j < len(hi):
        a0, a1 = span(lo[i])
        b0, b1 = span(hi[j])
        t0, t1 = max(a0, b0), min(a1, b1)
        if t1 > t0:
            yield lo[i], hi[j], t0, t1
        if a1 < b1:
            i += 1
        else:
            j += 1


def _gaps(s0: float, s1: float, covered: Iterable[Tuple[float, float]]) -> List[Tuple[float, float]]:
    tol = 1e-14 * (s1 - s0)
    out: List[Tuple[float, float]] = []
    cur = s0
    for a, b in sorted(covered):
        if a - cur > tol:
            out.append((cur, a))
        cur = max(cur, b)
    if s1 - cur > tol:
        out.append((cur, s1))
    return out


class Mesh:
    """
    Refinement tree of axis-aligned rectangles.

    The mesh is the single mutable root of an adaptive run: splits and order
    changes happen in place. Element ids grow monotonically and active
    elements are always visited in id order.
    """

    def __init__(self) -> None:
        self._elements: Dict[int, Element] = {}
        self._next_id = 0

    # -----------------------------
    # construction
    # -----------------------------

    def add_element(
        self,
        rect: Rect,
        *,
        order: Sequence[int] = (1, 1),
        markers: Optional[Mapping[Side, Marker]] = None,
        emarker: Marker = 0,
        parent: Optional[int] = None,
    ) -> Element:
        x0, x1, y0, y1 = (float(v) for v in rect)
        if not (x1 > x0 and y1 > y0):
            raise ValueError(f"add_element: degenerate rectangle {rect}")
        e = Element(
            id=self._next_id,
            x0=x0,
            x1=x1,
            y0=y0,
            y1=y1,
            order=_check_order(order),
            markers=dict(markers or {}),
            emarker=emarker,
            parent=parent,
        )
        self._elements[e.id] = e
        self._next_id += 1
        return e

    @classmethod
    def from_description(cls, desc: Mapping[str, Any]) -> "Mesh":
        """
        Build a base mesh from
            {"vertices": [[x, y], ...],
             "elements": [[v0, v1, v2, v3(, marker)], ...],
             "boundaries": [[va, vb, marker], ...]}

        Elements must be axis-aligned rectangles and every boundary edge must
        carry a marker. Any failure raises MeshLoadError.
        """
        try:
            verts = np.asarray(desc["vertices"], dtype=float)
            elems = list(desc["elements"])
            bdys = list(desc.get("boundaries", []))
        except (KeyError, TypeError, ValueError) as exc:
            raise MeshLoadError(f"invalid mesh description: {exc}") from exc

        if verts.ndim != 2 or verts.shape[1] != 2 or verts.shape[0] == 0:
            raise MeshLoadError(f"vertices must be a non-empty (n, 2) array, got shape {verts.shape}")
        if not np.all(np.isfinite(verts)):
            raise MeshLoadError("vertices must be finite")
        if not elems:
            raise MeshLoadError("mesh description has no elements")

        mesh = cls()
        for k, row in enumerate(elems):
            row = list(row)
            if len(row) not in (4, 5):
                raise MeshLoadError(f"element {k}: expected 4 vertex ids (+ marker), got {row}")
            try:
                ids = [int(v) for v in row[:4]]
                pts = verts[ids]
            except (IndexError, TypeError, ValueError) as exc:
                raise MeshLoadError(f"element {k}: bad vertex ids {row[:4]}") from exc
            x0, x1 = float(pts[:, 0].min()), float(pts[:, 0].max())
            y0, y1 = float(pts[:, 1].min()), float(pts[:, 1].max())
            corners = {(x0, y0), (x1, y0), (x1, y1), (x0, y1)}
            if not (x1 > x0 and y1 > y0) or {tuple(p) for p in pts.tolist()} != corners:
                raise MeshLoadError(f"element {k} is not a non-degenerate axis-aligned rectangle")
            mesh.add_element((x0, x1, y0, y1), emarker=row[4] if len(row) == 5 else 0)

        for row in bdys:
            row = list(row)
            if len(row) != 3:
                raise MeshLoadError(f"boundary entry must be [va, vb, marker], got {row}")
            try:
                pa, pb = verts[int(row[0])], verts[int(row[1])]
            except (IndexError, TypeError, ValueError) as exc:
                raise MeshLoadError(f"boundary {row}: bad vertex ids") from exc
            edge = {tuple(pa.tolist()), tuple(pb.tolist())}
            found = False
            for e in mesh._elements.values():
                for side in Side:
                    if edge == _side_endpoints(e, side):
                        e.markers[side] = row[2]
                        found = True
            if not found:
                raise MeshLoadError(f"boundary {row} does not match any element edge")

        for f in mesh.faces():
            if f.is_boundary and f.marker is None:
                raise MeshLoadError(
                    f"boundary segment {f.side.name} of element {f.a} "
                    f"({f.t0}..{f.t1} on {f.line}) has no marker"
                )
        return mesh

    def copy(self) -> "Mesh":
        return copy.deepcopy(self)

    # -----------------------------
    # queries
    # -----------------------------

    def __len__(self) -> int:
        return sum(1 for e in self._elements.values() if e.active)

    def __getitem__(self, eid: int) -> Element:
        return self._elements[eid]

    def active_elements(self) -> List[Element]:
        return [self._elements[k] for k in sorted(self._elements) if self._elements[k].active]

    def active_ids(self) -> List[int]:
        return [e.id for e in self.active_elements()]

    def bounding_box(self) -> Rect:
        act = self.active_elements()
        return (
            min(e.x0 for e in act),
            max(e.x1 for e in act),
            min(e.y0 for e in act),
            max(e.y1 for e in act),
        )

    # -----------------------------
    # mutation
    # -----------------------------

    def set_order(self, eid: int, order: Sequence[int]) -> None:
        e = self._elements[eid]
        if not e.active:
            raise ValueError(f"set_order: element {eid} is not active")
        e.order = _check_order(order)

    def refine_element(
        self,
        eid: int,
        split: Split = Split.ISO,
        orders: Optional[Sequence[Sequence[int]]] = None,
    ) -> List[int]:
        """Split an active element; sons inherit order (unless given) and markers."""
        e = self._elements[eid]
        if not e.active:
            raise ValueError(f"refine_element: element {eid} is not active")
        rects = split_rect(e.rect, split)
        if orders is None:
            orders = [e.order] * len(rects)
        if len(orders) != len(rects):
            raise ValueError(f"refine_element: {len(rects)} son orders expected, got {len(orders)}")

        sons: List[int] = []
        for rect, sides, order in zip(rects, _SON_SIDES[split], orders):
            markers = {s: e.markers[s] for s in sides if s in e.markers}
            son = self.add_element(rect, order=order, markers=markers, emarker=e.emarker, parent=e.id)
            sons.append(son.id)
        e.active = False
        e.children = sons
        e.split = split
        return sons

    def refine_all(self, times: int = 1, split: Split = Split.ISO) -> None:
        for _ in range(int(times)):
            for eid in self.active_ids():
                self.refine_element(eid, split)

    # -----------------------------
    # topology
    # -----------------------------

    def faces(self) -> List[Face]:
        """Interior face segments (sorted by line) followed by boundary segments."""
        act = self.active_elements()
        vert: Dict[float, Tuple[List[Element], List[Element]]] = {}
        horiz: Dict[float, Tuple[List[Element], List[Element]]] = {}
        for e in act:
            vert.setdefault(e.x1, ([], []))[0].append(e)
            vert.setdefault(e.x0, ([], []))[1].append(e)
            horiz.setdefault(e.y1, ([], []))[0].append(e)
            horiz.setdefault(e.y0, ([], []))[1].append(e)

        covered: Dict[Tuple[int, Side], List[Tuple[float, float]]] = defaultdict(list)
        out: List[Face] = []
        for lines, vertical, lo_side, hi_side in (
            (vert, True, Side.EAST, Side.WEST),
            (horiz, False, Side.NORTH, Side.SOUTH),
        ):
            for c in sorted(lines):
                lo, hi = lines[c]
                for a, b, t0, t1 in _overlaps(lo, hi, vertical):
                    out.append(Face(a.id, lo_side, b.id, c, t0, t1))
                    covered[(a.id, lo_side)].append((t0, t1))
                    covered[(b.id, hi_side)].append((t0, t1))

        for e in act:
            for side in Side:
                line, s0, s1 = e.side_span(side)
                for g0, g1 in _gaps(s0, s1, covered.get((e.id, side), ())):
                    out.append(Face(e.id, side, None, line, g0, g1, marker=e.markers.get(side)))
        return out

    def hanging_depths(self, faces: Optional[List[Face]] = None) -> Dict[int, int]:
        """
        Hanging-node level hosted by each active element: log2 of the ratio
        between its side length and the shortest neighbouring side on it.
        """
        depth = {eid: 0 for eid in self.active_ids()}
        for f in faces if faces is not None else self.faces():
            if f.is_boundary:
                continue
            a, b = self._elements[f.a], self._elements[f.b]
            la, lb = a.side_length(f.side), b.side_length(f.side)
            if la > lb:
                depth[a.id] = max(depth[a.id], int(round(math.log2(la / lb))))
            elif lb > la:
                depth[b.id] = max(depth[b.id], int(round(math.log2(lb / la))))
        return depth

    def max_hanging_depth(self) -> int:
        return max(self.hanging_depths().values(), default=0)

    def enforce_regularity(self, bound: int) -> int:
        """
        Split elements until no element hosts hanging nodes deeper than
        `bound`. bound = -1 disables the check. Returns the number of splits.
        """
        bound = int(bound)
        if bound < 0:
            return 0
        if bound == 0:
            raise ValueError("enforce_regularity: regular meshes (bound 0) are not supported")

        nsplit = 0
        while True:
            todo: Dict[int, set] = {}
            for f in self.faces():
                if f.is_boundary:
                    continue
                a, b = self._elements[f.a], self._elements[f.b]
                la, lb = a.side_length(f.side), b.side_length(f.side)
                big, ratio = (a, la / lb) if la > lb else (b, lb / la)
                if int(round(math.log2(ratio))) > bound:
                    todo.setdefault(big.id, set()).add(f.side.is_vertical)
            if not todo:
                return nsplit
            for eid in sorted(todo):
                dirs = todo[eid]
                if len(dirs) == 2:
                    split = Split.ISO
                elif True in dirs:
                    # too long on a side x = const: halve the y range
                    split = Split.Y
                else:
                    split = Split.X
                logger.debug("regularity: splitting element %d (%s)", eid, split.value)
                self.refine_element(eid, split)
                nsplit += 1


def _side_endpoints(e: Element, side: Side) -> set:
    line, s0, s1 = e.side_span(side)
    if side.is_vertical:
        return {(line, s0), (line, s1)}
    return {(s0, line), (s1, line)}
