"""
Element marking and hp refinement-candidate selection.

Every marked element gets the candidate that maximises

    score = (err_unrefined - err_candidate) / (dof_candidate - dof_unrefined) ** conv_exp

where the errors are H1 norms of the difference between the fine solution
and its projection onto the element's (candidate) space.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ..core.config import AdaptConfig, CandList
from ..core.mesh import Order, Rect, Split, n_sons, split_rect
from ..core.space import ApproximationSpace
from ..operators.basis import ndof
from ..operators.project import FineSample, FineSampler, project_sample
from .estimator import ErrorEstimate

logger = logging.getLogger(__name__)

# relative band within which element errors count as equal (symmetric meshes)
TIE_RTOL = 1e-3


class CandidateKind(Enum):
    """Closed set of refinement types; the value is the tie-break priority."""

    P_ELEVATE = 0
    H_ISO = 1
    H_ANISO_X = 2
    H_ANISO_Y = 3
    HP = 4


_H_KIND = {Split.ISO: CandidateKind.H_ISO, Split.X: CandidateKind.H_ANISO_X, Split.Y: CandidateKind.H_ANISO_Y}
_SPLIT_RANK = {None: 0, Split.ISO: 0, Split.X: 1, Split.Y: 2}


@dataclass(frozen=True)
class RefinementCandidate:
    kind: CandidateKind
    split: Optional[Split]
    son_orders: Tuple[Order, ...]
    dofs: int = 0
    error: float = 0.0
    cost: int = 0
    benefit: float = 0.0
    score: float = 0.0

    def __post_init__(self) -> None:
        if self.kind is CandidateKind.P_ELEVATE:
            ok = self.split is None and len(self.son_orders) == 1
        elif self.kind is CandidateKind.HP:
            ok = self.split is not None and len(self.son_orders) == n_sons(self.split)
        elif self.kind in _H_KIND.values():
            ok = _H_KIND.get(self.split) is self.kind and len(self.son_orders) == n_sons(self.split)
        else:
            ok = False
        if not ok:
            raise ValueError(f"RefinementCandidate: inconsistent {self.kind.name} / {self.split} / {self.son_orders}")

    def priority(self) -> Tuple:
        return (self.kind.value, _SPLIT_RANK[self.split], self.son_orders)

    def sort_key(self) -> Tuple:
        """Best first: score, then lower cost, then type priority."""
        return (-self.score, self.cost) + self.priority()

    def son_rects(self, rect: Rect) -> List[Rect]:
        if self.kind is CandidateKind.P_ELEVATE:
            return [rect]
        if self.kind in (CandidateKind.H_ISO, CandidateKind.H_ANISO_X, CandidateKind.H_ANISO_Y, CandidateKind.HP):
            return split_rect(rect, self.split)
        raise ValueError(f"unknown candidate kind {self.kind!r}")


@dataclass(frozen=True)
class RefinementDecision:
    """Marked element ids (in marking order) and the chosen candidate per element."""

    items: Tuple[Tuple[int, RefinementCandidate], ...]
    marked: Tuple[int, ...] = ()

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Tuple[int, RefinementCandidate]]:
        return iter(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def as_dict(self) -> Dict[int, RefinementCandidate]:
        return dict(self.items)


# -----------------------------
# Marking
# -----------------------------

def mark_elements(estimate: ErrorEstimate, strategy: int, threshold: float) -> List[int]:
    """
    Element ids to refine, by descending error (ties by id).

    STRATEGY 0: accumulate squared errors until sqrt(threshold) times the
                total squared error is processed; elements tied (within
                TIE_RTOL) with the last one taken are taken too.
    STRATEGY 1: error >= threshold * max error.
    STRATEGY 2: error >= threshold.

    Elements with zero error are never marked.
    """
    ranked = [(eid, e) for eid, e in estimate.ranked() if e > 0.0]
    if not ranked:
        return []

    if strategy == 0:
        target = math.sqrt(threshold) * sum(e * e for _, e in ranked)
        out: List[int] = []
        processed = 0.0
        last: Optional[float] = None
        for eid, e in ranked:
            if last is not None and processed >= target and abs(e - last) > TIE_RTOL * last:
                break
            out.append(eid)
            processed += e * e
            last = e
        return out
    if strategy == 1:
        cut = threshold * estimate.max_error
        return [eid for eid, e in ranked if e >= cut]
    if strategy == 2:
        return [eid for eid, e in ranked if e >= threshold]
    raise ValueError(f"mark_elements: unknown strategy {strategy}")


# -----------------------------
# Candidates
# -----------------------------

def _hp_son_orders(order: Order, split: Split, aniso_p: bool) -> List[Order]:
    """Son orders for split + order change: about half the parent order, or one more."""
    px, py = order
    lox, loy = max(1, (px + 1) // 2), max(1, (py + 1) // 2)
    xs = [lox, lox + 1] if split in (Split.ISO, Split.X) else [px]
    ys = [loy, loy + 1] if split in (Split.ISO, Split.Y) else [py]
    if aniso_p or split is not Split.ISO:
        return [(qx, qy) for qx in xs for qy in ys]
    return [(lox + k, loy + k) for k in range(2)]


def candidate_templates(order: Order, cand_list: CandList, max_order: int) -> List[RefinementCandidate]:
    """Unevaluated candidates for an element of the given order, in priority order."""
    px, py = int(order[0]), int(order[1])
    out: Dict[Tuple, RefinementCandidate] = {}

    def add(kind: CandidateKind, split: Optional[Split], sons: Sequence[Order]) -> None:
        sons = tuple(tuple(q) for q in sons)
        if any(min(q) < 1 or max(q) > max_order for q in sons):
            return
        key = (split, sons)
        if key not in out:
            out[key] = RefinementCandidate(kind, split, sons)

    if cand_list.allows_p:
        if cand_list.aniso_p:
            incs = [(a, b) for a in range(3) for b in range(3) if (a, b) != (0, 0)]
        else:
            incs = [(1, 1), (2, 2)]
        for a, b in incs:
            add(CandidateKind.P_ELEVATE, None, [(px + a, py + b)])

    if cand_list.allows_h:
        splits = [Split.ISO] + ([Split.X, Split.Y] if cand_list.aniso_h else [])
        for split in splits:
            add(_H_KIND[split], split, [(px, py)] * n_sons(split))
        if cand_list.allows_hp:
            for split in splits:
                for q in _hp_son_orders((px, py), split, cand_list.aniso_p):
                    if q != (px, py):
                        add(CandidateKind.HP, split, [q] * n_sons(split))

    return sorted(out.values(), key=RefinementCandidate.priority)


class CandidateSelector:
    """
    Projection-based hp selector. Deterministic: candidates are ranked by a
    total order (score, cost, type priority, son orders).
    """

    def __init__(self, config: AdaptConfig) -> None:
        self.config = config

    def evaluate(self, rect: Rect, order: Order, sample: FineSample) -> List[RefinementCandidate]:
        templates = candidate_templates(order, self.config.cand_list, self.config.max_order)
        if not templates:
            return []

        cache: Dict[Tuple[Rect, Order], float] = {}

        def err2(r: Rect, q: Order) -> float:
            key = (r, q)
            if key not in cache:
                cache[key] = project_sample(sample, r, q)[1]
            return cache[key]

        err0 = math.sqrt(err2(rect, tuple(order)))
        dof0 = ndof(order)
        out: List[RefinementCandidate] = []
        for t in templates:
            rects = t.son_rects(rect)
            err = math.sqrt(sum(err2(r, q) for r, q in zip(rects, t.son_orders)))
            dofs = sum(ndof(q) for q in t.son_orders)
            cost = dofs - dof0
            if cost <= 0:
                continue
            benefit = err0 - err
            out.append(
                replace(t, dofs=dofs, error=err, cost=cost, benefit=benefit,
                        score=benefit / cost ** self.config.conv_exp)
            )
        return out

    @staticmethod
    def best(candidates: Sequence[RefinementCandidate]) -> RefinementCandidate:
        return min(candidates, key=RefinementCandidate.sort_key)

    def select(self, space: ApproximationSpace, estimate: ErrorEstimate, sampler: FineSampler) -> RefinementDecision:
        marked = mark_elements(estimate, self.config.strategy, self.config.threshold)
        items: List[Tuple[int, RefinementCandidate]] = []
        for eid in marked:
            e = space.mesh[eid]
            cands = self.evaluate(e.rect, e.order, sampler.sample(e.rect))
            if not cands:
                logger.debug("element %d (order %s): no admissible candidate", eid, e.order)
                continue
            best = self.best(cands)
            logger.debug(
                "element %d: %s %s sons=%s score=%.4g cost=%d",
                eid, best.kind.name, best.split.value if best.split else "-", best.son_orders, best.score, best.cost,
            )
            items.append((eid, best))
        return RefinementDecision(tuple(items), tuple(marked))


def apply_refinement(space: ApproximationSpace, decision: RefinementDecision, mesh_regularity: int = -1) -> int:
    """
    Commit a decision to the mesh/space and restore the hanging-node bound.
    Returns the number of element changes (decisions + regularity splits).
    """
    mesh = space.mesh
    for eid, cand in decision:
        if cand.kind is CandidateKind.P_ELEVATE:
            space.set_order(eid, cand.son_orders[0])
        elif cand.kind in (CandidateKind.H_ISO, CandidateKind.H_ANISO_X, CandidateKind.H_ANISO_Y, CandidateKind.HP):
            mesh.refine_element(eid, cand.split, cand.son_orders)
        else:
            raise ValueError(f"apply_refinement: unknown candidate kind {cand.kind!r}")
    extra = mesh.enforce_regularity(mesh_regularity)
    if extra:
        logger.debug("regularity: %d extra splits", extra)
    return len(decision) + extra
