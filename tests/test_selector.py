import math

import numpy as np
import pytest

from hpadapt.algorithm.estimator import ErrorEstimate, ReferenceEstimator
from hpadapt.algorithm.selector import (
    CandidateKind,
    CandidateSelector,
    RefinementCandidate,
    RefinementDecision,
    apply_refinement,
    candidate_templates,
    mark_elements,
)
from hpadapt.core.config import AdaptConfig, CandList
from hpadapt.core.mesh import Split
from hpadapt.operators.project import FineSampler
from hpadapt.operators.solve import SolveService


def _est(errors):
    return ErrorEstimate(errors, reference_norm=10.0)


ERRS = {0: 4.0, 1: 3.0, 2: 2.0, 3: 1.0}


# -----------------------------
# marking
# -----------------------------

@pytest.mark.parametrize(
    "threshold, expected",
    [(0.0, [0]), (0.3, [0, 1]), (0.9, [0, 1, 2]), (1.0, [0, 1, 2, 3])],
)
def test_strategy_0_cumulative(threshold, expected):
    assert mark_elements(_est(ERRS), 0, threshold) == expected


def test_strategy_0_includes_ties():
    errs = {0: 2.0, 1: 2.0, 2: 2.0 * (1 - 1e-5), 3: 1.0}
    assert mark_elements(_est(errs), 0, 0.0) == [0, 1, 2]


@pytest.mark.parametrize(
    "threshold, expected",
    [(0.0, [0, 1, 2, 3]), (0.5, [0, 1, 2]), (0.75, [0, 1]), (1.0, [0])],
)
def test_strategy_1_relative_to_max(threshold, expected):
    assert mark_elements(_est(ERRS), 1, threshold) == expected


@pytest.mark.parametrize(
    "threshold, expected",
    [(0.0, [0, 1, 2, 3]), (2.5, [0, 1]), (4.0, [0]), (math.inf, [])],
)
def test_strategy_2_absolute(threshold, expected):
    assert mark_elements(_est(ERRS), 2, threshold) == expected


@pytest.mark.parametrize("strategy", [0, 1, 2])
def test_zero_error_elements_never_marked(strategy):
    assert mark_elements(_est({0: 0.0, 1: 0.0}), strategy, 0.0) == []
    assert mark_elements(_est({0: 0.0, 1: 1.0}), strategy, 0.0) == [1]


def test_strategy_1_compares_norms_not_squares():
    # 0.3 * max is marked; with squared errors the cut would sit near 0.548 * max
    errs = {0: 10.0, 1: 5.0, 2: 3.0, 3: 2.9}
    assert mark_elements(_est(errs), 1, 0.3) == [0, 1, 2]


def test_unknown_strategy():
    with pytest.raises(ValueError):
        mark_elements(_est(ERRS), 3, 0.5)


# -----------------------------
# candidates
# -----------------------------

def _kinds(cands):
    return [c.kind for c in cands]


def test_p_iso_candidates():
    cands = candidate_templates((2, 2), CandList.P_ISO, max_order=9)
    assert [c.son_orders for c in cands] == [((3, 3),), ((4, 4),)]
    assert set(_kinds(cands)) == {CandidateKind.P_ELEVATE}


def test_p_aniso_candidates():
    cands = candidate_templates((1, 1), CandList.P_ANISO, max_order=9)
    assert len(cands) == 8
    assert ((1, 1),) not in [c.son_orders for c in cands]


def test_h_candidates_keep_parent_order():
    iso = candidate_templates((3, 2), CandList.H_ISO, max_order=9)
    assert _kinds(iso) == [CandidateKind.H_ISO]
    assert iso[0].son_orders == ((3, 2),) * 4

    aniso = candidate_templates((3, 2), CandList.H_ANISO, max_order=9)
    assert _kinds(aniso) == [CandidateKind.H_ISO, CandidateKind.H_ANISO_X, CandidateKind.H_ANISO_Y]
    assert all(len(c.son_orders) == 2 for c in aniso[1:])


def test_hp_iso_candidates():
    cands = candidate_templates((4, 4), CandList.HP_ISO, max_order=9)
    kinds = _kinds(cands)
    assert kinds.count(CandidateKind.P_ELEVATE) == 2
    assert kinds.count(CandidateKind.H_ISO) == 1
    hp = [c for c in cands if c.kind is CandidateKind.HP]
    assert [c.son_orders[0] for c in hp] == [(2, 2), (3, 3)]
    assert all(c.split is Split.ISO for c in hp)


def test_hp_aniso_h_candidates():
    cands = candidate_templates((4, 4), CandList.HP_ANISO_H, max_order=9)
    assert len(cands) == 11
    hp_x = [c.son_orders[0] for c in cands if c.kind is CandidateKind.HP and c.split is Split.X]
    assert hp_x == [(2, 4), (3, 4)]
    # priority order: p first, hp last
    assert cands[0].kind is CandidateKind.P_ELEVATE
    assert cands[-1].kind is CandidateKind.HP


def test_max_order_caps_candidates():
    assert candidate_templates((9, 9), CandList.P_ISO, max_order=9) == []
    cands = candidate_templates((8, 8), CandList.P_ISO, max_order=9)
    assert [c.son_orders for c in cands] == [((9, 9),)]


def test_inconsistent_candidate_rejected():
    with pytest.raises(ValueError):
        RefinementCandidate(CandidateKind.H_ISO, Split.X, ((1, 1), (1, 1)))
    with pytest.raises(ValueError):
        RefinementCandidate(CandidateKind.P_ELEVATE, Split.ISO, ((2, 2),))
    with pytest.raises(ValueError):
        RefinementCandidate(CandidateKind.HP, Split.ISO, ((2, 2),) * 2)


def test_best_uses_total_order():
    p = RefinementCandidate(CandidateKind.P_ELEVATE, None, ((3, 3),), cost=7, score=1.0)
    h = RefinementCandidate(CandidateKind.H_ISO, Split.ISO, ((2, 2),) * 4, cost=27, score=1.0)
    hx = RefinementCandidate(CandidateKind.H_ANISO_X, Split.X, ((2, 2),) * 2, cost=9, score=1.0)
    hy = RefinementCandidate(CandidateKind.H_ANISO_Y, Split.Y, ((2, 2),) * 2, cost=9, score=1.0)
    assert CandidateSelector.best([h, hx, p]) is p
    assert CandidateSelector.best([hy, hx]) is hx
    better = RefinementCandidate(CandidateKind.HP, Split.ISO, ((1, 1),) * 4, cost=30, score=1.5)
    assert CandidateSelector.best([p, h, better]) is better


# -----------------------------
# evaluation on a real fine solution
# -----------------------------

@pytest.fixture
def smooth_setup(make_space):
    u = lambda x, y: np.exp(x) * np.sin(3.0 * y)  # noqa: E731
    space = make_space(u, 2, 2, p=2)
    solver = SolveService()
    fine = solver.solve(space.reference_space())
    sampler = FineSampler(fine)
    coarse = solver.project(fine, space, sampler=sampler)
    est = ReferenceEstimator(sampler).estimate(coarse)
    return space, sampler, est


def test_evaluate_scores(smooth_setup):
    space, sampler, est = smooth_setup
    sel = CandidateSelector(AdaptConfig(p_init=2, cand_list=CandList.HP_ANISO))
    e = space.mesh[0]
    cands = sel.evaluate(e.rect, e.order, sampler.sample(e.rect))
    assert cands
    for c in cands:
        assert c.cost > 0
        assert c.dofs == c.cost + e.ndof
        assert math.isfinite(c.score)
        assert c.benefit == pytest.approx(est.element_errors[0] - c.error, abs=1e-9)
    # enriching the parent space never makes the local projection worse
    for c in cands:
        if c.kind is not CandidateKind.HP:
            assert c.error <= est.element_errors[0] * (1 + 1e-9)


def test_select_is_deterministic(smooth_setup):
    space, sampler, est = smooth_setup
    sel = CandidateSelector(AdaptConfig(p_init=2, threshold=1.0))
    first = sel.select(space, est, sampler)
    second = CandidateSelector(AdaptConfig(p_init=2, threshold=1.0)).select(space, est, sampler)
    assert first == second
    assert len(first) == len(space.mesh)
    assert list(first.marked) == [eid for eid, _ in est.ranked()]


def test_apply_refinement_grows_space(make_space, linear_u):
    space = make_space(linear_u, 2, 1, p=2)
    decision = RefinementDecision(
        (
            (0, RefinementCandidate(CandidateKind.P_ELEVATE, None, ((3, 2),))),
            (1, RefinementCandidate(CandidateKind.HP, Split.X, ((1, 2), (1, 2)))),
        ),
        marked=(0, 1),
    )
    before = space.ndof
    n = apply_refinement(space, decision, mesh_regularity=-1)
    assert n == 2
    assert space.get_order(0) == (3, 2)
    assert not space.mesh[1].active and space.mesh[1].split is Split.X
    assert space.ndof == before + (12 - 9) + (2 * 6 - 9)
    assert space.ndof > before


def test_apply_refinement_enforces_regularity(make_space, linear_u):
    space = make_space(linear_u, 2, 1, p=1, lx=2.0)
    sons = space.mesh.refine_element(1)
    decision = RefinementDecision(((sons[0], RefinementCandidate(CandidateKind.H_ISO, Split.ISO, ((1, 1),) * 4)),))
    n = apply_refinement(space, decision, mesh_regularity=1)
    assert n >= 2
    assert space.mesh.max_hanging_depth() <= 1


def test_empty_decision():
    d = RefinementDecision((), marked=(3,))
    assert d.is_empty and len(d) == 0 and d.as_dict() == {}
