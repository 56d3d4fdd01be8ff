import math

import numpy as np
import pytest

from hpadapt.algorithm.estimator import ErrorEstimate, ExactEstimator, ReferenceEstimator
from hpadapt.core.cases import lshape_exact_gradient, lshape_exact_value, make_lshape_case
from hpadapt.core.errors import EstimatorDivergenceError
from hpadapt.core.mesh import Mesh
from hpadapt.core.space import ApproximationSpace
from hpadapt.operators.project import FineSampler
from hpadapt.operators.solve import SolveService


def test_error_estimate_aggregates():
    est = ErrorEstimate({0: 3.0, 1: 4.0}, reference_norm=50.0)
    assert est.total == pytest.approx(5.0)
    assert est.relative == pytest.approx(0.1)
    assert est.percent == pytest.approx(10.0)
    assert est.max_error == 4.0


def test_ranked_breaks_ties_by_id():
    est = ErrorEstimate({5: 1.0, 2: 1.0, 7: 2.0, 1: 0.5}, reference_norm=1.0)
    assert [eid for eid, _ in est.ranked()] == [7, 2, 5, 1]


def test_error_estimate_is_immutable():
    src = {0: 1.0}
    est = ErrorEstimate(src, reference_norm=1.0)
    src[0] = 100.0
    assert est.element_errors[0] == 1.0
    with pytest.raises(TypeError):
        est.element_errors[0] = 2.0


def test_non_finite_contribution_diverges():
    with pytest.raises(EstimatorDivergenceError):
        ErrorEstimate({0: 1.0, 1: math.nan}, reference_norm=1.0)
    with pytest.raises(EstimatorDivergenceError):
        ErrorEstimate({0: math.inf}, reference_norm=1.0)


def test_negative_contribution_rejected():
    with pytest.raises(ValueError):
        ErrorEstimate({0: -1.0}, reference_norm=1.0)


def test_zero_reference_norm():
    assert ErrorEstimate({0: 0.0}, reference_norm=0.0).percent == 0.0
    assert ErrorEstimate({0: 1.0}, reference_norm=0.0).percent == math.inf


def test_lshape_exact_solution_vanishes_on_reentrant_edges():
    t = np.linspace(0.05, 1.0, 9)
    # re-entrant edges: x = 0, y < 0 and y = 0, x < 0
    assert np.allclose(lshape_exact_value(np.zeros_like(t), -t), 0.0, atol=1e-12)
    assert np.allclose(lshape_exact_value(-t, np.zeros_like(t)), 0.0, atol=1e-12)


def test_lshape_gradient_matches_finite_difference():
    x = np.array([0.3, -0.7, 0.5, 0.9])
    y = np.array([0.4, 0.2, -0.6, 0.9])
    h = 1e-6
    gx, gy = lshape_exact_gradient(x, y)
    fx = (lshape_exact_value(x + h, y) - lshape_exact_value(x - h, y)) / (2 * h)
    fy = (lshape_exact_value(x, y + h) - lshape_exact_value(x, y - h)) / (2 * h)
    assert np.allclose(gx, fx, atol=1e-6)
    assert np.allclose(gy, fy, atol=1e-6)


@pytest.fixture
def lshape_solutions():
    case = make_lshape_case()
    mesh = Mesh.from_description(case.mesh_description)
    mesh.refine_all(1)
    space = ApproximationSpace(mesh, case.bc, p_init=2)
    solver = SolveService(case.problem)
    fine = solver.solve(space.reference_space())
    sampler = FineSampler(fine)
    coarse = solver.project(fine, space, sampler=sampler)
    return case, space, fine, coarse, sampler


def test_reference_estimate_covers_every_element(lshape_solutions):
    case, space, fine, coarse, sampler = lshape_solutions
    est = ReferenceEstimator(sampler).estimate(coarse)
    assert est.kind == "estimate"
    assert set(est.element_errors) == set(space.mesh.active_ids())
    assert all(e >= 0.0 for e in est.element_errors.values())
    assert 0.0 < est.percent < 100.0
    assert est.reference_norm == pytest.approx(fine.h1_norm(), rel=1e-10)


def test_largest_error_at_reentrant_corner(lshape_solutions):
    case, space, fine, coarse, sampler = lshape_solutions
    est = ReferenceEstimator(sampler).estimate(coarse)
    worst = space.mesh[est.ranked()[0][0]]
    assert (0.0, 0.0) in {(worst.x0, worst.y0), (worst.x1, worst.y0), (worst.x0, worst.y1), (worst.x1, worst.y1)}


def test_exact_estimate(lshape_solutions):
    case, space, fine, coarse, sampler = lshape_solutions
    exact = ExactEstimator(case.exact).estimate(coarse)
    assert exact.kind == "exact"
    assert 0.0 < exact.percent < 100.0
    # the reference solution is closer to the truth than the coarse one
    assert ExactEstimator(case.exact).estimate(fine).total < exact.total
