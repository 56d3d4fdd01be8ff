import numpy as np
import pytest
import scipy.sparse as sp

from hpadapt.algorithm.estimator import ExactEstimator, ReferenceEstimator
from hpadapt.core.errors import AssemblyError, IncompatibleSpaceError, SingularSystemError
from hpadapt.core.problem import ExactSolution, PoissonProblem
from hpadapt.core.space import ApproximationSpace, BCType, BoundaryConditions, DirichletBC, MarkerBC
from hpadapt.operators.assemble import assemble_dg_system
from hpadapt.operators.basis import (
    gauss,
    legendre,
    local_mass,
    local_stiffness,
    mass_1d,
    physical_basis,
    tensor_quadrature,
)
from hpadapt.operators.project import FineSampler, project_solution
from hpadapt.operators.solve import SolveService, solve_linear_system


def _linear_exact():
    return ExactSolution(
        value=lambda x, y: 1.0 + 2.0 * x - y,
        gradient=lambda x, y: (2.0 * np.ones_like(x), -np.ones_like(y)),
    )


def test_legendre_orthogonality():
    t, w = gauss(8)
    v, _ = legendre(6, t)
    M = (v * w) @ v.T
    assert np.allclose(M, mass_1d(6), atol=1e-13)


def test_legendre_derivative_matches_finite_difference():
    t = np.linspace(-0.9, 0.9, 7)
    h = 1e-6
    vp, _ = legendre(5, t + h)
    vm, _ = legendre(5, t - h)
    _, d = legendre(5, t)
    assert np.allclose(d, (vp - vm) / (2 * h), atol=1e-6)


def test_local_matrices_match_quadrature():
    rect = (0.0, 0.5, 1.0, 2.0)
    order = (3, 2)
    x, y, w = tensor_quadrature(rect, 5, 5)
    phi, px, py = physical_basis(rect, order, x, y)
    assert np.allclose((phi * w) @ phi.T, local_mass(rect, order), atol=1e-12)
    assert np.allclose((px * w) @ px.T + (py * w) @ py.T, local_stiffness(rect, order), atol=1e-10)


def test_tensor_quadrature_area():
    _, _, w = tensor_quadrature((-1.0, 2.0, 0.0, 0.5), 3, 4)
    assert w.sum() == pytest.approx(1.5)


def test_assembled_matrix_symmetric_with_hanging_nodes(make_space, linear_u):
    space = make_space(linear_u, 2, 2, p=2)
    space.mesh.refine_element(0)
    space.set_order(1, (3, 1))
    A, f, layout = assemble_dg_system(space)
    assert A.shape == (layout.ndof, layout.ndof)
    assert layout.ndof == space.ndof
    assert abs(A - A.T).max() < 1e-10
    assert np.all(np.isfinite(f))


@pytest.mark.parametrize("p", [1, 2, 3])
def test_linear_solution_reproduced(make_space, linear_u, p):
    space = make_space(linear_u, 2, 2, p=p)
    space.mesh.refine_element(3, orders=[(p, p), (p + 1, p), (p, p + 1), (p, p)])
    sln = SolveService().solve(space)
    est = ExactEstimator(_linear_exact()).estimate(sln)
    assert est.percent < 1e-6


def test_quadratic_solution_with_source(make_space):
    u = lambda x, y: x * x + y * y  # noqa: E731
    exact = ExactSolution(value=u, gradient=lambda x, y: (2.0 * x, 2.0 * y))
    space = make_space(u, 2, 1, p=2, lx=2.0)
    space.mesh.refine_element(1, orders=[(2, 2), (2, 3), (3, 2), (2, 2)])
    problem = PoissonProblem(name="poisson", rhs_func=lambda x, y: -4.0 * np.ones_like(x))
    sln = SolveService(problem).solve(space)
    assert ExactEstimator(exact).estimate(sln).percent < 1e-6


def test_natural_boundary_condition(make_grid, linear_u):
    # u = 1 + 2x - y, outward flux 2 on the east side (marker 2)
    bc = MarkerBC(
        types={2: BCType.NATURAL},
        values={1: linear_u, 3: linear_u, 4: linear_u, 2: lambda x, y: 2.0 * np.ones_like(x)},
    )
    space = ApproximationSpace(make_grid(2, 2), bc, p_init=1)
    sln = SolveService().solve(space)
    assert ExactEstimator(_linear_exact()).estimate(sln).percent < 1e-6


def test_solution_is_read_only(make_space, linear_u):
    sln = SolveService().solve(make_space(linear_u, p=1))
    with pytest.raises(ValueError):
        sln.coeffs[0] = 1.0
    assert sln.order_map() == {0: (1, 1)}


def test_singular_system_detected():
    A = sp.csr_matrix(np.array([[1.0, 0.0], [0.0, 0.0]]))
    with pytest.raises(SingularSystemError):
        solve_linear_system(A, np.array([1.0, 1.0]))


class _BrokenBC(BoundaryConditions):
    def classify(self, marker):
        return "robin"

    def value(self, marker, x, y):
        return np.zeros_like(x)


def test_unknown_boundary_type_is_assembly_error(make_grid):
    space = ApproximationSpace(make_grid(), _BrokenBC(), p_init=1)
    with pytest.raises(AssemblyError):
        SolveService().solve(space)


def test_non_finite_source_is_assembly_error(make_space, linear_u):
    problem = PoissonProblem(rhs_func=lambda x, y: np.full_like(x, np.nan))
    with pytest.raises(AssemblyError):
        SolveService(problem).solve(make_space(linear_u, p=1))


def test_penalty_must_be_positive():
    with pytest.raises(ValueError):
        SolveService(penalty=0.0)


def test_bc_must_be_boundary_conditions(make_grid):
    with pytest.raises(ValueError):
        ApproximationSpace(make_grid(), lambda x, y: x)


def test_reference_space_is_nested_refinement(make_space, linear_u):
    space = make_space(linear_u, 2, 1, p=2)
    space.set_order(1, (3, 1))
    fine = space.reference_space()
    assert len(fine.mesh) == 4 * len(space.mesh)
    assert sorted(fine.order_map().values()) == sorted([(3, 3)] * 4 + [(4, 2)] * 4)
    # the coarse mesh is untouched
    assert len(space.mesh) == 2 and space.get_order(1) == (3, 1)


def test_projection_reproduces_polynomials(make_space, linear_u):
    space = make_space(linear_u, 2, 2, p=1)
    solver = SolveService()
    fine = solver.solve(space.reference_space())
    coarse = solver.project(fine, space)
    sampler = FineSampler(fine)
    assert ReferenceEstimator(sampler).estimate(coarse).total < 1e-8


def test_projection_is_best_broken_h1_approximation(make_space):
    u = lambda x, y: np.sin(2.0 * x) * np.exp(y)  # noqa: E731
    space = make_space(u, 2, 2, p=2)
    space.mesh.refine_element(0)
    solver = SolveService()
    fine = solver.solve(space.reference_space())
    sampler = FineSampler(fine)
    est = ReferenceEstimator(sampler)

    projected = solver.project(fine, space, sampler=sampler)
    solved = solver.solve(space)
    assert projected.ndof == solved.ndof
    assert est.estimate(projected).total <= est.estimate(solved).total * (1.0 + 1e-9)


def test_projection_rejects_non_nested_space(make_space, linear_u):
    solver = SolveService()
    fine = solver.solve(make_space(linear_u, p=1).reference_space())
    other = make_space(linear_u, 1, 1, p=1, lx=2.0)
    with pytest.raises(IncompatibleSpaceError):
        solver.project(fine, other)


def test_projection_rejects_foreign_sampler(make_space, linear_u):
    solver = SolveService()
    space = make_space(linear_u, p=1)
    fine_a = solver.solve(space.reference_space())
    fine_b = solver.solve(space.reference_space())
    with pytest.raises(IncompatibleSpaceError):
        project_solution(fine_a, space.snapshot(), sampler=FineSampler(fine_b))


def test_dirichlet_bc_broadcasts_constants():
    bc = DirichletBC(lambda x, y: 3.0)
    x = np.zeros(4)
    assert np.array_equal(bc.value(1, x, x), np.full(4, 3.0))
