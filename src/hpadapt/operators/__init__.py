"""
Operators: DG discretisation + linear solves + projection.

Public API:
- assemble_dg_system
- solve_linear_system, compute_residual, Solution, SolveService
- FineSampler, project_solution
"""

# Assembly
from .assemble import DEFAULT_PENALTY, assemble_dg_system

# Linear solves (project.py imports Solution from solve.py, not the reverse)
from .solve import Solution, SolveService, solve_linear_system, compute_residual, residual_norms
from .project import FineSample, FineSampler, project_sample, project_solution

__all__ = [
    # Assembly
    "DEFAULT_PENALTY",
    "assemble_dg_system",

    # Solves
    "Solution",
    "SolveService",
    "solve_linear_system",
    "compute_residual",
    "residual_norms",

    # Projection
    "FineSample",
    "FineSampler",
    "project_sample",
    "project_solution",
]
