"""
hp-adaptive finite elements for 2D elliptic problems.

Three sibling subpackages plus file output:
- core: problem definition (mesh, space, configuration, boundary conditions, cases)
- operators: discretisation (basis, DG assembly, linear solve, projection)
- algorithm: error estimation, candidate selection, adaptivity loop
- diagnostics: convergence graphs, plots, .npz output
"""

__all__ = ["core", "operators", "algorithm", "diagnostics"]
