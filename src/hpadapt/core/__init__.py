"""
Core: problem definition (mesh, approximation space, configs, cases, errors).
"""

from .config import AdaptConfig, CandList
from .errors import (
    HpAdaptError,
    MeshLoadError,
    AssemblyError,
    SingularSystemError,
    EstimatorDivergenceError,
    IncompatibleSpaceError,
)
from .mesh import Mesh, Element, Face, Side, Split
from .mesh_io import load_mesh, parse_brace_mesh
from .space import ApproximationSpace, BCType, BoundaryConditions, DirichletBC, MarkerBC, SpaceLayout
from .problem import PoissonProblem, ExactSolution
from .cases import BenchmarkCase, make_lshape_case, make_default_cases

__all__ = [
    "AdaptConfig",
    "CandList",
    # errors
    "HpAdaptError",
    "MeshLoadError",
    "AssemblyError",
    "SingularSystemError",
    "EstimatorDivergenceError",
    "IncompatibleSpaceError",
    # mesh
    "Mesh",
    "Element",
    "Face",
    "Side",
    "Split",
    "load_mesh",
    "parse_brace_mesh",
    # space
    "ApproximationSpace",
    "BCType",
    "BoundaryConditions",
    "DirichletBC",
    "MarkerBC",
    "SpaceLayout",
    # problem
    "PoissonProblem",
    "ExactSolution",
    "BenchmarkCase",
    "make_lshape_case",
    "make_default_cases",
]
