"""
Exception taxonomy for the adaptivity loop.

Solve and estimator failures are fatal to the run; the controller attaches
the convergence history and the last good solution before re-raising.
"""

from __future__ import annotations

from typing import Any, Optional


class HpAdaptError(Exception):
    """Base class for runtime failures of the adaptive loop."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.convergence: Optional[Any] = None
        self.last_solution: Optional[Any] = None


class MeshLoadError(HpAdaptError):
    """The mesh description could not be read or is not usable."""


class AssemblyError(HpAdaptError):
    """The weak form could not be evaluated on the current mesh/space."""


class SingularSystemError(HpAdaptError):
    """The discrete linear system is singular or numerically broken."""


class EstimatorDivergenceError(HpAdaptError):
    """An element error contribution came out non-finite."""


class IncompatibleSpaceError(AssertionError):
    """Projection between spaces that are not nested (programmer error)."""
