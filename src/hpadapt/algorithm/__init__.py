"""
Algorithms: error estimation, hp candidate selection, adaptivity loop.
"""

from .estimator import ErrorEstimate, ErrorEstimator, ReferenceEstimator, ExactEstimator

from .selector import (
    CandidateKind,
    RefinementCandidate,
    RefinementDecision,
    CandidateSelector,
    mark_elements,
    candidate_templates,
    apply_refinement,
)

from .controller import (
    AdaptState,
    StopReason,
    IterationRecord,
    ConvergenceState,
    AdaptivityResult,
    AdaptivityController,
    ViewDispatcher,
    next_state,
)

__all__ = [
    # estimator.py
    "ErrorEstimate",
    "ErrorEstimator",
    "ReferenceEstimator",
    "ExactEstimator",
    # selector.py
    "CandidateKind",
    "RefinementCandidate",
    "RefinementDecision",
    "CandidateSelector",
    "mark_elements",
    "candidate_templates",
    "apply_refinement",
    # controller.py
    "AdaptState",
    "StopReason",
    "IterationRecord",
    "ConvergenceState",
    "AdaptivityResult",
    "AdaptivityController",
    "ViewDispatcher",
    "next_state",
]
