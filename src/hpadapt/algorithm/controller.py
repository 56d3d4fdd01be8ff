"""
Adaptive hp loop as an explicit state machine:

    INIT -> SOLVE_FINE -> DERIVE_COARSE -> ESTIMATE -> CHECK_STOP
         -> {REFINE -> SOLVE_FINE | DONE}

Each phase completes before the next one starts. The loop has no iteration
cap; it ends when the estimated error drops below err_stop, when the coarse
space reaches ndof_stop, or when a refinement step selects nothing.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from ..core.config import AdaptConfig
from ..core.errors import AssemblyError, EstimatorDivergenceError, SingularSystemError
from ..core.mesh import Mesh, Order
from ..core.problem import ExactSolution
from ..core.space import ApproximationSpace, BoundaryConditions
from ..operators.project import FineSampler
from ..operators.solve import Solution, SolveService
from .estimator import ErrorEstimate, ExactEstimator, ReferenceEstimator
from .selector import CandidateSelector, RefinementDecision, apply_refinement

logger = logging.getLogger(__name__)


class AdaptState(Enum):
    INIT = "init"
    SOLVE_FINE = "solve_fine"
    DERIVE_COARSE = "derive_coarse"
    ESTIMATE = "estimate"
    CHECK_STOP = "check_stop"
    REFINE = "refine"
    DONE = "done"


class StopReason(Enum):
    """Why the loop ended; the value is the process exit code."""

    ACCURACY_REACHED = 0
    DOF_BUDGET_EXHAUSTED = 1
    STAGNATED = 2

    @property
    def exit_code(self) -> int:
        return self.value


_NEXT = {
    AdaptState.INIT: AdaptState.SOLVE_FINE,
    AdaptState.SOLVE_FINE: AdaptState.DERIVE_COARSE,
    AdaptState.DERIVE_COARSE: AdaptState.ESTIMATE,
    AdaptState.ESTIMATE: AdaptState.CHECK_STOP,
    AdaptState.CHECK_STOP: AdaptState.REFINE,
    AdaptState.REFINE: AdaptState.SOLVE_FINE,
}


def next_state(state: AdaptState, stop: Optional[StopReason] = None) -> AdaptState:
    """Pure transition function. Only CHECK_STOP and REFINE may end the loop."""
    if state is AdaptState.DONE:
        raise ValueError("next_state: DONE is terminal")
    if stop is not None:
        if state not in (AdaptState.CHECK_STOP, AdaptState.REFINE):
            raise ValueError(f"next_state: {state.name} cannot stop the loop")
        return AdaptState.DONE
    return _NEXT[state]


# -----------------------------
# Convergence bookkeeping
# -----------------------------

@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    dof_coarse: int
    dof_fine: int
    err_est_percent: float
    err_exact_percent: Optional[float]
    elapsed_cpu: float


class ConvergenceState:
    """Append-only history of an adaptive run."""

    def __init__(self) -> None:
        self._records: List[IterationRecord] = []

    def append(self, rec: IterationRecord) -> None:
        if rec.iteration != len(self._records) + 1:
            raise ValueError(f"ConvergenceState: expected iteration {len(self._records) + 1}, got {rec.iteration}")
        self._records.append(rec)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> Tuple[IterationRecord, ...]:
        return tuple(self._records)

    @property
    def last(self) -> Optional[IterationRecord]:
        return self._records[-1] if self._records else None

    @property
    def dof_history(self) -> Tuple[int, ...]:
        return tuple(r.dof_coarse for r in self._records)

    @property
    def err_est_history(self) -> Tuple[float, ...]:
        return tuple(r.err_est_percent for r in self._records)

    @property
    def err_exact_history(self) -> Tuple[Optional[float], ...]:
        return tuple(r.err_exact_percent for r in self._records)

    @property
    def cpu_history(self) -> Tuple[float, ...]:
        return tuple(r.elapsed_cpu for r in self._records)


class Telemetry(Protocol):
    def record(self, rec: IterationRecord) -> None:
        ...


ViewHook = Callable[[Solution, Dict[int, Order]], None]


def _log_view_failure(fut: Future) -> None:
    exc = fut.exception()
    if exc is not None:
        logger.warning("view hook failed: %s", exc)


class ViewDispatcher:
    """Fire-and-forget delivery of (coarse solution, order map) to view hooks."""

    def __init__(self, hooks: Iterable[ViewHook] = ()) -> None:
        self.hooks = list(hooks)
        self._pool: Optional[ThreadPoolExecutor] = None

    def notify(self, solution: Solution, orders: Dict[int, Order]) -> None:
        if not self.hooks:
            return
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="hpadapt-view")
        for hook in self.hooks:
            self._pool.submit(hook, solution, dict(orders)).add_done_callback(_log_view_failure)

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None


@dataclass(frozen=True)
class AdaptivityResult:
    stop_reason: StopReason
    solution: Solution
    coarse_solution: Solution
    space: ApproximationSpace
    convergence: ConvergenceState

    @property
    def exit_code(self) -> int:
        return self.stop_reason.exit_code


@dataclass
class _Iteration:
    """Resources of one iteration; dropped once REFINE commits."""

    fine_space: Optional[ApproximationSpace] = None
    sln_fine: Optional[Solution] = None
    sln_coarse: Optional[Solution] = None
    sampler: Optional[FineSampler] = None
    estimate: Optional[ErrorEstimate] = None
    exact: Optional[ErrorEstimate] = None


class AdaptivityController:
    """
    Drives solve -> estimate -> refine on one mesh until a stopping condition.

    Parameters
    ----------
    mesh:
        base mesh; INIT applies config.init_ref_num uniform refinements and
        owns it from then on (through the approximation space).
    bc:
        boundary conditions of the space.
    config:
        AdaptConfig of the run.
    solver:
        SolveService (defaults to the Laplace problem).
    exact:
        optional exact solution, used for reporting only.
    telemetry:
        optional object with record(IterationRecord), e.g. ConvergenceLog.
    view_hooks:
        callables (coarse_solution, order_map) notified after each iteration.
    """

    def __init__(
        self,
        mesh: Mesh,
        bc: BoundaryConditions,
        config: AdaptConfig,
        *,
        solver: Optional[SolveService] = None,
        exact: Optional[ExactSolution] = None,
        telemetry: Optional[Telemetry] = None,
        view_hooks: Iterable[ViewHook] = (),
    ) -> None:
        self.mesh = mesh
        self.bc = bc
        self.config = config
        self.solver = solver or SolveService()
        self.exact = exact
        self.telemetry = telemetry
        self.views = ViewDispatcher(view_hooks)
        self.selector = CandidateSelector(config)

        self.space: Optional[ApproximationSpace] = None
        self.convergence = ConvergenceState()
        self.state = AdaptState.INIT
        self.iteration = 0
        self.stop_reason: Optional[StopReason] = None
        self._it = _Iteration()
        self._last_good: Optional[Solution] = None
        self._cpu = 0.0
        self._mark = 0.0

        self._handlers = {
            AdaptState.INIT: self._init,
            AdaptState.SOLVE_FINE: self._solve_fine,
            AdaptState.DERIVE_COARSE: self._derive_coarse,
            AdaptState.ESTIMATE: self._estimate,
            AdaptState.CHECK_STOP: self._check_stop,
            AdaptState.REFINE: self._refine,
        }

    # -----------------------------
    # timing (exact error and views excluded)
    # -----------------------------

    def _tick(self, skip: bool = False) -> None:
        now = time.process_time()
        if not skip:
            self._cpu += now - self._mark
        self._mark = now

    # -----------------------------
    # driver
    # -----------------------------

    def step(self) -> AdaptState:
        """Run the current phase and move to the next state."""
        stop = self._handlers[self.state]()
        if stop is not None:
            self.stop_reason = stop
        self.state = next_state(self.state, stop)
        return self.state

    def run(self) -> AdaptivityResult:
        self._mark = time.process_time()
        try:
            while self.state is not AdaptState.DONE:
                self.step()
        except (AssemblyError, SingularSystemError, EstimatorDivergenceError) as exc:
            exc.convergence = self.convergence
            exc.last_solution = self._last_good
            logger.error("adaptivity aborted in %s (step %d): %s", self.state.name, self.iteration, exc)
            raise
        finally:
            self.views.shutdown(wait=True)

        logger.info("Total running time: %g s", self._cpu)
        assert self.stop_reason is not None
        return AdaptivityResult(
            stop_reason=self.stop_reason,
            solution=self._it.sln_fine,
            coarse_solution=self._it.sln_coarse,
            space=self.space,
            convergence=self.convergence,
        )

    # -----------------------------
    # phases
    # -----------------------------

    def _init(self) -> None:
        self.mesh.refine_all(self.config.init_ref_num)
        self.space = ApproximationSpace(self.mesh, self.bc, p_init=self.config.p_init)
        self.iteration = 1
        logger.info(
            "initial space: %d elements, p=%d, ndof=%d", len(self.mesh), self.config.p_init, self.space.ndof
        )

    def _solve_fine(self) -> None:
        logger.info("---- Adaptivity step %d:", self.iteration)
        it = self._it = _Iteration()
        it.fine_space = self.space.reference_space()
        logger.info("Solving on fine mesh.")
        it.sln_fine = self.solver.solve(it.fine_space)
        it.sampler = FineSampler(it.sln_fine)

    def _derive_coarse(self) -> None:
        it = self._it
        if self.config.solve_on_coarse_mesh:
            logger.info("Solving on coarse mesh.")
            it.sln_coarse = self.solver.solve(self.space)
        else:
            logger.info("Projecting fine mesh solution on coarse mesh.")
            it.sln_coarse = self.solver.project(it.sln_fine, self.space, sampler=it.sampler)
        self._tick()

    def _estimate(self) -> None:
        it = self._it
        err_exact = None
        if self.exact is not None:
            logger.info("Calculating error (exact).")
            it.exact = ExactEstimator(self.exact).estimate(it.sln_coarse)
            err_exact = it.exact.percent
        self.views.notify(it.sln_coarse, self.space.order_map())
        self._tick(skip=True)

        logger.info("Calculating error (est).")
        it.estimate = ReferenceEstimator(it.sampler).estimate(it.sln_coarse)
        self._tick()

        rec = IterationRecord(
            iteration=self.iteration,
            dof_coarse=it.sln_coarse.ndof,
            dof_fine=it.sln_fine.ndof,
            err_est_percent=it.estimate.percent,
            err_exact_percent=err_exact,
            elapsed_cpu=self._cpu,
        )
        self.convergence.append(rec)
        if self.telemetry is not None:
            self.telemetry.record(rec)
        logger.info(
            "ndof_coarse: %d, ndof_fine: %d, err_est: %g%%, err_exact: %s",
            rec.dof_coarse, rec.dof_fine, rec.err_est_percent,
            "n/a" if err_exact is None else f"{err_exact:g}%",
        )

    def _check_stop(self) -> Optional[StopReason]:
        rec = self.convergence.last
        if rec.err_est_percent < self.config.err_stop:
            logger.info("Estimated error %g%% below %g%%: done.", rec.err_est_percent, self.config.err_stop)
            return StopReason.ACCURACY_REACHED
        if rec.dof_coarse >= self.config.ndof_stop:
            logger.info("ndof_coarse %d reached the budget %d: done.", rec.dof_coarse, self.config.ndof_stop)
            return StopReason.DOF_BUDGET_EXHAUSTED
        return None

    def _refine(self) -> Optional[StopReason]:
        it = self._it
        logger.info("Adapting the coarse mesh.")
        decision: RefinementDecision = self.selector.select(self.space, it.estimate, it.sampler)
        if decision.is_empty:
            logger.warning("No element selected for refinement (%d marked): stagnated.", len(decision.marked))
            return StopReason.STAGNATED
        ndof_before = self.space.ndof
        changes = apply_refinement(self.space, decision, self.config.mesh_regularity)
        logger.info("refined %d elements, ndof %d -> %d", changes, ndof_before, self.space.ndof)

        self._last_good = it.sln_fine
        self._it = _Iteration()
        self.iteration += 1
        return None
