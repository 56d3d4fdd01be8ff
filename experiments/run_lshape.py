from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from hpadapt.algorithm.controller import AdaptivityController
from hpadapt.core.cases import make_lshape_case
from hpadapt.core.config import AdaptConfig, CandList
from hpadapt.core.errors import AssemblyError, EstimatorDivergenceError, MeshLoadError, SingularSystemError
from hpadapt.core.mesh_io import load_mesh
from hpadapt.diagnostics import ConvergenceLog, PlotViewHook, plot_solution, save_solution
from hpadapt.operators.solve import SolveService

logger = logging.getLogger("run_lshape")

EXIT_SOLVE_FAILED = 3
EXIT_MESH_FAILED = 4


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="hp-adaptivity on the L-shape Laplace benchmark")
    p.add_argument("--mesh", type=Path, default=Path(__file__).with_name("lshape.mesh"))
    p.add_argument("--outdir", type=Path, default=Path("outputs") / "lshape")
    p.add_argument("--p-init", type=int, default=4)
    p.add_argument("--init-ref-num", type=int, default=1)
    p.add_argument("--threshold", type=float, default=0.3)
    p.add_argument("--strategy", type=int, default=0)
    p.add_argument("--cand-list", default=CandList.HP_ANISO_H.value, choices=[c.value for c in CandList])
    p.add_argument("--mesh-regularity", type=int, default=-1)
    p.add_argument("--conv-exp", type=float, default=1.0)
    p.add_argument("--err-stop", type=float, default=0.01)
    p.add_argument("--ndof-stop", type=int, default=60000)
    p.add_argument("--solve-on-coarse", action="store_true")
    p.add_argument("--plots", action="store_true", help="write solution/order PNGs per step")
    p.add_argument("-v", "--verbose", action="store_true")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = AdaptConfig(
        init_ref_num=args.init_ref_num,
        p_init=args.p_init,
        threshold=args.threshold,
        strategy=args.strategy,
        cand_list=CandList(args.cand_list),
        mesh_regularity=args.mesh_regularity,
        conv_exp=args.conv_exp,
        err_stop=args.err_stop,
        ndof_stop=args.ndof_stop,
        solve_on_coarse_mesh=args.solve_on_coarse,
    )
    case = make_lshape_case()

    try:
        mesh = load_mesh(args.mesh)
    except MeshLoadError as exc:
        logger.error("cannot load mesh: %s", exc)
        return EXIT_MESH_FAILED

    args.outdir.mkdir(parents=True, exist_ok=True)
    hooks = [PlotViewHook(args.outdir / "figs")] if args.plots else []
    ctrl = AdaptivityController(
        mesh,
        case.bc,
        cfg,
        solver=SolveService(case.problem),
        exact=case.exact,
        telemetry=ConvergenceLog(args.outdir),
        view_hooks=hooks,
    )

    try:
        result = ctrl.run()
    except (AssemblyError, SingularSystemError, EstimatorDivergenceError) as exc:
        logger.error("adaptivity failed after %d steps: %s", len(exc.convergence or ()), exc)
        if exc.last_solution is not None:
            save_solution(args.outdir / "fields" / "last_solution.npz", exc.last_solution)
        return EXIT_SOLVE_FAILED

    save_solution(args.outdir / "fields" / "solution.npz", result.solution)
    if args.plots:
        plot_solution(result.solution, title="Final solution", path=args.outdir / "figs" / "final_solution.png")
    last = result.convergence.last
    logger.info(
        "%s after %d steps: ndof=%d, err_est=%g%%, err_exact=%s%%",
        result.stop_reason.name, len(result.convergence), last.dof_coarse,
        last.err_est_percent, last.err_exact_percent,
    )
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
