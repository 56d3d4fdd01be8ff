# diagnostics.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from matplotlib.collections import PatchCollection
from matplotlib.figure import Figure
from matplotlib.patches import Rectangle

from .algorithm.controller import IterationRecord
from .core.mesh import Order
from .operators.solve import Solution

logger = logging.getLogger(__name__)


# -----------------------------
# I/O helpers
# -----------------------------

def save_npz(path: Path, **arrays: np.ndarray) -> None:
    """Save compressed .npz (creates parent dirs)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(path, **arrays)


def save_solution(path: Path, sln: Solution) -> None:
    """Store a solution's layout and coefficients as .npz."""
    lay = sln.layout
    save_npz(
        path,
        ids=np.asarray(lay.ids, dtype=int),
        rects=lay.rect_array(),
        orders=np.asarray(lay.orders, dtype=int),
        offsets=np.asarray(lay.offsets, dtype=int),
        coeffs=np.asarray(sln.coeffs),
    )


# -----------------------------
# Convergence graphs
# -----------------------------

class ConvergenceGraph:
    """One `x y` series in a text file: truncated on creation, appended per point."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("")

    def add(self, x: float, y: float) -> None:
        with self.path.open("a") as fh:
            fh.write(f"{x:.10g} {y:.10g}\n")

    def read(self) -> np.ndarray:
        """(n, 2) array of the points written so far."""
        data = np.loadtxt(self.path, ndmin=2)
        return data.reshape(-1, 2)


class ConvergenceLog:
    """
    The four benchmark graphs:

        conv_dof_est.dat    coarse DOF vs estimated error [%]
        conv_dof_exact.dat  coarse DOF vs exact error [%]
        conv_cpu_est.dat    CPU time [s] vs estimated error [%]
        conv_cpu_exact.dat  CPU time [s] vs exact error [%]

    The exact graphs stay empty when no exact solution is known.
    """

    NAMES = ("conv_dof_est", "conv_dof_exact", "conv_cpu_est", "conv_cpu_exact")

    def __init__(self, outdir: Path) -> None:
        self.outdir = Path(outdir)
        self.graphs: Dict[str, ConvergenceGraph] = {
            name: ConvergenceGraph(self.outdir / f"{name}.dat") for name in self.NAMES
        }

    def record(self, rec: IterationRecord) -> None:
        self.graphs["conv_dof_est"].add(rec.dof_coarse, rec.err_est_percent)
        self.graphs["conv_cpu_est"].add(rec.elapsed_cpu, rec.err_est_percent)
        if rec.err_exact_percent is not None:
            self.graphs["conv_dof_exact"].add(rec.dof_coarse, rec.err_exact_percent)
            self.graphs["conv_cpu_exact"].add(rec.elapsed_cpu, rec.err_exact_percent)


# -----------------------------
# Plotting (Figure API: safe off the main thread)
# -----------------------------

def _bbox(rects: np.ndarray) -> Tuple[float, float, float, float]:
    return (float(rects[:, 0].min()), float(rects[:, 1].max()), float(rects[:, 2].min()), float(rects[:, 3].max()))


def plot_solution(
    sln: Solution,
    *,
    title: str = "",
    path: Optional[Path] = None,
    n: int = 6,
    cmap: str | None = None,
) -> Figure:
    """
    Pseudocolour plot of a discontinuous solution, element by element on an
    n-by-n grid, with a shared colour scale.
    """
    grids = [sln.element_grid(k, n) for k in range(len(sln.layout))]
    vmin = min(float(U.min()) for _, _, U in grids)
    vmax = max(float(U.max()) for _, _, U in grids)

    fig = Figure(figsize=(6, 5))
    ax = fig.add_subplot()
    im = None
    for X, Y, U in grids:
        im = ax.pcolormesh(X, Y, U, shading="gouraud", vmin=vmin, vmax=vmax, cmap=cmap)
    if im is not None:
        fig.colorbar(im, ax=ax)
    xmin, xmax, ymin, ymax = _bbox(sln.layout.rect_array())
    ax.set_xlim(xmin, xmax)
    ax.set_ylim(ymin, ymax)
    ax.set_aspect("equal")
    ax.set_title(title)
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    fig.tight_layout()

    if path is not None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(path, dpi=200)
    return fig


def plot_orders(
    rects: Sequence[Tuple[float, float, float, float]],
    orders: Sequence[Order],
    *,
    title: str = "Polynomial orders",
    path: Optional[Path] = None,
    annotate: bool = True,
) -> Figure:
    """Mesh with elements coloured by max(px, py), labelled `px,py`."""
    R = np.asarray(rects, dtype=float).reshape(-1, 4)
    patches = [Rectangle((r[0], r[2]), r[1] - r[0], r[3] - r[2]) for r in R]
    pmax = np.array([max(q) for q in orders], dtype=float)

    fig = Figure(figsize=(6, 5))
    ax = fig.add_subplot()
    pc = PatchCollection(patches, cmap="viridis", edgecolor="k", linewidth=0.3)
    pc.set_array(pmax)
    ax.add_collection(pc)
    fig.colorbar(pc, ax=ax, label="max order")

    if annotate and len(R) <= 400:
        for r, q in zip(R, orders):
            ax.text(0.5 * (r[0] + r[1]), 0.5 * (r[2] + r[3]), f"{q[0]},{q[1]}",
                    ha="center", va="center", fontsize=5)

    xmin, xmax, ymin, ymax = _bbox(R)
    ax.set_xlim(xmin, xmax)
    ax.set_ylim(ymin, ymax)
    ax.set_aspect("equal")
    ax.set_title(title)
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    fig.tight_layout()

    if path is not None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(path, dpi=200)
    return fig


class PlotViewHook:
    """
    View hook for the adaptivity loop: writes `solution_NNN.png` and
    `orders_NNN.png` into outdir for every iteration it is notified of.
    """

    def __init__(self, outdir: Path, *, n: int = 6) -> None:
        self.outdir = Path(outdir)
        self.n = int(n)
        self.count = 0

    def __call__(self, sln: Solution, orders: Dict[int, Order]) -> None:
        self.count += 1
        lay = sln.layout
        plot_solution(sln, title=f"Coarse solution, step {self.count}",
                      path=self.outdir / f"solution_{self.count:03d}.png", n=self.n)
        plot_orders(lay.rects, [orders.get(eid, q) for eid, q in zip(lay.ids, lay.orders)],
                    title=f"Orders, step {self.count}, ndof={lay.ndof}",
                    path=self.outdir / f"orders_{self.count:03d}.png")
        logger.debug("view hook: wrote step %d to %s", self.count, self.outdir)
