# operators/assemble.py
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from ..core.errors import AssemblyError
from ..core.mesh import Element, Face
from ..core.problem import PoissonProblem
from ..core.space import ApproximationSpace, BCType, SpaceLayout
from .basis import gauss, local_stiffness, physical_basis, tensor_quadrature

logger = logging.getLogger(__name__)

DEFAULT_PENALTY = 5.0


class _Triplets:
    """COO accumulator for dense local blocks."""

    def __init__(self) -> None:
        self.rows: List[np.ndarray] = []
        self.cols: List[np.ndarray] = []
        self.data: List[np.ndarray] = []

    def add(self, ia: np.ndarray, ja: np.ndarray, block: np.ndarray) -> None:
        self.rows.append(np.repeat(ia, ja.size))
        self.cols.append(np.tile(ja, ia.size))
        self.data.append(np.asarray(block, dtype=float).reshape(-1))

    def tocsr(self, n: int) -> sp.csr_matrix:
        if not self.data:
            return sp.csr_matrix((n, n))
        return sp.coo_matrix(
            (np.concatenate(self.data), (np.concatenate(self.rows), np.concatenate(self.cols))),
            shape=(n, n),
        ).tocsr()


def _check_element(e: Element) -> None:
    if not (np.isfinite([e.x0, e.x1, e.y0, e.y1]).all() and e.hx > 0.0 and e.hy > 0.0):
        raise AssemblyError(f"element {e.id} has degenerate geometry {e.rect}")


def _face_trace(e: Element, face: Face, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Basis values and normal derivatives (normal of face.side) on a face."""
    phi, phi_x, phi_y = physical_basis(e.rect, e.order, x, y)
    nx, ny = face.normal
    return phi, nx * phi_x + ny * phi_y


def assemble_dg_system(
    space: ApproximationSpace,
    problem: Optional[PoissonProblem] = None,
    *,
    penalty: float = DEFAULT_PENALTY,
) -> Tuple[sp.csr_matrix, np.ndarray, SpaceLayout]:
    """
    Symmetric interior-penalty DG discretisation of -Δu = f.

        a(u, v) = Σ_K ∫_K ∇u·∇v
                  + Σ_F [ -∫ {∂n u}[v] - ∫ {∂n v}[u] + σ_F ∫ [u][v] ]
        l(v)    = Σ_K ∫_K f v + Σ_{F essential} [ -∫ ∂n v g + σ_F ∫ g v ]
                  + Σ_{F natural} ∫ g v

    Interior sums run over face segments (hanging nodes need no constraints),
    essential faces use the one-sided version with [u] = u. The penalty is
    σ_F = penalty * (p+1)^2 / h_F with p the largest order and h_F the
    smallest element size across the face.

    Returns the CSR matrix, the load vector and the DOF layout used.
    """
    problem = problem or PoissonProblem()
    mesh = space.mesh
    bc = space.bc
    layout = space.snapshot()
    n = layout.ndof

    trip = _Triplets()
    f = np.zeros(n)
    dofs = {}

    # --- Volume terms
    for k, eid in enumerate(layout.ids):
        e = mesh[eid]
        _check_element(e)
        d = layout.dofs(k)
        dofs[eid] = d
        trip.add(d, d, local_stiffness(e.rect, e.order))
        if problem.rhs_func is not None:
            nq = max(e.order) + 2
            x, y, w = tensor_quadrature(e.rect, nq, nq)
            fv = problem.rhs(x, y)
            if not np.all(np.isfinite(fv)):
                raise AssemblyError(f"right-hand side is not finite on element {eid}")
            phi, _, _ = physical_basis(e.rect, e.order, x, y)
            f[d] += phi @ (w * fv)

    # --- Face terms
    for face in mesh.faces():
        a = mesh[face.a]
        if face.is_boundary:
            if face.marker is None:
                raise AssemblyError(f"boundary segment of element {a.id} ({face.side.name}) has no marker")
            kind = bc.classify(face.marker)
            pa = max(a.order)
            t, wq = gauss(pa + 3)
            x, y = face.points(t)
            w = wq * (0.5 * face.length)
            g = bc.value(face.marker, x, y)
            if not np.all(np.isfinite(g)):
                raise AssemblyError(f"boundary data for marker {face.marker!r} is not finite")
            phi, dn = _face_trace(a, face, x, y)
            da = dofs[a.id]
            if kind is BCType.ESSENTIAL:
                sigma = penalty * (pa + 1) ** 2 / a.normal_extent(face.side)
                pw = phi * w
                trip.add(da, da, -pw @ dn.T - (dn * w) @ phi.T + sigma * pw @ phi.T)
                f[da] += -dn @ (w * g) + sigma * (phi @ (w * g))
            elif kind is BCType.NATURAL:
                f[da] += phi @ (w * g)
            else:
                raise AssemblyError(f"boundary classifier returned {kind!r} for marker {face.marker!r}")
            continue

        b = mesh[face.b]
        pmax = max(max(a.order), max(b.order))
        t, wq = gauss(pmax + 1)
        x, y = face.points(t)
        w = wq * (0.5 * face.length)
        h = min(a.normal_extent(face.side), b.normal_extent(face.side))
        sigma = penalty * (pmax + 1) ** 2 / h

        va, dna = _face_trace(a, face, x, y)
        vb, dnb = _face_trace(b, face, x, y)
        V, D, S = (va, vb), (dna, dnb), (1.0, -1.0)
        idx = (dofs[a.id], dofs[b.id])
        for i in range(2):
            for j in range(2):
                vw = V[i] * w
                block = (
                    -0.5 * S[i] * vw @ D[j].T
                    - 0.5 * S[j] * (D[i] * w) @ V[j].T
                    + sigma * S[i] * S[j] * vw @ V[j].T
                )
                trip.add(idx[i], idx[j], block)

    A = trip.tocsr(n)
    if not (np.all(np.isfinite(A.data)) and np.all(np.isfinite(f))):
        raise AssemblyError("assembled system contains non-finite entries")
    logger.debug("assembled DG system: ndof=%d, nnz=%d", n, A.nnz)
    return A, f, layout
