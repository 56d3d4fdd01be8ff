# operators/basis.py
from __future__ import annotations

from functools import lru_cache
from typing import Tuple

import numpy as np

from ..core.mesh import Order, Rect


# ============================
# 1D Legendre polynomials
# ============================

@lru_cache(maxsize=None)
def gauss(n: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Gauss-Legendre rule with n points on [-1, 1] (exact up to degree 2n-1).
    """
    n = int(n)
    if n < 1:
        raise ValueError("gauss: n must be >= 1")
    t, w = np.polynomial.legendre.leggauss(n)
    t.setflags(write=False)
    w.setflags(write=False)
    return t, w


def legendre(p: int, t: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Values and derivatives of L_0..L_p at points t, each shaped (p+1, len(t)).

    Three-term recurrence
        (k+1) L_{k+1} = (2k+1) t L_k - k L_{k-1}
        L'_{k+1} = L'_{k-1} + (2k+1) L_k
    """
    t = np.asarray(t, dtype=float).reshape(-1)
    v = np.zeros((p + 1, t.size))
    d = np.zeros((p + 1, t.size))
    v[0] = 1.0
    if p >= 1:
        v[1] = t
        d[1] = 1.0
    for k in range(1, p):
        v[k + 1] = ((2 * k + 1) * t * v[k] - k * v[k - 1]) / (k + 1)
        d[k + 1] = d[k - 1] + (2 * k + 1) * v[k]
    return v, d


@lru_cache(maxsize=None)
def mass_1d(p: int) -> np.ndarray:
    """∫ L_i L_j dt on [-1, 1] (diagonal, 2/(2i+1))."""
    m = np.diag(2.0 / (2.0 * np.arange(p + 1) + 1.0))
    m.setflags(write=False)
    return m


@lru_cache(maxsize=None)
def stiffness_1d(p: int) -> np.ndarray:
    """∫ L_i' L_j' dt on [-1, 1]."""
    t, w = gauss(p + 1)
    _, d = legendre(p, t)
    s = (d * w) @ d.T
    s.setflags(write=False)
    return s


# ============================
# Tensor-product element basis
# ============================

def ndof(order: Order) -> int:
    return (int(order[0]) + 1) * (int(order[1]) + 1)


def to_reference(rect: Rect, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    x0, x1, y0, y1 = rect
    xi = (2.0 * np.asarray(x, dtype=float) - (x0 + x1)) / (x1 - x0)
    eta = (2.0 * np.asarray(y, dtype=float) - (y0 + y1)) / (y1 - y0)
    return xi, eta


def from_reference(rect: Rect, xi: np.ndarray, eta: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    x0, x1, y0, y1 = rect
    x = 0.5 * (x0 + x1) + 0.5 * (x1 - x0) * np.asarray(xi, dtype=float)
    y = 0.5 * (y0 + y1) + 0.5 * (y1 - y0) * np.asarray(eta, dtype=float)
    return x, y


def tensor_basis(order: Order, xi: np.ndarray, eta: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    phi_{ij}(xi, eta) = L_i(xi) L_j(eta), mode index i*(py+1)+j, evaluated at
    scattered reference points. Returns (phi, dphi/dxi, dphi/deta), each
    shaped (ndof, npts).
    """
    px, py = int(order[0]), int(order[1])
    vx, dx = legendre(px, xi)
    vy, dy = legendre(py, eta)
    m = vx.shape[1]
    phi = (vx[:, None, :] * vy[None, :, :]).reshape(-1, m)
    phi_xi = (dx[:, None, :] * vy[None, :, :]).reshape(-1, m)
    phi_eta = (vx[:, None, :] * dy[None, :, :]).reshape(-1, m)
    return phi, phi_xi, phi_eta


def physical_basis(rect: Rect, order: Order, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Basis values and physical gradients at physical points inside rect."""
    x0, x1, y0, y1 = rect
    xi, eta = to_reference(rect, x, y)
    phi, phi_xi, phi_eta = tensor_basis(order, xi, eta)
    return phi, phi_xi * (2.0 / (x1 - x0)), phi_eta * (2.0 / (y1 - y0))


def tensor_quadrature(rect: Rect, nx: int, ny: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Physical points and weights of an nx-by-ny Gauss rule on rect."""
    x0, x1, y0, y1 = rect
    tx, wx = gauss(nx)
    ty, wy = gauss(ny)
    XI, ETA = np.meshgrid(tx, ty, indexing="ij")
    x, y = from_reference(rect, XI.reshape(-1), ETA.reshape(-1))
    w = np.outer(wx, wy).reshape(-1) * (0.25 * (x1 - x0) * (y1 - y0))
    return x, y, w


# ============================
# Local matrices (analytic, separable)
# ============================

def local_mass(rect: Rect, order: Order) -> np.ndarray:
    x0, x1, y0, y1 = rect
    px, py = order
    return 0.25 * (x1 - x0) * (y1 - y0) * np.kron(mass_1d(px), mass_1d(py))


def local_stiffness(rect: Rect, order: Order) -> np.ndarray:
    """∫ grad phi_i . grad phi_j over rect."""
    x0, x1, y0, y1 = rect
    hx, hy = x1 - x0, y1 - y0
    px, py = order
    return (hy / hx) * np.kron(stiffness_1d(px), mass_1d(py)) + (hx / hy) * np.kron(mass_1d(px), stiffness_1d(py))


def local_h1_gram(rect: Rect, order: Order) -> np.ndarray:
    return local_mass(rect, order) + local_stiffness(rect, order)


def evaluate(
    coeffs: np.ndarray,
    rect: Rect,
    order: Order,
    x: np.ndarray,
    y: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Value and gradient of the element expansion at physical points."""
    phi, phi_x, phi_y = physical_basis(rect, order, x, y)
    return coeffs @ phi, coeffs @ phi_x, coeffs @ phi_y
