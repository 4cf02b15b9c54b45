"""
Jacobians of affine and bilinear isoparametric element maps.

A mapping evaluates, at the quadrature points of its reference element, the
contravariant matrix dX/dxi and the quadrature weight times the Jacobian
determinant (JxW). Inverted or degenerate elements (J <= 0) raise
AssemblyInvariantError.

Reference elements:
- TRI3: (0,0), (1,0), (0,1)
- QUAD4: [-1, 1]^2, nodes counter-clockwise from (-1,-1)
- TET4: (0,0,0), (1,0,0), (0,1,0), (0,0,1)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Tuple

import numpy as np

from core.types import AssemblyInvariantError, FloatArray

logger = logging.getLogger(__name__)


class ElementType(str, Enum):
    TRI3 = "tri3"
    QUAD4 = "quad4"
    TET4 = "tet4"


@dataclass(frozen=True)
class QuadratureRule:
    points: FloatArray  # (n_q, dim) on the reference element
    weights: FloatArray  # (n_q,)

    @property
    def n_points(self) -> int:
        return int(self.weights.size)


def _n_gauss(order: int) -> int:
    # n-point Gauss-Legendre is exact for degree 2n - 1
    return max(1, (int(order) + 2) // 2)


@lru_cache(maxsize=None)
def gauss_rule(elem_type: ElementType, order: int) -> QuadratureRule:
    """
    Gauss rule exact for polynomials of degree `order` on the reference
    element. Simplices use collapsed (Duffy) tensor-product rules.
    """
    elem_type = ElementType(elem_type)
    if int(order) < 0:
        raise ValueError(f"Quadrature order must be >= 0, got {order}.")
    if elem_type == ElementType.QUAD4:
        x, w = np.polynomial.legendre.leggauss(_n_gauss(order))
        X, Y = np.meshgrid(x, x, indexing="ij")
        W = np.outer(w, w)
        return QuadratureRule(np.column_stack([X.ravel(), Y.ravel()]), W.ravel())

    # collapsed rules need one extra point per Jacobian power of (1 - u)
    dim = 2 if elem_type == ElementType.TRI3 else 3
    x, w = np.polynomial.legendre.leggauss(_n_gauss(order + dim - 1))
    u = 0.5 * (x + 1.0)
    wu = 0.5 * w
    if dim == 2:
        U, V = np.meshgrid(u, u, indexing="ij")
        W = np.outer(wu, wu) * (1.0 - U)
        pts = np.column_stack([U.ravel(), (V * (1.0 - U)).ravel()])
        return QuadratureRule(pts, W.ravel())
    U, V, S = np.meshgrid(u, u, u, indexing="ij")
    W = np.einsum("i,j,k->ijk", wu, wu, wu) * (1.0 - U) ** 2 * (1.0 - V)
    pts = np.column_stack(
        [U.ravel(), (V * (1.0 - U)).ravel(), (S * (1.0 - U) * (1.0 - V)).ravel()]
    )
    return QuadratureRule(pts, W.ravel())


class Mapping:
    """Base class: holds the quadrature rule and the per-point outputs."""

    elem_type: ElementType
    dim: int
    n_nodes: int

    def __init__(self, order: int = 2) -> None:
        self.order = int(order)
        self.quad = gauss_rule(self.elem_type, self.order)
        n_q = self.quad.n_points
        self.JxW: FloatArray = np.zeros(n_q, dtype=np.float64)
        self.contravariants: FloatArray = np.zeros((n_q, self.dim, self.dim), dtype=np.float64)

    def _nodes(self, nodes) -> FloatArray:
        xs = np.asarray(nodes, dtype=np.float64)
        if xs.shape != (self.n_nodes, self.dim):
            raise ValueError(
                f"{type(self).__name__}: expected node array of shape {(self.n_nodes, self.dim)}, got {xs.shape}."
            )
        return xs

    def _check(self, J: FloatArray, xs: FloatArray) -> None:
        if np.any(J <= 0.0):
            raise AssemblyInvariantError(
                f"{type(self).__name__}: non-positive Jacobian determinant {float(np.min(J)):.6g} "
                f"for element with nodes {xs.tolist()}."
            )

    def get(self, nodes) -> Tuple[FloatArray, FloatArray]:
        """(contravariants (n_q, dim, dim), JxW (n_q,)) of one element."""
        raise NotImplementedError


class _AffineSimplexMapping(Mapping):
    def get(self, nodes) -> Tuple[FloatArray, FloatArray]:
        xs = self._nodes(nodes)
        contravariant = (xs[1:] - xs[0]).T
        J = np.linalg.det(contravariant)
        self._check(np.asarray([J]), xs)
        self.contravariants[:] = contravariant
        self.JxW[:] = self.quad.weights * J
        return self.contravariants, self.JxW


class Tri3Mapping(_AffineSimplexMapping):
    elem_type = ElementType.TRI3
    dim = 2
    n_nodes = 3


class Tet4Mapping(_AffineSimplexMapping):
    elem_type = ElementType.TET4
    dim = 3
    n_nodes = 4


class Quad4Mapping(Mapping):
    elem_type = ElementType.QUAD4
    dim = 2
    n_nodes = 4

    def get(self, nodes) -> Tuple[FloatArray, FloatArray]:
        p = self._nodes(nodes)
        a = 0.25 * (-p[0] + p[1] + p[2] - p[3])
        b = 0.25 * (-p[0] - p[1] + p[2] + p[3])
        c = 0.25 * (p[0] - p[1] + p[2] - p[3])
        x = self.quad.points[:, 0]
        y = self.quad.points[:, 1]
        self.contravariants[:, :, 0] = a[None, :] + c[None, :] * y[:, None]
        self.contravariants[:, :, 1] = b[None, :] + c[None, :] * x[:, None]
        J = np.linalg.det(self.contravariants)
        self._check(J, p)
        self.JxW[:] = self.quad.weights * J
        return self.contravariants, self.JxW


_MAPPINGS = {
    ElementType.TRI3: Tri3Mapping,
    ElementType.QUAD4: Quad4Mapping,
    ElementType.TET4: Tet4Mapping,
}


def build_mapping(elem_type, order: int = 2) -> Mapping:
    try:
        cls = _MAPPINGS[ElementType(elem_type)]
    except ValueError as exc:
        raise ValueError(f"Unsupported element type {elem_type!r}.") from exc
    return cls(order)
