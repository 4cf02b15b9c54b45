"""
Finite-difference coefficients of C u + D lap(u) with Robin boundary folding.

Stencil order (shared with the matrix builders): entry 0 is the center,
entry 1 + 2*axis + side is the neighbor one step down (side 0) or up
(side 1) along `axis`.

Boundary treatment:
- A neighbor outside the physical domain is eliminated with the Robin
  condition a u + b du/dn = g imposed at that ghost location with a
  one-sided difference: u_ghost = b / (a h + b) * u_center (homogeneous
  part). Dirichlet leaves the interior stencil unchanged.
- A face DOF lying on the physical boundary normal to its own axis becomes
  an identity row for Dirichlet (b == 0); otherwise the outside neighbor is
  reflected with a centered Robin difference.
- Coarse-fine ghost neighbors are handled by the caller (their DOF is < 0
  and the column is dropped).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Tuple, Union

import numpy as np

from core.box import Box
from core.grid import Patch
from core.types import LOWER, UPPER, FloatArray, Index, OperatorConfigurationError

logger = logging.getLogger(__name__)

CoefFcn = Callable[[Patch, Optional[int], Box], FloatArray]


def laplace_stencil(dim: int) -> List[Index]:
    """Center plus one step in each direction, in stencil order."""
    stencil: List[Index] = [(0,) * dim]
    for axis in range(dim):
        for side in (LOWER, UPPER):
            off = [0] * dim
            off[axis] = -1 if side == LOWER else 1
            stencil.append(tuple(off))
    return stencil


def stencil_index(axis: int, side: int) -> int:
    return 1 + 2 * int(axis) + int(side)


@dataclass(slots=True)
class PoissonSpecifications:
    """
    Operator C u + D lap(u).

    c: constant or callable (patch, axis, data_box) -> values on data_box.
    d: constant diffusion coefficient.
    """

    c: Union[float, CoefFcn] = 0.0
    d: float = 1.0

    def __post_init__(self) -> None:
        if not np.isfinite(float(self.d)):
            raise ValueError(f"PoissonSpecifications.d must be finite, got {self.d}.")
        if not callable(self.c) and not np.isfinite(float(self.c)):
            raise ValueError(f"PoissonSpecifications.c must be finite, got {self.c}.")

    def c_values(self, patch: Patch, axis: Optional[int], box: Box) -> FloatArray:
        if callable(self.c):
            vals = np.asarray(self.c(patch, axis, box), dtype=np.float64)
            if vals.shape != box.shape:
                raise ValueError(
                    f"C coefficient callback returned shape {vals.shape}, expected {box.shape}."
                )
            return vals
        return np.full(box.shape, float(self.c), dtype=np.float64)


class RobinBcCoefStrategy(Protocol):
    def robin_coefs(self, location_index: int, face_index: Index, time: float) -> Tuple[float, float]:
        """(a, b) of a u + b du/dn = g at a boundary face."""
        ...


@dataclass(frozen=True, slots=True)
class RobinBcCoef:
    """Spatially constant Robin coefficients on every physical boundary."""

    a: float = 1.0
    b: float = 0.0

    def __post_init__(self) -> None:
        if self.a < 0.0 or self.b < 0.0 or (self.a == 0.0 and self.b == 0.0):
            raise ValueError(f"Robin coefficients need a, b >= 0, not both zero; got a={self.a}, b={self.b}.")

    def robin_coefs(self, location_index: int, face_index: Index, time: float) -> Tuple[float, float]:
        return float(self.a), float(self.b)


def dirichlet_bc() -> RobinBcCoef:
    return RobinBcCoef(a=1.0, b=0.0)


def neumann_bc() -> RobinBcCoef:
    return RobinBcCoef(a=0.0, b=1.0)


def _layer(box: Box, axis: int, side: int) -> Box:
    lo = list(box.lower)
    hi = list(box.upper)
    if side == LOWER:
        hi[axis] = lo[axis]
    else:
        lo[axis] = hi[axis]
    return Box(tuple(lo), tuple(hi))


def _layer_slices(box: Box, axis: int, side: int) -> Tuple[slice, ...]:
    return _layer(box, axis, side).slices(box.lower)


def _robin_layer(
    bc_coef: RobinBcCoefStrategy,
    layer: Box,
    axis: int,
    side: int,
    face_shift: int,
    time: float,
) -> Tuple[FloatArray, FloatArray]:
    a = np.empty(layer.shape, dtype=np.float64)
    b = np.empty(layer.shape, dtype=np.float64)
    loc = 2 * axis + side
    for idx in layer:
        face = list(idx)
        face[axis] += face_shift
        ac, bc = bc_coef.robin_coefs(loc, tuple(face), time)
        off = tuple(i - lo for i, lo in zip(idx, layer.lower))
        a[off] = ac
        b[off] = bc
    if np.any(a < 0.0) or np.any(b < 0.0) or np.any((a == 0.0) & (b == 0.0)):
        raise OperatorConfigurationError(
            f"Invalid Robin coefficients at boundary location {loc}: need a, b >= 0, not both zero."
        )
    return a, b


def compute_matrix_coefficients(
    patch: Patch,
    axis: Optional[int],
    data_box: Box,
    poisson_spec: PoissonSpecifications,
    bc_coef: RobinBcCoefStrategy,
    data_time: float,
) -> FloatArray:
    """
    Stencil coefficients over `data_box` (cells when axis is None, faces
    normal to `axis` otherwise). Returns shape (2*dim + 1,) + data_box.shape.
    """
    level = patch.level
    dim = patch.dim
    dx = level.dx
    D = float(poisson_spec.d)
    n_stencil = 2 * dim + 1

    coefs = np.zeros((n_stencil,) + data_box.shape, dtype=np.float64)
    coefs[0] = poisson_spec.c_values(patch, axis, data_box)
    for a in range(dim):
        w = D / (dx[a] * dx[a])
        coefs[0] -= 2.0 * w
        coefs[stencil_index(a, LOWER)] = w
        coefs[stencil_index(a, UPPER)] = w

    domain = level.domain_box if axis is None else level.domain_box.to_side_box(axis)

    # tangential (and all cell-centered) boundaries: fold ghost into center
    for a in range(dim):
        if a == axis:
            continue
        h = dx[a]
        for side in (LOWER, UPPER):
            at_bdry = (
                data_box.lower[a] <= domain.lower[a]
                if side == LOWER
                else data_box.upper[a] >= domain.upper[a]
            )
            if not at_bdry:
                continue
            layer = _layer(data_box, a, side)
            sl = _layer_slices(data_box, a, side)
            ra, rb = _robin_layer(bc_coef, layer, a, side, 0 if side == LOWER else 1, data_time)
            beta = rb / (ra * h + rb)
            k = stencil_index(a, side)
            coefs[0][sl] += beta * coefs[k][sl]
            coefs[k][sl] = 0.0

    # normal-axis boundary faces of side-centered data
    if axis is not None:
        h = dx[axis]
        for side in (LOWER, UPPER):
            at_bdry = (
                data_box.lower[axis] <= domain.lower[axis]
                if side == LOWER
                else data_box.upper[axis] >= domain.upper[axis]
            )
            if not at_bdry:
                continue
            layer = _layer(data_box, axis, side)
            sl = _layer_slices(data_box, axis, side)
            ra, rb = _robin_layer(bc_coef, layer, axis, side, 0, data_time)
            k_out = stencil_index(axis, side)
            k_in = stencil_index(axis, 1 - side)
            dirichlet = rb == 0.0
            safe_b = np.where(dirichlet, 1.0, rb)
            out = coefs[k_out][sl]
            coefs[k_in][sl] = np.where(dirichlet, coefs[k_in][sl], coefs[k_in][sl] + out)
            coefs[0][sl] = np.where(
                dirichlet, coefs[0][sl], coefs[0][sl] - (2.0 * h * ra / safe_b) * out
            )
            coefs[k_out][sl] = 0.0
            if np.any(dirichlet):
                for k in range(n_stencil):
                    coefs[k][sl][dirichlet] = 1.0 if k == 0 else 0.0

    return coefs
