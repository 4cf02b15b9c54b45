"""
Regularized delta kernels for marker interpolation.

A stencil-weight function has the signature `fcn(r_lower) -> w` where
`r_lower` is the marker offset from the first stencil location in units of
the mesh width and `w[j] = phi(r_lower - j)` for j in range(width).
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, Tuple

import numpy as np

from core.types import FloatArray, OperatorConfigurationError

StencilWeightFcn = Callable[[float], FloatArray]


class KernelType(str, Enum):
    PIECEWISE_LINEAR = "piecewise_linear"
    IB_4 = "ib_4"
    BSPLINE_4 = "bspline_4"


def phi_piecewise_linear(r):
    r = np.abs(np.asarray(r, dtype=np.float64))
    return np.where(r < 1.0, 1.0 - r, 0.0)


def phi_ib_4(r):
    """Peskin's 4-point kernel."""
    r = np.abs(np.asarray(r, dtype=np.float64))
    inner = (3.0 - 2.0 * r + np.sqrt(np.clip(1.0 + 4.0 * r - 4.0 * r * r, 0.0, None))) / 8.0
    outer = (5.0 - 2.0 * r - np.sqrt(np.clip(-7.0 + 12.0 * r - 4.0 * r * r, 0.0, None))) / 8.0
    return np.where(r < 1.0, inner, np.where(r < 2.0, outer, 0.0))


def phi_bspline_4(r):
    """Cubic B-spline."""
    r = np.abs(np.asarray(r, dtype=np.float64))
    inner = 2.0 / 3.0 - r * r + 0.5 * r ** 3
    outer = (2.0 - r) ** 3 / 6.0
    return np.where(r < 1.0, inner, np.where(r < 2.0, outer, 0.0))


def stencil_weights(phi: Callable, width: int) -> StencilWeightFcn:
    """Wrap a 1-D kernel phi into a stencil-weight function of `width` points."""
    offsets = np.arange(int(width), dtype=np.float64)

    def fcn(r_lower: float) -> FloatArray:
        return np.asarray(phi(float(r_lower) - offsets), dtype=np.float64)

    return fcn


_KERNELS: Dict[KernelType, Tuple[Callable, int]] = {
    KernelType.PIECEWISE_LINEAR: (phi_piecewise_linear, 2),
    KernelType.IB_4: (phi_ib_4, 4),
    KernelType.BSPLINE_4: (phi_bspline_4, 4),
}


def get_kernel(name) -> Tuple[StencilWeightFcn, int]:
    """(stencil-weight function, stencil width) of a named kernel."""
    try:
        kind = KernelType(name)
    except ValueError as exc:
        allowed = ", ".join(k.value for k in KernelType)
        raise OperatorConfigurationError(f"Unknown interpolation kernel {name!r}; allowed: {allowed}.") from exc
    phi, width = _KERNELS[kind]
    return stencil_weights(phi, width), width
