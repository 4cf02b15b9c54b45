"""
Shared type aliases, centering tags, and error classes.

Conventions:
- Index tuples are integer cell coordinates, one entry per spatial axis.
- Face (side) locations are addressed by (axis, cell index); the face is the
  lower face of that cell along `axis`.
- DOF fields store a globally unique non-negative integer per location, or a
  negative sentinel (NO_DOF) where no unknown lives.
"""

from __future__ import annotations

from enum import Enum
from typing import Tuple

import numpy as np
from numpy.typing import NDArray

FloatArray = NDArray[np.float64]
IntArray = NDArray[np.int64]
Index = Tuple[int, ...]

NO_DOF = -1

LOWER = 0
UPPER = 1


class Centering(str, Enum):
    CELL = "cell"
    SIDE = "side"


class AssemblyBackend(str, Enum):
    SCIPY = "scipy"
    PETSC = "petsc"


class OperatorConfigurationError(ValueError):
    """Invalid operator setup detected before any collective call."""


class AssemblyInvariantError(RuntimeError):
    """A structural invariant of the grid, DOF field or mapping was violated."""
