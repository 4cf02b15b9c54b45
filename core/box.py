"""
Axis-aligned integer boxes on a block-structured grid.

A Box stores inclusive lower/upper cell indices. Iteration is lexicographic
with axis 0 varying fastest; array views created through `slices()` use the
same (axis 0, axis 1, ...) index order, so `arr.ravel(order="F")` enumerates
locations in iteration order.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import product
from typing import Iterator, Sequence, Tuple, Union

import numpy as np

from core.types import Index

IntVectorLike = Union[int, Sequence[int]]


def as_int_vector(value: IntVectorLike, dim: int) -> Tuple[int, ...]:
    """Broadcast a scalar or sequence to a dim-tuple of ints."""
    if isinstance(value, (int, np.integer)):
        return (int(value),) * dim
    out = tuple(int(v) for v in value)
    if len(out) != dim:
        raise ValueError(f"Expected {dim} entries, got {len(out)}: {value!r}")
    return out


@dataclass(frozen=True, slots=True)
class Box:
    lower: Index
    upper: Index

    def __post_init__(self) -> None:
        lo = tuple(int(v) for v in self.lower)
        hi = tuple(int(v) for v in self.upper)
        if len(lo) != len(hi):
            raise ValueError(f"Box corners differ in dimension: {lo} vs {hi}")
        object.__setattr__(self, "lower", lo)
        object.__setattr__(self, "upper", hi)

    @property
    def dim(self) -> int:
        return len(self.lower)

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(max(0, hi - lo + 1) for lo, hi in zip(self.lower, self.upper))

    def size(self) -> int:
        return int(np.prod(self.shape)) if self.dim else 0

    def empty(self) -> bool:
        return any(hi < lo for lo, hi in zip(self.lower, self.upper))

    def contains(self, idx: Sequence[int]) -> bool:
        return all(lo <= int(i) <= hi for lo, i, hi in zip(self.lower, idx, self.upper))

    def contains_box(self, other: "Box") -> bool:
        if other.empty():
            return True
        return self.contains(other.lower) and self.contains(other.upper)

    def intersects(self, other: "Box") -> bool:
        return not self.intersect(other).empty()

    def intersect(self, other: "Box") -> "Box":
        lo = tuple(max(a, b) for a, b in zip(self.lower, other.lower))
        hi = tuple(min(a, b) for a, b in zip(self.upper, other.upper))
        return Box(lo, hi)

    def grow(self, width: IntVectorLike) -> "Box":
        w = as_int_vector(width, self.dim)
        return Box(
            tuple(lo - g for lo, g in zip(self.lower, w)),
            tuple(hi + g for hi, g in zip(self.upper, w)),
        )

    def shift(self, offset: IntVectorLike) -> "Box":
        s = as_int_vector(offset, self.dim)
        return Box(
            tuple(lo + o for lo, o in zip(self.lower, s)),
            tuple(hi + o for hi, o in zip(self.upper, s)),
        )

    def coarsen(self, ratio: IntVectorLike) -> "Box":
        r = as_int_vector(ratio, self.dim)
        return Box(
            tuple(coarsen_index(lo, q) for lo, q in zip(self.lower, r)),
            tuple(coarsen_index(hi, q) for hi, q in zip(self.upper, r)),
        )

    def refine(self, ratio: IntVectorLike) -> "Box":
        r = as_int_vector(ratio, self.dim)
        return Box(
            tuple(lo * q for lo, q in zip(self.lower, r)),
            tuple((hi + 1) * q - 1 for hi, q in zip(self.upper, r)),
        )

    def to_side_box(self, axis: int) -> "Box":
        """Box of face indices normal to `axis` (one extra layer on the upper side)."""
        hi = list(self.upper)
        hi[axis] += 1
        return Box(self.lower, tuple(hi))

    def slices(self, origin: Sequence[int]) -> Tuple[slice, ...]:
        """Array slices selecting this box from an array whose [0, ...] entry is `origin`."""
        return tuple(
            slice(lo - o, hi - o + 1) for lo, hi, o in zip(self.lower, self.upper, origin)
        )

    def __iter__(self) -> Iterator[Index]:
        ranges = [range(lo, hi + 1) for lo, hi in zip(self.lower, self.upper)]
        for rev in product(*reversed(ranges)):
            yield tuple(reversed(rev))

    def __len__(self) -> int:
        return self.size()


@dataclass(frozen=True, slots=True)
class BoundaryBox:
    """
    Codimension-1 boundary box: the layer of ghost cells just outside one
    side of a patch. location_index = 2 * axis + side (side 0 lower, 1 upper).
    """

    box: Box
    location_index: int

    @property
    def axis(self) -> int:
        return self.location_index // 2

    @property
    def side(self) -> int:
        return self.location_index % 2


def coarsen_index(i: int, ratio: int) -> int:
    """Floor division that is correct for negative indices."""
    return int(i) // int(ratio)


def coarsen(idx: Sequence[int], ratio: Sequence[int]) -> Index:
    return tuple(coarsen_index(i, r) for i, r in zip(idx, ratio))


def refine(idx: Sequence[int], ratio: Sequence[int]) -> Index:
    return tuple(int(i) * int(r) for i, r in zip(idx, ratio))


def index_grids(box: Box) -> Tuple[np.ndarray, ...]:
    """Integer coordinate arrays over `box` (ij indexing, one array per axis)."""
    axes = [np.arange(lo, hi + 1, dtype=np.int64) for lo, hi in zip(box.lower, box.upper)]
    return tuple(np.meshgrid(*axes, indexing="ij"))
