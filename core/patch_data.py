"""
Per-patch integer DOF-index data for cell- and side-centered fields.

Both containers expose the same small capability interface so assembly code
can select the centering once and then work on plain numpy views:

- component_boxes(box): [(axis or None, data box)] covering the DOF
  locations of `box` (one entry for cells, one per axis for faces);
- view(axis, box, d): array view of depth component d over `box`;
- get(axis, idx, d): a single DOF index.

Arrays are indexed (axis 0, axis 1, ...) relative to the ghost box lower
corner. Accessing a location outside the ghost box raises
AssemblyInvariantError.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from core.box import Box, IntVectorLike, as_int_vector
from core.types import NO_DOF, AssemblyInvariantError, Centering, IntArray


class CellDofData:
    centering = Centering.CELL

    def __init__(self, box: Box, depth: int = 1, ghost_width: IntVectorLike = 1) -> None:
        depth = int(depth)
        if depth < 1:
            raise ValueError(f"CellDofData depth must be >= 1, got {depth}.")
        self.box = box
        self.depth = depth
        self.ghost_width = as_int_vector(ghost_width, box.dim)
        if min(self.ghost_width) < 0:
            raise ValueError(f"Ghost width must be non-negative, got {self.ghost_width}.")
        self.ghost_box = box.grow(self.ghost_width)
        self.array: IntArray = np.full((depth,) + self.ghost_box.shape, NO_DOF, dtype=np.int64)

    @property
    def dim(self) -> int:
        return self.box.dim

    def component_boxes(self, box: Box) -> List[Tuple[Optional[int], Box]]:
        return [(None, box)]

    def data_ghost_box(self, axis: Optional[int] = None) -> Box:
        return self.ghost_box

    def view(self, axis: Optional[int], box: Box, d: int = 0) -> IntArray:
        if not self.ghost_box.contains_box(box):
            raise AssemblyInvariantError(
                f"Cell box {box} exceeds DOF ghost box {self.ghost_box} "
                f"(ghost width {self.ghost_width})."
            )
        return self.array[d][box.slices(self.ghost_box.lower)]

    values = view

    def get(self, axis: Optional[int], idx: Sequence[int], d: int = 0) -> int:
        if not self.ghost_box.contains(idx):
            raise AssemblyInvariantError(
                f"Cell index {tuple(idx)} outside DOF ghost box {self.ghost_box}."
            )
        off = tuple(int(i) - lo for i, lo in zip(idx, self.ghost_box.lower))
        return int(self.array[(d,) + off])

    def fill(self, value: int = NO_DOF) -> None:
        self.array.fill(int(value))


class SideDofData:
    centering = Centering.SIDE

    def __init__(self, box: Box, ghost_width: IntVectorLike = 1, depth: int = 1) -> None:
        if int(depth) != 1:
            raise ValueError(f"SideDofData supports depth 1 only, got {depth}.")
        self.box = box
        self.depth = 1
        self.ghost_width = as_int_vector(ghost_width, box.dim)
        if min(self.ghost_width) < 0:
            raise ValueError(f"Ghost width must be non-negative, got {self.ghost_width}.")
        self.ghost_box = box.grow(self.ghost_width)
        self.arrays: Dict[int, IntArray] = {
            axis: np.full(
                (1,) + self.ghost_box.to_side_box(axis).shape, NO_DOF, dtype=np.int64
            )
            for axis in range(box.dim)
        }

    @property
    def dim(self) -> int:
        return self.box.dim

    def component_boxes(self, box: Box) -> List[Tuple[Optional[int], Box]]:
        return [(axis, box.to_side_box(axis)) for axis in range(self.dim)]

    def data_ghost_box(self, axis: Optional[int] = None) -> Box:
        if axis is None:
            raise ValueError("SideDofData requires an axis.")
        return self.ghost_box.to_side_box(axis)

    def view(self, axis: Optional[int], box: Box, d: int = 0) -> IntArray:
        gbox = self.data_ghost_box(axis)
        if not gbox.contains_box(box):
            raise AssemblyInvariantError(
                f"Side box {box} (axis {axis}) exceeds DOF ghost box {gbox} "
                f"(ghost width {self.ghost_width})."
            )
        return self.arrays[axis][d][box.slices(gbox.lower)]

    values = view

    def get(self, axis: Optional[int], idx: Sequence[int], d: int = 0) -> int:
        gbox = self.data_ghost_box(axis)
        if not gbox.contains(idx):
            raise AssemblyInvariantError(
                f"Side index {tuple(idx)} (axis {axis}) outside DOF ghost box {gbox}."
            )
        off = tuple(int(i) - lo for i, lo in zip(idx, gbox.lower))
        return int(self.arrays[axis][(d,) + off])

    def fill(self, value: int = NO_DOF) -> None:
        for arr in self.arrays.values():
            arr.fill(int(value))


DofData = CellDofData | SideDofData
DofField = Mapping[int, DofData]


def field_centering(dof_field: DofField, default: Optional[Centering] = None) -> Centering:
    """Centering shared by every patch entry of a DOF field (`default` if it has none)."""
    kinds = {data.centering for data in dof_field.values()}
    if len(kinds) > 1:
        raise AssemblyInvariantError(f"DOF field mixes centerings: {sorted(k.value for k in kinds)}.")
    if not kinds:
        if default is not None:
            return default
        raise ValueError("DOF field has no patch data.")
    return next(iter(kinds))


def patch_dof_data(dof_field: DofField, patch_number: int) -> DofData:
    try:
        return dof_field[patch_number]
    except KeyError as exc:
        raise AssemblyInvariantError(f"No DOF data for local patch {patch_number}.") from exc


def min_ghost_width(data: DofData) -> int:
    return int(min(data.ghost_width))
