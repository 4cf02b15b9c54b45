"""
Reference DOF numbering for a patch level and the application ordering used
by grid-transfer operators.

Principles:
- Numbering is rank-major: all DOFs of rank 0's patches come first, then
  rank 1, ... so each rank owns one contiguous range.
- Within a rank, patches are visited in level order and locations in box
  iteration order (axis 0 fastest), depth components innermost.
- A face shared by two patches belongs to the patch holding the cell whose
  lower face it is; faces on the upper side of the level (physical boundary
  or coarse-fine interface) belong to the patch below them.
- Ghost regions are filled from the owning patches, so every patch sees the
  global number of each neighbor location inside its ghost box.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from core.box import Box, IntVectorLike, index_grids
from core.grid import PatchLevel
from core.patch_data import CellDofData, DofData, SideDofData
from core.types import NO_DOF, AssemblyInvariantError, Centering, Index, IntArray

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LevelDofs:
    """DOF field of one level together with its per-rank DOF counts."""

    centering: Centering
    depth: int
    dof_field: Dict[int, DofData]
    num_dofs_per_proc: List[int]
    patch_owner: Dict[int, int] = field(default_factory=dict)

    @property
    def n_total(self) -> int:
        return int(sum(self.num_dofs_per_proc))


def _resolve_owners(
    level: PatchLevel,
    n_procs: int,
    patch_owner: Optional[Mapping[int, int]],
) -> Dict[int, int]:
    n_procs = int(n_procs)
    if n_procs < 1:
        raise ValueError(f"n_procs must be >= 1, got {n_procs}.")
    owners: Dict[int, int] = {}
    for patch in level:
        rank = 0 if patch_owner is None else int(patch_owner.get(patch.patch_number, 0))
        if rank < 0 or rank >= n_procs:
            raise ValueError(
                f"Patch {patch.patch_number} assigned to rank {rank}, outside [0, {n_procs})."
            )
        owners[patch.patch_number] = rank
    return owners


def _covered_mask(level: PatchLevel, box: Box) -> np.ndarray:
    mask = np.zeros(box.shape, dtype=bool)
    for patch in level:
        ov = box.intersect(patch.box)
        if not ov.empty():
            mask[ov.slices(box.lower)] = True
    return mask


def number_cell_dofs(
    level: PatchLevel,
    *,
    depth: int = 1,
    ghost_width: IntVectorLike = 1,
    n_procs: int = 1,
    patch_owner: Optional[Mapping[int, int]] = None,
) -> LevelDofs:
    owners = _resolve_owners(level, n_procs, patch_owner)
    dom = level.domain_box
    global_dofs = np.full((depth,) + dom.shape, NO_DOF, dtype=np.int64)
    counts = [0] * int(n_procs)
    counter = 0
    for rank in range(int(n_procs)):
        start = counter
        for patch in level:
            if owners[patch.patch_number] != rank:
                continue
            n = patch.box.size()
            # depth innermost: dof = base + depth * cell_offset + d
            cell_offset = np.arange(n, dtype=np.int64).reshape(patch.box.shape, order="F")
            sl = patch.box.slices(dom.lower)
            for d in range(depth):
                global_dofs[(d,) + sl] = counter + depth * cell_offset + d
            counter += n * depth
        counts[rank] = counter - start

    dof_field: Dict[int, DofData] = {}
    for patch in level:
        data = CellDofData(patch.box, depth=depth, ghost_width=ghost_width)
        ov = data.ghost_box.intersect(dom)
        for d in range(depth):
            data.array[d][ov.slices(data.ghost_box.lower)] = global_dofs[d][ov.slices(dom.lower)]
        dof_field[patch.patch_number] = data

    logger.debug("Numbered %d cell DOFs (depth=%d) over %d rank(s).", counter, depth, n_procs)
    return LevelDofs(
        centering=Centering.CELL,
        depth=int(depth),
        dof_field=dof_field,
        num_dofs_per_proc=counts,
        patch_owner=owners,
    )


def _owned_face_mask(level: PatchLevel, box: Box, axis: int) -> np.ndarray:
    """Faces of `box` (a patch box) owned by that patch along `axis`."""
    side_box = box.to_side_box(axis)
    mask = np.ones(side_box.shape, dtype=bool)
    # upper layer: owned only if no level cell sits above it
    hi = list(side_box.upper)
    lo = list(side_box.lower)
    lo[axis] = hi[axis]
    above = Box(tuple(lo), tuple(hi))
    covered = _covered_mask(level, above)
    sl = [slice(None)] * box.dim
    sl[axis] = slice(-1, None)
    mask[tuple(sl)] = ~covered
    return mask


def number_side_dofs(
    level: PatchLevel,
    *,
    ghost_width: IntVectorLike = 1,
    n_procs: int = 1,
    patch_owner: Optional[Mapping[int, int]] = None,
) -> LevelDofs:
    owners = _resolve_owners(level, n_procs, patch_owner)
    dom = level.domain_box
    dim = level.dim
    global_dofs = {
        axis: np.full(dom.to_side_box(axis).shape, NO_DOF, dtype=np.int64) for axis in range(dim)
    }
    counts = [0] * int(n_procs)
    counter = 0
    for rank in range(int(n_procs)):
        start = counter
        for patch in level:
            if owners[patch.patch_number] != rank:
                continue
            for axis in range(dim):
                side_box = patch.box.to_side_box(axis)
                mask = _owned_face_mask(level, patch.box, axis)
                n_owned = int(mask.sum())
                block = np.full(side_box.shape, NO_DOF, dtype=np.int64)
                # enumerate owned faces in box iteration order
                flat = block.ravel(order="F")
                flat_mask = mask.ravel(order="F")
                flat[flat_mask] = counter + np.arange(n_owned, dtype=np.int64)
                block = flat.reshape(side_box.shape, order="F")
                target = global_dofs[axis][side_box.slices(dom.lower)]
                target[mask] = block[mask]
                counter += n_owned
        counts[rank] = counter - start

    dof_field: Dict[int, DofData] = {}
    for patch in level:
        data = SideDofData(patch.box, ghost_width=ghost_width)
        for axis in range(dim):
            gbox = data.data_ghost_box(axis)
            dom_side = dom.to_side_box(axis)
            ov = gbox.intersect(dom_side)
            data.arrays[axis][0][ov.slices(gbox.lower)] = global_dofs[axis][ov.slices(dom_side.lower)]
        dof_field[patch.patch_number] = data

    logger.debug("Numbered %d side DOFs over %d rank(s).", counter, n_procs)
    return LevelDofs(
        centering=Centering.SIDE,
        depth=1,
        dof_field=dof_field,
        num_dofs_per_proc=counts,
        patch_owner=owners,
    )


# -----------------------------------------------------------------------------
# Application ordering
# -----------------------------------------------------------------------------
def map_index_to_integer(
    idx,
    domain_lower: Sequence[int],
    num_cells: Sequence[int],
    depth: int,
    offset: int = 0,
):
    """
    Lexicographic integer of a (cell or face) index, axis 0 fastest, with the
    depth component as the slowest index. `idx` may be a tuple of ints or a
    tuple of integer arrays.
    """
    value = 0
    stride = 1
    for d in range(len(num_cells)):
        value = value + stride * (np.asarray(idx[d], dtype=np.int64) - int(domain_lower[d]))
        stride *= int(num_cells[d])
    out = value + int(depth) * stride + int(offset)
    return int(out) if np.ndim(out) == 0 else out


def side_num_cells(domain_box: Box, axis: int) -> Tuple[int, ...]:
    return domain_box.to_side_box(axis).shape


def side_data_offset(domain_box: Box, axis: int, depth: int = 1) -> int:
    """Start of the axis-`axis` block in the side application ordering."""
    off = 0
    for a in range(axis):
        off += int(depth) * int(np.prod(side_num_cells(domain_box, a)))
    return off


@dataclass(slots=True)
class ApplicationOrdering:
    """
    Map from application (lexicographic) indices to global DOF numbers.

    app_to_petsc[k] holds the DOF of application index offset + k, or NO_DOF.
    """

    app_to_petsc: IntArray
    offset: int = 0

    def __call__(self, app_indices) -> IntArray:
        return self.app_to_petsc_map(app_indices)

    def app_to_petsc_map(self, app_indices) -> IntArray:
        app = np.asarray(app_indices, dtype=np.int64) - int(self.offset)
        if app.size and (app.min() < 0 or app.max() >= self.app_to_petsc.size):
            raise AssemblyInvariantError(
                f"Application index outside ordering range "
                f"[{self.offset}, {self.offset + self.app_to_petsc.size})."
            )
        out = self.app_to_petsc[app]
        if out.size and out.min() < 0:
            bad = np.asarray(app_indices).ravel()[np.argmax(out.ravel() < 0)]
            raise AssemblyInvariantError(f"Application index {int(bad)} has no DOF on this level.")
        return out


def build_application_ordering(level: PatchLevel, level_dofs: LevelDofs, offset: int = 0) -> ApplicationOrdering:
    """Build the application-to-DOF map of a fully numbered level."""
    dom = level.domain_box
    depth = level_dofs.depth
    if level_dofs.centering == Centering.CELL:
        size = depth * dom.size()
        table = np.full(size, NO_DOF, dtype=np.int64)
        for patch in level:
            data = level_dofs.dof_field[patch.patch_number]
            grids = index_grids(patch.box)
            for d in range(depth):
                app = map_index_to_integer(grids, dom.lower, dom.shape, d)
                table[app.ravel()] = data.view(None, patch.box, d).ravel()
    else:
        size = sum(int(np.prod(side_num_cells(dom, a))) for a in range(dom.dim))
        table = np.full(size, NO_DOF, dtype=np.int64)
        for patch in level:
            data = level_dofs.dof_field[patch.patch_number]
            for axis in range(dom.dim):
                side_box = patch.box.to_side_box(axis)
                grids = index_grids(side_box)
                app = map_index_to_integer(
                    grids,
                    dom.lower,
                    side_num_cells(dom, axis),
                    0,
                    side_data_offset(dom, axis),
                )
                vals = data.view(axis, side_box).ravel()
                keep = vals >= 0
                table[app.ravel()[keep]] = vals[keep]
    return ApplicationOrdering(app_to_petsc=table, offset=int(offset))
