# -*- coding: utf-8 -*-
"""
Additive-Schwarz subdomains of a patch level.

Each local patch is tiled into boxes of `box_size` cells; every tile yields a
non-overlapping DOF index set and an overlapping one built from the tile
grown by `overlap_size`. Output order: patch-major, then tile order.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from core.box import Box, BoundaryBox, IntVectorLike, as_int_vector
from core.grid import Patch, PatchLevel
from core.patch_data import DofData, DofField, field_centering, min_ghost_width, patch_dof_data
from core.types import (
    UPPER,
    AssemblyBackend,
    AssemblyInvariantError,
    Centering,
    IntArray,
    OperatorConfigurationError,
)
from parallel.mat_prealloc import create_index_set
from parallel.ownership import local_ownership

logger = logging.getLogger(__name__)


def partition_patch_box(
    patch_box: Box,
    box_size: IntVectorLike,
    overlap_size: IntVectorLike,
) -> Tuple[List[Box], List[Box]]:
    """
    Tile `patch_box` contiguously into boxes of `box_size` cells (the last
    tile along an axis is truncated at the patch box).

    Returns (overlap_boxes, nonoverlap_boxes); overlap box = tile grown by
    `overlap_size`.
    """
    dim = patch_box.dim
    size = as_int_vector(box_size, dim)
    overlap = as_int_vector(overlap_size, dim)
    if min(size) < 1:
        raise OperatorConfigurationError(f"partition_patch_box: box_size must be positive, got {size}.")
    if min(overlap) < 0:
        raise OperatorConfigurationError(f"partition_patch_box: overlap_size must be >= 0, got {overlap}.")

    nonoverlap: List[Box] = []
    overlap_boxes: List[Box] = []
    if patch_box.empty():
        return overlap_boxes, nonoverlap
    n_tiles = tuple(-(-n // s) for n, s in zip(patch_box.shape, size))
    for tile in Box((0,) * dim, tuple(n - 1 for n in n_tiles)):
        lo = tuple(patch_box.lower[d] + tile[d] * size[d] for d in range(dim))
        hi = tuple(min(lo[d] + size[d] - 1, patch_box.upper[d]) for d in range(dim))
        box = Box(lo, hi)
        nonoverlap.append(box)
        overlap_boxes.append(box.grow(overlap))
    return overlap_boxes, nonoverlap


def _sorted_unique(values: IntArray) -> IntArray:
    return np.unique(values[values >= 0])


def _cell_nonoverlap_dofs(data: DofData, box: Box) -> IntArray:
    vals = [data.view(None, box, d).ravel(order="F") for d in range(data.depth)]
    return np.sort(np.concatenate(vals))


def _cell_overlap_dofs(data: DofData, box: Box) -> IntArray:
    vals = [data.view(None, box, d).ravel(order="F") for d in range(data.depth)]
    return _sorted_unique(np.concatenate(vals))


def _upper_face_kept(patch: Patch, axis: int, cf_upper: List[BoundaryBox]) -> Optional[np.ndarray]:
    """None if every face on the patch's upper side normal to `axis` is kept."""
    if patch.touches_regular_boundary(axis, UPPER):
        return None
    lo = list(patch.box.lower)
    hi = list(patch.box.upper)
    lo[axis] = hi[axis] = patch.box.upper[axis] + 1
    layer = Box(tuple(lo), tuple(hi))
    kept = np.zeros(layer.shape, dtype=bool)
    for bbox in cf_upper:
        if bbox.axis != axis:
            continue
        ov = layer.intersect(bbox.box)
        if not ov.empty():
            kept[ov.slices(layer.lower)] = True
    return kept


def _side_nonoverlap_dofs(
    data: DofData,
    patch: Patch,
    tile: Box,
    cf_upper: List[BoundaryBox],
) -> IntArray:
    out = []
    for axis, side_box in data.component_boxes(tile):
        vals = data.view(axis, side_box)
        keep = np.ones(vals.shape, dtype=bool)
        upper_sl = [slice(None)] * tile.dim
        upper_sl[axis] = slice(-1, None)
        upper_sl = tuple(upper_sl)
        if side_box.upper[axis] == patch.box.upper[axis] + 1:
            kept = _upper_face_kept(patch, axis, cf_upper)
            if kept is not None:
                tang = [slice(None)] * tile.dim
                for d in range(tile.dim):
                    if d != axis:
                        tang[d] = slice(
                            tile.lower[d] - patch.box.lower[d], tile.upper[d] - patch.box.lower[d] + 1
                        )
                keep[upper_sl] = kept[tuple(tang)]
        else:
            keep[upper_sl] = False
        out.append(vals[keep].ravel())
    return np.sort(np.concatenate(out)) if out else np.empty(0, dtype=np.int64)


def _side_overlap_dofs(data: DofData, box: Box) -> IntArray:
    vals = [data.view(axis, side_box).ravel(order="F") for axis, side_box in data.component_boxes(box)]
    return _sorted_unique(np.concatenate(vals))


def construct_patch_level_asm_subdomains(
    box_size: IntVectorLike,
    overlap_size: IntVectorLike,
    num_dofs_per_proc: Sequence[int],
    dof_data: DofField,
    patch_level: PatchLevel,
    *,
    backend: AssemblyBackend = AssemblyBackend.SCIPY,
    comm: Any = None,
    rank: Optional[int] = None,
):
    """
    Overlapping and non-overlapping index sets, one pair per tile owned by
    this rank.

    A tile is owned by the rank whose ownership range holds its
    non-overlapping DOFs; tiles of other ranks' patches are skipped, so the
    rank views of a level partition its subdomains.

    Returns (is_overlap, is_nonoverlap). With zero overlap each entry of
    is_overlap is the same object as the matching entry of is_nonoverlap.
    """
    op_name = "construct_patch_level_asm_subdomains"
    dim = patch_level.dim
    overlap = as_int_vector(overlap_size, dim)
    there_is_overlap = max(overlap) > 0
    centering = field_centering(dof_data, Centering.CELL)
    rank, i_lower, i_upper, n_total = local_ownership(num_dofs_per_proc, comm=comm, rank=rank)

    tiles: List[Tuple[Patch, DofData, List[Box], List[Box]]] = []
    for patch in patch_level:
        data = patch_dof_data(dof_data, patch.patch_number)
        gw = min_ghost_width(data)
        if gw < max(overlap):
            raise OperatorConfigurationError(
                f"{op_name}: DOF data on patch {patch.patch_number} has ghost width {gw}, "
                f"smaller than the requested overlap {max(overlap)}."
            )
        overlap_boxes, nonoverlap_boxes = partition_patch_box(patch.box, box_size, overlap)
        tiles.append((patch, data, overlap_boxes, nonoverlap_boxes))

    is_overlap = []
    is_nonoverlap = []
    for patch, data, overlap_boxes, nonoverlap_boxes in tiles:
        cf_upper = [b for b in patch.cf_boundary_boxes() if b.side == UPPER]
        for box_overlap, box_local in zip(overlap_boxes, nonoverlap_boxes):
            if centering == Centering.CELL:
                local_dofs = _cell_nonoverlap_dofs(data, box_local)
            else:
                local_dofs = _side_nonoverlap_dofs(data, patch, box_local, cf_upper)
            if local_dofs.size and (local_dofs.min() < 0 or local_dofs.max() >= n_total):
                raise AssemblyInvariantError(
                    f"{op_name}: tile {box_local} of patch {patch.patch_number} holds DOF indices "
                    f"outside [0, {n_total})."
                )
            owned = (local_dofs >= i_lower) & (local_dofs < i_upper)
            if not np.any(owned):
                continue
            if not np.all(owned):
                raise AssemblyInvariantError(
                    f"{op_name}: tile {box_local} of patch {patch.patch_number} spans the ownership "
                    f"range [{i_lower}, {i_upper}) of rank {rank}."
                )
            is_local = create_index_set(local_dofs, backend=backend)
            is_nonoverlap.append(is_local)
            if not there_is_overlap:
                is_overlap.append(is_local)
                continue
            if centering == Centering.CELL:
                overlap_dofs = _cell_overlap_dofs(data, box_overlap)
            else:
                overlap_dofs = _side_overlap_dofs(data, box_overlap)
            is_overlap.append(create_index_set(overlap_dofs, backend=backend))

    logger.debug(
        "%s[%s]: rank %d, %d subdomain(s), box_size=%s, overlap=%s.",
        op_name,
        centering.value,
        rank,
        len(is_nonoverlap),
        as_int_vector(box_size, dim),
        overlap,
    )
    return is_overlap, is_nonoverlap
