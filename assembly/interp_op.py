# -*- coding: utf-8 -*-
"""
Side-centered grid -> Lagrangian marker interpolation operator.

Row (dim * k + axis) of the matrix interpolates the `axis` velocity
component to marker k; its entries are the tensor product of 1-D kernel
weights over the marker's stencil box for that axis.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

import numpy as np

from assembly.kernels import StencilWeightFcn
from core.box import Box
from core.grid import PatchLevel
from core.patch_data import DofField, field_centering, patch_dof_data
from core.types import (
    AssemblyBackend,
    AssemblyInvariantError,
    Centering,
    FloatArray,
    Index,
    OperatorConfigurationError,
)
from parallel.mat_prealloc import classify_columns, create_aij, nnz_diag, record_row_counts
from parallel.ownership import gather_dof_counts, local_ownership

logger = logging.getLogger(__name__)


def get_cell_index(
    X: Sequence[float],
    x_lower: Sequence[float],
    x_upper: Sequence[float],
    dx: Sequence[float],
    domain_lower: Sequence[int],
    domain_upper: Sequence[int],
) -> Index:
    """
    Index of the cell containing X, measured from the nearer end of the domain
    so round-off stays small on large domains. Points outside the domain map
    to ghost indices.
    """
    idx = []
    for d in range(len(dx)):
        if abs(X[d] - x_lower[d]) <= abs(X[d] - x_upper[d]):
            idx.append(int(domain_lower[d]) + int(np.floor((X[d] - x_lower[d]) / dx[d])))
        else:
            idx.append(int(domain_upper[d]) + int(np.floor((X[d] - x_upper[d]) / dx[d])) + 1)
    return tuple(idx)


def interp_stencil_box(
    X: Sequence[float],
    X_idx: Index,
    X_cell: Sequence[float],
    axis: int,
    interp_stencil: int,
) -> Box:
    """
    Stencil box (in face indices normal to `axis`) of a marker. Along `axis`
    the box is centered on the containing cell; along the other axes it is
    chosen by the side of the cell center the marker lies on.
    """
    half = interp_stencil // 2
    lo: List[int] = []
    hi: List[int] = []
    for d in range(len(X_idx)):
        if d == axis or X[d] > X_cell[d]:
            lo.append(X_idx[d] - half + 1)
            hi.append(X_idx[d] + half)
        else:
            lo.append(X_idx[d] - half)
            hi.append(X_idx[d] + half - 1)
    return Box(tuple(lo), tuple(hi))


def _locate_patch(level: PatchLevel, X_idx: Index, k: int) -> int:
    cell = Box(X_idx, X_idx)
    found = level.find_overlap_indices(cell)
    if not found:
        found = level.find_overlap_indices(cell.grow(1))
    if not found:
        raise AssemblyInvariantError(
            f"construct_patch_level_sc_interp_op: marker {k} in cell {X_idx} is not "
            f"within one cell of any local patch on level {level.level_number}."
        )
    return found[0]


def _tensor_weights(w: Sequence[FloatArray]) -> FloatArray:
    out = np.asarray(w[0], dtype=np.float64)
    for wd in w[1:]:
        out = np.multiply.outer(out, wd)
    return out.ravel(order="F")


def construct_patch_level_sc_interp_op(
    interp_fcn: StencilWeightFcn,
    interp_stencil: int,
    positions,
    num_dofs_per_proc: Sequence[int],
    dof_data: DofField,
    patch_level: PatchLevel,
    num_markers_per_proc: Optional[Sequence[int]] = None,
    *,
    backend: AssemblyBackend = AssemblyBackend.SCIPY,
    comm: Any = None,
    rank: Optional[int] = None,
):
    """
    Interpolation operator from side-centered DOFs to local markers.

    positions: (n_local_markers, dim) marker coordinates owned by this rank.
    num_markers_per_proc: marker counts of all ranks; gathered over `comm`
    when omitted.

    Returns (matrix, diag); matrix has dim * n_markers rows and n_dofs columns.
    """
    op_name = "construct_patch_level_sc_interp_op"
    interp_stencil = int(interp_stencil)
    if interp_stencil <= 0 or interp_stencil % 2 != 0:
        raise OperatorConfigurationError(
            f"{op_name}: interp_stencil={interp_stencil}; only positive even stencil widths are supported."
        )
    if field_centering(dof_data, Centering.SIDE) != Centering.SIDE:
        raise OperatorConfigurationError(f"{op_name}: DOF data must be side-centered.")
    w0 = np.asarray(interp_fcn(0.0), dtype=np.float64)
    if w0.shape != (interp_stencil,):
        raise OperatorConfigurationError(
            f"{op_name}: kernel returned weights of shape {w0.shape}, "
            f"expected ({interp_stencil},)."
        )

    dim = patch_level.dim
    X_arr = np.asarray(positions, dtype=np.float64).reshape(-1, dim)
    if not np.all(np.isfinite(X_arr)):
        raise ValueError(f"{op_name}: marker positions must be finite.")
    n_local_points = X_arr.shape[0]

    rank, j_lower, j_upper, n_total = local_ownership(num_dofs_per_proc, comm=comm, rank=rank)
    n_local = j_upper - j_lower
    if num_markers_per_proc is None:
        num_markers_per_proc = gather_dof_counts(n_local_points, comm)
    if int(num_markers_per_proc[rank]) != n_local_points:
        raise ValueError(
            f"{op_name}: rank {rank} holds {n_local_points} markers but "
            f"num_markers_per_proc[{rank}]={int(num_markers_per_proc[rank])}."
        )
    i_lower = dim * int(sum(int(n) for n in num_markers_per_proc[:rank]))
    m_local = dim * n_local_points
    m_total = dim * int(sum(int(n) for n in num_markers_per_proc))

    x_lower = patch_level.x_lower
    x_upper = patch_level.x_upper
    dx = patch_level.dx
    dom = patch_level.domain_box

    # pass 1: patch lookup, stencil boxes, counts
    patch_num: List[int] = []
    stencil_boxes: List[List[Box]] = []
    d_nnz = np.zeros(m_local, dtype=np.int64)
    o_nnz = np.zeros(m_local, dtype=np.int64)
    for k in range(n_local_points):
        X = X_arr[k]
        X_idx = get_cell_index(X, x_lower, x_upper, dx, dom.lower, dom.upper)
        X_cell = [(X_idx[d] - dom.lower[d] + 0.5) * dx[d] + x_lower[d] for d in range(dim)]
        pn = _locate_patch(patch_level, X_idx, k)
        data = patch_dof_data(dof_data, pn)
        patch_num.append(pn)
        boxes = []
        for axis in range(dim):
            sbox = interp_stencil_box(X, X_idx, X_cell, axis, interp_stencil)
            gbox = data.data_ghost_box(axis)
            if not gbox.contains_box(sbox):
                raise AssemblyInvariantError(
                    f"{op_name}: stencil box {sbox} of marker {k} (axis {axis}) exceeds the "
                    f"DOF ghost box {gbox} of patch {pn}; increase the ghost width."
                )
            cols = data.view(axis, sbox).ravel(order="F")
            d_count, o_count = classify_columns(cols[None, :], j_lower, j_upper)
            record_row_counts(
                d_nnz,
                o_nnz,
                np.array([dim * k + axis]),
                d_count,
                o_count,
                n_local_cols=n_local,
                n_offproc_cols=n_total - n_local,
            )
            boxes.append(sbox)
        stencil_boxes.append(boxes)

    builder = create_aij(
        (i_lower, i_lower + m_local),
        (j_lower, j_upper),
        (m_total, n_total),
        d_nnz,
        o_nnz,
        backend=backend,
        comm=comm,
    )

    # pass 2: weights
    for k in range(n_local_points):
        X = X_arr[k]
        data = patch_dof_data(dof_data, patch_num[k])
        for axis in range(dim):
            sbox = stencil_boxes[k][axis]
            w = []
            for d in range(dim):
                i = sbox.lower[d]
                X_stencil_lower = (i - dom.lower[d] + (0.0 if d == axis else 0.5)) * dx[d] + x_lower[d]
                w.append(np.asarray(interp_fcn((X[d] - X_stencil_lower) / dx[d]), dtype=np.float64))
            cols = data.view(axis, sbox).ravel(order="F")
            builder.set_row(i_lower + dim * k + axis, cols, _tensor_weights(w))

    mat = builder.assemble()
    diag = nnz_diag(d_nnz, o_nnz)
    diag.update({"op": op_name, "rank": rank, "n_markers": n_local_points, "n_global_rows": m_total})
    logger.debug(
        "%s: rank %d, %d marker(s), stencil %d, nnz_total=%d.",
        op_name,
        rank,
        n_local_points,
        interp_stencil,
        diag["nnz_total"],
    )
    return mat, diag
