# -*- coding: utf-8 -*-
"""
Coarse -> fine prolongation operators and the restriction scaling vector.

Cell-centered data uses constant injection, side-centered data linear
interpolation along the face normal. Coarse columns are found by mapping the
coarse index to its lexicographic application index and through the coarse
application ordering (AO) to the coarse DOF number.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from core.box import Box, index_grids
from core.grid import PatchLevel
from core.layout import map_index_to_integer, side_num_cells
from core.patch_data import DofField, field_centering, patch_dof_data
from core.types import (
    AssemblyBackend,
    AssemblyInvariantError,
    Centering,
    FloatArray,
    IntArray,
    OperatorConfigurationError,
)
from parallel.mat_prealloc import (
    LocalAIJMatrix,
    classify_columns,
    create_aij,
    matrix_to_csr,
    nnz_diag,
    record_row_counts,
)
from parallel.mpi_bootstrap import get_petsc, to_mpi4py
from parallel.ownership import compute_ownership_range, local_ownership

logger = logging.getLogger(__name__)


def _app_to_petsc(coarse_ao, app: IntArray) -> IntArray:
    app = np.asarray(app, dtype=np.int64)
    if hasattr(coarse_ao, "app2petsc"):
        flat = np.array(coarse_ao.app2petsc(app.ravel().copy()), dtype=np.int64)
        return flat.reshape(app.shape)
    return np.asarray(coarse_ao(app), dtype=np.int64)


def _fine_coarse_ratio(fine_level: PatchLevel, coarse_level: PatchLevel) -> Tuple[int, ...]:
    ratio = []
    for f, c in zip(fine_level.ratio, coarse_level.ratio):
        if f % c != 0 or f < c:
            raise OperatorConfigurationError(
                f"construct_prolongation_op: fine ratio {fine_level.ratio} is not a multiple "
                f"of coarse ratio {coarse_level.ratio}."
            )
        ratio.append(f // c)
    return tuple(ratio)


def _cell_columns(
    fine_box: Box,
    ratio: Sequence[int],
    coarse_dom: Box,
    d: int,
    coarse_ao,
    coarse_ao_offset: int,
) -> IntArray:
    grids = index_grids(fine_box)
    coarse = [np.floor_divide(g, r) for g, r in zip(grids, ratio)]
    app = map_index_to_integer(coarse, coarse_dom.lower, coarse_dom.shape, d, coarse_ao_offset)
    return _app_to_petsc(coarse_ao, app).ravel(order="F")


def _side_columns_and_weights(
    side_box: Box,
    axis: int,
    ratio: Sequence[int],
    coarse_dom: Box,
    coarse_ao,
    coarse_ao_offset: int,
) -> Tuple[IntArray, FloatArray]:
    """(n, 2) coarse columns and weights of the faces in `side_box`."""
    grids = index_grids(side_box)
    I_L = [np.floor_divide(g, r) for g, r in zip(grids, ratio)]
    I_U = list(I_L)
    I_U[axis] = I_L[axis] + 1

    num_cells = side_num_cells(coarse_dom, axis)
    data_offset = sum(int(np.prod(side_num_cells(coarse_dom, a))) for a in range(axis))
    offset = coarse_ao_offset + data_offset

    w_L = 1.0 - (grids[axis] - I_L[axis] * ratio[axis]) / float(ratio[axis])
    cols_L = _app_to_petsc(
        coarse_ao, map_index_to_integer(I_L, coarse_dom.lower, num_cells, 0, offset)
    ).ravel(order="F")

    # the upper coarse face of a fine face on the domain's upper boundary does
    # not exist; its weight is zero
    coarse_side = coarse_dom.to_side_box(axis)
    upper_ok = I_U[axis] <= coarse_side.upper[axis]
    I_U_safe = list(I_U)
    I_U_safe[axis] = np.where(upper_ok, I_U[axis], I_L[axis])
    cols_U = _app_to_petsc(
        coarse_ao, map_index_to_integer(I_U_safe, coarse_dom.lower, num_cells, 0, offset)
    )
    cols_U = np.where(upper_ok, cols_U, -1).ravel(order="F")

    w_L = w_L.ravel(order="F")
    cols = np.stack([cols_L, cols_U], axis=1)
    weights = np.stack([w_L, 1.0 - w_L], axis=1)
    return cols, weights


def construct_prolongation_op(
    dof_data_fine: DofField,
    num_fine_dofs_per_proc: Sequence[int],
    num_coarse_dofs_per_proc: Sequence[int],
    fine_level: PatchLevel,
    coarse_level: PatchLevel,
    coarse_ao,
    coarse_ao_offset: int = 0,
    *,
    backend: AssemblyBackend = AssemblyBackend.SCIPY,
    comm: Any = None,
    rank: Optional[int] = None,
):
    """
    Prolongation from `coarse_level` DOFs to `fine_level` DOFs.

    coarse_ao: ApplicationOrdering (or a petsc4py AO) mapping coarse
    application indices, shifted by `coarse_ao_offset`, to coarse DOFs.

    Returns (matrix, diag).
    """
    op_name = "construct_prolongation_op"
    centering = field_centering(dof_data_fine, Centering.CELL)
    rank, i_lower, i_upper, m_total = local_ownership(num_fine_dofs_per_proc, comm=comm, rank=rank)
    j_lower, j_upper, n_total = compute_ownership_range(num_coarse_dofs_per_proc, rank)
    m_local = i_upper - i_lower
    n_local = j_upper - j_lower
    ratio = _fine_coarse_ratio(fine_level, coarse_level)
    coarse_dom = coarse_level.domain_box

    # one (rows, cols, weights) block per patch/component, shared by both passes
    blocks = []
    for patch in fine_level:
        data = patch_dof_data(dof_data_fine, patch.patch_number)
        if centering == Centering.CELL:
            for d in range(data.depth):
                rows = data.view(None, patch.box, d).ravel(order="F")
                cols = _cell_columns(patch.box, ratio, coarse_dom, d, coarse_ao, coarse_ao_offset)
                blocks.append((rows, cols[:, None], np.ones((rows.size, 1))))
        else:
            for axis, side_box in data.component_boxes(patch.box):
                rows = data.view(axis, side_box).ravel(order="F")
                cols, weights = _side_columns_and_weights(
                    side_box, axis, ratio, coarse_dom, coarse_ao, coarse_ao_offset
                )
                blocks.append((rows, cols, weights))

    d_nnz = np.zeros(m_local, dtype=np.int64)
    o_nnz = np.zeros(m_local, dtype=np.int64)
    for rows, cols, _ in blocks:
        owned = (rows >= i_lower) & (rows < i_upper)
        if not np.any(owned):
            continue
        if np.any(cols[owned] >= n_total):
            raise AssemblyInvariantError(
                f"{op_name}: coarse DOF outside [0, {n_total}); check the coarse application ordering."
            )
        d_count, o_count = classify_columns(cols[owned], j_lower, j_upper)
        record_row_counts(
            d_nnz,
            o_nnz,
            rows[owned] - i_lower,
            d_count,
            o_count,
            n_local_cols=n_local,
            n_offproc_cols=n_total - n_local,
        )

    builder = create_aij(
        (i_lower, i_upper),
        (j_lower, j_upper),
        (m_total, n_total),
        d_nnz,
        o_nnz,
        backend=backend,
        comm=comm,
    )
    for rows, cols, weights in blocks:
        for i in np.flatnonzero((rows >= i_lower) & (rows < i_upper)):
            builder.set_row(rows[i], cols[i], weights[i])

    mat = builder.assemble()
    diag = nnz_diag(d_nnz, o_nnz)
    diag.update({"op": op_name, "centering": centering.value, "rank": rank, "shape": (m_total, n_total)})
    logger.debug(
        "%s[%s]: rank %d fine rows [%d, %d), coarse cols [%d, %d), ratio %s.",
        op_name,
        centering.value,
        rank,
        i_lower,
        i_upper,
        j_lower,
        j_upper,
        ratio,
    )
    return mat, diag


def _global_column_sums(local: FloatArray, comm: Any) -> FloatArray:
    mpicomm = to_mpi4py(comm)
    if mpicomm is None or mpicomm.Get_size() == 1:
        return local
    from mpi4py import MPI

    out = np.empty_like(local)
    mpicomm.Allreduce(local, out, op=MPI.SUM)
    return out


def _is_rank_views(P) -> bool:
    return isinstance(P, (list, tuple))


def _inverse_norms(norms: FloatArray) -> Tuple[FloatArray, int]:
    L = np.zeros_like(norms)
    pos = norms > 0.0
    L[pos] = 1.0 / norms[pos]
    return L, int(np.count_nonzero(~pos))


def construct_restriction_scaling_op(P, *, comm: Any = None):
    """
    Scaling vector L of R = diag(L) P^T: L[j] = 1 / ||P[:, j]||_1 where the
    column norm is positive and 0 otherwise.

    Returns a PETSc Vec laid out like P's columns, or the local slice of the
    scaling as a numpy array for the scipy back end. Column norms of a scipy
    operator are reduced over `comm` (MPI.COMM_WORLD when None).

    P may also be the list of scipy rank views of one operator built in a
    single process; the norms are then summed over every view and the result
    is the list of their local slices.
    """
    if _is_rank_views(P):
        views = list(P)
        if not views or not all(isinstance(v, LocalAIJMatrix) for v in views):
            raise ValueError("construct_restriction_scaling_op: rank views must be scipy matrices.")
        norms = np.zeros(views[0].global_shape[1], dtype=np.float64)
        for v in views:
            norms += np.asarray(abs(v.csr).sum(axis=0), dtype=np.float64).ravel()
        L_all, n_zero = _inverse_norms(norms)
        if n_zero:
            logger.debug("construct_restriction_scaling_op: %d column(s) with zero norm.", n_zero)
        return [L_all[v.col_range[0] : v.col_range[1]].copy() for v in views]

    if isinstance(P, LocalAIJMatrix):
        c0, c1 = P.col_range
        norms = np.asarray(abs(P.csr).sum(axis=0), dtype=np.float64).ravel()
        L, n_zero = _inverse_norms(_global_column_sums(norms, comm)[c0:c1])
    else:
        PETSc = get_petsc()
        L = P.createVecRight()
        L.set(0.0)
        csr, _ = matrix_to_csr(P)
        if csr.nnz:
            L.setValues(
                csr.indices.astype(PETSc.IntType),
                np.abs(csr.data),
                addv=PETSc.InsertMode.ADD_VALUES,
            )
        L.assemblyBegin()
        L.assemblyEnd()
        arr = L.getArray()
        pos = arr > 0.0
        arr[pos] = 1.0 / arr[pos]
        arr[~pos] = 0.0
        n_zero = int(np.count_nonzero(~pos))
    if n_zero:
        logger.debug("construct_restriction_scaling_op: %d local column(s) with zero norm.", n_zero)
    return L


def _local_transpose_product(P: LocalAIJMatrix, x_fine) -> FloatArray:
    x = np.asarray(x_fine, dtype=np.float64).ravel()
    if x.size != P.csr.shape[0]:
        raise ValueError(f"apply_restriction: x_fine has {x.size} entries, expected {P.csr.shape[0]}.")
    return np.asarray(P.csr.T @ x).ravel()


def apply_restriction(P, L, x_fine, *, comm: Any = None):
    """
    Restrict a fine-level vector: diag(L) P^T x_fine.

    With rank views (lists of P, L and local fine vectors) the result is the
    list of local coarse slices.
    """
    if _is_rank_views(P):
        if len(L) != len(P) or len(x_fine) != len(P):
            raise ValueError("apply_restriction: P, L and x_fine must hold one entry per rank view.")
        y = sum(_local_transpose_product(v, x) for v, x in zip(P, x_fine))
        return [
            np.asarray(Lv, dtype=np.float64) * y[v.col_range[0] : v.col_range[1]] for v, Lv in zip(P, L)
        ]
    if isinstance(P, LocalAIJMatrix):
        c0, c1 = P.col_range
        y = _global_column_sums(_local_transpose_product(P, x_fine), comm)[c0:c1]
        return np.asarray(L, dtype=np.float64) * y
    y = P.createVecRight()
    P.multTranspose(x_fine, y)
    y.pointwiseMult(y, L)
    return y
