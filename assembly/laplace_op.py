# -*- coding: utf-8 -*-
"""
Patch-level Laplace-type operators C u + D lap(u) as distributed AIJ matrices.

Two passes over the locally owned rows:
1) count: stencil columns -> (d_nnz, o_nnz), clamped to the local/remote sizes;
2) fill: coefficients from compute_matrix_coefficients, one row per DOF,
   columns in stencil order.

Both passes get their columns from `_stencil_columns`, so the preallocation
and the inserted pattern cannot drift apart.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from assembly.poisson_coefs import (
    PoissonSpecifications,
    RobinBcCoefStrategy,
    compute_matrix_coefficients,
    laplace_stencil,
)
from core.box import Box
from core.grid import Patch, PatchLevel
from core.patch_data import DofData, DofField, field_centering, min_ghost_width, patch_dof_data
from core.types import AssemblyBackend, Centering, IntArray, OperatorConfigurationError
from parallel.mat_prealloc import classify_columns, create_aij, nnz_diag, record_row_counts
from parallel.ownership import local_ownership

logger = logging.getLogger(__name__)


def _stencil_columns(
    data: DofData,
    axis: Optional[int],
    data_box: Box,
    d: int,
    stencil: Sequence[Tuple[int, ...]],
) -> Tuple[IntArray, IntArray]:
    """
    Row DOFs (n,) and stencil column DOFs (n, len(stencil)) over `data_box`,
    flattened in box iteration order.
    """
    rows = data.view(axis, data_box, d).ravel(order="F")
    cols = np.empty((rows.size, len(stencil)), dtype=np.int64)
    for k, off in enumerate(stencil):
        cols[:, k] = data.view(axis, data_box.shift(off), d).ravel(order="F")
    return rows, cols


def _components(
    level: PatchLevel, dof_field: DofField, depth: int
) -> Iterator[Tuple[Patch, DofData, Optional[int], Box, int]]:
    for patch in level:
        data = patch_dof_data(dof_field, patch.patch_number)
        for axis, data_box in data.component_boxes(patch.box):
            for d in range(depth):
                yield patch, data, axis, data_box, d


def _check_ghost_width(op_name: str, level: PatchLevel, dof_field: DofField) -> None:
    for patch in level:
        gw = min_ghost_width(patch_dof_data(dof_field, patch.patch_number))
        if gw < 1:
            raise OperatorConfigurationError(
                f"{op_name}: DOF data on patch {patch.patch_number} has ghost width {gw}; "
                f"the Laplace stencil needs at least 1."
            )


def _assemble_laplace(
    op_name: str,
    poisson_spec: PoissonSpecifications,
    providers: Dict[Tuple[Optional[int], int], RobinBcCoefStrategy],
    data_time: float,
    num_dofs_per_proc: Sequence[int],
    dof_field: DofField,
    patch_level: PatchLevel,
    depth: int,
    *,
    backend: AssemblyBackend,
    comm: Any,
    rank: Optional[int],
):
    rank, lower, upper, total = local_ownership(num_dofs_per_proc, comm=comm, rank=rank)
    n_local = upper - lower
    stencil = laplace_stencil(patch_level.dim)

    # pass 1: count
    d_nnz = np.zeros(n_local, dtype=np.int64)
    o_nnz = np.zeros(n_local, dtype=np.int64)
    for _, data, axis, data_box, d in _components(patch_level, dof_field, depth):
        rows, cols = _stencil_columns(data, axis, data_box, d, stencil)
        owned = (rows >= lower) & (rows < upper)
        if not np.any(owned):
            continue
        d_count, o_count = classify_columns(cols[owned], lower, upper)
        record_row_counts(
            d_nnz,
            o_nnz,
            rows[owned] - lower,
            d_count,
            o_count,
            n_local_cols=n_local,
            n_offproc_cols=total - n_local,
        )

    builder = create_aij(
        (lower, upper),
        (lower, upper),
        (total, total),
        d_nnz,
        o_nnz,
        backend=backend,
        comm=comm,
    )

    # pass 2: fill
    for patch, data, axis, data_box, d in _components(patch_level, dof_field, depth):
        rows, cols = _stencil_columns(data, axis, data_box, d, stencil)
        owned = np.flatnonzero((rows >= lower) & (rows < upper))
        if owned.size == 0:
            continue
        coefs = compute_matrix_coefficients(
            patch, axis, data_box, poisson_spec, providers[(axis, d)], data_time
        )
        vals = coefs.reshape(len(stencil), -1, order="F").T
        for i in owned:
            builder.set_row(rows[i], cols[i], vals[i])

    mat = builder.assemble()
    diag = nnz_diag(d_nnz, o_nnz)
    diag.update({"op": op_name, "rank": rank, "n_global": total, "backend": builder.backend.value})
    logger.debug(
        "%s: rank %d rows [%d, %d) of %d, nnz_total=%d nnz_max_row=%d.",
        op_name,
        rank,
        lower,
        upper,
        total,
        diag["nnz_total"],
        diag["nnz_max_row"],
    )
    return mat, diag


def construct_patch_level_cc_laplace_op(
    poisson_spec: PoissonSpecifications,
    bc_coefs,
    data_time: float,
    num_dofs_per_proc: Sequence[int],
    dof_data: DofField,
    patch_level: PatchLevel,
    *,
    backend: AssemblyBackend = AssemblyBackend.SCIPY,
    comm: Any = None,
    rank: Optional[int] = None,
):
    """
    Cell-centered Laplace operator on one patch level.

    bc_coefs: one Robin provider shared by every depth component, or a
    sequence with exactly one provider per component. Components are
    decoupled: each gets its own stencil block.

    Neighbours across a coarse-fine interface have no DOF and are dropped
    without folding into the center, so rows next to the interface are not
    conservative.

    Returns (matrix, diag).
    """
    op_name = "construct_patch_level_cc_laplace_op"
    if field_centering(dof_data, Centering.CELL) != Centering.CELL:
        raise OperatorConfigurationError(f"{op_name}: DOF data must be cell-centered.")
    depths = {data.depth for data in dof_data.values()}
    if len(depths) > 1:
        raise OperatorConfigurationError(f"{op_name}: DOF data depth differs between patches: {sorted(depths)}.")
    depth = depths.pop() if depths else 1

    if isinstance(bc_coefs, (list, tuple)):
        if len(bc_coefs) != depth:
            raise OperatorConfigurationError(
                f"{op_name}: got {len(bc_coefs)} boundary coefficient providers for DOF depth {depth}."
            )
        per_comp: List[RobinBcCoefStrategy] = list(bc_coefs)
    else:
        per_comp = [bc_coefs] * depth
    if any(p is None for p in per_comp):
        raise OperatorConfigurationError(f"{op_name}: boundary coefficient provider is None.")
    _check_ghost_width(op_name, patch_level, dof_data)

    providers = {(None, d): per_comp[d] for d in range(depth)}
    return _assemble_laplace(
        op_name,
        poisson_spec,
        providers,
        data_time,
        num_dofs_per_proc,
        dof_data,
        patch_level,
        depth,
        backend=AssemblyBackend(backend),
        comm=comm,
        rank=rank,
    )


def construct_patch_level_sc_laplace_op(
    poisson_spec: PoissonSpecifications,
    bc_coefs: Sequence[RobinBcCoefStrategy],
    data_time: float,
    num_dofs_per_proc: Sequence[int],
    dof_data: DofField,
    patch_level: PatchLevel,
    *,
    backend: AssemblyBackend = AssemblyBackend.SCIPY,
    comm: Any = None,
    rank: Optional[int] = None,
):
    """
    Side-centered (staggered) Laplace operator; one Robin provider per axis.
    Coarse-fine neighbours are dropped as in the cell-centered operator.

    Returns (matrix, diag).
    """
    op_name = "construct_patch_level_sc_laplace_op"
    if field_centering(dof_data, Centering.SIDE) != Centering.SIDE:
        raise OperatorConfigurationError(f"{op_name}: DOF data must be side-centered.")
    dim = patch_level.dim
    if not isinstance(bc_coefs, (list, tuple)) or len(bc_coefs) != dim:
        n = len(bc_coefs) if isinstance(bc_coefs, (list, tuple)) else 1
        raise OperatorConfigurationError(
            f"{op_name}: got {n} boundary coefficient provider(s), need exactly {dim} (one per axis)."
        )
    if any(p is None for p in bc_coefs):
        raise OperatorConfigurationError(f"{op_name}: boundary coefficient provider is None.")
    _check_ghost_width(op_name, patch_level, dof_data)

    providers = {(axis, 0): bc_coefs[axis] for axis in range(dim)}
    return _assemble_laplace(
        op_name,
        poisson_spec,
        providers,
        data_time,
        num_dofs_per_proc,
        dof_data,
        patch_level,
        1,
        backend=AssemblyBackend(backend),
        comm=comm,
        rank=rank,
    )
