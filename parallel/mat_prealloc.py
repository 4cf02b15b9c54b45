# -*- coding: utf-8 -*-
"""
MPI-aware matrix preallocation and row-wise AIJ construction.

Features:
- Split stencil columns into diag/off blocks by the owning column range and
  count per-row nnz (shared by the count and fill passes);
- Create an AIJ matrix with exact (d_nnz, o_nnz) preallocation on either the
  PETSc or the scipy back end;
- Insert one row at a time (INSERT semantics) and finalize collectively.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from core.types import AssemblyBackend, AssemblyInvariantError
from parallel.mpi_bootstrap import get_petsc

logger = logging.getLogger(__name__)


def classify_columns(cols: np.ndarray, lower: int, upper: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Count per-row diag/off columns of a (n_rows, stencil) column array.

    Columns in [lower, upper) are diag; other non-negative columns are off;
    negative entries are "no DOF" and are not counted.
    """
    cols = np.asarray(cols, dtype=np.int64)
    if cols.ndim == 1:
        cols = cols[:, None]
    valid = cols >= 0
    diag = valid & (cols >= int(lower)) & (cols < int(upper))
    d_count = diag.sum(axis=1).astype(np.int64)
    o_count = (valid & ~diag).sum(axis=1).astype(np.int64)
    return d_count, o_count


def record_row_counts(
    d_nnz: np.ndarray,
    o_nnz: np.ndarray,
    local_rows: np.ndarray,
    d_count: np.ndarray,
    o_count: np.ndarray,
    *,
    n_local_cols: int,
    n_offproc_cols: int,
) -> None:
    """
    Store clamped per-row counts. Assignment (not accumulation) keeps counts
    exact when a row is visited from more than one patch.
    """
    d_nnz[local_rows] = np.minimum(d_count, int(n_local_cols))
    o_nnz[local_rows] = np.minimum(o_count, int(n_offproc_cols))


def nnz_diag(d_nnz: np.ndarray, o_nnz: np.ndarray) -> Dict[str, Any]:
    nnz = np.asarray(d_nnz, dtype=np.int64) + np.asarray(o_nnz, dtype=np.int64)
    n = int(nnz.size)
    return {
        "n_local_rows": n,
        "nnz_total": int(nnz.sum()) if n else 0,
        "nnz_max_row": int(nnz.max()) if n else 0,
        "nnz_avg": float(nnz.mean()) if n else 0.0,
        "d_nnz_total": int(np.sum(d_nnz)) if n else 0,
        "o_nnz_total": int(np.sum(o_nnz)) if n else 0,
    }


@dataclass(slots=True)
class LocalAIJMatrix:
    """
    Owned rows of a distributed AIJ matrix, columns in global index space.

    csr has shape (row_range[1] - row_range[0], global_shape[1]).
    """

    csr: sp.csr_matrix
    row_range: Tuple[int, int]
    col_range: Tuple[int, int]
    global_shape: Tuple[int, int]
    d_nnz: np.ndarray
    o_nnz: np.ndarray

    def getOwnershipRange(self) -> Tuple[int, int]:
        return self.row_range

    def getSize(self) -> Tuple[int, int]:
        return self.global_shape

    def toarray(self) -> np.ndarray:
        return self.csr.toarray()

    def row(self, global_row: int) -> Tuple[np.ndarray, np.ndarray]:
        """(cols, vals) of an owned global row."""
        i = int(global_row) - self.row_range[0]
        if i < 0 or i >= self.csr.shape[0]:
            raise ValueError(f"Row {global_row} not owned (range {self.row_range}).")
        start, stop = self.csr.indptr[i], self.csr.indptr[i + 1]
        return self.csr.indices[start:stop].copy(), self.csr.data[start:stop].copy()


@dataclass
class AIJBuilder:
    """
    Row-wise AIJ construction with a fixed preallocation.

    Use: create_aij(...) -> set_row(...) for every owned row -> assemble().
    """

    backend: AssemblyBackend
    row_range: Tuple[int, int]
    col_range: Tuple[int, int]
    global_shape: Tuple[int, int]
    d_nnz: np.ndarray
    o_nnz: np.ndarray
    mat: Any = None
    _rows: List[np.ndarray] = field(default_factory=list)
    _cols: List[np.ndarray] = field(default_factory=list)
    _vals: List[np.ndarray] = field(default_factory=list)

    def set_row(self, row: int, cols: Sequence[int], vals: Sequence[float]) -> None:
        row = int(row)
        r0, r1 = self.row_range
        if row < r0 or row >= r1:
            raise AssemblyInvariantError(
                f"Row {row} outside the local ownership range [{r0}, {r1})."
            )
        cols = np.asarray(cols, dtype=np.int64).ravel()
        vals = np.asarray(vals, dtype=np.float64).ravel()
        if cols.size != vals.size:
            raise ValueError(f"Row {row}: {cols.size} columns but {vals.size} values.")
        keep = cols >= 0
        cols = cols[keep]
        vals = vals[keep]
        if cols.size == 0:
            return
        if cols.max() >= self.global_shape[1]:
            raise AssemblyInvariantError(
                f"Row {row}: column {int(cols.max())} outside global size {self.global_shape[1]}."
            )
        if self.backend == AssemblyBackend.PETSC:
            PETSc = get_petsc()
            self.mat.setValues(
                row,
                cols.astype(PETSc.IntType, copy=False),
                vals.astype(PETSc.ScalarType, copy=False),
                addv=PETSc.InsertMode.INSERT_VALUES,
            )
            return
        self._rows.append(np.full(cols.size, row - r0, dtype=np.int64))
        self._cols.append(cols)
        self._vals.append(vals)

    def assemble(self):
        if self.backend == AssemblyBackend.PETSC:
            self.mat.assemblyBegin()
            self.mat.assemblyEnd()
            return self.mat
        return self._assemble_scipy()

    def _assemble_scipy(self) -> LocalAIJMatrix:
        m_local = self.row_range[1] - self.row_range[0]
        n_global = self.global_shape[1]
        if self._rows:
            rows = np.concatenate(self._rows)
            cols = np.concatenate(self._cols)
            vals = np.concatenate(self._vals)
        else:
            rows = np.empty(0, dtype=np.int64)
            cols = np.empty(0, dtype=np.int64)
            vals = np.empty(0, dtype=np.float64)

        # INSERT semantics: the last value written to (row, col) wins
        keys = rows * max(n_global, 1) + cols
        rev_keys = keys[::-1]
        _, first_in_rev = np.unique(rev_keys, return_index=True)
        last = keys.size - 1 - first_in_rev
        rows, cols, vals = rows[last], cols[last], vals[last]

        c0, c1 = self.col_range
        in_diag = (cols >= c0) & (cols < c1)
        d_used = np.bincount(rows[in_diag], minlength=m_local)
        o_used = np.bincount(rows[~in_diag], minlength=m_local)
        over = (d_used > self.d_nnz) | (o_used > self.o_nnz)
        if np.any(over):
            i = int(np.flatnonzero(over)[0])
            raise AssemblyInvariantError(
                f"New nonzero in row {self.row_range[0] + i} exceeds preallocation: "
                f"diag {int(d_used[i])}/{int(self.d_nnz[i])}, off {int(o_used[i])}/{int(self.o_nnz[i])}."
            )

        csr = sp.csr_matrix((vals, (rows, cols)), shape=(m_local, n_global))
        csr.sort_indices()
        return LocalAIJMatrix(
            csr=csr,
            row_range=self.row_range,
            col_range=self.col_range,
            global_shape=self.global_shape,
            d_nnz=self.d_nnz,
            o_nnz=self.o_nnz,
        )


def create_aij(
    row_range: Tuple[int, int],
    col_range: Tuple[int, int],
    global_shape: Tuple[int, int],
    d_nnz: np.ndarray,
    o_nnz: np.ndarray,
    *,
    backend: AssemblyBackend = AssemblyBackend.SCIPY,
    comm=None,
) -> AIJBuilder:
    """
    Allocate an AIJ matrix with the counted nonzero pattern.

    On the PETSc back end this is collective: every rank must call it, also
    ranks without local rows.
    """
    backend = AssemblyBackend(backend)
    m_local = int(row_range[1] - row_range[0])
    n_local = int(col_range[1] - col_range[0])
    d_nnz = np.asarray(d_nnz, dtype=np.int64)
    o_nnz = np.asarray(o_nnz, dtype=np.int64)
    if d_nnz.shape != (m_local,) or o_nnz.shape != (m_local,):
        raise ValueError(
            f"nnz arrays must have length {m_local}, got {d_nnz.shape} and {o_nnz.shape}."
        )

    builder = AIJBuilder(
        backend=backend,
        row_range=(int(row_range[0]), int(row_range[1])),
        col_range=(int(col_range[0]), int(col_range[1])),
        global_shape=(int(global_shape[0]), int(global_shape[1])),
        d_nnz=d_nnz,
        o_nnz=o_nnz,
    )
    if backend == AssemblyBackend.PETSC:
        PETSc = get_petsc()
        if comm is None:
            comm = PETSc.COMM_WORLD
        itype = PETSc.IntType
        nnz = (d_nnz.astype(itype), o_nnz.astype(itype)) if m_local else (0, 0)
        M = PETSc.Mat().createAIJ(
            [(m_local, PETSc.DETERMINE), (n_local, PETSc.DETERMINE)],
            nnz=nnz,
            comm=comm,
        )
        M.setUp()
        M.setOption(PETSc.Mat.Option.NEW_NONZERO_ALLOCATION_ERR, True)
        builder.mat = M

    logger.debug(
        "create_aij[%s]: rows [%d, %d) cols [%d, %d) global %s.",
        backend.value,
        builder.row_range[0],
        builder.row_range[1],
        builder.col_range[0],
        builder.col_range[1],
        builder.global_shape,
    )
    return builder


def create_index_set(indices: Sequence[int], *, backend: AssemblyBackend = AssemblyBackend.SCIPY):
    """
    Sequential (per-rank) index set of global DOF indices.
    """
    idx = np.asarray(indices, dtype=np.int64).ravel()
    if AssemblyBackend(backend) == AssemblyBackend.PETSC:
        PETSc = get_petsc()
        return PETSc.IS().createGeneral(idx.astype(PETSc.IntType), comm=PETSc.COMM_SELF)
    out = idx.copy()
    out.setflags(write=False)
    return out


def index_set_indices(index_set) -> np.ndarray:
    """Indices of an index set from either back end."""
    if hasattr(index_set, "getIndices"):
        return np.asarray(index_set.getIndices(), dtype=np.int64)
    return np.asarray(index_set, dtype=np.int64)


def matrix_to_csr(mat) -> Tuple[sp.csr_matrix, Tuple[int, int]]:
    """Local CSR block and row range of an assembled matrix from either back end."""
    if isinstance(mat, LocalAIJMatrix):
        return mat.csr, mat.row_range
    r0, r1 = mat.getOwnershipRange()
    _, n_global = mat.getSize()
    indptr, indices, data = mat.getValuesCSR()
    csr = sp.csr_matrix(
        (np.asarray(data), np.asarray(indices), np.asarray(indptr)),
        shape=(int(r1 - r0), int(n_global)),
    )
    return csr, (int(r0), int(r1))
