"""
Coarse -> fine prolongation and the restriction scaling.

Tests:
1. Cell injection reproduces constants
2. Restriction scaling: 1/column-norm, zero for uncovered coarse DOFs
3. Restricting a constant fine field gives the constant on covered cells
4. Scaling of rank views whose fine rows feed the other rank's coarse columns
5. Side prolongation weights along the face normal
6. Side faces on the upper domain boundary drop the missing coarse face
7. Custom application-ordering offset
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.prolongation_op import (
    apply_restriction,
    construct_prolongation_op,
    construct_restriction_scaling_op,
)
from core.box import Box
from core.grid import build_refined_level, build_uniform_level
from core.layout import build_application_ordering, number_cell_dofs, number_side_dofs
from core.types import AssemblyInvariantError


def _levels(refine_box=Box((1, 1), (2, 2))):
    coarse = build_uniform_level(Box((0, 0), (3, 3)), (0.0, 0.0), (1.0, 1.0), patch_size=(2, 2))
    fine = build_refined_level(coarse, [refine_box], 2)
    return coarse, fine


def _cell_operator(offset=0):
    coarse, fine = _levels()
    c_dofs = number_cell_dofs(coarse, ghost_width=1)
    f_dofs = number_cell_dofs(fine, ghost_width=1)
    ao = build_application_ordering(coarse, c_dofs, offset=offset)
    P, diag = construct_prolongation_op(
        f_dofs.dof_field,
        f_dofs.num_dofs_per_proc,
        c_dofs.num_dofs_per_proc,
        fine,
        coarse,
        ao,
        offset,
    )
    return P, diag, coarse, fine, c_dofs, f_dofs


def test_cell_injection_reproduces_constants():
    P, diag, *_ = _cell_operator()
    assert P.getSize() == (16, 16)
    assert np.allclose(P.csr @ np.ones(16), 1.0)
    assert diag["nnz_max_row"] == 1
    assert np.all(np.diff(P.csr.indptr) == 1)


def test_cell_injection_parent_cells():
    P, _, coarse, fine, c_dofs, f_dofs = _cell_operator()
    fdata = f_dofs.dof_field[0]
    for idx in fine.get_patch(0).box:
        parent = (idx[0] // 2, idx[1] // 2)
        c_patch = coarse.find_overlap_indices(Box(parent, parent))[0]
        cols, vals = P.row(fdata.get(None, idx))
        assert cols.tolist() == [c_dofs.dof_field[c_patch].get(None, parent)]
        assert vals.tolist() == [1.0]


def test_restriction_scaling_and_apply():
    P, _, coarse, _, c_dofs, f_dofs = _cell_operator()
    L = construct_restriction_scaling_op(P)
    assert L.shape == (16,)
    covered = set()
    for idx in Box((1, 1), (2, 2)):
        c_patch = coarse.find_overlap_indices(Box(idx, idx))[0]
        covered.add(c_dofs.dof_field[c_patch].get(None, idx))
    for j in range(16):
        assert L[j] == pytest.approx(0.25 if j in covered else 0.0)

    y = apply_restriction(P, L, np.ones(f_dofs.n_total))
    assert np.allclose(y[sorted(covered)], 1.0)
    assert np.allclose(np.delete(y, sorted(covered)), 0.0)


def test_restriction_scaling_over_rank_views():
    coarse = build_uniform_level(Box((0, 0), (3, 3)), (0.0, 0.0), (1.0, 1.0), patch_size=(2, 2))
    fine = build_refined_level(coarse, [Box((0, 0), (1, 3)), Box((2, 0), (3, 3))], 2)
    c_dofs = number_cell_dofs(
        coarse, ghost_width=1, n_procs=2, patch_owner={p.patch_number: p.patch_number % 2 for p in coarse}
    )
    f_dofs = number_cell_dofs(fine, ghost_width=1, n_procs=2, patch_owner={0: 1, 1: 0})
    ao = build_application_ordering(coarse, c_dofs)
    views = [
        construct_prolongation_op(
            f_dofs.dof_field,
            f_dofs.num_dofs_per_proc,
            c_dofs.num_dofs_per_proc,
            fine,
            coarse,
            ao,
            rank=r,
        )[0]
        for r in range(2)
    ]
    # each rank's fine rows only feed the other rank's coarse columns
    for P in views:
        c0, c1 = P.col_range
        assert abs(P.csr[:, c0:c1]).sum() == 0.0

    L = construct_restriction_scaling_op(views)
    assert [v.size for v in L] == [8, 8]
    assert np.allclose(np.concatenate(L), 0.25)

    y = apply_restriction(views, L, [np.ones(P.csr.shape[0]) for P in views])
    assert np.allclose(np.concatenate(y), 1.0)


def test_ao_offset_is_honored():
    P0, *_ = _cell_operator(offset=0)
    P7, *_ = _cell_operator(offset=7)
    assert np.allclose(P0.toarray(), P7.toarray())


def test_mismatched_ao_offset_raises():
    coarse, fine = _levels()
    c_dofs = number_cell_dofs(coarse, ghost_width=1)
    f_dofs = number_cell_dofs(fine, ghost_width=1)
    ao = build_application_ordering(coarse, c_dofs, offset=12)
    with pytest.raises(AssemblyInvariantError):
        construct_prolongation_op(
            f_dofs.dof_field,
            f_dofs.num_dofs_per_proc,
            c_dofs.num_dofs_per_proc,
            fine,
            coarse,
            ao,
            0,
        )


def _side_operator(refine_box):
    coarse, fine = _levels(refine_box)
    c_dofs = number_side_dofs(coarse, ghost_width=1)
    f_dofs = number_side_dofs(fine, ghost_width=1)
    ao = build_application_ordering(coarse, c_dofs)
    P, _ = construct_prolongation_op(
        f_dofs.dof_field,
        f_dofs.num_dofs_per_proc,
        c_dofs.num_dofs_per_proc,
        fine,
        coarse,
        ao,
    )
    return P, coarse, c_dofs, f_dofs


def _coarse_face(coarse, c_dofs, axis, face):
    cell = list(face)
    cell[axis] = min(cell[axis], coarse.domain_box.upper[axis])
    c_patch = coarse.find_overlap_indices(Box(tuple(cell), tuple(cell)))[0]
    return c_dofs.dof_field[c_patch].get(axis, face)


def test_side_prolongation_weights():
    P, coarse, c_dofs, f_dofs = _side_operator(Box((1, 1), (2, 2)))
    fdata = f_dofs.dof_field[0]

    # odd fine face: halfway between two coarse faces
    cols, vals = P.row(fdata.get(0, (3, 4)))
    weights = dict(zip(cols.tolist(), vals.tolist()))
    assert weights[_coarse_face(coarse, c_dofs, 0, (1, 2))] == pytest.approx(0.5)
    assert weights[_coarse_face(coarse, c_dofs, 0, (2, 2))] == pytest.approx(0.5)

    # even fine face: coincides with a coarse face
    cols, vals = P.row(fdata.get(1, (5, 4)))
    weights = dict(zip(cols.tolist(), vals.tolist()))
    assert weights[_coarse_face(coarse, c_dofs, 1, (2, 2))] == pytest.approx(1.0)
    assert sum(weights.values()) == pytest.approx(1.0)

    assert np.allclose(P.csr @ np.ones(c_dofs.n_total), 1.0)


def test_side_prolongation_upper_domain_face():
    P, coarse, c_dofs, f_dofs = _side_operator(Box((2, 0), (3, 3)))
    fdata = f_dofs.dof_field[0]
    cols, vals = P.row(fdata.get(0, (8, 3)))
    assert cols.tolist() == [_coarse_face(coarse, c_dofs, 0, (4, 1))]
    assert vals.tolist() == [1.0]
