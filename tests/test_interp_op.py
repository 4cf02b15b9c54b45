"""
Marker interpolation operator and regularized delta kernels.

Tests:
1. Kernel stencil weights (piecewise linear values, partition of unity)
2. Cell lookup measured from the nearer domain end
3. Stencil box placement
4. Kronecker kernel on a face location gives a single unit weight
5. IB-4 rows sum to one for interior markers
6. Odd stencil widths, kernel width mismatches and unknown kernels raise
7. Rank offsets of marker rows
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.interp_op import construct_patch_level_sc_interp_op, get_cell_index, interp_stencil_box
from assembly.kernels import KernelType, get_kernel, phi_ib_4, stencil_weights
from core.box import Box
from core.grid import build_uniform_level
from core.layout import number_side_dofs
from core.types import AssemblyInvariantError, OperatorConfigurationError


def _level(n=4, x_upper=None, patch_size=None):
    x_upper = float(n) if x_upper is None else x_upper
    return build_uniform_level(Box((0, 0), (n - 1, n - 1)), (0.0, 0.0), (x_upper, x_upper), patch_size=patch_size)


def _kronecker(r_lower):
    r = float(r_lower) - np.arange(2)
    return np.where(r == 0.0, 1.0, 0.0)


def test_piecewise_linear_weights():
    fcn, width = get_kernel("piecewise_linear")
    assert width == 2
    assert np.allclose(fcn(0.25), [0.75, 0.25])


@pytest.mark.parametrize("kernel", [KernelType.IB_4, KernelType.BSPLINE_4])
def test_four_point_kernels_partition_unity(kernel):
    fcn, width = get_kernel(kernel.value)
    assert width == 4
    for r in np.linspace(1.0, 2.0, 7):
        w = fcn(r)
        assert w.shape == (4,)
        assert w.sum() == pytest.approx(1.0)
        assert np.all(w >= 0.0)


def test_ib4_first_moment_vanishes():
    fcn = stencil_weights(phi_ib_4, 4)
    r = 1.3
    w = fcn(r)
    assert np.dot(w, r - np.arange(4)) == pytest.approx(0.0, abs=1e-12)


def test_unknown_kernel_raises():
    with pytest.raises(OperatorConfigurationError):
        get_kernel("gaussian")


def test_get_cell_index_nearer_end():
    args = ((0.0, 0.0), (1.0, 1.0), (0.25, 0.25), (0, 0), (3, 3))
    assert get_cell_index((0.1, 0.9), *args) == (0, 3)
    assert get_cell_index((0.5, 0.75), *args) == (2, 3)
    # outside the domain maps to ghost cells
    assert get_cell_index((-0.1, 1.1), *args) == (-1, 4)


def test_interp_stencil_box_placement():
    X = (2.2, 1.7)
    X_idx = (2, 1)
    X_cell = (2.5, 1.5)
    # normal axis: centered on the cell; tangential: toward the marker
    assert interp_stencil_box(X, X_idx, X_cell, 0, 4) == Box((1, 0), (4, 3))
    assert interp_stencil_box(X, X_idx, X_cell, 1, 4) == Box((0, 0), (3, 3))
    assert interp_stencil_box(X, X_idx, X_cell, 1, 2) == Box((1, 1), (2, 2))


def test_kronecker_kernel_on_face_gives_unit_weight():
    level = _level()
    dofs = number_side_dofs(level, ghost_width=2)
    mat, diag = construct_patch_level_sc_interp_op(
        _kronecker, 2, [[2.0, 1.5]], dofs.num_dofs_per_proc, dofs.dof_field, level
    )
    A = mat.toarray()
    assert A.shape == (2, dofs.n_total)
    face = dofs.dof_field[0].get(0, (2, 1))
    assert np.flatnonzero(A[0]).tolist() == [face]
    assert A[0, face] == pytest.approx(1.0)
    # the marker is half a cell from every axis-1 face
    assert np.allclose(A[1], 0.0)
    assert diag["n_markers"] == 1


def test_ib4_rows_sum_to_one():
    level = _level(n=8, x_upper=1.0, patch_size=(4, 4))
    dofs = number_side_dofs(level, ghost_width=2)
    fcn, width = get_kernel("ib_4")
    X = np.array([[0.43, 0.57], [0.31, 0.62], [0.5, 0.5]])
    mat, diag = construct_patch_level_sc_interp_op(
        fcn, width, X, dofs.num_dofs_per_proc, dofs.dof_field, level
    )
    A = mat.toarray()
    assert A.shape == (6, dofs.n_total)
    assert np.allclose(A.sum(axis=1), 1.0)
    assert diag["nnz_max_row"] == 16


def test_marker_rows_offset_by_rank():
    level = _level(n=8, x_upper=1.0)
    dofs = number_side_dofs(level, ghost_width=2, n_procs=1)
    fcn, width = get_kernel("piecewise_linear")
    mat, _ = construct_patch_level_sc_interp_op(
        fcn,
        width,
        [[0.5, 0.5]],
        [dofs.n_total, 0],
        dofs.dof_field,
        level,
        [2, 1],
        rank=1,
    )
    assert mat.getOwnershipRange() == (4, 6)
    assert mat.getSize() == (6, dofs.n_total)


def test_odd_stencil_raises():
    level = _level()
    dofs = number_side_dofs(level, ghost_width=2)
    with pytest.raises(OperatorConfigurationError):
        construct_patch_level_sc_interp_op(
            _kronecker, 3, [[2.0, 1.5]], dofs.num_dofs_per_proc, dofs.dof_field, level
        )


def test_stencil_beyond_ghost_box_raises():
    level = _level(n=8, x_upper=1.0, patch_size=(4, 8))
    dofs = number_side_dofs(level, ghost_width=1)
    fcn, width = get_kernel("ib_4")
    # marker in patch 0 next to patch 1: the 4-point box needs 2 ghost layers
    with pytest.raises(AssemblyInvariantError):
        construct_patch_level_sc_interp_op(
            fcn, width, [[0.49, 0.5]], dofs.num_dofs_per_proc, dofs.dof_field, level
        )


def test_kernel_width_mismatch_raises():
    level = _level()
    dofs = number_side_dofs(level, ghost_width=2)
    with pytest.raises(OperatorConfigurationError):
        construct_patch_level_sc_interp_op(
            _kronecker, 4, [[2.0, 1.5]], dofs.num_dofs_per_proc, dofs.dof_field, level
        )
