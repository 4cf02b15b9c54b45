"""
Box algebra, patch-level construction and reference DOF numbering.

Tests:
1. Box iteration is lexicographic with axis 0 fastest
2. Refine/coarsen and side boxes
3. Uniform level tiling and physical-boundary queries
4. Refined level records coarse-fine boundary boxes
5. Cell and side DOF numbering is contiguous per rank, ghosts see neighbors
6. Application ordering maps lexicographic indices back to DOFs
"""

from __future__ import annotations

import numpy as np
import pytest

from core.box import Box, as_int_vector, coarsen, index_grids, refine
from core.grid import build_refined_level, build_uniform_level
from core.layout import (
    build_application_ordering,
    map_index_to_integer,
    number_cell_dofs,
    number_side_dofs,
    side_data_offset,
)
from core.types import LOWER, NO_DOF, UPPER, AssemblyInvariantError


def _level(n=4, patch_size=None):
    return build_uniform_level(Box((0, 0), (n - 1, n - 1)), (0.0, 0.0), (1.0, 1.0), patch_size=patch_size)


def test_box_iteration_order():
    box = Box((0, 0), (1, 2))
    assert list(box) == [(0, 0), (1, 0), (0, 1), (1, 1), (0, 2), (1, 2)]
    assert len(box) == 6
    assert box.shape == (2, 3)


def test_box_refine_coarsen_and_side_box():
    box = Box((1, -1), (2, 0))
    assert box.refine(2) == Box((2, -2), (5, 1))
    assert box.refine(2).coarsen(2) == box
    assert box.to_side_box(1) == Box((1, -1), (2, 1))
    assert coarsen((-1, 3), (2, 2)) == (-1, 1)
    assert refine((1, 2), (3, 2)) == (3, 4)
    assert Box((0, 0), (1, 1)).intersect(Box((2, 0), (3, 1))).empty()
    assert as_int_vector(2, 3) == (2, 2, 2)
    with pytest.raises(ValueError):
        as_int_vector((1, 2), 3)


def test_index_grids_match_box_slices():
    box = Box((2, 5), (3, 7))
    gx, gy = index_grids(box)
    assert gx.shape == box.shape
    assert gx[1, 0] == 3 and gy[0, 2] == 7


def test_uniform_level_tiling():
    level = _level(n=5, patch_size=(2, 5))
    assert [p.box for p in level] == [
        Box((0, 0), (1, 4)),
        Box((2, 0), (3, 4)),
        Box((4, 0), (4, 4)),
    ]
    assert level.dx == pytest.approx((0.2, 0.2))
    middle = level.get_patch(1)
    assert middle.touches_regular_boundary(1, LOWER)
    assert not middle.touches_regular_boundary(0, LOWER)
    assert middle.intersects_physical_boundary()
    assert level.cf_boundary_boxes(1) == []
    with pytest.raises(KeyError):
        level.get_patch(7)


def test_refined_level_cf_boundaries():
    coarse = _level(n=4)
    fine = build_refined_level(coarse, [Box((1, 1), (2, 2))], 2)
    assert fine.level_number == 1
    assert fine.ratio == (2, 2)
    assert fine.domain_box == Box((0, 0), (7, 7))
    patch = fine.get_patch(0)
    bdry = patch.cf_boundary_boxes()
    # 4 sides x 4 ghost cells, none on the physical boundary
    assert len(bdry) == 16
    assert {b.location_index for b in bdry} == {0, 1, 2, 3}
    upper_x = [b for b in bdry if b.axis == 0 and b.side == UPPER]
    assert all(b.box.lower[0] == 6 for b in upper_x)


def test_cell_numbering_two_ranks():
    level = _level(n=4, patch_size=(2, 4))
    dofs = number_cell_dofs(level, depth=2, ghost_width=1, n_procs=2, patch_owner={0: 0, 1: 1})
    assert dofs.num_dofs_per_proc == [16, 16]
    d0 = dofs.dof_field[0]
    d1 = dofs.dof_field[1]
    assert d0.get(None, (0, 0), 0) == 0
    assert d0.get(None, (0, 0), 1) == 1
    assert d1.get(None, (2, 0), 0) == 16
    # ghost of patch 0 sees patch 1's number
    assert d0.get(None, (2, 0), 1) == 17
    # outside the domain
    assert d0.get(None, (-1, 0), 0) == NO_DOF
    with pytest.raises(AssemblyInvariantError):
        d0.get(None, (-2, 0), 0)


def test_side_numbering_counts_each_face_once():
    level = _level(n=4, patch_size=(2, 4))
    dofs = number_side_dofs(level, ghost_width=1, n_procs=1)
    assert dofs.n_total == 5 * 4 + 4 * 5
    seen = []
    for patch in level:
        data = dofs.dof_field[patch.patch_number]
        for axis, side_box in data.component_boxes(patch.box):
            seen.append(data.view(axis, side_box).ravel())
    seen = np.concatenate(seen)
    # the shared face layer appears in both patches with the same number
    assert np.array_equal(np.unique(seen), np.arange(dofs.n_total))
    shared_0 = dofs.dof_field[0].get(0, (2, 1))
    shared_1 = dofs.dof_field[1].get(0, (2, 1))
    assert shared_0 == shared_1 >= 0


def test_application_ordering_cell_and_side():
    level = _level(n=4, patch_size=(2, 2))
    cells = number_cell_dofs(level, depth=1, ghost_width=1)
    ao = build_application_ordering(level, cells, offset=3)
    for patch in level:
        data = cells.dof_field[patch.patch_number]
        for idx in patch.box:
            app = map_index_to_integer(idx, (0, 0), (4, 4), 0, 3)
            assert int(ao([app])[0]) == data.get(None, idx)
    with pytest.raises(AssemblyInvariantError):
        ao([0])

    sides = number_side_dofs(level, ghost_width=1)
    ao_side = build_application_ordering(level, sides)
    offset = side_data_offset(level.domain_box, 1)
    assert offset == 5 * 4
    app = map_index_to_integer((1, 4), (0, 0), (4, 5), 0, offset)
    assert int(ao_side([app])[0]) == sides.dof_field[2].get(1, (1, 4))
