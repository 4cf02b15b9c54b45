"""
Additive-Schwarz subdomain index sets.

Tests:
1. Patch-box partition: contiguous tiles truncated at the patch box
2. Cell data, zero overlap: tiles cover every DOF once, same object for both sets
3. Cell data with overlap: grown tiles clipped to existing DOFs
4. Side data: each face lands in exactly one non-overlapping set
5. Side data with overlap: sorted, deduplicated, clipped to the domain
6. Rank views partition the subdomains by DOF ownership
7. Ghost width smaller than the overlap raises
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.asm_subdomains import construct_patch_level_asm_subdomains, partition_patch_box
from core.box import Box
from core.grid import build_refined_level, build_uniform_level
from core.layout import number_cell_dofs, number_side_dofs
from core.types import OperatorConfigurationError
from parallel.ownership import compute_ownership_range


def _level(n=4, patch_size=None):
    return build_uniform_level(Box((0, 0), (n - 1, n - 1)), (0.0, 0.0), (1.0, 1.0), patch_size=patch_size)


def test_partition_truncates_last_tile():
    overlap_boxes, boxes = partition_patch_box(Box((0, 0), (4, 2)), (2, 2), 1)
    assert len(boxes) == 6
    assert boxes[0] == Box((0, 0), (1, 1))
    assert boxes[1] == Box((2, 0), (3, 1))
    assert boxes[2] == Box((4, 0), (4, 1))
    assert boxes[3] == Box((0, 2), (1, 2))
    assert overlap_boxes[2] == Box((3, -1), (5, 2))


def test_partition_rejects_bad_sizes():
    with pytest.raises(OperatorConfigurationError):
        partition_patch_box(Box((0, 0), (3, 3)), (0, 2), 0)
    with pytest.raises(OperatorConfigurationError):
        partition_patch_box(Box((0, 0), (3, 3)), 2, -1)


def test_cell_nonoverlap_covers_all_dofs_once():
    level = _level(patch_size=(4, 2))
    dofs = number_cell_dofs(level, depth=2, ghost_width=1)
    is_overlap, is_nonoverlap = construct_patch_level_asm_subdomains(
        (2, 2), 0, dofs.num_dofs_per_proc, dofs.dof_field, level
    )
    assert len(is_nonoverlap) == 4
    for a, b in zip(is_overlap, is_nonoverlap):
        assert a is b
        assert np.all(np.diff(b) > 0)
    all_dofs = np.concatenate(is_nonoverlap)
    assert all_dofs.size == dofs.n_total
    assert np.array_equal(np.sort(all_dofs), np.arange(dofs.n_total))


def test_cell_overlap_sets_clip_to_domain():
    level = _level()
    dofs = number_cell_dofs(level, ghost_width=1)
    is_overlap, is_nonoverlap = construct_patch_level_asm_subdomains(
        2, 1, dofs.num_dofs_per_proc, dofs.dof_field, level
    )
    assert [s.size for s in is_nonoverlap] == [4, 4, 4, 4]
    # corner tile grown by one: 3x3 cells remain inside the domain
    assert [s.size for s in is_overlap] == [9, 9, 9, 9]
    for ov, local in zip(is_overlap, is_nonoverlap):
        assert ov is not local
        assert set(local.tolist()) <= set(ov.tolist())


def test_side_nonoverlap_covers_all_faces_once():
    level = _level(patch_size=(2, 4))
    dofs = number_side_dofs(level, ghost_width=1)
    _, is_nonoverlap = construct_patch_level_asm_subdomains(
        (2, 2), 0, dofs.num_dofs_per_proc, dofs.dof_field, level
    )
    all_dofs = np.concatenate(is_nonoverlap)
    assert all_dofs.size == dofs.n_total == 40
    assert np.array_equal(np.sort(all_dofs), np.arange(40))


def test_side_nonoverlap_keeps_coarse_fine_upper_faces():
    coarse = _level()
    fine = build_refined_level(coarse, [Box((0, 0), (1, 1))], 2)
    dofs = number_side_dofs(fine, ghost_width=1)
    _, is_nonoverlap = construct_patch_level_asm_subdomains(
        (2, 2), 0, dofs.num_dofs_per_proc, dofs.dof_field, fine
    )
    all_dofs = np.concatenate(is_nonoverlap)
    assert np.array_equal(np.sort(all_dofs), np.arange(dofs.n_total))


def test_ghost_width_smaller_than_overlap_raises():
    level = _level()
    dofs = number_cell_dofs(level, ghost_width=1)
    with pytest.raises(OperatorConfigurationError):
        construct_patch_level_asm_subdomains(2, 2, dofs.num_dofs_per_proc, dofs.dof_field, level)


def _uneven_level():
    # 7x5 cells in 4x3 patches: four patches of different shapes
    return build_uniform_level(Box((0, 0), (6, 4)), (0.0, 0.0), (1.0, 1.0), patch_size=(4, 3))


def test_side_overlap_sets_sorted_and_deduplicated():
    level = _uneven_level()
    dofs = number_side_dofs(level, ghost_width=2)
    assert dofs.n_total == 8 * 5 + 7 * 6
    is_overlap, is_nonoverlap = construct_patch_level_asm_subdomains(
        (3, 2), 2, dofs.num_dofs_per_proc, dofs.dof_field, level
    )
    assert len(is_nonoverlap) == 9
    for ov, local in zip(is_overlap, is_nonoverlap):
        assert ov is not local
        assert np.all(np.diff(ov) > 0)
        assert ov.min() >= 0
        assert set(local.tolist()) <= set(ov.tolist())
    # first and last tiles grown by 2 and clipped to the domain: 6x4 x-faces + 5x5 y-faces
    assert is_overlap[0].size == 49
    assert is_overlap[-1].size == 49
    all_dofs = np.concatenate(is_nonoverlap)
    assert np.array_equal(np.sort(all_dofs), np.arange(dofs.n_total))


def test_rank_views_partition_subdomains():
    level = _uneven_level()
    owners = {p.patch_number: p.patch_number % 2 for p in level}
    dofs = number_side_dofs(level, ghost_width=1, n_procs=2, patch_owner=owners)
    counts = dofs.num_dofs_per_proc
    n_subdomains = []
    all_dofs = []
    for rank in range(2):
        lower, upper, _ = compute_ownership_range(counts, rank)
        is_overlap, is_nonoverlap = construct_patch_level_asm_subdomains(
            (3, 2), 1, counts, dofs.dof_field, level, rank=rank
        )
        assert len(is_overlap) == len(is_nonoverlap)
        for s in is_nonoverlap:
            assert s.min() >= lower and s.max() < upper
        n_subdomains.append(len(is_nonoverlap))
        all_dofs.extend(is_nonoverlap)
    # rank 0 holds patches 0 and 2, rank 1 patches 1 and 3
    assert n_subdomains == [6, 3]
    assert np.array_equal(np.sort(np.concatenate(all_dofs)), np.arange(dofs.n_total))
