# -*- coding: utf-8 -*-
"""
Global DOF ownership ranges from per-process DOF counts.

Features:
- Prefix-sum per-rank DOF counts into contiguous half-open ranges;
- Build an owner map for global index -> rank;
- Gather local counts across the communicator (collective).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

import numpy as np

from parallel.mpi_bootstrap import comm_rank_size, to_mpi4py


def _validated_counts(num_dofs_per_proc: Sequence[int]) -> np.ndarray:
    counts = np.asarray(num_dofs_per_proc, dtype=np.int64).ravel()
    if counts.size == 0:
        raise ValueError("num_dofs_per_proc must contain at least one entry.")
    if np.any(counts < 0):
        bad = int(np.flatnonzero(counts < 0)[0])
        raise ValueError(f"Negative DOF count {int(counts[bad])} for rank {bad}.")
    return counts


def compute_ownership_range(num_dofs_per_proc: Sequence[int], rank: int) -> Tuple[int, int, int]:
    """
    Return (lower, upper, total) for `rank`: [lower, upper) is the range of
    global DOFs owned by that rank and total the global DOF count.
    """
    counts = _validated_counts(num_dofs_per_proc)
    rank = int(rank)
    if rank < 0 or rank >= counts.size:
        raise ValueError(f"rank {rank} outside [0, {counts.size}).")
    lower = int(counts[:rank].sum())
    upper = lower + int(counts[rank])
    total = int(counts.sum())
    return lower, upper, total


@dataclass
class OwnershipRanges:
    """
    Ownership ranges of all ranks.

    ranges: 1D array of length size+1 with non-decreasing entries; rank p owns
    [ranges[p], ranges[p+1]).
    """

    ranges: np.ndarray

    def __post_init__(self) -> None:
        self.ranges = np.asarray(self.ranges, dtype=np.int64).ravel()
        if self.ranges.size < 2:
            raise ValueError("Ownership ranges must have length >= 2.")
        if int(self.ranges[0]) != 0:
            raise ValueError(f"Ownership ranges must start at 0, got {int(self.ranges[0])}.")
        if not np.all(self.ranges[1:] >= self.ranges[:-1]):
            raise ValueError("Ownership ranges must be non-decreasing.")

    @classmethod
    def from_counts(cls, num_dofs_per_proc: Sequence[int]) -> "OwnershipRanges":
        counts = _validated_counts(num_dofs_per_proc)
        return cls(np.concatenate([[0], np.cumsum(counts)]))

    @property
    def size(self) -> int:
        return int(self.ranges.size - 1)

    @property
    def total(self) -> int:
        return int(self.ranges[-1])

    def local_range(self, rank: int) -> Tuple[int, int]:
        rank = int(rank)
        if rank < 0 or rank >= self.size:
            raise ValueError(f"rank {rank} outside [0, {self.size}).")
        return int(self.ranges[rank]), int(self.ranges[rank + 1])

    def owner_of(self, j: int) -> int:
        """
        Return the owner rank for global index j.
        """
        j = int(j)
        if j < 0 or j >= self.total:
            raise ValueError(f"Global index {j} outside ownership ranges [0, {self.total}).")
        # empty ranks share a boundary value; side="right" skips them
        return int(np.searchsorted(self.ranges, j, side="right")) - 1

    def owners_of(self, indices: Sequence[int]) -> np.ndarray:
        idx = np.asarray(indices, dtype=np.int64)
        if idx.size and (idx.min() < 0 or idx.max() >= self.total):
            raise ValueError(f"Global indices outside ownership ranges [0, {self.total}).")
        return np.searchsorted(self.ranges, idx, side="right") - 1

    def owns(self, j: int, rank: int) -> bool:
        lower, upper = self.local_range(rank)
        return lower <= int(j) < upper


def gather_dof_counts(n_local: int, comm: Any = None) -> List[int]:
    """
    Allgather the local DOF count of every rank (collective over `comm`).
    """
    n_local = int(n_local)
    if n_local < 0:
        raise ValueError(f"Local DOF count must be non-negative, got {n_local}.")
    _, size = comm_rank_size(comm)
    mpicomm = to_mpi4py(comm)
    if mpicomm is None or size == 1:
        return [n_local]
    return [int(v) for v in mpicomm.allgather(n_local)]


def local_ownership(
    num_dofs_per_proc: Sequence[int],
    *,
    comm: Any = None,
    rank: Any = None,
) -> Tuple[int, int, int, int]:
    """
    (rank, lower, upper, total) of the calling process.

    `rank` overrides the communicator rank; assemblers use it to build the
    view of a single rank over a fully local level.
    """
    if rank is None:
        rank, size = comm_rank_size(comm)
        if size != len(num_dofs_per_proc):
            raise ValueError(
                f"num_dofs_per_proc has {len(num_dofs_per_proc)} entries for a communicator of size {size}."
            )
    lower, upper, total = compute_ownership_range(num_dofs_per_proc, rank)
    return int(rank), lower, upper, total
