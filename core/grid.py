"""
Read-only patch hierarchy used by the operator builders.

Only what the assemblers consume is modeled: per-level physical domain,
refinement ratio, local patches, physical-boundary queries, coarse-fine
boundary boxes and a containment query over patch boxes. Levels are built
once per regrid and never mutated by assembly code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from core.box import Box, BoundaryBox, IntVectorLike, as_int_vector
from core.types import LOWER, UPPER

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CartesianGridGeometry:
    """Physical extents and coarsest-level mesh width of the computational domain."""

    x_lower: Tuple[float, ...]
    x_upper: Tuple[float, ...]
    dx0: Tuple[float, ...]

    def __post_init__(self) -> None:
        if not (len(self.x_lower) == len(self.x_upper) == len(self.dx0)):
            raise ValueError("x_lower, x_upper and dx0 must share the spatial dimension.")
        if any((not np.isfinite(h)) or h <= 0.0 for h in self.dx0):
            raise ValueError(f"dx0 must be positive and finite, got {self.dx0}.")

    @property
    def dim(self) -> int:
        return len(self.dx0)


@dataclass(slots=True)
class Patch:
    patch_number: int
    box: Box
    level: "PatchLevel" = field(repr=False)

    @property
    def dim(self) -> int:
        return self.box.dim

    def touches_regular_boundary(self, axis: int, side: int) -> bool:
        dom = self.level.domain_box
        if side == LOWER:
            return self.box.lower[axis] <= dom.lower[axis]
        return self.box.upper[axis] >= dom.upper[axis]

    def intersects_physical_boundary(self) -> bool:
        return any(
            self.touches_regular_boundary(axis, side)
            for axis in range(self.dim)
            for side in (LOWER, UPPER)
        )

    def cf_boundary_boxes(self) -> List[BoundaryBox]:
        return self.level.cf_boundary_boxes(self.patch_number)


@dataclass(slots=True)
class PatchLevel:
    """
    One level of the hierarchy, restricted to the patches this process owns.

    ratio is the refinement ratio of this level relative to level 0.
    """

    level_number: int
    ratio: Tuple[int, ...]
    domain_box: Box
    grid_geometry: CartesianGridGeometry
    patches: List[Patch] = field(default_factory=list)
    cf_boundaries: Dict[int, List[BoundaryBox]] = field(default_factory=dict)

    @property
    def dim(self) -> int:
        return self.domain_box.dim

    @property
    def dx(self) -> Tuple[float, ...]:
        return tuple(h / float(r) for h, r in zip(self.grid_geometry.dx0, self.ratio))

    @property
    def x_lower(self) -> Tuple[float, ...]:
        return self.grid_geometry.x_lower

    @property
    def x_upper(self) -> Tuple[float, ...]:
        return self.grid_geometry.x_upper

    def __iter__(self):
        return iter(self.patches)

    def __len__(self) -> int:
        return len(self.patches)

    def get_patch(self, patch_number: int) -> Patch:
        for patch in self.patches:
            if patch.patch_number == patch_number:
                return patch
        raise KeyError(f"Patch {patch_number} is not local to level {self.level_number}.")

    def add_patch(self, box: Box, patch_number: Optional[int] = None) -> Patch:
        if box.dim != self.dim:
            raise ValueError(f"Patch box dimension {box.dim} != level dimension {self.dim}.")
        if not self.domain_box.contains_box(box):
            raise ValueError(f"Patch box {box} lies outside the domain {self.domain_box}.")
        num = len(self.patches) if patch_number is None else int(patch_number)
        patch = Patch(patch_number=num, box=box, level=self)
        self.patches.append(patch)
        return patch

    def find_overlap_indices(self, box: Box) -> List[int]:
        """Patch numbers of local patches whose interior box intersects `box`."""
        return [p.patch_number for p in self.patches if p.box.intersects(box)]

    def cf_boundary_boxes(self, patch_number: int) -> List[BoundaryBox]:
        if self.level_number == 0:
            return []
        return list(self.cf_boundaries.get(int(patch_number), []))


def _tile_box(domain: Box, patch_size: Sequence[int]) -> List[Box]:
    starts = [
        list(range(lo, hi + 1, ps))
        for lo, hi, ps in zip(domain.lower, domain.upper, patch_size)
    ]
    boxes = []
    for corner in Box(tuple(0 for _ in starts), tuple(len(s) - 1 for s in starts)):
        lo = tuple(starts[d][corner[d]] for d in range(domain.dim))
        hi = tuple(min(lo[d] + patch_size[d] - 1, domain.upper[d]) for d in range(domain.dim))
        boxes.append(Box(lo, hi))
    return boxes


def build_uniform_level(
    domain_box: Box,
    x_lower: Sequence[float],
    x_upper: Sequence[float],
    *,
    patch_size: Optional[IntVectorLike] = None,
) -> PatchLevel:
    """
    Build level 0 over `domain_box`, tiled into patches of `patch_size`
    cells (a single patch when patch_size is None).
    """
    dim = domain_box.dim
    if len(x_lower) != dim or len(x_upper) != dim:
        raise ValueError("x_lower/x_upper must match the domain dimension.")
    shape = domain_box.shape
    dx0 = tuple((float(x_upper[d]) - float(x_lower[d])) / shape[d] for d in range(dim))
    geom = CartesianGridGeometry(
        x_lower=tuple(float(v) for v in x_lower),
        x_upper=tuple(float(v) for v in x_upper),
        dx0=dx0,
    )
    level = PatchLevel(
        level_number=0,
        ratio=(1,) * dim,
        domain_box=domain_box,
        grid_geometry=geom,
    )
    ps = shape if patch_size is None else as_int_vector(patch_size, dim)
    for box in _tile_box(domain_box, ps):
        level.add_patch(box)
    logger.debug("Built level 0 with %d patch(es) over %s.", len(level), domain_box)
    return level


def build_refined_level(
    coarse_level: PatchLevel,
    coarse_boxes: Sequence[Box],
    ratio: IntVectorLike,
    *,
    level_number: Optional[int] = None,
) -> PatchLevel:
    """
    Build a finer level covering the refinement of `coarse_boxes`, one patch
    per box, and record coarse-fine codim-1 boundary boxes for each patch.
    """
    dim = coarse_level.dim
    r = as_int_vector(ratio, dim)
    if any(v < 1 for v in r):
        raise ValueError(f"Refinement ratio must be positive, got {r}.")
    fine = PatchLevel(
        level_number=coarse_level.level_number + 1 if level_number is None else int(level_number),
        ratio=tuple(a * b for a, b in zip(coarse_level.ratio, r)),
        domain_box=coarse_level.domain_box.refine(r),
        grid_geometry=coarse_level.grid_geometry,
    )
    for box in coarse_boxes:
        fine.add_patch(box.refine(r))

    fine_boxes = [p.box for p in fine.patches]
    for patch in fine.patches:
        bdry: List[BoundaryBox] = []
        for axis in range(dim):
            for side in (LOWER, UPPER):
                if patch.touches_regular_boundary(axis, side):
                    continue
                lo = list(patch.box.lower)
                hi = list(patch.box.upper)
                layer = patch.box.lower[axis] - 1 if side == LOWER else patch.box.upper[axis] + 1
                lo[axis] = hi[axis] = layer
                ghost_layer = Box(tuple(lo), tuple(hi))
                covered = np.zeros(ghost_layer.shape, dtype=bool)
                for other in fine_boxes:
                    ov = ghost_layer.intersect(other)
                    if not ov.empty():
                        covered[ov.slices(ghost_layer.lower)] = True
                if covered.all():
                    continue
                # unit boxes, one per uncovered ghost cell
                for idx in ghost_layer:
                    if not covered[tuple(i - o for i, o in zip(idx, ghost_layer.lower))]:
                        bdry.append(BoundaryBox(Box(idx, idx), 2 * axis + side))
        if bdry:
            fine.cf_boundaries[patch.patch_number] = bdry
    logger.debug(
        "Built level %d with %d patch(es); %d patch(es) touch a coarse-fine interface.",
        fine.level_number,
        len(fine),
        len(fine.cf_boundaries),
    )
    return fine
