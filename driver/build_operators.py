"""
Build the operators of one YAML case and log a summary.

Responsibilities:
- Phase-A backend choice and MPI/PETSc bootstrap before any PETSc import.
- Build level 0 (and the optional refined level) and number its DOFs.
- Assemble the requested operators: Laplacian, marker interpolation,
  ASM subdomains, prolongation with restriction scaling.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from assembly.asm_subdomains import construct_patch_level_asm_subdomains
from assembly.interp_op import construct_patch_level_sc_interp_op
from assembly.kernels import get_kernel
from assembly.laplace_op import construct_patch_level_cc_laplace_op, construct_patch_level_sc_laplace_op
from assembly.poisson_coefs import PoissonSpecifications, RobinBcCoef
from assembly.prolongation_op import construct_prolongation_op, construct_restriction_scaling_op
from core.box import Box
from core.config import CaseConfig, load_case_config
from core.grid import PatchLevel, build_refined_level, build_uniform_level
from core.layout import LevelDofs, build_application_ordering, number_cell_dofs, number_side_dofs
from core.logging_utils import format_diag, get_log_level_from_env, is_root_rank, setup_logging
from core.types import AssemblyBackend, AssemblyInvariantError, Centering, OperatorConfigurationError
from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc, comm_rank_size

logger = logging.getLogger(__name__)


def build_levels(cfg: CaseConfig) -> Tuple[PatchLevel, Optional[PatchLevel]]:
    g = cfg.grid
    coarse = build_uniform_level(
        Box(g.domain_lower, g.domain_upper), g.x_lower, g.x_upper, patch_size=g.patch_size
    )
    if g.refine is None:
        return coarse, None
    fine = build_refined_level(coarse, [Box(lo, hi) for lo, hi in g.refine.boxes], g.refine.ratio)
    return coarse, fine


def number_dofs(cfg: CaseConfig, level: PatchLevel) -> LevelDofs:
    n_procs = cfg.dofs.n_procs
    owners = {p.patch_number: p.patch_number % n_procs for p in level}
    if cfg.dofs.centering == Centering.CELL:
        return number_cell_dofs(
            level,
            depth=cfg.dofs.depth,
            ghost_width=cfg.dofs.ghost_width,
            n_procs=n_procs,
            patch_owner=owners,
        )
    return number_side_dofs(level, ghost_width=cfg.dofs.ghost_width, n_procs=n_procs, patch_owner=owners)


def _bc_providers(cfg: CaseConfig, n: int) -> List[RobinBcCoef]:
    bc = [RobinBcCoef(a=b.a, b=b.b) for b in cfg.laplace.bc]
    if len(bc) == 1:
        return bc * n
    return bc


def _local_markers(cfg: CaseConfig, rank: int) -> Tuple[np.ndarray, List[int]]:
    dim = cfg.grid.dim
    markers = np.asarray(cfg.interp.markers, dtype=np.float64).reshape(-1, dim)
    split = np.array_split(np.arange(markers.shape[0]), cfg.dofs.n_procs)
    return markers[split[rank]], [int(s.size) for s in split]


def build_case_operators(
    cfg: CaseConfig,
    *,
    rank: int = 0,
    comm: Any = None,
) -> Dict[str, Any]:
    """
    Assemble every enabled operator of `cfg` as seen by `rank`.

    Returns a dict of operator name -> (object, diag).
    """
    backend = cfg.backend
    coarse, fine = build_levels(cfg)
    level = fine if fine is not None else coarse
    level_dofs = number_dofs(cfg, level)
    counts = level_dofs.num_dofs_per_proc
    dim = level.dim
    out: Dict[str, Any] = {}
    kw = {"backend": backend, "comm": comm, "rank": rank}

    if cfg.laplace.enabled:
        poisson_spec = PoissonSpecifications(c=cfg.laplace.c, d=cfg.laplace.d)
        if level_dofs.centering == Centering.CELL:
            bcs = _bc_providers(cfg, level_dofs.depth)
            out["laplace"] = construct_patch_level_cc_laplace_op(
                poisson_spec, bcs, cfg.laplace.data_time, counts, level_dofs.dof_field, level, **kw
            )
        else:
            bcs = _bc_providers(cfg, dim)
            out["laplace"] = construct_patch_level_sc_laplace_op(
                poisson_spec, bcs, cfg.laplace.data_time, counts, level_dofs.dof_field, level, **kw
            )

    if cfg.interp.enabled:
        if level_dofs.centering != Centering.SIDE:
            raise OperatorConfigurationError("interp: marker interpolation requires dofs.centering=side")
        fcn, width = get_kernel(cfg.interp.kernel)
        X, n_markers = _local_markers(cfg, rank)
        out["interp"] = construct_patch_level_sc_interp_op(
            fcn, width, X, counts, level_dofs.dof_field, level, n_markers, **kw
        )

    if cfg.asm.enabled:
        is_overlap, is_nonoverlap = construct_patch_level_asm_subdomains(
            cfg.asm.box_size,
            cfg.asm.overlap_size,
            counts,
            level_dofs.dof_field,
            level,
            **kw,
        )
        out["asm"] = (
            (is_overlap, is_nonoverlap),
            {"n_subdomains": len(is_nonoverlap), "shared": cfg.asm.overlap_size == (0,) * dim},
        )

    if cfg.prolongation.enabled and fine is not None:
        coarse_dofs = number_dofs(cfg, coarse)
        ao = build_application_ordering(coarse, coarse_dofs, offset=cfg.prolongation.ao_offset)
        P, diag = construct_prolongation_op(
            level_dofs.dof_field,
            counts,
            coarse_dofs.num_dofs_per_proc,
            fine,
            coarse,
            ao,
            cfg.prolongation.ao_offset,
            **kw,
        )
        out["prolongation"] = (P, diag)

    return out


def build_case_rank_views(
    cfg: CaseConfig,
    ranks: Sequence[int],
    *,
    comm: Any = None,
) -> List[Dict[str, Any]]:
    """
    build_case_operators for each of `ranks`, plus the restriction scaling.

    The scaling needs the column norms of the whole prolongation: under PETSc
    they are reduced over `comm`; with the scipy back end they are summed
    over the prolongation views of every rank in `ranks`.
    """
    views = [build_case_operators(cfg, rank=r, comm=comm) for r in ranks]
    if not views or "prolongation" not in views[0]:
        return views

    P_views = [ops["prolongation"][0] for ops in views]
    if cfg.backend == AssemblyBackend.PETSC:
        scalings = [construct_restriction_scaling_op(P, comm=comm) for P in P_views]
    else:
        if sorted(ranks) != list(range(cfg.dofs.n_procs)):
            raise OperatorConfigurationError(
                f"restriction scaling: scipy back end needs all {cfg.dofs.n_procs} rank views, got {len(ranks)}."
            )
        scalings = construct_restriction_scaling_op(P_views)
    for ops, L in zip(views, scalings):
        n_local = L.getLocalSize() if cfg.backend == AssemblyBackend.PETSC else L.size
        ops["restriction_scaling"] = (L, {"op": "construct_restriction_scaling_op", "n_local": int(n_local)})
    return views


def run_case(
    cfg_path: str,
    *,
    backend: Optional[str] = None,
    dry_run: bool = False,
    log_level: Optional[int | str] = None,
) -> int:
    """Build the operators of one case. Return 0 on success, non-zero on failure."""
    rank, size = comm_rank_size()
    try:
        cfg = load_case_config(cfg_path)
    except (OSError, ValueError, TypeError) as exc:
        setup_logging(rank, level=get_log_level_from_env(default=log_level or "INFO"))
        logger.error("Failed to load case %s: %s", cfg_path, exc)
        return 2

    level = get_log_level_from_env(default=log_level or cfg.logging.level)
    setup_logging(rank, level=level, quiet_nonroot=cfg.logging.quiet_nonroot)
    if backend is not None:
        cfg.backend = AssemblyBackend(backend)

    comm = None
    if cfg.backend == AssemblyBackend.PETSC:
        bootstrap_mpi_before_petsc()
        from parallel.mpi_bootstrap import get_petsc

        comm = get_petsc().COMM_WORLD
        cfg.dofs.n_procs = size
        ranks = [rank]
    else:
        if size > 1:
            if is_root_rank():
                logger.error("backend=scipy requires MPI size==1 (got size=%d).", size)
            return 2
        ranks = list(range(cfg.dofs.n_procs))

    logger.info(
        "Case %s: dim=%d centering=%s backend=%s n_procs=%d",
        cfg.case_id,
        cfg.grid.dim,
        cfg.dofs.centering.value,
        cfg.backend.value,
        cfg.dofs.n_procs,
    )
    if dry_run:
        logger.info("Dry run: configuration loaded, no operators built.")
        return 0

    try:
        views = build_case_rank_views(cfg, ranks, comm=comm)
        for r, ops in zip(ranks, views):
            for name, (_, diag) in ops.items():
                logger.info("[rank %d] %s: %s", r, name, format_diag(diag))
    except (OperatorConfigurationError, AssemblyInvariantError) as exc:
        logger.error("Operator assembly failed: %s", exc)
        return 3
    return 0


def _parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[argparse.Namespace, list[str]]:
    parser = argparse.ArgumentParser(description="Build AMR operators for a case.")
    parser.add_argument("case_yaml", help="Path to case YAML file.")
    parser.add_argument(
        "--backend",
        choices=[b.value for b in AssemblyBackend],
        default=None,
        help="Override assembly backend (default: use YAML).",
    )
    parser.add_argument(
        "--dry_run",
        action="store_true",
        help="Load config only; skip operator assembly.",
    )
    args, unknown = parser.parse_known_args(argv)
    return args, list(unknown)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args, petsc_args = _parse_args(argv)
    # Prevent PETSc from parsing driver-specific CLI flags.
    sys.argv = [sys.argv[0]] + list(petsc_args)
    return run_case(str(Path(args.case_yaml)), backend=args.backend, dry_run=args.dry_run)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
