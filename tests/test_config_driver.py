"""
Case YAML loading, logging helpers and the operator driver.

Tests:
1. Full case YAML parses into CaseConfig
2. Missing/invalid sections raise with the offending key
3. Log level resolution from the environment
4. Rank views: every enabled operator per rank, subdomains partitioned
   across ranks, restriction scaling over all ranks' prolongation rows
5. run_case / main return codes (success, dry run, bad config)
"""

from __future__ import annotations

import logging
import textwrap
from pathlib import Path

import numpy as np
import pytest
import scipy.sparse as sp

from assembly.kernels import KernelType
from core.config import CaseConfig, load_case_config
from core.logging_utils import format_diag, get_log_level_from_env
from core.types import AssemblyBackend, Centering, OperatorConfigurationError
from driver.build_operators import build_case_operators, build_case_rank_views, main, run_case

DEMO_CASE = Path(__file__).resolve().parent.parent / "cases" / "demo_2d.yaml"


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "case.yaml"
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


def _raw(**sections):
    raw = {"grid": {"domain_upper": [3, 3], "x_upper": [1.0, 1.0]}}
    raw.update(sections)
    return raw


def test_demo_case_loads():
    cfg = load_case_config(DEMO_CASE)
    assert cfg.case_id == "demo_2d"
    assert cfg.grid.dim == 2
    assert cfg.grid.refine.ratio == (2, 2)
    assert cfg.dofs.centering == Centering.SIDE
    assert cfg.interp.kernel == KernelType.IB_4
    assert len(cfg.interp.markers) == 3
    assert cfg.asm.enabled and cfg.asm.overlap_size == (1, 1)
    assert cfg.prolongation.enabled
    assert cfg.laplace.bc[1].b == pytest.approx(0.5)
    assert cfg.backend == AssemblyBackend.SCIPY


def test_defaults_and_disabled_sections():
    cfg = CaseConfig.from_dict(_raw(), default_id="tiny")
    assert cfg.case_id == "tiny"
    assert cfg.grid.domain_lower == (0, 0)
    assert cfg.dofs.centering == Centering.CELL
    assert cfg.laplace.enabled
    assert cfg.laplace.bc[0].a == 1.0 and cfg.laplace.bc[0].b == 0.0
    assert not cfg.interp.enabled
    assert not cfg.asm.enabled
    assert not cfg.prolongation.enabled


@pytest.mark.parametrize(
    "raw, match",
    [
        ({}, "grid"),
        ({"grid": {"domain_upper": [3]}}, "dim"),
        (_raw(dofs={"centering": "node"}), "dofs.centering"),
        (_raw(dofs={"centering": "side", "depth": 2}), "dofs.depth"),
        (_raw(laplace={"bc": "periodic"}), "laplace.bc"),
        (_raw(prolongation={"ao_offset": 0}), "requires grid.refine"),
        (_raw(asm={"box_size": [0, 2]}), "asm.box_size"),
        (_raw(interp={"markers": [[0.5]]}), "interp.markers"),
    ],
)
def test_invalid_config_raises(raw, match):
    with pytest.raises(ValueError, match=match):
        CaseConfig.from_dict(raw)


def test_log_level_from_env(monkeypatch):
    monkeypatch.delenv("AMROPS_LOG_LEVEL", raising=False)
    monkeypatch.delenv("AMROPS_PETSC_DEBUG", raising=False)
    assert get_log_level_from_env("WARNING") == logging.WARNING
    monkeypatch.setenv("AMROPS_PETSC_DEBUG", "yes")
    assert get_log_level_from_env("WARNING") == logging.DEBUG
    monkeypatch.setenv("AMROPS_LOG_LEVEL", "error")
    assert get_log_level_from_env("WARNING") == logging.ERROR
    monkeypatch.setenv("AMROPS_LOG_LEVEL", "15")
    assert get_log_level_from_env() == 15


def test_format_diag():
    assert format_diag({"op": "lap", "nnz_total": 5}) == "op=lap nnz_total=5"


def test_build_case_rank_views():
    cfg = load_case_config(DEMO_CASE)
    ranks = list(range(cfg.dofs.n_procs))
    views = build_case_rank_views(cfg, ranks)
    totals = []
    nonoverlap_sets = []
    for rank, ops in zip(ranks, views):
        assert set(ops) == {"laplace", "interp", "asm", "prolongation", "restriction_scaling"}
        lap, diag = ops["laplace"]
        assert diag["rank"] == rank
        assert lap.getSize()[0] == lap.getSize()[1]
        interp, _ = ops["interp"]
        assert interp.getSize()[0] == 2 * len(cfg.interp.markers)
        (is_overlap, is_nonoverlap), asm_diag = ops["asm"]
        assert len(is_overlap) == len(is_nonoverlap) == asm_diag["n_subdomains"] > 0
        lo, hi = lap.getOwnershipRange()
        for s in is_nonoverlap:
            assert s.min() >= lo and s.max() < hi
        nonoverlap_sets.extend(is_nonoverlap)
        P, _ = ops["prolongation"]
        L, _ = ops["restriction_scaling"]
        assert L.size == P.col_range[1] - P.col_range[0]
        totals.append(np.diff(lap.csr.indptr).sum())
    assert all(t > 0 for t in totals)

    # the ranks' subdomains partition the level's DOFs
    n_total = views[0]["laplace"][0].getSize()[0]
    assert np.array_equal(np.sort(np.concatenate(nonoverlap_sets)), np.arange(n_total))

    # scaling of the rank views equals the scaling of the stacked operator
    P_all = sp.vstack([ops["prolongation"][0].csr for ops in views]).tocsr()
    norms = np.asarray(abs(P_all).sum(axis=0)).ravel()
    expected = np.where(norms > 0.0, 1.0 / np.where(norms > 0.0, norms, 1.0), 0.0)
    L_all = np.concatenate([ops["restriction_scaling"][0] for ops in views])
    assert np.allclose(L_all, expected)
    assert np.count_nonzero(L_all) > 0


def test_scipy_rank_views_need_every_rank():
    cfg = load_case_config(DEMO_CASE)
    with pytest.raises(OperatorConfigurationError):
        build_case_rank_views(cfg, [0])


def test_interp_requires_side_centering():
    cfg = CaseConfig.from_dict(_raw(interp={"markers": [[0.5, 0.5]]}))
    with pytest.raises(OperatorConfigurationError):
        build_case_operators(cfg)


def test_run_case_return_codes(tmp_path):
    assert run_case(str(DEMO_CASE)) == 0
    assert run_case(str(DEMO_CASE), dry_run=True) == 0
    bad = _write(
        tmp_path,
        """
        grid:
          domain_upper: [3, 3]
        prolongation:
          ao_offset: 0
        """,
    )
    assert run_case(str(bad)) == 2
    assert run_case(str(tmp_path / "missing.yaml")) == 2


def test_run_case_reports_assembly_errors(tmp_path):
    path = _write(
        tmp_path,
        """
        grid:
          domain_upper: [3, 3]
        dofs:
          ghost_width: 0
        """,
    )
    assert run_case(str(path)) == 3


def test_main_ignores_unknown_flags():
    assert main([str(DEMO_CASE), "--dry_run", "-ksp_view"]) == 0
