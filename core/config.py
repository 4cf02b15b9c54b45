"""
Case configuration: YAML -> slotted dataclasses.

Top-level sections: case, grid, dofs, laplace, interp, asm, prolongation,
backend, logging. Every section except `grid` is optional.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

import yaml

from assembly.kernels import KernelType
from core.types import AssemblyBackend, Centering


def _coerce_enum(enum_cls: type[Enum], value: Any, where: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            allowed = [e.value for e in enum_cls]
            raise ValueError(f"{where}: invalid value {value!r}, allowed={allowed}")
    raise TypeError(f"{where}: expected str or {enum_cls.__name__}, got {type(value).__name__}")


def _int_tuple(value: Any, where: str, dim: Optional[int] = None) -> Tuple[int, ...]:
    if isinstance(value, int) and dim is not None:
        return (int(value),) * dim
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"{where}: expected a list of ints, got {type(value).__name__}")
    out = tuple(int(v) for v in value)
    if dim is not None and len(out) != dim:
        raise ValueError(f"{where}: expected {dim} entries, got {len(out)}")
    return out


def _float_tuple(value: Any, where: str, dim: int) -> Tuple[float, ...]:
    if not isinstance(value, (list, tuple)) or len(value) != dim:
        raise ValueError(f"{where}: expected a list of {dim} numbers, got {value!r}")
    return tuple(float(v) for v in value)


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key, None) or {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{key}: expected a mapping, got {type(value).__name__}")
    return value


@dataclass(slots=True)
class RefineConfig:
    boxes: List[Tuple[Tuple[int, ...], Tuple[int, ...]]]
    ratio: Tuple[int, ...]

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, dim: int, where: str) -> "RefineConfig":
        raw_boxes = d.get("boxes", None)
        if not raw_boxes:
            raise ValueError(f"{where}.boxes: at least one coarse box is required")
        boxes = []
        for k, b in enumerate(raw_boxes):
            if not isinstance(b, (list, tuple)) or len(b) != 2:
                raise ValueError(f"{where}.boxes[{k}]: expected [lower, upper]")
            boxes.append(
                (
                    _int_tuple(b[0], f"{where}.boxes[{k}].lower", dim),
                    _int_tuple(b[1], f"{where}.boxes[{k}].upper", dim),
                )
            )
        ratio = _int_tuple(d.get("ratio", 2), f"{where}.ratio", dim)
        if min(ratio) < 1:
            raise ValueError(f"{where}.ratio: must be positive, got {ratio}")
        return cls(boxes=boxes, ratio=ratio)


@dataclass(slots=True)
class GridConfig:
    domain_lower: Tuple[int, ...]
    domain_upper: Tuple[int, ...]
    x_lower: Tuple[float, ...]
    x_upper: Tuple[float, ...]
    patch_size: Optional[Tuple[int, ...]] = None
    refine: Optional[RefineConfig] = None

    @property
    def dim(self) -> int:
        return len(self.domain_lower)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where: str) -> "GridConfig":
        if "domain_upper" not in d:
            raise ValueError(f"{where}.domain_upper is required")
        domain_upper = _int_tuple(d["domain_upper"], f"{where}.domain_upper")
        dim = len(domain_upper)
        if dim not in (2, 3):
            raise ValueError(f"{where}: only 2-D and 3-D grids are supported, got dim={dim}")
        domain_lower = _int_tuple(d.get("domain_lower", [0] * dim), f"{where}.domain_lower", dim)
        if any(hi < lo for lo, hi in zip(domain_lower, domain_upper)):
            raise ValueError(f"{where}: domain_upper must be >= domain_lower")
        x_lower = _float_tuple(d.get("x_lower", [0.0] * dim), f"{where}.x_lower", dim)
        x_upper = _float_tuple(d.get("x_upper", [1.0] * dim), f"{where}.x_upper", dim)
        if any(hi <= lo for lo, hi in zip(x_lower, x_upper)):
            raise ValueError(f"{where}: x_upper must exceed x_lower")
        raw_ps = d.get("patch_size", None)
        patch_size = None if raw_ps is None else _int_tuple(raw_ps, f"{where}.patch_size", dim)
        raw_refine = d.get("refine", None)
        refine = None if raw_refine is None else RefineConfig.from_dict(raw_refine, dim=dim, where=f"{where}.refine")
        return cls(
            domain_lower=domain_lower,
            domain_upper=domain_upper,
            x_lower=x_lower,
            x_upper=x_upper,
            patch_size=patch_size,
            refine=refine,
        )


@dataclass(slots=True)
class DofConfig:
    centering: Centering = Centering.CELL
    depth: int = 1
    ghost_width: int = 2
    n_procs: int = 1

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where: str) -> "DofConfig":
        centering = _coerce_enum(Centering, d.get("centering", "cell"), f"{where}.centering")
        depth = int(d.get("depth", 1))
        ghost_width = int(d.get("ghost_width", 2))
        n_procs = int(d.get("n_procs", 1))
        if depth < 1:
            raise ValueError(f"{where}.depth: must be >= 1, got {depth}")
        if centering == Centering.SIDE and depth != 1:
            raise ValueError(f"{where}.depth: side-centered DOFs have depth 1, got {depth}")
        if ghost_width < 0:
            raise ValueError(f"{where}.ghost_width: must be >= 0, got {ghost_width}")
        if n_procs < 1:
            raise ValueError(f"{where}.n_procs: must be >= 1, got {n_procs}")
        return cls(centering=centering, depth=depth, ghost_width=ghost_width, n_procs=n_procs)


@dataclass(slots=True)
class RobinConfig:
    a: float = 1.0
    b: float = 0.0

    @classmethod
    def from_dict(cls, d: Any, *, where: str) -> "RobinConfig":
        if isinstance(d, str):
            kind = d.strip().lower()
            if kind == "dirichlet":
                return cls(1.0, 0.0)
            if kind == "neumann":
                return cls(0.0, 1.0)
            raise ValueError(f"{where}: invalid boundary kind {d!r}, allowed=['dirichlet', 'neumann']")
        if not isinstance(d, Mapping):
            raise TypeError(f"{where}: expected a mapping or 'dirichlet'/'neumann'")
        return cls(a=float(d.get("a", 1.0)), b=float(d.get("b", 0.0)))


@dataclass(slots=True)
class LaplaceConfig:
    enabled: bool = True
    c: float = 0.0
    d: float = 1.0
    data_time: float = 0.0
    bc: List[RobinConfig] = field(default_factory=lambda: [RobinConfig()])

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where: str) -> "LaplaceConfig":
        raw_bc = d.get("bc", "dirichlet")
        items = raw_bc if isinstance(raw_bc, list) else [raw_bc]
        bc = [RobinConfig.from_dict(b, where=f"{where}.bc[{k}]") for k, b in enumerate(items)]
        return cls(
            enabled=bool(d.get("enabled", True)),
            c=float(d.get("c", 0.0)),
            d=float(d.get("d", 1.0)),
            data_time=float(d.get("data_time", 0.0)),
            bc=bc,
        )


@dataclass(slots=True)
class InterpConfig:
    enabled: bool = False
    kernel: KernelType = KernelType.IB_4
    markers: List[Tuple[float, ...]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, dim: int, where: str) -> "InterpConfig":
        kernel = _coerce_enum(KernelType, d.get("kernel", KernelType.IB_4.value), f"{where}.kernel")
        markers = [
            _float_tuple(m, f"{where}.markers[{k}]", dim) for k, m in enumerate(d.get("markers", []) or [])
        ]
        return cls(enabled=bool(d.get("enabled", bool(markers))), kernel=kernel, markers=markers)


@dataclass(slots=True)
class AsmConfig:
    enabled: bool = False
    box_size: Tuple[int, ...] = ()
    overlap_size: Tuple[int, ...] = ()

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, dim: int, where: str) -> "AsmConfig":
        box_size = _int_tuple(d.get("box_size", 4), f"{where}.box_size", dim)
        overlap_size = _int_tuple(d.get("overlap_size", 0), f"{where}.overlap_size", dim)
        if min(box_size) < 1:
            raise ValueError(f"{where}.box_size: must be positive, got {box_size}")
        if min(overlap_size) < 0:
            raise ValueError(f"{where}.overlap_size: must be >= 0, got {overlap_size}")
        return cls(enabled=bool(d.get("enabled", True)), box_size=box_size, overlap_size=overlap_size)


@dataclass(slots=True)
class ProlongationConfig:
    enabled: bool = False
    ao_offset: int = 0

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where: str) -> "ProlongationConfig":
        ao_offset = int(d.get("ao_offset", 0))
        if ao_offset < 0:
            raise ValueError(f"{where}.ao_offset: must be >= 0, got {ao_offset}")
        return cls(enabled=bool(d.get("enabled", True)), ao_offset=ao_offset)


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    quiet_nonroot: bool = True

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where: str) -> "LoggingConfig":
        return cls(level=str(d.get("level", "INFO")), quiet_nonroot=bool(d.get("quiet_nonroot", True)))


@dataclass(slots=True)
class CaseConfig:
    case_id: str
    grid: GridConfig
    dofs: DofConfig
    laplace: LaplaceConfig
    interp: InterpConfig
    asm: AsmConfig
    prolongation: ProlongationConfig
    backend: AssemblyBackend = AssemblyBackend.SCIPY
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], *, default_id: str = "case") -> "CaseConfig":
        if not isinstance(raw, Mapping):
            raise TypeError(f"case config: expected a mapping, got {type(raw).__name__}")
        if "grid" not in raw:
            raise ValueError("case config: 'grid' section is required")
        grid = GridConfig.from_dict(_section(raw, "grid"), where="grid")
        dim = grid.dim
        prolongation = ProlongationConfig.from_dict(_section(raw, "prolongation"), where="prolongation")
        if "prolongation" not in raw:
            prolongation.enabled = False
        if prolongation.enabled and grid.refine is None:
            raise ValueError("prolongation: requires grid.refine")
        asm = AsmConfig.from_dict(_section(raw, "asm"), dim=dim, where="asm")
        if "asm" not in raw:
            asm.enabled = False
        return cls(
            case_id=str(_section(raw, "case").get("id", default_id)),
            grid=grid,
            dofs=DofConfig.from_dict(_section(raw, "dofs"), where="dofs"),
            laplace=LaplaceConfig.from_dict(_section(raw, "laplace"), where="laplace"),
            interp=InterpConfig.from_dict(_section(raw, "interp"), dim=dim, where="interp"),
            asm=asm,
            prolongation=prolongation,
            backend=_coerce_enum(AssemblyBackend, raw.get("backend", "scipy"), "backend"),
            logging=LoggingConfig.from_dict(_section(raw, "logging"), where="logging"),
        )


def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def load_case_config(cfg_path: str | Path) -> CaseConfig:
    """Load a case YAML file into CaseConfig."""
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(_read_yaml_text(cfg_file)) or {}
    return CaseConfig.from_dict(raw, default_id=cfg_file.stem)
