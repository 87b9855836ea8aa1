"""
YAML loader for matrix cases.

Expected layout::

    case:      {id: lap2d, title: "..."}
    pattern:   {kind: laplace2d, n: 16}
    partition: {mode: even}            # or {mode: counts, counts: [...]}
    assembly:  {mat_type: mpiaij, check_partition: true}
"""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path
from typing import Any, Mapping, Optional, Type, TypeVar

import yaml

from core.errors import ConfigError
from core.types import AssemblyOptions, CaseMeta, MatrixCase, PartitionSpec, PatternSpec

T = TypeVar("T")

_TOP_LEVEL = {"case", "pattern", "partition", "assembly"}


def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def _build(cls: Type[T], raw: Optional[Mapping[str, Any]], where: str) -> T:
    raw = dict(raw or {})
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ConfigError(f"{where}: unknown keys {unknown}, allowed={sorted(allowed)}")
    try:
        return cls(**raw)
    except TypeError as exc:
        raise ConfigError(f"{where}: {exc}") from exc


def options_from_mapping(raw: Optional[Mapping[str, Any]]) -> AssemblyOptions:
    """Build AssemblyOptions from a plain mapping (YAML ``assembly`` block)."""
    return _build(AssemblyOptions, raw, "assembly")


def case_from_mapping(raw: Mapping[str, Any], *, default_id: str = "case") -> MatrixCase:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"case YAML must be a mapping, got {type(raw).__name__}.")
    unknown = sorted(set(raw) - _TOP_LEVEL)
    if unknown:
        raise ConfigError(f"unknown top-level keys {unknown}, allowed={sorted(_TOP_LEVEL)}")
    if "pattern" not in raw:
        raise ConfigError("case YAML requires a 'pattern' block.")

    case_raw = dict(raw.get("case") or {})
    case_raw.setdefault("id", default_id)
    return MatrixCase(
        case=_build(CaseMeta, case_raw, "case"),
        pattern=_build(PatternSpec, raw["pattern"], "pattern"),
        partition=_build(PartitionSpec, raw.get("partition"), "partition"),
        assembly=options_from_mapping(raw.get("assembly")),
    )


def load_case(cfg_path: str | Path) -> MatrixCase:
    """Load a case YAML file into MatrixCase with nested dataclasses."""
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(_read_yaml_text(cfg_file)) or {}
    return case_from_mapping(raw, default_id=cfg_file.stem)
