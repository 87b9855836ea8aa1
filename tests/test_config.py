from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.config import case_from_mapping, load_case, options_from_mapping  # noqa: E402
from core.errors import ConfigError  # noqa: E402
from core.logging_utils import get_log_level_from_env  # noqa: E402
from core.types import AssemblyOptions, PatternSpec  # noqa: E402


def _write(tmp_path: Path, text: str, name: str = "case.yaml") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_load_case_full(tmp_path):
    path = _write(
        tmp_path,
        """
case:
  id: lap
  title: demo
pattern:
  kind: laplace2d
  n: 4
partition:
  mode: counts
  counts: [10, 6]
assembly:
  mat_type: MPIAIJ
  check_partition: true
  options_prefix: lap
""",
    )
    case = load_case(path)
    assert case.case.id == "lap"
    assert case.pattern.n_unknowns() == 16
    assert case.partition.counts == [10, 6]
    assert case.assembly.mat_type == "mpiaij"
    assert case.assembly.options_prefix == "lap_"
    assert case.assembly.partition_checks_enabled()


def test_load_case_defaults_id_from_file_stem(tmp_path):
    path = _write(tmp_path, "pattern: {kind: laplace1d, n: 5}\n", name="tiny_case.yaml")
    case = load_case(path)
    assert case.case.id == "tiny_case"
    assert case.partition.mode == "even"
    assert case.assembly == AssemblyOptions()


def test_example_cases_load():
    for path in sorted((ROOT / "cases").glob("*.yaml")):
        case = load_case(path)
        assert case.case.id == path.stem


def test_unknown_keys_rejected():
    with pytest.raises(ConfigError, match="unknown top-level"):
        case_from_mapping({"pattern": {"kind": "laplace1d", "n": 3}, "solver": {}})
    with pytest.raises(ConfigError, match="assembly"):
        options_from_mapping({"mat_typ": "aij"})
    with pytest.raises(ConfigError, match="pattern"):
        case_from_mapping({"case": {"id": "x"}})


def test_invalid_values_rejected():
    with pytest.raises(ConfigError):
        AssemblyOptions(mat_type="dense")
    with pytest.raises(ConfigError):
        PatternSpec(kind="laplace3d", n=3)
    with pytest.raises(ConfigError):
        case_from_mapping({"pattern": {"kind": "laplace1d", "n": 3}, "partition": {"mode": "counts"}})
    with pytest.raises(ConfigError):
        case_from_mapping(
            {"pattern": {"kind": "laplace1d", "n": 3}, "partition": {"mode": "counts", "counts": [4, -1]}}
        )


def test_check_partition_env_fallback(monkeypatch):
    monkeypatch.delenv("MPIAIJ_CHECK_PARTITION", raising=False)
    assert not AssemblyOptions().partition_checks_enabled()
    monkeypatch.setenv("MPIAIJ_CHECK_PARTITION", "yes")
    assert AssemblyOptions().partition_checks_enabled()
    assert not AssemblyOptions(check_partition=False).partition_checks_enabled()


def test_log_level_from_env(monkeypatch):
    monkeypatch.delenv("MPIAIJ_LOG_LEVEL", raising=False)
    monkeypatch.delenv("MPIAIJ_DEBUG", raising=False)
    assert get_log_level_from_env() == logging.INFO
    monkeypatch.setenv("MPIAIJ_DEBUG", "1")
    assert get_log_level_from_env() == logging.DEBUG
    monkeypatch.setenv("MPIAIJ_LOG_LEVEL", "warning")
    assert get_log_level_from_env() == logging.WARNING
