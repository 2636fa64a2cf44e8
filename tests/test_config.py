from __future__ import annotations

from pathlib import Path

import pytest

from vessel.config import VesselConfig, load_config
from vessel.models import ConfigError


def test_missing_default_config_yields_empty_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("VESSEL_CONFIG", raising=False)
    assert load_config() == VesselConfig()


def test_explicit_config_must_exist(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "missing.yaml")


def test_config_env_var_points_at_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "conf" / "vessel.yaml"
    path.parent.mkdir()
    path.write_text("fifo_dir: /run/vessel/fifo\nstate_dir: ~/vessel-state\n", encoding="utf-8")
    monkeypatch.setenv("VESSEL_CONFIG", str(path))

    config = load_config()

    assert config.path == path.resolve()
    assert config.fifo_dir == "/run/vessel/fifo"
    assert config.resolved_state_dir() == Path("~/vessel-state").expanduser()
    assert config.resolved_state_dir("/override") == Path("/override")


def test_state_dir_falls_back_to_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VESSEL_STATE_DIR", "/var/lib/vessel")
    assert VesselConfig().resolved_state_dir() == Path("/var/lib/vessel")


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("- a\n- b\n", "root must be a mapping"),
        ("bogus: 1\n", "Unknown keys"),
        ("env:\n  1BAD: x\n", "not a valid environment variable name"),
        ("labels:\n  a: [1, 2]\n", "must be a scalar value"),
        ("snapshotter: 3\n", "snapshotter must be a string"),
        ("env: [\n", "Invalid YAML"),
    ],
)
def test_invalid_config_files_raise(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "vessel.yaml"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError, match=message):
        load_config(path)


def test_scalar_values_are_stringified(tmp_path: Path) -> None:
    path = tmp_path / "vessel.yaml"
    path.write_text("env:\n  DEBUG: true\n  WORKERS: 4\nlabels:\n  tier: gold\n", encoding="utf-8")
    config = load_config(path)
    assert config.env == {"DEBUG": "True", "WORKERS": "4"}
    assert config.labels == {"tier": "gold"}
