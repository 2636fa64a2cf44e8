from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from vessel.models import ConfigError

DEFAULT_CONFIG_FILE = "vessel.yaml"
DEFAULT_STATE_DIR = "~/.local/state/vessel"
CONFIG_ALLOWED_KEYS = {
    "state_dir",
    "fifo_dir",
    "snapshotter",
    "runtime",
    "platform",
    "log_uri",
    "env",
    "labels",
}
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class VesselConfig:
    path: Path | None = None
    state_dir: str | None = None
    fifo_dir: str | None = None
    snapshotter: str | None = None
    runtime: str | None = None
    platform: str | None = None
    log_uri: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)

    def resolved_state_dir(self, override: str | None = None) -> Path:
        raw = override or self.state_dir or os.environ.get("VESSEL_STATE_DIR")
        return Path(raw or DEFAULT_STATE_DIR).expanduser()


def _optional_str(value: Any, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string")
    trimmed = value.strip()
    return trimmed or None


def _string_map(value: Any, *, label: str, env_names: bool) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a mapping")
    out: dict[str, str] = {}
    for key, val in value.items():
        name = str(key)
        if env_names and not _ENV_NAME_RE.match(name):
            raise ConfigError(f"{label}.{name} is not a valid environment variable name")
        if not isinstance(val, (str, int, float, bool)):
            raise ConfigError(f"{label}.{name} must be a scalar value (str/int/float/bool)")
        out[name] = str(val)
    return out


def default_config_path() -> Path:
    env_path = os.environ.get("VESSEL_CONFIG", "").strip()
    raw = env_path or DEFAULT_CONFIG_FILE
    return Path(raw).expanduser().resolve()


def load_config(path: str | Path | None = None) -> VesselConfig:
    """Load run defaults from YAML.

    An explicit ``path`` must exist; the implicit default file is optional.
    """
    required = path is not None
    resolved = Path(path).expanduser().resolve() if path is not None else default_config_path()
    if not resolved.exists():
        if required:
            raise ConfigError(f"Config file not found: {resolved}")
        return VesselConfig()

    try:
        loaded = yaml.safe_load(resolved.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file root must be a mapping: {resolved}")

    unknown = sorted(str(key) for key in loaded if key not in CONFIG_ALLOWED_KEYS)
    if unknown:
        raise ConfigError(f"Unknown keys in {resolved}: {', '.join(unknown)}")

    return VesselConfig(
        path=resolved,
        state_dir=_optional_str(loaded.get("state_dir"), label="state_dir"),
        fifo_dir=_optional_str(loaded.get("fifo_dir"), label="fifo_dir"),
        snapshotter=_optional_str(loaded.get("snapshotter"), label="snapshotter"),
        runtime=_optional_str(loaded.get("runtime"), label="runtime"),
        platform=_optional_str(loaded.get("platform"), label="platform"),
        log_uri=_optional_str(loaded.get("log_uri"), label="log_uri"),
        env=_string_map(loaded.get("env"), label="env", env_names=True),
        labels=_string_map(loaded.get("labels"), label="labels", env_names=False),
    )
