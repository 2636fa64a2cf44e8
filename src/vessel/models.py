from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping


class VesselError(RuntimeError):
    """Base error for run failures."""


class ConfigError(VesselError):
    """Raised when a defaults file is invalid."""


class InvalidArguments(VesselError):
    """Raised when positional arguments or flags cannot describe a run."""


class MountParseError(VesselError):
    """Raised when a ``--mount`` value cannot be parsed."""


class MalformedMountString(MountParseError):
    pass


class UnsupportedMountOption(MountParseError):
    pass


class TerminalError(VesselError):
    """Raised when the controlling terminal cannot be acquired or made raw."""


class RemoteCallError(VesselError):
    """Raised by workload clients when an instance or task operation fails."""


class ExitCodeError(VesselError):
    """Carries a workload's non-zero exit code up to the CLI layer."""

    def __init__(self, code: int):
        super().__init__("")
        self.code = code


class RunMode(enum.Enum):
    WITH_CONFIG = "config"
    WITH_REFERENCE = "reference"


@dataclass(frozen=True)
class MountSpec:
    type: str = ""
    source: str = ""
    destination: str = ""
    options: tuple[str, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "source": self.source,
            "destination": self.destination,
            "options": list(self.options),
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "MountSpec":
        return cls(
            type=str(payload.get("type", "")),
            source=str(payload.get("source", "")),
            destination=str(payload.get("destination", "")),
            options=tuple(str(item) for item in payload.get("options", []) or []),
        )


@dataclass(frozen=True)
class RunFlags:
    rm: bool = False
    null_io: bool = False
    log_uri: str | None = None
    detach: bool = False
    fifo_dir: str | None = None
    cgroup: str | None = None
    platform: str | None = None
    tty: bool = False
    config: str | None = None
    pid_file: str | None = None
    checkpoint: str | None = None
    mounts: tuple[str, ...] = ()
    snapshotter: str | None = None
    runtime: str | None = None
    env: tuple[str, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    read_only: bool = False
    memory_limit: int | None = None


@dataclass(frozen=True)
class RunRequest:
    mode: RunMode
    id: str
    reference: str | None = None
    args: tuple[str, ...] = ()
    flags: RunFlags = field(default_factory=RunFlags)


@dataclass(frozen=True)
class InstanceRequest:
    """Everything a workload client needs to materialize an instance."""

    id: str
    mode: RunMode
    reference: str | None
    config_path: Path | None
    args: tuple[str, ...]
    mounts: tuple[MountSpec, ...]
    snapshotter: str | None = None
    runtime: str | None = None
    platform: str | None = None
    cgroup: str | None = None
    env: tuple[str, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    tty: bool = False
    read_only: bool = False
    memory_limit: int | None = None


@dataclass(frozen=True)
class TaskOptions:
    checkpoint: str | None = None
    runtime: str | None = None


@dataclass(frozen=True)
class ExitStatus:
    """One exit-status event as delivered on a task's wait channel."""

    code: int
    exited_at: str | None = None
    error: str | None = None

    def result(self) -> int:
        if self.error is not None:
            raise RemoteCallError(f"failed to decode exit status: {self.error}")
        return self.code


@dataclass(frozen=True)
class ExitOutcome:
    """Result of a run that did not fail.

    Diagnostics travel as ``VesselError`` exceptions, so an outcome only
    carries the workload's code, or ``detached`` when no code was observed.
    """

    code: int = 0
    detached: bool = False

    @property
    def ok(self) -> bool:
        return self.code == 0

    def raise_for_status(self) -> None:
        if self.code != 0:
            raise ExitCodeError(self.code)
