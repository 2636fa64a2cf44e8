from __future__ import annotations

import json
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from vessel.models import MountSpec, RemoteCallError
from vessel.utils import append_jsonl, atomic_write_text, read_jsonl, sanitize_for_path, utc_now_iso


@dataclass(frozen=True)
class InstanceRecord:
    id: str
    mode: str
    reference: str | None
    args: tuple[str, ...]
    env: tuple[str, ...] = ()
    cwd: str | None = None
    mounts: tuple[MountSpec, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)
    snapshotter: str | None = None
    runtime: str | None = None
    platform: str | None = None
    cgroup: str | None = None
    tty: bool = False
    read_only: bool = False
    memory_limit: int | None = None
    created_at: str = ""

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mode": self.mode,
            "reference": self.reference,
            "args": list(self.args),
            "env": list(self.env),
            "cwd": self.cwd,
            "mounts": [mount.to_json() for mount in self.mounts],
            "labels": dict(self.labels),
            "snapshotter": self.snapshotter,
            "runtime": self.runtime,
            "platform": self.platform,
            "cgroup": self.cgroup,
            "tty": self.tty,
            "read_only": self.read_only,
            "memory_limit": self.memory_limit,
            "created_at": self.created_at,
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "InstanceRecord":
        memory_limit = payload.get("memory_limit")
        return cls(
            id=str(payload["id"]),
            mode=str(payload["mode"]),
            reference=payload.get("reference"),
            args=tuple(str(arg) for arg in payload.get("args", [])),
            env=tuple(str(item) for item in payload.get("env", [])),
            cwd=payload.get("cwd"),
            mounts=tuple(MountSpec.from_json(item) for item in payload.get("mounts", [])),
            labels={str(k): str(v) for k, v in dict(payload.get("labels", {})).items()},
            snapshotter=payload.get("snapshotter"),
            runtime=payload.get("runtime"),
            platform=payload.get("platform"),
            cgroup=payload.get("cgroup"),
            tty=bool(payload.get("tty", False)),
            read_only=bool(payload.get("read_only", False)),
            memory_limit=int(memory_limit) if memory_limit is not None else None,
            created_at=str(payload.get("created_at", "")),
        )


class InstanceStore:
    """Instance records kept as JSON files under a state directory."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    @property
    def instances_dir(self) -> Path:
        return self.state_dir / "instances"

    def instance_dir(self, instance_id: str) -> Path:
        return self.instances_dir / sanitize_for_path(instance_id)

    def record_path(self, instance_id: str) -> Path:
        return self.instance_dir(instance_id) / "instance.json"

    def events_path(self, instance_id: str) -> Path:
        return self.instance_dir(instance_id) / "events.jsonl"

    def snapshot_dir(self, instance_id: str) -> Path:
        return self.instance_dir(instance_id) / "snapshot"

    def exists(self, instance_id: str) -> bool:
        return self.record_path(instance_id).exists()

    def create(self, record: InstanceRecord) -> None:
        if self.exists(record.id):
            raise RemoteCallError(f"instance {record.id!r}: already exists")
        self.snapshot_dir(record.id).mkdir(parents=True, exist_ok=True)
        atomic_write_text(
            self.record_path(record.id),
            json.dumps(record.to_json(), indent=2, sort_keys=True) + "\n",
        )
        self.append_event(record.id, "instance_created")

    def load(self, instance_id: str) -> InstanceRecord:
        path = self.record_path(instance_id)
        if not path.exists():
            raise RemoteCallError(f"instance {instance_id!r}: not found")
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RemoteCallError(f"instance {instance_id!r}: unreadable record: {exc}") from exc
        return InstanceRecord.from_json(payload)

    def remove(self, instance_id: str, *, cleanup_snapshot: bool) -> None:
        if not self.exists(instance_id):
            raise RemoteCallError(f"instance {instance_id!r}: not found")
        if cleanup_snapshot:
            shutil.rmtree(self.instance_dir(instance_id), ignore_errors=True)
            return
        self.record_path(instance_id).unlink(missing_ok=True)
        self.events_path(instance_id).unlink(missing_ok=True)

    def list_records(self) -> list[InstanceRecord]:
        if not self.instances_dir.exists():
            return []
        records: list[InstanceRecord] = []
        for path in sorted(self.instances_dir.glob("*/instance.json")):
            payload = json.loads(path.read_text(encoding="utf-8"))
            records.append(InstanceRecord.from_json(payload))
        return records

    def append_event(self, instance_id: str, event: str, **fields: Any) -> None:
        payload: dict[str, Any] = {"event": event, "ts": utc_now_iso(), "id": instance_id}
        payload.update(fields)
        append_jsonl(self.events_path(instance_id), payload)

    def last_event(self, instance_id: str) -> dict[str, Any] | None:
        last: dict[str, Any] | None = None
        for record in read_jsonl(self.events_path(instance_id)):
            last = record
        return last
