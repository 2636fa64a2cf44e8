from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Any, Iterator, Mapping

from vessel.models import InvalidArguments

_log = logging.getLogger("vessel.utils")


def stable_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def utc_now_iso() -> str:
    return (
        dt.datetime.now(dt.timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(path)
    except Exception:
        # Leave no partial temp file behind.
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def write_pid_file(path: Path, pid: int) -> None:
    atomic_write_text(path, f"{pid}")


def read_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    if not path.exists():
        return iter(())

    def _iter() -> Iterator[dict[str, Any]]:
        with path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    _log.warning(
                        "Skipping corrupt JSONL line %d in %s",
                        line_number,
                        path,
                    )

    return _iter()


def append_jsonl(path: Path, record: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(stable_json(dict(record)) + "\n")
    except OSError as exc:
        _log.error("Failed to append JSONL record to %s: %s", path, exc)
        raise


def sanitize_for_path(value: str) -> str:
    safe = []
    for char in value:
        if char.isalnum() or char in ("-", "_", "."):
            safe.append(char)
        else:
            safe.append("-")
    out = "".join(safe).strip("-")
    return out or "x"


def parse_key_values(items: list[str] | tuple[str, ...], *, what: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise InvalidArguments(f"invalid {what} {item!r}: expected KEY=VALUE")
        out[key] = value
    return out


def read_env_file(path: Path) -> list[str]:
    lines: list[str] = []
    with path.open("r", encoding="utf-8") as handle:
        for raw in handle:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            lines.append(line)
    return lines
