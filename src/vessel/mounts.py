from __future__ import annotations

import csv
from typing import Iterable

from vessel.models import MalformedMountString, MountSpec, UnsupportedMountOption

_FIELD_ALIASES = {
    "type": "type",
    "source": "source",
    "src": "source",
    "destination": "destination",
    "dst": "destination",
    "options": "options",
}


def parse_mount_flag(value: str) -> MountSpec:
    """Parse ``type=bind,source=/a,destination=/b,options=rbind:ro``.

    Tokens follow CSV quoting so values may contain commas when quoted.
    """
    try:
        records = list(csv.reader([value], strict=True))
    except csv.Error as exc:
        raise MalformedMountString(f"invalid mount specification {value!r}: {exc}") from exc
    if not records or not records[0]:
        raise MalformedMountString(f"invalid mount specification {value!r}: empty")

    fields: dict[str, object] = {}
    for token in records[0]:
        parts = token.split("=")
        if len(parts) != 2:
            raise MalformedMountString(
                f"invalid mount specification {value!r}: expected key=val, got {token!r}"
            )
        key, val = parts
        name = _FIELD_ALIASES.get(key)
        if name is None:
            raise UnsupportedMountOption(f"mount option {key!r} not supported")
        if name == "options":
            fields[name] = tuple(val.split(":"))
        else:
            fields[name] = val

    return MountSpec(**fields)  # type: ignore[arg-type]


def parse_mounts(values: Iterable[str]) -> tuple[MountSpec, ...]:
    return tuple(parse_mount_flag(value) for value in values)
