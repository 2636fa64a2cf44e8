"""Centralized logging configuration for vessel."""

from __future__ import annotations

import logging
import os
from pathlib import Path

_STREAM_HANDLER_ID = "vessel_stream"
_FILE_HANDLER_ID = "vessel_file"
_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"


def _resolve_level(level: int | str | None) -> int:
    raw = level if level is not None else os.environ.get("VESSEL_LOG_LEVEL", "")
    if isinstance(raw, int):
        return raw
    name = raw.strip().upper()
    resolved = getattr(logging, name, None) if name else None
    if not isinstance(resolved, int):
        return logging.WARNING
    return resolved


def _find_handler(root: logging.Logger, handler_id: str) -> logging.Handler | None:
    for handler in root.handlers:
        if getattr(handler, "_vessel_handler_id", None) == handler_id:
            return handler
    return None


def _install(root: logging.Logger, handler: logging.Handler, handler_id: str) -> None:
    setattr(handler, "_vessel_handler_id", handler_id)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)


def setup_logging(*, level: int | str | None = None) -> None:
    """Configure the ``vessel`` logger.

    ``level`` (or ``VESSEL_LOG_LEVEL``) sets the stderr level, WARNING by
    default. ``VESSEL_LOG_FILE`` adds a file handler that records at least
    INFO so run lifecycle transitions are kept even when stderr is quiet.
    """
    root = logging.getLogger("vessel")
    stream_level = _resolve_level(level)

    stream = _find_handler(root, _STREAM_HANDLER_ID)
    if stream is None:
        stream = logging.StreamHandler()
        _install(root, stream, _STREAM_HANDLER_ID)
    stream.setLevel(stream_level)

    effective = stream_level
    file_handler = _find_handler(root, _FILE_HANDLER_ID)
    file_raw = os.environ.get("VESSEL_LOG_FILE", "").strip()
    if file_raw:
        file_path = Path(file_raw).expanduser().resolve()
        if (
            isinstance(file_handler, logging.FileHandler)
            and Path(file_handler.baseFilename).resolve() == file_path
        ):
            active: logging.Handler = file_handler
        else:
            if file_handler is not None:
                root.removeHandler(file_handler)
                file_handler.close()
            file_path.parent.mkdir(parents=True, exist_ok=True)
            active = logging.FileHandler(file_path, encoding="utf-8")
            _install(root, active, _FILE_HANDLER_ID)
        file_level = min(stream_level, logging.INFO)
        active.setLevel(file_level)
        effective = min(effective, file_level)
    elif file_handler is not None:
        root.removeHandler(file_handler)
        file_handler.close()

    root.setLevel(effective)


def set_raw_terminal(enabled: bool) -> None:
    """Switch stderr records to CRLF endings while the terminal is raw.

    Raw mode disables output post-processing, so a bare newline would not
    return the cursor to the first column.
    """
    stream = _find_handler(logging.getLogger("vessel"), _STREAM_HANDLER_ID)
    if isinstance(stream, logging.StreamHandler):
        stream.terminator = "\r\n" if enabled else "\n"
