"""Task I/O configuration: discard sink, log file, FIFOs or the terminal."""

from __future__ import annotations

import logging
import os
import select
import shutil
import sys
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO
from urllib.parse import unquote, urlparse

from vessel.models import InvalidArguments
from vessel.utils import sanitize_for_path

_log = logging.getLogger("vessel.cio")

IO_NULL = "null"
IO_LOG = "log"
IO_FIFO = "fifo"
IO_TERMINAL = "terminal"

_COPY_CHUNK = 32 * 1024
_COPY_JOIN_TIMEOUT_SEC = 2.0


def parse_log_uri(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme in ("", "file"):
        raw = unquote(parsed.path) if parsed.scheme else uri
        if not raw:
            raise InvalidArguments(f"log uri {uri!r} has no path")
        return Path(raw).expanduser()
    raise InvalidArguments(f"unsupported log uri scheme {parsed.scheme!r} in {uri!r}")


@dataclass(frozen=True)
class IOConfig:
    mode: str
    fifo_dir: str | None = None
    log_path: Path | None = None

    @classmethod
    def build(
        cls,
        *,
        null_io: bool,
        tty: bool,
        log_uri: str | None,
        fifo_dir: str | None,
    ) -> "IOConfig":
        if null_io:
            if tty:
                raise InvalidArguments("tty and null-io cannot be used together")
            return cls(mode=IO_NULL)
        if log_uri:
            if tty:
                raise InvalidArguments("tty and log-uri cannot be used together")
            return cls(mode=IO_LOG, log_path=parse_log_uri(log_uri))
        if tty:
            return cls(mode=IO_TERMINAL)
        return cls(mode=IO_FIFO, fifo_dir=fifo_dir)


def _copy_fd_to_stream(fd: int, stream: BinaryIO) -> None:
    try:
        while True:
            chunk = os.read(fd, _COPY_CHUNK)
            if not chunk:
                return
            stream.write(chunk)
            stream.flush()
    except (OSError, ValueError) as exc:
        _log.debug("output copy stopped: %s", exc)


def _copy_input(src: int, dst: int, wake: int) -> None:
    """Copy ``src`` into ``dst`` until EOF or until ``wake`` becomes readable."""
    try:
        while True:
            ready, _, _ = select.select([src, wake], [], [])
            if wake in ready:
                return
            chunk = os.read(src, _COPY_CHUNK)
            if not chunk:
                return
            os.write(dst, chunk)
    except OSError as exc:
        _log.debug("input copy stopped: %s", exc)
    finally:
        for fd in (dst, wake):
            try:
                os.close(fd)
            except OSError:
                pass


class FifoSet:
    """Named pipes carrying a task's stdin, stdout and stderr.

    Both ends are opened by this process before the task is spawned so that
    neither side blocks in ``open``. The task ends are handed to the task and
    released afterwards; the caller ends feed copier threads.
    """

    def __init__(self, directory: Path, *, owned: bool):
        self.directory = directory
        self.owned = owned
        self._task_fds: tuple[int, int, int] | None = None
        self._stdin_w: int | None = None
        self._stdout_r: int | None = None
        self._stderr_r: int | None = None
        self._copiers: list[threading.Thread] = []
        self._stdin_copier: threading.Thread | None = None
        self._wake_w: int | None = None

    @property
    def stdin(self) -> Path:
        return self.directory / "stdin"

    @property
    def stdout(self) -> Path:
        return self.directory / "stdout"

    @property
    def stderr(self) -> Path:
        return self.directory / "stderr"

    @classmethod
    def create(cls, root: str | None, task_id: str) -> "FifoSet":
        name = sanitize_for_path(task_id)
        if root:
            directory = Path(root).expanduser() / name
            directory.mkdir(parents=True, exist_ok=False)
        else:
            directory = Path(tempfile.mkdtemp(prefix=f"vessel-{name}-"))
        fifos = cls(directory, owned=True)
        try:
            for path in (fifos.stdin, fifos.stdout, fifos.stderr):
                os.mkfifo(path, 0o600)
        except OSError:
            fifos.close()
            raise
        return fifos

    def open_task_ends(self) -> tuple[int, int, int]:
        stdin_r = os.open(self.stdin, os.O_RDONLY | os.O_NONBLOCK)
        self._stdin_w = os.open(self.stdin, os.O_WRONLY)
        os.set_blocking(stdin_r, True)

        self._stdout_r = os.open(self.stdout, os.O_RDONLY | os.O_NONBLOCK)
        stdout_w = os.open(self.stdout, os.O_WRONLY)
        os.set_blocking(self._stdout_r, True)

        self._stderr_r = os.open(self.stderr, os.O_RDONLY | os.O_NONBLOCK)
        stderr_w = os.open(self.stderr, os.O_WRONLY)
        os.set_blocking(self._stderr_r, True)

        self._task_fds = (stdin_r, stdout_w, stderr_w)
        return self._task_fds

    def release_task_ends(self) -> None:
        fds, self._task_fds = self._task_fds, None
        for fd in fds or ():
            try:
                os.close(fd)
            except OSError:
                pass

    def attach(
        self,
        *,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        """Start copying between the caller's stdio and the FIFOs."""
        stdin = stdin if stdin is not None else _std_buffer(sys.stdin)
        stdout = stdout if stdout is not None else _std_buffer(sys.stdout)
        stderr = stderr if stderr is not None else _std_buffer(sys.stderr)

        if self._stdout_r is not None and stdout is not None:
            self._start_copier("stdout", _copy_fd_to_stream, self._stdout_r, stdout)
        if self._stderr_r is not None and stderr is not None:
            self._start_copier("stderr", _copy_fd_to_stream, self._stderr_r, stderr)
        if self._stdin_w is not None:
            stdin_w, self._stdin_w = self._stdin_w, None
            stdin_fd = _fileno(stdin)
            if stdin_fd is None:
                os.close(stdin_w)
            else:
                wake_r, self._wake_w = os.pipe()
                self._stdin_copier = self._start_copier(
                    "stdin", _copy_input, stdin_fd, stdin_w, wake_r
                )

    def _start_copier(self, name: str, target: object, *args: object) -> threading.Thread:
        thread = threading.Thread(
            target=target,  # type: ignore[arg-type]
            args=args,
            name=f"vessel-copy-{name}",
            daemon=True,
        )
        thread.start()
        if name != "stdin":
            self._copiers.append(thread)
        return thread

    def wait_output(self, timeout: float = _COPY_JOIN_TIMEOUT_SEC) -> None:
        for thread in self._copiers:
            thread.join(timeout)

    def stop_input(self, timeout: float = _COPY_JOIN_TIMEOUT_SEC) -> None:
        """Stop reading the caller's stdin on behalf of the task."""
        wake_w, self._wake_w = self._wake_w, None
        if wake_w is not None:
            try:
                os.write(wake_w, b"x")
            except OSError:
                pass
            finally:
                os.close(wake_w)
        copier, self._stdin_copier = self._stdin_copier, None
        if copier is not None:
            copier.join(timeout)

    def close(self) -> None:
        self.stop_input()
        self.release_task_ends()
        for attr in ("_stdin_w", "_stdout_r", "_stderr_r"):
            fd = getattr(self, attr)
            setattr(self, attr, None)
            if fd is None:
                continue
            try:
                os.close(fd)
            except OSError:
                pass
        if self.owned:
            shutil.rmtree(self.directory, ignore_errors=True)


def _std_buffer(stream: object) -> BinaryIO | None:
    if stream is None:
        return None
    return getattr(stream, "buffer", None)


def _fileno(stream: BinaryIO | None) -> int | None:
    if stream is None:
        return None
    try:
        return stream.fileno()
    except (OSError, ValueError):
        return None
