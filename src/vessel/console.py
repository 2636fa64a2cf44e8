"""Controlling-terminal handling for interactive runs."""

from __future__ import annotations

import contextlib
import logging
import os
import sys
import termios
import tty
from typing import Any, Callable, Iterator, Protocol

from vessel._logging import set_raw_terminal
from vessel.models import TerminalError

_log = logging.getLogger("vessel.console")


class Console(Protocol):
    fd: int

    def set_raw(self) -> None: ...

    def reset(self) -> None: ...

    def size(self) -> tuple[int, int]: ...


ConsoleFactory = Callable[[], Console]


class TerminalConsole:
    """A terminal file descriptor whose attributes can be restored."""

    def __init__(self, fd: int):
        self.fd = fd
        self._saved: list[Any] | None = None

    def set_raw(self) -> None:
        try:
            saved = termios.tcgetattr(self.fd)
            tty.setraw(self.fd, termios.TCSANOW)
        except (termios.error, OSError) as exc:
            raise TerminalError(f"failed to set terminal fd={self.fd} raw: {exc}") from exc
        if self._saved is None:
            self._saved = saved

    def reset(self) -> None:
        if self._saved is None:
            return
        saved, self._saved = self._saved, None
        try:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, saved)
        except (termios.error, OSError) as exc:
            _log.warning("Failed to restore terminal fd=%s: %s", self.fd, exc)

    def size(self) -> tuple[int, int]:
        try:
            size = os.get_terminal_size(self.fd)
        except OSError as exc:
            raise TerminalError(f"failed to read terminal size: {exc}") from exc
        return size.columns, size.lines


def current_console() -> TerminalConsole:
    """Return the first of stdin, stdout, stderr attached to a terminal."""
    for stream in (sys.stdin, sys.stdout, sys.stderr):
        if stream is None:
            continue
        try:
            fd = stream.fileno()
        except (OSError, ValueError):
            continue
        if os.isatty(fd):
            return TerminalConsole(fd)
    raise TerminalError("provided file is not a console")


@contextlib.contextmanager
def raw_console(factory: ConsoleFactory | None = None) -> Iterator[Console]:
    """Acquire the console in raw mode and always reset it on the way out."""
    acquire = factory or current_console
    console = acquire()
    try:
        console.set_raw()
        set_raw_terminal(True)
        yield console
    finally:
        set_raw_terminal(False)
        console.reset()
