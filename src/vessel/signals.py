"""Relays host signals and terminal resizes to an attached task."""

from __future__ import annotations

import logging
import queue
import signal
import threading
from types import FrameType
from typing import Any, Callable, Iterable, Protocol

from vessel.client import Task, WorkloadClient
from vessel.console import Console
from vessel.models import VesselError

_log = logging.getLogger("vessel.signals")

SignalHandler = Callable[[int], None]

_NEVER_FORWARDED = {"SIGKILL", "SIGSTOP", "SIGCHLD", "SIGPIPE", "SIGURG"}
# Synchronous faults belong to this process, not the task.
_FAULT_SIGNALS = {"SIGSEGV", "SIGBUS", "SIGFPE", "SIGILL", "SIGABRT"}


def forwardable_signals() -> list[int]:
    skipped = {
        int(getattr(signal, name))
        for name in _NEVER_FORWARDED | _FAULT_SIGNALS
        if hasattr(signal, name)
    }
    return sorted(
        int(signum) for signum in signal.valid_signals() if int(signum) not in skipped
    )


class SignalSource(Protocol):
    def subscribe(self, signals: Iterable[int], handler: SignalHandler) -> None: ...

    def unsubscribe(self) -> None: ...


class HostSignalSource:
    """Installs process signal handlers and restores the previous ones."""

    def __init__(self) -> None:
        self._previous: dict[int, Any] = {}

    def subscribe(self, signals: Iterable[int], handler: SignalHandler) -> None:
        if threading.current_thread() is not threading.main_thread():
            raise VesselError("signal handlers can only be installed from the main thread")

        def _on_signal(signum: int, _frame: FrameType | None) -> None:
            handler(signum)

        for signum in signals:
            try:
                self._previous[signum] = signal.signal(signum, _on_signal)
            except (OSError, ValueError) as exc:
                # Some real-time signals are reserved by the platform.
                _log.debug("Skipping signal %s: %s", signum, exc)

    def unsubscribe(self) -> None:
        previous, self._previous = self._previous, {}
        for signum, old in previous.items():
            signal.signal(signum, old if old is not None else signal.SIG_DFL)


class SignalForwarder:
    """Forward every catchable host signal to the task until closed.

    Handlers only enqueue; a worker thread performs the remote kill calls so
    that a slow client never runs inside a signal handler.
    """

    _STOP = object()

    def __init__(
        self,
        client: WorkloadClient,
        task: Task,
        *,
        source: SignalSource | None = None,
        signals: Iterable[int] | None = None,
    ):
        self.client = client
        self.task = task
        self.source = source or HostSignalSource()
        self.signals = list(signals) if signals is not None else forwardable_signals()
        self._pending: queue.SimpleQueue[object] = queue.SimpleQueue()
        self._worker: threading.Thread | None = None

    def _enqueue(self, signum: int) -> None:
        self._pending.put(signum)

    def _drain(self) -> None:
        while True:
            item = self._pending.get()
            if item is self._STOP:
                return
            signum = int(item)  # type: ignore[call-overload]
            _log.debug("forwarding signal %s to task %s", signum, self.task.id)
            try:
                self.client.kill_task(self.task, signum)
            except VesselError as exc:
                _log.error("forward signal %s to task %s: %s", signum, self.task.id, exc)

    def __enter__(self) -> "SignalForwarder":
        self._worker = threading.Thread(
            target=self._drain, name=f"vessel-signals-{self.task.id}", daemon=True
        )
        self._worker.start()
        try:
            self.source.subscribe(self.signals, self._enqueue)
        except VesselError as exc:
            _log.error("signal forwarding disabled for task %s: %s", self.task.id, exc)
            self._stop_worker()
        except Exception:
            self._stop_worker()
            raise
        return self

    def __exit__(self, *exc_info: object) -> None:
        try:
            self.source.unsubscribe()
        finally:
            self._stop_worker()

    def _stop_worker(self) -> None:
        if self._worker is None:
            return
        self._pending.put(self._STOP)
        self._worker.join()
        self._worker = None


class ResizeRelay:
    """Forward console size changes to the task while attached."""

    def __init__(
        self,
        client: WorkloadClient,
        task: Task,
        console: Console,
        *,
        source: SignalSource | None = None,
    ):
        self.client = client
        self.task = task
        self.console = console
        self.source = source or HostSignalSource()

    def resize(self) -> None:
        try:
            width, height = self.console.size()
            self.client.resize_task(self.task, width, height)
        except VesselError as exc:
            _log.error("console resize: %s", exc)

    def _on_resize(self, _signum: int) -> None:
        self.resize()

    def __enter__(self) -> "ResizeRelay":
        self.resize()
        winch = getattr(signal, "SIGWINCH", None)
        if winch is not None:
            try:
                self.source.subscribe([int(winch)], self._on_resize)
            except VesselError as exc:
                _log.error("console resize: %s", exc)
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.source.unsubscribe()
