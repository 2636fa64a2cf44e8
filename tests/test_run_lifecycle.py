from __future__ import annotations

import queue
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

from vessel.cio import IO_FIFO, IO_NULL, IO_TERMINAL, IOConfig
from vessel.models import (
    ExitCodeError,
    ExitOutcome,
    ExitStatus,
    InstanceRequest,
    InvalidArguments,
    MalformedMountString,
    RemoteCallError,
    RunFlags,
    RunMode,
    TaskOptions,
    TerminalError,
)
from vessel.run import run_container, validate_run_args


@dataclass
class _FakeInstance:
    id: str


@dataclass
class _FakeTask:
    id: str
    pid: int = 4242


class _FakeClient:
    def __init__(
        self,
        *,
        exit_status: ExitStatus | None = None,
        fail: dict[str, Exception] | None = None,
        on_start: Callable[[], None] | None = None,
    ) -> None:
        self.calls: list[str] = []
        self.exit_status = exit_status or ExitStatus(code=0)
        self.fail = fail or {}
        self.on_start = on_start
        self.instance_request: InstanceRequest | None = None
        self.io: IOConfig | None = None
        self.task_options: TaskOptions | None = None
        self.cleanup_snapshot: bool | None = None

    def _record(self, name: str) -> None:
        self.calls.append(name)
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    def create_instance(self, request: InstanceRequest) -> _FakeInstance:
        self._record("create_instance")
        self.instance_request = request
        return _FakeInstance(request.id)

    def delete_instance(self, instance: _FakeInstance, *, cleanup_snapshot: bool = False) -> None:
        self.cleanup_snapshot = cleanup_snapshot
        self._record("delete_instance")

    def create_task(
        self, instance: _FakeInstance, *, io: IOConfig, options: TaskOptions
    ) -> _FakeTask:
        self._record("create_task")
        self.io = io
        self.task_options = options
        return _FakeTask(instance.id)

    def start_task(self, task: _FakeTask) -> None:
        self._record("start_task")
        if self.on_start is not None:
            self.on_start()

    def wait_task(self, task: _FakeTask) -> "queue.Queue[ExitStatus]":
        self._record("wait_task")
        channel: queue.Queue[ExitStatus] = queue.Queue(maxsize=1)
        channel.put(self.exit_status)
        return channel

    def delete_task(self, task: _FakeTask) -> int:
        self._record("delete_task")
        return self.exit_status.code

    def kill_task(self, task: _FakeTask, signum: int) -> None:
        self.calls.append(f"kill:{signum}")

    def resize_task(self, task: _FakeTask, width: int, height: int) -> None:
        self.calls.append(f"resize:{width}x{height}")

    def close(self) -> None:
        self.calls.append("close")


class _FakeSignalSource:
    def __init__(self, fire: Iterable[int] = ()) -> None:
        self.fire = list(fire)
        self.subscribed: list[int] = []
        self.unsubscribed = 0

    def subscribe(self, signals: Iterable[int], handler: Callable[[int], None]) -> None:
        self.subscribed = list(signals)
        for signum in self.fire:
            handler(signum)

    def unsubscribe(self) -> None:
        self.unsubscribed += 1


class _FakeConsole:
    fd = 0

    def __init__(self, *, fail_raw: bool = False) -> None:
        self.fail_raw = fail_raw
        self.resets = 0

    def set_raw(self) -> None:
        if self.fail_raw:
            raise TerminalError("provided file is not a console")

    def reset(self) -> None:
        self.resets += 1

    def size(self) -> tuple[int, int]:
        return 120, 40


def _request(*positional: str, **flags: Any):
    return validate_run_args(list(positional), RunFlags(**flags))


def test_attached_rm_run_deletes_task_then_instance() -> None:
    client = _FakeClient()
    source = _FakeSignalSource()

    outcome = run_container(
        _request("img", "c1", "true", rm=True), client, signal_source=source
    )

    assert outcome == ExitOutcome(code=0)
    assert client.calls == [
        "create_instance",
        "create_task",
        "wait_task",
        "start_task",
        "delete_task",
        "delete_instance",
    ]
    assert client.cleanup_snapshot is True
    assert source.unsubscribed == 1


def test_detached_null_io_run_returns_after_start() -> None:
    client = _FakeClient()
    source = _FakeSignalSource()

    outcome = run_container(
        _request("img", "c1", null_io=True, detach=True, rm=True),
        client,
        signal_source=source,
    )

    assert outcome.detached is True
    assert outcome.code == 0
    assert client.calls == ["create_instance", "create_task", "start_task"]
    assert client.io is not None and client.io.mode == IO_NULL
    assert source.subscribed == []


def test_nonzero_exit_is_carried_without_message() -> None:
    client = _FakeClient(exit_status=ExitStatus(code=3))

    outcome = run_container(_request("img", "c1"), client, signal_source=_FakeSignalSource())

    assert outcome == ExitOutcome(code=3)
    assert client.calls.count("delete_task") == 1
    with pytest.raises(ExitCodeError) as excinfo:
        outcome.raise_for_status()
    assert excinfo.value.code == 3
    assert str(excinfo.value) == ""


def test_raw_mode_failure_issues_no_remote_calls() -> None:
    client = _FakeClient()
    console = _FakeConsole(fail_raw=True)

    with pytest.raises(TerminalError):
        run_container(
            _request("img", "c1", tty=True, rm=True),
            client,
            console_factory=lambda: console,
        )

    assert client.calls == []
    assert console.resets == 1


def test_malformed_mount_fails_before_remote_calls() -> None:
    client = _FakeClient()

    with pytest.raises(MalformedMountString):
        run_container(_request("img", "c1", mounts=("type=bind,src",)), client)

    assert client.calls == []


def test_tty_with_null_io_is_rejected_before_console() -> None:
    client = _FakeClient()
    console = _FakeConsole()

    with pytest.raises(InvalidArguments, match="tty and null-io"):
        run_container(
            _request("img", "c1", tty=True, null_io=True),
            client,
            console_factory=lambda: console,
        )

    assert client.calls == []
    assert console.resets == 0


def test_start_failure_runs_deferred_cleanups() -> None:
    client = _FakeClient(fail={"start_task": RemoteCallError("start failed")})

    with pytest.raises(RemoteCallError, match="start failed"):
        run_container(_request("img", "c1", rm=True), client, signal_source=_FakeSignalSource())

    assert client.calls == [
        "create_instance",
        "create_task",
        "wait_task",
        "start_task",
        "delete_task",
        "delete_instance",
    ]


def test_task_creation_failure_only_removes_instance() -> None:
    client = _FakeClient(fail={"create_task": RemoteCallError("no task")})

    with pytest.raises(RemoteCallError, match="no task"):
        run_container(_request("img", "c1", rm=True), client)

    assert client.calls == ["create_instance", "create_task", "delete_instance"]


def test_instance_creation_failure_registers_no_cleanup() -> None:
    client = _FakeClient(fail={"create_instance": RemoteCallError("exists")})

    with pytest.raises(RemoteCallError, match="exists"):
        run_container(_request("img", "c1", rm=True), client)

    assert client.calls == ["create_instance"]


def test_task_delete_failure_overrides_successful_exit() -> None:
    client = _FakeClient(fail={"delete_task": RemoteCallError("delete failed")})

    with pytest.raises(RemoteCallError, match="delete failed"):
        run_container(_request("img", "c1", rm=True), client, signal_source=_FakeSignalSource())

    assert client.calls.count("delete_task") == 1
    assert client.calls[-1] == "delete_instance"


def test_instance_removal_failure_is_not_escalated() -> None:
    client = _FakeClient(fail={"delete_instance": RemoteCallError("busy")})

    outcome = run_container(
        _request("img", "c1", rm=True), client, signal_source=_FakeSignalSource()
    )

    assert outcome.ok
    assert client.calls[-1] == "delete_instance"


def test_exit_status_decode_error_is_fatal() -> None:
    client = _FakeClient(exit_status=ExitStatus(code=0, error="truncated event"))

    with pytest.raises(RemoteCallError, match="truncated event"):
        run_container(_request("img", "c1"), client, signal_source=_FakeSignalSource())

    assert client.calls.count("delete_task") == 1


def test_pid_file_is_written_before_start(tmp_path: Path) -> None:
    pid_file = tmp_path / "run" / "task.pid"
    seen: list[str] = []
    client = _FakeClient(on_start=lambda: seen.append(pid_file.read_text()))

    run_container(
        _request("img", "c1", pid_file=str(pid_file)),
        client,
        signal_source=_FakeSignalSource(),
    )

    assert seen == ["4242"]


def test_pid_file_failure_is_fatal_and_cleans_up(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    client = _FakeClient()

    with pytest.raises(Exception, match="pid file"):
        run_container(
            _request("img", "c1", rm=True, pid_file=str(blocker / "task.pid")),
            client,
        )

    assert "start_task" not in client.calls
    assert client.calls[-2:] == ["delete_task", "delete_instance"]


def test_signals_are_forwarded_while_attached() -> None:
    client = _FakeClient()
    source = _FakeSignalSource(fire=[int(signal.SIGTERM), int(signal.SIGINT)])

    run_container(_request("img", "c1"), client, signal_source=source)

    kills = [call for call in client.calls if call.startswith("kill:")]
    assert kills == [f"kill:{int(signal.SIGTERM)}", f"kill:{int(signal.SIGINT)}"]
    assert client.calls.index(kills[-1]) < client.calls.index("delete_task")
    assert int(signal.SIGKILL) not in source.subscribed
    assert source.unsubscribed == 1


def test_tty_run_relays_resize_and_resets_console() -> None:
    client = _FakeClient()
    console = _FakeConsole()
    source = _FakeSignalSource(fire=[int(signal.SIGWINCH)])

    outcome = run_container(
        _request("img", "c1", "sh", tty=True),
        client,
        console_factory=lambda: console,
        signal_source=source,
    )

    assert outcome.ok
    assert client.io is not None and client.io.mode == IO_TERMINAL
    assert [call for call in client.calls if call.startswith("resize:")] == [
        "resize:120x40",
        "resize:120x40",
    ]
    assert not any(call.startswith("kill:") for call in client.calls)
    assert console.resets == 1


def test_instance_request_carries_parsed_options() -> None:
    client = _FakeClient()

    run_container(
        _request(
            "docker.io/library/alpine:latest",
            "c1",
            "echo",
            "hi",
            mounts=("type=bind,src=/a,dst=/b,options=rbind:ro",),
            snapshotter="overlayfs",
            fifo_dir="/run/fifo",
            checkpoint=None,
            labels={"team": "infra"},
        ),
        client,
        signal_source=_FakeSignalSource(),
    )

    request = client.instance_request
    assert request is not None
    assert request.mode is RunMode.WITH_REFERENCE
    assert request.reference == "docker.io/library/alpine:latest"
    assert request.args == ("echo", "hi")
    assert request.mounts[0].options == ("rbind", "ro")
    assert request.snapshotter == "overlayfs"
    assert request.labels == {"team": "infra"}
    assert client.io == IOConfig(mode=IO_FIFO, fifo_dir="/run/fifo")


def test_validate_run_args_reference_mode() -> None:
    request = _request("img", "c1", "ls", "-la")
    assert request.mode is RunMode.WITH_REFERENCE
    assert request.id == "c1"
    assert request.args == ("ls", "-la")


def test_validate_run_args_config_mode() -> None:
    request = _request("c1", config="/etc/spec.json")
    assert request.mode is RunMode.WITH_CONFIG
    assert request.reference is None
    assert request.id == "c1"


@pytest.mark.parametrize(
    ("positional", "flags", "message"),
    [
        ((), {}, "image ref must be provided"),
        (("img",), {}, "container id must be provided"),
        ((), {"config": "spec.json"}, "container id must be provided"),
        (("c1", "extra"), {"config": "spec.json"}, "ambiguous arguments with config file"),
    ],
)
def test_validate_run_args_rejects_bad_positionals(
    positional: tuple[str, ...], flags: dict[str, Any], message: str
) -> None:
    with pytest.raises(InvalidArguments, match=message):
        _request(*positional, **flags)
