"""Single-run lifecycle.

A run moves through these states::

    validated -> instance created -> task created -> (pid recorded)
              -> started -> attached waiting | detached -> exited/deleted

Cleanups registered along the way (console reset, task deletion, instance
removal) live on one ``ExitStack`` and unwind in reverse order on every exit
path.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from vessel.cio import IOConfig
from vessel.client import ExitStatusChannel, Instance, Task, WorkloadClient
from vessel.console import Console, ConsoleFactory, raw_console
from vessel.models import (
    ExitOutcome,
    ExitStatus,
    InstanceRequest,
    InvalidArguments,
    MountSpec,
    RunFlags,
    RunMode,
    RunRequest,
    TaskOptions,
    VesselError,
)
from vessel.mounts import parse_mounts
from vessel.signals import ResizeRelay, SignalForwarder, SignalSource
from vessel.utils import write_pid_file

_log = logging.getLogger("vessel.run")


def validate_run_args(positional: Sequence[str], flags: RunFlags) -> RunRequest:
    """Resolve positional arguments into a request, once.

    With ``--config`` the only positional is the id; otherwise the first two
    are the reference and the id and the rest is the command.
    """
    args = list(positional)
    if flags.config:
        if len(args) > 1:
            raise InvalidArguments(
                "ambiguous arguments with config file: "
                "with spec config file, only container id should be provided"
            )
        run_id = args[0] if args else ""
        mode = RunMode.WITH_CONFIG
        reference = None
        command: tuple[str, ...] = ()
    else:
        reference = args[0] if args else ""
        if not reference:
            raise InvalidArguments("image ref must be provided")
        run_id = args[1] if len(args) > 1 else ""
        mode = RunMode.WITH_REFERENCE
        command = tuple(args[2:])
    if not run_id:
        raise InvalidArguments("container id must be provided")
    request = RunRequest(
        mode=mode, id=run_id, reference=reference, args=command, flags=flags
    )
    # Surface mount and IO flag errors here, before any client exists.
    _prepare(request)
    return request


@dataclass(frozen=True)
class _PreparedRun:
    request: RunRequest
    mounts: tuple[MountSpec, ...]
    io: IOConfig

    def instance_request(self) -> InstanceRequest:
        flags = self.request.flags
        return InstanceRequest(
            id=self.request.id,
            mode=self.request.mode,
            reference=self.request.reference,
            config_path=Path(flags.config) if flags.config else None,
            args=self.request.args,
            mounts=self.mounts,
            snapshotter=flags.snapshotter,
            runtime=flags.runtime,
            platform=flags.platform,
            cgroup=flags.cgroup,
            env=flags.env,
            labels=dict(flags.labels),
            cwd=flags.cwd,
            tty=flags.tty,
            read_only=flags.read_only,
            memory_limit=flags.memory_limit,
        )


def _prepare(request: RunRequest) -> _PreparedRun:
    flags = request.flags
    return _PreparedRun(
        request=request,
        mounts=parse_mounts(flags.mounts),
        io=IOConfig.build(
            null_io=flags.null_io,
            tty=flags.tty,
            log_uri=flags.log_uri,
            fifo_dir=flags.fifo_dir,
        ),
    )


@dataclass
class AttachedTask:
    instance: Instance
    task: Task
    io: IOConfig
    console: Console | None = None


class _TaskDeletion:
    """Deletes a task at most once, and never while it may still be running."""

    def __init__(self, client: WorkloadClient, task: Task):
        self.client = client
        self.task = task
        self.done = False
        self.running = False

    def __call__(self) -> int:
        self.done = True
        return self.client.delete_task(self.task)

    def deferred(self) -> None:
        if self.done:
            return
        if self.running:
            _log.warning(
                "run_task_delete_skipped id=%s reason=exit_not_observed", self.task.id
            )
            return
        self.done = True
        try:
            self.client.delete_task(self.task)
        except VesselError as exc:
            _log.warning("run_task_delete_failed id=%s error=%s", self.task.id, exc)


def _remove_instance(client: WorkloadClient, instance: Instance) -> None:
    try:
        client.delete_instance(instance, cleanup_snapshot=True)
    except VesselError as exc:
        _log.warning("run_instance_remove_failed id=%s error=%s", instance.id, exc)
    else:
        _log.info("run_instance_removed id=%s", instance.id)


def run_container(
    request: RunRequest,
    client: WorkloadClient,
    *,
    console_factory: ConsoleFactory | None = None,
    signal_source: SignalSource | None = None,
) -> ExitOutcome:
    """Run one instance to completion, or until started when detaching.

    Failures raise ``VesselError`` subclasses. A workload exiting non-zero is
    not a failure: the returned outcome carries only its code.
    """
    flags = request.flags
    prepared = _prepare(request)

    with contextlib.ExitStack() as cleanups:
        console = None
        if flags.tty:
            console = cleanups.enter_context(raw_console(console_factory))

        instance = client.create_instance(prepared.instance_request())
        _log.info("run_instance_created id=%s mode=%s", instance.id, request.mode.value)
        if flags.rm and not flags.detach:
            cleanups.callback(_remove_instance, client, instance)

        task = client.create_task(
            instance,
            io=prepared.io,
            options=TaskOptions(checkpoint=flags.checkpoint, runtime=flags.runtime),
        )
        attached = AttachedTask(instance=instance, task=task, io=prepared.io, console=console)
        _log.info("run_task_created id=%s pid=%s io=%s", task.id, task.pid, prepared.io.mode)

        if flags.detach:
            _record_pid_and_start(client, task, flags.pid_file)
            return ExitOutcome(code=0, detached=True)

        deletion = _TaskDeletion(client, task)
        cleanups.callback(deletion.deferred)
        channel = client.wait_task(task)
        _record_pid_and_start(client, task, flags.pid_file)

        deletion.running = True
        status = _wait_attached(client, attached, channel, signal_source)
        deletion.running = False

        code = status.result()
        _log.info("run_task_exited id=%s code=%s", task.id, code)
        deletion()
        return ExitOutcome(code=code)


def _record_pid_and_start(client: WorkloadClient, task: Task, pid_file: str | None) -> None:
    if pid_file:
        try:
            write_pid_file(Path(pid_file), task.pid)
        except OSError as exc:
            raise VesselError(f"failed to write pid file {pid_file}: {exc}") from exc
    client.start_task(task)
    _log.info("run_task_started id=%s", task.id)


def _wait_attached(
    client: WorkloadClient,
    attached: AttachedTask,
    channel: ExitStatusChannel,
    signal_source: SignalSource | None,
) -> ExitStatus:
    relay: ResizeRelay | SignalForwarder
    if attached.console is not None:
        relay = ResizeRelay(client, attached.task, attached.console, source=signal_source)
    else:
        relay = SignalForwarder(client, attached.task, source=signal_source)
    with relay:
        return channel.get()
