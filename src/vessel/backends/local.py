"""Workload client backed by host processes.

Instances are JSON records in an ``InstanceStore``. A task is a process
spawned through a small gate program that waits on a pipe before exec'ing
the workload, so the task has a pid as soon as it is created while the
workload itself only runs once ``start_task`` releases the gate.
"""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

import yaml

from vessel.backends.store import InstanceRecord, InstanceStore
from vessel.cio import IO_FIFO, IO_LOG, IO_NULL, IO_TERMINAL, FifoSet, IOConfig
from vessel.client import ExitStatusChannel
from vessel.models import (
    ExitStatus,
    InstanceRequest,
    InvalidArguments,
    MountSpec,
    RemoteCallError,
    RunMode,
    RunRequest,
    TaskOptions,
)
from vessel.utils import utc_now_iso

_log = logging.getLogger("vessel.backends.local")

_GATE_EXIT_RELEASED_WITHOUT_START = 125
_GATE_PROGRAM = "\n".join(
    [
        "import os, sys",
        "fd = int(sys.argv[1])",
        "limit = int(sys.argv[2])",
        "if not os.read(fd, 1):",
        f"    sys.exit({_GATE_EXIT_RELEASED_WITHOUT_START})",
        "os.close(fd)",
        "if limit > 0:",
        "    import resource",
        "    resource.setrlimit(resource.RLIMIT_AS, (limit, limit))",
        "import signal",
        "for name in ('SIGPIPE', 'SIGXFSZ'):",
        "    if hasattr(signal, name):",
        "        signal.signal(getattr(signal, name), signal.SIG_DFL)",
        "try:",
        "    os.execvp(sys.argv[3], sys.argv[3:])",
        "except OSError as exc:",
        "    sys.stderr.write(f'vessel: exec {sys.argv[3]}: {exc}\\n')",
        "    sys.exit(127)",
    ]
)


def exit_code_from_returncode(rc: int) -> int:
    if rc < 0:
        return 128 - rc
    return rc


def pid_alive(pid: int) -> bool:
    """Whether ``pid`` names a live process. Zombies count as exited."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    try:
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
    except OSError:
        return True
    fields = stat.rsplit(")", 1)[-1].split()
    return not fields or fields[0] != "Z"


def check_detached_io(request: RunRequest) -> None:
    """Reject detached runs whose FIFO output only this process would copy."""
    flags = request.flags
    if flags.detach and not (flags.null_io or flags.log_uri or flags.tty):
        raise InvalidArguments(
            "detached runs need --null-io or --log-uri with the local backend"
        )


@dataclass
class LocalInstance:
    id: str
    record: InstanceRecord


@dataclass
class LocalTask:
    id: str
    instance: LocalInstance
    process: subprocess.Popen[bytes]
    own_group: bool
    gate_fd: int | None
    fifos: FifoSet | None = None
    log_handle: IO[bytes] | None = None
    started: bool = False
    status: ExitStatus | None = None
    _status_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @property
    def pid(self) -> int:
        return self.process.pid

    def reap(self) -> ExitStatus:
        rc = self.process.wait()
        with self._status_lock:
            if self.status is None:
                self.status = ExitStatus(
                    code=exit_code_from_returncode(rc), exited_at=utc_now_iso()
                )
            return self.status


def load_runtime_config(path: Path) -> dict[str, Any]:
    """Read ``process.args``, ``process.env``, ``process.cwd`` and ``mounts``."""
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise RemoteCallError(f"failed to load runtime config {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise RemoteCallError(f"runtime config root must be a mapping: {path}")
    process = loaded.get("process") or {}
    if not isinstance(process, dict):
        raise RemoteCallError(f"runtime config 'process' must be a mapping: {path}")
    args = process.get("args") or []
    env = process.get("env") or []
    mounts = loaded.get("mounts") or []
    if not isinstance(args, list) or not isinstance(env, list) or not isinstance(mounts, list):
        raise RemoteCallError(f"runtime config args, env and mounts must be lists: {path}")
    return {
        "args": tuple(str(arg) for arg in args),
        "env": tuple(str(item) for item in env),
        "cwd": process.get("cwd"),
        "mounts": tuple(MountSpec.from_json(item) for item in mounts),
    }


class LocalWorkloadClient:
    name = "local"

    def __init__(self, *, state_dir: Path):
        self.store = InstanceStore(state_dir)
        self._tasks: dict[str, LocalTask] = {}

    def create_instance(self, request: InstanceRequest) -> LocalInstance:
        args = request.args
        env = request.env
        cwd = request.cwd
        mounts = request.mounts
        if request.mode is RunMode.WITH_CONFIG:
            if request.config_path is None:
                raise RemoteCallError(f"instance {request.id!r}: no runtime config provided")
            runtime_config = load_runtime_config(request.config_path)
            args = args or runtime_config["args"]
            env = runtime_config["env"] + env
            cwd = cwd or runtime_config["cwd"]
            mounts = runtime_config["mounts"] + mounts
        elif cwd is None and request.reference and Path(request.reference).is_dir():
            cwd = str(Path(request.reference).resolve())
        if not args:
            raise RemoteCallError(f"instance {request.id!r}: no process args provided")

        record = InstanceRecord(
            id=request.id,
            mode=request.mode.value,
            reference=request.reference,
            args=tuple(args),
            env=tuple(env),
            cwd=cwd,
            mounts=tuple(mounts),
            labels=dict(request.labels),
            snapshotter=request.snapshotter,
            runtime=request.runtime,
            platform=request.platform,
            cgroup=request.cgroup,
            tty=request.tty,
            read_only=request.read_only,
            memory_limit=request.memory_limit,
            created_at=utc_now_iso(),
        )
        try:
            self.store.create(record)
        except OSError as exc:
            raise RemoteCallError(f"instance {request.id!r}: {exc}") from exc
        _log.info("local_instance_created id=%s args=%s", record.id, list(record.args))
        return LocalInstance(id=record.id, record=record)

    def delete_instance(self, instance: LocalInstance, *, cleanup_snapshot: bool = False) -> None:
        task = self._tasks.get(instance.id)
        if task is not None and task.process.poll() is None:
            raise RemoteCallError(f"instance {instance.id!r}: task is still running")
        self.store.remove(instance.id, cleanup_snapshot=cleanup_snapshot)
        self._tasks.pop(instance.id, None)

    def _child_env(self, record: InstanceRecord) -> dict[str, str]:
        env = os.environ.copy()
        for item in record.env:
            key, sep, value = item.partition("=")
            if sep:
                env[key] = value
        env["VESSEL_INSTANCE_ID"] = record.id
        env["VESSEL_SNAPSHOT_DIR"] = str(self.store.snapshot_dir(record.id))
        return env

    def create_task(
        self, instance: LocalInstance, *, io: IOConfig, options: TaskOptions
    ) -> LocalTask:
        if options.checkpoint:
            raise RemoteCallError("checkpoint restore is not supported by the local backend")
        if instance.id in self._tasks:
            raise RemoteCallError(f"task {instance.id!r}: already exists")
        record = instance.record
        if record.cwd and not Path(record.cwd).is_dir():
            raise RemoteCallError(f"task {instance.id!r}: working directory {record.cwd} not found")

        fifos: FifoSet | None = None
        log_handle: IO[bytes] | None = None
        stdio: tuple[Any, Any, Any] = (None, None, None)
        try:
            if io.mode == IO_NULL:
                stdio = (subprocess.DEVNULL, subprocess.DEVNULL, subprocess.DEVNULL)
            elif io.mode == IO_LOG:
                if io.log_path is None:
                    raise RemoteCallError(f"task {instance.id!r}: log io without a log path")
                io.log_path.parent.mkdir(parents=True, exist_ok=True)
                log_handle = io.log_path.open("ab")
                stdio = (subprocess.DEVNULL, log_handle, log_handle)
            elif io.mode == IO_FIFO:
                fifos = FifoSet.create(io.fifo_dir, instance.id)
                stdio = fifos.open_task_ends()
            elif io.mode != IO_TERMINAL:
                raise RemoteCallError(f"unsupported io mode {io.mode!r}")
        except OSError as exc:
            if fifos is not None:
                fifos.close()
            if log_handle is not None:
                log_handle.close()
            raise RemoteCallError(f"task {instance.id!r}: failed to set up io: {exc}") from exc

        gate_r, gate_w = os.pipe()
        limit = record.memory_limit or 0
        own_group = io.mode != IO_TERMINAL
        try:
            process = subprocess.Popen(
                [sys.executable, "-c", _GATE_PROGRAM, str(gate_r), str(limit), *record.args],
                stdin=stdio[0],
                stdout=stdio[1],
                stderr=stdio[2],
                cwd=record.cwd,
                env=self._child_env(record),
                pass_fds=(gate_r,),
                start_new_session=own_group,
            )
        except Exception as exc:
            os.close(gate_w)
            if fifos is not None:
                fifos.close()
            if log_handle is not None:
                log_handle.close()
            raise RemoteCallError(f"Failed to spawn task for instance {instance.id}: {exc}") from exc
        finally:
            os.close(gate_r)

        if fifos is not None:
            fifos.release_task_ends()
            fifos.attach()
        task = LocalTask(
            id=instance.id,
            instance=instance,
            process=process,
            own_group=own_group,
            gate_fd=gate_w,
            fifos=fifos,
            log_handle=log_handle,
        )
        self._tasks[instance.id] = task
        self.store.append_event(instance.id, "task_created", pid=process.pid, io=io.mode)
        return task

    def start_task(self, task: LocalTask) -> None:
        if task.started or task.gate_fd is None:
            raise RemoteCallError(f"task {task.id!r}: already started")
        gate_fd, task.gate_fd = task.gate_fd, None
        try:
            os.write(gate_fd, b"1")
        except OSError as exc:
            raise RemoteCallError(f"task {task.id!r}: failed to start: {exc}") from exc
        finally:
            os.close(gate_fd)
        task.started = True
        self.store.append_event(task.id, "task_started", pid=task.pid)

    def wait_task(self, task: LocalTask) -> ExitStatusChannel:
        channel: ExitStatusChannel = queue.Queue(maxsize=1)

        def _wait() -> None:
            status = task.reap()
            channel.put(status)

        threading.Thread(target=_wait, name=f"vessel-wait-{task.id}", daemon=True).start()
        return channel

    def _close_gate(self, task: LocalTask) -> None:
        if task.gate_fd is None:
            return
        gate_fd, task.gate_fd = task.gate_fd, None
        try:
            os.close(gate_fd)
        except OSError:
            pass

    def delete_task(self, task: LocalTask) -> int:
        if self._tasks.get(task.id) is not task:
            raise RemoteCallError(f"task {task.id!r}: not found")
        if task.process.poll() is None:
            if task.started:
                raise RemoteCallError(f"task {task.id!r}: must be stopped before deletion")
            # Closing the gate makes the waiting program exit without exec.
            self._close_gate(task)
        status = task.reap()
        if task.fifos is not None:
            task.fifos.wait_output()
            task.fifos.close()
        if task.log_handle is not None:
            task.log_handle.close()
        del self._tasks[task.id]
        if self.store.exists(task.id):
            self.store.append_event(task.id, "task_deleted", code=status.code)
        return status.code

    def _signal_process_tree(self, task: LocalTask, signum: int) -> None:
        process = task.process
        if process.poll() is not None:
            return

        if task.own_group and os.name == "posix":
            try:
                os.killpg(os.getpgid(process.pid), signum)
                return
            except ProcessLookupError:
                return
            except OSError:
                pass

        try:
            process.send_signal(signum)
        except ProcessLookupError:
            return

    def kill_task(self, task: LocalTask, signum: int) -> None:
        try:
            self._signal_process_tree(task, signum)
        except OSError as exc:
            raise RemoteCallError(f"task {task.id!r}: signal {signum}: {exc}") from exc

    def resize_task(self, task: LocalTask, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise RemoteCallError(f"task {task.id!r}: invalid size {width}x{height}")
        # The task shares this process's terminal, so the kernel already
        # delivers SIGWINCH to it.
        _log.debug("local_task_resize id=%s width=%s height=%s", task.id, width, height)

    def close(self) -> None:
        for task in list(self._tasks.values()):
            if not task.started:
                self._close_gate(task)

    def instance_status(self, instance_id: str) -> str:
        task = self._tasks.get(instance_id)
        if task is not None:
            return "running" if task.process.poll() is None else "stopped"
        last = self.store.last_event(instance_id) or {}
        if last.get("event") == "task_started":
            # Started by another vessel process, which only recorded the pid.
            pid = last.get("pid")
            if isinstance(pid, int) and not pid_alive(pid):
                return "stopped"
        return {
            "instance_created": "created",
            "task_created": "created",
            "task_started": "started",
            "task_deleted": "stopped",
        }.get(str(last.get("event")), "unknown")
