from __future__ import annotations

import queue
from typing import Protocol

from vessel.cio import IOConfig
from vessel.models import ExitStatus, InstanceRequest, TaskOptions

ExitStatusChannel = queue.Queue[ExitStatus]


class Instance(Protocol):
    id: str


class Task(Protocol):
    id: str

    @property
    def pid(self) -> int: ...


class WorkloadClient(Protocol):
    """Operations a workload-management backend exposes to a run.

    Implementations raise ``RemoteCallError`` for every failed operation and
    never retry on their own.
    """

    def create_instance(self, request: InstanceRequest) -> Instance: ...

    def delete_instance(
        self, instance: Instance, *, cleanup_snapshot: bool = False
    ) -> None: ...

    def create_task(
        self, instance: Instance, *, io: IOConfig, options: TaskOptions
    ) -> Task: ...

    def start_task(self, task: Task) -> None: ...

    def wait_task(self, task: Task) -> ExitStatusChannel: ...

    def delete_task(self, task: Task) -> int: ...

    def kill_task(self, task: Task, signum: int) -> None: ...

    def resize_task(self, task: Task, width: int, height: int) -> None: ...

    def close(self) -> None: ...
