"""
Channels between the coordinator and its workers.

The work channel is bounded: the coordinator blocks sending once `max_buffer_size`
dispatches are waiting, and workers block receiving while it is empty. The status
channel is unbounded so that a worker never blocks on reporting, which would
otherwise deadlock against a coordinator blocked on a full work channel. Workers
send a `TaskStarted` when they pick up a dispatch and a `StatusReport` once it is
done.
"""

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import anyio

if TYPE_CHECKING:  # pragma: no cover
    from anyio.streams.memory import (
        MemoryObjectReceiveStream,
        MemoryObjectSendStream,
    )

    from .task import Task, TaskKey


@dataclass(frozen=True, slots=True)
class Outcome:
    succeeded: bool
    result: Any = None
    error: str | None = None
    transient: bool = False
    downstream: tuple["Task", ...] | None = None

    @classmethod
    def success(
        cls, result: Any = None, downstream: "tuple[Task, ...] | None" = None
    ) -> "Outcome":
        return cls(succeeded=True, result=result, downstream=downstream)

    @classmethod
    def failure(cls, error: BaseException | str, transient: bool = False) -> "Outcome":
        if isinstance(error, BaseException):
            error = f"{type(error).__name__}: {error}"

        return cls(succeeded=False, error=error, transient=transient)


@dataclass(frozen=True, slots=True)
class Dispatch:
    task: "Task"
    attempt: int = 1


@dataclass(frozen=True, slots=True)
class StatusReport:
    key: "TaskKey"
    attempt: int
    outcome: Outcome
    worker: int | None = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class TaskStarted:
    """Sent by a worker when it picks a dispatch off the work channel."""

    key: "TaskKey"
    attempt: int
    at: float
    worker: int | None = field(default=None, compare=False)


StatusMessage = StatusReport | TaskStarted


class Channels:
    def __init__(self, max_buffer_size: int) -> None:
        self.work_send: "MemoryObjectSendStream[Dispatch]"
        self.work_receive: "MemoryObjectReceiveStream[Dispatch]"
        self.work_send, self.work_receive = anyio.create_memory_object_stream[
            Dispatch
        ](max_buffer_size)

        self.status_send: "MemoryObjectSendStream[StatusMessage]"
        self.status_receive: "MemoryObjectReceiveStream[StatusMessage]"
        self.status_send, self.status_receive = anyio.create_memory_object_stream[
            StatusMessage
        ](math.inf)

    def worker_ends(
        self,
    ) -> tuple[
        "MemoryObjectReceiveStream[Dispatch]", "MemoryObjectSendStream[StatusMessage]"
    ]:
        """Clone the ends a worker needs; each worker closes its own clones."""
        return self.work_receive.clone(), self.status_send.clone()

    async def dispatch(self, task: "Task", attempt: int = 1) -> None:
        await self.work_send.send(Dispatch(task=task, attempt=attempt))

    def close(self) -> None:
        """Close the coordinator's ends; workers exit once their clones drain."""
        self.work_send.close()
        self.work_receive.close()
        self.status_send.close()
        self.status_receive.close()
