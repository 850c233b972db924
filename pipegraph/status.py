from collections.abc import Iterator, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .exceptions import InvalidTransitionError
from .task import TaskKey


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    READY = "READY"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.BLOCKED})

# RUNNING -> READY is the only way back, and only for a retried transient failure
_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY, TaskStatus.BLOCKED}),
    TaskStatus.READY: frozenset({TaskStatus.RUNNING, TaskStatus.BLOCKED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.READY}
    ),
    TaskStatus.SUCCEEDED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.BLOCKED: frozenset(),
}


class StatusRecord(Mapping[TaskKey, TaskStatus]):
    """
    Status of every task the scheduler has admitted. Only the coordinator mutates
    it; workers report outcomes through the status channel instead.
    """

    def __init__(self) -> None:
        self._statuses: dict[TaskKey, TaskStatus] = {}

    def __getitem__(self, key: TaskKey) -> TaskStatus:
        return self._statuses[key]

    def __iter__(self) -> Iterator[TaskKey]:
        return iter(self._statuses)

    def __len__(self) -> int:
        return len(self._statuses)

    def admit(self, key: TaskKey, status: TaskStatus = TaskStatus.PENDING) -> None:
        if key in self._statuses:
            raise InvalidTransitionError(key, self._statuses[key], status)

        self._statuses[key] = status

    def transition(self, key: TaskKey, status: TaskStatus) -> None:
        current = self._statuses[key]
        if status not in _TRANSITIONS[current]:
            raise InvalidTransitionError(key, current, status)

        self._statuses[key] = status


class RunSummary(BaseModel):
    succeeded: set[TaskKey] = Field(default_factory=set)
    failed: dict[TaskKey, str] = Field(default_factory=dict)
    blocked: set[TaskKey] = Field(default_factory=set)
    results: dict[TaskKey, Any] = Field(default_factory=dict)
    attempts: dict[TaskKey, int] = Field(default_factory=dict)
    discovery_errors: dict[TaskKey, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.blocked

    def __str__(self) -> str:
        return (
            f"{len(self.succeeded)} succeeded, {len(self.failed)} failed,"
            f" {len(self.blocked)} blocked"
        )
