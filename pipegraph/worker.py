import logging
from typing import TYPE_CHECKING

import anyio
from anyio import BrokenWorkerProcess

from .channel import Outcome, StatusReport, TaskStarted
from .exceptions import TaskTimeoutError

if TYPE_CHECKING:  # pragma: no cover
    from anyio.streams.memory import (
        MemoryObjectReceiveStream,
        MemoryObjectSendStream,
    )

    from .channel import Dispatch, StatusMessage
    from .task import Backend

logger = logging.getLogger(__name__)


class Worker:
    """
    One execution slot. Takes one dispatch at a time from the work channel, runs it
    and reports the outcome on the status channel. Workers hold no scheduling state
    and never look at the dependency graph.
    """

    def __init__(
        self,
        index: int,
        work: "MemoryObjectReceiveStream[Dispatch]",
        status: "MemoryObjectSendStream[StatusMessage]",
        backend: "Backend" = "thread",
        task_timeout: float | None = None,
    ) -> None:
        self.index = index
        self.work = work
        self.status = status
        self.backend = backend
        self.task_timeout = task_timeout

    async def run(self) -> None:
        async with self.work, self.status:
            async for dispatch in self.work:
                # starts the coordinator's watchdog for this attempt
                await self.status.send(
                    TaskStarted(
                        key=dispatch.task.key,
                        attempt=dispatch.attempt,
                        at=anyio.current_time(),
                        worker=self.index,
                    )
                )
                outcome = await self.execute(dispatch)
                await self.status.send(
                    StatusReport(
                        key=dispatch.task.key,
                        attempt=dispatch.attempt,
                        outcome=outcome,
                        worker=self.index,
                    )
                )

        logger.debug("Worker %d stopped.", self.index)

    async def execute(self, dispatch: "Dispatch") -> Outcome:
        task = dispatch.task
        logger.debug(
            "Worker %d running %s (attempt %d).", self.index, task, dispatch.attempt
        )

        try:
            with anyio.move_on_after(self.task_timeout) as scope:
                result = await task.execute(self.backend)
        except BrokenWorkerProcess as e:
            # the worker process died mid-task
            return Outcome.failure(e, transient=True)
        except Exception as e:
            logger.debug("Task %s raised %r.", task, e)
            return Outcome.failure(e, transient=task.is_transient(e))

        if scope.cancelled_caught:
            error = TaskTimeoutError(task.key, self.task_timeout)
            return Outcome.failure(error, transient=True)
        elif not task.is_discovered_in_worker():
            return Outcome.success(result)

        try:
            downstream = await task.discover_downstream(result)
        except Exception as e:
            logger.warning("Downstream discovery failed for %s: %r", task, e)
            return Outcome.failure(e, transient=False)

        return Outcome.success(result, downstream=tuple(downstream))
