"""
The coordinator: a single loop that releases ready tasks to a pool of workers,
collects their status reports and grows the graph with discovered downstream tasks.

Downstream discovery runs on the coordinator by default, which means a slow discovery
function (one that enumerates downstream work over the network, say) stalls all
scheduling and not only its own subgraph. Kinds with expensive discovery should set
`TaskKind(discover_in_worker=True)`: the worker then runs discovery right after the
task body and merely reports the new tasks back.
"""

import heapq
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import anyio
import sniffio

from .channel import Channels, Outcome, TaskStarted
from .config import Config
from .exceptions import GraphResolutionError, TaskTimeoutError
from .resolver import GraphResolver
from .status import RunSummary, StatusRecord, TaskStatus
from .task import KindRegistry
from .worker import Worker

if TYPE_CHECKING:  # pragma: no cover
    from .channel import StatusMessage
    from .task import Task, TaskKey

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _InFlight:
    attempt: int
    deadline: float | None


class Coordinator:
    """
    Owns all scheduling state for one run. Nothing here is shared with the workers:
    they only see the two channels, so none of it needs a lock.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.channels = Channels(config.work_queue_size)
        self.status = StatusRecord()
        self.summary = RunSummary()
        self.resolvers: list[GraphResolver] = []
        self.tasks: dict["TaskKey", "Task"] = {}
        self._in_flight: dict["TaskKey", _InFlight] = {}
        self._retries: list[tuple[float, "TaskKey"]] = []

    ##
    ## GRAPH ADMISSION
    ##

    def admit(self, tasks: Iterable["Task"]) -> GraphResolver | None:
        """
        Build a resolver for the tasks not yet known to this run. Dependencies on
        known tasks from earlier graphs are wired in as external dependencies.
        """
        new_tasks: dict["TaskKey", "Task"] = {}
        for task in tasks:
            if task.key in self.status or task.key in new_tasks:
                logger.debug("Skipping duplicate task %s.", task)
                continue

            new_tasks[task.key] = task

        if not new_tasks:
            return None

        external = {
            dependency
            for task in new_tasks.values()
            for dependency in task.upstream
            if dependency not in new_tasks and dependency in self.status
        }
        resolver = GraphResolver.from_tasks(new_tasks.values(), external=external)

        self.tasks.update(new_tasks)
        for key in new_tasks:
            self.status.admit(key)
        self.resolvers.append(resolver)

        # settle dependencies that finished before this graph existed
        for key in resolver.external:
            if self.status[key] is TaskStatus.SUCCEEDED:
                resolver.mark_done(key)
            elif self.status[key] in (TaskStatus.FAILED, TaskStatus.BLOCKED):
                self._block(key, resolver.mark_failed(key))

        logger.debug(
            "Admitted %d tasks (%d external dependencies).",
            len(new_tasks),
            len(resolver.external),
        )
        return resolver

    def _reject(self, tasks: Iterable["Task"], error: Exception) -> None:
        for task in tasks:
            if task.key not in self.status:
                self.status.admit(task.key, TaskStatus.FAILED)
                self.summary.failed[task.key] = str(error)

    ##
    ## RELEASE
    ##

    def _awaiting(self, key: "TaskKey") -> list[GraphResolver]:
        """Resolvers that still expect a done/failed signal for the key."""
        return [
            resolver
            for resolver in self.resolvers
            if key in resolver.in_flight
            or (
                key in resolver.external
                and key not in resolver.done
                and key not in resolver.failed
            )
        ]

    def _has_failed_ancestor(self, task: "Task") -> bool:
        return any(
            self.status.get(dependency) in (TaskStatus.FAILED, TaskStatus.BLOCKED)
            for dependency in task.upstream
        )

    async def _dispatch(self, key: "TaskKey") -> None:
        attempt = self.summary.attempts.get(key, 0) + 1
        self.summary.attempts[key] = attempt

        self.status.transition(key, TaskStatus.RUNNING)
        # no deadline while queued; it is set once a worker reports the start
        self._in_flight[key] = _InFlight(attempt=attempt, deadline=None)

        logger.debug("Dispatching %s (attempt %d).", self.tasks[key], attempt)
        await self.channels.dispatch(self.tasks[key], attempt)

    async def _release(self) -> None:
        now = anyio.current_time()
        while self._retries and self._retries[0][0] <= now:
            _, key = heapq.heappop(self._retries)
            await self._dispatch(key)

        for resolver in list(self.resolvers):
            for key in sorted(resolver.get_ready()):
                self.status.transition(key, TaskStatus.READY)

                if self._has_failed_ancestor(self.tasks[key]):
                    self.status.transition(key, TaskStatus.BLOCKED)
                    self.summary.blocked.add(key)
                    self._propagate_failure(key)
                    continue

                await self._dispatch(key)

    ##
    ## STATUS HANDLING
    ##

    async def _handle(self, report: "StatusMessage") -> None:
        current = self._in_flight.get(report.key)
        if current is None or current.attempt != report.attempt:
            logger.debug(
                "Ignoring stale report for %s (attempt %d).", report.key, report.attempt
            )
            return

        if isinstance(report, TaskStarted):
            if self.config.task_timeout is not None:
                current.deadline = (
                    report.at + self.config.task_timeout + self.config.status_grace
                )
            return

        del self._in_flight[report.key]

        if report.outcome.succeeded:
            await self._succeed(report.key, report.outcome)
        else:
            self._fail(report.key, report.attempt, report.outcome)

    async def _succeed(self, key: "TaskKey", outcome: Outcome) -> None:
        task = self.tasks[key]

        self.status.transition(key, TaskStatus.SUCCEEDED)
        self.summary.succeeded.add(key)
        if self.config.keep_results:
            self.summary.results[key] = outcome.result

        for resolver in self._awaiting(key):
            resolver.mark_done(key)

        logger.debug("Task %s succeeded.", task)

        downstream = outcome.downstream
        if downstream is None and not task.is_discovered_in_worker():
            try:
                downstream = await task.discover_downstream(outcome.result)
            except Exception as e:
                logger.exception("Downstream discovery failed for %s.", task)
                self.summary.discovery_errors[key] = f"{type(e).__name__}: {e}"
                return

        if downstream:
            try:
                self.admit(downstream)
            except GraphResolutionError as e:
                logger.exception("Rejected tasks discovered from %s.", task)
                self._reject(downstream, e)

    def _retry_budget(self, task: "Task") -> int:
        kind = KindRegistry.get_kind(task.kind)
        if kind.max_retries is not None:
            return kind.max_retries

        return self.config.max_retries

    def _fail(self, key: "TaskKey", attempt: int, outcome: Outcome) -> None:
        task = self.tasks[key]

        if outcome.transient and attempt <= self._retry_budget(task):
            delay = self.config.retry_backoff * 2 ** (attempt - 1)
            logger.info(
                "Task %s failed transiently (%s); retrying in %.2fs.",
                task,
                outcome.error,
                delay,
            )
            self.status.transition(key, TaskStatus.READY)
            heapq.heappush(self._retries, (anyio.current_time() + delay, key))
            return

        logger.warning("Task %s failed: %s", task, outcome.error)
        self.status.transition(key, TaskStatus.FAILED)
        self.summary.failed[key] = outcome.error or "unknown error"
        self._propagate_failure(key)

    def _propagate_failure(self, key: "TaskKey") -> None:
        for resolver in self._awaiting(key):
            self._block(key, resolver.mark_failed(key))

    def _block(self, cause: "TaskKey", keys: set["TaskKey"]) -> None:
        for key in sorted(keys):
            if self.status[key].terminal:
                continue

            logger.warning("Task %s is blocked by failed task %s.", key, cause)
            self.status.transition(key, TaskStatus.BLOCKED)
            self.summary.blocked.add(key)

            # later graphs may depend on it too
            for resolver in self._awaiting(key):
                self._block(cause, resolver.mark_failed(key))

    def _expire(self) -> None:
        """Presume lost any dispatch whose report is overdue."""
        now = anyio.current_time()
        for key, current in list(self._in_flight.items()):
            if current.deadline is not None and now > current.deadline:
                del self._in_flight[key]
                error = TaskTimeoutError(
                    key, self.config.task_timeout + self.config.status_grace
                )
                self._fail(key, current.attempt, Outcome.failure(error, transient=True))

    def _collect(self) -> None:
        """Drop exhausted resolvers and the tasks nothing references any more."""
        exhausted = [r for r in self.resolvers if r.is_exhausted()]
        if not exhausted:
            return

        self.resolvers = [r for r in self.resolvers if not r.is_exhausted()]
        for resolver in exhausted:
            for key in resolver.keys | resolver.external:
                if self.status[key].terminal and not any(
                    r.references(key) for r in self.resolvers
                ):
                    self.tasks.pop(key, None)

    ##
    ## LOOP
    ##

    def _wait_timeout(self) -> float:
        timeout = self.config.watchdog_interval
        if self._retries:
            timeout = min(timeout, self._retries[0][0] - anyio.current_time())

        return max(timeout, 0)

    async def _loop(self) -> None:
        while self.resolvers or self._in_flight or self._retries:
            await self._release()
            self._collect()

            if not self.resolvers:
                break

            report = None
            if self._in_flight:
                with anyio.move_on_after(self._wait_timeout()):
                    report = await self.channels.status_receive.receive()
            else:
                # only retries are pending
                await anyio.sleep(self._wait_timeout())

            if report is not None:
                await self._handle(report)
                # handle everything already reported before checking deadlines
                while True:
                    try:
                        report = self.channels.status_receive.receive_nowait()
                    except anyio.WouldBlock:
                        break

                    await self._handle(report)

            self._expire()
            self._collect()

    async def drive(self) -> RunSummary:
        async with anyio.create_task_group() as tg:
            for index in range(self.config.workers):
                work, status = self.channels.worker_ends()
                worker = Worker(
                    index,
                    work,
                    status,
                    backend=self.config.backend,
                    task_timeout=self.config.task_timeout,
                )
                tg.start_soon(worker.run, name=f"pipegraph-worker-{index}")

            try:
                await self._loop()
            finally:
                self.channels.close()
                tg.cancel_scope.cancel()

        logger.info("Run finished: %s.", self.summary)
        return self.summary


class Scheduler:
    """
    Runs a batch of tasks across a pool of workers, respecting their dependencies.

    ```python
    scheduler = Scheduler(workers=8, max_retries=2)
    summary = await scheduler.run([fetch.task(url=url) for url in urls])
    ```

    A run never raises because a task failed. It finishes with a `RunSummary` of
    the succeeded, failed and blocked tasks. Invalid graphs (cycles, unknown
    dependencies) raise before any task is released.
    """

    def __init__(self, config: Config | None = None, **settings: Any) -> None:
        self.config = config or Config(**settings)

    async def run(self, tasks: Iterable["Task"]) -> RunSummary:
        coordinator = Coordinator(self.config)
        coordinator.admit(tasks)
        return await coordinator.drive()

    def run_sync(
        self, tasks: Iterable["Task"], backend: str = "asyncio", **backend_options: Any
    ) -> RunSummary:
        try:
            sniffio.current_async_library()
            raise RuntimeError(
                "Calling run_sync within an event loop is forbidden. Use `await"
                " scheduler.run(...)` instead."
            )
        except sniffio.AsyncLibraryNotFoundError:
            return anyio.run(
                self.run,
                list(tasks),
                backend=backend,
                backend_options=backend_options or None,
            )
