import importlib
import inspect
import warnings
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache, partial
from hashlib import blake2b
from operator import itemgetter
from typing import TYPE_CHECKING, Any, Literal

import anyio.to_process
import anyio.to_thread
from fast_depends import inject
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PrivateAttr,
    field_validator,
)
from pydantic_core import to_json

from .exceptions import (
    TaskExecutionError,
    TerminalTaskError,
    TransientTaskError,
    UnregisteredKindError,
)

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Awaitable, Callable
    from typing import ClassVar

    StepFn = Callable[..., Any]
    DiscoveryFn = Callable[
        ["Task", Any], Iterable["Task"] | Awaitable[Iterable["Task"]]
    ]

TaskKey = str
Backend = Literal["thread", "process"]


class TaskKind(BaseModel):
    """
    A pipeline step. Decorating a function with a kind registers it as that step's
    implementation; tasks of the kind bind parameters to it.

    ```python
    fetch = TaskKind(name="fetch", retry_on={ConnectionError})

    @fetch
    def _fetch(url: str) -> bytes: ...

    @fetch.downstream
    def _parse_fetched(task: Task, page: bytes) -> list[Task]: ...

    a = fetch.task(url="https://example.com")
    ```
    """

    name: str
    max_retries: NonNegativeInt | None = None
    retry_on: frozenset[type[BaseException]] = Field(default_factory=frozenset)
    discover_in_worker: bool = False

    model_config = ConfigDict(extra="forbid", frozen=True)

    def __call__(self, fn: "StepFn") -> "KindRunner":
        runner = KindRunner(kind=self, fn=fn)
        KindRegistry.register(self, runner)
        return runner

    def downstream(self, fn: "DiscoveryFn") -> "DiscoveryFn":
        KindRegistry.register_discovery(self, fn)
        return fn

    def task(
        self, *, upstream: "Iterable[Task | TaskKey]" = (), **params: Any
    ) -> "Task":
        return Task(kind=self.name, params=params, upstream=upstream)


class Task(BaseModel):
    kind: str
    params: tuple[tuple[str, Any], ...] = ()
    upstream: frozenset[TaskKey] = Field(default_factory=frozenset)

    _key: TaskKey = PrivateAttr()

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("params", mode="before")
    @classmethod
    def _normalize_params(cls, value: Any) -> tuple[tuple[str, Any], ...]:
        if isinstance(value, Mapping):
            value = value.items()

        params = tuple(sorted(((str(k), v) for k, v in value), key=itemgetter(0)))
        for name, param in params:
            try:
                hash(param)
            except TypeError as e:
                raise ValueError(f"Parameter '{name}' is not hashable.") from e

        return params

    @field_validator("upstream", mode="before")
    @classmethod
    def _upstream_keys(cls, value: Any) -> frozenset[TaskKey]:
        if isinstance(value, Task | str):
            value = (value,)

        return frozenset(dep.key if isinstance(dep, Task) else dep for dep in value)

    def model_post_init(self, __context: Any) -> None:
        # identity is derived from the step and its bound parameters only
        digest = blake2b(
            to_json([self.kind, self.params], serialize_unknown=True),
            digest_size=16,
        )
        self._key = f"{self.kind}:{digest.hexdigest()}"

    @property
    def key(self) -> TaskKey:
        return self._key

    def identity(self) -> TaskKey:
        return self._key

    def dependencies(self) -> frozenset[TaskKey]:
        return self.upstream

    @property
    def kwargs(self) -> dict[str, Any]:
        return dict(self.params)

    def __str__(self) -> str:
        params = ", ".join(f"{name}={value!r}" for name, value in self.params)
        return f"{self.kind}({params})"

    async def execute(self, backend: Backend = "thread") -> Any:
        """Run the step bound to this task's parameters and return its result."""
        return await KindRegistry.get_runner(self.kind).run(self.kwargs, backend)

    async def discover_downstream(self, result: Any) -> list["Task"]:
        """
        Generate the tasks that follow from a successful result. Only ever called
        after `execute` has succeeded.
        """
        if (discover := KindRegistry.get_discovery(self.kind)) is None:
            return []

        tasks = discover(self, result)
        if inspect.isawaitable(tasks):
            tasks = await tasks

        return list(tasks or ())

    def is_transient(self, error: BaseException) -> bool:
        """Whether the error is worth another attempt for this task's kind."""
        if isinstance(error, TaskExecutionError):
            return isinstance(error, TransientTaskError)

        retry_on = KindRegistry.get_kind(self.kind).retry_on
        return bool(retry_on) and isinstance(error, tuple(retry_on))

    def is_discovered_in_worker(self) -> bool:
        return KindRegistry.get_kind(self.kind).discover_in_worker


@lru_cache
def _get_available_parameters(fn) -> dict[str, dict[str, Any]]:
    init_signature = inspect.signature(fn)
    parameters = init_signature.parameters.values()
    return {
        param.name: {
            "annotation": param.annotation,
            "optional": param.default is not inspect.Parameter.empty,
        }
        for param in parameters
        if param.name != "self"
        and param.kind not in (param.VAR_POSITIONAL, param.VAR_KEYWORD)
    }


@lru_cache(maxsize=None)
def _get_resolved_fn(fn: "StepFn") -> "StepFn":
    return inject(fn)


def _run_in_process(module: str, kind_name: str, params: dict[str, Any]) -> Any:
    # worker processes only know the kinds their defining module registers on import
    importlib.import_module(module)
    runner = KindRegistry.get_runner(kind_name)
    return _get_resolved_fn(runner.fn)(**params)


@dataclass
class KindRunner:
    kind: TaskKind
    fn: "StepFn"

    def __post_init__(self) -> None:
        self.__name__ = self.kind.name

    def _check_params(self, params: dict[str, Any]) -> None:
        parameters = _get_available_parameters(self.fn)
        resolved_optional_args: set[str] = {
            name
            for name, param in parameters.items()
            if (
                # optional also captures dependencies defined as `a = Depends(_a)`
                # or `a: Annotated[A, Depends(_a)]`
                param["optional"]
                or getattr(param["annotation"], "__metadata__", None)
            )
        }

        if missing_args := parameters.keys() - params.keys() - resolved_optional_args:
            raise TerminalTaskError(
                f"Task kind {self.kind.name} has unbound parameters: {missing_args}"
            )

    async def run(self, params: dict[str, Any], backend: Backend = "thread") -> Any:
        self._check_params(params)

        if inspect.iscoroutinefunction(self.fn):
            return await _get_resolved_fn(self.fn)(**params)
        elif backend == "process":
            return await anyio.to_process.run_sync(
                _run_in_process,
                self.fn.__module__,
                self.kind.name,
                params,
                cancellable=True,
            )

        return await anyio.to_thread.run_sync(
            partial(_get_resolved_fn(self.fn), **params), abandon_on_cancel=True
        )

    def __call__(self, **params: Any) -> Any:
        """Call the step directly, bypassing the scheduler."""
        return _get_resolved_fn(self.fn)(**params)


class KindRegistry:
    _runners: "ClassVar[dict[str, KindRunner]]" = {}
    _discoverers: "ClassVar[dict[str, DiscoveryFn]]" = {}

    @classmethod
    def register(cls, kind: TaskKind, runner: KindRunner) -> None:
        if kind.name in cls._runners:
            warnings.warn(
                f"Task kind '{kind.name}' is already registered. This will override"
                " that implementation.",
                stacklevel=3,
            )

        cls._runners[kind.name] = runner

    @classmethod
    def register_discovery(cls, kind: TaskKind, fn: "DiscoveryFn") -> None:
        if kind.name in cls._discoverers:
            warnings.warn(
                f"Task kind '{kind.name}' already has a downstream discovery function."
                " This will override it.",
                stacklevel=3,
            )

        cls._discoverers[kind.name] = fn

    @classmethod
    def get_runner(cls, kind_name: str) -> KindRunner:
        if runner := cls._runners.get(kind_name):
            return runner

        raise UnregisteredKindError(kind_name)

    @classmethod
    def get_discovery(cls, kind_name: str) -> "DiscoveryFn | None":
        return cls._discoverers.get(kind_name)

    @classmethod
    def get_kind(cls, kind_name: str) -> TaskKind:
        return cls.get_runner(kind_name).kind
