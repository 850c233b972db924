from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from typing import Any


class PipegraphError(Exception):
    def __init__(self, *args: "Any", **kwargs: "Any") -> None:
        super().__init__(*args, **kwargs)


##
## GRAPH RESOLUTION
##


class GraphResolutionError(PipegraphError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class CyclicGraphError(GraphResolutionError):
    def __init__(self, cycles: list[tuple[str, ...]]) -> None:
        self.cycles = cycles
        cycle_str = "\n  ".join(" -> ".join(cycle) for cycle in cycles)
        super().__init__(
            "Task graphs cannot contain dependency cycles. Offending cycles:\n"
            f"  {cycle_str}"
        )


class UnknownDependencyError(GraphResolutionError):
    def __init__(self, key: str, missing: set[str]) -> None:
        self.key = key
        self.missing = missing
        super().__init__(
            f"Task '{key}' depends on tasks that are not part of the graph:"
            f" {sorted(missing)}."
        )


##
## RESOLVER STATE
##


class ResolverStateError(PipegraphError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class UnpreparedResolverError(ResolverStateError):
    def __init__(self) -> None:
        super().__init__("Resolvers must be prepared before they can be used.")


class InvalidTransitionError(ResolverStateError):
    def __init__(self, key: str, current: "Any", target: "Any") -> None:
        super().__init__(
            f"Task '{key}' cannot transition from {current} to {target}."
        )


##
## TASK EXECUTION
##


class TaskExecutionError(PipegraphError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class TransientTaskError(TaskExecutionError):
    """A failure that may succeed if the task is released again."""


class TerminalTaskError(TaskExecutionError):
    """A failure that should not be retried; all dependents are blocked."""


class TaskTimeoutError(TransientTaskError):
    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(
            f"Task '{key}' did not complete within {timeout}s."
        )


class UnregisteredKindError(TaskExecutionError):
    def __init__(self, kind_name: str) -> None:
        super().__init__(
            f"Task kind '{kind_name}' is not defined in the current runtime."
            f" Register it to a function with `@{kind_name}`."
        )


##
## ARTIFACTS
##


class ArtifactError(PipegraphError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class UnserializableValueError(ArtifactError):
    def __init__(self, value: "Any") -> None:
        super().__init__(f"{value!r} is not a serializable artifact value.")


class TamperedDataError(ArtifactError):
    def __init__(self) -> None:
        super().__init__("Deserialization failed due to signature mismatch.")


class ArtifactNotFoundError(ArtifactError):
    def __init__(self, key: str) -> None:
        super().__init__(f"No artifact has been stored for task '{key}'.")
