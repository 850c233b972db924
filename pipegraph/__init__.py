from fast_depends import Depends

from .config import Config
from .exceptions import TerminalTaskError, TransientTaskError
from .resolver import GraphResolver
from .scheduler import Scheduler
from .status import RunSummary, TaskStatus
from .store import ArtifactStore
from .task import Task, TaskKey, TaskKind

__all__ = [
    "ArtifactStore",
    "Config",
    "Depends",
    "GraphResolver",
    "RunSummary",
    "Scheduler",
    "Task",
    "TaskKey",
    "TaskKind",
    "TaskStatus",
    "TerminalTaskError",
    "TransientTaskError",
]
