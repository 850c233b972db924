from typing import Annotated, Literal

from annotated_types import Ge
from pydantic import NonNegativeFloat, NonNegativeInt, PositiveFloat, PositiveInt
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PIPEGRAPH_", frozen=True)

    workers: PositiveInt = 4
    """Number of concurrent worker loops consuming the work channel."""

    work_queue_size: Annotated[int, Ge(1)] = 64
    """Capacity of the work channel. The coordinator blocks once it is full."""

    backend: Literal["thread", "process"] = "thread"
    """Where synchronous task bodies run. Async task bodies always run on the loop."""

    max_retries: NonNegativeInt = 0
    """Number of re-releases granted to a task after a transient failure."""

    retry_backoff: NonNegativeFloat = 0.0
    """Base delay in seconds before a retry, doubled on every further attempt."""

    task_timeout: PositiveFloat | None = None
    """Max execution time in seconds for a single attempt. Timeouts are transient."""

    status_grace: NonNegativeFloat = 5.0
    """Extra seconds past `task_timeout` before an unreported task is presumed lost."""

    watchdog_interval: PositiveFloat = 1.0
    """Max seconds the coordinator waits on the status channel between checks."""

    keep_results: bool = True
    """Whether task return values are collected into the run summary."""

    serialization_secret: str = "supersecretsecret"
    """Secret used for signing stored artifacts."""
