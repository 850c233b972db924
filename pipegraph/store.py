import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from .config import Config
from .exceptions import ArtifactNotFoundError
from .serialization import PicklingZstdSerializer

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterator
    from typing import Any

    from .serialization import Serializer
    from .task import TaskKey

_SUFFIX = ".artifact"


class ArtifactStore:
    """
    Filesystem storage for task outputs, one artifact per task key.

    Writes go to a temporary file in the target directory and are renamed into place,
    so a reader never sees a partial artifact and re-running a task overwrites its
    previous output instead of adding another one.
    """

    def __init__(
        self,
        root: "str | os.PathLike[str]",
        serializer: "Serializer | None" = None,
        config: Config | None = None,
    ) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.config = config or Config()
        self.serializer: "Serializer" = serializer or PicklingZstdSerializer(
            self.config.serialization_secret
        )

    def path(self, key: "TaskKey") -> Path:
        kind, _, digest = key.partition(":")
        return self.root / kind / f"{digest or kind}{_SUFFIX}"

    def put(self, key: "TaskKey", value: "Any") -> Path:
        data = self.serializer.dump(value)
        target = self.path(key)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

        return target

    def get(self, key: "TaskKey") -> "Any":
        try:
            data = self.path(key).read_bytes()
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(key) from e

        return self.serializer.load(data)

    def exists(self, key: "TaskKey") -> bool:
        return self.path(key).is_file()

    def delete(self, key: "TaskKey") -> None:
        self.path(key).unlink(missing_ok=True)

    def keys(self) -> "Iterator[TaskKey]":
        for path in sorted(self.root.glob(f"*/*{_SUFFIX}")):
            yield f"{path.parent.name}:{path.name.removesuffix(_SUFFIX)}"
