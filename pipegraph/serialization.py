import pickle
import pickletools
from abc import ABC, abstractmethod
from hashlib import blake2b
from hmac import compare_digest
from threading import local as thread_context
from typing import TYPE_CHECKING

from zstandard import ZstdCompressor, ZstdDecompressor, ZstdError

from .exceptions import TamperedDataError, UnserializableValueError

if TYPE_CHECKING:  # pragma: no cover
    from typing import Any, ClassVar

_SIGNATURE_SIZE = 16


class Serializer(ABC):
    """Turns artifact values into the bytes an `ArtifactStore` writes, and back."""

    @abstractmethod
    def dump(self, value: "Any") -> bytes:
        raise NotImplementedError()

    @abstractmethod
    def load(self, data: bytes) -> "Any":
        raise NotImplementedError()


class PicklingZstdSerializer(Serializer):
    """
    Pickles (protocol 5) and zstd-compresses values. Every payload is prefixed with a
    keyed blake2b digest of the compressed body, so artifacts written with another
    secret, or modified on disk, are rejected on load instead of being unpickled.
    """

    # zstd contexts are not thread safe and sync steps run on worker threads
    _thread_context: "ClassVar[thread_context]" = thread_context()

    def __init__(self, secret: str) -> None:
        self.secret_key: bytes = secret.encode()

    @property
    def compressor(self) -> ZstdCompressor:
        if not hasattr(self._thread_context, "compressor"):
            self._thread_context.compressor = ZstdCompressor()

        return self._thread_context.compressor

    @property
    def decompressor(self) -> ZstdDecompressor:
        if not hasattr(self._thread_context, "decompressor"):
            self._thread_context.decompressor = ZstdDecompressor()

        return self._thread_context.decompressor

    def _sign(self, body: bytes) -> bytes:
        return blake2b(
            body, digest_size=_SIGNATURE_SIZE, key=self.secret_key, usedforsecurity=True
        ).digest()

    def dump(self, value: "Any") -> bytes:
        try:
            pickled = pickletools.optimize(pickle.dumps(value, protocol=5))
        except (pickle.PickleError, TypeError, AttributeError) as e:
            raise UnserializableValueError(value) from e

        body = self.compressor.compress(pickled)
        return self._sign(body) + body

    def load(self, data: bytes) -> "Any":
        signature, body = data[:_SIGNATURE_SIZE], data[_SIGNATURE_SIZE:]
        if len(signature) < _SIGNATURE_SIZE or not compare_digest(
            self._sign(body), signature
        ):
            raise TamperedDataError()

        try:
            return pickle.loads(self.decompressor.decompress(body))
        except ZstdError as e:
            raise TamperedDataError() from e
