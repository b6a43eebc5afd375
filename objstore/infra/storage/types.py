"""Storage data types and the driver-facing protocols.

The request-data structs are what the bucket facade hands to a driver after
folding the caller's options; drivers never see option objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Protocol

from objstore.infra.storage.context import Context


class CloudObject(str):
    """Name of an object within a bucket.

    Equality is exact string identity; bytes are decoded as UTF-8.
    """

    __slots__ = ()

    def __new__(cls, value: "str | bytes") -> "CloudObject":
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return super().__new__(cls, value)

    def __repr__(self) -> str:
        return f"CloudObject({str.__repr__(self)})"


@dataclass(frozen=True, slots=True)
class ObjectAttrs:
    """Snapshot of object metadata."""

    object: CloudObject
    version: str
    content_type: str | None
    size: int
    etag: str


@dataclass(frozen=True, slots=True)
class ListEntry:
    """Lightweight snapshot yielded while listing."""

    object: CloudObject
    size: int
    etag: str


@dataclass(frozen=True, slots=True)
class Preconditions:
    """Atomic guards evaluated by the backend before committing an upload."""

    # The object must not exist prior to uploading.
    not_exists: bool = False


@dataclass(frozen=True, slots=True)
class UploadAttrs:
    """Object attributes to set during upload."""

    content_type: str | None = None


@dataclass(frozen=True, slots=True)
class DownloadData:
    ctx: Context
    object: CloudObject
    version: str = ""


@dataclass(frozen=True, slots=True)
class UploadData:
    ctx: Context
    object: CloudObject
    attrs: UploadAttrs = field(default_factory=UploadAttrs)
    pre: Preconditions = field(default_factory=Preconditions)


@dataclass(frozen=True, slots=True)
class ListData:
    ctx: Context
    prefix: str = ""
    limit: int | None = None


@dataclass(frozen=True, slots=True)
class RemoveData:
    ctx: Context
    object: CloudObject
    version: str = ""


@dataclass(frozen=True, slots=True)
class AttrsData:
    ctx: Context
    object: CloudObject
    version: str = ""


class Uploader(Protocol):
    """Writable, cancelable sink for a single upload."""

    def write(self, data: bytes) -> int:
        ...

    def complete(self) -> ObjectAttrs:
        """Commit the written bytes and return the resulting attributes.

        Raises:
            PreconditionFailedError: If the upload precondition was violated.
        """
        ...

    def abort(self, cause: BaseException | None = None) -> None:
        """Cancel the upload; nothing written so far becomes visible."""
        ...


class BucketImpl(Protocol):
    """Operations every driver bucket implements."""

    def download(self, data: DownloadData) -> "ObjectReader":
        ...

    def upload(self, data: UploadData) -> Uploader:
        ...

    def list(self, data: ListData) -> Iterator[ListEntry]:
        ...

    def remove(self, data: RemoveData) -> None:
        ...

    def attrs(self, data: AttrsData) -> ObjectAttrs:
        ...


class ObjectReader:
    """Sequential reader over an object's content.

    Wraps a driver's native stream and checks the caller context before every
    read so a cancelled download stops promptly.
    """

    chunk_size = 64 * 1024

    def __init__(self, stream, *, ctx: Context, attrs: ObjectAttrs) -> None:
        self._stream = stream
        self._ctx = ctx
        self.attrs = attrs
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self, size: int = -1) -> bytes:
        if self._closed:
            raise ValueError("read from closed object reader")
        self._ctx.raise_if_done()
        if size is None or size < 0:
            return self._read_all()
        return self._stream.read(size)

    def _read_all(self) -> bytes:
        chunks: list[bytes] = []
        while True:
            self._ctx.raise_if_done()
            chunk = self._stream.read(self.chunk_size)
            if not chunk:
                return b"".join(chunks)
            chunks.append(chunk)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(self.chunk_size)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close = getattr(self._stream, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> "ObjectReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
