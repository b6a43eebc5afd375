"""In-memory storage driver.

Behaves like a versioned bucket: every committed upload gets a new integer
generation, removing the live version keeps older generations addressable by
version, and removing a specific generation deletes it for good.
"""

from __future__ import annotations

import hashlib
import io
import threading
import weakref
from dataclasses import dataclass, field
from typing import Any, Sequence

from objstore.common.config import BucketConfig, BucketProvider
from objstore.infra.storage.context import Context
from objstore.infra.storage.cursor import ListCursor
from objstore.infra.storage.errors import (
    ObjectNotExistError,
    OperationCancelledError,
    PreconditionFailedError,
    StorageError,
)
from objstore.infra.storage.providers.base import ClientCachingDriver, parse_generation
from objstore.infra.storage.types import (
    AttrsData,
    CloudObject,
    DownloadData,
    ListData,
    ListEntry,
    ObjectAttrs,
    ObjectReader,
    Preconditions,
    RemoveData,
    UploadAttrs,
    UploadData,
)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def compute_etag(data: bytes) -> str:
    return '"' + hashlib.md5(data, usedforsecurity=False).hexdigest() + '"'


@dataclass(frozen=True, slots=True)
class _Blob:
    data: bytes
    generation: int
    content_type: str
    etag: str


@dataclass(slots=True)
class _StoredObject:
    generations: dict[int, _Blob] = field(default_factory=dict)
    live: int | None = None


class MemoryStore:
    """Process-local object store shared by all buckets of one provider."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._buckets: dict[str, dict[str, _StoredObject]] = {}
        self._generation = 0

    def _objects(self, bucket: str) -> dict[str, _StoredObject]:
        return self._buckets.setdefault(bucket, {})

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _lookup(self, bucket: str, name: str, version: str) -> _Blob:
        stored = self._objects(bucket).get(name)
        if stored is None:
            raise ObjectNotExistError(f"object {name!r} does not exist")
        generation = parse_generation(version)
        if generation is None:
            generation = stored.live
        blob = stored.generations.get(generation) if generation is not None else None
        if blob is None:
            raise ObjectNotExistError(f"object {name!r} does not exist")
        return blob

    def get(self, bucket: str, name: str, version: str = "") -> _Blob:
        with self._lock:
            return self._lookup(bucket, name, version)

    def put(
        self,
        bucket: str,
        name: str,
        data: bytes,
        *,
        content_type: str | None,
        pre: Preconditions,
    ) -> _Blob:
        with self._lock:
            objects = self._objects(bucket)
            stored = objects.get(name)
            if pre.not_exists and stored is not None and stored.live is not None:
                raise PreconditionFailedError(f"object {name!r} already exists")
            if stored is None:
                stored = objects[name] = _StoredObject()
            blob = _Blob(
                data=data,
                generation=self._next_generation(),
                content_type=content_type or DEFAULT_CONTENT_TYPE,
                etag=compute_etag(data),
            )
            stored.generations[blob.generation] = blob
            stored.live = blob.generation
            return blob

    def delete(self, bucket: str, name: str, version: str = "") -> None:
        with self._lock:
            objects = self._objects(bucket)
            blob = self._lookup(bucket, name, version)
            stored = objects[name]
            if parse_generation(version) is None:
                stored.live = None
            else:
                del stored.generations[blob.generation]
                if stored.live == blob.generation:
                    stored.live = None
            if not stored.generations:
                del objects[name]

    def page(
        self, bucket: str, prefix: str, start_after: str | None, max_items: int
    ) -> tuple[list[tuple[str, _Blob]], bool]:
        with self._lock:
            names = sorted(
                name
                for name, stored in self._objects(bucket).items()
                if stored.live is not None and name.startswith(prefix)
            )
            if start_after is not None:
                names = [name for name in names if name > start_after]
            objects = self._objects(bucket)
            selected = [
                (name, objects[name].generations[objects[name].live])  # type: ignore[index]
                for name in names[:max_items]
            ]
            return selected, len(names) > max_items


class MemoryDriver(ClientCachingDriver[MemoryStore]):
    """Driver for providers declaring a ``memory`` configuration."""

    provider_name = "memory"

    def matches(self, provider: BucketProvider) -> bool:
        return provider.memory is not None

    def _build_client(self, provider: BucketProvider) -> MemoryStore:
        return MemoryStore()

    def _new_bucket(
        self, client: MemoryStore, provider: BucketProvider, bucket_cfg: BucketConfig
    ) -> "MemoryBucket":
        return MemoryBucket(client, bucket_cfg, page_size=provider.list_page_size)


def _blob_attrs(obj: CloudObject, blob: _Blob) -> ObjectAttrs:
    return ObjectAttrs(
        object=obj,
        version=str(blob.generation),
        content_type=blob.content_type,
        size=len(blob.data),
        etag=blob.etag,
    )


class MemoryBucket:
    def __init__(self, store: MemoryStore, cfg: BucketConfig, *, page_size: int) -> None:
        self._store = store
        self._cfg = cfg
        self._page_size = page_size

    @property
    def cloud_name(self) -> str:
        return self._cfg.cloud_name

    def download(self, data: DownloadData) -> ObjectReader:
        data.ctx.raise_if_done()
        blob = self._store.get(self.cloud_name, str(data.object), data.version)
        return ObjectReader(
            io.BytesIO(blob.data), ctx=data.ctx, attrs=_blob_attrs(data.object, blob)
        )

    def upload(self, data: UploadData) -> "MemoryUploader":
        data.ctx.raise_if_done()
        return MemoryUploader(
            self._store,
            self.cloud_name,
            data.object,
            ctx=data.ctx.child(),
            attrs=data.attrs,
            pre=data.pre,
        )

    def list(self, data: ListData) -> "MemoryListCursor":
        return MemoryListCursor(
            self._store,
            self.cloud_name,
            ctx=data.ctx,
            prefix=data.prefix,
            limit=data.limit,
            page_size=self._page_size,
        )

    def remove(self, data: RemoveData) -> None:
        data.ctx.raise_if_done()
        self._store.delete(self.cloud_name, str(data.object), data.version)

    def attrs(self, data: AttrsData) -> ObjectAttrs:
        data.ctx.raise_if_done()
        blob = self._store.get(self.cloud_name, str(data.object), data.version)
        return _blob_attrs(data.object, blob)


class MemoryUploader:
    """Buffers written bytes and commits them atomically on ``complete``."""

    def __init__(
        self,
        store: MemoryStore,
        bucket: str,
        obj: CloudObject,
        *,
        ctx: Context,
        attrs: UploadAttrs,
        pre: Preconditions,
    ) -> None:
        self._store = store
        self._bucket = bucket
        self._object = obj
        self._ctx = ctx
        # Detach from the caller context if the uploader is dropped unfinished.
        weakref.finalize(self, ctx.release)
        self._attrs = attrs
        self._pre = pre
        self._buffer = bytearray()
        self._result: ObjectAttrs | None = None
        self._finished = False

    def _ensure_writable(self) -> None:
        if self._finished:
            if self._result is not None:
                raise StorageError("upload already completed")
            raise OperationCancelledError("upload aborted", cause=self._ctx.cause)
        error = self._ctx.err()
        if error is not None:
            self._discard()
            raise error

    def write(self, data: bytes) -> int:
        self._ensure_writable()
        self._buffer.extend(data)
        return len(data)

    def complete(self) -> ObjectAttrs:
        if self._result is not None:
            return self._result
        self._ensure_writable()
        try:
            blob = self._store.put(
                self._bucket,
                str(self._object),
                bytes(self._buffer),
                content_type=self._attrs.content_type,
                pre=self._pre,
            )
        except BaseException:
            self._discard()
            raise
        self._discard()
        self._result = _blob_attrs(self._object, blob)
        return self._result

    def abort(self, cause: BaseException | None = None) -> None:
        if self._finished:
            return
        self._ctx.cancel(cause)
        self._discard()

    def _discard(self) -> None:
        self._finished = True
        self._buffer = bytearray()
        self._ctx.release()

    def __enter__(self) -> "MemoryUploader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is None:
            self.complete()
        else:
            self.abort(exc)


class MemoryListCursor(ListCursor):
    def __init__(self, store: MemoryStore, bucket: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._store = store
        self._bucket = bucket

    def _fetch_page(
        self, token: str | None, max_items: int
    ) -> tuple[Sequence[ListEntry], str | None]:
        page, truncated = self._store.page(self._bucket, self._prefix, token, max_items)
        entries = [
            ListEntry(object=CloudObject(name), size=len(blob.data), etag=blob.etag)
            for name, blob in page
        ]
        next_token = page[-1][0] if truncated and page else None
        return entries, next_token
