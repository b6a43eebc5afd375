"""Local filesystem storage driver.

Layout under the provider root::

    <root>/<cloud_name>/<encoded object name>/<generation>.data
    <root>/<cloud_name>/<encoded object name>/<generation>.json
    <root>/<cloud_name>/<encoded object name>/LIVE
    <root>/<cloud_name>/.sha256-<digest>/NAME
    <root>/<cloud_name>/.staging/
    <root>/<cloud_name>/.lock

Object names are percent-encoded into a single path segment; names whose
encoding would not fit in one segment are stored under the SHA-256 digest of
the name, with the name itself kept in ``NAME``. Uploads are streamed into
``.staging`` and linked into place on ``complete``. Commits and deletes hold
the store lock and an exclusive ``flock`` on ``.lock``, so ``not_exists`` is
atomic across every store sharing the root. A generation is claimed by
creating its ``.data`` file, which never replaces an existing one.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import tempfile
import threading
import time
import weakref
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, Iterator, Sequence
from urllib.parse import quote, unquote

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

logger = logging.getLogger("objstore.storage.local")

DEFAULT_CONTENT_TYPE = "application/octet-stream"
LIVE_POINTER = "LIVE"
STAGING_DIR = ".staging"
LOCK_FILE = ".lock"
NAME_FILE = "NAME"
HASHED_PREFIX = ".sha256-"
# Filesystems commonly cap a path segment at 255 bytes.
MAX_SEGMENT_LENGTH = 200


def encode_name(name: str) -> str:
    if not name:
        raise ValueError("object name must not be empty")
    # "." is left alone by quote(); encoding it keeps "." and ".." off the filesystem.
    encoded = quote(name, safe="").replace(".", "%2E")
    if len(encoded) > MAX_SEGMENT_LENGTH:
        # Encoded names never start with ".", so digests cannot collide with them.
        return HASHED_PREFIX + hashlib.sha256(name.encode("utf-8")).hexdigest()
    return encoded


def decode_name(segment: str) -> str:
    return unquote(segment)


def is_hashed(segment: str) -> bool:
    return segment.startswith(HASHED_PREFIX)


class LocalStore:
    """Filesystem-backed store shared by all buckets of one provider."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._last_generation = 0

    def bucket_dir(self, bucket: str) -> Path:
        path = self.root / bucket
        path.mkdir(parents=True, exist_ok=True)
        return path

    def staging_dir(self, bucket: str) -> Path:
        path = self.bucket_dir(bucket) / STAGING_DIR
        path.mkdir(parents=True, exist_ok=True)
        return path

    def object_dir(self, bucket: str, name: str) -> Path:
        return self.bucket_dir(bucket) / encode_name(name)

    def _next_generation(self) -> int:
        generation = max(time.time_ns() // 1000, self._last_generation + 1)
        self._last_generation = generation
        return generation

    @contextmanager
    def _locked(self, bucket: str) -> Iterator[None]:
        """Serialize mutations with this store's threads and with other stores."""
        with self._lock:
            with open(self.bucket_dir(bucket) / LOCK_FILE, "a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _claim(self, obj_dir: Path, staged: Path) -> int:
        """Link ``staged`` in as a fresh generation and return it."""
        while True:
            generation = self._next_generation()
            try:
                os.link(staged, obj_dir / f"{generation}.data")
            except FileExistsError:
                # Another store picked the same generation; _next_generation moves past it.
                continue
            staged.unlink()
            return generation

    @staticmethod
    def _live_generation(obj_dir: Path) -> int | None:
        try:
            return int((obj_dir / LIVE_POINTER).read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return None

    def _resolve(self, bucket: str, name: str, version: str) -> tuple[Path, int]:
        obj_dir = self.object_dir(bucket, name)
        generation = parse_generation(version)
        if generation is None:
            generation = self._live_generation(obj_dir)
        if generation is None or not (obj_dir / f"{generation}.data").exists():
            raise ObjectNotExistError(f"object {name!r} does not exist")
        return obj_dir, generation

    @staticmethod
    def _read_meta(obj_dir: Path, generation: int) -> dict[str, Any]:
        return json.loads((obj_dir / f"{generation}.json").read_text(encoding="utf-8"))

    def stat(self, bucket: str, name: str, version: str = "") -> tuple[int, dict[str, Any]]:
        with self._lock:
            obj_dir, generation = self._resolve(bucket, name, version)
            return generation, self._read_meta(obj_dir, generation)

    def open(
        self, bucket: str, name: str, version: str = ""
    ) -> tuple[IO[bytes], int, dict[str, Any]]:
        with self._lock:
            obj_dir, generation = self._resolve(bucket, name, version)
            meta = self._read_meta(obj_dir, generation)
            # An open handle stays readable even if the generation is deleted later.
            return open(obj_dir / f"{generation}.data", "rb"), generation, meta

    def commit(
        self,
        bucket: str,
        name: str,
        staged: Path,
        *,
        meta: dict[str, Any],
        pre: Preconditions,
    ) -> int:
        with self._locked(bucket):
            obj_dir = self.object_dir(bucket, name)
            live = self._live_generation(obj_dir)
            if pre.not_exists and live is not None:
                raise PreconditionFailedError(f"object {name!r} already exists")
            obj_dir.mkdir(parents=True, exist_ok=True)
            if is_hashed(obj_dir.name) and not (obj_dir / NAME_FILE).exists():
                _write_atomic(obj_dir / NAME_FILE, name)
            generation = self._claim(obj_dir, staged)
            _write_atomic(obj_dir / f"{generation}.json", json.dumps(meta))
            _write_atomic(obj_dir / LIVE_POINTER, str(generation))
            return generation

    def delete(self, bucket: str, name: str, version: str = "") -> None:
        with self._locked(bucket):
            obj_dir, generation = self._resolve(bucket, name, version)
            if parse_generation(version) is None:
                (obj_dir / LIVE_POINTER).unlink()
            else:
                (obj_dir / f"{generation}.data").unlink()
                (obj_dir / f"{generation}.json").unlink(missing_ok=True)
                if self._live_generation(obj_dir) == generation:
                    (obj_dir / LIVE_POINTER).unlink()
            if not any(obj_dir.glob("*.data")):
                for leftover in obj_dir.iterdir():
                    leftover.unlink()
                obj_dir.rmdir()

    def page(
        self, bucket: str, prefix: str, start_after: str | None, max_items: int
    ) -> tuple[list[tuple[str, dict[str, Any]]], bool]:
        with self._lock:
            names: list[str] = []
            for entry in os.scandir(self.bucket_dir(bucket)):
                if entry.name == STAGING_DIR or not entry.is_dir():
                    continue
                if is_hashed(entry.name):
                    try:
                        name = (Path(entry.path) / NAME_FILE).read_text(encoding="utf-8")
                    except FileNotFoundError:
                        continue
                else:
                    name = decode_name(entry.name)
                if not name.startswith(prefix):
                    continue
                if start_after is not None and name <= start_after:
                    continue
                if self._live_generation(Path(entry.path)) is None:
                    continue
                names.append(name)
            names.sort()
            selected = []
            for name in names[:max_items]:
                _, meta = self.stat(bucket, name)
                selected.append((name, meta))
            return selected, len(names) > max_items


def _write_atomic(path: Path, text: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class LocalDriver(ClientCachingDriver[LocalStore]):
    """Driver for providers declaring a ``local`` configuration."""

    provider_name = "local"

    def matches(self, provider: BucketProvider) -> bool:
        return provider.local is not None

    def _build_client(self, provider: BucketProvider) -> LocalStore:
        assert provider.local is not None
        return LocalStore(provider.local.root)

    def _new_bucket(
        self, client: LocalStore, provider: BucketProvider, bucket_cfg: BucketConfig
    ) -> "LocalBucket":
        return LocalBucket(client, bucket_cfg, page_size=provider.list_page_size)


def _meta_attrs(obj: CloudObject, generation: int, meta: dict[str, Any]) -> ObjectAttrs:
    return ObjectAttrs(
        object=obj,
        version=str(generation),
        content_type=meta.get("content_type"),
        size=int(meta.get("size", 0)),
        etag=str(meta.get("etag", "")),
    )


class LocalBucket:
    def __init__(self, store: LocalStore, cfg: BucketConfig, *, page_size: int) -> None:
        self._store = store
        self._cfg = cfg
        self._page_size = page_size

    @property
    def cloud_name(self) -> str:
        return self._cfg.cloud_name

    def download(self, data: DownloadData) -> ObjectReader:
        data.ctx.raise_if_done()
        handle, generation, meta = self._store.open(
            self.cloud_name, str(data.object), data.version
        )
        return ObjectReader(
            handle, ctx=data.ctx, attrs=_meta_attrs(data.object, generation, meta)
        )

    def upload(self, data: UploadData) -> "LocalUploader":
        data.ctx.raise_if_done()
        encode_name(str(data.object))
        return LocalUploader(
            self._store,
            self.cloud_name,
            data.object,
            ctx=data.ctx.child(),
            attrs=data.attrs,
            pre=data.pre,
        )

    def list(self, data: ListData) -> "LocalListCursor":
        return LocalListCursor(
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
        generation, meta = self._store.stat(self.cloud_name, str(data.object), data.version)
        return _meta_attrs(data.object, generation, meta)


class _StagingFile:
    """Staging file for one upload, created on the first write."""

    def __init__(self, store: LocalStore, bucket: str) -> None:
        self._store = store
        self._bucket = bucket
        self.path: Path | None = None
        self.handle: IO[bytes] | None = None

    def open(self) -> IO[bytes]:
        if self.handle is None:
            fd, path = tempfile.mkstemp(
                dir=self._store.staging_dir(self._bucket), prefix="upload-"
            )
            self.path = Path(path)
            self.handle = os.fdopen(fd, "wb")
        return self.handle

    def seal(self) -> Path:
        """Close the file and return its path; an upload without writes stages an empty file."""
        self.open().close()
        assert self.path is not None
        return self.path

    def cleanup(self) -> None:
        if self.handle is not None:
            self.handle.close()
        if self.path is not None:
            self.path.unlink(missing_ok=True)


def _release_upload(staging: _StagingFile, ctx: Context) -> None:
    staging.cleanup()
    ctx.release()


class LocalUploader:
    """Streams into a staging file and links it into place on ``complete``.

    An uploader dropped without ``complete`` or ``abort`` removes its staging
    file and detaches its context when it is garbage collected.
    """

    def __init__(
        self,
        store: LocalStore,
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
        self._attrs = attrs
        self._pre = pre
        self._digest = hashlib.md5(usedforsecurity=False)
        self._size = 0
        self._staging = _StagingFile(store, bucket)
        self._release = weakref.finalize(self, _release_upload, self._staging, ctx)
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
        try:
            self._staging.open().write(data)
        except BaseException:
            self._discard()
            raise
        self._digest.update(data)
        self._size += len(data)
        return len(data)

    def complete(self) -> ObjectAttrs:
        if self._result is not None:
            return self._result
        self._ensure_writable()
        meta = {
            "content_type": self._attrs.content_type or DEFAULT_CONTENT_TYPE,
            "size": self._size,
            "etag": '"' + self._digest.hexdigest() + '"',
        }
        try:
            generation = self._store.commit(
                self._bucket,
                str(self._object),
                self._staging.seal(),
                meta=meta,
                pre=self._pre,
            )
        except BaseException:
            self._discard()
            raise
        self._finished = True
        self._release()
        self._result = _meta_attrs(self._object, generation, meta)
        logger.debug(
            "upload completed bucket=%s object=%s generation=%s",
            self._bucket,
            self._object,
            generation,
        )
        return self._result

    def abort(self, cause: BaseException | None = None) -> None:
        if self._finished:
            return
        self._ctx.cancel(cause)
        self._discard()

    def _discard(self) -> None:
        self._finished = True
        self._release()

    def __enter__(self) -> "LocalUploader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is None:
            self.complete()
        else:
            self.abort(exc)


class LocalListCursor(ListCursor):
    def __init__(self, store: LocalStore, bucket: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._store = store
        self._bucket = bucket

    def _fetch_page(
        self, token: str | None, max_items: int
    ) -> tuple[Sequence[ListEntry], str | None]:
        page, truncated = self._store.page(self._bucket, self._prefix, token, max_items)
        entries = [
            ListEntry(
                object=CloudObject(name),
                size=int(meta.get("size", 0)),
                etag=str(meta.get("etag", "")),
            )
            for name, meta in page
        ]
        next_token = page[-1][0] if truncated and page else None
        return entries, next_token
