"""Unified bucket facade handed to application code."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator

from objstore.common.config import BucketConfig
from objstore.infra.observability.metrics import LATENCY, OPERATIONS
from objstore.infra.storage.context import Context, ensure_context
from objstore.infra.storage.errors import (
    ObjectNotExistError,
    OperationCancelledError,
    PreconditionFailedError,
)
from objstore.infra.storage.options import (
    AttrsOption,
    DownloadOption,
    ExistsOption,
    ListOption,
    RemoveOption,
    UploadOption,
    fold_attrs,
    fold_download,
    fold_exists,
    fold_list,
    fold_remove,
    fold_upload,
)
from objstore.infra.storage.types import (
    AttrsData,
    BucketImpl,
    CloudObject,
    DownloadData,
    ListData,
    ListEntry,
    ObjectAttrs,
    ObjectReader,
    RemoveData,
    UploadData,
    Uploader,
)

logger = logging.getLogger("objstore.storage")


def _outcome(exc: BaseException) -> str:
    if isinstance(exc, ObjectNotExistError):
        return "not_found"
    if isinstance(exc, PreconditionFailedError):
        return "precondition_failed"
    if isinstance(exc, OperationCancelledError):
        return "cancelled"
    return "error"


class Bucket:
    """A logical bucket bound to one driver.

    Folds each call's options into the driver's request data and forwards it;
    holds no state beyond the driver binding and the bucket configuration.
    """

    def __init__(
        self,
        impl: BucketImpl,
        config: BucketConfig,
        *,
        provider_name: str,
        metrics_enabled: bool = True,
    ) -> None:
        self._impl = impl
        self._config = config
        self._provider_name = provider_name
        self._metrics_enabled = metrics_enabled

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def cloud_name(self) -> str:
        return self._config.cloud_name

    @property
    def provider_name(self) -> str:
        return self._provider_name

    def __repr__(self) -> str:
        return f"Bucket(name={self.name!r}, provider={self._provider_name!r})"

    @contextmanager
    def _observe(self, operation: str, obj: str | None = None) -> Iterator[None]:
        start = time.perf_counter()
        outcome = "ok"
        try:
            yield
        except BaseException as exc:
            outcome = _outcome(exc)
            raise
        finally:
            self._record(operation, obj, outcome, time.perf_counter() - start)

    def _record(
        self, operation: str, obj: str | None, outcome: str, elapsed: float
    ) -> None:
        if self._metrics_enabled:
            OPERATIONS.labels(self._provider_name, operation, outcome).inc()
            LATENCY.labels(self._provider_name, operation).observe(elapsed)
        duration_ms = round(elapsed * 1000, 3)
        logger.debug(
            "storage operation=%s bucket=%s object=%s outcome=%s duration_ms=%.3f",
            operation,
            self.name,
            obj if obj is not None else "-",
            outcome,
            duration_ms,
            extra={
                "extra": {
                    "operation": operation,
                    "bucket": self.name,
                    "provider": self._provider_name,
                    "object": obj,
                    "outcome": outcome,
                    "duration_ms": duration_ms,
                }
            },
        )

    def download(
        self, obj: str, *options: DownloadOption, ctx: Context | None = None
    ) -> ObjectReader:
        """Open a sequential reader over the object's content.

        Raises:
            ObjectNotExistError: If the object (or pinned version) is absent.
        """
        opts = fold_download(options)
        with self._observe("download", obj):
            return self._impl.download(
                DownloadData(
                    ctx=ensure_context(ctx),
                    object=CloudObject(obj),
                    version=opts.version,
                )
            )

    def upload(
        self, obj: str, *options: UploadOption, ctx: Context | None = None
    ) -> Uploader:
        """Start an upload.

        The returned uploader commits on ``complete()`` and discards everything
        on ``abort()``. Used as a context manager it completes on a clean exit
        and aborts when the block raises.
        """
        opts = fold_upload(options)
        with self._observe("upload_start", obj):
            uploader = self._impl.upload(
                UploadData(
                    ctx=ensure_context(ctx),
                    object=CloudObject(obj),
                    attrs=opts.attrs,
                    pre=opts.pre,
                )
            )
        return _ObservedUploader(uploader, self, obj)

    def list(
        self,
        prefix: str = "",
        *options: ListOption,
        limit: int | None = None,
        ctx: Context | None = None,
    ) -> Iterator[ListEntry]:
        """Lazily list objects whose names start with ``prefix``.

        Yields at most ``limit`` entries. Errors are raised from iteration and
        end the listing. The listing is observed once, when it ends.
        """
        fold_list(options)
        start = time.perf_counter()
        try:
            cursor = self._impl.list(
                ListData(ctx=ensure_context(ctx), prefix=prefix, limit=limit)
            )
        except BaseException as exc:
            self._record("list", None, _outcome(exc), time.perf_counter() - start)
            raise
        return _ObservedCursor(cursor, self, start)

    def remove(
        self, obj: str, *options: RemoveOption, ctx: Context | None = None
    ) -> None:
        opts = fold_remove(options)
        with self._observe("remove", obj):
            self._impl.remove(
                RemoveData(
                    ctx=ensure_context(ctx),
                    object=CloudObject(obj),
                    version=opts.version,
                )
            )

    def attrs(
        self, obj: str, *options: AttrsOption, ctx: Context | None = None
    ) -> ObjectAttrs:
        opts = fold_attrs(options)
        with self._observe("attrs", obj):
            return self._impl.attrs(
                AttrsData(
                    ctx=ensure_context(ctx),
                    object=CloudObject(obj),
                    version=opts.version,
                )
            )

    def exists(
        self, obj: str, *options: ExistsOption, ctx: Context | None = None
    ) -> bool:
        opts = fold_exists(options)
        with self._observe("exists", obj):
            try:
                self._impl.attrs(
                    AttrsData(
                        ctx=ensure_context(ctx),
                        object=CloudObject(obj),
                        version=opts.version,
                    )
                )
            except ObjectNotExistError:
                return False
            return True


class _ObservedUploader:
    """Delegates to a driver uploader and records the commit as ``upload``."""

    def __init__(self, inner: Uploader, bucket: Bucket, obj: str) -> None:
        self._inner = inner
        self._bucket = bucket
        self._object = obj

    def write(self, data: bytes) -> int:
        return self._inner.write(data)

    def complete(self) -> ObjectAttrs:
        with self._bucket._observe("upload", self._object):
            return self._inner.complete()

    def abort(self, cause: BaseException | None = None) -> None:
        self._inner.abort(cause)

    def __enter__(self) -> "_ObservedUploader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is None:
            self.complete()
        else:
            self.abort(exc)


class _ObservedCursor:
    """Delegates to a driver cursor and records the listing when it ends.

    The listing ends when the cursor is exhausted, raises, or is closed.
    """

    def __init__(self, inner: Iterator[ListEntry], bucket: Bucket, start: float) -> None:
        self._inner = inner
        self._bucket = bucket
        self._start = start
        self._recorded = False

    @property
    def pages_fetched(self) -> int:
        return self._inner.pages_fetched  # type: ignore[attr-defined]

    @property
    def remaining(self) -> int | None:
        return self._inner.remaining  # type: ignore[attr-defined]

    def _finish(self, outcome: str) -> None:
        if self._recorded:
            return
        self._recorded = True
        self._bucket._record("list", None, outcome, time.perf_counter() - self._start)

    def __iter__(self) -> "_ObservedCursor":
        return self

    def __next__(self) -> ListEntry:
        try:
            return next(self._inner)
        except StopIteration:
            self._finish("ok")
            raise
        except BaseException as exc:
            self._finish(_outcome(exc))
            raise

    def close(self) -> None:
        self._finish("ok")
        close = getattr(self._inner, "close", None)
        if close is not None:
            close()
