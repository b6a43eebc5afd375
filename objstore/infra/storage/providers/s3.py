"""S3-compatible storage driver.

Works with AWS S3, MinIO, and other S3-compatible object storage services.
S3 version IDs are opaque strings and are passed through untouched.

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

import logging
import weakref
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import boto3
from botocore import UNSIGNED
from botocore.config import Config
from botocore.exceptions import ClientError

from objstore.common.config import BucketConfig, BucketProvider, S3ProviderConfig
from objstore.infra.storage.context import Context
from objstore.infra.storage.cursor import ListCursor
from objstore.infra.storage.errors import (
    ObjectNotExistError,
    OperationCancelledError,
    PreconditionFailedError,
    StorageError,
)
from objstore.infra.storage.providers.base import ClientCachingDriver
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

logger = logging.getLogger("objstore.storage.s3")

# Content type S3 assigns when none is supplied.
S3_DEFAULT_CONTENT_TYPE = "binary/octet-stream"

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchVersion", "NotFound", "404"})
_PRECONDITION_CODES = frozenset(
    {"PreconditionFailed", "412", "ConditionalRequestConflict", "409"}
)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def map_error(exc: ClientError) -> StorageError | None:
    """Translate a botocore error into the storage taxonomy.

    Returns ``None`` when the error has no backend-agnostic equivalent and
    must propagate unmodified.
    """
    code = _error_code(exc)
    if code in _NOT_FOUND_CODES:
        return ObjectNotExistError(f"object does not exist ({code})")
    if code in _PRECONDITION_CODES:
        return PreconditionFailedError(f"precondition failed ({code})")
    return None


@contextmanager
def _native_errors() -> Iterator[None]:
    try:
        yield
    except ClientError as exc:
        mapped = map_error(exc)
        if mapped is None:
            raise
        raise mapped from exc


def _object_attrs(obj: CloudObject, response: dict[str, Any]) -> ObjectAttrs:
    size = response.get("ContentLength")
    return ObjectAttrs(
        object=obj,
        version=str(response.get("VersionId") or ""),
        content_type=response.get("ContentType"),
        size=int(size) if size is not None else 0,
        etag=str(response.get("ETag") or ""),
    )


class S3Driver(ClientCachingDriver[Any]):
    """Driver for providers declaring an ``s3`` configuration."""

    provider_name = "s3"

    def matches(self, provider: BucketProvider) -> bool:
        return provider.s3 is not None

    def _build_client(self, provider: BucketProvider) -> Any:
        assert provider.s3 is not None
        return self._build_s3_client(provider.s3)

    @staticmethod
    def _build_s3_client(cfg: S3ProviderConfig) -> Any:
        """Create a boto3 S3 client from the provider configuration."""
        config_kwargs: dict[str, Any] = {
            "s3": {"addressing_style": cfg.addressing_style or "auto"}
        }
        if cfg.anonymous:
            config_kwargs["signature_version"] = UNSIGNED

        return boto3.client(
            "s3",
            endpoint_url=cfg.endpoint_url,
            region_name=cfg.region,
            aws_access_key_id=cfg.access_key_id,
            aws_secret_access_key=cfg.secret_access_key,
            use_ssl=bool(cfg.use_ssl),
            config=Config(**config_kwargs),
        )

    def _new_bucket(
        self, client: Any, provider: BucketProvider, bucket_cfg: BucketConfig
    ) -> "S3Bucket":
        assert provider.s3 is not None
        return S3Bucket(
            client,
            bucket_cfg,
            part_size=provider.s3.upload_part_size,
            page_size=provider.list_page_size,
        )


class S3Bucket:
    """A physical S3 bucket bound to a shared boto3 client."""

    def __init__(
        self,
        client: Any,
        cfg: BucketConfig,
        *,
        part_size: int,
        page_size: int,
    ) -> None:
        self._client = client
        self._cfg = cfg
        self._part_size = part_size
        self._page_size = page_size

    @property
    def cloud_name(self) -> str:
        return self._cfg.cloud_name

    def _params(self, obj: CloudObject, version: str = "") -> dict[str, Any]:
        params: dict[str, Any] = {"Bucket": self.cloud_name, "Key": str(obj)}
        if version:
            params["VersionId"] = version
        return params

    def download(self, data: DownloadData) -> ObjectReader:
        data.ctx.raise_if_done()
        with _native_errors():
            response = self._client.get_object(**self._params(data.object, data.version))
        return ObjectReader(
            response["Body"],
            ctx=data.ctx,
            attrs=_object_attrs(data.object, response),
        )

    def upload(self, data: UploadData) -> "S3Uploader":
        data.ctx.raise_if_done()
        return S3Uploader(
            self._client,
            self.cloud_name,
            data.object,
            ctx=data.ctx.child(),
            attrs=data.attrs,
            pre=data.pre,
            part_size=self._part_size,
        )

    def list(self, data: ListData) -> "S3ListCursor":
        return S3ListCursor(
            self._client,
            self.cloud_name,
            ctx=data.ctx,
            prefix=data.prefix,
            limit=data.limit,
            page_size=min(self._page_size, 1000),
        )

    def remove(self, data: RemoveData) -> None:
        data.ctx.raise_if_done()
        params = self._params(data.object, data.version)
        with _native_errors():
            # DeleteObject succeeds for missing keys, so existence is checked first.
            self._client.head_object(**params)
            data.ctx.raise_if_done()
            self._client.delete_object(**params)

    def attrs(self, data: AttrsData) -> ObjectAttrs:
        data.ctx.raise_if_done()
        with _native_errors():
            response = self._client.head_object(**self._params(data.object, data.version))
        return _object_attrs(data.object, response)


class S3Uploader:
    """Streams an upload into S3.

    Bytes are buffered up to ``part_size``; an upload that never fills a part
    is committed with a single ``PutObject``, larger uploads switch to a
    multipart upload. ``Preconditions.not_exists`` is sent as
    ``If-None-Match: *`` on the committing request, so S3 evaluates it
    atomically. Nothing becomes visible before ``complete`` succeeds.
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        obj: CloudObject,
        *,
        ctx: Context,
        attrs: UploadAttrs,
        pre: Preconditions,
        part_size: int,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._object = obj
        self._ctx = ctx
        # Detach from the caller context if the uploader is dropped unfinished.
        weakref.finalize(self, ctx.release)
        self._attrs = attrs
        self._pre = pre
        self._part_size = part_size
        self._buffer = bytearray()
        self._size = 0
        self._upload_id: str | None = None
        self._parts: list[dict[str, Any]] = []
        self._result: ObjectAttrs | None = None
        self._finished = False

    def _create_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": str(self._object)}
        if self._attrs.content_type:
            params["ContentType"] = self._attrs.content_type
        return params

    def _conditions(self) -> dict[str, Any]:
        if self._pre.not_exists:
            return {"IfNoneMatch": "*"}
        return {}

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
            self._buffer.extend(data)
            self._size += len(data)
            while len(self._buffer) >= self._part_size:
                chunk = bytes(self._buffer[: self._part_size])
                del self._buffer[: self._part_size]
                self._upload_part(chunk)
        except BaseException:
            self._discard()
            raise
        return len(data)

    def _upload_part(self, chunk: bytes) -> None:
        with _native_errors():
            if self._upload_id is None:
                response = self._client.create_multipart_upload(**self._create_params())
                upload_id = response.get("UploadId")
                if not upload_id:
                    raise StorageError("S3 response missing UploadId")
                self._upload_id = str(upload_id)
            self._ctx.raise_if_done()
            part_number = len(self._parts) + 1
            response = self._client.upload_part(
                Bucket=self._bucket,
                Key=str(self._object),
                UploadId=self._upload_id,
                PartNumber=part_number,
                Body=chunk,
            )
        self._parts.append({"ETag": response.get("ETag"), "PartNumber": part_number})

    def complete(self) -> ObjectAttrs:
        if self._result is not None:
            return self._result
        self._ensure_writable()
        try:
            with _native_errors():
                if self._upload_id is None:
                    response = self._client.put_object(
                        **self._create_params(),
                        Body=bytes(self._buffer),
                        **self._conditions(),
                    )
                else:
                    if self._buffer:
                        self._upload_part(bytes(self._buffer))
                    self._ctx.raise_if_done()
                    response = self._client.complete_multipart_upload(
                        Bucket=self._bucket,
                        Key=str(self._object),
                        UploadId=self._upload_id,
                        MultipartUpload={"Parts": self._parts},
                        **self._conditions(),
                    )
        except BaseException:
            self._discard()
            raise

        self._buffer.clear()
        self._finished = True
        self._ctx.release()
        self._result = ObjectAttrs(
            object=self._object,
            version=str(response.get("VersionId") or ""),
            content_type=self._attrs.content_type or S3_DEFAULT_CONTENT_TYPE,
            size=self._size,
            etag=str(response.get("ETag") or ""),
        )
        logger.debug(
            "upload completed bucket=%s object=%s size=%s",
            self._bucket,
            self._object,
            self._size,
            extra={"extra": {"bucket": self._bucket, "size": self._size}},
        )
        return self._result

    def abort(self, cause: BaseException | None = None) -> None:
        if self._finished:
            return
        self._ctx.cancel(cause)
        self._discard()

    def _discard(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._buffer.clear()
        self._ctx.release()
        if self._upload_id is None:
            return
        upload_id, self._upload_id = self._upload_id, None
        try:
            self._client.abort_multipart_upload(
                Bucket=self._bucket,
                Key=str(self._object),
                UploadId=upload_id,
            )
        except ClientError as exc:
            # The upload is already unusable; S3 expires leftover parts by lifecycle rule.
            logger.warning(
                "failed to abort multipart upload bucket=%s object=%s upload_id=%s error=%s",
                self._bucket,
                self._object,
                upload_id,
                exc,
            )

    def __enter__(self) -> "S3Uploader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is None:
            self.complete()
        else:
            self.abort(exc)


class S3ListCursor(ListCursor):
    """Pages through ``ListObjectsV2`` using continuation tokens."""

    def __init__(self, client: Any, bucket: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._client = client
        self._bucket = bucket

    def _fetch_page(
        self, token: str | None, max_items: int
    ) -> tuple[Sequence[ListEntry], str | None]:
        params: dict[str, Any] = {"Bucket": self._bucket, "MaxKeys": max_items}
        if self._prefix:
            params["Prefix"] = self._prefix
        if token:
            params["ContinuationToken"] = token
        with _native_errors():
            response = self._client.list_objects_v2(**params)

        entries = [
            ListEntry(
                object=CloudObject(item["Key"]),
                size=int(item.get("Size") or 0),
                etag=str(item.get("ETag") or ""),
            )
            for item in response.get("Contents", [])
        ]
        next_token = response.get("NextContinuationToken")
        if not response.get("IsTruncated") or not next_token:
            next_token = None
        return entries, next_token
