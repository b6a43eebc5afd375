"""Object storage abstraction layer.

Application code talks to a ``Bucket``; the ``StorageManager`` binds each
bucket to the driver implementing its provider (S3-compatible services, the
local filesystem, or memory).
"""

from .bucket import Bucket
from .context import Context
from .errors import (
    ClientConstructionError,
    DeadlineExceededError,
    ObjectNotExistError,
    OperationCancelledError,
    PreconditionFailedError,
    StorageError,
    UnsupportedProviderError,
)
from .manager import StorageManager, UnknownBucketError, get_manager
from .options import WithPreconditions, WithUploadAttrs, WithVersion
from .types import (
    CloudObject,
    ListEntry,
    ObjectAttrs,
    ObjectReader,
    Preconditions,
    UploadAttrs,
    Uploader,
)

__all__ = [
    "Bucket",
    "ClientConstructionError",
    "CloudObject",
    "Context",
    "DeadlineExceededError",
    "ListEntry",
    "ObjectAttrs",
    "ObjectNotExistError",
    "ObjectReader",
    "OperationCancelledError",
    "PreconditionFailedError",
    "Preconditions",
    "StorageError",
    "StorageManager",
    "UnknownBucketError",
    "UnsupportedProviderError",
    "UploadAttrs",
    "Uploader",
    "WithPreconditions",
    "WithUploadAttrs",
    "WithVersion",
    "get_manager",
]
