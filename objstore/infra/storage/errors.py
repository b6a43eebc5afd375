"""Backend-agnostic storage errors.

Drivers translate their native failures into ``ObjectNotExistError`` and
``PreconditionFailedError`` whenever the meaning is the same. Every other
native error is re-raised unmodified so callers keep the provider diagnostics.
"""

from __future__ import annotations


class StorageError(RuntimeError):
    """Base class for errors raised by the storage layer itself."""


class ObjectNotExistError(StorageError):
    """Raised when the target object, or the pinned version of it, does not exist."""


class PreconditionFailedError(StorageError):
    """Raised when an upload precondition was violated by the backend."""


class OperationCancelledError(StorageError):
    """Raised when the caller's context was cancelled before the operation finished."""

    def __init__(self, message: str = "operation cancelled", *, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class DeadlineExceededError(OperationCancelledError):
    """Raised when the caller's context deadline passed."""


class UnsupportedProviderError(StorageError):
    """Raised when no registered driver matches a bucket provider."""


class ClientConstructionError(StorageError):
    """Raised when a driver cannot build its physical client.

    No operation can proceed for the provider afterwards, so callers should
    treat this as fatal and abort startup.
    """
