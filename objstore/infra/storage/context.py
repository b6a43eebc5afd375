"""Cancellation and deadline context passed along with storage operations."""

from __future__ import annotations

import threading
import time

from objstore.infra.storage.errors import DeadlineExceededError, OperationCancelledError


class Context:
    """Caller-owned cancellation scope.

    A context is cancelled explicitly through ``cancel`` or implicitly when its
    deadline passes or its parent is cancelled. Cancelling a child never
    affects the parent.
    """

    def __init__(
        self,
        *,
        deadline: float | None = None,
        parent: "Context | None" = None,
    ) -> None:
        if parent is not None and parent.deadline is not None:
            if deadline is None or parent.deadline < deadline:
                deadline = parent.deadline
        self._deadline = deadline
        self._parent = parent
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._cause: BaseException | None = None
        self._children: list[Context] = []
        if parent is not None:
            parent._attach(self)

    @classmethod
    def background(cls) -> "Context":
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float, parent: "Context | None" = None) -> "Context":
        return cls(deadline=time.monotonic() + seconds, parent=parent)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def cause(self) -> BaseException | None:
        return self._cause

    def child(self) -> "Context":
        """Derive a context cancelled with this one but cancelable on its own."""
        return Context(parent=self)

    def cancel(self, cause: BaseException | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._cause = cause
            self._event.set()
            children = list(self._children)
            self._children.clear()
        for child in children:
            child.cancel(cause)

    def _attach(self, child: "Context") -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
            cause = self._cause
        child.cancel(cause)

    def release(self) -> None:
        """Stop tracking this context in its parent once it is no longer needed."""
        if self._parent is None:
            return
        with self._parent._lock:
            try:
                self._parent._children.remove(self)
            except ValueError:
                pass

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def done(self) -> bool:
        return self.cancelled or self.expired()

    def err(self) -> OperationCancelledError | None:
        """Return the error describing why the context is done, if it is."""
        if self._event.is_set():
            return OperationCancelledError(cause=self._cause)
        if self.expired():
            return DeadlineExceededError("deadline exceeded")
        return None

    def raise_if_done(self) -> None:
        error = self.err()
        if error is not None:
            raise error

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; returns ``cancelled``."""
        return self._event.wait(timeout)


def ensure_context(ctx: Context | None) -> Context:
    return ctx if ctx is not None else Context.background()
