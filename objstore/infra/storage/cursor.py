"""Explicit pagination cursor shared by all drivers."""

from __future__ import annotations

from collections import deque
from typing import Iterator, Sequence

from objstore.infra.storage.context import Context
from objstore.infra.storage.types import ListEntry

DEFAULT_PAGE_SIZE = 1000


class ListCursor(Iterator[ListEntry]):
    """Lazy, forward-only listing over a backend's pages.

    The cursor keeps the next-page token and the number of entries it may
    still yield. Pages are fetched only when the buffer runs dry, never more
    than ``remaining`` entries are requested, and once the limit is reached no
    further page requests are issued. A raised error is terminal.

    Subclasses implement ``_fetch_page``.
    """

    def __init__(
        self,
        *,
        ctx: Context,
        prefix: str = "",
        limit: int | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if limit is not None and limit < 0:
            raise ValueError("limit must not be negative")
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._ctx = ctx
        self._prefix = prefix
        self._remaining = limit
        self._page_size = page_size
        self._buffer: deque[ListEntry] = deque()
        self._token: str | None = None
        self._exhausted = False
        self.pages_fetched = 0

    @property
    def remaining(self) -> int | None:
        return self._remaining

    def _fetch_page(
        self, token: str | None, max_items: int
    ) -> tuple[Sequence[ListEntry], str | None]:
        """Fetch up to ``max_items`` entries starting at ``token``.

        Returns the entries and the token of the next page, or ``None`` when
        the listing is complete.
        """
        raise NotImplementedError

    def __iter__(self) -> "ListCursor":
        return self

    def __next__(self) -> ListEntry:
        if self._remaining is not None and self._remaining <= 0:
            self._finish()
            raise StopIteration
        while not self._buffer:
            if self._exhausted:
                raise StopIteration
            self._fill()
        self._ctx.raise_if_done()
        entry = self._buffer.popleft()
        if self._remaining is not None:
            self._remaining -= 1
        return entry

    def _fill(self) -> None:
        try:
            self._ctx.raise_if_done()
            max_items = self._page_size
            if self._remaining is not None:
                max_items = min(max_items, self._remaining)
            entries, token = self._fetch_page(self._token, max_items)
        except BaseException:
            self._finish()
            raise
        self.pages_fetched += 1
        self._buffer.extend(entries)
        self._token = token
        if token is None:
            self._exhausted = True

    def _finish(self) -> None:
        self._exhausted = True
        self._buffer.clear()
        self._token = None

    def close(self) -> None:
        """Stop the cursor; no further pages will be requested."""
        self._finish()
