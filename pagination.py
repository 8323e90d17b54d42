#!/usr/bin/env python3
"""
Page merging and per-source pagination state.

``merge`` folds a fetched page into the ordered item list; ``PaginationCursor``
tracks which page a source is on, whether more pages exist and which loading
phase it is in.
"""

from enum import Enum
from typing import Iterable, Optional, Sequence, Set, Tuple

from config import get_logger
from models import FeedItem, ItemId, PaginationMeta

logger = get_logger("pagination")


class MergeMode(str, Enum):
    REPLACE = "replace"
    APPEND = "append"


class Phase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    LOADING_MORE = "loading_more"
    ERROR = "error"


def _unique(items: Iterable[FeedItem], seen: Set[ItemId]) -> Tuple[FeedItem, ...]:
    result = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        result.append(item)
    return tuple(result)


def merge(existing: Sequence[FeedItem], page: Sequence[FeedItem], mode: MergeMode) -> Tuple[FeedItem, ...]:
    """Combine a fetched page with the current items.

    REPLACE returns the page itself with duplicate ids dropped (first wins).
    APPEND returns ``existing`` followed by page items whose id is not already
    present. Runs in O(n + m) and never modifies ``existing``.
    """
    if MergeMode(mode) is MergeMode.REPLACE:
        merged = _unique(page, set())
        if len(merged) != len(page):
            logger.warning(f"Server page contained {len(page) - len(merged)} duplicate item(s)")
        return merged

    seen = {item.id for item in existing}
    return tuple(existing) + _unique(page, seen)


def compute_has_more(
    pagination: Optional[PaginationMeta],
    received_count: int,
    page_size: int,
) -> bool:
    """Decide whether another page exists.

    Server metadata wins: ``current_page < last_page``, else
    ``current_page * per_page < total``. Without metadata this falls back to
    the page-length heuristic ``received_count >= page_size``, which reports
    one extra empty page when the last page happens to be exactly full.
    """
    if pagination is not None:
        if pagination.last_page is not None:
            return pagination.current_page < pagination.last_page
        if pagination.total is not None:
            per_page = pagination.per_page or page_size
            return pagination.current_page * per_page < pagination.total
    return received_count >= page_size


class PaginationCursor:
    """Pagination state machine for one feed source.

    Phases: IDLE -> LOADING -> LOADED | ERROR, then LOADED -> LOADING_MORE ->
    LOADED | ERROR for subsequent pages. At most one fetch is pending at a time.
    """

    def __init__(self, page_size: int) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.page_size = page_size
        self.page = 1
        self.has_more = True
        self.phase = Phase.IDLE
        self.pending_page: Optional[int] = None
        self.loaded = False
        self.pagination: Optional[PaginationMeta] = None

    def __repr__(self) -> str:
        return (
            f"PaginationCursor(page={self.page}, has_more={self.has_more}, "
            f"phase={self.phase.value}, pending_page={self.pending_page})"
        )

    @property
    def is_loading(self) -> bool:
        return self.phase in (Phase.LOADING, Phase.LOADING_MORE)

    def reset(self) -> None:
        """Back to page 1 with no pending fetch; cached items are the controller's concern."""
        self.page = 1
        self.has_more = True
        self.phase = Phase.IDLE
        self.pending_page = None
        self.pagination = None

    def begin_initial(self) -> int:
        """Start a page-1 fetch and return the page number to request."""
        self.reset()
        self.phase = Phase.LOADING
        self.pending_page = 1
        return 1

    def can_load_more(self) -> bool:
        return self.loaded and self.has_more and not self.is_loading

    def begin_more(self) -> Optional[int]:
        """Start a next-page fetch; returns None (no-op) when loading or exhausted."""
        if not self.can_load_more():
            return None
        self.phase = Phase.LOADING_MORE
        self.pending_page = self.page + 1
        return self.pending_page

    def complete(self, received_count: int, pagination: Optional[PaginationMeta] = None) -> None:
        """Record a successful fetch of the pending page."""
        if self.pending_page is None:
            raise RuntimeError("complete() called without a pending fetch")
        self.page = self.pending_page
        self.pending_page = None
        self.pagination = pagination
        self.has_more = compute_has_more(pagination, received_count, self.page_size)
        self.phase = Phase.LOADED
        self.loaded = True

    def _drop_pending(self) -> None:
        # A page-1 fetch resets the page counter, so cached items no longer
        # line up with it until a page 1 lands; load_more stays a no-op meanwhile.
        if self.pending_page == 1:
            self.loaded = False
        self.pending_page = None

    def fail(self) -> None:
        self._drop_pending()
        self.phase = Phase.ERROR

    def abandon(self) -> None:
        """Drop the pending fetch without a result (cancelled or superseded)."""
        self._drop_pending()
        self.phase = Phase.LOADED if self.loaded else Phase.IDLE
