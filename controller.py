#!/usr/bin/env python3
"""
Feed controller: the composition root presentation code talks to.

A ``FeedController`` owns, per feed source, a pagination cursor, an item
cache and a generation counter. Page fetches go through a
``RequestCoordinator``; likes and comments go through an
``OptimisticMutationEngine`` that edits the cache only via this controller's
``get_item``/``update_item``.

Every page request is tagged with its source's generation at the time it was
issued. ``switch_source`` and ``refresh`` bump the generation, so a late
response from an older request is dropped instead of overwriting newer data.
"""

from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from config import config, get_logger
from coordinator import RequestCoordinator
from errors import (
    BusyError,
    FeedError,
    RateLimitedError,
    SupersededError,
    ValidationError,
    action_message,
)
from feed_api import FeedAPI
from filters import ALL_TYPES, filter_items, statistics
from models import Author, Comment, FeedItem, FeedSource, ItemId, LikeResult
from mutations import MutationKind, Notification, OptimisticMutationEngine, reconcile_like
from pagination import MergeMode, PaginationCursor, Phase, merge
from telemetry import trace_span

logger = get_logger("controller")

FETCH_ACTION = "fetch achievements"

# Caller mistakes propagate; operational failures were already notified
_CALLER_ERRORS = (ValidationError,)


@dataclass(frozen=True)
class FeedViewModel:
    """Read-only snapshot of the active source for rendering."""
    items: Tuple[FeedItem, ...]
    phase: Phase
    error: Optional[str]
    has_more: bool
    current_source: FeedSource

    @property
    def loading(self) -> bool:
        """Full-list spinner."""
        return self.phase is Phase.LOADING

    @property
    def loading_more(self) -> bool:
        """Incremental spinner below the list."""
        return self.phase is Phase.LOADING_MORE


@dataclass
class SourceState:
    source: FeedSource
    cursor: PaginationCursor
    items: Tuple[FeedItem, ...] = ()
    generation: int = 0
    error: Optional[str] = None


def channel_key(source: FeedSource) -> str:
    return f"feed:{FeedSource(source).value}"


def _fetch_error_message(error: FeedError) -> str:
    if isinstance(error, RateLimitedError):
        return str(error)
    return str(error) or action_message(FETCH_ACTION)


class FeedController:
    """Owns feed state for one viewer and exposes it to presentation code.

    Args:
        api: Backend implementation of FeedAPI
        current_user: The signed-in user (used for likes and comment authorship)
        page_size: Items per page (defaults to config.FEED_PAGE_SIZE)
        coordinator: Optional RequestCoordinator (one is created per controller otherwise)
        initial_source: Source shown before the first switch_source call
    """

    def __init__(
        self,
        api: FeedAPI,
        current_user: Author,
        *,
        page_size: Optional[int] = None,
        coordinator: Optional[RequestCoordinator] = None,
        initial_source: FeedSource = FeedSource.ALL,
    ) -> None:
        self.api = api
        self.current_user = current_user
        self.page_size = config.FEED_PAGE_SIZE if page_size is None else page_size
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")
        self.coordinator = coordinator or RequestCoordinator()
        self._source = FeedSource(initial_source)
        self._states: Dict[FeedSource, SourceState] = {}
        # Items opened directly (detail view) that are not on any loaded page
        self._opened: Dict[str, FeedItem] = {}
        self._listeners: List[Callable[[FeedViewModel], None]] = []
        self._notification_listeners: List[Callable[[Notification], None]] = []
        self.mutations = OptimisticMutationEngine(api, self, current_user, self._notify)

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------
    def _state(self, source: FeedSource) -> SourceState:
        source = FeedSource(source)
        state = self._states.get(source)
        if state is None:
            state = SourceState(source=source, cursor=PaginationCursor(self.page_size))
            self._states[source] = state
        return state

    @property
    def source(self) -> FeedSource:
        return self._source

    @property
    def state(self) -> FeedViewModel:
        current = self._state(self._source)
        return FeedViewModel(
            items=current.items,
            phase=current.cursor.phase,
            error=current.error,
            has_more=current.cursor.has_more,
            current_source=self._source,
        )

    @property
    def items(self) -> Tuple[FeedItem, ...]:
        return self._state(self._source).items

    def subscribe(self, listener: Callable[[FeedViewModel], None]) -> Callable[[], None]:
        """Call ``listener`` with a fresh view model on every change; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def on_notification(self, listener: Callable[[Notification], None]) -> Callable[[], None]:
        self._notification_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._notification_listeners:
                self._notification_listeners.remove(listener)

        return _unsubscribe

    def _emit(self) -> None:
        snapshot = self.state
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Feed state listener failed")

    def _notify(self, notification: Notification) -> None:
        for listener in list(self._notification_listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed")

    # ------------------------------------------------------------------
    # Item store used by the mutation engine
    # ------------------------------------------------------------------
    def get_item(self, item_id: ItemId) -> Optional[FeedItem]:
        active = self._state(self._source)
        for state in [active] + [s for s in self._states.values() if s is not active]:
            for item in state.items:
                if str(item.id) == str(item_id):
                    return item
        return self._opened.get(str(item_id))

    def update_item(self, item_id: ItemId, fn: Callable[[FeedItem], FeedItem]) -> Optional[FeedItem]:
        """Apply ``fn`` to every cached copy of the item, keeping source caches consistent."""
        updated: Optional[FeedItem] = None
        changed = False
        for state in self._states.values():
            new_items = []
            touched = False
            for item in state.items:
                if str(item.id) == str(item_id):
                    new_item = fn(item)
                    if new_item is not item:
                        touched = True
                    if updated is None or state.source is self._source:
                        updated = new_item
                    new_items.append(new_item)
                else:
                    new_items.append(item)
            if touched:
                state.items = tuple(new_items)
                changed = True
        opened = self._opened.get(str(item_id))
        if opened is not None:
            new_item = fn(opened)
            if new_item is not opened:
                self._opened[str(item_id)] = new_item
                changed = True
            if updated is None:
                updated = new_item
        if changed:
            self._emit()
        return updated

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------
    def _abandon(self, source: FeedSource) -> None:
        state = self._states.get(source)
        if state is None or not state.cursor.is_loading:
            return
        state.generation += 1
        self.coordinator.cancel(channel_key(source))
        state.cursor.abandon()
        logger.debug(f"Abandoned pending fetch for {source.value}")

    @trace_span(
        "controller.switch_source",
        tracer_name="controller",
        attr_from_args=lambda self, source: {"feed.source": FeedSource(source).value},
    )
    async def switch_source(self, source: FeedSource) -> None:
        """Make ``source`` active and load its first page (Replace).

        Cached items of that source, if any, stay visible while it loads; an
        outstanding fetch of the previously active source is cancelled.
        """
        source = FeedSource(source)
        if source is not self._source:
            self._abandon(self._source)
            self._source = source
        await self._load_first_page(source)

    @trace_span("controller.refresh", tracer_name="controller")
    async def refresh(self) -> None:
        """Reload page 1 of the current source, replacing its items."""
        await self._load_first_page(self._source)

    @trace_span("controller.load_more", tracer_name="controller")
    async def load_more(self) -> None:
        """Append the next page; a no-op while loading or when no more pages exist."""
        state = self._state(self._source)
        page_number = state.cursor.begin_more()
        if page_number is None:
            logger.debug(f"load_more ignored for {state.source.value}: {state.cursor!r}")
            return
        state.error = None
        self._emit()
        await self._fetch(state, page_number, MergeMode.APPEND, state.generation, supersede=False)

    async def _load_first_page(self, source: FeedSource) -> None:
        state = self._state(source)
        state.generation += 1
        generation = state.generation
        page_number = state.cursor.begin_initial()
        state.error = None
        self._emit()
        await self._fetch(state, page_number, MergeMode.REPLACE, generation, supersede=True)

    async def _fetch(
        self,
        state: SourceState,
        page_number: int,
        mode: MergeMode,
        generation: int,
        *,
        supersede: bool,
    ) -> None:
        source = state.source
        page_size = state.cursor.page_size

        async def _call():
            return await self.api.fetch_page(source, page_number, page_size)

        try:
            page = await self.coordinator.execute(channel_key(source), _call, supersede=supersede)
        except SupersededError:
            logger.debug(f"Fetch of {source.value} page {page_number} superseded")
            return
        except BusyError:
            logger.debug(f"Fetch of {source.value} page {page_number} rejected: channel busy")
            if state.generation == generation:
                state.cursor.abandon()
                self._emit()
            return
        except FeedError as e:
            if state.generation != generation:
                logger.debug(f"Ignoring error from stale fetch of {source.value}: {e}")
                return
            logger.error(f"Failed to fetch {source.value} page {page_number}: {e}")
            state.cursor.fail()
            state.error = _fetch_error_message(e)
            self._emit()
            return

        if state.generation != generation:
            logger.debug(f"Discarding stale page {page_number} of {source.value} (generation {generation})")
            return

        state.items = merge(state.items, page.items, mode)
        state.cursor.complete(len(page.items), page.pagination)
        state.error = None
        logger.info(
            f"Loaded {source.value} page {page_number}: {len(page.items)} items "
            f"({len(state.items)} cached, has_more={state.cursor.has_more})"
        )
        self._emit()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def is_pending(self, item_id: ItemId, kind: MutationKind) -> bool:
        """True while a mutation of this kind is in flight; the matching control should be disabled."""
        return self.mutations.is_pending(item_id, kind)

    async def toggle_like(self, item_id: ItemId) -> bool:
        """Like or unlike an item. Returns False if rejected as busy or if it failed (already notified)."""
        try:
            await self.mutations.toggle_like(item_id)
            return True
        except BusyError:
            logger.debug(f"Like toggle for {item_id} ignored: previous toggle still pending")
            return False
        except FeedError as e:
            if isinstance(e, _CALLER_ERRORS):
                raise
            return False

    async def add_comment(self, item_id: ItemId, text: str) -> Optional[Comment]:
        """Add a comment; raises ValidationError for empty text, returns None on failure."""
        try:
            return await self.mutations.add_comment(item_id, text)
        except BusyError:
            logger.debug(f"Comment on {item_id} ignored: previous comment still pending")
            return None
        except FeedError as e:
            if isinstance(e, _CALLER_ERRORS):
                raise
            return None

    async def delete_comment(self, item_id: ItemId, comment_id) -> bool:
        """Delete a comment; raises NotAuthorizedError for someone else's comment, False on failure."""
        try:
            return await self.mutations.delete_comment(item_id, comment_id)
        except BusyError:
            logger.debug(f"Comment deletion on {item_id} ignored: previous deletion still pending")
            return False
        except FeedError as e:
            if isinstance(e, _CALLER_ERRORS):
                raise
            return False

    async def open_item(self, item_id: ItemId) -> FeedItem:
        """Return the cached item, fetching and keeping it when no loaded page has it.

        Raises NetworkOrServerError if the fetch fails.
        """
        item = self.get_item(item_id)
        if item is not None:
            return item
        item = await self.api.fetch_item(item_id)
        self._opened[str(item_id)] = item
        self._emit()
        return item

    async def load_likes(self, item_id: ItemId) -> bool:
        """Fetch the likers list (and authoritative like state) for an item."""
        if self.mutations.is_pending(item_id, MutationKind.LIKE):
            logger.debug(f"Skipping likes reload for {item_id}: like change pending")
            return False
        try:
            fresh = await self.api.fetch_item(item_id)
        except FeedError as e:
            logger.warning(f"Could not load likes for {item_id}: {e}")
            self._notify(Notification(level="error", message=action_message("load likes"), action="load likes"))
            return False

        result = LikeResult(like_count=fresh.like_count, likes=fresh.likes, is_liked=fresh.is_liked)
        user = self.current_user
        return self.update_item(item_id, lambda item: reconcile_like(item, result, user)) is not None

    async def load_comments(self, item_id: ItemId) -> bool:
        """Fetch the full comment list; the count then equals the list length."""
        try:
            comments = await self.api.fetch_comments(item_id)
        except FeedError as e:
            logger.warning(f"Could not load comments for {item_id}: {e}")
            self._notify(Notification(level="error", message=action_message("load comments"), action="load comments"))
            return False

        def _apply(item: FeedItem) -> FeedItem:
            pending = tuple(c for c in item.comments if c.is_pending)
            merged = tuple(comments) + pending
            return replace(item, comments=merged, comment_count=len(merged))

        return self.update_item(item_id, _apply) is not None

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------
    def filtered(self, item_type: str = ALL_TYPES, query: str = "") -> List[FeedItem]:
        return filter_items(self.items, item_type, query)

    def statistics(self) -> Dict[str, object]:
        return statistics(self.items)

    async def close(self) -> None:
        for source in list(self._states):
            self._abandon(source)
        close = getattr(self.api, "close", None)
        if close is not None:
            await close()


__all__ = ["FeedController", "FeedViewModel", "SourceState", "channel_key"]
