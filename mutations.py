#!/usr/bin/env python3
"""
Optimistic mutations on cached feed items.

Every operation follows the same template: apply the change to the cache
immediately, send the request, then either reconcile with the server's
answer or roll back. Reconciliation always sets fields from the
authoritative values and never increments from them, so a redelivered
response cannot double-count.

The engine never holds its own copy of an item; it reads and writes through
the owning controller's ``ItemStore`` interface.
"""

from asyncio import CancelledError
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, NoReturn, Optional, Protocol, Set, Tuple
from uuid import uuid4

from config import get_logger
from errors import (
    BusyError,
    FeedError,
    NetworkOrServerError,
    NotAuthorizedError,
    ValidationError,
    action_message,
)
from feed_api import FeedAPI
from models import Author, Comment, FeedItem, ItemId, LikeResult, utcnow
from telemetry import trace_span

logger = get_logger("mutations")


class MutationKind(str, Enum):
    LIKE = "like"
    UNLIKE = "unlike"
    ADD_COMMENT = "add_comment"
    DELETE_COMMENT = "delete_comment"


# Like and unlike share one pending slot per item
_SLOTS = {
    MutationKind.LIKE: "like",
    MutationKind.UNLIKE: "like",
    MutationKind.ADD_COMMENT: "add_comment",
    MutationKind.DELETE_COMMENT: "delete_comment",
}

ACTIONS = {
    MutationKind.LIKE: "like achievement",
    MutationKind.UNLIKE: "unlike achievement",
    MutationKind.ADD_COMMENT: "add comment",
    MutationKind.DELETE_COMMENT: "delete comment",
}


@dataclass(frozen=True)
class MutationIntent:
    kind: MutationKind
    target_item_id: ItemId
    snapshot_before_change: FeedItem
    submitted_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Notification:
    """Transient user-facing message about a mutation outcome."""
    level: str
    message: str
    action: Optional[str] = None


class ItemStore(Protocol):
    def get_item(self, item_id: ItemId) -> Optional[FeedItem]:
        ...

    def update_item(self, item_id: ItemId, fn: Callable[[FeedItem], FeedItem]) -> Optional[FeedItem]:
        """Replace every cached copy of ``item_id`` with ``fn(copy)``; returns the updated item."""
        ...


def _same_user(a: Author, b: Author) -> bool:
    return a.id is not None and b.id is not None and str(a.id) == str(b.id)


def _align_likers(likes: Optional[Tuple[Author, ...]], liked: bool, user: Author) -> Optional[Tuple[Author, ...]]:
    """Make ``user`` present in ``likes`` exactly when ``liked``; None stays None."""
    if likes is None:
        return None
    without_user = tuple(a for a in likes if not _same_user(a, user))
    if not liked:
        return without_user
    if len(without_user) < len(likes):
        return likes
    return without_user + (user,)


def apply_like(item: FeedItem, liked: bool, user: Author) -> FeedItem:
    """Optimistically set the current user's like state, keeping count and likers in step."""
    if item.is_liked == liked:
        return item
    likes = _align_likers(item.likes, liked, user)
    delta = 1 if liked else -1
    return replace(item, is_liked=liked, like_count=max(item.like_count + delta, 0), likes=likes)


def reconcile_like(item: FeedItem, result: LikeResult, user: Author) -> FeedItem:
    """Overwrite like fields with whatever the server reported; keep the rest.

    A cached likers list the server did not resend is spliced so the current
    user appears in it exactly when ``is_liked`` is set.
    """
    likes = result.likes if result.likes is not None else item.likes
    if result.is_liked is not None:
        is_liked = result.is_liked
    elif result.likes is not None:
        is_liked = any(_same_user(a, user) for a in result.likes)
    else:
        is_liked = item.is_liked
    like_count = result.like_count if result.like_count is not None else item.like_count
    if result.likes is None:
        likes = _align_likers(likes, is_liked, user)
    return replace(item, is_liked=is_liked, like_count=like_count, likes=likes)


def _restore_like_fields(item: FeedItem, snapshot: FeedItem) -> FeedItem:
    return replace(
        item,
        is_liked=snapshot.is_liked,
        like_count=snapshot.like_count,
        likes=snapshot.likes,
    )


def _find_comment(item: FeedItem, comment_id) -> Tuple[int, Optional[Comment]]:
    for index, comment in enumerate(item.comments):
        if comment.id is not None and str(comment.id) == str(comment_id):
            return index, comment
        if comment.id is None and comment.temp_id == comment_id:
            return index, comment
    return -1, None


def _remove_temp_comment(item: FeedItem, temp_id: str) -> FeedItem:
    remaining = tuple(c for c in item.comments if c.temp_id != temp_id)
    if len(remaining) == len(item.comments):
        return item
    return replace(item, comments=remaining, comment_count=max(item.comment_count - 1, 0))


class OptimisticMutationEngine:
    """Apply, send, reconcile-or-rollback for likes and comments.

    Args:
        api: Backend operations
        store: Owner of the cached items (the feed controller)
        current_user: Identity used for optimistic likes and synthesized comments
        notify: Callback receiving a Notification when a mutation fails
    """

    def __init__(
        self,
        api: FeedAPI,
        store: ItemStore,
        current_user: Author,
        notify: Optional[Callable[[Notification], None]] = None,
    ) -> None:
        self.api = api
        self.store = store
        self.current_user = current_user
        self._notify = notify or (lambda notification: None)
        self._pending: Dict[Tuple[str, str], MutationIntent] = {}
        self._cancelled_comments: Set[str] = set()

    @staticmethod
    def _slot(item_id: ItemId, kind: MutationKind) -> Tuple[str, str]:
        return str(item_id), _SLOTS[kind]

    def is_pending(self, item_id: ItemId, kind: MutationKind) -> bool:
        return self._slot(item_id, kind) in self._pending

    def _require_item(self, item_id: ItemId, action: str) -> FeedItem:
        item = self.store.get_item(item_id)
        if item is None:
            raise ValidationError(f"Achievement {item_id} is not loaded", action=action)
        return item

    def _claim(self, intent: MutationIntent) -> Tuple[str, str]:
        slot = self._slot(intent.target_item_id, intent.kind)
        if slot in self._pending:
            raise BusyError(
                f"A {_SLOTS[intent.kind]} change is already pending for {intent.target_item_id}",
                action=ACTIONS[intent.kind],
            )
        self._pending[slot] = intent
        return slot

    def _raise_failure(self, kind: MutationKind, error: Exception) -> NoReturn:
        action = ACTIONS[kind]
        message = action_message(action)
        logger.warning(f"{message}; rolled back local change: {error}")
        self._notify(Notification(level="error", message=message, action=action))
        if isinstance(error, NetworkOrServerError):
            raise error
        status = getattr(error, "status", None)
        raise NetworkOrServerError(f"{message}: {error}", action=action, status=status) from error

    @trace_span("mutations.toggle_like", tracer_name="mutations")
    async def toggle_like(self, item_id: ItemId) -> Optional[FeedItem]:
        """Flip the current user's like on an item.

        Raises BusyError while a previous like/unlike for the item is pending,
        and NetworkOrServerError (after rollback and notification) on failure.
        Returns the reconciled item, or None if it left the cache meanwhile.
        """
        item = self._require_item(item_id, ACTIONS[MutationKind.LIKE])
        kind = MutationKind.UNLIKE if item.is_liked else MutationKind.LIKE
        intent = MutationIntent(kind=kind, target_item_id=item_id, snapshot_before_change=item)
        slot = self._claim(intent)
        user = self.current_user
        try:
            self.store.update_item(item_id, lambda it: apply_like(it, kind is MutationKind.LIKE, user))
            try:
                if kind is MutationKind.LIKE:
                    result = await self.api.like(item_id)
                else:
                    result = await self.api.unlike(item_id)
            except CancelledError:
                self.store.update_item(item_id, lambda it: _restore_like_fields(it, item))
                raise
            except Exception as e:
                self.store.update_item(item_id, lambda it: _restore_like_fields(it, item))
                self._raise_failure(kind, e)

            updated = self.store.update_item(item_id, lambda it: reconcile_like(it, result, user))
            if updated is not None:
                logger.debug(f"{kind.value} {item_id} confirmed (count={updated.like_count})")
            return updated
        finally:
            self._pending.pop(slot, None)

    @trace_span("mutations.add_comment", tracer_name="mutations")
    async def add_comment(self, item_id: ItemId, text: str) -> Optional[Comment]:
        """Append a comment optimistically and swap in the server's record on success.

        Returns the stored comment, or None when the pending comment was
        deleted locally before the server answered.
        """
        action = ACTIONS[MutationKind.ADD_COMMENT]
        content = (text or "").strip()
        if not content:
            raise ValidationError("Comment text cannot be empty", action=action)
        item = self._require_item(item_id, action)
        intent = MutationIntent(kind=MutationKind.ADD_COMMENT, target_item_id=item_id, snapshot_before_change=item)
        slot = self._claim(intent)

        temp_id = f"tmp-{uuid4().hex}"
        temp = Comment(id=None, author=self.current_user, content=content, created_at=utcnow(), temp_id=temp_id)
        try:
            self.store.update_item(
                item_id,
                lambda it: replace(it, comments=it.comments + (temp,), comment_count=it.comment_count + 1),
            )
            try:
                result = await self.api.add_comment(item_id, content)
            except CancelledError:
                self.store.update_item(item_id, lambda it: _remove_temp_comment(it, temp_id))
                raise
            except Exception as e:
                if temp_id in self._cancelled_comments:
                    logger.info(f"Comment on {item_id} failed after local deletion; nothing to roll back: {e}")
                    return None
                self.store.update_item(item_id, lambda it: _remove_temp_comment(it, temp_id))
                self._raise_failure(MutationKind.ADD_COMMENT, e)

            if temp_id in self._cancelled_comments:
                await self._discard_created_comment(item_id, result.comment)
                return None

            def _confirm(it: FeedItem) -> FeedItem:
                index, _ = _find_comment(it, temp_id)
                duplicate, _ = _find_comment(it, result.comment.id)
                comments = list(it.comments)
                count = it.comment_count
                if duplicate >= 0:
                    # Already delivered by another path; drop the placeholder
                    if index >= 0:
                        del comments[index]
                        count -= 1
                elif index >= 0:
                    comments[index] = result.comment
                else:
                    comments.append(result.comment)
                    count += 1
                if result.comment_count is not None:
                    count = result.comment_count
                return replace(it, comments=tuple(comments), comment_count=max(count, 0))

            self.store.update_item(item_id, _confirm)
            return result.comment
        finally:
            self._pending.pop(slot, None)
            self._cancelled_comments.discard(temp_id)

    async def _discard_created_comment(self, item_id: ItemId, comment: Comment) -> None:
        """The user removed a comment before it was confirmed; delete the server copy too."""
        try:
            await self.api.delete_comment(comment.id)
            logger.info(f"Deleted comment {comment.id} on {item_id}, cancelled before confirmation")
        except FeedError as e:
            logger.error(f"Could not delete cancelled comment {comment.id} on {item_id}: {e}")
            self._notify(Notification(
                level="warning",
                message=action_message(ACTIONS[MutationKind.DELETE_COMMENT]),
                action=ACTIONS[MutationKind.DELETE_COMMENT],
            ))

    @trace_span("mutations.delete_comment", tracer_name="mutations")
    async def delete_comment(self, item_id: ItemId, comment_id) -> bool:
        """Remove a comment optimistically; reinsert it at its old position on failure.

        ``comment_id`` may be a server id or the temp id of a pending comment;
        the latter is removed locally and the pending add is cancelled.
        """
        action = ACTIONS[MutationKind.DELETE_COMMENT]
        item = self._require_item(item_id, action)
        index, comment = _find_comment(item, comment_id)
        if comment is None:
            raise ValidationError(f"Comment {comment_id} not found on {item_id}", action=action)

        user = self.current_user
        if not (_same_user(user, item.author) or _same_user(user, comment.author)):
            raise NotAuthorizedError("Only the post author or the comment author can delete this comment", action=action)

        if comment.is_pending:
            self._cancelled_comments.add(comment.temp_id)
            self.store.update_item(item_id, lambda it: _remove_temp_comment(it, comment.temp_id))
            logger.debug(f"Cancelled pending comment {comment.temp_id} on {item_id}")
            return True

        intent = MutationIntent(kind=MutationKind.DELETE_COMMENT, target_item_id=item_id, snapshot_before_change=item)
        slot = self._claim(intent)

        def _remove(it: FeedItem) -> FeedItem:
            pos, _ = _find_comment(it, comment.id)
            if pos < 0:
                return it
            comments = it.comments[:pos] + it.comments[pos + 1:]
            return replace(it, comments=comments, comment_count=max(it.comment_count - 1, 0))

        def _reinsert(it: FeedItem) -> FeedItem:
            if _find_comment(it, comment.id)[1] is not None:
                return it
            pos = min(index, len(it.comments))
            comments = it.comments[:pos] + (comment,) + it.comments[pos:]
            return replace(it, comments=comments, comment_count=it.comment_count + 1)

        try:
            self.store.update_item(item_id, _remove)
            try:
                await self.api.delete_comment(comment.id)
            except CancelledError:
                self.store.update_item(item_id, _reinsert)
                raise
            except Exception as e:
                self.store.update_item(item_id, _reinsert)
                self._raise_failure(MutationKind.DELETE_COMMENT, e)
            return True
        finally:
            self._pending.pop(slot, None)


__all__ = [
    "MutationKind",
    "MutationIntent",
    "Notification",
    "ItemStore",
    "OptimisticMutationEngine",
    "apply_like",
    "reconcile_like",
]
