#!/usr/bin/env python3
"""
Data model for the achievement feed.

Feed entities are immutable dataclasses: every cache update produces a new
object, so snapshots for rollback are plain references and equality is
structural. The ``*_from_raw`` helpers normalize the backend's JSON records
into these types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from config import get_logger

logger = get_logger("models")

ItemId = Union[int, str]


class FeedSource(str, Enum):
    """Interchangeable feeds, each with its own pagination and cache."""
    ALL = "all"
    CONNECTIONS = "connections"
    POPULAR = "popular"
    MINE = "mine"


DEFAULT_ITEM_TYPE = "achievement"


@dataclass(frozen=True)
class Author:
    """Denormalized user reference; display-only."""
    id: Optional[ItemId]
    first_name: str = ""
    last_name: str = ""
    avatar_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or "Unknown User"


@dataclass(frozen=True)
class Comment:
    """A comment on a feed item.

    ``id`` is None while the comment only exists locally; ``temp_id`` then
    identifies the synthesized record until the server assigns a real id.
    """
    id: Optional[ItemId]
    author: Author
    content: str
    created_at: Optional[datetime] = None
    temp_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.id is None


@dataclass(frozen=True)
class FeedItem:
    id: ItemId
    type: str = DEFAULT_ITEM_TYPE
    author: Author = field(default_factory=lambda: Author(id=None))
    created_at: Optional[datetime] = None
    title: str = ""
    description: str = ""
    organization: Optional[str] = None
    like_count: int = 0
    is_liked: bool = False
    # None means the likers list was not sent; treated as a best-effort cache
    likes: Optional[Tuple[Author, ...]] = None
    comment_count: int = 0
    comments: Tuple[Comment, ...] = ()


@dataclass(frozen=True)
class PaginationMeta:
    current_page: int
    last_page: Optional[int] = None
    total: Optional[int] = None
    per_page: Optional[int] = None


@dataclass(frozen=True)
class Page:
    """One server response: a batch of items plus optional pagination metadata."""
    items: Tuple[FeedItem, ...]
    pagination: Optional[PaginationMeta] = None


@dataclass(frozen=True)
class LikeResult:
    """Authoritative like state returned by the server; absent fields are None."""
    like_count: Optional[int] = None
    likes: Optional[Tuple[Author, ...]] = None
    is_liked: Optional[bool] = None


@dataclass(frozen=True)
class CommentResult:
    comment: Comment
    comment_count: Optional[int] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Convert an ISO8601 string or epoch number to an aware datetime (UTC); None if unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.debug(f"Out-of-range epoch timestamp {value!r}")
            return None
    try:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable timestamp {value!r}")
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return default


def author_from_raw(profile: Optional[Dict[str, Any]], user_id: Optional[ItemId] = None) -> Author:
    profile = profile or {}
    return Author(
        id=user_id if user_id is not None else profile.get("user_id", profile.get("id")),
        first_name=profile.get("first_name") or "",
        last_name=profile.get("last_name") or "",
        avatar_url=profile.get("profile_picture") or profile.get("avatar_url"),
    )


def _author_of(raw: Dict[str, Any]) -> Author:
    """Resolve the author of a comment or like record, whichever shape the backend used."""
    for key in ("user_profile", "user", "author"):
        nested = raw.get(key)
        if isinstance(nested, dict):
            return author_from_raw(nested, raw.get("user_id"))
    return author_from_raw(raw, raw.get("user_id", raw.get("id")))


def comment_from_raw(raw: Dict[str, Any]) -> Comment:
    return Comment(
        id=raw.get("id"),
        author=_author_of(raw),
        content=raw.get("content") or "",
        created_at=parse_timestamp(raw.get("created_at")),
    )


def likes_from_raw(raw_likes: Any) -> Optional[Tuple[Author, ...]]:
    if not isinstance(raw_likes, list):
        return None
    return tuple(_author_of(like) for like in raw_likes if isinstance(like, dict))


def item_from_raw(raw: Dict[str, Any]) -> FeedItem:
    """Normalize one achievement record from the API into a FeedItem.

    Type-specific sub-objects (project/certificate/job/award) fill in a missing
    title, description or organization.
    """
    type_specific: Dict[str, Any] = {}
    for key in ("project", "certificate", "job", "award"):
        if isinstance(raw.get(key), dict):
            type_specific = raw[key]
            break

    raw_comments = raw.get("comments")
    comments = tuple(
        comment_from_raw(c) for c in raw_comments if isinstance(c, dict)
    ) if isinstance(raw_comments, list) else ()

    return FeedItem(
        id=raw.get("id", type_specific.get("id")),
        type=raw.get("type") or DEFAULT_ITEM_TYPE,
        author=author_from_raw(raw.get("user_profile"), raw.get("user_id", type_specific.get("user_id"))),
        created_at=parse_timestamp(raw.get("created_at") or type_specific.get("created_at")),
        title=raw.get("title") or type_specific.get("title") or "",
        description=raw.get("description") or type_specific.get("description") or "",
        organization=raw.get("organization") or type_specific.get("organization"),
        like_count=_as_int(raw.get("like_count")),
        is_liked=bool(raw.get("is_liked", False)),
        likes=likes_from_raw(raw.get("likes")),
        comment_count=_as_int(raw.get("comment_count"), len(comments)),
        comments=comments,
    )


def _unwrap(payload: Any) -> Any:
    """Strip the ``{success, data, message}`` envelope when present."""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def pagination_from_raw(raw: Any) -> Optional[PaginationMeta]:
    if not isinstance(raw, dict) or raw.get("current_page") is None:
        return None
    last_page = raw.get("last_page")
    total = raw.get("total")
    per_page = raw.get("per_page")
    return PaginationMeta(
        current_page=_as_int(raw.get("current_page"), 1),
        last_page=_as_int(last_page) if last_page is not None else None,
        total=_as_int(total) if total is not None else None,
        per_page=_as_int(per_page) if per_page is not None else None,
    )


def page_from_response(payload: Any) -> Page:
    """Build a Page from any of the envelopes the feed endpoints return.

    Accepted: ``{success, data: {achievements, pagination}}``, ``{data: [...]}``
    or a bare list. Anything else yields an empty page.
    """
    data = _unwrap(payload)
    raw_items: List[Any]
    pagination = None
    if isinstance(data, dict) and isinstance(data.get("achievements"), list):
        raw_items = data["achievements"]
        pagination = pagination_from_raw(data.get("pagination"))
    elif isinstance(data, list):
        raw_items = data
    else:
        logger.warning(f"Unexpected feed response format: {type(payload).__name__}")
        raw_items = []

    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        item = item_from_raw(raw)
        if item.id is None:
            logger.warning("Skipping feed record without id")
            continue
        items.append(item)
    return Page(items=tuple(items), pagination=pagination)


def like_result_from_response(payload: Any) -> LikeResult:
    data = _unwrap(payload)
    if not isinstance(data, dict):
        return LikeResult()
    like_count = data.get("like_count")
    is_liked = data.get("is_liked")
    return LikeResult(
        like_count=_as_int(like_count) if like_count is not None else None,
        likes=likes_from_raw(data.get("likes")),
        is_liked=bool(is_liked) if is_liked is not None else None,
    )


def comment_result_from_response(payload: Any) -> Optional[CommentResult]:
    data = _unwrap(payload)
    if not isinstance(data, dict):
        return None
    raw_comment = data.get("comment") if isinstance(data.get("comment"), dict) else data
    if raw_comment.get("id") is None:
        return None
    count = data.get("comment_count")
    return CommentResult(
        comment=comment_from_raw(raw_comment),
        comment_count=_as_int(count) if count is not None else None,
    )


def comments_from_response(payload: Any) -> List[Comment]:
    data = _unwrap(payload)
    if isinstance(data, dict):
        data = data.get("comments", [])
    if not isinstance(data, list):
        return []
    return [comment_from_raw(c) for c in data if isinstance(c, dict)]
