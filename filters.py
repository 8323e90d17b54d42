#!/usr/bin/env python3
"""Client-side filtering and statistics over loaded feed items. Never touches the cache."""

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Sequence

from models import FeedItem

ALL_TYPES = "all"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _matches(item: FeedItem, query: str) -> bool:
    haystacks = (item.title, item.description, item.organization or "", item.author.display_name)
    return any(query in (text or "").lower() for text in haystacks)


def filter_items(items: Iterable[FeedItem], item_type: str = ALL_TYPES, query: str = "") -> List[FeedItem]:
    """Keep items of ``item_type`` (or every type for "all") matching ``query``.

    The query is trimmed and compared case-insensitively against title,
    description, organization and author name. Order is preserved.
    """
    needle = (query or "").strip().lower()
    result = []
    for item in items:
        if item_type and item_type != ALL_TYPES and item.type != item_type:
            continue
        if needle and not _matches(item, needle):
            continue
        result.append(item)
    return result


def statistics(items: Sequence[FeedItem]) -> Dict[str, Any]:
    """Count items overall and per type."""
    by_type = Counter(item.type or "unknown" for item in items)
    return {"total": len(items), "by_type": dict(by_type)}


def newest_first(items: Iterable[FeedItem]) -> List[FeedItem]:
    """Sort by creation time, newest first; undated items go last."""
    return sorted(items, key=lambda item: item.created_at or _EPOCH, reverse=True)
