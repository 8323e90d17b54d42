#!/usr/bin/env python3
"""
Achievement Feed command-line client

Drives a FeedController against the HTTP backend for manual use and smoke
testing:
1. list: load one or more pages of a feed source and print them
2. like: toggle the current user's like on an achievement
3. comment / delete-comment: add or remove a comment
4. config: print the effective configuration (secrets redacted)

Exit status is 0 on success and 1 on any failure.
"""

import argparse
import asyncio
import json
import sys
from typing import Optional

from config import config, get_logger
from controller import FeedController
from errors import FeedError
from feed_api import HttpFeedAPI
from filters import ALL_TYPES, filter_items, newest_first, statistics
from models import Author, FeedItem, FeedSource
from mutations import Notification
from telemetry import init_telemetry, trace_span
from utils import truncate_string

# Module-specific logger
logger = get_logger("cli")
init_telemetry("achievement-feed-cli")


class FeedClientRunner:
    """Runs one CLI command against a freshly built controller."""

    def __init__(self, source: FeedSource = FeedSource.ALL, user_id: Optional[str] = None,
                 base_url: Optional[str] = None) -> None:
        self.source = source
        self.user = Author(id=user_id)
        self.api = HttpFeedAPI(base_url=base_url)
        self.controller = FeedController(self.api, self.user, initial_source=source)
        self.controller.on_notification(self._print_notification)

    @staticmethod
    def _print_notification(notification: Notification) -> None:
        print(f"[{notification.level}] {notification.message}", file=sys.stderr)

    @staticmethod
    def format_item(item: FeedItem) -> str:
        when = item.created_at.strftime("%Y-%m-%d") if item.created_at else "----------"
        liked = "*" if item.is_liked else " "
        title = truncate_string(item.title or "(untitled)", 60)
        return (
            f"{item.id:>6} {when} [{item.type}] {title} "
            f"by {item.author.display_name} {liked}{item.like_count} likes, {item.comment_count} comments"
        )

    @trace_span("cli.list", tracer_name="cli", attr_from_args=lambda self, pages, item_type=ALL_TYPES, query="": {"feed.pages": pages})
    async def list_items(self, pages: int, item_type: str = ALL_TYPES, query: str = "") -> bool:
        await self.controller.switch_source(self.source)
        while self.controller.state.error is None and pages > 1 and self.controller.state.has_more:
            await self.controller.load_more()
            pages -= 1

        state = self.controller.state
        if state.error:
            logger.error(f"❌ {state.error}")
            return False

        items = newest_first(filter_items(state.items, item_type, query))
        for item in items:
            print(self.format_item(item))
        stats = statistics(state.items)
        print(f"-- {len(items)} shown, {stats['total']} loaded, more available: {state.has_more}")
        return True

    async def like(self, item_id: str) -> bool:
        await self.controller.open_item(item_id)
        ok = await self.controller.toggle_like(item_id)
        if ok:
            print(self.format_item(self.controller.get_item(item_id)))
        return ok

    async def comment(self, item_id: str, text: str) -> bool:
        await self.controller.open_item(item_id)
        created = await self.controller.add_comment(item_id, text)
        if created is None:
            return False
        print(f"Comment {created.id} added to {item_id}")
        return True

    async def delete_comment(self, item_id: str, comment_id: str) -> bool:
        await self.controller.open_item(item_id)
        await self.controller.load_comments(item_id)
        ok = await self.controller.delete_comment(item_id, comment_id)
        if ok:
            print(f"Comment {comment_id} deleted from {item_id}")
        return ok

    async def close(self) -> None:
        await self.controller.close()


async def run_command(args: argparse.Namespace) -> bool:
    runner = FeedClientRunner(FeedSource(args.source), args.user_id, args.base_url)
    try:
        if args.mode == "list":
            return await runner.list_items(args.pages, args.type, args.query)
        if args.mode == "like":
            return await runner.like(args.item_id)
        if args.mode == "comment":
            return await runner.comment(args.item_id, " ".join(args.text))
        if args.mode == "delete-comment":
            return await runner.delete_comment(args.item_id, args.comment_id)
        return False
    except FeedError as e:
        logger.error(f"❌ {e}")
        return False
    finally:
        await runner.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Achievement Feed client")
    parser.add_argument("--source", choices=[s.value for s in FeedSource], default=FeedSource.ALL.value,
                        help="Feed source to read from")
    parser.add_argument("--user-id", type=str,
                        help="Id of the signed-in user (needed to delete comments)")
    parser.add_argument("--base-url", type=str,
                        help="Backend base URL (defaults to FEED_API_BASE_URL)")
    sub = parser.add_subparsers(dest="mode", required=True)

    list_parser = sub.add_parser("list", help="Load and print feed pages")
    list_parser.add_argument("--pages", type=int, default=1, help="Number of pages to load")
    list_parser.add_argument("--type", default=ALL_TYPES, help="Only show items of this type")
    list_parser.add_argument("--query", default="", help="Only show items matching this text")

    like_parser = sub.add_parser("like", help="Toggle your like on an achievement")
    like_parser.add_argument("item_id")

    comment_parser = sub.add_parser("comment", help="Comment on an achievement")
    comment_parser.add_argument("item_id")
    comment_parser.add_argument("text", nargs="+")

    delete_parser = sub.add_parser("delete-comment", help="Delete a comment")
    delete_parser.add_argument("item_id")
    delete_parser.add_argument("comment_id")

    sub.add_parser("config", help="Show effective configuration")
    return parser


def main():
    """Main entry point."""
    args = build_parser().parse_args()

    try:
        if args.mode == "config":
            print(json.dumps(config.get_config_summary(), indent=2, default=str))
            sys.exit(0)

        success = asyncio.run(run_command(args))
        sys.exit(0 if success else 1)

    except KeyboardInterrupt:
        logger.info("👋 Feed client shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
