#!/usr/bin/env python3
"""
Feed API client.

Defines the ``FeedAPI`` protocol the feed core consumes and an aiohttp
implementation against the portal's REST routes. Transport failures and
non-2xx answers are raised as ``NetworkOrServerError`` carrying the HTTP
status, so rate-limit responses (429) can be recognized upstream.
"""

from asyncio import TimeoutError
from typing import Any, Dict, List, Optional, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import NetworkOrServerError, action_message
from models import (
    Comment,
    CommentResult,
    FeedItem,
    FeedSource,
    ItemId,
    LikeResult,
    Page,
    comment_result_from_response,
    comments_from_response,
    item_from_raw,
    like_result_from_response,
    page_from_response,
)
from telemetry import trace_span

logger = get_logger("feed_api")

HTTP_NO_CONTENT = 204
HTTP_UNPROCESSABLE = 422


class FeedAPI(Protocol):
    """Logical operations the feed core needs from the backend."""

    async def fetch_page(self, source: FeedSource, page: int, page_size: int) -> Page:
        """Fetch one page of a feed source."""
        ...

    async def like(self, item_id: ItemId) -> LikeResult:
        ...

    async def unlike(self, item_id: ItemId) -> LikeResult:
        ...

    async def add_comment(self, item_id: ItemId, text: str) -> CommentResult:
        """Create a comment; the result carries the server-assigned id."""
        ...

    async def delete_comment(self, comment_id: ItemId) -> bool:
        ...

    async def fetch_item(self, item_id: ItemId) -> FeedItem:
        """Fetch full details of one item, including its likers."""
        ...

    async def fetch_comments(self, item_id: ItemId) -> List[Comment]:
        ...


def format_validation_errors(errors: Dict[str, Any]) -> str:
    """Flatten a 422 ``errors`` mapping into 'Field name: message' lines."""
    lines: List[str] = []
    for field_name, messages in errors.items():
        label = field_name[:1].upper() + field_name[1:].replace("_", " ")
        if isinstance(messages, list):
            lines.extend(f"{label}: {msg}" for msg in messages)
        else:
            lines.append(f"{label}: {messages}")
    return "\n".join(lines)


class HttpFeedAPI:
    """aiohttp implementation of FeedAPI.

    Args:
        base_url: API root, defaults to config.FEED_API_BASE_URL
        token: Bearer token, defaults to config.FEED_API_TOKEN
        session: Optional shared ClientSession to reuse (not closed by this client)
        endpoints: Optional mapping of source value -> path overriding config.SOURCE_ENDPOINTS
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        session: Optional[ClientSession] = None,
        endpoints: Optional[Dict[str, str]] = None,
    ) -> None:
        self.base_url = (base_url or config.FEED_API_BASE_URL).rstrip("/")
        self.token = token if token is not None else config.FEED_API_TOKEN
        self.endpoints = dict(endpoints or config.SOURCE_ENDPOINTS)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "HttpFeedAPI":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": config.USER_AGENT,
            "X-Requested-With": "XMLHttpRequest",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def endpoint_for(self, source: FeedSource) -> str:
        return self.endpoints.get(FeedSource(source).value, f"/{FeedSource(source).value}")

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Perform one request and return the decoded body.

        204 and empty bodies decode to a success envelope without data.
        """
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(
                method, url, headers=self._headers(), params=params, json=json
            ) as resp:
                content_type = resp.headers.get("Content-Type", "")
                body: Any = None
                if resp.status != HTTP_NO_CONTENT and resp.content_length != 0:
                    if "application/json" in content_type:
                        body = await resp.json()
                    else:
                        body = await resp.text()

                if resp.status >= 400:
                    raise self._error_from_response(resp.status, resp.reason, body, action)

                if body is None or body == "":
                    return {"success": True, "data": None}
                if isinstance(body, str):
                    raise NetworkOrServerError(
                        f"{action_message(action)}: server returned non-JSON response ({resp.status})",
                        action=action,
                        status=resp.status,
                    )
                return body
        except TimeoutError as e:
            logger.error(f"{method} {path} timed out after {config.HTTP_TIMEOUT}s")
            raise NetworkOrServerError(f"{action_message(action)}: timed out", action=action) from e
        except (ClientError, ValueError) as e:
            # ValueError covers malformed JSON bodies
            logger.error(f"{method} {path} failed: {e}")
            raise NetworkOrServerError(f"{action_message(action)}: {e}", action=action) from e

    def _error_from_response(self, status: int, reason: Optional[str], body: Any, action: str) -> NetworkOrServerError:
        details = body if isinstance(body, dict) else {}
        if status == HTTP_UNPROCESSABLE and isinstance(details.get("errors"), dict):
            message = format_validation_errors(details["errors"]) or details.get("message") or "Validation failed"
        elif details.get("message"):
            message = str(details["message"])
        elif isinstance(body, str) and body.strip():
            message = body.strip()
        else:
            message = f"{status} {reason or ''}".strip()
        logger.warning(f"API error ({status}) while trying to {action}: {message}")
        return NetworkOrServerError(
            f"{action_message(action)}: {message}",
            action=action,
            status=status,
            details=details,
        )

    @trace_span(
        "feed_api.fetch_page",
        tracer_name="feed_api",
        attr_from_args=lambda self, source, page, page_size: {
            "feed.source": FeedSource(source).value,
            "feed.page": page,
            "feed.page_size": page_size,
        },
    )
    async def fetch_page(self, source: FeedSource, page: int, page_size: int) -> Page:
        payload = await self._request(
            "GET",
            self.endpoint_for(source),
            f"fetch {FeedSource(source).value} achievements",
            params={"page": str(page), "per_page": str(page_size)},
        )
        return page_from_response(payload)

    @trace_span("feed_api.like", tracer_name="feed_api")
    async def like(self, item_id: ItemId) -> LikeResult:
        payload = await self._request(
            "POST", "/achievements/like", "like achievement", json={"achievement_id": item_id}
        )
        return like_result_from_response(payload)

    @trace_span("feed_api.unlike", tracer_name="feed_api")
    async def unlike(self, item_id: ItemId) -> LikeResult:
        # The backend toggles on the same route
        payload = await self._request(
            "POST", "/achievements/like", "unlike achievement", json={"achievement_id": item_id}
        )
        return like_result_from_response(payload)

    @trace_span("feed_api.add_comment", tracer_name="feed_api")
    async def add_comment(self, item_id: ItemId, text: str) -> CommentResult:
        payload = await self._request(
            "POST",
            "/achievements/comment",
            "add comment",
            json={"achievement_id": item_id, "content": text},
        )
        result = comment_result_from_response(payload)
        if result is None:
            raise NetworkOrServerError(
                f"{action_message('add comment')}: response did not include the created comment",
                action="add comment",
            )
        return result

    @trace_span("feed_api.delete_comment", tracer_name="feed_api")
    async def delete_comment(self, comment_id: ItemId) -> bool:
        payload = await self._request("DELETE", f"/achievements/comment/{comment_id}", "delete comment")
        if isinstance(payload, dict) and payload.get("success") is False:
            raise NetworkOrServerError(
                f"{action_message('delete comment')}: {payload.get('message') or 'rejected by server'}",
                action="delete comment",
                details=payload,
            )
        return True

    @trace_span("feed_api.fetch_item", tracer_name="feed_api")
    async def fetch_item(self, item_id: ItemId) -> FeedItem:
        payload = await self._request("GET", f"/achievements/{item_id}", "fetch achievement")
        data = payload.get("data", payload) if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise NetworkOrServerError(
                f"{action_message('fetch achievement')}: unexpected response format",
                action="fetch achievement",
            )
        return item_from_raw(data)

    @trace_span("feed_api.fetch_comments", tracer_name="feed_api")
    async def fetch_comments(self, item_id: ItemId) -> List[Comment]:
        payload = await self._request("GET", f"/achievements/{item_id}/comments", "fetch comments")
        return comments_from_response(payload)


__all__ = ["FeedAPI", "HttpFeedAPI", "format_validation_errors"]
