import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from config import config
from controller import FeedController
from errors import NetworkOrServerError, is_rate_limit_error
from feed_fakes import ME
from feed_api import HttpFeedAPI, format_validation_errors
from models import FeedSource


def _build_app(seen):
    async def list_achievements(request):
        seen.append((request.path, dict(request.query), request.headers.get("Authorization")))
        return web.json_response({
            "success": True,
            "data": {
                "achievements": [{"id": 1, "title": "First"}, {"id": 2, "title": "Second"}],
                "pagination": {"current_page": 1, "last_page": 3, "per_page": 2, "total": 6},
            },
        })

    async def popular(request):
        seen.append((request.path, dict(request.query), None))
        return web.json_response({"data": [{"id": 9}]})

    async def like(request):
        return web.json_response({"message": "Too Many Attempts."}, status=429)

    async def comment(request):
        body = await request.json()
        if not body.get("content"):
            return web.json_response(
                {"message": "The given data was invalid.", "errors": {"content": ["The content field is required."]}},
                status=422,
            )
        return web.json_response({
            "success": True,
            "data": {"comment": {"id": 31, "content": body["content"], "user_id": 1}, "comment_count": 4},
        }, status=201)

    async def delete_comment(request):
        seen.append((request.path, {}, None))
        return web.Response(status=204)

    async def slow_comments(request):
        await asyncio.sleep(1.0)
        return web.json_response({"data": []})

    async def broken_item(request):
        return web.Response(status=500, text="<html>oops</html>", content_type="text/html")

    app = web.Application()
    app.router.add_get("/achievements", list_achievements)
    app.router.add_get("/popular-achievements", popular)
    app.router.add_post("/achievements/like", like)
    app.router.add_post("/achievements/comment", comment)
    app.router.add_delete("/achievements/comment/{comment_id}", delete_comment)
    app.router.add_get("/achievements/{item_id}/comments", slow_comments)
    app.router.add_get("/achievements/{item_id}", broken_item)
    return app


@pytest_asyncio.fixture
async def backend():
    seen = []
    server = test_utils.TestServer(_build_app(seen))
    await server.start_server()
    api = HttpFeedAPI(base_url=str(server.make_url("/")), token="secret-token")
    try:
        yield api, seen
    finally:
        await api.close()
        await server.close()


@pytest.mark.asyncio
async def test_fetch_page_sends_paging_params_and_token(backend):
    api, seen = backend

    page = await api.fetch_page(FeedSource.ALL, 1, 2)

    assert [item.id for item in page.items] == [1, 2]
    assert page.pagination.last_page == 3
    path, query, auth = seen[0]
    assert path == "/achievements"
    assert query == {"page": "1", "per_page": "2"}
    assert auth == "Bearer secret-token"


@pytest.mark.asyncio
async def test_fetch_page_uses_source_endpoint(backend):
    api, seen = backend
    page = await api.fetch_page(FeedSource.POPULAR, 2, 10)
    assert [item.id for item in page.items] == [9]
    assert seen[0][0] == "/popular-achievements"


@pytest.mark.asyncio
async def test_throttle_response_is_a_rate_limit_error(backend):
    api, _ = backend
    with pytest.raises(NetworkOrServerError) as excinfo:
        await api.like(1)
    assert excinfo.value.status == 429
    assert is_rate_limit_error(excinfo.value)


@pytest.mark.asyncio
async def test_validation_errors_are_flattened(backend):
    api, _ = backend
    with pytest.raises(NetworkOrServerError) as excinfo:
        await api.add_comment(1, "")
    assert excinfo.value.status == 422
    assert "Content: The content field is required." in str(excinfo.value)


@pytest.mark.asyncio
async def test_add_comment_returns_server_record(backend):
    api, _ = backend
    result = await api.add_comment(1, "Great")
    assert result.comment.id == 31
    assert result.comment.content == "Great"
    assert result.comment_count == 4


@pytest.mark.asyncio
async def test_delete_comment_accepts_no_content(backend):
    api, seen = backend
    assert await api.delete_comment(31) is True
    assert seen[-1][0] == "/achievements/comment/31"


@pytest.mark.asyncio
async def test_non_json_error_keeps_status(backend):
    api, _ = backend
    with pytest.raises(NetworkOrServerError) as excinfo:
        await api.fetch_item(5)
    assert excinfo.value.status == 500
    assert not is_rate_limit_error(excinfo.value)


def test_format_validation_errors():
    text = format_validation_errors({"content": ["Too short", "Bad word"], "achievement_id": "Missing"})
    assert text.splitlines() == ["Content: Too short", "Content: Bad word", "Achievement id: Missing"]


def test_endpoint_overrides():
    api = HttpFeedAPI(base_url="http://example.test/api/", token="", endpoints={"mine": "/me/achievements"})
    assert api.base_url == "http://example.test/api"
    assert api.endpoint_for(FeedSource.MINE) == "/me/achievements"
    assert "Authorization" not in api._headers()


@pytest.mark.asyncio
async def test_timeout_is_reported_as_network_error(backend, monkeypatch):
    api, _ = backend
    monkeypatch.setattr(config, "HTTP_TIMEOUT", 0.2)

    with pytest.raises(NetworkOrServerError) as excinfo:
        await api.fetch_comments(1)

    assert str(excinfo.value) == "Failed to fetch comments: timed out"
    assert excinfo.value.status is None


@pytest.mark.asyncio
async def test_controller_recovers_from_timeout(backend, monkeypatch):
    api, _ = backend
    monkeypatch.setattr(config, "HTTP_TIMEOUT", 0.2)
    controller = FeedController(api, ME, page_size=2)
    notifications = []
    controller.on_notification(notifications.append)

    assert await controller.load_comments(1) is False
    assert [n.message for n in notifications] == ["Failed to load comments"]
