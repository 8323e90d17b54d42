import asyncio

import pytest

from errors import BusyError, NetworkOrServerError, NotAuthorizedError, ValidationError
from feed_fakes import ME, OTHER, FakeFeedAPI, FakeStore, make_item, settle
from models import Author, Comment, CommentResult, LikeResult
from mutations import MutationKind, OptimisticMutationEngine, apply_like, reconcile_like


def _engine(*items):
    api = FakeFeedAPI()
    store = FakeStore(*items)
    notifications = []
    engine = OptimisticMutationEngine(api, store, ME, notifications.append)
    return engine, api, store, notifications


@pytest.mark.asyncio
async def test_like_applies_optimistically_then_reconciles():
    engine, api, store, _ = _engine(make_item(42, like_count=3))
    api.gates["like"] = asyncio.Event()
    api.like_response = LikeResult(like_count=4, likes=(OTHER, ME), is_liked=True)

    task = asyncio.ensure_future(engine.toggle_like(42))
    await settle()

    optimistic = store.get_item(42)
    assert optimistic.is_liked is True
    assert optimistic.like_count == 4
    assert engine.is_pending(42, MutationKind.LIKE)

    api.gates["like"].set()
    await task

    final = store.get_item(42)
    assert (final.is_liked, final.like_count, final.likes) == (True, 4, (OTHER, ME))
    assert not engine.is_pending(42, MutationKind.LIKE)


@pytest.mark.asyncio
async def test_failed_like_rolls_back_and_notifies():
    original = make_item(42, like_count=3)
    engine, api, store, notifications = _engine(original)
    api.like_response = NetworkOrServerError("Server Error", status=500)

    with pytest.raises(NetworkOrServerError):
        await engine.toggle_like(42)

    assert store.get_item(42) == original
    assert len(notifications) == 1
    assert notifications[0].level == "error"
    assert "like" in notifications[0].message


@pytest.mark.asyncio
async def test_failed_unlike_restores_likers():
    original = make_item(42, like_count=2, is_liked=True, likes=(OTHER, ME))
    engine, api, store, _ = _engine(original)
    api.unlike_response = NetworkOrServerError("Server Error", status=500)

    with pytest.raises(NetworkOrServerError):
        await engine.toggle_like(42)

    assert store.get_item(42) == original
    assert api.count("unlike") == 1


@pytest.mark.asyncio
async def test_like_then_unlike_restores_count():
    engine, api, store, _ = _engine(make_item(5, like_count=7))

    await engine.toggle_like(5)
    assert store.get_item(5).like_count == 8
    await engine.toggle_like(5)

    item = store.get_item(5)
    assert item.like_count == 7
    assert item.is_liked is False
    assert [call[0] for call in api.calls] == ["like", "unlike"]


@pytest.mark.asyncio
async def test_second_toggle_while_pending_is_busy():
    engine, api, store, _ = _engine(make_item(42, like_count=3))
    api.gates["like"] = asyncio.Event()

    task = asyncio.ensure_future(engine.toggle_like(42))
    await settle()

    with pytest.raises(BusyError):
        await engine.toggle_like(42)
    assert store.get_item(42).like_count == 4

    api.gates["like"].set()
    await task
    assert api.count("like") == 1
    assert api.count("unlike") == 0


@pytest.mark.asyncio
async def test_cancelled_like_rolls_back():
    original = make_item(42, like_count=3)
    engine, api, store, _ = _engine(original)
    api.gates["like"] = asyncio.Event()

    task = asyncio.ensure_future(engine.toggle_like(42))
    await settle()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert store.get_item(42) == original
    assert not engine.is_pending(42, MutationKind.LIKE)


@pytest.mark.asyncio
async def test_like_on_unloaded_item_is_rejected():
    engine, api, _, _ = _engine()
    with pytest.raises(ValidationError):
        await engine.toggle_like(99)
    assert api.calls == []


def test_apply_like_keeps_likers_consistent():
    item = make_item(1, like_count=1, likes=(OTHER,))

    liked = apply_like(item, True, ME)
    assert liked.likes == (OTHER, ME)
    assert liked.like_count == 2
    assert liked.is_liked is True

    unliked = apply_like(liked, False, ME)
    assert unliked.likes == (OTHER,)
    assert unliked.like_count == 1
    assert unliked.is_liked is False


def test_apply_like_never_goes_negative():
    assert apply_like(make_item(1, like_count=0, is_liked=True), False, ME).like_count == 0


def test_reconcile_like_is_idempotent():
    item = apply_like(make_item(1, like_count=3), True, ME)
    result = LikeResult(like_count=4, likes=(ME,))

    once = reconcile_like(item, result, ME)
    twice = reconcile_like(once, result, ME)

    assert once == twice
    assert once.like_count == 4
    assert once.is_liked is True


def test_reconcile_like_keeps_fields_server_omitted():
    item = make_item(1, like_count=3, is_liked=True)
    assert reconcile_like(item, LikeResult(), ME) == item


@pytest.mark.asyncio
async def test_add_comment_replaces_temp_with_server_comment():
    engine, api, store, _ = _engine(make_item(42, comment_count=1, comments=(Comment(id=9, author=OTHER, content="hi"),)))
    api.gates["add_comment"] = asyncio.Event()
    api.comment_response = CommentResult(comment=Comment(id=10, author=ME, content="Nice work"), comment_count=2)

    task = asyncio.ensure_future(engine.add_comment(42, "  Nice work "))
    await settle()

    pending = store.get_item(42)
    assert pending.comment_count == 2
    assert pending.comments[-1].is_pending
    assert pending.comments[-1].content == "Nice work"
    assert pending.comments[-1].temp_id.startswith("tmp-")

    api.gates["add_comment"].set()
    created = await task

    item = store.get_item(42)
    assert created.id == 10
    assert [c.id for c in item.comments] == [9, 10]
    assert item.comment_count == 2
    assert api.calls == [("add_comment", 42, "Nice work")]


@pytest.mark.asyncio
async def test_add_comment_uses_server_count_when_given():
    engine, api, store, _ = _engine(make_item(42, comment_count=5))
    api.comment_response = CommentResult(comment=Comment(id=10, author=ME, content="x"), comment_count=8)

    await engine.add_comment(42, "x")

    assert store.get_item(42).comment_count == 8


@pytest.mark.asyncio
async def test_empty_comment_is_rejected_without_request():
    engine, api, store, _ = _engine(make_item(42))
    with pytest.raises(ValidationError):
        await engine.add_comment(42, "   ")
    assert api.calls == []
    assert store.updates == 0


@pytest.mark.asyncio
async def test_failed_comment_is_removed_and_notified():
    original = make_item(42, comment_count=0)
    engine, api, store, notifications = _engine(original)
    api.comment_response = NetworkOrServerError("Server Error", status=500)

    with pytest.raises(NetworkOrServerError):
        await engine.add_comment(42, "hello")

    assert store.get_item(42) == original
    assert notifications[0].message == "Failed to add comment"


@pytest.mark.asyncio
async def test_delete_comment_removes_it():
    mine = Comment(id=11, author=ME, content="mine")
    engine, api, store, _ = _engine(make_item(42, comment_count=1, comments=(mine,)))

    assert await engine.delete_comment(42, 11) is True

    item = store.get_item(42)
    assert item.comments == ()
    assert item.comment_count == 0
    assert api.calls == [("delete_comment", 11)]


@pytest.mark.asyncio
async def test_failed_delete_reinserts_at_original_position():
    comments = (
        Comment(id=1, author=OTHER, content="a"),
        Comment(id=2, author=ME, content="b"),
        Comment(id=3, author=OTHER, content="c"),
    )
    original = make_item(42, comment_count=3, comments=comments)
    engine, api, store, notifications = _engine(original)
    api.delete_response = NetworkOrServerError("Server Error", status=500)

    with pytest.raises(NetworkOrServerError):
        await engine.delete_comment(42, 2)

    assert store.get_item(42) == original
    assert notifications[0].message == "Failed to delete comment"


@pytest.mark.asyncio
async def test_cannot_delete_someone_elses_comment_on_their_post():
    stranger = Author(id=3, first_name="Grace")
    engine, api, _, _ = _engine(make_item(42, comments=(Comment(id=1, author=stranger, content="x"),)))

    with pytest.raises(NotAuthorizedError):
        await engine.delete_comment(42, 1)
    assert api.calls == []


@pytest.mark.asyncio
async def test_post_author_may_delete_any_comment():
    engine, api, store, _ = _engine(
        make_item(42, author=ME, comment_count=1, comments=(Comment(id=1, author=OTHER, content="x"),))
    )

    assert await engine.delete_comment(42, "1") is True
    assert store.get_item(42).comments == ()


@pytest.mark.asyncio
async def test_delete_unknown_comment_is_rejected():
    engine, _, _, _ = _engine(make_item(42))
    with pytest.raises(ValidationError):
        await engine.delete_comment(42, 77)


@pytest.mark.asyncio
async def test_deleting_pending_comment_cancels_it_and_cleans_up_server_copy():
    engine, api, store, _ = _engine(make_item(42, comment_count=0))
    api.gates["add_comment"] = asyncio.Event()
    api.comment_response = CommentResult(comment=Comment(id=55, author=ME, content="oops"))

    task = asyncio.ensure_future(engine.add_comment(42, "oops"))
    await settle()
    temp_id = store.get_item(42).comments[0].temp_id

    assert await engine.delete_comment(42, temp_id) is True
    assert store.get_item(42).comments == ()
    assert store.get_item(42).comment_count == 0
    assert ("delete_comment", temp_id) not in api.calls

    api.gates["add_comment"].set()
    assert await task is None

    item = store.get_item(42)
    assert item.comments == ()
    assert item.comment_count == 0
    assert ("delete_comment", 55) in api.calls


def test_reconcile_like_splices_cached_likers_when_server_omits_them():
    item = make_item(1, like_count=1, is_liked=True, likes=(ME,))

    unliked = reconcile_like(item, LikeResult(like_count=0, is_liked=False), ME)
    assert unliked.likes == ()

    relinked = reconcile_like(make_item(1, likes=(OTHER,)), LikeResult(like_count=2, is_liked=True), ME)
    assert relinked.likes == (OTHER, ME)


@pytest.mark.asyncio
async def test_failed_add_after_pending_comment_deleted_stays_local():
    original = make_item(42, comment_count=0)
    engine, api, store, notifications = _engine(original)
    api.gates["add_comment"] = asyncio.Event()
    api.comment_response = NetworkOrServerError("Server Error", status=500)

    task = asyncio.ensure_future(engine.add_comment(42, "never mind"))
    await settle()
    temp_id = store.get_item(42).comments[0].temp_id
    assert await engine.delete_comment(42, temp_id) is True

    api.gates["add_comment"].set()
    assert await task is None

    assert store.get_item(42) == original
    assert notifications == []
    assert api.count("delete_comment") == 0
    assert not engine.is_pending(42, MutationKind.ADD_COMMENT)
