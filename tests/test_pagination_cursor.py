import pytest

from models import PaginationMeta
from pagination import PaginationCursor, Phase, compute_has_more


def test_initial_state_is_idle_on_page_one():
    cursor = PaginationCursor(page_size=10)
    assert cursor.phase is Phase.IDLE
    assert cursor.page == 1
    assert cursor.has_more is True
    assert cursor.begin_more() is None


def test_initial_load_then_more():
    cursor = PaginationCursor(page_size=2)

    assert cursor.begin_initial() == 1
    assert cursor.phase is Phase.LOADING
    cursor.complete(2, PaginationMeta(current_page=1, last_page=3))
    assert cursor.phase is Phase.LOADED
    assert cursor.has_more is True

    assert cursor.begin_more() == 2
    assert cursor.phase is Phase.LOADING_MORE
    cursor.complete(2, PaginationMeta(current_page=2, last_page=3))
    assert cursor.page == 2

    assert cursor.begin_more() == 3
    cursor.complete(1, PaginationMeta(current_page=3, last_page=3))
    assert cursor.page == 3
    assert cursor.has_more is False
    assert cursor.begin_more() is None


def test_begin_more_is_noop_while_loading():
    cursor = PaginationCursor(page_size=2)
    cursor.begin_initial()
    cursor.complete(2)

    assert cursor.begin_more() == 2
    assert cursor.begin_more() is None
    assert cursor.pending_page == 2


def test_failed_page_keeps_page_number_and_allows_retry():
    cursor = PaginationCursor(page_size=2)
    cursor.begin_initial()
    cursor.complete(2)
    cursor.begin_more()

    cursor.fail()

    assert cursor.phase is Phase.ERROR
    assert cursor.page == 1
    assert cursor.begin_more() == 2


def test_failed_first_page_blocks_load_more():
    cursor = PaginationCursor(page_size=2)
    cursor.begin_initial()
    cursor.complete(2)

    cursor.begin_initial()
    cursor.fail()

    assert cursor.phase is Phase.ERROR
    assert cursor.begin_more() is None


def test_abandon_returns_to_loaded_or_idle():
    cursor = PaginationCursor(page_size=2)
    cursor.begin_initial()
    cursor.abandon()
    assert cursor.phase is Phase.IDLE

    cursor.begin_initial()
    cursor.complete(2)
    cursor.begin_more()
    cursor.abandon()
    assert cursor.phase is Phase.LOADED
    assert cursor.pending_page is None


def test_complete_without_pending_fetch_raises():
    with pytest.raises(RuntimeError):
        PaginationCursor(page_size=2).complete(2)


def test_invalid_page_size_rejected():
    with pytest.raises(ValueError):
        PaginationCursor(page_size=0)


def test_has_more_prefers_last_page_metadata():
    # A short page does not end the feed when the server says more pages exist
    assert compute_has_more(PaginationMeta(current_page=1, last_page=2), 3, 10) is True
    assert compute_has_more(PaginationMeta(current_page=2, last_page=2), 10, 10) is False


def test_has_more_uses_total_when_last_page_missing():
    meta = PaginationMeta(current_page=2, total=45, per_page=20)
    assert compute_has_more(meta, 20, 20) is True
    meta = PaginationMeta(current_page=3, total=45, per_page=20)
    assert compute_has_more(meta, 5, 20) is False


def test_has_more_page_length_heuristic_without_metadata():
    assert compute_has_more(None, 10, 10) is True
    assert compute_has_more(None, 9, 10) is False


def test_has_more_heuristic_reports_extra_page_when_last_page_is_full():
    # Known limitation of the heuristic: an exactly-full last page claims more,
    # and the following empty page then ends pagination.
    cursor = PaginationCursor(page_size=3)
    cursor.begin_initial()
    cursor.complete(3)
    assert cursor.has_more is True

    cursor.begin_more()
    cursor.complete(0)
    assert cursor.has_more is False
