from feed_fakes import make_item
from pagination import MergeMode, merge


def _ids(items):
    return [item.id for item in items]


def test_append_skips_items_already_present():
    existing = (make_item("A"), make_item("B"))
    page = [make_item("B"), make_item("C")]

    merged = merge(existing, page, MergeMode.APPEND)

    assert _ids(merged) == ["A", "B", "C"]


def test_append_keeps_existing_copy_of_duplicate():
    liked = make_item("B", is_liked=True, like_count=5)
    existing = (make_item("A"), liked)

    merged = merge(existing, [make_item("B", like_count=0)], MergeMode.APPEND)

    assert merged[1] is liked


def test_append_dedups_within_page():
    merged = merge((), [make_item(1), make_item(2), make_item(1)], MergeMode.APPEND)
    assert _ids(merged) == [1, 2]


def test_replace_discards_existing_items():
    existing = (make_item("A"), make_item("B"))
    merged = merge(existing, [make_item("C"), make_item("A")], MergeMode.REPLACE)
    assert _ids(merged) == ["C", "A"]


def test_replace_keeps_first_of_server_duplicates():
    first = make_item(7, title="first")
    merged = merge((), [first, make_item(7, title="second"), make_item(8)], MergeMode.REPLACE)
    assert _ids(merged) == [7, 8]
    assert merged[0].title == "first"


def test_merge_does_not_mutate_inputs():
    existing = [make_item(1)]
    page = [make_item(1), make_item(2)]

    merge(existing, page, MergeMode.APPEND)
    merge(existing, page, MergeMode.REPLACE)

    assert _ids(existing) == [1]
    assert _ids(page) == [1, 2]


def test_append_empty_page_returns_existing_items():
    existing = (make_item(1), make_item(2))
    assert merge(existing, [], MergeMode.APPEND) == existing


def test_merged_ids_are_unique_for_large_input():
    existing = tuple(make_item(i) for i in range(0, 500))
    page = [make_item(i) for i in range(250, 750)]

    merged = merge(existing, page, MergeMode.APPEND)

    assert _ids(merged) == list(range(750))
