"""Tests for the recency index behind the provider cache."""

from tool_provider.mcp_host.lru import LRUIndex


def test_push_orders_least_recent_first() -> None:
    idx: LRUIndex[str, int] = LRUIndex()
    idx.push("a", 1)
    idx.push("b", 2)
    idx.push("c", 3)

    assert [k for k, _v in idx.items()] == ["a", "b", "c"]
    assert idx.oldest() == ("a", 1)
    assert len(idx) == 3


def test_touch_moves_to_most_recent() -> None:
    idx: LRUIndex[str, int] = LRUIndex()
    for i, k in enumerate("abc"):
        idx.push(k, i)

    assert idx.touch("a") is True
    assert [k for k, _v in idx.items()] == ["b", "c", "a"]
    assert idx.touch("missing") is False


def test_get_does_not_change_recency() -> None:
    idx: LRUIndex[str, int] = LRUIndex()
    idx.push("a", 1)
    idx.push("b", 2)

    assert idx.get("a") == 1
    assert idx.oldest() == ("a", 1)
    assert idx.get("zzz") is None


def test_push_existing_key_replaces_and_refreshes() -> None:
    idx: LRUIndex[str, int] = LRUIndex()
    idx.push("a", 1)
    idx.push("b", 2)
    idx.push("a", 10)

    assert [k for k, _v in idx.items()] == ["b", "a"]
    assert idx.get("a") == 10
    assert len(idx) == 2


def test_oldest_can_exclude_a_key() -> None:
    idx: LRUIndex[str, int] = LRUIndex()
    idx.push("new", 1)

    assert idx.oldest(exclude="new") is None

    idx.push("other", 2)
    idx.touch("new")
    assert idx.oldest(exclude="new") == ("other", 2)


def test_remove_with_expected_identity() -> None:
    idx: LRUIndex[str, object] = LRUIndex()
    old, new = object(), object()
    idx.push("k", old)
    idx.push("k", new)

    # a stale decision about `old` must not drop `new`
    assert idx.remove("k", expected=old) is None
    assert idx.get("k") is new

    assert idx.remove("k", expected=new) is new
    assert idx.get("k") is None
    assert idx.remove("k") is None


def test_values_follow_recency_after_removal() -> None:
    idx: LRUIndex[str, int] = LRUIndex()
    for i, k in enumerate("abc"):
        idx.push(k, i)

    idx.remove("b")
    idx.touch("a")

    assert idx.items() == [("c", 2), ("a", 0)]
    assert idx.values() == [2, 0]
    assert len(idx) == 2

    idx.remove("a")
    idx.remove("c")
    assert idx.oldest() is None
    assert idx.items() == []
