from __future__ import annotations

from codex_oauth_proxy.runtime.bounded_maps import BoundedSequence, BoundedValueMap


def test_bounded_value_map_evicts_oldest_key() -> None:
    values = BoundedValueMap[str, bool](max_keys=2)
    values.set("a", True)
    values.set("b", False)
    values.set("c", True)

    assert values.to_dict() == {"b": False, "c": True}


def test_bounded_value_map_update_keeps_insertion_position() -> None:
    values = BoundedValueMap[str, int](max_keys=3)
    values.set("a", 1)
    values.set("b", 2)
    values.set("c", 3)
    values.set("a", 10)
    values.set("d", 4)

    assert list(values.to_dict()) == ["b", "c", "d"]
    assert values.get("a") is None
    assert len(values) == 3


def test_bounded_sequence_drops_oldest_and_returns_latest_first() -> None:
    items = BoundedSequence[int](max_items=3)
    for value in range(5):
        items.append(value)

    assert list(items) == [2, 3, 4]
    assert items.latest(2) == [4, 3]
    assert items.latest(10) == [4, 3, 2]
    assert items.latest(0) == []

    items.clear()
    assert len(items) == 0
