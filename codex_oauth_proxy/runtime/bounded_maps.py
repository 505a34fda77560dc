from __future__ import annotations

from collections import OrderedDict, deque
from collections.abc import ItemsView, Iterator
from typing import TypeVar

K = TypeVar("K")
V = TypeVar("V")
T = TypeVar("T")


class BoundedValueMap[K, V]:
    """Key/value store that evicts the oldest-inserted key once full.

    Updating an existing key keeps its original position, so eviction order is
    insertion order rather than access order.
    """

    def __init__(self, max_keys: int):
        self._max_keys = max(1, int(max_keys))
        self._data: OrderedDict[K, V] = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def get(self, key: K, default: V | None = None) -> V | None:
        return self._data.get(key, default)

    def set(self, key: K, value: V) -> None:
        is_new = key not in self._data
        self._data[key] = value
        if is_new and len(self._data) > self._max_keys:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()

    def items(self) -> ItemsView[K, V]:
        return self._data.items()

    def to_dict(self) -> dict[K, V]:
        return dict(self._data)


class BoundedSequence[T]:
    """Append-only sequence that drops its oldest entries beyond ``max_items``."""

    def __init__(self, max_items: int):
        self._items: deque[T] = deque(maxlen=max(1, int(max_items)))

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def append(self, item: T) -> None:
        self._items.append(item)

    def clear(self) -> None:
        self._items.clear()

    def latest(self, count: int) -> list[T]:
        if count <= 0:
            return []
        return list(self._items)[-count:][::-1]
