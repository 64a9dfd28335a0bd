# services/tool-provider-service/tool_provider/mcp_host/lru.py
from __future__ import annotations

from typing import Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class _Node(Generic[K, V]):
    __slots__ = ("key", "value", "prev", "next")

    def __init__(self, key: Optional[K], value: Optional[V]) -> None:
        self.key = key
        self.value = value
        self.prev: "_Node[K, V]" = self
        self.next: "_Node[K, V]" = self


class LRUIndex(Generic[K, V]):
    """
    Recency index: hash map over an intrusive doubly-linked list.
    Least recently used at the head, most recently used at the tail.

    Removal can be made conditional on value identity so that a stale
    decision never drops a newer value stored under the same key.
    """

    def __init__(self) -> None:
        self._index: Dict[K, _Node[K, V]] = {}
        self._sentinel: _Node[K, V] = _Node(None, None)

    def __len__(self) -> int:
        return len(self._index)

    def _unlink(self, node: _Node[K, V]) -> None:
        node.prev.next = node.next
        node.next.prev = node.prev
        node.prev = node.next = node

    def _append(self, node: _Node[K, V]) -> None:
        tail = self._sentinel.prev
        node.prev = tail
        node.next = self._sentinel
        tail.next = node
        self._sentinel.prev = node

    def get(self, key: K) -> Optional[V]:
        """Lookup without touching recency."""
        node = self._index.get(key)
        return node.value if node is not None else None

    def push(self, key: K, value: V) -> None:
        """Insert (or replace) as most recently used."""
        node = self._index.get(key)
        if node is not None:
            self._unlink(node)
            node.value = value
        else:
            node = _Node(key, value)
            self._index[key] = node
        self._append(node)

    def touch(self, key: K) -> bool:
        node = self._index.get(key)
        if node is None:
            return False
        self._unlink(node)
        self._append(node)
        return True

    def remove(self, key: K, expected: Optional[V] = None) -> Optional[V]:
        """
        Remove key and return its value. With `expected`, only remove when the
        stored value is that exact object.
        """
        node = self._index.get(key)
        if node is None:
            return None
        if expected is not None and node.value is not expected:
            return None
        del self._index[key]
        self._unlink(node)
        return node.value

    def oldest(self, exclude: Optional[K] = None) -> Optional[Tuple[K, V]]:
        node = self._sentinel.next
        while node is not self._sentinel:
            if node.key != exclude:
                return node.key, node.value  # type: ignore[return-value]
            node = node.next
        return None

    def items(self) -> List[Tuple[K, V]]:
        out: List[Tuple[K, V]] = []
        node = self._sentinel.next
        while node is not self._sentinel:
            out.append((node.key, node.value))  # type: ignore[arg-type]
            node = node.next
        return out

    def values(self) -> List[V]:
        return [v for _k, v in self.items()]
