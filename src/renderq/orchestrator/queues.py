"""FIFO work queues for generation and post-processing."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class WorkQueue(Generic[T]):
    """Strict FIFO of pending work items.

    The queue only orders items; whether an item may run is decided by the
    orchestrator, which peeks at the head and pops it when appropriate.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._items: deque[T] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def enqueue(self, item: T) -> None:
        self._items.append(item)

    def enqueue_front(self, item: T) -> None:
        """Put ``item`` ahead of everything else (used when resuming)."""
        self._items.appendleft(item)

    def peek(self) -> T | None:
        return self._items[0] if self._items else None

    def pop(self) -> T | None:
        return self._items.popleft() if self._items else None

    def find(self, predicate: Callable[[T], bool]) -> T | None:
        for item in self._items:
            if predicate(item):
                return item
        return None

    def remove_where(self, predicate: Callable[[T], bool]) -> int:
        """Remove every matching item. Returns how many were removed."""
        kept = deque(item for item in self._items if not predicate(item))
        removed = len(self._items) - len(kept)
        self._items = kept
        return removed

    def clear(self) -> None:
        self._items.clear()


__all__ = ["WorkQueue"]
