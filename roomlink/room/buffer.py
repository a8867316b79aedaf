"""Bounded FIFO that hands received datagrams to the tick consumer."""

from __future__ import annotations

import threading
from collections import deque
from typing import Generic, TypeVar

T = TypeVar("T")

DEFAULT_CAPACITY = 100


class InboundBuffer(Generic[T]):
    """Lock-protected FIFO with drop-oldest overflow.

    One producer (a receive thread) pushes, one consumer (the tick loop)
    pops.  ``push`` never blocks and never fails; when the buffer is full the
    oldest entry is evicted so the consumer always sees the freshest data.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: deque[T] = deque()
        self._lock = threading.Lock()
        self.dropped = 0

    def push(self, item: T) -> bool:
        """Append *item*; return ``True`` if an older entry was evicted."""
        with self._lock:
            evicted = len(self._items) >= self.capacity
            if evicted:
                self._items.popleft()
                self.dropped += 1
            self._items.append(item)
        return evicted

    def pop_oldest(self) -> T | None:
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def drain(self) -> list[T]:
        """Remove and return everything currently buffered, oldest first."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
