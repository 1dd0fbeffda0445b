# rserve_engine/metrics/ring_buffer.py

from collections import deque
from threading import Lock
from typing import Callable, Generic, Iterable, List, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Fixed-capacity FIFO. Pushing past capacity drops the oldest item."""

    def __init__(self, capacity: int, items: Iterable[T] = ()):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: deque = deque(items, maxlen=capacity)
        self._lock = Lock()

    def push(self, item: T) -> None:
        with self._lock:
            self._items.append(item)

    def extend(self, items: Iterable[T]) -> None:
        with self._lock:
            self._items.extend(items)

    def items(self) -> List[T]:
        with self._lock:
            return list(self._items)

    def filter(self, predicate: Callable[[T], bool]) -> List[T]:
        with self._lock:
            return [i for i in self._items if predicate(i)]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
