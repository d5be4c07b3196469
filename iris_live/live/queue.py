"""Thread-safe FIFO shared by the audio accumulator and the playback queue."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Deque, Generic, List, Optional, TypeVar


logger = logging.getLogger("iris-live")

T = TypeVar("T")


class ChunkQueue(Generic[T]):
    """Bounded FIFO with internal locking.

    When ``maxsize`` is reached the oldest item is dropped so producers
    never block.  ``drain`` removes every queued item in one atomic step.
    """

    def __init__(self, maxsize: Optional[int] = None, *, name: str = "queue") -> None:
        if maxsize is not None and maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self.name = name
        self.dropped = 0
        self._items: Deque[T] = deque()
        self._lock = threading.Lock()

    def push(self, item: T) -> None:
        with self._lock:
            if self.maxsize is not None and len(self._items) >= self.maxsize:
                self._items.popleft()
                self.dropped += 1
                logger.warning("%s is full (%d items); dropped the oldest item", self.name, self.maxsize)
            self._items.append(item)

    def pop(self) -> Optional[T]:
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def drain(self) -> List[T]:
        with self._lock:
            items = list(self._items)
            self._items.clear()
            return items

    def clear(self) -> int:
        with self._lock:
            count = len(self._items)
            self._items.clear()
            return count

    def is_empty(self) -> bool:
        with self._lock:
            return not self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
