"""Bounded, copy-on-read histories.

One writer appends; any number of readers take snapshots. Readers never see
the live container, so iterating a snapshot while the writer appends cannot
tear. The oldest entries are evicted first once the limit is reached.
"""

import threading
from collections import deque
from typing import Generic, Iterable, Optional, TypeVar

T = TypeVar("T")


class BoundedHistory(Generic[T]):
    """FIFO history with a fixed capacity.

    Args:
        limit: Maximum number of retained entries

    Example:
        >>> history = BoundedHistory(limit=2)
        >>> for x in (1, 2, 3):
        ...     history.append(x)
        >>> history.snapshot()
        (2, 3)
    """

    def __init__(self, limit: int, items: Optional[Iterable[T]] = None) -> None:
        if limit < 1:
            raise ValueError(f"limit ({limit}) must be >= 1")
        self.limit = limit
        self._items: deque[T] = deque(items or (), maxlen=limit)
        self._lock = threading.Lock()

    def append(self, item: T) -> None:
        with self._lock:
            self._items.append(item)

    def snapshot(self) -> tuple[T, ...]:
        """Immutable copy of the current contents, oldest first."""
        with self._lock:
            return tuple(self._items)

    def latest(self, n: Optional[int] = None) -> tuple[T, ...]:
        """The ``n`` most recent entries (all if ``n`` is None), oldest first."""
        items = self.snapshot()
        if n is None:
            return items
        return items[-n:] if n > 0 else ()

    def last(self) -> Optional[T]:
        with self._lock:
            return self._items[-1] if self._items else None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
