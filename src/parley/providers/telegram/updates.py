"""Duplicate update detection.

Telegram redelivers updates after reconnects and restarts of long polling.
The tracker remembers a bounded window of recent update ids, forgetting the
oldest first.
"""

from collections import deque

DEFAULT_CAPACITY = 1000


class UpdateTracker:
    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._seen: set[int] = set()
        self._order: deque[int] = deque()

    def is_duplicate(self, update_id: int) -> bool:
        """Return True for an id already seen, otherwise record it."""
        if update_id in self._seen:
            return True
        self._seen.add(update_id)
        self._order.append(update_id)
        if len(self._order) > self._capacity:
            self._seen.discard(self._order.popleft())
        return False

    def clear(self) -> None:
        self._seen.clear()
        self._order.clear()

    def __len__(self) -> int:
        return len(self._order)

    @property
    def size(self) -> int:
        return len(self)
