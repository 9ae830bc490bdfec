"""Bounded memory of already-handled events."""

from collections import deque
from typing import Hashable

from .models import EventRecord


class SeenEvents:
    """
    Remembers the identities of the last `maxlen` events.

    Live streams and history reconciliation can deliver the same event, so consumers
    that must act once per event check here first.
    """

    def __init__(self, maxlen: int = 10000):
        # deque keeps insertion order for eviction, the set gives fast lookup
        self._order = deque(maxlen=maxlen)
        self._seen = set()

    def seen(self, record: EventRecord) -> bool:
        """Return True if record was handled before, otherwise remember it and return False."""
        return self.seen_key(record.identity)

    def seen_key(self, key: Hashable) -> bool:
        if key in self._seen:
            return True

        if len(self._order) == self._order.maxlen:
            self._seen.discard(self._order[0])
        self._order.append(key)
        self._seen.add(key)
        return False

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, key: object) -> bool:
        return key in self._seen
