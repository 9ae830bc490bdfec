"""Durable store of subscription descriptors, replayed after each reset."""

from typing import Dict, Iterator, List, Optional, Tuple

from .models import SubscriptionDescriptor, SubscriptionKey


class SubscriptionRegistry:
    def __init__(self):
        self._entries: Dict[SubscriptionKey, SubscriptionDescriptor] = {}

    def put(self, key: SubscriptionKey, descriptor: SubscriptionDescriptor) -> None:
        # Replacing keeps the existing slot in insertion order
        self._entries[key] = descriptor

    def get(self, key: SubscriptionKey) -> Optional[SubscriptionDescriptor]:
        return self._entries.get(key)

    def remove(self, key: SubscriptionKey) -> bool:
        return self._entries.pop(key, None) is not None

    def all(self) -> Iterator[Tuple[SubscriptionKey, SubscriptionDescriptor]]:
        """
        Iterate over a snapshot of the registry.

        Each call takes a fresh snapshot, so the sequence is stable even if
        listen() writes to the registry while a replay is walking it.
        """
        return iter(list(self._entries.items()))

    def keys(self) -> List[SubscriptionKey]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
