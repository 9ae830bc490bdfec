"""Round-robin pool of equivalent node endpoints."""

from typing import List, Sequence

from .errors import InvalidConfig, NotConfigured


class ProviderPool:
    def __init__(self, endpoints: Sequence[str] = ()):
        self._endpoints: List[str] = []
        self._cursor = 0
        if endpoints:
            self.set_providers(endpoints)

    def set_providers(self, endpoints: Sequence[str]) -> None:
        """
        Replace the pool and move the cursor back to the first endpoint.

        Raises:
            InvalidConfig: if endpoints is empty; the current pool is kept.
        """
        endpoints = list(endpoints)
        if not endpoints:
            raise InvalidConfig("Providers list is empty")
        self._endpoints = endpoints
        self._cursor = 0

    def current(self) -> str:
        if not self._endpoints:
            raise NotConfigured("No providers set")
        return self._endpoints[self._cursor]

    def rotate(self) -> str:
        """Advance to the next endpoint, wrapping to the first one."""
        if not self._endpoints:
            raise NotConfigured("No providers set")
        self._cursor = (self._cursor + 1) % len(self._endpoints)
        return self._endpoints[self._cursor]

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def endpoints(self) -> List[str]:
        return list(self._endpoints)

    def __len__(self) -> int:
        return len(self._endpoints)
