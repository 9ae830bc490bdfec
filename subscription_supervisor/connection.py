"""
Ownership of the single active node connection.

Only ConnectionManager touches the connection object; everything else goes
through its methods.
"""

import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from .collaborator import BlockRef, Connection, Connector, EventStream
from .errors import FetchError, InvalidRequest, NotConnected, ProviderConnectionError
from .models import EventRecord, SubscriptionDescriptor

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self, connector: Connector):
        self.connector = connector
        self._connection: Optional[Connection] = None
        self.endpoint: Optional[str] = None
        self.epoch = 0

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    async def open(self, endpoint: str) -> None:
        """
        Connect to endpoint and make it the active connection.

        Raises:
            ProviderConnectionError: connect failed; any prior connection is kept.
        """
        try:
            connection = await self.connector.connect(endpoint)
        except Exception as e:
            raise ProviderConnectionError(endpoint, f"Could not connect to {endpoint}: {e}") from e

        # Callers close first; this only catches a connection left open by mistake
        if self._connection is not None:
            await self.close()

        self._connection = connection
        self.endpoint = endpoint
        self.epoch += 1

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        self.endpoint = None
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as e:
            # The connection is gone either way
            logger.warning(f"Error closing connection: {e}")

    def _require(self) -> Connection:
        if self._connection is None:
            raise NotConnected("No open connection")
        return self._connection

    async def subscribe(
        self, descriptor: SubscriptionDescriptor
    ) -> Tuple[EventStream, Callable[[], Awaitable[None]]]:
        """
        Open a live stream for descriptor; returns the stream and its unsubscribe handle.

        Raises:
            InvalidRequest: the node client rejected the descriptor itself (bad
                address, unknown event, unencodable filter). Retrying cannot help.
            Exception: anything else is a transport failure and propagates as is.
        """
        connection = self._require()
        try:
            stream = await connection.subscribe(
                descriptor.address,
                descriptor.event_name,
                descriptor.abi,
                dict(descriptor.filter),
            )
        except (ValueError, TypeError, LookupError) as e:
            raise InvalidRequest(f"Cannot subscribe to {descriptor.key}: {e}") from e
        return stream, stream.unsubscribe

    async def get_past_events(
        self,
        descriptor: SubscriptionDescriptor,
        from_block: BlockRef,
        to_block: BlockRef = "latest",
    ) -> List[EventRecord]:
        connection = self._require()
        try:
            return list(
                await connection.get_past_events(
                    descriptor.address,
                    descriptor.event_name,
                    descriptor.abi,
                    dict(descriptor.filter),
                    from_block=from_block,
                    to_block=to_block,
                )
            )
        except Exception as e:
            raise FetchError(f"getPastEvents failed for {descriptor.key}: {e}") from e
