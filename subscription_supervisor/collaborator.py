"""
Interfaces of the node client the supervisor sits on top of.

web3_client.Web3Connector is the shipped implementation; tests use an
in-memory fake.
"""

from typing import Any, AsyncIterator, List, Mapping, Optional, Protocol, Sequence, Union

from .models import Checkpoint, EventRecord, StreamEvent

BlockRef = Union[Checkpoint, str]


class EventStream(Protocol):
    """
    A live subscription.

    Iterating yields StreamEvent variants until the stream is unsubscribed
    or the transport dies. The iterator is not restartable.
    """

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        ...

    async def unsubscribe(self) -> None:
        ...


class Connection(Protocol):
    async def subscribe(
        self,
        address: str,
        event_name: str,
        abi: Sequence[Mapping[str, Any]],
        filter: Optional[Mapping[str, Any]] = None,
    ) -> EventStream:
        ...

    async def get_past_events(
        self,
        address: str,
        event_name: str,
        abi: Sequence[Mapping[str, Any]],
        filter: Optional[Mapping[str, Any]] = None,
        from_block: BlockRef = 0,
        to_block: BlockRef = "latest",
    ) -> List[EventRecord]:
        ...

    async def close(self) -> None:
        ...


class Connector(Protocol):
    async def connect(self, endpoint: str) -> Connection:
        ...
