"""
Node client built on web3.py.

Connects to an EVM node over WebSocket with AsyncWeb3, subscribes to
contract logs with eth_subscribe and fetches history with eth_getLogs.
All subscriptions of one connection share the socket, so a single reader
task pulls messages off it and routes them to per-subscription queues.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Set

from eth_abi import encode
from eth_utils import event_abi_to_log_topic
from web3 import AsyncWeb3, Web3
from web3.providers.persistent import WebSocketProvider

from .collaborator import BlockRef
from .errors import StreamError
from .models import EventRecord, StreamChanged, StreamConnected, StreamData, StreamEvent, StreamFailed

logger = logging.getLogger(__name__)

_CLOSED = object()

# Messages that arrive before their subscription id is registered are held here
MAX_EARLY_MESSAGES = 100


def to_hex(value: Any) -> Optional[str]:
    """Normalise a hex string or HexBytes value to a 0x-prefixed string."""
    if value is None:
        return None
    if isinstance(value, str):
        hex_value = value
    else:
        hex_value = value.hex() if hasattr(value, "hex") else str(value)

    if not hex_value.startswith("0x"):
        hex_value = "0x" + hex_value
    return hex_value


def find_event_abi(abi: Sequence[Mapping[str, Any]], event_name: str) -> Mapping[str, Any]:
    for entry in abi:
        if entry.get("type") == "event" and entry.get("name") == event_name:
            return entry
    raise ValueError(f"Event {event_name} not found in ABI")


def encode_topic(param_type: str, value: Any) -> str:
    """Encode one indexed argument value the way the node stores it in a topic."""
    if param_type == "string":
        return to_hex(Web3.keccak(text=value))
    if param_type == "bytes" or param_type.endswith("]") or param_type.startswith("tuple"):
        # Dynamic types are stored as the hash of their value
        if isinstance(value, str):
            return to_hex(Web3.keccak(hexstr=value))
        return to_hex(Web3.keccak(value))
    if param_type == "address":
        value = Web3.to_checksum_address(value)
    return to_hex(encode([param_type], [value]))


def build_topics(event_abi: Mapping[str, Any], argument_filters: Optional[Mapping[str, Any]]) -> List[Any]:
    """
    Topic list for eth_subscribe("logs").

    The first topic is the event signature; following topics match indexed
    arguments in declaration order. A list value matches any of its items.
    """
    topics: List[Any] = [to_hex(event_abi_to_log_topic(event_abi))]
    argument_filters = argument_filters or {}

    for param in event_abi.get("inputs", []):
        if not param.get("indexed"):
            continue
        value = argument_filters.get(param.get("name"))
        if value is None:
            topics.append(None)
        elif isinstance(value, (list, tuple)):
            topics.append([encode_topic(param["type"], item) for item in value])
        else:
            topics.append(encode_topic(param["type"], value))

    while topics and topics[-1] is None:
        topics.pop()
    return topics


def to_event_record(event_data: Mapping[str, Any], removed: bool = False) -> EventRecord:
    """Convert a decoded web3 EventData into an EventRecord."""
    return EventRecord(
        event_name=event_data.get("event", ""),
        address=event_data.get("address", ""),
        checkpoint=event_data.get("blockNumber", 0),
        args=dict(event_data.get("args", {})),
        transaction_hash=to_hex(event_data.get("transactionHash")),
        log_index=event_data.get("logIndex"),
        removed=removed,
        raw=event_data,
    )


class Web3EventStream:
    def __init__(self, connection: "Web3Connection", subscription_id: str, event: Any):
        self.connection = connection
        self.subscription_id = subscription_id
        self.event = event
        self.queue: asyncio.Queue = asyncio.Queue()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        yield StreamConnected(self.subscription_id)
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, BaseException):
                yield StreamFailed(item)
                return

            try:
                event_data = self.event.process_log(item)
            except Exception as e:
                logger.debug(f"Received unknown event or failed to decode: {e}")
                continue

            record = to_event_record(event_data, removed=bool(item.get("removed", False)))
            # Removed logs are the node retracting an event after a reorg
            yield StreamChanged(record) if record.removed else StreamData(record)

    async def unsubscribe(self) -> None:
        try:
            await self.connection.unsubscribe(self.subscription_id)
        finally:
            self.queue.put_nowait(_CLOSED)


class Web3Connection:
    def __init__(self, w3: AsyncWeb3, endpoint: str):
        self.w3 = w3
        self.endpoint = endpoint
        self.streams: Dict[str, Web3EventStream] = {}
        self._early: Dict[str, List[Any]] = {}
        # Ids this connection unsubscribed; late notifications for them are dropped
        self._unsubscribed: Set[str] = set()
        self._reader: Optional[asyncio.Task] = None

    def _event(self, address: str, event_name: str, abi: Sequence[Mapping[str, Any]]):
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        return contract.events[event_name]()

    async def subscribe(
        self,
        address: str,
        event_name: str,
        abi: Sequence[Mapping[str, Any]],
        filter: Optional[Mapping[str, Any]] = None,
    ) -> Web3EventStream:
        event_abi = find_event_abi(abi, event_name)
        event = self._event(address, event_name, abi)
        filter_params = {
            "address": Web3.to_checksum_address(address),
            "topics": build_topics(event_abi, filter),
        }
        subscription_id = await self.w3.eth.subscribe("logs", filter_params)
        logger.debug(f"Subscribed to {event_name} {address} (subscription ID: {subscription_id})")

        stream = Web3EventStream(self, subscription_id, event)
        self.streams[subscription_id] = stream
        for message in self._early.pop(subscription_id, []):
            stream.queue.put_nowait(message)

        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_subscriptions())
        return stream

    async def unsubscribe(self, subscription_id: str) -> None:
        self.streams.pop(subscription_id, None)
        self._early.pop(subscription_id, None)
        self._unsubscribed.add(subscription_id)
        await self.w3.eth.unsubscribe(subscription_id)

    async def _read_subscriptions(self) -> None:
        try:
            async for payload in self.w3.socket.process_subscriptions():
                if "result" not in payload:
                    continue
                subscription_id = payload.get("subscription")
                if subscription_id in self._unsubscribed:
                    continue
                stream = self.streams.get(subscription_id)
                if stream is not None:
                    stream.queue.put_nowait(payload["result"])
                else:
                    early = self._early.setdefault(subscription_id, [])
                    if len(early) < MAX_EARLY_MESSAGES:
                        early.append(payload["result"])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Subscription reader for {self.endpoint} stopped: {e}")
            for stream in list(self.streams.values()):
                stream.queue.put_nowait(e)
            return

        # The socket closed without an error
        for stream in list(self.streams.values()):
            stream.queue.put_nowait(StreamError(f"Connection to {self.endpoint} closed"))

    async def get_past_events(
        self,
        address: str,
        event_name: str,
        abi: Sequence[Mapping[str, Any]],
        filter: Optional[Mapping[str, Any]] = None,
        from_block: BlockRef = 0,
        to_block: BlockRef = "latest",
    ) -> List[EventRecord]:
        event = self._event(address, event_name, abi)
        logs = await event.get_logs(
            argument_filters=dict(filter) if filter else None,
            from_block=from_block,
            to_block=to_block,
        )
        return [to_event_record(log) for log in logs]

    async def close(self) -> None:
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        for stream in list(self.streams.values()):
            stream.queue.put_nowait(_CLOSED)
        self.streams.clear()
        self._early.clear()
        self._unsubscribed.clear()
        await self.w3.provider.disconnect()


class Web3Connector:
    """Opens AsyncWeb3 WebSocket connections."""

    def __init__(self, **provider_kwargs: Any):
        self.provider_kwargs = provider_kwargs

    async def connect(self, endpoint: str) -> Web3Connection:
        w3 = AsyncWeb3(WebSocketProvider(endpoint, **self.provider_kwargs))
        await w3.provider.connect()
        if not await w3.is_connected():
            await w3.provider.disconnect()
            raise ConnectionError(f"Node at {endpoint} is not responding")
        return Web3Connection(w3, endpoint)
