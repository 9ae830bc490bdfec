"""
Data model for the subscription supervisor.

Descriptors are the durable registration records kept by the registry and
replayed after every reset. Runtime objects hold the per-connection
bookkeeping and are thrown away whenever the connection is replaced.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, NamedTuple, Optional, Sequence, Union

DEFAULT_HISTORY_INTERVAL = 5 * 60.0  # seconds

Checkpoint = int
Callback = Callable[..., Union[None, Awaitable[None]]]


def _noop(*_args, **_kwargs) -> None:
    return None


class SupervisorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    ACTIVE = "active"
    RESETTING = "resetting"
    DISCONNECTED = "disconnected"


class SubscriptionKey(NamedTuple):
    """Identity of one logical subscription."""

    address: str
    event_name: str

    def __str__(self) -> str:
        return f"{self.event_name} {self.address}"


@dataclass(frozen=True)
class EventRecord:
    """
    A decoded contract event as handed to callbacks.

    checkpoint is the block number the event was included in. The pair
    (transaction_hash, log_index) identifies a single event, which is what
    idempotent consumers should key on.
    """

    event_name: str
    address: str
    checkpoint: Checkpoint
    args: Mapping[str, Any] = field(default_factory=dict)
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None
    removed: bool = False
    raw: Any = None

    @property
    def identity(self) -> tuple:
        return (self.transaction_hash, self.log_index, self.event_name, self.address.lower())


@dataclass(frozen=True)
class SubscriptionDescriptor:
    """
    Registration record for one subscription.

    Args:
        address: Contract address emitting the event
        event_name: Event name as found in the ABI
        abi: Contract ABI (list of ABI entries)
        data_callback: Called with every EventRecord from the live stream
        changed_callback: Called with records the node retracted (reorgs)
        history_callback: Called with a list of EventRecords found by reconciliation
        history_interval: Seconds between reconciliation polls
        initial_checkpoint: Block to start reconciling from
        keep_alive_timeout: Seconds of silence before the connection is reset
        filter: Indexed argument filter, e.g. {"from": "0x..."}
    """

    address: str
    event_name: str
    abi: Sequence[Mapping[str, Any]]
    data_callback: Callback = _noop
    changed_callback: Callback = _noop
    history_callback: Optional[Callback] = None
    history_interval: Optional[float] = None
    initial_checkpoint: Checkpoint = 0
    keep_alive_timeout: Optional[float] = None
    filter: Mapping[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> SubscriptionKey:
        return SubscriptionKey(self.address.lower(), self.event_name)

    @property
    def event_abi(self) -> Optional[Mapping[str, Any]]:
        """ABI entry of the subscribed event, or None if the ABI does not declare it."""
        for entry in self.abi:
            if entry.get("type") == "event" and entry.get("name") == self.event_name:
                return entry
        return None


@dataclass
class SubscriptionRuntime:
    """Live state of one subscription within a single generation."""

    key: SubscriptionKey
    generation: int
    last_checkpoint: Checkpoint = 0
    last_activity: float = field(default_factory=time.monotonic)
    unsubscribe: Optional[Callable[[], Awaitable[None]]] = None
    tasks: List[asyncio.Task] = field(default_factory=list)

    def record_activity(self, now: float) -> None:
        self.last_activity = now


# Stream variants produced by an EventStream


@dataclass(frozen=True)
class StreamConnected:
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class StreamData:
    record: EventRecord


@dataclass(frozen=True)
class StreamChanged:
    record: EventRecord


@dataclass(frozen=True)
class StreamFailed:
    error: BaseException


StreamEvent = Union[StreamConnected, StreamData, StreamChanged, StreamFailed]


async def invoke_callback(callback: Callback, *args: Any) -> None:
    """Call a user callback that may be a plain function or a coroutine function."""
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
