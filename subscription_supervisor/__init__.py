"""
Supervised contract event subscriptions.

Keeps event subscriptions alive across unreliable WebSocket providers:
keep-alive watchdogs, periodic history reconciliation, and provider
failover with full resubscription.
"""

from .config import ReconnectPolicy, SupervisorConfig, load_config
from .dedup import SeenEvents
from .errors import (
    Disconnected,
    FetchError,
    InvalidConfig,
    InvalidRequest,
    NotConfigured,
    NotConnected,
    NotReady,
    ProviderConnectionError,
    StreamError,
    SupervisorError,
)
from .models import (
    EventRecord,
    StreamChanged,
    StreamConnected,
    StreamData,
    StreamFailed,
    SubscriptionDescriptor,
    SubscriptionKey,
    SupervisorState,
)
from .observability import ConsoleSink, EventSink, LoggingSink
from .supervisor import SupervisionOrchestrator

__version__ = "0.1.0"

__all__ = [
    "ConsoleSink",
    "Disconnected",
    "EventRecord",
    "EventSink",
    "FetchError",
    "InvalidConfig",
    "InvalidRequest",
    "LoggingSink",
    "NotConfigured",
    "NotConnected",
    "NotReady",
    "ProviderConnectionError",
    "ReconnectPolicy",
    "SeenEvents",
    "StreamChanged",
    "StreamConnected",
    "StreamData",
    "StreamError",
    "StreamFailed",
    "SubscriptionDescriptor",
    "SubscriptionKey",
    "SupervisionOrchestrator",
    "SupervisorConfig",
    "SupervisorState",
    "load_config",
]
