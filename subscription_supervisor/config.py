"""
Configuration loading.

Settings live in a TOML file:

    providers = ["wss://node-a.example", "https://node-b.example"]

    [reconnect]
    max_attempts = 5
    base_delay = 5.0
    max_delay = 60.0
    healthy_after = 60.0

    [history]
    default_interval = 300.0
    failure_alert_threshold = 5

    [[subscriptions]]
    address = "0x..."
    event = "Transfer"
    abi_path = "erc20.json"
    keep_alive_timeout = 120.0
    history_interval = 60.0
    init_block = 0
    filter = { from = "0x..." }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import toml

from .errors import InvalidConfig
from .models import DEFAULT_HISTORY_INTERVAL, Callback, SubscriptionDescriptor

# Reconnect backoff defaults
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 5.0
DEFAULT_MAX_DELAY = 60.0
# A connection that stays up this long without a reset request counts as healthy
DEFAULT_HEALTHY_AFTER = 60.0
DEFAULT_FAILURE_ALERT_THRESHOLD = 5


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    Bounded exponential backoff used while a reset looks for a working provider.

    max_attempts bounds both the connect attempts within one reset and the
    number of back-to-back resets that never reached a healthy connection.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    healthy_after: float = DEFAULT_HEALTHY_AFTER

    def __post_init__(self):
        if self.max_attempts < 1:
            raise InvalidConfig("reconnect.max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.healthy_after < 0:
            raise InvalidConfig("reconnect delays must not be negative")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass(frozen=True)
class SubscriptionConfig:
    address: str
    event: str
    abi: List[Mapping[str, Any]]
    keep_alive_timeout: Optional[float] = None
    history_interval: Optional[float] = None
    init_block: int = 0
    filter: Mapping[str, Any] = field(default_factory=dict)
    history: bool = True

    def descriptor(
        self,
        data_callback: Callback,
        changed_callback: Callback,
        history_callback: Optional[Callback] = None,
    ) -> SubscriptionDescriptor:
        return SubscriptionDescriptor(
            address=self.address,
            event_name=self.event,
            abi=self.abi,
            data_callback=data_callback,
            changed_callback=changed_callback,
            history_callback=history_callback if self.history else None,
            history_interval=self.history_interval,
            initial_checkpoint=self.init_block,
            keep_alive_timeout=self.keep_alive_timeout,
            filter=self.filter,
        )


@dataclass(frozen=True)
class SupervisorConfig:
    providers: List[str]
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    default_history_interval: float = DEFAULT_HISTORY_INTERVAL
    failure_alert_threshold: int = DEFAULT_FAILURE_ALERT_THRESHOLD
    subscriptions: List[SubscriptionConfig] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base_dir: Optional[Path] = None) -> "SupervisorConfig":
        """
        Build a config from parsed TOML.

        Args:
            data: Parsed TOML document
            base_dir: Directory abi_path entries are relative to

        Raises:
            InvalidConfig: on missing or mistyped settings
        """
        base_dir = base_dir or Path.cwd()

        providers = data.get("providers", [])
        if isinstance(providers, str):
            providers = [providers]
        if not isinstance(providers, list) or not all(isinstance(p, str) for p in providers):
            raise InvalidConfig("providers must be a list of URLs")
        providers = [to_websocket_url(p) for p in providers]

        reconnect_section = _section(data, "reconnect")
        try:
            reconnect = ReconnectPolicy(
                max_attempts=int(reconnect_section.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
                base_delay=float(reconnect_section.get("base_delay", DEFAULT_BASE_DELAY)),
                max_delay=float(reconnect_section.get("max_delay", DEFAULT_MAX_DELAY)),
                healthy_after=float(reconnect_section.get("healthy_after", DEFAULT_HEALTHY_AFTER)),
            )
        except (TypeError, ValueError) as e:
            raise InvalidConfig(f"Invalid [reconnect] section: {e}") from e

        history_section = _section(data, "history")
        try:
            default_interval = float(history_section.get("default_interval", DEFAULT_HISTORY_INTERVAL))
            threshold = int(history_section.get("failure_alert_threshold", DEFAULT_FAILURE_ALERT_THRESHOLD))
        except (TypeError, ValueError) as e:
            raise InvalidConfig(f"Invalid [history] section: {e}") from e
        if default_interval <= 0:
            raise InvalidConfig("history.default_interval must be positive")

        entries = data.get("subscriptions", [])
        if not isinstance(entries, list):
            raise InvalidConfig("subscriptions must be an array of tables")
        subscriptions = [_subscription(entry, base_dir) for entry in entries]

        return cls(
            providers=providers,
            reconnect=reconnect,
            default_history_interval=default_interval,
            failure_alert_threshold=threshold,
            subscriptions=subscriptions,
        )


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, Mapping):
        raise InvalidConfig(f"[{name}] must be a table")
    return section


def _optional_float(entry: Mapping[str, Any], name: str) -> Optional[float]:
    value = entry.get(name)
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidConfig(f"{name} must be a number") from e
    if value <= 0:
        raise InvalidConfig(f"{name} must be positive")
    return value


def _subscription(entry: Any, base_dir: Path) -> SubscriptionConfig:
    if not isinstance(entry, Mapping):
        raise InvalidConfig("Each subscription must be a table")

    address = entry.get("address")
    event = entry.get("event")
    if not address or not event:
        raise InvalidConfig("Subscription needs both address and event")

    if "abi" in entry:
        abi = entry["abi"]
    elif "abi_path" in entry:
        abi = load_abi(base_dir / entry["abi_path"])
    else:
        raise InvalidConfig(f"Subscription {event} {address} needs abi or abi_path")
    if not isinstance(abi, list) or not abi:
        raise InvalidConfig(f"ABI for {event} {address} must be a non-empty list")

    event_filter = entry.get("filter", {})
    if not isinstance(event_filter, Mapping):
        raise InvalidConfig("filter must be a table")

    return SubscriptionConfig(
        address=address,
        event=event,
        abi=abi,
        keep_alive_timeout=_optional_float(entry, "keep_alive_timeout"),
        history_interval=_optional_float(entry, "history_interval"),
        init_block=int(entry.get("init_block", 0)),
        filter=dict(event_filter),
        history=bool(entry.get("history", True)),
    )


def load_abi(path: Path) -> List[Mapping[str, Any]]:
    """Load an ABI from a JSON file (a bare list or a Hardhat/Truffle artifact)."""
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidConfig(f"Could not read ABI file {path}: {e}") from e
    if isinstance(data, dict):
        data = data.get("abi", [])
    return data


def to_websocket_url(url: str) -> str:
    """Convert an HTTP(S) RPC URL to its WebSocket equivalent."""
    if url.startswith("https://"):
        return url.replace("https://", "wss://", 1)
    if url.startswith("http://"):
        return url.replace("http://", "ws://", 1)
    return url


def read_config(config_path: str) -> Dict[str, Any]:
    """Read configuration from TOML file."""
    if not os.path.isfile(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r") as f:
        return toml.load(f)


def load_config(config_path: str) -> SupervisorConfig:
    try:
        data = read_config(config_path)
    except toml.TomlDecodeError as e:
        raise InvalidConfig(f"Invalid TOML in {config_path}: {e}") from e
    return SupervisorConfig.from_mapping(data, base_dir=Path(config_path).resolve().parent)
