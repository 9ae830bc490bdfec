"""
Exception taxonomy for the subscription supervisor.

Caller mistakes (InvalidConfig, InvalidRequest) and out-of-order calls
(NotConfigured, NotReady, NotConnected) are raised straight to the caller.
FetchError and StreamError are produced internally and handled by the
supervisor; they only escape from the ConnectionManager helpers.
"""


class SupervisorError(Exception):
    """Base class for every error raised by this package."""


class InvalidConfig(SupervisorError):
    """Bad configuration input, e.g. an empty provider list."""


class InvalidRequest(SupervisorError):
    """A listen request is missing its ABI, address or event name."""


class NotConfigured(SupervisorError):
    """No providers have been set."""


class NotReady(SupervisorError):
    """listen() was called before a connection was initialised."""


class NotConnected(SupervisorError):
    """The connection manager holds no open connection."""


class ProviderConnectionError(SupervisorError):
    """The node client failed to connect to an endpoint."""

    def __init__(self, endpoint: str, message: str = ""):
        self.endpoint = endpoint
        super().__init__(message or f"Could not connect to {endpoint}")


class FetchError(SupervisorError):
    """Fetching past events failed (treated as transient)."""


class StreamError(SupervisorError):
    """A live subscription reported an error or closed unexpectedly."""


class Disconnected(SupervisorError):
    """A reset could not re-establish any connection."""
