"""
Keep-alive watchdog.

Resets the connection if a subscription stays silent for longer than its
keep-alive timeout. A node that silently drops a websocket often keeps the
TCP session open, so silence is the only symptom.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from .models import SubscriptionRuntime
from .observability import EventSink

ResetRequest = Callable[[int, str], None]


class Watchdog:
    def __init__(
        self,
        runtime: SubscriptionRuntime,
        timeout: float,
        request_reset: ResetRequest,
        sink: EventSink,
        clock: Callable[[], float] = time.monotonic,
        interval: Optional[float] = None,
    ):
        """
        Args:
            runtime: Runtime state of the watched subscription
            timeout: Seconds of silence tolerated
            request_reset: Called with (generation, reason) when the timeout is exceeded
            sink: Where the timeout warning goes
            clock: Monotonic clock, injectable for tests
            interval: Seconds between checks (defaults to timeout)
        """
        self.runtime = runtime
        self.timeout = timeout
        self.request_reset = request_reset
        self.sink = sink
        self.clock = clock
        self.interval = interval or timeout
        # Set once a reset was requested for the current silence; cleared by activity
        self.fired = False

    def record_activity(self) -> None:
        self.runtime.record_activity(self.clock())
        self.fired = False

    def elapsed(self) -> float:
        return self.clock() - self.runtime.last_activity

    def check(self) -> bool:
        """Request a reset if the subscription is stale. Returns True if a reset was requested."""
        if self.fired:
            return False
        elapsed = self.elapsed()
        if elapsed <= self.timeout:
            return False

        self.fired = True
        self.sink.emit(
            "keep_alive_timeout",
            logging.WARNING,
            key=str(self.runtime.key),
            elapsed=round(elapsed, 3),
            timeout=self.timeout,
            hint="interrupting live subscriptions; extend the timeout if the event is rare",
        )
        self.request_reset(self.runtime.generation, f"keep-alive timeout for {self.runtime.key}")
        return True

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.check()
