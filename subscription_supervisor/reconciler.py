"""
History reconciliation.

Live streams can lose events during transport gaps. Each reconciler polls
past events from the last seen block up to "latest" and hands anything it
finds to the subscription's history callback. Consumers must be idempotent
per event: events sharing the boundary block may be delivered again.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List

from .collaborator import BlockRef
from .config import DEFAULT_FAILURE_ALERT_THRESHOLD
from .errors import FetchError, NotConnected
from .models import EventRecord, SubscriptionDescriptor, SubscriptionRuntime, invoke_callback
from .observability import EventSink

Fetch = Callable[[SubscriptionDescriptor, BlockRef], Awaitable[List[EventRecord]]]


class Reconciler:
    def __init__(
        self,
        runtime: SubscriptionRuntime,
        descriptor: SubscriptionDescriptor,
        fetch: Fetch,
        is_current: Callable[[int], bool],
        sink: EventSink,
        interval: float,
        failure_alert_threshold: int = DEFAULT_FAILURE_ALERT_THRESHOLD,
    ):
        self.runtime = runtime
        self.descriptor = descriptor
        self.fetch = fetch
        self.is_current = is_current
        self.sink = sink
        self.interval = interval
        self.failure_alert_threshold = failure_alert_threshold
        self.consecutive_failures = 0

    async def tick(self) -> List[EventRecord]:
        """
        Run one reconciliation pass.

        Returns:
            The batch handed to the history callback (empty if nothing was delivered)
        """
        generation = self.runtime.generation
        from_block = self.runtime.last_checkpoint
        key = str(self.runtime.key)

        try:
            results = await self.fetch(self.descriptor, from_block)
        except (FetchError, NotConnected) as e:
            if self.is_current(generation):
                self._record_failure(key, e)
            return []

        if not self.is_current(generation):
            # A reset happened while the request was in flight
            self.sink.emit("reconcile_discarded", logging.DEBUG, key=key, generation=generation)
            return []

        self.consecutive_failures = 0
        if not results:
            return []

        try:
            await invoke_callback(self.descriptor.history_callback, results)
        except Exception as e:
            # Checkpoint stays put so the batch is offered again next tick
            self.sink.emit("history_callback_failed", logging.ERROR, key=key, error=repr(e))
            return []

        if not self.is_current(generation):
            return results

        last_checkpoint = max(record.checkpoint for record in results)
        if last_checkpoint > self.runtime.last_checkpoint:
            self.runtime.last_checkpoint = last_checkpoint
        self.sink.emit(
            "history_batch",
            key=key,
            events=len(results),
            from_block=from_block,
            checkpoint=self.runtime.last_checkpoint,
        )
        return results

    def _record_failure(self, key: str, error: Exception) -> None:
        self.consecutive_failures += 1
        self.sink.emit(
            "reconcile_failed",
            logging.WARNING,
            key=key,
            attempt=self.consecutive_failures,
            error=str(error),
        )
        if self.consecutive_failures == self.failure_alert_threshold:
            self.sink.emit(
                "reconcile_failing",
                logging.ERROR,
                key=key,
                consecutive_failures=self.consecutive_failures,
            )

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()
