"""
Subscription supervision.

SupervisionOrchestrator keeps contract event subscriptions alive across
connection failures: it remembers every listen() request, watches each live
stream for silence, reconciles missed history, and on failure tears down the
whole connection, rotates to the next provider and replays every request.

Every listener, watchdog and reconciler task captures the generation it was
created in. reset_connection() bumps the generation before tearing anything
down, so a task from a previous connection can no longer commit state even
if it is still finishing a network call.

Requested resets are counted until a connection proves healthy (an event
arrives, or no reset is requested for reconnect.healthy_after seconds).
Each further reset in such a streak waits reconnect.delay(n) first, and once
reconnect.max_attempts resets in a row have failed the supervisor gives up
and goes DISCONNECTED.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from .collaborator import BlockRef, Connector, EventStream
from .config import DEFAULT_FAILURE_ALERT_THRESHOLD, ReconnectPolicy
from .connection import ConnectionManager
from .errors import Disconnected, InvalidRequest, NotReady, ProviderConnectionError, StreamError
from .models import (
    DEFAULT_HISTORY_INTERVAL,
    Callback,
    EventRecord,
    StreamChanged,
    StreamConnected,
    StreamData,
    StreamFailed,
    SubscriptionDescriptor,
    SubscriptionKey,
    SubscriptionRuntime,
    SupervisorState,
    invoke_callback,
)
from .observability import EventSink, LoggingSink
from .providers import ProviderPool
from .reconciler import Reconciler
from .registry import SubscriptionRegistry
from .watchdog import Watchdog

UNSUBSCRIBE_TIMEOUT = 5.0  # seconds


class SupervisionOrchestrator:
    def __init__(
        self,
        connector: Connector,
        sink: Optional[EventSink] = None,
        reconnect: Optional[ReconnectPolicy] = None,
        default_history_interval: float = DEFAULT_HISTORY_INTERVAL,
        failure_alert_threshold: int = DEFAULT_FAILURE_ALERT_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            connector: Node client used to open connections
            sink: Receives every significant transition (defaults to logging)
            reconnect: Attempts and backoff used when a reset reconnects
            default_history_interval: Reconciliation period when a descriptor sets none
            failure_alert_threshold: Consecutive reconciliation failures before alerting
            clock: Monotonic clock for keep-alive bookkeeping
            sleep: Coroutine used for reconnect and resubscribe backoff
        """
        self.providers = ProviderPool()
        self.connection = ConnectionManager(connector)
        self.registry = SubscriptionRegistry()
        self.sink = sink or LoggingSink()
        self.reconnect = reconnect or ReconnectPolicy()
        self.default_history_interval = default_history_interval
        self.failure_alert_threshold = failure_alert_threshold
        self.unsubscribe_timeout = UNSUBSCRIBE_TIMEOUT
        self.clock = clock
        self._sleep = sleep

        self._runtimes: Dict[SubscriptionKey, SubscriptionRuntime] = {}
        self._retries: Dict[SubscriptionKey, asyncio.Task] = {}
        self._generation = 0
        self._state = SupervisorState.UNINITIALIZED
        self._lock = asyncio.Lock()
        self._pending_reset: Optional[asyncio.Task] = None
        self._pending_generation: Optional[int] = None
        # Requested resets since the last healthy connection
        self._reset_streak = 0
        self._connected_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current_provider(self) -> Optional[str]:
        return self.providers.current() if len(self.providers) else None

    def active_keys(self) -> List[SubscriptionKey]:
        return list(self._runtimes)

    def runtime(self, key: SubscriptionKey) -> Optional[SubscriptionRuntime]:
        return self._runtimes.get(key)

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _is_live(self, runtime: SubscriptionRuntime) -> bool:
        return self.is_current(runtime.generation) and self._runtimes.get(runtime.key) is runtime

    # ------------------------------------------------------------------
    # Connection setup
    # ------------------------------------------------------------------

    def set_providers(self, endpoints: Sequence[str]) -> None:
        self.providers.set_providers(endpoints)
        self.sink.emit("providers_set", count=len(self.providers), current=self.providers.current())

    async def init_connection(self) -> None:
        """
        Connect to the current provider.

        Any subscriptions already in the registry (e.g. after the supervisor
        went DISCONNECTED) are replayed on the new connection.

        Raises:
            NotConfigured: no providers set
            ProviderConnectionError: the provider could not be reached
        """
        endpoint = self.providers.current()
        async with self._lock:
            self._generation += 1
            await self._teardown_all()
            await self.connection.close()
            try:
                await self.connection.open(endpoint)
            except ProviderConnectionError as e:
                if self._state != SupervisorState.UNINITIALIZED:
                    self._state = SupervisorState.DISCONNECTED
                self.sink.emit("connect_failed", logging.ERROR, endpoint=endpoint, error=str(e))
                raise

            self._state = SupervisorState.READY
            self._reset_streak = 0
            self._connected_at = self.clock()
            self.sink.emit("connected", endpoint=endpoint, epoch=self.connection.epoch)
            await self._replay()

    async def clear_connection(self) -> None:
        """Drop the connection and every live subscription. Registrations are kept."""
        async with self._lock:
            self._generation += 1
            await self._teardown_all()
            await self.connection.close()
            self._state = SupervisorState.UNINITIALIZED

    async def aclose(self) -> None:
        pending = self._pending_reset
        if pending is not None and pending is not asyncio.current_task() and not pending.done():
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        await self.clear_connection()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def listen(self, descriptor: SubscriptionDescriptor) -> SubscriptionKey:
        """
        Register a subscription and start it on the active connection.

        A second listen() for the same (address, event) replaces the first.
        If the stream cannot be opened because of the transport, the
        registration is kept and a reset is requested, which establishes it
        on the next provider.

        Raises:
            InvalidRequest: abi, address or event name missing, the event is
                not in the ABI, or the node client rejected the descriptor
            NotReady: init_connection() has not succeeded
        """
        if not descriptor.abi or not descriptor.address or not descriptor.event_name:
            raise InvalidRequest("ABI, address or event not defined")
        if descriptor.event_abi is None:
            raise InvalidRequest(f"Event {descriptor.event_name} not found in ABI")

        async with self._lock:
            if not self.connection.is_open:
                raise NotReady("Please init connection first")
            key = descriptor.key
            await self._cancel_retries([key])
            self.registry.put(key, descriptor)
            try:
                await self._start(descriptor, escalate=True)
            except InvalidRequest:
                self.registry.remove(key)
                raise
            return key

    async def unsubscribe(self, address: str, event_name: str) -> bool:
        """Forget a subscription and stop its stream and timers. Returns False if unknown."""
        key = SubscriptionKey(address.lower(), event_name)
        async with self._lock:
            removed = self.registry.remove(key)
            await self._cancel_retries([key])
            await self._teardown(key)
            if removed:
                self.sink.emit("unsubscribed", key=str(key))
            if not self._runtimes and self._state == SupervisorState.ACTIVE:
                self._state = SupervisorState.READY
            return removed

    async def _start(self, descriptor: SubscriptionDescriptor, escalate: bool) -> None:
        key = descriptor.key
        await self._teardown(key)

        generation = self._generation
        try:
            stream, unsubscribe = await self.connection.subscribe(descriptor)
        except Exception as e:
            self.sink.emit("subscribe_failed", logging.ERROR, key=str(key), error=str(e))
            # A rejected descriptor would fail on every provider, so it never triggers a reset
            if not escalate or isinstance(e, InvalidRequest):
                raise
            self.request_reset(generation, f"subscribe failed for {key}")
            return

        runtime = SubscriptionRuntime(
            key=key,
            generation=generation,
            last_checkpoint=descriptor.initial_checkpoint,
            last_activity=self.clock(),
            unsubscribe=unsubscribe,
        )

        watchdog = None
        if descriptor.keep_alive_timeout:
            watchdog = Watchdog(
                runtime,
                descriptor.keep_alive_timeout,
                self.request_reset,
                self.sink,
                clock=self.clock,
            )

        runtime.tasks.append(asyncio.create_task(self._consume(stream, descriptor, runtime, watchdog)))
        if watchdog is not None:
            runtime.tasks.append(asyncio.create_task(watchdog.run()))

        if descriptor.history_callback is not None:
            reconciler = Reconciler(
                runtime,
                descriptor,
                self._fetch_past_events,
                self.is_current,
                self.sink,
                interval=descriptor.history_interval or self.default_history_interval,
                failure_alert_threshold=self.failure_alert_threshold,
            )
            runtime.tasks.append(asyncio.create_task(reconciler.run()))

        self._runtimes[key] = runtime
        self._state = SupervisorState.ACTIVE
        self.sink.emit(
            "subscribed",
            key=str(key),
            endpoint=self.connection.endpoint,
            generation=generation,
            keep_alive=descriptor.keep_alive_timeout,
            history=descriptor.history_callback is not None,
        )

    async def _fetch_past_events(self, descriptor: SubscriptionDescriptor, from_block: BlockRef) -> List[EventRecord]:
        return await self.connection.get_past_events(descriptor, from_block, "latest")

    async def _consume(
        self,
        stream: EventStream,
        descriptor: SubscriptionDescriptor,
        runtime: SubscriptionRuntime,
        watchdog: Optional[Watchdog],
    ) -> None:
        """Dispatch one stream's events to the caller's callbacks."""
        key = str(runtime.key)
        try:
            async for item in stream:
                if not self._is_live(runtime):
                    return

                if watchdog is not None:
                    watchdog.record_activity()
                else:
                    runtime.record_activity(self.clock())

                if isinstance(item, StreamData):
                    self._reset_streak = 0
                    await self._deliver(descriptor.data_callback, item.record, key)
                elif isinstance(item, StreamChanged):
                    self._reset_streak = 0
                    await self._deliver(descriptor.changed_callback, item.record, key)
                elif isinstance(item, StreamConnected):
                    self.sink.emit("stream_connected", logging.DEBUG, key=key, subscription_id=item.subscription_id)
                elif isinstance(item, StreamFailed):
                    self._stream_failed(runtime, item.error)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stream_failed(runtime, e)
            return

        if self._is_live(runtime):
            self._stream_failed(runtime, StreamError("stream closed by node"))

    async def _deliver(self, callback: Callback, record: EventRecord, key: str) -> None:
        try:
            await invoke_callback(callback, record)
        except Exception as e:
            self.sink.emit("callback_failed", logging.ERROR, key=key, error=repr(e))

    def _stream_failed(self, runtime: SubscriptionRuntime, error: BaseException) -> None:
        if not self._is_live(runtime):
            return
        self.sink.emit("stream_error", logging.WARNING, key=str(runtime.key), error=repr(error))
        self.request_reset(runtime.generation, f"stream error on {runtime.key}: {error}")

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def request_reset(self, generation: int, reason: str) -> None:
        """
        Ask for a reset on behalf of a task created in `generation`.

        Stale requests, and repeats for a generation whose reset is already
        scheduled, are dropped. The reset runs in its own task so the caller
        (which the reset will cancel) never waits on it.
        """
        if not self.is_current(generation):
            self.sink.emit("reset_ignored", logging.DEBUG, generation=generation, current=self._generation)
            return
        if self._pending_generation == generation:
            return
        self._pending_generation = generation
        self._pending_reset = asyncio.create_task(self._run_requested_reset(generation, reason))

    async def _run_requested_reset(self, generation: int, reason: str) -> None:
        if self._connected_at is not None and self.clock() - self._connected_at >= self.reconnect.healthy_after:
            self._reset_streak = 0
        self._reset_streak += 1

        try:
            if self._reset_streak > self.reconnect.max_attempts:
                await self._give_up(generation, reason)
                return
            if self._reset_streak > 1:
                delay = self.reconnect.delay(self._reset_streak - 1)
                self.sink.emit("reset_backoff", logging.WARNING, streak=self._reset_streak, delay=delay)
                await self._sleep(delay)
                if not self.is_current(generation):
                    return
            await self.reset_connection(reason=reason)
        except Disconnected:
            # Already reported; stay down until someone calls init_connection()
            pass
        except Exception as e:
            self.sink.emit("reset_failed", logging.ERROR, reason=reason, error=repr(e))

    async def _give_up(self, generation: int, reason: str) -> None:
        """Drop the connection after too many resets in a row never produced a healthy one."""
        async with self._lock:
            if not self.is_current(generation):
                return
            self._generation += 1
            self._pending_generation = None
            await self._teardown_all()
            await self.connection.close()
            self._state = SupervisorState.DISCONNECTED
            self.sink.emit(
                "disconnected",
                logging.ERROR,
                attempts=self.reconnect.max_attempts,
                error=f"no healthy connection after {self.reconnect.max_attempts} resets, last: {reason}",
            )

    async def reset_connection(self, reason: str = "manual") -> None:
        """
        Replace the connection and resubscribe everything in the registry.

        Raises:
            NotReady: there was never a connection to reset
            Disconnected: no provider could be reached within the reconnect policy
        """
        async with self._lock:
            if self._state == SupervisorState.UNINITIALIZED:
                raise NotReady("No existing connection")

            previous = self.connection.endpoint or self.providers.current()
            self._state = SupervisorState.RESETTING
            self._generation += 1
            self._pending_generation = None
            self.sink.emit(
                "reset_started",
                logging.WARNING,
                reason=reason,
                generation=self._generation,
                subscriptions=len(self.registry),
            )

            await self._teardown_all()
            await self.connection.close()

            endpoint = await self._reconnect(previous)
            self._state = SupervisorState.READY
            self._connected_at = self.clock()
            self.sink.emit("connected", endpoint=endpoint, epoch=self.connection.epoch)

            await self._replay()
            self.sink.emit(
                "reset_complete",
                endpoint=endpoint,
                generation=self._generation,
                live=len(self._runtimes),
                registered=len(self.registry),
            )

    async def _reconnect(self, previous: str) -> str:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.reconnect.max_attempts + 1):
            endpoint = self.providers.rotate()
            self.sink.emit("provider_rotated", previous=previous, current=endpoint, attempt=attempt)
            try:
                await self.connection.open(endpoint)
                return endpoint
            except ProviderConnectionError as e:
                last_error = e
                self.sink.emit("reconnect_failed", logging.WARNING, endpoint=endpoint, attempt=attempt, error=str(e))
                previous = endpoint
                if attempt < self.reconnect.max_attempts:
                    await self._sleep(self.reconnect.delay(attempt))

        self._state = SupervisorState.DISCONNECTED
        self.sink.emit("disconnected", logging.ERROR, attempts=self.reconnect.max_attempts, error=str(last_error))
        raise Disconnected(f"Could not reconnect after {self.reconnect.max_attempts} attempts") from last_error

    async def _replay(self) -> None:
        for key, descriptor in self.registry.all():
            try:
                await self._start(descriptor, escalate=False)
            except Exception as e:
                self.sink.emit("replay_failed", logging.ERROR, key=str(key), error=str(e))
                if not isinstance(e, InvalidRequest):
                    self._retries[key] = asyncio.create_task(self._retry_subscribe(key, self._generation))
        if not self._runtimes and self._state == SupervisorState.ACTIVE:
            self._state = SupervisorState.READY

    async def _retry_subscribe(self, key: SubscriptionKey, generation: int) -> None:
        """
        Keep trying to resubscribe one key whose replay failed.

        Backs off with the reconnect policy. If every attempt fails the
        connection itself is suspect, so a reset is requested instead.
        """
        try:
            for attempt in range(1, self.reconnect.max_attempts + 1):
                await self._sleep(self.reconnect.delay(attempt))
                async with self._lock:
                    descriptor = self.registry.get(key)
                    if not self.is_current(generation) or key in self._runtimes or descriptor is None:
                        return
                    try:
                        await self._start(descriptor, escalate=False)
                    except InvalidRequest:
                        return
                    except Exception as e:
                        self.sink.emit(
                            "resubscribe_failed", logging.WARNING, key=str(key), attempt=attempt, error=str(e)
                        )
                        continue
                    self.sink.emit("resubscribed", key=str(key), attempt=attempt)
                    return

            self.request_reset(generation, f"could not resubscribe {key}")
        finally:
            if self._retries.get(key) is asyncio.current_task():
                del self._retries[key]

    async def _cancel_retries(self, keys: Optional[Iterable[SubscriptionKey]] = None) -> None:
        if keys is None:
            keys = list(self._retries)
        current = asyncio.current_task()
        tasks = []
        for key in keys:
            task = self._retries.pop(key, None)
            if task is not None and task is not current:
                task.cancel()
                tasks.append(task)
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _teardown_all(self) -> None:
        await self._cancel_retries()
        runtimes = list(self._runtimes.values())
        self._runtimes.clear()
        # Silently dead sockets never answer, so the unsubscribes time out side by side
        await asyncio.gather(*(self._unsubscribe(runtime) for runtime in runtimes))
        await self._cancel_tasks([task for runtime in runtimes for task in runtime.tasks])

    async def _teardown(self, key: SubscriptionKey) -> None:
        runtime = self._runtimes.pop(key, None)
        if runtime is None:
            return
        await self._unsubscribe(runtime)
        await self._cancel_tasks(runtime.tasks)

    async def _unsubscribe(self, runtime: SubscriptionRuntime) -> None:
        if runtime.unsubscribe is None:
            return
        try:
            await asyncio.wait_for(runtime.unsubscribe(), self.unsubscribe_timeout)
        except Exception as e:
            # The connection is dropped right after, so a failed unsubscribe is harmless
            self.sink.emit("unsubscribe_failed", logging.DEBUG, key=str(runtime.key), error=repr(e))

    async def _cancel_tasks(self, tasks: List[asyncio.Task]) -> None:
        current = asyncio.current_task()
        tasks = [task for task in tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
