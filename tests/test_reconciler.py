"""Tests for history reconciliation."""
import asyncio

import pytest

from fakes import RecordingSink, make_record
from subscription_supervisor.errors import FetchError
from subscription_supervisor.models import SubscriptionKey, SubscriptionRuntime
from subscription_supervisor.reconciler import Reconciler


class ScriptedFetch:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def __call__(self, descriptor, from_block):
        self.calls.append(from_block)
        result = self.results.pop(0) if self.results else []
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def runtime():
    return SubscriptionRuntime(key=SubscriptionKey("0xabc", "Transfer"), generation=1, last_checkpoint=90)


@pytest.fixture
def batches():
    return []


@pytest.fixture
def build(runtime, batches, make_descriptor):
    def _build(fetch, is_current=lambda generation: True, callback=None, threshold=3):
        descriptor = make_descriptor(history_callback=callback or batches.append)
        return Reconciler(
            runtime,
            descriptor,
            fetch,
            is_current,
            RecordingSink(),
            interval=0.01,
            failure_alert_threshold=threshold,
        )
    return _build


class TestReconcilerTick:
    @pytest.mark.asyncio
    async def test_batch_delivered_once_and_checkpoint_advances(self, build, runtime, batches):
        records = [make_record(100, 0), make_record(100, 1), make_record(105, 0)]
        fetch = ScriptedFetch(records)
        reconciler = build(fetch)

        await reconciler.tick()

        assert fetch.calls == [90]
        assert batches == [records]
        assert runtime.last_checkpoint == 105

    @pytest.mark.asyncio
    async def test_next_poll_starts_from_checkpoint(self, build, runtime):
        fetch = ScriptedFetch([make_record(120)], [])
        reconciler = build(fetch)

        await reconciler.tick()
        await reconciler.tick()

        assert fetch.calls == [90, 120]

    @pytest.mark.asyncio
    async def test_empty_result_skips_callback(self, build, runtime, batches):
        reconciler = build(ScriptedFetch([]))

        await reconciler.tick()

        assert batches == []
        assert runtime.last_checkpoint == 90

    @pytest.mark.asyncio
    async def test_checkpoint_never_moves_back(self, build, runtime):
        runtime.last_checkpoint = 200
        reconciler = build(ScriptedFetch([make_record(150)]))

        await reconciler.tick()

        assert runtime.last_checkpoint == 200

    @pytest.mark.asyncio
    async def test_fetch_failure_is_not_fatal(self, build, runtime, batches):
        reconciler = build(ScriptedFetch(FetchError("boom"), [make_record(95)]))

        await reconciler.tick()
        assert runtime.last_checkpoint == 90
        assert reconciler.sink.count("reconcile_failed") == 1

        await reconciler.tick()
        assert runtime.last_checkpoint == 95
        assert reconciler.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_alert_after_consecutive_failures(self, build):
        failures = [FetchError("down") for _ in range(5)]
        reconciler = build(ScriptedFetch(*failures, [], FetchError("again")), threshold=3)

        for _ in range(7):
            await reconciler.tick()

        assert reconciler.sink.count("reconcile_failed") == 6
        assert reconciler.sink.count("reconcile_failing") == 1
        assert reconciler.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_stale_generation_discards_result(self, build, runtime, batches):
        reconciler = build(ScriptedFetch([make_record(130)]), is_current=lambda generation: False)

        await reconciler.tick()

        assert batches == []
        assert runtime.last_checkpoint == 90

    @pytest.mark.asyncio
    async def test_callback_failure_keeps_checkpoint(self, build, runtime):
        def broken(records):
            raise ValueError("consumer bug")

        records = [make_record(110)]
        reconciler = build(ScriptedFetch(records, records), callback=broken)

        await reconciler.tick()

        assert runtime.last_checkpoint == 90
        assert reconciler.sink.count("history_callback_failed") == 1

    @pytest.mark.asyncio
    async def test_async_callback(self, build, runtime):
        received = []

        async def callback(records):
            await asyncio.sleep(0)
            received.extend(records)

        reconciler = build(ScriptedFetch([make_record(101)]), callback=callback)

        await reconciler.tick()

        assert [r.checkpoint for r in received] == [101]
        assert runtime.last_checkpoint == 101


class TestReconcilerLoop:
    @pytest.mark.asyncio
    async def test_run_polls_periodically(self, build, runtime, batches):
        fetch = ScriptedFetch([make_record(91)], FetchError("blip"), [make_record(92)])
        reconciler = build(fetch)

        task = asyncio.create_task(reconciler.run())
        await asyncio.sleep(0.1)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert len(fetch.calls) >= 3
        assert runtime.last_checkpoint == 92
        assert len(batches) == 2
