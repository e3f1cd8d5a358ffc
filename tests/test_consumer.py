"""
Tests — Queue Consumer end to end

Each scenario admits items through the producer, runs consumer cycles
against the in-memory store and checks where every message ended up.
Retry and deferral delays are cut short with scheduler.flush().

Run:
  pytest tests/test_consumer.py -v
"""
import asyncio
import pytest

from unittest.mock import AsyncMock

from conftest import ScriptedProcessor, StaticBudget


def _runtime(settings, store, processor=None, budget=None):
    from job_queue.runtime import build_runtime

    return build_runtime(settings, store, processor or ScriptedProcessor(), budget)


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ──────────────────────────────────────────────────────────────
#  Delivery scenarios
# ──────────────────────────────────────────────────────────────


class TestDeliveryScenarios:

    @pytest.mark.asyncio
    async def test_happy_path(self, runtime, processor, store, valid_item):
        from models.schemas import MessageState

        await runtime.producer.submit(valid_item)
        counts = await runtime.consumer.run_cycle()

        assert counts == {MessageState.DONE: 1}
        assert len(processor.calls) == 1
        assert await store.length(store.main_queue) == 0
        assert await store.length(store.dead_letter_queue) == 0

    @pytest.mark.asyncio
    async def test_stale_message_expires(self, settings, store, valid_item):
        from job_queue.producer import Producer
        from models.schemas import MessageState, now_ms

        processor = ScriptedProcessor()
        rt = _runtime(settings, store, processor)
        eleven_minutes_ago = now_ms() - 11 * 60 * 1000
        await Producer(store, clock=lambda: eleven_minutes_ago).submit(valid_item)

        counts = await rt.consumer.run_cycle()
        assert counts == {MessageState.DROPPED: 1}
        assert processor.calls == []
        assert await store.length(store.main_queue) == 0
        assert await store.length(store.dead_letter_queue) == 0

    @pytest.mark.asyncio
    async def test_persistent_failure_ends_in_dead_letters(self, settings, store, valid_item):
        from models.schemas import DeadLetterRecord, MessageState, ProcessingResult

        processor = ScriptedProcessor(ProcessingResult(success=False, reason="column missing"))
        rt = _runtime(settings, store, processor)
        await rt.producer.submit(valid_item)

        states = []
        for _ in range(3):
            counts = await rt.consumer.run_cycle()
            states.extend(counts)
            await rt.scheduler.flush()

        assert states == [MessageState.DELAYED, MessageState.DELAYED, MessageState.QUARANTINED]
        assert len(processor.calls) == 3
        assert await store.length(store.main_queue) == 0
        assert await store.length(store.dead_letter_queue) == 1

        record = DeadLetterRecord.from_json((await store.peek(store.dead_letter_queue, 1))[0])
        assert record.error == "column missing"
        assert record.original().metadata.retry_count == 3

    @pytest.mark.asyncio
    async def test_flaky_processing_recovers(self, settings, store, valid_item):
        from models.schemas import MessageState, ProcessingResult

        processor = ScriptedProcessor(
            ProcessingResult(success=False, reason="timeout downstream"),
            ProcessingResult(success=True),
        )
        rt = _runtime(settings, store, processor)
        await rt.producer.submit(valid_item)

        assert await rt.consumer.run_cycle() == {MessageState.DELAYED: 1}
        await rt.scheduler.flush()
        assert await rt.consumer.run_cycle() == {MessageState.DONE: 1}
        assert await store.length(store.dead_letter_queue) == 0

    @pytest.mark.asyncio
    async def test_low_budget_defers_without_using_an_attempt(self, settings, store, valid_item):
        from models.schemas import Message, MessageState

        processor = ScriptedProcessor()
        rt = _runtime(settings, store, processor, StaticBudget(remaining=500_000))
        await rt.producer.submit(valid_item)

        assert await rt.consumer.run_cycle() == {MessageState.DELAYED: 1}
        assert processor.calls == []

        await rt.scheduler.flush()
        requeued = Message.from_json((await store.peek(store.main_queue, 1))[0])
        assert requeued.metadata.retry_count == 0

    @pytest.mark.asyncio
    async def test_rejected_credential_is_dropped(self, settings, store, valid_item):
        from job_queue.errors import AuthError
        from models.schemas import MessageState

        processor = ScriptedProcessor()
        rt = _runtime(settings, store, processor, StaticBudget(error=AuthError("Not Authenticated")))
        await rt.producer.submit(valid_item)

        assert await rt.consumer.run_cycle() == {MessageState.DROPPED: 1}
        await rt.scheduler.flush()
        assert processor.calls == []
        assert await store.length(store.main_queue) == 0
        assert await store.length(store.dead_letter_queue) == 0

    @pytest.mark.asyncio
    async def test_mixed_batch(self, settings, store, valid_item):
        from models.schemas import MessageState, ProcessingResult

        class ByRecord(ScriptedProcessor):
            async def process(self, payload):
                self.calls.append(payload)
                return ProcessingResult(success=int(payload.record_id) % 2 == 0, reason="odd")

        rt = _runtime(settings, store, ByRecord())
        for i in range(8):
            await rt.producer.submit(dict(valid_item, recordId=str(i)))

        counts = await rt.consumer.run_cycle()
        assert counts == {MessageState.DONE: 4, MessageState.DELAYED: 4}
        assert rt.scheduler.pending_count == 4

    @pytest.mark.asyncio
    async def test_worker_crash_counts_as_failure(self, runtime, valid_item):
        from models.schemas import MessageState

        runtime.pool.process = AsyncMock(side_effect=RuntimeError("bug"))
        await runtime.producer.submit(valid_item)
        assert await runtime.consumer.run_cycle() == {MessageState.DELAYED: 1}

    @pytest.mark.asyncio
    async def test_empty_queue_cycle(self, runtime):
        assert await runtime.consumer.run_cycle() == {}
        assert runtime.consumer.cycles == 1


# ──────────────────────────────────────────────────────────────
#  Loop lifecycle
# ──────────────────────────────────────────────────────────────


class TestConsumerLoop:

    @pytest.mark.asyncio
    async def test_background_loop_drains_queue(self, runtime, processor, store, valid_item):
        for i in range(12):
            await runtime.producer.submit(dict(valid_item, recordId=str(i)))

        await runtime.consumer.start_background()
        assert runtime.consumer.running
        await _wait_for(lambda: len(processor.calls) == 12)
        await runtime.consumer.stop()

        assert not runtime.consumer.running
        assert await store.length(store.main_queue) == 0
        assert {p.record_id for p in processor.calls} == {str(i) for i in range(12)}

    @pytest.mark.asyncio
    async def test_loop_survives_store_outage(self, runtime):
        from job_queue.errors import StoreUnavailable

        calls = 0

        async def flaky_fetch(claimed=None):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.005)
            if calls == 1:
                raise StoreUnavailable("down")
            return []

        runtime.fetcher.fetch_batch = flaky_fetch
        await runtime.consumer.start_background()
        await _wait_for(lambda: runtime.consumer.cycles >= 2)
        await runtime.consumer.stop()
        assert calls >= 3

    @pytest.mark.asyncio
    async def test_stop_without_start(self, runtime):
        await runtime.consumer.stop()
        assert not runtime.consumer.running

    @pytest.mark.asyncio
    async def test_slow_cycle_cancelled_after_timeout(self, settings, store):
        from dataclasses import replace
        from job_queue.runtime import build_runtime

        settings.consumer = replace(settings.consumer, shutdown_timeout_ms=20)
        rt = build_runtime(settings, store, ScriptedProcessor())

        async def hang(claimed=None):
            await asyncio.sleep(10)

        rt.fetcher.fetch_batch = hang
        await rt.consumer.start_background()
        await asyncio.sleep(0.01)
        await rt.consumer.stop()
        assert not rt.consumer.running

    @pytest.mark.asyncio
    async def test_forced_stop_puts_in_flight_messages_back(self, settings, store, valid_item):
        from dataclasses import replace
        from job_queue.runtime import build_runtime
        from models.schemas import Message

        class Slow(ScriptedProcessor):
            async def process(self, payload):
                self.calls.append(payload)
                await asyncio.sleep(5)

        settings.consumer = replace(settings.consumer, shutdown_timeout_ms=50)
        processor = Slow()
        rt = build_runtime(settings, store, processor)
        for i in range(3):
            await rt.producer.submit(dict(valid_item, recordId=str(i)))

        await rt.consumer.start_background()
        await _wait_for(lambda: len(processor.calls) == 3)
        await rt.consumer.stop()
        await rt.scheduler.flush()

        main = await store.length(store.main_queue)
        dead = await store.length(store.dead_letter_queue)
        assert main + dead == 3
        requeued = [Message.from_json(r) for r in await store.peek(store.main_queue, 10)]
        assert {m.payload.record_id for m in requeued} == {"0", "1", "2"}
        assert all(m.metadata.retry_count == 0 for m in requeued)

    @pytest.mark.asyncio
    async def test_graceful_stop_leaves_nothing_behind(self, runtime, processor, store, valid_item):
        await runtime.producer.submit(valid_item)
        await runtime.consumer.start_background()
        await _wait_for(lambda: len(processor.calls) == 1)
        await runtime.consumer.stop()
        assert await store.length(store.main_queue) == 0
