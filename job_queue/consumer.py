"""
Queue Consumer — the supervised loop that drives fetch → process → settle.

Topology:
  ┌──────────┐  push  ┌─────────────┐  fetch  ┌──────────────┐
  │ Producer │───────▶│ main queue  │────────▶│ BatchFetcher │
  └──────────┘        └─────────────┘         └──────┬───────┘
                             ▲                       │ chunks of worker_concurrency
                             │                       ▼
                             │                ┌──────────────┐
                             │                │  WorkerPool  │ TTL → QuotaGuard → process
                             │                └──────┬───────┘
                             │  delayed push         │ outcome
                             │                       ▼
                             │                ┌────────────────┐
                             └────────────────│ RetryScheduler │──exhausted──▶ dead-letter queue
                                              └────────────────┘

A pacing pause follows every chunk so the downstream service's own rate
limits are not hammered. Failures of one message never abort a batch; a
structural failure (store gone) pauses the loop and it resumes on its own.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from config.settings import ConsumerConfig, RetryPolicy
from job_queue.fetcher import BatchFetcher
from job_queue.retry import RetryScheduler
from job_queue.worker import WorkerPool
from models.schemas import Message, MessageState, OutcomeStatus, WorkOutcome

logger = structlog.get_logger()


class QueueConsumer:
    """
    Usage:
        consumer = QueueConsumer(fetcher, pool, scheduler, policy)
        await consumer.start()             # blocks until stop() is called
        await consumer.start_background()  # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        fetcher: BatchFetcher,
        pool: WorkerPool,
        scheduler: RetryScheduler,
        policy: RetryPolicy,
        config: ConsumerConfig = None,
    ):
        self.fetcher = fetcher
        self.pool = pool
        self.scheduler = scheduler
        self.policy = policy
        self.config = config or ConsumerConfig()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._unsettled: dict[int, Message] = {}            # popped, outcome not applied yet
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Run fetch cycles until stop() is called."""
        self._stop.clear()
        logger.info("queue_consumer_starting",
                    batch_size=self.policy.batch_size,
                    concurrent_batches=self.policy.concurrent_batches,
                    concurrency=self.policy.worker_concurrency)

        while not self._stop.is_set():
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_cycle_error",
                             error=str(e),
                             error_type=type(e).__name__)
                await self._pause(max(self.policy.pacing_delay_ms, self.config.error_backoff_ms))

        logger.info("queue_consumer_stopped", cycles=self.cycles)

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        self._task = asyncio.create_task(self.start(), name="queue_consumer")
        return self._task

    async def stop(self):
        """
        Stop taking new batches and let the in-flight cycle finish. If it
        outlives shutdown_timeout_ms it is cancelled, and every message it
        had popped but not settled is pushed back to the main queue tail with
        its attempt count unchanged. Such a message may be processed twice
        (at-least-once).
        """
        self._stop.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task),
                                   timeout=self.config.shutdown_timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning("consumer_shutdown_timeout",
                           timeout_ms=self.config.shutdown_timeout_ms)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._release_unsettled()

    async def run_cycle(self) -> dict[MessageState, int]:
        """
        One fetch-and-process cycle. Returns how many messages ended in each
        state, e.g. {MessageState.DONE: 8, MessageState.DELAYED: 2}.
        """
        batch = await self.fetcher.fetch_batch(claimed=self._unsettled)
        self.cycles += 1
        counts: dict[MessageState, int] = {}
        if not batch:
            return counts

        chunk_size = self.policy.worker_concurrency
        for start in range(0, len(batch), chunk_size):
            chunk = batch[start:start + chunk_size]
            states = await asyncio.gather(*(self._handle(m) for m in chunk))
            for state in states:
                counts[state] = counts.get(state, 0) + 1
            await self._pause(self.policy.pacing_delay_ms)

        logger.info("consumer_cycle_complete",
                    fetched=len(batch),
                    **{state.value: n for state, n in counts.items()})
        return counts

    async def _handle(self, message: Message) -> MessageState:
        try:
            outcome = await self.pool.process(message)
        except Exception as e:
            outcome = WorkOutcome(status=OutcomeStatus.FAILED, reason=f"worker error: {e}")
        state = await self.scheduler.settle(message, outcome)
        self._unsettled.pop(id(message), None)
        return state

    async def _release_unsettled(self) -> int:
        """Push popped-but-unsettled messages back to the main queue tail."""
        pending = list(self._unsettled.values())
        self._unsettled.clear()
        released = 0
        for message in pending:
            if await self.scheduler.resubmit(message):
                released += 1
        if pending:
            logger.warning("unsettled_messages_released",
                           count=released,
                           lost=len(pending) - released)
        return released

    async def _pause(self, delay_ms: int):
        """Sleep, but wake early when a stop is requested."""
        if delay_ms <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_ms / 1000)
        except asyncio.TimeoutError:
            pass
