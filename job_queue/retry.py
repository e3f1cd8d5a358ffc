"""
Retry Scheduler — the single place that decides what happens after processing.

Per-message state machine:

    Pending ──▶ Processing ──▶ Done
                    │
                    ▼
                 Failed ── attempt < max ──▶ Delayed ──(base * attempt)──▶ Pending
                    │
                    └──── attempt >= max ──▶ Quarantined (dead-letter queue)

    deferred  ──▶ Delayed (fixed delay, attempt unchanged) ──▶ Pending
    expired / rejected ──▶ Dropped

Resubmissions always go to the tail of the main queue. Each delayed message
is held by its own timer task; flush() pushes every one of them immediately
so nothing waiting out a delay is lost on shutdown.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from config.settings import RetryPolicy
from job_queue.dead_letter import DeadLetterSink
from job_queue.errors import StoreUnavailable
from job_queue.message_queue import MessageQueue
from models.schemas import Message, MessageState, OutcomeStatus, WorkOutcome

logger = structlog.get_logger()


class RetryScheduler:

    def __init__(self, store: MessageQueue, dead_letters: DeadLetterSink, policy: RetryPolicy):
        self.store = store
        self.dead_letters = dead_letters
        self.policy = policy
        self._delayed: dict[asyncio.Task, Message] = {}     # still sleeping
        self._tasks: set[asyncio.Task] = set()               # sleeping or pushing

    @property
    def pending_count(self) -> int:
        return len(self._delayed)

    def backoff_ms(self, attempt: int) -> int:
        """Linear escalation: the n-th retry waits n * base_delay."""
        return self.policy.base_delay_ms * attempt

    async def settle(self, message: Message, outcome: WorkOutcome) -> MessageState:
        """Apply the outcome of one processing cycle. Returns the resulting state."""
        if outcome.status == OutcomeStatus.SUCCEEDED:
            return MessageState.DONE

        if outcome.status == OutcomeStatus.EXPIRED:
            logger.info("message_dropped", cause="expired", reason=outcome.reason,
                        **message.log_context())
            return MessageState.DROPPED

        if outcome.status == OutcomeStatus.REJECTED:
            logger.warning("message_dropped", cause="rejected", reason=outcome.reason,
                           **message.log_context())
            return MessageState.DROPPED

        if outcome.status == OutcomeStatus.DEFERRED:
            self.schedule(message, outcome.delay_ms)
            logger.info("message_deferred",
                        reason=outcome.reason,
                        delay_ms=outcome.delay_ms,
                        **message.log_context())
            return MessageState.DELAYED

        return await self.fail(message, outcome.reason)

    async def fail(self, message: Message, reason: str) -> MessageState:
        retried = message.with_retry()
        attempt = retried.metadata.retry_count

        if attempt >= self.policy.max_attempts:
            await self.dead_letters.quarantine(retried, reason)
            logger.warning("message_attempts_exhausted",
                           max_attempts=self.policy.max_attempts,
                           reason=reason,
                           **retried.log_context())
            return MessageState.QUARANTINED

        delay = self.backoff_ms(attempt)
        self.schedule(retried, delay)
        logger.info("message_retry_scheduled",
                    reason=reason,
                    delay_ms=delay,
                    **retried.log_context())
        return MessageState.DELAYED

    def schedule(self, message: Message, delay_ms: int) -> asyncio.Task:
        """Push `message` to the main queue tail once `delay_ms` has elapsed."""
        task = asyncio.create_task(self._resubmit_after(message, delay_ms))
        self._delayed[task] = message
        self._tasks.add(task)
        task.add_done_callback(self._forget)
        return task

    async def _resubmit_after(self, message: Message, delay_ms: int):
        await asyncio.sleep(delay_ms / 1000)
        current = asyncio.current_task()
        self._delayed.pop(current, None)
        await self.resubmit(message)

    def _forget(self, task: asyncio.Task):
        self._delayed.pop(task, None)
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("resubmit_task_failed", error=str(task.exception()))

    async def resubmit(self, message: Message) -> bool:
        """Push to the main queue tail, riding out store outages. False if it never landed."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.store.config.push_attempts),
                wait=wait_fixed(self.store.config.push_retry_delay_ms / 1000),
                retry=retry_if_exception_type(StoreUnavailable),
                reraise=True,
            ):
                with attempt:
                    await self.store.push(self.store.main_queue, message.to_json())
        except StoreUnavailable as e:
            logger.critical("resubmit_lost",
                            error=str(e),
                            attempts=self.store.config.push_attempts,
                            record=message.to_json(),
                            **message.log_context())
            return False

        logger.debug("message_resubmitted", **message.log_context())
        return True

    async def flush(self) -> int:
        """
        Cut every pending delay short and push the messages now.
        Returns how many delayed messages were pushed by the flush.
        """
        waiting = list(self._delayed.items())
        self._delayed.clear()
        for task, _ in waiting:
            task.cancel()
        if waiting:
            await asyncio.gather(*(task for task, _ in waiting), return_exceptions=True)

        pushed = 0
        for _, message in waiting:
            if await self.resubmit(message):
                pushed += 1

        # let resubmissions whose delay already elapsed finish their push
        in_progress = [t for t in self._tasks if not t.done()]
        if in_progress:
            await asyncio.gather(*in_progress, return_exceptions=True)

        if waiting:
            logger.info("delayed_messages_flushed", count=pushed)
        return pushed
