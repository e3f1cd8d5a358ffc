"""
Worker Pool — bounded concurrent processing of fetched messages.

Per message, in order:
  1. TTL check       stale messages are expired without touching downstream
  2. Quota guard     may defer (no attempt used) or reject (bad credential)
  3. Processing      the collaborator call, bounded by process_timeout_ms

The pool only reports outcomes. Whether a message is retried, quarantined,
deferred or dropped is decided by the RetryScheduler.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Callable, Optional

from backend.connector import ProcessingCollaborator
from config.settings import QuotaConfig, RetryPolicy
from job_queue.errors import AuthError, ExpiredMessage, QuotaExceeded
from job_queue.quota import QuotaGuard
from models.schemas import BudgetAction, Message, OutcomeStatus, WorkOutcome, now_ms

logger = structlog.get_logger()


class WorkerPool:

    def __init__(
        self,
        processor: ProcessingCollaborator,
        policy: RetryPolicy,
        guard: Optional[QuotaGuard] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.processor = processor
        self.policy = policy
        self.guard = guard
        self._clock = clock
        self._semaphore = asyncio.Semaphore(policy.worker_concurrency)
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def check_ttl(self, message: Message):
        now = self._clock()
        if message.is_expired(self.policy.ttl_ms, now):
            raise ExpiredMessage(message.age_ms(now), self.policy.ttl_ms)

    async def process(self, message: Message) -> WorkOutcome:
        async with self._semaphore:
            self._in_flight += 1
            try:
                return await self._process(message)
            finally:
                self._in_flight -= 1

    async def _process(self, message: Message) -> WorkOutcome:
        try:
            self.check_ttl(message)
        except ExpiredMessage as e:
            logger.warning("message_expired",
                           age_ms=e.age_ms,
                           ttl_ms=e.ttl_ms,
                           **message.log_context())
            return WorkOutcome(status=OutcomeStatus.EXPIRED, reason=str(e))

        if self.guard is not None:
            decision = await self.guard.check_budget(message)
            if decision.action == BudgetAction.DEFER:
                return WorkOutcome(status=OutcomeStatus.DEFERRED,
                                   reason=decision.reason,
                                   delay_ms=decision.delay_ms)
            if decision.action == BudgetAction.REJECT:
                return WorkOutcome(status=OutcomeStatus.REJECTED, reason=decision.reason)

        logger.info("processing_message", **message.log_context())
        try:
            result = await asyncio.wait_for(
                self.processor.process(message.payload),
                timeout=self.policy.process_timeout_ms / 1000,
            )
        except QuotaExceeded as e:
            delay = e.retry_after_ms if e.retry_after_ms is not None else self._quota_delay_ms()
            logger.info("processing_quota_exceeded", delay_ms=delay, **message.log_context())
            return WorkOutcome(status=OutcomeStatus.DEFERRED, reason=str(e), delay_ms=delay)
        except AuthError as e:
            logger.warning("processing_auth_failed", error=str(e), **message.log_context())
            return WorkOutcome(status=OutcomeStatus.REJECTED, reason=f"authentication failed: {e}")
        except asyncio.TimeoutError:
            reason = f"processing timed out after {self.policy.process_timeout_ms}ms"
            logger.warning("processing_timeout", **message.log_context())
            return WorkOutcome(status=OutcomeStatus.FAILED, reason=reason)
        except Exception as e:
            logger.error("processing_error",
                         error=str(e),
                         error_type=type(e).__name__,
                         **message.log_context())
            return WorkOutcome(status=OutcomeStatus.FAILED, reason=str(e) or type(e).__name__)

        if not result.success:
            reason = result.reason or "processing reported failure"
            logger.warning("processing_failed", reason=reason, **message.log_context())
            return WorkOutcome(status=OutcomeStatus.FAILED, reason=reason)

        logger.info("processing_succeeded", **message.log_context())
        return WorkOutcome(status=OutcomeStatus.SUCCEEDED)

    def _quota_delay_ms(self) -> int:
        if self.guard is not None:
            return self.guard.config.defer_delay_ms
        return QuotaConfig().defer_delay_ms
