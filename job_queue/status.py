"""Status Reporter — read-only snapshot of queue depth and store health."""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Optional

from job_queue.errors import StoreUnavailable
from job_queue.message_queue import MessageQueue
from job_queue.retry import RetryScheduler
from job_queue.worker import WorkerPool
from models.schemas import QueueStatus

logger = structlog.get_logger()


class StatusReporter:

    def __init__(
        self,
        store: MessageQueue,
        scheduler: Optional[RetryScheduler] = None,
        pool: Optional[WorkerPool] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.pool = pool

    async def status(self) -> QueueStatus:
        """Never raises; lengths are None when the store can't be reached."""
        main_len, dlq_len = await asyncio.gather(
            self._length(self.store.main_queue),
            self._length(self.store.dead_letter_queue),
        )
        return QueueStatus(
            main_queue_length=main_len,
            dead_letter_length=dlq_len,
            store_connection_state=self.store.connection_state,
            observed_at=datetime.now(timezone.utc),
            scheduled_resubmits=self.scheduler.pending_count if self.scheduler else 0,
            in_flight=self.pool.in_flight if self.pool else 0,
        )

    async def _length(self, queue: str) -> Optional[int]:
        try:
            return max(await self.store.length(queue), 0)
        except StoreUnavailable as e:
            logger.warning("status_length_unavailable", queue=queue, error=str(e))
            return None
