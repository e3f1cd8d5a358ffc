"""
Batch Fetcher — pulls up to batch_size * concurrent_batches messages per cycle.

Each cycle runs `concurrent_batches` pop streams side by side; every stream
performs up to `batch_size` blocking pops and stops at the first empty one.
With bursty arrivals this keeps several pops outstanding without needing a
native batch-pop primitive from the store.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from config.settings import RetryPolicy
from job_queue.dead_letter import DeadLetterSink
from job_queue.errors import StoreUnavailable
from job_queue.message_queue import MessageQueue
from models.schemas import Message

logger = structlog.get_logger()


class BatchFetcher:

    def __init__(
        self,
        store: MessageQueue,
        policy: RetryPolicy,
        dead_letters: DeadLetterSink,
        pop_timeout_ms: Optional[int] = None,
    ):
        self.store = store
        self.policy = policy
        self.dead_letters = dead_letters
        self.pop_timeout_ms = pop_timeout_ms or store.config.pop_timeout_ms

    async def fetch_batch(self, claimed: Optional[dict[int, Message]] = None) -> list[Message]:
        """
        One fetch cycle. An empty list means the queue stayed empty for the
        pop timeout. Raises StoreUnavailable only when every stream failed;
        messages popped by healthy streams are always returned.

        Each message is also recorded in `claimed` (keyed by id) the moment
        it is popped, so a caller cancelled mid-fetch still knows about it.
        """
        results = await asyncio.gather(
            *(self._stream(i, claimed) for i in range(self.policy.concurrent_batches))
        )

        batch: list[Message] = []
        errors: list[StoreUnavailable] = []
        for messages, error in results:
            batch.extend(messages)
            if error is not None:
                errors.append(error)

        if errors and len(errors) == len(results) and not batch:
            raise errors[0]

        if batch:
            logger.debug("batch_fetched",
                         size=len(batch),
                         streams=self.policy.concurrent_batches,
                         failed_streams=len(errors))
        return batch

    async def _stream(
        self, stream_no: int, claimed: Optional[dict[int, Message]] = None,
    ) -> tuple[list[Message], Optional[StoreUnavailable]]:
        messages: list[Message] = []
        for _ in range(self.policy.batch_size):
            try:
                raw = await self.store.blocking_pop(self.store.main_queue, self.pop_timeout_ms)
            except StoreUnavailable as e:
                logger.warning("fetch_stream_store_unavailable",
                               stream=stream_no,
                               popped=len(messages),
                               error=str(e))
                return messages, e

            if raw is None:
                break

            message = await self._parse(raw)
            if message is not None:
                messages.append(message)
                if claimed is not None:
                    claimed[id(message)] = message
        return messages, None

    async def _parse(self, raw: str) -> Optional[Message]:
        try:
            return Message.from_json(raw)
        except ValueError as e:
            # parse errors are permanent
            await self.dead_letters.quarantine(raw, f"unparseable record: {e}")
            return None
