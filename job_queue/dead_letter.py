"""
Dead-Letter Sink — quarantine for messages that can never be delivered.

Records are appended to the dead-letter list and never touched again by the
relay. Inspection and replay belong to operators (see scripts/dlq_tool.py).
"""
from __future__ import annotations

import structlog
from typing import Union

from job_queue.errors import StoreUnavailable
from job_queue.message_queue import MessageQueue
from models.schemas import DeadLetterRecord, Message, now_ms

logger = structlog.get_logger()


class DeadLetterSink:

    def __init__(self, store: MessageQueue):
        self.store = store

    async def quarantine(self, message: Union[Message, str], reason: str) -> DeadLetterRecord:
        """
        Wrap a message (or a raw record that never parsed) with its failure
        reason and push it to the dead-letter queue.

        A failed push is logged with the full record and not raised.
        """
        original = message.to_json() if isinstance(message, Message) else message
        record = DeadLetterRecord(original_message=original, error=reason, timestamp=now_ms())

        context = message.log_context() if isinstance(message, Message) else {}
        try:
            await self.store.push(self.store.dead_letter_queue, record.to_json())
        except StoreUnavailable as e:
            logger.error("dead_letter_push_failed",
                         error=str(e),
                         reason=reason,
                         record=record.to_json(),
                         **context)
            return record

        logger.warning("message_quarantined", reason=reason, **context)
        return record

    async def count(self) -> int:
        return await self.store.length(self.store.dead_letter_queue)

    async def inspect(self, count: int = 20) -> list[DeadLetterRecord]:
        """Parse the oldest `count` dead-letter records. Unparseable ones are skipped."""
        records = []
        for raw in await self.store.peek(self.store.dead_letter_queue, count):
            try:
                records.append(DeadLetterRecord.from_json(raw))
            except ValueError as e:
                logger.warning("dead_letter_record_unreadable", error=str(e))
        return records
