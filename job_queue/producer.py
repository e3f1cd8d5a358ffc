"""
Producer — validates incoming work items and admits them to the main queue.

An item must carry a source credential, a target record id and a non-empty
instruction body (routingFields.text). Anything else in the payload is
carried through untouched.
"""
from __future__ import annotations

import structlog
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from job_queue.errors import ValidationError
from job_queue.message_queue import MessageQueue
from models.schemas import Message, MessageMetadata, Payload, now_ms

logger = structlog.get_logger()


def _problems(raw_item: Any) -> list[str]:
    """Routing-field checks that pydantic types alone don't express."""
    if not isinstance(raw_item, dict):
        return ["item must be a JSON object"]

    problems = []
    token = raw_item.get("sourceToken")
    if not isinstance(token, str) or not token.strip():
        problems.append("sourceToken is required")

    record_id = raw_item.get("recordId")
    if isinstance(record_id, bool) or not isinstance(record_id, (str, int)) or not str(record_id).strip():
        problems.append("recordId is required")

    routing = raw_item.get("routingFields")
    if not isinstance(routing, dict):
        problems.append("routingFields must be an object")
    else:
        text = routing.get("text")
        if not isinstance(text, str) or not text.strip():
            problems.append("routingFields.text must be a non-empty string")
    return problems


class Producer:
    """
    Usage:
        producer = Producer(store)
        message_id = await producer.submit({"sourceToken": ..., "recordId": ..., "routingFields": {...}})
    """

    def __init__(self, store: MessageQueue, clock: Callable[[], int] = now_ms):
        self.store = store
        self._clock = clock

    def build(self, raw_item: Any, owner_id: Optional[str] = None) -> Message:
        """Validate and stamp an item without enqueuing it."""
        problems = _problems(raw_item)
        if problems:
            raise ValidationError(problems)
        try:
            payload = Payload.model_validate(raw_item)
        except PydanticValidationError as e:
            raise ValidationError(
                [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            ) from e

        return Message(
            payload=payload,
            metadata=MessageMetadata(timestamp=self._clock(), retry_count=0, act_id=owner_id),
        )

    async def submit(self, raw_item: Any, owner_id: Optional[str] = None) -> int:
        """
        Admit one item. Returns its creation timestamp, which doubles as the
        correlation id. Raises ValidationError (nothing enqueued) or
        StoreUnavailable (nothing enqueued, caller may retry).
        """
        try:
            message = self.build(raw_item, owner_id)
        except ValidationError as e:
            logger.warning("item_rejected", problems=e.problems)
            raise

        length = await self.store.push(self.store.main_queue, message.to_json())
        logger.info("item_admitted",
                    queue=self.store.main_queue,
                    queue_length=length,
                    **message.log_context())
        return message.metadata.timestamp
