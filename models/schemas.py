"""
Core data models for RecordRelay.

Wire format of a queued record (JSON string in the main queue):
  {
      "payload":  {"sourceToken": str, "recordId": str, "routingFields": {...}},
      "metadata": {"timestamp": epoch-ms, "retryCount": int, "actId": str?}
  }

Dead-letter record:
  {"originalMessage": <queued record as string>, "error": str, "timestamp": epoch-ms}
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    DELAYED = "delayed"
    QUARANTINED = "quarantined"
    DROPPED = "dropped"


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"
    DEFERRED = "deferred"
    REJECTED = "rejected"


class BudgetAction(str, Enum):
    PROCEED = "proceed"
    DEFER = "defer"
    REJECT = "reject"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


# ──────────────────────────────────────────────────────────────
#  Message
# ──────────────────────────────────────────────────────────────

class Payload(BaseModel):
    """Opaque work item. Only the routing keys below are interpreted."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    source_token: str = Field(alias="sourceToken")
    record_id: str = Field(alias="recordId")
    routing_fields: dict[str, Any] = Field(default_factory=dict, alias="routingFields")

    @field_validator("record_id", mode="before")
    @classmethod
    def _coerce_record_id(cls, v: Any) -> Any:
        # record ids arrive as ints from some callers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class MessageMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: int                                        # createdAt, epoch ms
    retry_count: int = Field(default=0, ge=0, alias="retryCount")
    act_id: Optional[str] = Field(default=None, alias="actId")


class Message(BaseModel):
    """A payload plus the bookkeeping the relay needs to deliver it."""
    payload: Payload
    metadata: MessageMetadata

    @property
    def created_at(self) -> datetime:
        return ms_to_datetime(self.metadata.timestamp)

    @property
    def attempt_count(self) -> int:
        return self.metadata.retry_count

    def age_ms(self, now: Optional[int] = None) -> int:
        return (now if now is not None else now_ms()) - self.metadata.timestamp

    def is_expired(self, ttl_ms: int, now: Optional[int] = None) -> bool:
        return self.age_ms(now) > ttl_ms

    def with_retry(self) -> Message:
        """Copy with the attempt counter bumped by one. createdAt is kept."""
        metadata = self.metadata.model_copy(update={"retry_count": self.metadata.retry_count + 1})
        return self.model_copy(update={"metadata": metadata})

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> Message:
        return cls.model_validate_json(raw)

    def log_context(self) -> dict[str, Any]:
        return {
            "record_id": self.payload.record_id,
            "created_at": self.metadata.timestamp,
            "attempt": self.metadata.retry_count,
            "owner_id": self.metadata.act_id,
        }


class DeadLetterRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_message: str = Field(alias="originalMessage")
    error: str
    timestamp: int = Field(default_factory=now_ms)           # quarantinedAt

    @property
    def quarantined_at(self) -> datetime:
        return ms_to_datetime(self.timestamp)

    def original(self) -> Optional[Message]:
        """Parse the quarantined message back, or None if it never parsed."""
        try:
            return Message.from_json(self.original_message)
        except ValueError:
            return None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> DeadLetterRecord:
        return cls.model_validate_json(raw)


# ──────────────────────────────────────────────────────────────
#  Collaborator results and outcomes
# ──────────────────────────────────────────────────────────────

class ProcessingResult(BaseModel):
    success: bool
    reason: Optional[str] = None


class Budget(BaseModel):
    """Remaining downstream request budget and the cost of one operation."""
    remaining: float
    cost: float = 0


class BudgetDecision(BaseModel):
    action: BudgetAction
    delay_ms: int = 0
    reason: str = ""

    @classmethod
    def proceed(cls) -> BudgetDecision:
        return cls(action=BudgetAction.PROCEED)

    @classmethod
    def defer(cls, delay_ms: int, reason: str) -> BudgetDecision:
        return cls(action=BudgetAction.DEFER, delay_ms=delay_ms, reason=reason)

    @classmethod
    def reject(cls, reason: str) -> BudgetDecision:
        return cls(action=BudgetAction.REJECT, reason=reason)


class WorkOutcome(BaseModel):
    status: OutcomeStatus
    reason: str = ""
    delay_ms: int = 0                                     # only for DEFERRED

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED


class QueueStatus(BaseModel):
    main_queue_length: Optional[int] = None
    dead_letter_length: Optional[int] = None
    store_connection_state: ConnectionState
    observed_at: datetime
    scheduled_resubmits: int = 0
    in_flight: int = 0
