"""Shared test fixtures for RecordRelay."""
import time
from typing import Any, Optional

import pytest
import pytest_asyncio

from backend.connector import BudgetCollaborator, ProcessingCollaborator
from config.settings import ConsumerConfig, QueueConfig, QuotaConfig, RetryPolicy, Settings
from job_queue.message_queue import InMemoryMessageQueue
from job_queue.runtime import build_runtime
from models.schemas import Budget, Message, MessageMetadata, Payload, ProcessingResult


class ScriptedProcessor(ProcessingCollaborator):
    """
    Returns (or raises) the scripted results in order, then repeats the last.
    Each entry is a ProcessingResult or an exception instance.
    """

    def __init__(self, *script):
        self.script = list(script) or [ProcessingResult(success=True)]
        self.calls: list[Payload] = []

    async def process(self, payload: Payload) -> ProcessingResult:
        self.calls.append(payload)
        step = self.script[min(len(self.calls) - 1, len(self.script) - 1)]
        if isinstance(step, Exception):
            raise step
        return step


class StaticBudget(BudgetCollaborator):
    """Fixed budget, or raises `error` on every lookup."""

    def __init__(self, remaining: float = 10_000_000, cost: float = 0, error: Optional[Exception] = None):
        self.remaining = remaining
        self.cost = cost
        self.error = error
        self.credentials: list[str] = []

    async def query_budget(self, credential: str) -> Budget:
        self.credentials.append(credential)
        if self.error is not None:
            raise self.error
        return Budget(remaining=self.remaining, cost=self.cost)


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(
        backend="memory",
        queue_name="test_relay",
        dead_letter_queue_name="test_relay:dlq",
        pop_timeout_ms=20,
        push_attempts=2,
        push_retry_delay_ms=1,
    )


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        base_delay_ms=5000,
        batch_size=5,
        concurrent_batches=2,
        worker_concurrency=4,
        pacing_delay_ms=0,
        ttl_ms=10 * 60 * 1000,
        process_timeout_ms=2000,
    )


@pytest.fixture
def settings(queue_config, policy) -> Settings:
    return Settings(
        queue=queue_config,
        retry=policy,
        quota=QuotaConfig(low_water_mark=1_000_000, high_water_mark=5_000_000),
        consumer=ConsumerConfig(shutdown_timeout_ms=2000, error_backoff_ms=10),
    )


@pytest_asyncio.fixture
async def store(queue_config):
    q = InMemoryMessageQueue(queue_config)
    await q.connect()
    yield q
    await q.close()


@pytest.fixture
def idle_store(queue_config):
    """Never connected; enough for code paths that don't touch the store."""
    return InMemoryMessageQueue(queue_config)


@pytest.fixture
def processor() -> ScriptedProcessor:
    return ScriptedProcessor()


@pytest.fixture
def budget() -> StaticBudget:
    return StaticBudget()


@pytest_asyncio.fixture
async def runtime(settings, store, processor, budget):
    rt = build_runtime(settings, store, processor, budget)
    yield rt
    await rt.consumer.stop()
    await rt.scheduler.flush()


@pytest.fixture
def valid_item() -> dict[str, Any]:
    return {
        "sourceToken": "tok_abc123",
        "recordId": "4711",
        "routingFields": {"boardId": "99", "text": "Status, Owner"},
    }


@pytest.fixture
def make_message(valid_item):
    def _make(age_ms: int = 0, retry_count: int = 0, act_id: str = None) -> Message:
        return Message(
            payload=Payload.model_validate(valid_item),
            metadata=MessageMetadata(
                timestamp=int(time.time() * 1000) - age_ms,
                retry_count=retry_count,
                act_id=act_id,
            ),
        )
    return _make
