"""
Message Queue — Durable ordered lists with Redis and in-memory backends.

Queue Topology:
  <queue_name>       — main FIFO list: new admissions and retries, both at the tail
  <queue_name>:dlq   — dead-letter list: records that exhausted their attempts

Operations:
  push          RPUSH, returns new length
  blocking_pop  BLPOP with a timeout, None when nothing arrived
  length        LLEN
  peek          LRANGE, read-only

Every operation treats a dropped connection as "not ready": it waits
briefly and re-checks before giving up with StoreUnavailable.
"""
from __future__ import annotations

import asyncio
import structlog
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type,
    stop_after_attempt, wait_fixed,
)

from config.settings import QueueConfig
from job_queue.errors import StoreUnavailable
from models.schemas import ConnectionState

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract queue store interface."""

    def __init__(self, config: QueueConfig = None):
        self.config = config or QueueConfig()
        self._state = ConnectionState.DISCONNECTED

    @property
    def connection_state(self) -> ConnectionState:
        """Last observed connection state. Never does I/O."""
        return self._state

    @property
    def main_queue(self) -> str:
        return self.config.queue_name

    @property
    def dead_letter_queue(self) -> str:
        return self.config.dead_letter_queue_name

    @abstractmethod
    async def connect(self):
        """Establish the shared connection, raising StoreUnavailable on failure."""
        ...

    @abstractmethod
    async def close(self):
        """Release the connection."""
        ...

    @abstractmethod
    async def push(self, queue: str, record: str) -> int:
        """Append a record at the tail. Returns the new length."""
        ...

    @abstractmethod
    async def blocking_pop(self, queue: str, timeout_ms: int) -> Optional[str]:
        """Pop the head record, waiting up to timeout_ms. None on timeout."""
        ...

    @abstractmethod
    async def length(self, queue: str) -> int:
        """Number of records in a queue."""
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[str]:
        """First `count` records without removing them."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

_REDIS_TRANSIENT = (RedisConnectionError, RedisTimeoutError, ConnectionError, OSError)


class RedisMessageQueue(MessageQueue):
    """
    Production store backed by Redis lists.

    One client (with its own connection pool) is shared by every component.
    Blocking pops check a connection out of the pool for the duration of the
    BLPOP only, so pushes and length queries are never starved by them.
    """

    def __init__(self, config: QueueConfig = None):
        super().__init__(config)
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis

        self._state = ConnectionState.CONNECTING
        logger.info("redis_queue_connecting", url=self._safe_url())

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.connect_attempts),
                wait=wait_fixed(self.config.connect_retry_delay_ms / 1000),
                retry=retry_if_exception_type(_REDIS_TRANSIENT),
                before_sleep=self._log_connect_retry,
                reraise=True,
            ):
                with attempt:
                    if self._redis is None:
                        self._redis = aioredis.from_url(
                            self.config.redis_url,
                            decode_responses=True,
                            max_connections=50,
                            health_check_interval=30,
                        )
                    await self._redis.ping()
        except _REDIS_TRANSIENT as e:
            self._state = ConnectionState.DISCONNECTED
            logger.error("redis_queue_connect_failed",
                         url=self._safe_url(),
                         attempts=self.config.connect_attempts,
                         error=str(e))
            raise StoreUnavailable(f"could not connect to {self._safe_url()}: {e}") from e

        self._state = ConnectionState.READY
        logger.info("redis_queue_connected", url=self._safe_url())

    async def close(self):
        self._state = ConnectionState.CLOSED
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        logger.info("redis_queue_closed")

    async def push(self, queue: str, record: str) -> int:
        return await self._execute("push", lambda r: r.rpush(queue, record))

    async def blocking_pop(self, queue: str, timeout_ms: int) -> Optional[str]:
        result = await self._execute(
            "blocking_pop", lambda r: r.blpop([queue], timeout=timeout_ms / 1000)
        )
        if not result:
            return None
        _, value = result
        return value

    async def length(self, queue: str) -> int:
        return int(await self._execute("length", lambda r: r.llen(queue)))

    async def peek(self, queue: str, count: int = 10) -> list[str]:
        if count <= 0:
            return []
        return await self._execute("peek", lambda r: r.lrange(queue, 0, count - 1))

    async def _execute(self, op: str, call: Callable[[Any], Awaitable[Any]]) -> Any:
        """Run one Redis command, waiting out reconnect windows."""
        if self._redis is None:
            raise StoreUnavailable(f"store not connected ({self._state.value})")

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.ready_check_attempts),
                wait=wait_fixed(self.config.ready_check_interval_ms / 1000),
                retry=retry_if_exception_type(_REDIS_TRANSIENT),
                before_sleep=self._mark_reconnecting,
                reraise=True,
            ):
                with attempt:
                    result = await call(self._redis)
        except _REDIS_TRANSIENT as e:
            self._state = ConnectionState.DISCONNECTED
            logger.error("redis_queue_unavailable", op=op, error=str(e))
            raise StoreUnavailable(f"{op} failed: {e}") from e

        if self._state != ConnectionState.READY:
            logger.info("redis_queue_ready_again", op=op)
        self._state = ConnectionState.READY
        return result

    def _mark_reconnecting(self, retry_state: RetryCallState):
        if self._state != ConnectionState.RECONNECTING:
            logger.warning("redis_queue_reconnecting",
                           error=str(retry_state.outcome.exception()))
        self._state = ConnectionState.RECONNECTING

    def _log_connect_retry(self, retry_state: RetryCallState):
        logger.info("redis_queue_connect_retry",
                    attempt=retry_state.attempt_number,
                    delay_ms=self.config.connect_retry_delay_ms,
                    error=str(retry_state.outcome.exception()))

    def _safe_url(self) -> str:
        url = self.config.redis_url
        return url.split("@")[-1] if "@" in url else url


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test store backed by deques and asyncio conditions.
    Single-process only, no persistence. A closed store behaves like an
    unreachable one and raises StoreUnavailable.
    """

    def __init__(self, config: QueueConfig = None):
        super().__init__(config)
        self._queues: dict[str, deque[str]] = {}
        self._conditions: dict[str, asyncio.Condition] = {}

    def _get_queue(self, name: str) -> deque[str]:
        if name not in self._queues:
            self._queues[name] = deque()
            self._conditions[name] = asyncio.Condition()
        return self._queues[name]

    def _check_ready(self, op: str):
        if self._state != ConnectionState.READY:
            raise StoreUnavailable(f"{op} failed: store is {self._state.value}")

    async def connect(self):
        self._state = ConnectionState.READY
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._state = ConnectionState.CLOSED
        # wake any blocked poppers so they observe the closed state
        for cond in self._conditions.values():
            async with cond:
                cond.notify_all()
        logger.info("inmemory_queue_closed")

    async def push(self, queue: str, record: str) -> int:
        self._check_ready("push")
        q = self._get_queue(queue)
        cond = self._conditions[queue]
        async with cond:
            q.append(record)
            cond.notify()
            return len(q)

    async def blocking_pop(self, queue: str, timeout_ms: int) -> Optional[str]:
        self._check_ready("blocking_pop")
        q = self._get_queue(queue)
        cond = self._conditions[queue]
        async with cond:
            try:
                await asyncio.wait_for(
                    cond.wait_for(lambda: q or self._state != ConnectionState.READY),
                    timeout=timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                return None
            self._check_ready("blocking_pop")
            return q.popleft()

    async def length(self, queue: str) -> int:
        self._check_ready("length")
        return len(self._get_queue(queue))

    async def peek(self, queue: str, count: int = 10) -> list[str]:
        self._check_ready("peek")
        return list(self._get_queue(queue))[:max(count, 0)]


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(config: QueueConfig = None) -> MessageQueue:
    """Factory: create the configured store backend. The caller owns it."""
    config = config or QueueConfig()

    if config.backend == "redis":
        store = RedisMessageQueue(config)
    else:
        store = InMemoryMessageQueue(config)

    logger.info("message_queue_created", backend=config.backend, queue=config.queue_name)
    return store
