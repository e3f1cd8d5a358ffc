"""
Runtime — owns the store connection and wires every component to it.

    async with open_runtime(settings) as runtime:
        await runtime.producer.submit(item)
        await runtime.consumer.start_background()
        ...
    # consumer stopped, delayed resubmissions flushed, store closed

The store handle is created once here and passed into each component; no
component reaches for a module-level client.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from backend.connector import BudgetCollaborator, ProcessingCollaborator, create_collaborators
from config.settings import Settings, get_settings
from job_queue.consumer import QueueConsumer
from job_queue.dead_letter import DeadLetterSink
from job_queue.errors import StartupError, StoreUnavailable
from job_queue.fetcher import BatchFetcher
from job_queue.message_queue import MessageQueue, create_message_queue
from job_queue.producer import Producer
from job_queue.quota import QuotaGuard
from job_queue.retry import RetryScheduler
from job_queue.status import StatusReporter
from job_queue.worker import WorkerPool

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    store: MessageQueue
    producer: Producer
    dead_letters: DeadLetterSink
    fetcher: BatchFetcher
    guard: QuotaGuard
    pool: WorkerPool
    scheduler: RetryScheduler
    consumer: QueueConsumer
    reporter: StatusReporter


def build_runtime(
    settings: Settings,
    store: MessageQueue,
    processor: ProcessingCollaborator,
    budget: Optional[BudgetCollaborator] = None,
) -> Runtime:
    """Construct all components around an already created store."""
    policy = settings.retry
    dead_letters = DeadLetterSink(store)
    guard = QuotaGuard(budget, settings.quota)
    pool = WorkerPool(processor, policy, guard=guard)
    scheduler = RetryScheduler(store, dead_letters, policy)
    fetcher = BatchFetcher(store, policy, dead_letters)
    return Runtime(
        settings=settings,
        store=store,
        producer=Producer(store),
        dead_letters=dead_letters,
        fetcher=fetcher,
        guard=guard,
        pool=pool,
        scheduler=scheduler,
        consumer=QueueConsumer(fetcher, pool, scheduler, policy, settings.consumer),
        reporter=StatusReporter(store, scheduler, pool),
    )


@asynccontextmanager
async def open_runtime(
    settings: Settings = None,
    processor: Optional[ProcessingCollaborator] = None,
    budget: Optional[BudgetCollaborator] = None,
    store: Optional[MessageQueue] = None,
) -> AsyncIterator[Runtime]:
    """
    Connect the store, yield a wired Runtime, and tear everything down in
    order on exit. Raises StartupError if the store can't be reached.
    """
    settings = settings or get_settings()
    if processor is None:
        processor, default_budget = create_collaborators(settings.backend)
        budget = budget or default_budget
    store = store or create_message_queue(settings.queue)

    try:
        await store.connect()
    except StoreUnavailable as e:
        raise StartupError(str(e)) from e

    runtime = build_runtime(settings, store, processor, budget)
    logger.info("runtime_started",
                app=settings.app_name,
                queue_backend=type(store).__name__,
                queue=store.main_queue,
                max_attempts=settings.retry.max_attempts,
                ttl_ms=settings.retry.ttl_ms)
    try:
        yield runtime
    finally:
        await runtime.consumer.stop()
        await runtime.scheduler.flush()
        await store.close()
        await processor.close()
        if budget is not None:
            await budget.close()
        logger.info("runtime_stopped")
