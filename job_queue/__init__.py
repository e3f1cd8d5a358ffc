"""
Job Queue — the reliability layer between admission and the record service.

- Producer VALIDATES work items and pushes them to the main queue
- QueueConsumer FETCHES batches, the WorkerPool PROCESSES them under a quota guard
- RetryScheduler RETRIES with linear backoff, DEFERS, DROPS or QUARANTINES
- Supports Redis lists (production) and in-memory deques (dev)
"""
