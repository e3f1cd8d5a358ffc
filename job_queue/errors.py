"""
Error taxonomy for the relay.

  ValidationError    — malformed item at admission, never enqueued
  StoreUnavailable   — queue store unreachable; transient, never drops data
  ExpiredMessage     — TTL exceeded at dequeue; dropped, not retried
  AuthError          — credential rejected downstream; terminal drop
  TransientError     — budget lookup failed for any other reason; deferred
  ProcessingFailure  — processing collaborator failed; retried, then DLQ
  QuotaExceeded      — downstream budget too low; deferred, no attempt used
  StartupError       — store could not be reached while starting up
"""
from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""
    pass


class ValidationError(RelayError):
    """Raised by the producer when an admitted item is malformed."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid item")


class StoreUnavailable(RelayError):
    """The queue store could not be reached."""
    pass


class ExpiredMessage(RelayError):
    """A message outlived its TTL before it was processed."""

    def __init__(self, age_ms: int, ttl_ms: int):
        self.age_ms = age_ms
        self.ttl_ms = ttl_ms
        super().__init__(f"message age {age_ms}ms exceeds ttl {ttl_ms}ms")


class AuthError(RelayError):
    """Downstream rejected the source credential."""
    pass


class TransientError(RelayError):
    """Budget collaborator failed in a way that may succeed later."""
    pass


class ProcessingFailure(RelayError):
    """Processing collaborator reported or raised a failure."""
    pass


class QuotaExceeded(RelayError):
    """Downstream rate budget is exhausted; retry later without penalty."""

    def __init__(self, message: str = "downstream quota exceeded", retry_after_ms: int | None = None):
        self.retry_after_ms = retry_after_ms
        super().__init__(message)


class StartupError(RelayError):
    """The runtime could not be brought up."""
    pass
