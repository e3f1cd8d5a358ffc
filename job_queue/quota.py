"""
Quota Guard — throttles consumption when the downstream budget runs low.

Decisions:
  proceed   budget is healthy
  defer     budget below the low-water mark, or the operation alone costs more
            than the high-water mark; retried after a short fixed delay
  defer     budget lookup failed transiently; retried after a longer delay
  reject    the credential is not accepted; retrying cannot help

A deferral is scheduling, not failure: it never touches the attempt counter.
"""
from __future__ import annotations

import structlog
from typing import Optional

from backend.connector import BudgetCollaborator
from config.settings import QuotaConfig
from job_queue.errors import AuthError
from models.schemas import BudgetDecision, Message

logger = structlog.get_logger()


class QuotaGuard:

    def __init__(self, collaborator: Optional[BudgetCollaborator], config: QuotaConfig = None):
        self.collaborator = collaborator
        self.config = config or QuotaConfig()

    @property
    def enabled(self) -> bool:
        return self.config.enabled and self.collaborator is not None

    async def check_budget(self, message: Message) -> BudgetDecision:
        if not self.enabled:
            return BudgetDecision.proceed()

        try:
            budget = await self.collaborator.query_budget(message.payload.source_token)
        except AuthError as e:
            logger.warning("budget_auth_failed", error=str(e), **message.log_context())
            return BudgetDecision.reject(f"authentication failed: {e}")
        except Exception as e:
            # a downstream outage must not turn into a quarantine
            logger.warning("budget_lookup_failed",
                           error=str(e),
                           error_type=type(e).__name__,
                           delay_ms=self.config.transient_defer_delay_ms,
                           **message.log_context())
            return BudgetDecision.defer(
                self.config.transient_defer_delay_ms, f"budget lookup failed: {e}"
            )

        if budget.remaining < self.config.low_water_mark:
            logger.info("budget_low_deferring",
                        remaining=budget.remaining,
                        low_water_mark=self.config.low_water_mark,
                        delay_ms=self.config.defer_delay_ms,
                        **message.log_context())
            return BudgetDecision.defer(
                self.config.defer_delay_ms,
                f"remaining budget {budget.remaining} below {self.config.low_water_mark}",
            )

        if budget.cost > self.config.high_water_mark:
            logger.info("operation_too_costly_deferring",
                        cost=budget.cost,
                        high_water_mark=self.config.high_water_mark,
                        delay_ms=self.config.defer_delay_ms,
                        **message.log_context())
            return BudgetDecision.defer(
                self.config.defer_delay_ms,
                f"operation cost {budget.cost} above {self.config.high_water_mark}",
            )

        return BudgetDecision.proceed()
