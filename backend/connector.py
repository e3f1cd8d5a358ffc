"""
Backend Connector — the downstream collaborators the relay calls into.

  ProcessingCollaborator  applies one payload to the record-keeping service
  BudgetCollaborator      reports the remaining request budget for a credential

HTTP implementations translate transport and status errors into the relay's
error taxonomy; the mocks are used for development and tests.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import BackendConfig, get_settings
from job_queue.errors import AuthError, ProcessingFailure, QuotaExceeded, TransientError
from models.schemas import Budget, Payload, ProcessingResult

logger = structlog.get_logger()

# Messages the downstream service uses for a dead credential
_AUTH_MARKERS = ("Not Authenticated", "Invalid or expired token")


def _is_auth_message(text: str) -> bool:
    return any(marker.lower() in text.lower() for marker in _AUTH_MARKERS)


def _retry_after_ms(value: Optional[str]) -> Optional[int]:
    """Retry-After in seconds → ms. HTTP-date values are ignored."""
    try:
        return int(float(value) * 1000)
    except (TypeError, ValueError):
        return None


class ProcessingCollaborator(abc.ABC):

    @abc.abstractmethod
    async def process(self, payload: Payload) -> ProcessingResult:
        """
        Apply one update downstream. May raise: AuthError (terminal),
        QuotaExceeded (deferred), anything else (retried).
        """
        ...

    async def close(self):
        pass


class BudgetCollaborator(abc.ABC):

    @abc.abstractmethod
    async def query_budget(self, credential: str) -> Budget:
        """Remaining budget and operation cost. Raises AuthError or TransientError."""
        ...

    async def close(self):
        pass


# ──────────────────────────────────────────────────────────────
#  HTTP implementations
# ──────────────────────────────────────────────────────────────

class _HTTPCollaborator:

    def __init__(self, config: BackendConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().backend
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.config.api_version:
                headers["API-Version"] = self.config.api_version
            self.client = httpx.AsyncClient(
                timeout=self.config.timeout_s,
                headers=headers,
                transport=self._transport,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _post(self, url: str, token: str, body: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(url, json=body, headers={"Authorization": token})

    async def close(self):
        if self.client:
            await self.client.aclose()


class RESTProcessingCollaborator(_HTTPCollaborator, ProcessingCollaborator):
    """POSTs the payload to `processing_url`; expects {"success": bool, "reason"?: str}."""

    async def process(self, payload: Payload) -> ProcessingResult:
        body = payload.model_dump(by_alias=True)
        try:
            response = await self._post(self.config.processing_url, payload.source_token, body)
        except httpx.TransportError as e:
            raise ProcessingFailure(f"processing endpoint unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise AuthError(f"processing endpoint rejected credential ({response.status_code})")
        if response.status_code == 429:
            raise QuotaExceeded(
                "processing endpoint rate limited",
                retry_after_ms=_retry_after_ms(response.headers.get("Retry-After")),
            )
        if response.status_code >= 400:
            raise ProcessingFailure(f"processing endpoint returned {response.status_code}: {response.text[:200]}")

        try:
            return ProcessingResult.model_validate(response.json())
        except ValueError as e:
            raise ProcessingFailure(f"unreadable processing response: {e}") from e


class GraphQLBudgetCollaborator(_HTTPCollaborator, BudgetCollaborator):
    """
    Asks a GraphQL endpoint for the credential's remaining complexity budget:

        query { complexity { before reset_in_x_seconds } }

    The cost of the pending operation is the configured `operation_cost`.
    """

    QUERY = "query { complexity { before reset_in_x_seconds } }"

    async def query_budget(self, credential: str) -> Budget:
        try:
            response = await self._post(self.config.budget_url, credential, {"query": self.QUERY})
        except httpx.TransportError as e:
            raise TransientError(f"budget endpoint unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise AuthError(f"budget endpoint rejected credential ({response.status_code})")
        if response.status_code >= 400:
            if _is_auth_message(response.text):
                raise AuthError(response.text[:200])
            raise TransientError(f"budget endpoint returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TransientError(f"unreadable budget response: {e}") from e

        errors = data.get("errors") or []
        if errors:
            text = "; ".join(str(err.get("message", err)) for err in errors)
            if _is_auth_message(text):
                raise AuthError(text)
            raise TransientError(text)

        try:
            remaining = data["data"]["complexity"]["before"]
        except (KeyError, TypeError) as e:
            raise TransientError(f"budget response missing complexity: {data}") from e

        return Budget(remaining=remaining, cost=self.config.operation_cost)


# ──────────────────────────────────────────────────────────────
#  Mocks
# ──────────────────────────────────────────────────────────────

class MockProcessingCollaborator(ProcessingCollaborator):
    """Accepts everything and remembers what it was given."""

    def __init__(self):
        self.processed: list[Payload] = []

    async def process(self, payload: Payload) -> ProcessingResult:
        self.processed.append(payload)
        logger.info("mock_processing", record_id=payload.record_id)
        return ProcessingResult(success=True)


class MockBudgetCollaborator(BudgetCollaborator):
    """Reports a fixed budget."""

    def __init__(self, remaining: float = 10_000_000, cost: float = 0):
        self.remaining = remaining
        self.cost = cost

    async def query_budget(self, credential: str) -> Budget:
        return Budget(remaining=self.remaining, cost=self.cost)


def create_collaborators(
    config: BackendConfig = None,
) -> tuple[ProcessingCollaborator, Optional[BudgetCollaborator]]:
    """Factory: processing and budget collaborators for the configured backend."""
    config = config or get_settings().backend
    if config.type == "http" and config.processing_url:
        processor = RESTProcessingCollaborator(config)
        budget = GraphQLBudgetCollaborator(config) if config.budget_url else None
        logger.info("http_collaborators_created", budget_guard=budget is not None)
        return processor, budget
    logger.warning("using_mock_backend", reason="no backend configured or processing_url empty")
    return MockProcessingCollaborator(), MockBudgetCollaborator()
