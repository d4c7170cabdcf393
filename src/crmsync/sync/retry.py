"""Error classification and the caller-side retry policy.

The executor performs a single attempt and re-raises on failure. Whether and
how often to try again is decided here: an ErrorClassifier maps the raised
exception to an ErrorClassification, and ``execute_with_retry`` drives
tenacity with the classification's retry budget and exponential backoff.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Protocol

import httpx
import structlog
from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception

from src.crmsync.sync.errors import SyncError, SyncValidationError
from src.crmsync.sync.schemas import SyncExecutionResult

logger = structlog.get_logger(__name__)


class ErrorType(str, Enum):
    NETWORK = "network"
    TRANSIENT = "transient"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    DATA = "data"
    VALIDATION = "validation"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorClassification(BaseModel):
    """How an error should be treated by the retry policy."""

    code: str
    type: ErrorType
    severity: ErrorSeverity
    retryable: bool
    auto_heal: bool = False
    user_action_required: bool = False
    max_retries: int = 0
    base_delay_seconds: float = 0.0


class ErrorClassifier(Protocol):
    def classify(self, error: BaseException) -> ErrorClassification: ...


# ── Rule-based classifier ───────────────────────────────────────────────────

CLASSIFICATIONS: dict[str, ErrorClassification] = {
    c.code: c
    for c in (
        ErrorClassification(
            code="NETWORK_TIMEOUT", type=ErrorType.NETWORK, severity=ErrorSeverity.LOW,
            retryable=True, auto_heal=True, max_retries=3, base_delay_seconds=1.0,
        ),
        ErrorClassification(
            code="RATE_LIMIT_EXCEEDED", type=ErrorType.RATE_LIMIT,
            severity=ErrorSeverity.MEDIUM, retryable=True, auto_heal=True,
            max_retries=5, base_delay_seconds=60.0,
        ),
        ErrorClassification(
            code="DATABASE_CONNECTION_ERROR", type=ErrorType.TRANSIENT,
            severity=ErrorSeverity.HIGH, retryable=True, auto_heal=True,
            max_retries=3, base_delay_seconds=2.0,
        ),
        ErrorClassification(
            code="INVALID_API_KEY", type=ErrorType.AUTHENTICATION,
            severity=ErrorSeverity.HIGH, retryable=False, user_action_required=True,
        ),
        ErrorClassification(
            code="WEBHOOK_DELIVERY_FAILED", type=ErrorType.SYSTEM,
            severity=ErrorSeverity.HIGH, retryable=True, auto_heal=True,
            max_retries=3, base_delay_seconds=5.0,
        ),
        ErrorClassification(
            code="INVALID_WEBHOOK_URL", type=ErrorType.DATA, severity=ErrorSeverity.MEDIUM,
            retryable=False, user_action_required=True,
        ),
        ErrorClassification(
            code="MALFORMED_PAYLOAD", type=ErrorType.DATA, severity=ErrorSeverity.MEDIUM,
            retryable=False, user_action_required=True,
        ),
        ErrorClassification(
            code="ANALYSIS_PROCESSING_ERROR", type=ErrorType.SYSTEM,
            severity=ErrorSeverity.MEDIUM, retryable=True, auto_heal=True,
            max_retries=2, base_delay_seconds=10.0,
        ),
        ErrorClassification(
            code="CRM_INTEGRATION_ERROR", type=ErrorType.SYSTEM,
            severity=ErrorSeverity.MEDIUM, retryable=True, auto_heal=True,
            max_retries=3, base_delay_seconds=5.0,
        ),
        ErrorClassification(
            code="CONCURRENT_MODIFICATION", type=ErrorType.TRANSIENT,
            severity=ErrorSeverity.LOW, retryable=True, auto_heal=True,
            max_retries=3, base_delay_seconds=0.5,
        ),
        ErrorClassification(
            code="VALIDATION_ERROR", type=ErrorType.VALIDATION,
            severity=ErrorSeverity.MEDIUM, retryable=False, user_action_required=True,
        ),
        ErrorClassification(
            code="SYNC_ENGINE_ERROR", type=ErrorType.DATA, severity=ErrorSeverity.MEDIUM,
            retryable=False, user_action_required=True,
        ),
        ErrorClassification(
            code="UNKNOWN_ERROR", type=ErrorType.SYSTEM, severity=ErrorSeverity.MEDIUM,
            retryable=False,
        ),
    )
}

# Message keyword rules, first match wins.
KEYWORD_RULES: list[tuple[tuple[str, ...], str]] = [
    (("timeout", "timed out", "network"), "NETWORK_TIMEOUT"),
    (("rate limit", "too many requests", "429"), "RATE_LIMIT_EXCEEDED"),
    (("unauthorized", "invalid api key", "forbidden"), "INVALID_API_KEY"),
    (("database", "connection", "postgresql"), "DATABASE_CONNECTION_ERROR"),
    (("invalid url", "malformed url"), "INVALID_WEBHOOK_URL"),
    (("malformed", "invalid json", "parse error"), "MALFORMED_PAYLOAD"),
    (("analysis",), "ANALYSIS_PROCESSING_ERROR"),
    (("crm",), "CRM_INTEGRATION_ERROR"),
]


class RuleBasedErrorClassifier:
    """Classifies errors by type first, then by message keywords.

    Timeouts and transport failures are network errors. Engine validation
    errors are validation errors. Other engine errors go by their
    ``retryable`` flag.
    """

    def classify(self, error: BaseException) -> ErrorClassification:
        if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TransportError)):
            return CLASSIFICATIONS["NETWORK_TIMEOUT"]
        if isinstance(error, SyncValidationError):
            return CLASSIFICATIONS["VALIDATION_ERROR"]
        if isinstance(error, SyncError):
            code = "CONCURRENT_MODIFICATION" if error.retryable else "SYNC_ENGINE_ERROR"
            return CLASSIFICATIONS[code]

        message = str(error).lower()
        if "webhook" in message and ("failed" in message or "error" in message):
            return CLASSIFICATIONS["WEBHOOK_DELIVERY_FAILED"]
        for keywords, code in KEYWORD_RULES:
            if any(keyword in message for keyword in keywords):
                return CLASSIFICATIONS[code]
        return CLASSIFICATIONS["UNKNOWN_ERROR"]


def backoff_delay(
    classification: ErrorClassification,
    attempt: int,
    max_delay_seconds: float,
    jitter: float = 0.1,
) -> float:
    """Exponential backoff: base * 2**(attempt - 1), plus up to 10% jitter, capped."""
    delay = classification.base_delay_seconds * (2 ** max(attempt - 1, 0))
    delay += random.uniform(0, delay * jitter)
    return min(delay, max_delay_seconds)


# ── Caller-side retry ───────────────────────────────────────────────────────


class OperationExecutor(Protocol):
    async def execute(self, operation_id: str) -> SyncExecutionResult: ...


async def execute_with_retry(
    executor: OperationExecutor,
    operation_id: str,
    classifier: ErrorClassifier | None = None,
    *,
    max_delay_seconds: float = 300.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SyncExecutionResult:
    """Execute an operation, retrying failures the classifier marks retryable.

    Each attempt is a full executor run, so every failed attempt increments
    the operation's retry_count. The last error is re-raised once the
    classification's max_retries is exhausted or on a non-retryable error.
    """
    classifier = classifier or RuleBasedErrorClassifier()

    def _classification(state: RetryCallState) -> ErrorClassification:
        return classifier.classify(state.outcome.exception())

    def _stop(state: RetryCallState) -> bool:
        return state.attempt_number > _classification(state).max_retries

    def _wait(state: RetryCallState) -> float:
        return backoff_delay(_classification(state), state.attempt_number, max_delay_seconds)

    def _before_sleep(state: RetryCallState) -> None:
        classification = _classification(state)
        logger.warning(
            "sync.retry_scheduled",
            operation_id=operation_id,
            attempt=state.attempt_number,
            error_code=classification.code,
            error=str(state.outcome.exception()),
        )

    retrying = AsyncRetrying(
        retry=retry_if_exception(lambda exc: classifier.classify(exc).retryable),
        stop=_stop,
        wait=_wait,
        sleep=sleep,
        before_sleep=_before_sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await executor.execute(operation_id)
    return result
