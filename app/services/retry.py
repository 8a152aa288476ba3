"""Retry wrapper for calls to the external generation services.

Failures fall into three classes:

* non-retryable: malformed request, auth failure, insufficient balance or an
  explicit cancellation. The error is raised after a single attempt.
* rate-limited: HTTP 429 or a provider message saying so. Retried with
  ``rate_limit_delay * 2 ** attempt``.
* everything else (network errors, 5xx, ...): retried with
  ``base_delay * 2 ** attempt``.

The first call is not a retry, so an operation is invoked at most
``max_retries + 1`` times. When retries are exhausted the last error is
re-raised unchanged and the caller marks its entity as failed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from app.core.logging import get_logger
from app.providers.errors import ExternalAPIError

T = TypeVar("T")

logger = get_logger("modelforge.retry")

NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 402, 403, 404})
RATE_LIMIT_STATUS_CODE = 429

NON_RETRYABLE_KEYWORDS = (
    "cancelled",
    "canceled",
    "authentication failed",
    "invalid api key",
    "unauthorized",
    "permission denied",
    "insufficient balance",
    "insufficient quota",
)
RATE_LIMIT_KEYWORDS = (
    "rate limit",
    "too many requests",
    "concurrency limit",
    "limitexceeded",
    "resourcesnotready",
)


class GenerationCancelled(Exception):
    """The owning request was cancelled while a worker was processing it."""


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 2.0
    rate_limit_delay: float = 30.0


DEFAULT_RETRY_POLICY = RetryPolicy()


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, ExternalAPIError) and exc.status_code == RATE_LIMIT_STATUS_CODE:
        return True
    message = str(exc).lower()
    return any(keyword in message for keyword in RATE_LIMIT_KEYWORDS)


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, GenerationCancelled):
        return False
    if isinstance(exc, ExternalAPIError):
        if exc.status_code == RATE_LIMIT_STATUS_CODE:
            return True
        if exc.status_code in NON_RETRYABLE_STATUS_CODES:
            return False
    message = str(exc).lower()
    return not any(keyword in message for keyword in NON_RETRYABLE_KEYWORDS)


def compute_delay(exc: BaseException, attempt: int, policy: RetryPolicy) -> float:
    base = policy.rate_limit_delay if is_rate_limit_error(exc) else policy.base_delay
    return base * 2**attempt


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    request_id: object,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable_error(exc):
                logger.warning(
                    "retry.non_retryable",
                    request_id=str(request_id),
                    operation=operation_name,
                    attempt=attempt + 1,
                    error=str(exc),
                )
                raise
            if attempt >= policy.max_retries:
                logger.error(
                    "retry.exhausted",
                    request_id=str(request_id),
                    operation=operation_name,
                    attempts=attempt + 1,
                    error=str(exc),
                )
                raise

            delay = compute_delay(exc, attempt, policy)
            logger.warning(
                "retry.scheduled",
                request_id=str(request_id),
                operation=operation_name,
                attempt=attempt + 1,
                delay_seconds=delay,
                rate_limited=is_rate_limit_error(exc),
                error=str(exc),
            )
            await sleep(delay)
            attempt += 1
