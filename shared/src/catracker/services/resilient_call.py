"""Bounded exponential-backoff wrapper for fallible remote calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0

# Non-transient preconditions: retrying cannot change the answer.
NON_RETRYABLE_STATUSES = frozenset({403, 404})
AUTH_EXPIRED_STATUS = 401


def status_code_of(exc: BaseException) -> int | None:
    """Extract an HTTP-like status code from an exception, if it carries one."""
    response = getattr(exc, "response", None)
    candidates = (
        getattr(response, "status_code", None),
        getattr(exc, "status_code", None),
        getattr(exc, "http_status", None),
    )
    for value in candidates:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_retryable(exc: BaseException) -> bool:
    if not isinstance(exc, Exception):
        return False
    return status_code_of(exc) not in NON_RETRYABLE_STATUSES


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    context: str = "API call",
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    on_auth_expired: Callable[[], Any] | None = None,
    retry_if: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with up to ``max_attempts`` tries.

    The delay after failed attempt ``n`` is ``base_delay * 2 ** (n - 1)``.
    403/404 failures are raised after the first attempt. Every 401 invokes
    ``on_auth_expired`` so the caller drops cached credentials, including
    after the final attempt. When attempts run out the last error is
    re-raised as-is. ``retry_if`` narrows which errors are retried at all;
    anything that is not an ``Exception`` (task cancellation) is never retried.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    def _should_retry(exc: BaseException) -> bool:
        # Cancellation and interpreter exits always propagate.
        return isinstance(exc, Exception) and retry_if(exc)

    def _before_sleep(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(
            "resilient_call context=%s waiting %.2fs before attempt %d/%d",
            context,
            delay,
            retry_state.attempt_number + 1,
            max_attempts,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2),
        retry=retry_if_exception(_should_retry),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            number = attempt.retry_state.attempt_number
            try:
                result = await operation()
            except Exception as exc:
                status = status_code_of(exc)
                logger.warning(
                    "resilient_call context=%s attempt=%d/%d outcome=failed status=%s error=%s",
                    context,
                    number,
                    max_attempts,
                    status,
                    exc,
                )
                if status == AUTH_EXPIRED_STATUS and on_auth_expired is not None:
                    logger.info(
                        "resilient_call context=%s auth expired, invalidating credentials", context
                    )
                    on_auth_expired()
                if not retry_if(exc):
                    logger.warning(
                        "resilient_call context=%s not retrying: status=%s",
                        context,
                        status,
                    )
                elif number >= max_attempts:
                    logger.error(
                        "resilient_call context=%s all %d attempts failed", context, max_attempts
                    )
                raise
            if number > 1:
                logger.info(
                    "resilient_call context=%s attempt=%d/%d outcome=succeeded",
                    context,
                    number,
                    max_attempts,
                )
            else:
                logger.debug(
                    "resilient_call context=%s attempt=%d/%d outcome=succeeded",
                    context,
                    number,
                    max_attempts,
                )
            return result

    raise RuntimeError("unreachable: retry loop exited without outcome")  # pragma: no cover
