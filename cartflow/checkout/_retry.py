"""
Retry — re-run a lazy computation while its error is retryable.

Delays and attempts are driven by combinators' retry; this module maps a
Backoff onto it and logs each attempt. thunk() is called once per
attempt, so every attempt gets a fresh LazyCoroResult.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from combinators import flow
from kungfu import Result, Ok, Error, LazyCoroResult

from cartflow._types import Thunk
from cartflow.config import Backoff

logger = structlog.get_logger(__name__)


async def retry_result[T, E](
    thunk: Thunk[T, E],
    backoff: Backoff,
    *,
    retry_on: Callable[[E], bool],
    op: str = "call",
) -> Result[T, E]:
    """
    Run thunk() up to backoff.attempts times.

    Stops at the first Ok, at the first error retry_on rejects, or when
    the budget is spent; the last error is returned.

    Example:
        result = await retry_result(
            lambda: L.catching_async(lambda: gateway.server_confirm(handle), on_error=classify),
            policy.settlement_backoff,
            retry_on=lambda e: e.kind is CheckoutErrorKind.GATEWAY_UNAVAILABLE,
        )
    """
    attempts = 0

    async def attempt() -> Result[T, E]:
        nonlocal attempts
        attempts += 1
        result = await thunk()
        match result:
            case Error(e) if retry_on(e) and attempts < backoff.attempts:
                logger.info("retry_scheduled", op=op, attempt=attempts, error=str(e))
        return result

    result = await flow(LazyCoroResult(attempt)).retry(backoff.retry_policy(retry_on)).compile()

    match result:
        case Ok(_) if attempts > 1:
            logger.info("retry_succeeded", op=op, attempt=attempts)
        case Error(e) if retry_on(e):
            logger.warning("retry_exhausted", op=op, attempts=attempts, error=str(e))
    return result


__all__ = ("retry_result",)
