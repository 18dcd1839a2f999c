"""
Lift — helpers for lifting calls into LazyCoroResult.

Re-exports from combinators.lift with cartflow-specific additions.
"""

from __future__ import annotations

from collections.abc import Callable, Awaitable
from datetime import timedelta

from combinators import flow
from kungfu import Result, Error, LazyCoroResult

from combinators.lift import catching_async


def bounded[T, E](
    fn: Callable[[], Awaitable[T]],
    timeout: timedelta,
    *,
    on_error: Callable[[Exception], E],
) -> LazyCoroResult[T, E]:
    """
    catching_async with a deadline. A call that overruns is cancelled
    and reaches on_error as TimeoutError.

    Example:
        confirm = bounded(
            lambda: gateway.server_confirm(handle),
            timedelta(seconds=15),
            on_error=classify,
        )
    """
    call = flow(catching_async(fn, on_error=on_error)).timeout(seconds=timeout.total_seconds()).compile()

    async def _run() -> Result[T, E]:
        match await call:
            case Error(TimeoutError() as e):
                return Error(on_error(e))
            case result:
                return result

    return LazyCoroResult(_run)


__all__ = (
    "catching_async",
    "bounded",
)
