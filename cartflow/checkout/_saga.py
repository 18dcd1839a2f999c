"""
Saga — compensated steps with automatic rollback.

A step is a lazy action plus an optional compensator that receives
the action's value. When a later step fails, recorded compensators run
in reverse order.

    hold = SagaStep(action=authorize(session), compensate=void)
    saga = hold.then(lambda handle: SagaStep(action=persist(session, handle)))

    match await run_chain(saga):
        case Ok(result):
            ...
        case Error(e):
            # e.error is the step's error; the hold was voided
            ...
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog
from kungfu import Result, Ok, Error, LazyCoroResult

logger = structlog.get_logger(__name__)

type Compensator[T] = Callable[[T], Awaitable[None]]
type RecordedCompensator[T] = tuple[T, Compensator[T]]


# ═══════════════════════════════════════════════════════════════════════════════
# Types
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class SagaStep[T, E]:
    action: LazyCoroResult[T, E]
    compensate: Compensator[T] | None = None
    name: str = "step"

    def then[U, E2](self, f: Callable[[T], SagaStep[U, E2]]) -> Then[T, U, E, E2]:
        return Then(inner=self, f=f)


@dataclass(frozen=True, slots=True)
class Then[T, U, E, E2]:
    inner: SagaStep[T, E]
    f: Callable[[T], SagaStep[U, E2]]


@dataclass(frozen=True, slots=True)
class SagaResult[T]:
    value: T
    steps_executed: int
    compensators_recorded: int


@dataclass(frozen=True, slots=True)
class SagaError[E]:
    error: E
    step_failed: int
    compensators_run: int
    compensators_failed: int

    @property
    def rollback_complete(self) -> bool:
        return self.compensators_failed == 0


# ═══════════════════════════════════════════════════════════════════════════════
# Execution
# ═══════════════════════════════════════════════════════════════════════════════


async def run_step[T, E](
    step: SagaStep[T, E],
    compensators: list[RecordedCompensator[T]],
) -> Result[T, E]:
    """Execute single step, recording its compensator on success."""
    match await step.action:
        case Ok(value):
            if step.compensate is not None:
                compensators.append((value, step.compensate))
            return Ok(value)
        case Error(e):
            logger.info("saga_step_failed", step=step.name, error=str(e))
            return Error(e)


async def run_compensators[T](compensators: list[RecordedCompensator[T]]) -> tuple[int, int]:
    """Run compensators in reverse. Returns (run, failed)."""
    run, failed = 0, 0
    for value, compensate in reversed(compensators):
        try:
            await compensate(value)
            run += 1
        except Exception:
            logger.exception("saga_compensation_failed")
            failed += 1
    return run, failed


async def run_chain[T, U, E, E2](chain: Then[T, U, E, E2]) -> Result[SagaResult[U], SagaError[E | E2]]:
    """
    Run inner, then the step f builds from its value.

    On any failure every recorded compensator runs, newest first.
    """
    compensators: list[RecordedCompensator[object]] = []

    async def rollback(error: E | E2, step: int) -> Result[SagaResult[U], SagaError[E | E2]]:
        run, failed = await run_compensators(compensators)
        return Error(SagaError(
            error=error,
            step_failed=step,
            compensators_run=run,
            compensators_failed=failed,
        ))

    match await run_step(chain.inner, compensators):  # type: ignore[arg-type]
        case Error(e):
            return await rollback(e, 1)
        case Ok(value):
            pass

    match await run_step(chain.f(value), compensators):  # type: ignore[arg-type]
        case Error(e):
            return await rollback(e, 2)
        case Ok(final):
            return Ok(SagaResult(
                value=final,
                steps_executed=2,
                compensators_recorded=len(compensators),
            ))


__all__ = (
    "Compensator",
    "SagaStep",
    "Then",
    "SagaResult",
    "SagaError",
    "run_step",
    "run_compensators",
    "run_chain",
)
