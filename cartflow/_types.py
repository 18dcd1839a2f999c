"""
Core types for cartflow.

Re-exports from kungfu + money and identity primitives shared by
the cart and checkout packages.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, UTC
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from collections.abc import Callable

# Re-export from kungfu
from kungfu import Result, Ok, Error, LazyCoroResult

# ═══════════════════════════════════════════════════════════════════════════════
# Lazy Computation Aliases
# ═══════════════════════════════════════════════════════════════════════════════

type Lazy[T, E] = LazyCoroResult[T, E]
"""Lazy async computation that may fail."""

type Thunk[T, E] = Callable[[], Lazy[T, E]]
"""Factory producing a fresh lazy computation (one per attempt)."""

type Clock = Callable[[], datetime]
"""Injected wall clock, timezone-aware UTC."""


def utcnow() -> datetime:
    return datetime.now(UTC)


# ═══════════════════════════════════════════════════════════════════════════════
# Money
# ═══════════════════════════════════════════════════════════════════════════════

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Decimal | int | float | str) -> Decimal:
    """
    Normalise an amount to a cent-quantized Decimal.

    Floats go through str() so 10.1 stays 10.10, not 10.0999….
    Raises ValueError for NaN, infinities and unparsable input.
    """
    if isinstance(value, bool):
        raise ValueError(f"Not an amount: {value!r}")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Not a finite amount: {value!r}")
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not an amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Not a finite amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


# ═══════════════════════════════════════════════════════════════════════════════
# Identity — consumed as opaque values, never issued here
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Anonymous:
    """Visitor known only by a device/browser storage scope."""

    device_id: str


@dataclass(frozen=True, slots=True)
class Authenticated:
    """Customer with an established account identity."""

    account_id: str
    token: str = ""
    device_id: str | None = None


type Identity = Anonymous | Authenticated


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    # Re-exports from kungfu
    "Result",
    "Ok",
    "Error",
    "LazyCoroResult",
    # Aliases
    "Lazy",
    "Thunk",
    "Clock",
    "utcnow",
    # Money
    "CENT",
    "ZERO",
    "to_money",
    # Identity
    "Anonymous",
    "Authenticated",
    "Identity",
)
