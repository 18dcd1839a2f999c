"""
Configuration — checkout policy and deployment settings.

Policies are immutable; each with_*() returns a new value, so one
policy can be shared between orchestrators safely.

    policy = (
        CheckoutPolicy()
        .with_currency("usd")
        .with_settlement_backoff(Backoff(attempts=6, initial=0.5))
        .with_pricing(Pricing.flat())
    )
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

from combinators import RetryPolicy
from dotenv import load_dotenv

from cartflow._types import to_money


# ═══════════════════════════════════════════════════════════════════════════════
# Backoff — Retry Budget
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Backoff:
    """
    Exponential backoff budget.

    attempts counts every call, the first one included:
    Backoff(attempts=4) means one call plus three retries.
    """

    attempts: int = 3
    initial: float = 0.2
    factor: float = 2.0
    maximum: float = 5.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.initial < 0 or self.maximum < 0:
            raise ValueError("delays must be >= 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")

    def retry_policy[E](self, retry_on: Callable[[E], bool]) -> RetryPolicy[E]:
        """The combinators retry policy for this budget."""
        build = RetryPolicy.exponential_jitter if self.jitter else RetryPolicy.exponential
        return build(
            times=self.attempts,
            initial=self.initial,
            multiplier=self.factor,
            max_delay=self.maximum,
            retry_on=retry_on,
        )

    @staticmethod
    def none() -> Backoff:
        """Single attempt, no retries."""
        return Backoff(attempts=1, initial=0.0, jitter=False)


# ═══════════════════════════════════════════════════════════════════════════════
# Pricing — Shipping & Tax on top of the snapshot subtotal
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Pricing:
    """
    Server-side quote rules.

    Subtotals strictly above free_shipping_threshold ship free.
    """

    tax_rate: Decimal = Decimal("0.07")
    shipping_fee: Decimal = Decimal("5.99")
    free_shipping_threshold: Decimal = Decimal("50.00")

    @staticmethod
    def flat() -> Pricing:
        """No tax, no shipping; amount due equals the subtotal."""
        return Pricing(
            tax_rate=Decimal("0"),
            shipping_fee=Decimal("0.00"),
            free_shipping_threshold=Decimal("0.00"),
        )

    def with_tax_rate(self, rate: Decimal | str) -> Pricing:
        return replace(self, tax_rate=Decimal(rate))

    def with_shipping(
        self,
        fee: Decimal | str,
        free_above: Decimal | str | None = None,
    ) -> Pricing:
        threshold = (
            to_money(free_above) if free_above is not None else self.free_shipping_threshold
        )
        return replace(self, shipping_fee=to_money(fee), free_shipping_threshold=threshold)


# ═══════════════════════════════════════════════════════════════════════════════
# Checkout Policy
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class CheckoutPolicy:
    """
    Checkout orchestration configuration.

    authorization_backoff: small budget — failure surfaces as retryable.
    settlement_backoff: ambiguous server-side confirmation, money may have moved.
    materialization_backoff: generous — settlement already succeeded.
    call_timeout: upper bound for a single gateway/materializer call.
    authorization_ttl: hold lifetime when the gateway does not report one.
    """

    currency: str = "USD"
    pricing: Pricing = Pricing()
    authorization_backoff: Backoff = Backoff(attempts=3, initial=0.2, maximum=2.0)
    settlement_backoff: Backoff = Backoff(attempts=5, initial=0.5, maximum=8.0)
    materialization_backoff: Backoff = Backoff(attempts=10, initial=0.5, maximum=30.0)
    call_timeout: timedelta = timedelta(seconds=15)
    authorization_ttl: timedelta = timedelta(minutes=30)

    def with_currency(self, currency: str) -> CheckoutPolicy:
        return replace(self, currency=currency.upper())

    def with_pricing(self, pricing: Pricing) -> CheckoutPolicy:
        return replace(self, pricing=pricing)

    def with_authorization_backoff(self, backoff: Backoff) -> CheckoutPolicy:
        return replace(self, authorization_backoff=backoff)

    def with_settlement_backoff(self, backoff: Backoff) -> CheckoutPolicy:
        return replace(self, settlement_backoff=backoff)

    def with_materialization_backoff(self, backoff: Backoff) -> CheckoutPolicy:
        return replace(self, materialization_backoff=backoff)

    def with_call_timeout(
        self,
        *,
        seconds: float | None = None,
        delta: timedelta | None = None,
    ) -> CheckoutPolicy:
        """
        Example:
            .with_call_timeout(seconds=10)
        """
        timeout = delta if delta is not None else timedelta(seconds=seconds or 15)
        return replace(self, call_timeout=timeout)

    def with_authorization_ttl(
        self,
        *,
        minutes: float | None = None,
        delta: timedelta | None = None,
    ) -> CheckoutPolicy:
        ttl = delta if delta is not None else timedelta(minutes=minutes or 30)
        return replace(self, authorization_ttl=ttl)


# ═══════════════════════════════════════════════════════════════════════════════
# Settings — Deployment Values From the Environment
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///:memory:"
    currency: str = "USD"
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> Settings:
        """
        Read CARTFLOW_* variables, after loading an optional .env file.

        Variables already set in the process environment win over .env.
        """
        load_dotenv(dotenv_path=env_file)
        defaults = cls()
        return cls(
            database_url=_get_env("CARTFLOW_DATABASE_URL", default=defaults.database_url),
            currency=_get_env("CARTFLOW_CURRENCY", default=defaults.currency).upper(),
            log_level=_get_env("CARTFLOW_LOG_LEVEL", default=defaults.log_level).upper(),
            log_json=_get_env("CARTFLOW_LOG_JSON", default="false").lower() in ("1", "true", "yes"),
        )

    def checkout_policy(self) -> CheckoutPolicy:
        return CheckoutPolicy().with_currency(self.currency)


def _get_env(key: str, *, default: str) -> str:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "Backoff",
    "Pricing",
    "CheckoutPolicy",
    "Settings",
)
