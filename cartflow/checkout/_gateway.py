"""
Payment gateway boundary.

The orchestrator only talks to PaymentGateway. A definitive refusal is
GatewayDeclined; anything else raised (GatewayUnavailable, timeouts,
transport errors) is treated as an ambiguous outcome and retried.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict, deque
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import timedelta
from decimal import Decimal
from typing import Protocol

from cartflow._types import Clock, utcnow
from cartflow.checkout._types import (
    AuthorizationHandle,
    ClientOutcome,
    ClientResult,
    SettlementResult,
    SettlementStatus,
)

# ═══════════════════════════════════════════════════════════════════════════════
# Exceptions
# ═══════════════════════════════════════════════════════════════════════════════


class GatewayDeclined(Exception):
    """Definitive refusal. Retrying will not change the answer."""

    def __init__(self, reason: str = "declined") -> None:
        super().__init__(reason)
        self.reason = reason


class GatewayUnavailable(Exception):
    """Transport failure; the gateway may or may not have acted."""


# ═══════════════════════════════════════════════════════════════════════════════
# Protocol
# ═══════════════════════════════════════════════════════════════════════════════


class PaymentGateway(Protocol):
    async def create_authorization(
        self,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> AuthorizationHandle:
        """Place a hold. Repeating idempotency_key returns the same hold."""
        ...

    async def client_confirm(
        self,
        handle: AuthorizationHandle,
        payment_method: str,
    ) -> ClientResult:
        """Runs on the customer's client; exposed here for completeness."""
        ...

    async def server_confirm(self, handle: AuthorizationHandle) -> SettlementResult: ...

    async def void(self, handle: AuthorizationHandle) -> None: ...


# ═══════════════════════════════════════════════════════════════════════════════
# Fake Gateway — For Testing
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class GatewayCall:
    method: str
    handle_id: str | None = None
    amount: Decimal | None = None
    idempotency_key: str | None = None


_HANG = object()
_PENDING = object()


class FakeGateway:
    """
    In-memory gateway with scripted failures and a call log.

    Example:
        gateway = FakeGateway()
        gateway.fail("server_confirm", times=2)           # GatewayUnavailable twice
        gateway.hang("server_confirm", times=1)           # exceeds any call timeout
        gateway.pending("server_confirm", times=1)        # PENDING once
        gateway.decline_card("pm_card_declined")

        ...
        assert gateway.count("create_authorization") == 1
    """

    DECLINED_CARD = "pm_card_chargeDeclined"

    def __init__(
        self,
        *,
        clock: Clock = utcnow,
        hold_ttl: timedelta | None = timedelta(minutes=30),
        hang_seconds: float = 3600.0,
    ) -> None:
        self.calls: list[GatewayCall] = []
        self.holds: dict[str, AuthorizationHandle] = {}
        self.voided: set[str] = set()
        self.settled: dict[str, SettlementResult] = {}
        self._clock = clock
        self._hold_ttl = hold_ttl
        self._hang_seconds = hang_seconds
        self._by_key: dict[str, str] = {}
        self._confirmed: set[str] = set()
        self._declined_cards: set[str] = {self.DECLINED_CARD}
        self._scripts: defaultdict[str, deque[object]] = defaultdict(deque)
        self._settle_amount: Decimal | None = None

    # ───────────────────────────────────────────────────────────────────────────
    # Scripting
    # ───────────────────────────────────────────────────────────────────────────

    def fail(self, method: str, *, times: int = 1, error: Exception | None = None) -> FakeGateway:
        """Raise `error` (GatewayUnavailable by default) on the next `times` calls."""
        for _ in range(times):
            self._scripts[method].append(error or GatewayUnavailable(f"{method} unavailable"))
        return self

    def hang(self, method: str, *, times: int = 1) -> FakeGateway:
        """Block the next `times` calls long enough to hit the call timeout."""
        for _ in range(times):
            self._scripts[method].append(_HANG)
        return self

    def pending(self, method: str = "server_confirm", *, times: int = 1) -> FakeGateway:
        """Answer PENDING on the next `times` server confirmations."""
        for _ in range(times):
            self._scripts[method].append(_PENDING)
        return self

    def decline_card(self, payment_method: str) -> FakeGateway:
        self._declined_cards.add(payment_method)
        return self

    def settle_amount(self, amount: Decimal | None) -> FakeGateway:
        """Report `amount` as settled regardless of the hold."""
        self._settle_amount = amount
        return self

    def expire(self, handle_id: str) -> None:
        hold = self.holds[handle_id]
        self.holds[handle_id] = replace(hold, expires_at=self._clock() - timedelta(seconds=1))

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call.method == method)

    async def _play(self, method: str) -> object | None:
        script = self._scripts[method]
        if not script:
            return None
        step = script.popleft()
        if isinstance(step, Exception):
            raise step
        if step is _HANG:
            await asyncio.sleep(self._hang_seconds)
        return step

    # ───────────────────────────────────────────────────────────────────────────
    # PaymentGateway
    # ───────────────────────────────────────────────────────────────────────────

    async def create_authorization(
        self,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> AuthorizationHandle:
        self.calls.append(GatewayCall("create_authorization", amount=amount, idempotency_key=idempotency_key))
        await self._play("create_authorization")

        if (handle_id := self._by_key.get(idempotency_key)) is not None:
            return self.holds[handle_id]

        handle_id = f"pi_{uuid.uuid4().hex[:24]}"
        expires_at = self._clock() + self._hold_ttl if self._hold_ttl is not None else None
        handle = AuthorizationHandle(
            handle_id=handle_id,
            amount=amount,
            currency=currency,
            expires_at=expires_at,
            client_secret=f"{handle_id}_secret_{uuid.uuid4().hex[:12]}",
        )
        self._by_key[idempotency_key] = handle_id
        self.holds[handle_id] = handle
        return handle

    async def client_confirm(
        self,
        handle: AuthorizationHandle,
        payment_method: str,
    ) -> ClientResult:
        self.calls.append(GatewayCall("client_confirm", handle_id=handle.handle_id))
        await self._play("client_confirm")

        hold = self.holds.get(handle.handle_id)
        if hold is None or handle.handle_id in self.voided:
            return ClientResult(handle.handle_id, ClientOutcome.DECLINED, "unknown or voided hold")
        if hold.is_expired(self._clock()):
            return ClientResult(handle.handle_id, ClientOutcome.EXPIRED, "authorization expired")
        if payment_method in self._declined_cards:
            return ClientResult(handle.handle_id, ClientOutcome.DECLINED, "card_declined")

        self._confirmed.add(handle.handle_id)
        return ClientResult(handle.handle_id, ClientOutcome.SUCCEEDED)

    async def server_confirm(self, handle: AuthorizationHandle) -> SettlementResult:
        self.calls.append(GatewayCall("server_confirm", handle_id=handle.handle_id))
        step = await self._play("server_confirm")

        if (done := self.settled.get(handle.handle_id)) is not None:
            return done

        hold = self.holds.get(handle.handle_id)
        if hold is None or handle.handle_id in self.voided:
            raise GatewayDeclined("unknown or voided hold")
        if handle.handle_id not in self._confirmed:
            raise GatewayDeclined("payment method not confirmed")
        if step is _PENDING:
            return SettlementResult(handle.handle_id, SettlementStatus.PENDING, hold.amount)

        result = SettlementResult(
            handle_id=handle.handle_id,
            status=SettlementStatus.SUCCEEDED,
            amount=self._settle_amount if self._settle_amount is not None else hold.amount,
            transaction_id=f"txn_{uuid.uuid4().hex[:16]}",
        )
        self.settled[handle.handle_id] = result
        return result

    async def void(self, handle: AuthorizationHandle) -> None:
        self.calls.append(GatewayCall("void", handle_id=handle.handle_id))
        await self._play("void")
        self.voided.add(handle.handle_id)


__all__ = (
    "GatewayDeclined",
    "GatewayUnavailable",
    "PaymentGateway",
    "GatewayCall",
    "FakeGateway",
)
