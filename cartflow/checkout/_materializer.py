"""
Order materializer — turns a settled session into a durable order.

create_order() is idempotent on idempotency_key: the checkout session id
is used, so however many times settlement is retried one session yields
one order.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Protocol

from cartflow._types import Clock, utcnow
from cartflow.cart import CartState
from cartflow.checkout._types import (
    DeliveryAddress,
    Order,
    OrderStatus,
    SettlementResult,
)


class OrderMaterializer(Protocol):
    async def create_order(
        self,
        snapshot: CartState,
        settlement: SettlementResult,
        address: DeliveryAddress,
        *,
        idempotency_key: str,
    ) -> Order:
        """Create the order, or return the one already created for the key."""
        ...


def new_order_number() -> str:
    return f"ORD-{uuid.uuid4().hex[:8].upper()}"


def build_order(
    snapshot: CartState,
    settlement: SettlementResult,
    address: DeliveryAddress,
    *,
    idempotency_key: str,
    currency: str,
    clock: Clock = utcnow,
) -> Order:
    return Order(
        order_id=uuid.uuid4().hex,
        order_number=new_order_number(),
        owner_key=snapshot.owner_key,
        line_items=snapshot.items,
        total_amount=settlement.amount,
        currency=currency,
        status=OrderStatus.PROCESSING,
        transaction_id=settlement.transaction_id,
        delivery_address=address,
        idempotency_key=idempotency_key,
        created_at=clock(),
    )


class MemoryOrderMaterializer:
    """
    In-memory orders keyed by idempotency key.

    fail_next(n) makes the next n calls raise, to exercise the retry
    and escalation paths.
    """

    def __init__(self, *, currency: str = "USD", clock: Clock = utcnow) -> None:
        self.orders: dict[str, Order] = {}
        self._currency = currency
        self._clock = clock
        self._lock = asyncio.Lock()
        self._failures = 0

    def fail_next(self, count: int = 1) -> None:
        self._failures += count

    async def create_order(
        self,
        snapshot: CartState,
        settlement: SettlementResult,
        address: DeliveryAddress,
        *,
        idempotency_key: str,
    ) -> Order:
        async with self._lock:
            if self._failures > 0:
                self._failures -= 1
                raise ConnectionError("order store unavailable")

            existing = self.orders.get(idempotency_key)
            if existing is not None:
                return existing

            order = build_order(
                snapshot,
                settlement,
                address,
                idempotency_key=idempotency_key,
                currency=self._currency,
                clock=self._clock,
            )
            self.orders[idempotency_key] = order
            return order


__all__ = (
    "OrderMaterializer",
    "new_order_number",
    "build_order",
    "MemoryOrderMaterializer",
)
