"""
Collaborator boundaries — address book, price source, reconciliation.

Each is a small Protocol with an in-memory implementation; production
code plugs in the storefront's real services.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Protocol

import structlog

from cartflow._types import to_money
from cartflow.checkout._types import DeliveryAddress, ReconciliationEntry

logger = structlog.get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Address Book
# ═══════════════════════════════════════════════════════════════════════════════


class AddressBook(Protocol):
    async def default_address(self, account_id: str) -> DeliveryAddress | None: ...


class MemoryAddressBook:
    def __init__(self, addresses: Mapping[str, DeliveryAddress] | None = None) -> None:
        self._addresses: dict[str, DeliveryAddress] = dict(addresses or {})

    def set_default(self, account_id: str, address: DeliveryAddress) -> None:
        self._addresses[account_id] = address

    async def default_address(self, account_id: str) -> DeliveryAddress | None:
        return self._addresses.get(account_id)


# ═══════════════════════════════════════════════════════════════════════════════
# Price Source
# ═══════════════════════════════════════════════════════════════════════════════


class PriceSource(Protocol):
    async def current_prices(self, product_ids: Iterable[str]) -> Mapping[str, Decimal]:
        """Authoritative prices; unknown products are simply absent."""
        ...


class StaticPriceSource:
    """
    Fixed price list.

    Example:
        prices = StaticPriceSource({"sku1": "10.00", "sku2": "4.50"})
        prices.set_price("sku1", "12.00")
    """

    def __init__(self, prices: Mapping[str, Decimal | str | int | float] | None = None) -> None:
        self._prices = {pid: to_money(price) for pid, price in (prices or {}).items()}
        self._failures = 0

    def set_price(self, product_id: str, price: Decimal | str | int | float) -> None:
        self._prices[product_id] = to_money(price)

    def fail_next(self, count: int = 1) -> None:
        self._failures += count

    async def current_prices(self, product_ids: Iterable[str]) -> Mapping[str, Decimal]:
        if self._failures > 0:
            self._failures -= 1
            raise ConnectionError("price source unavailable")
        return {pid: self._prices[pid] for pid in product_ids if pid in self._prices}


# ═══════════════════════════════════════════════════════════════════════════════
# Reconciliation Queue
# ═══════════════════════════════════════════════════════════════════════════════


class ReconciliationQueue(Protocol):
    async def escalate(self, entry: ReconciliationEntry) -> None: ...


class MemoryReconciliationQueue:
    def __init__(self) -> None:
        self.entries: list[ReconciliationEntry] = []

    async def escalate(self, entry: ReconciliationEntry) -> None:
        logger.error(
            "reconciliation_escalated",
            session_id=entry.session_id,
            reason=entry.reason.value,
            amount=str(entry.amount),
            currency=entry.currency,
            transaction_id=entry.transaction_id,
        )
        self.entries.append(entry)

    def for_session(self, session_id: str) -> list[ReconciliationEntry]:
        return [entry for entry in self.entries if entry.session_id == session_id]


__all__ = (
    "AddressBook",
    "MemoryAddressBook",
    "PriceSource",
    "StaticPriceSource",
    "ReconciliationQueue",
    "MemoryReconciliationQueue",
)
