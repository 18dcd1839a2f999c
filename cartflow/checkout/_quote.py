"""
Quote — server-side pricing of a cart snapshot.

Prices hinted at add-time are never charged: reprice() replaces every
unit price with the price source's current one before the quote.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import replace
from decimal import Decimal

from kungfu import Result, Ok, Error

from cartflow._types import ZERO, to_money
from cartflow.cart import CartState
from cartflow.config import Pricing
from cartflow.checkout._types import Quote, CheckoutError, CheckoutErrorKind


def reprice(
    snapshot: CartState,
    prices: Mapping[str, Decimal],
) -> Result[CartState, CheckoutError]:
    """Snapshot with authoritative unit prices, or PRICE_UNAVAILABLE."""
    missing = [item.product_id for item in snapshot.items if item.product_id not in prices]
    if missing:
        return Error(CheckoutError(
            CheckoutErrorKind.PRICE_UNAVAILABLE,
            f"No current price for: {', '.join(missing)}",
        ))

    items = []
    for item in snapshot.items:
        try:
            price = to_money(prices[item.product_id])
        except ValueError as e:
            return Error(CheckoutError(CheckoutErrorKind.PRICE_UNAVAILABLE, str(e), cause=e))
        if price < 0:
            return Error(CheckoutError(
                CheckoutErrorKind.PRICE_UNAVAILABLE,
                f"Negative price for {item.product_id}: {price}",
            ))
        items.append(replace(item, unit_price=price))

    return Ok(replace(snapshot, items=tuple(items)))


def quote(snapshot: CartState, pricing: Pricing) -> Quote:
    """
    subtotal + shipping + tax, each rounded half-up to cents.

    Shipping is free once the subtotal is strictly above the threshold;
    tax applies to the subtotal only.
    """
    subtotal = to_money(snapshot.total)
    shipping = ZERO if subtotal > pricing.free_shipping_threshold else to_money(pricing.shipping_fee)
    tax = to_money(subtotal * pricing.tax_rate)
    return Quote(
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        amount_due=subtotal + shipping + tax,
    )


def fingerprint(snapshot: CartState, amount: Decimal, currency: str) -> str:
    """Stable hash of what is being bought and for how much."""
    payload = {
        "lines": [
            [item.product_id, item.quantity, str(item.unit_price)]
            for item in sorted(snapshot.items, key=lambda i: i.product_id)
        ],
        "amount": str(to_money(amount)),
        "currency": currency.upper(),
    }
    encoded = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    return hashlib.sha256(encoded.encode()).hexdigest()


__all__ = ("reprice", "quote", "fingerprint")
