"""
Backend selection — pick the cart store once, per identity.

Anonymous visitors get the ephemeral backend bound to their device;
authenticated customers get the durable backend bound to their account
when it answers ping(). Callers keep the returned store for the whole
interaction instead of re-deciding per call.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from kungfu import Result, Ok, Error

from cartflow._types import Identity, Anonymous, Authenticated
from cartflow.cart._store import CartBackend, DurableCartStore
from cartflow.cart._types import OwnerMode, CartError, CartErrorKind

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CartSelection:
    """
    The chosen store.

    degraded is True when an authenticated customer was handed the
    ephemeral store because the durable one was unhealthy.
    """

    store: DurableCartStore
    mode: OwnerMode
    degraded: bool = False


async def select_cart_store(
    identity: Identity,
    *,
    ephemeral: CartBackend,
    durable: CartBackend,
    allow_fallback: bool = False,
) -> Result[CartSelection, CartError]:
    """
    Choose the backend for `identity`.

    Example:
        match await select_cart_store(identity, ephemeral=local, durable=db):
            case Ok(selection):
                cart = selection.store
            case Error(e):
                show_retry(e)
    """
    match identity:
        case Anonymous(device_id=device_id):
            selection = CartSelection(
                store=ephemeral.for_owner(device_id, OwnerMode.ANONYMOUS),
                mode=OwnerMode.ANONYMOUS,
            )
            logger.info("cart_store_selected", owner_key=device_id, backend="ephemeral")
            return Ok(selection)

        case Authenticated(account_id=account_id, device_id=device_id):
            if await durable.ping():
                logger.info("cart_store_selected", owner_key=account_id, backend="durable")
                return Ok(CartSelection(
                    store=durable.for_owner(account_id, OwnerMode.AUTHENTICATED),
                    mode=OwnerMode.AUTHENTICATED,
                ))

            if not allow_fallback:
                logger.warning("cart_store_unavailable", owner_key=account_id, backend="durable")
                return Error(CartError(CartErrorKind.UNAVAILABLE, "Durable cart store unavailable"))

            scope = device_id or account_id
            logger.warning(
                "cart_store_degraded",
                owner_key=account_id,
                backend="ephemeral",
                device_scope=scope,
            )
            return Ok(CartSelection(
                store=ephemeral.for_owner(scope, OwnerMode.AUTHENTICATED),
                mode=OwnerMode.AUTHENTICATED,
                degraded=True,
            ))

    raise TypeError(f"Unknown identity: {identity!r}")


__all__ = ("CartSelection", "select_cart_store")
