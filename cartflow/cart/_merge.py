"""
Cart merge — fold the anonymous cart into the account's cart at login.

Exactly-once: the durable absorb records, under the ephemeral cart_id,
how much of each product it folded in, and the ephemeral cart is
cleared only after the absorb committed. A re-run after a failed clear
folds in only what the ephemeral cart gained since, so the customer
ends with the same cart as if the first run had completed.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from kungfu import Result, Ok, Error

from cartflow.cart._store import CartStore, DurableCartStore
from cartflow.cart._types import CartState, CartError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class MergeResult:
    """
    state: durable cart after the merge
    merged: number of ephemeral lines folded in by this run
    skipped: an earlier run had already folded in everything
    """

    state: CartState
    merged: int = 0
    skipped: bool = False


def merge_token(snapshot: CartState) -> str:
    """
    Names one ephemeral cart until it is cleared.

    Clearing rotates cart_id, so a cart filled after a completed merge
    is a new merge.
    """
    return snapshot.cart_id


async def merge_carts(
    ephemeral: CartStore,
    durable: DurableCartStore,
) -> Result[MergeResult, CartError]:
    """
    Union by product id, quantities summed, labels and price from the
    ephemeral line.

    Example:
        match await merge_carts(device_cart, account_cart):
            case Ok(MergeResult(state=state, merged=n)):
                log.info("merged", lines=n, total=state.total)
    """
    match await ephemeral.load():
        case Error(e):
            return Error(e)
        case Ok(snapshot):
            pass

    if snapshot.is_empty:
        match await durable.load():
            case Ok(state):
                return Ok(MergeResult(state=state))
            case Error(e):
                return Error(e)

    token = merge_token(snapshot)

    match await durable.absorb(snapshot.items, token):
        case Error(e):
            logger.warning("cart_merge_failed", owner_key=durable.owner_key, token=token, error=e.message)
            return Error(e)
        case Ok((state, folded)):
            pass

    # The clear may fail; a re-run folds in only later growth, then clears
    match await ephemeral.clear():
        case Error(e):
            logger.warning("cart_merge_clear_failed", owner_key=ephemeral.owner_key, token=token, error=e.message)
            return Error(e)
        case Ok(_):
            pass

    logger.info(
        "cart_merged",
        owner_key=durable.owner_key,
        token=token,
        lines=len(snapshot.items),
        folded=folded,
    )
    return Ok(MergeResult(state=state, merged=folded, skipped=folded == 0))


__all__ = ("MergeResult", "merge_token", "merge_carts")
