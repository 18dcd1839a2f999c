"""
Checkout orchestrator — drives a session from cart snapshot to order.

    DRAFT → AWAITING_AUTHORIZATION → AWAITING_SERVER_CONFIRMATION → COMMITTED
      ↘ FAILED / ABANDONED

Every amount sent to the gateway comes from the session's re-priced
snapshot. The cart is cleared only after the order is durable and the
session is COMMITTED.

    orchestrator = CheckoutOrchestrator(
        sessions=MemorySessionStore(),
        gateway=gateway,
        materializer=MemoryOrderMaterializer(),
        prices=StaticPriceSource({"sku1": "10.00"}),
        addresses=address_book,
        reconciliation=MemoryReconciliationQueue(),
    )

    match await orchestrator.begin(customer, cart):
        case Ok(session):
            ...                           # client confirms with the gateway
            await orchestrator.authorize(session.id, client_result)
            await orchestrator.settle(session.id)
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

import structlog
from kungfu import Result, Ok, Error, LazyCoroResult

from cartflow._locks import OwnerLocks
from cartflow._types import Identity, Authenticated, Clock, utcnow
from cartflow.cart import CartBackend, CartState, CartStore, OwnerMode
from cartflow.config import CheckoutPolicy
from cartflow.lift import bounded, catching_async
from cartflow.checkout._collaborators import AddressBook, PriceSource, ReconciliationQueue
from cartflow.checkout._gateway import GatewayDeclined, PaymentGateway
from cartflow.checkout._materializer import OrderMaterializer
from cartflow.checkout._quote import fingerprint, quote, reprice
from cartflow.checkout._retry import retry_result
from cartflow.checkout._saga import SagaStep, run_chain
from cartflow.checkout._sessions import SessionStore, StoreError
from cartflow.checkout._types import (
    AuthorizationHandle,
    CheckoutError,
    CheckoutErrorKind,
    CheckoutFailure,
    CheckoutSession,
    CheckoutStatus,
    ClientOutcome,
    ClientResult,
    DeliveryAddress,
    Order,
    Quote,
    ReconciliationEntry,
    ReconciliationReason,
    SettlementResult,
    SettlementStatus,
    can_transition,
)

logger = structlog.get_logger(__name__)

K = CheckoutErrorKind
S = CheckoutStatus


# ═══════════════════════════════════════════════════════════════════════════════
# Error Classification
# ═══════════════════════════════════════════════════════════════════════════════


def _classify(op: str, e: Exception) -> CheckoutError:
    match e:
        case GatewayDeclined(reason=reason):
            return CheckoutError(K.GATEWAY_REJECTED, f"Payment declined: {reason}", cause=e)
        case TimeoutError():
            return CheckoutError(K.GATEWAY_UNAVAILABLE, f"{op} timed out", cause=e)
        case _:
            return CheckoutError(K.GATEWAY_UNAVAILABLE, f"{op} failed: {e}", cause=e)


def _is_ambiguous(e: CheckoutError) -> bool:
    return e.kind is K.GATEWAY_UNAVAILABLE


def _store_error(e: StoreError) -> CheckoutError:
    return CheckoutError(K.STORE_UNAVAILABLE, e.message, retryable=True, cause=e.cause)


@dataclass(frozen=True, slots=True)
class _Prepared:
    address: DeliveryAddress
    snapshot: CartState
    quote: Quote
    fingerprint: str


# ═══════════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════════════════


class CheckoutOrchestrator:
    def __init__(
        self,
        *,
        sessions: SessionStore,
        gateway: PaymentGateway,
        materializer: OrderMaterializer,
        prices: PriceSource,
        addresses: AddressBook,
        reconciliation: ReconciliationQueue,
        carts: CartBackend | None = None,
        policy: CheckoutPolicy = CheckoutPolicy(),
        clock: Clock = utcnow,
        new_key: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        """
        carts: durable backend used to clear the owner's cart after a
        commit when the cart passed to begin() is no longer known, e.g.
        settlement finished in another process.
        """
        self._sessions = sessions
        self._gateway = gateway
        self._materializer = materializer
        self._prices = prices
        self._addresses = addresses
        self._reconciliation = reconciliation
        self._carts = carts
        self._policy = policy
        self._clock = clock
        self._new_key = new_key
        self._checkout_carts: dict[str, tuple[CartStore, datetime]] = {}
        self._begin_locks = OwnerLocks()

    @property
    def policy(self) -> CheckoutPolicy:
        return self._policy

    @property
    def tracked_carts(self) -> int:
        """Sessions whose cart is remembered for clearing after commit."""
        return len(self._checkout_carts)

    # ───────────────────────────────────────────────────────────────────────────
    # Operations
    # ───────────────────────────────────────────────────────────────────────────

    async def get(self, key: str) -> Result[CheckoutSession, CheckoutError]:
        match await self._sessions.get(key):
            case Error(e):
                return Error(_store_error(e))
            case Ok(None):
                return Error(CheckoutError(K.NOT_FOUND, f"No checkout session {key}"))
            case Ok(session):
                return Ok(session)

    async def begin(
        self,
        identity: Identity,
        cart: CartStore,
        *,
        idempotency_key: str | None = None,
    ) -> Result[CheckoutSession, CheckoutError]:
        """
        Snapshot and price the cart, then place an authorization hold.

        A known idempotency_key returns its session untouched, so a page
        reload never authorizes twice. Calls for one owner run one at a
        time, so a double click reuses the first hold.
        """
        if idempotency_key is not None:
            match await self._reload(idempotency_key):
                case Error(e):
                    return Error(e)
                case Ok(existing) if existing is not None:
                    return Ok(existing)

        match identity:
            case Authenticated(account_id=owner_key):
                pass
            case _:
                return Error(CheckoutError(K.NOT_AUTHENTICATED, "Sign in to check out"))

        async with self._begin_locks.hold(owner_key):
            if idempotency_key is not None:
                # A concurrent call with this key may have finished while we waited
                match await self._reload(idempotency_key):
                    case Error(e):
                        return Error(e)
                    case Ok(existing) if existing is not None:
                        return Ok(existing)
            return await self._open(owner_key, cart, idempotency_key or self._new_key())

    async def _open(self, owner_key: str, cart: CartStore, key: str) -> Result[CheckoutSession, CheckoutError]:
        log = logger.bind(session_id=key, owner_key=owner_key)

        match await self._prepare(owner_key, cart):
            case Error(e):
                log.info("checkout_precondition_failed", kind=e.kind.value, error=e.message)
                return Error(e)
            case Ok(prepared):
                pass

        match await self._sessions.find_open(owner_key):
            case Error(e):
                return Error(_store_error(e))
            case Ok(open_sessions):
                pass

        if any(s.status is S.AWAITING_SERVER_CONFIRMATION for s in open_sessions):
            log.info("checkout_in_progress")
            return Error(CheckoutError(
                K.CHECKOUT_IN_PROGRESS,
                "A payment for this account is being confirmed; wait for it to finish",
            ))

        for existing in open_sessions:
            if existing.fingerprint != prepared.fingerprint:
                continue
            match existing.status:
                case S.DRAFT if self._clock() - existing.created_at < self._draft_window():
                    # Another process is placing the hold for this cart
                    log.info("checkout_hold_pending", pending_session_id=existing.id)
                    return Error(CheckoutError(
                        K.CHECKOUT_IN_PROGRESS,
                        "This checkout is already starting; try again shortly",
                        retryable=True,
                    ))
                case S.DRAFT:
                    log.warning("checkout_draft_stale", stale_session_id=existing.id)
                    match await self._advance(existing, S.ABANDONED):
                        case Error(e):
                            return Error(e)
                        case Ok(_):
                            pass
                case S.AWAITING_AUTHORIZATION:
                    handle = existing.authorization
                    if handle is not None and not handle.is_expired(self._clock()):
                        log.info("checkout_hold_reused", reused_session_id=existing.id)
                        self._track_cart(existing.id, cart)
                        return Ok(existing)
                    await self._void(handle)
                    await self._fail(existing, CheckoutError(K.AUTHORIZATION_EXPIRED, "Payment authorization expired"))

        now = self._clock()
        draft = CheckoutSession(
            id=key,
            owner_key=owner_key,
            status=S.DRAFT,
            cart_snapshot=prepared.snapshot,
            fingerprint=prepared.fingerprint,
            quote=prepared.quote,
            currency=self._policy.currency,
            delivery_address=prepared.address,
            created_at=now,
            updated_at=now,
        )

        match await self._sessions.insert(draft):
            case Error(e):
                return Error(_store_error(e))
            case Ok(False):
                # A concurrent begin with this key won
                return await self.get(key)
            case Ok(True):
                pass

        self._track_cart(key, cart)
        log.info("checkout_started", amount_due=str(draft.amount_due), lines=len(draft.cart_snapshot.items))
        return await self._place_hold(draft)

    async def authorize(
        self,
        key: str,
        client_result: ClientResult,
    ) -> Result[CheckoutSession, CheckoutError]:
        """Record the client-side confirmation outcome."""
        match await self.get(key):
            case Error(e):
                return Error(e)
            case Ok(session):
                pass

        if session.status is S.DRAFT:
            return Error(CheckoutError(K.INVALID_TRANSITION, f"Checkout {key} has no authorization yet"))
        if session.status is not S.AWAITING_AUTHORIZATION:
            return Ok(session)

        match session.authorization:
            case None:
                return Error(CheckoutError(K.INVALID_TRANSITION, f"Checkout {key} has no authorization yet"))
            case handle:
                pass

        if client_result.handle_id != handle.handle_id:
            return Error(CheckoutError(
                K.HANDLE_MISMATCH,
                f"Client confirmed {client_result.handle_id}, session holds {handle.handle_id}",
            ))

        if handle.is_expired(self._clock()) or client_result.outcome is ClientOutcome.EXPIRED:
            return await self._reject(
                session,
                CheckoutError(K.AUTHORIZATION_EXPIRED, "Payment authorization expired; start checkout again"),
            )

        if client_result.outcome is ClientOutcome.DECLINED:
            reason = client_result.failure_reason or "declined"
            return await self._reject(session, CheckoutError(K.GATEWAY_REJECTED, f"Payment declined: {reason}"))

        match await self._advance(session, S.AWAITING_SERVER_CONFIRMATION):
            case Ok(confirmed):
                logger.info("checkout_authorized", session_id=key, handle_id=handle.handle_id)
                return Ok(confirmed)
            case Error(e):
                return Error(e)

    async def settle(self, key: str) -> Result[CheckoutSession, CheckoutError]:
        """
        Confirm the hold server-side, then materialize the order.

        Safe to repeat: a committed session is returned as is, and a
        session whose settlement is recorded only resumes the order step.
        """
        match await self.get(key):
            case Error(e):
                return Error(e)
            case Ok(session):
                pass

        match session.status:
            case S.COMMITTED:
                return Ok(session)
            case S.AWAITING_SERVER_CONFIRMATION:
                pass
            case _:
                return Error(CheckoutError(
                    K.INVALID_TRANSITION,
                    f"Checkout {key} cannot settle from {session.status.value}",
                ))

        if session.settlement is not None:
            return await self._materialize(session, session.settlement)

        match session.authorization:
            case None:
                return Error(CheckoutError(K.INVALID_TRANSITION, f"Checkout {key} has no authorization to settle"))
            case handle:
                pass
        log = logger.bind(session_id=key, handle_id=handle.handle_id)

        result = await retry_result(
            lambda: LazyCoroResult(lambda: self._confirm_once(handle)),
            self._policy.settlement_backoff,
            retry_on=_is_ambiguous,
            op="server_confirm",
        )

        match result:
            case Error(e) if _is_ambiguous(e):
                error = CheckoutError(
                    K.SETTLEMENT_UNKNOWN,
                    "Payment outcome unknown; it is being reviewed",
                    cause=e.cause,
                )
                failed = await self._fail(session, error)
                await self._escalate(failed, ReconciliationReason.SETTLEMENT_UNKNOWN, e.message)
                return Error(error)
            case Error(e):
                await self._fail(session, e)
                return Error(e)
            case Ok(settlement):
                pass

        if settlement.amount != session.amount_due:
            error = CheckoutError(
                K.INTEGRITY,
                f"Settled {settlement.amount} {session.currency} but {session.amount_due} was due",
                payment_captured=True,
            )
            failed = await self._fail(session, error, settlement=settlement)
            await self._escalate(failed, ReconciliationReason.AMOUNT_MISMATCH, error.message)
            return Error(error)

        log.info("checkout_settled", transaction_id=settlement.transaction_id, amount=str(settlement.amount))

        match await self._persist(session.updated(now=self._clock(), settlement=settlement)):
            case Error(e):
                log.error("checkout_settlement_not_recorded", error=e.message)
                return Error(replace(e, payment_captured=True))
            case Ok(settled):
                return await self._materialize(settled, settlement)

    async def reconcile(self, key: str) -> Result[CheckoutSession, CheckoutError]:
        """Resume order creation for a settled session that was escalated."""
        match await self.get(key):
            case Error(e):
                return Error(e)
            case Ok(session):
                pass

        match session.status, session.settlement:
            case S.COMMITTED, _:
                return Ok(session)
            case S.AWAITING_SERVER_CONFIRMATION, SettlementResult() as settlement:
                return await self._materialize(session, settlement)
            case _:
                return Error(CheckoutError(
                    K.INVALID_TRANSITION,
                    f"Checkout {key} has no recorded settlement to reconcile",
                ))

    async def cancel(self, key: str) -> Result[CheckoutSession, CheckoutError]:
        """Abandon before server confirmation, releasing any hold."""
        match await self.get(key):
            case Error(e):
                return Error(e)
            case Ok(session):
                pass

        if not can_transition(session.status, S.ABANDONED):
            return Error(CheckoutError(
                K.INVALID_TRANSITION,
                f"Checkout {key} cannot be cancelled from {session.status.value}",
            ))

        await self._void(session.authorization)
        match await self._advance(session, S.ABANDONED):
            case Ok(abandoned):
                self._checkout_carts.pop(key, None)
                logger.info("checkout_abandoned", session_id=key)
                return Ok(abandoned)
            case Error(e):
                return Error(e)

    # ───────────────────────────────────────────────────────────────────────────
    # Steps
    # ───────────────────────────────────────────────────────────────────────────

    async def _prepare(self, owner_key: str, cart: CartStore) -> Result[_Prepared, CheckoutError]:
        match await catching_async(
            lambda: self._addresses.default_address(owner_key),
            on_error=lambda e: CheckoutError(
                K.STORE_UNAVAILABLE, f"Address book unavailable: {e}", retryable=True, cause=e,
            ),
        ):
            case Error(e):
                return Error(e)
            case Ok(None):
                return Error(CheckoutError(K.ADDRESS_REQUIRED, "Add a delivery address before checking out"))
            case Ok(address):
                pass

        match await cart.load():
            case Error(cart_error):
                return Error(CheckoutError(
                    K.STORE_UNAVAILABLE,
                    cart_error.message,
                    retryable=cart_error.retryable,
                    cause=cart_error.cause,
                ))
            case Ok(live):
                pass

        if live.is_empty:
            return Error(CheckoutError(K.EMPTY_CART, "Your cart is empty"))

        match await catching_async(
            lambda: self._prices.current_prices([item.product_id for item in live.items]),
            on_error=lambda e: CheckoutError(
                K.PRICE_UNAVAILABLE, f"Price source unavailable: {e}", retryable=True, cause=e,
            ),
        ):
            case Error(e):
                return Error(e)
            case Ok(prices):
                pass

        match reprice(live, prices):
            case Error(e):
                return Error(e)
            case Ok(snapshot):
                pass

        priced = quote(snapshot, self._policy.pricing)
        return Ok(_Prepared(
            address=address,
            snapshot=snapshot,
            quote=priced,
            fingerprint=fingerprint(snapshot, priced.amount_due, self._policy.currency),
        ))

    async def _place_hold(self, draft: CheckoutSession) -> Result[CheckoutSession, CheckoutError]:
        """Authorization saga: a hold that is voided if the session cannot record it."""
        hold = SagaStep(
            action=LazyCoroResult(lambda: self._create_authorization(draft)),
            compensate=self._void,
            name="create_authorization",
        )
        saga = hold.then(lambda handle: SagaStep(
            action=LazyCoroResult(
                lambda: self._advance(draft, S.AWAITING_AUTHORIZATION, authorization=handle)
            ),
            name="record_authorization",
        ))

        match await run_chain(saga):
            case Ok(done):
                session = done.value
                logger.info(
                    "checkout_awaiting_authorization",
                    session_id=draft.id,
                    handle_id=session.authorization.handle_id if session.authorization else None,
                )
                return Ok(session)
            case Error(saga_error):
                error = saga_error.error
                logger.warning(
                    "checkout_hold_failed",
                    session_id=draft.id,
                    kind=error.kind.value,
                    error=error.message,
                    compensators_run=saga_error.compensators_run,
                    rollback_complete=saga_error.rollback_complete,
                )
                await self._fail(draft, error)
                return Error(error)

    async def _create_authorization(self, session: CheckoutSession) -> Result[AuthorizationHandle, CheckoutError]:
        result = await retry_result(
            lambda: self._call(
                "create_authorization",
                lambda: self._gateway.create_authorization(
                    session.amount_due,
                    session.currency,
                    {"session_id": session.id, "owner_key": session.owner_key},
                    session.id,
                ),
            ),
            self._policy.authorization_backoff,
            retry_on=_is_ambiguous,
            op="create_authorization",
        )

        match result:
            case Error(e) if _is_ambiguous(e):
                return Error(CheckoutError(
                    K.GATEWAY_UNAVAILABLE,
                    "Payment provider unavailable; please try again",
                    retryable=True,
                    cause=e.cause,
                ))
            case Error(e):
                return Error(e)
            case Ok(handle):
                pass

        if handle.amount != session.amount_due or handle.currency.upper() != session.currency:
            await self._void(handle)
            return Error(CheckoutError(
                K.INTEGRITY,
                f"Hold of {handle.amount} {handle.currency} does not match {session.amount_due} {session.currency}",
            ))

        if handle.expires_at is None:
            handle = replace(handle, expires_at=self._clock() + self._policy.authorization_ttl)
        return Ok(handle)

    async def _confirm_once(self, handle: AuthorizationHandle) -> Result[SettlementResult, CheckoutError]:
        match await self._call("server_confirm", lambda: self._gateway.server_confirm(handle)):
            case Error(e):
                return Error(e)
            case Ok(settlement) if settlement.status is SettlementStatus.SUCCEEDED:
                return Ok(settlement)
            case Ok(settlement) if settlement.status is SettlementStatus.PENDING:
                return Error(CheckoutError(K.GATEWAY_UNAVAILABLE, "Settlement still pending"))
            case Ok(settlement):
                reason = settlement.failure_reason or "settlement failed"
                return Error(CheckoutError(K.GATEWAY_REJECTED, f"Payment declined: {reason}"))

    async def _materialize(
        self,
        session: CheckoutSession,
        settlement: SettlementResult,
    ) -> Result[CheckoutSession, CheckoutError]:
        log = logger.bind(session_id=session.id, transaction_id=settlement.transaction_id)

        result: Result[Order, CheckoutError] = await retry_result(
            lambda: bounded(
                lambda: self._materializer.create_order(
                    session.cart_snapshot,
                    settlement,
                    session.delivery_address,
                    idempotency_key=session.id,
                ),
                self._policy.call_timeout,
                on_error=lambda e: CheckoutError(
                    K.STORE_UNAVAILABLE, f"Order store unavailable: {e}", retryable=True, cause=e,
                ),
            ),
            self._policy.materialization_backoff,
            retry_on=lambda e: True,
            op="create_order",
        )

        match result:
            case Error(e):
                log.error("checkout_order_missing", error=e.message)
                if not session.escalated:
                    match await self._persist(session.updated(now=self._clock(), escalated=True)):
                        case Ok(escalated):
                            session = escalated
                        case Error(pe):
                            log.error("checkout_escalation_not_recorded", error=pe.message)
                    await self._escalate(session, ReconciliationReason.ORDER_MISSING, e.message)
                return Error(CheckoutError(
                    K.RECONCILIATION,
                    "Payment received; your order is being finalised",
                    payment_captured=True,
                    cause=e.cause,
                ))
            case Ok(order):
                pass

        match await self._advance(session, S.COMMITTED, order=order):
            case Error(e):
                log.error("checkout_commit_not_recorded", order_number=order.order_number, error=e.message)
                return Error(replace(e, payment_captured=True))
            case Ok(committed):
                pass

        log.info("checkout_committed", order_number=order.order_number, amount=str(order.total_amount))
        await self._clear_cart(committed)
        return Ok(committed)

    # ───────────────────────────────────────────────────────────────────────────
    # Helpers
    # ───────────────────────────────────────────────────────────────────────────

    def _call[T](self, op: str, fn: Callable[[], Awaitable[T]]) -> LazyCoroResult[T, CheckoutError]:
        return bounded(fn, self._policy.call_timeout, on_error=lambda e: _classify(op, e))

    async def _reload(self, key: str) -> Result[CheckoutSession | None, CheckoutError]:
        match await self._sessions.get(key):
            case Error(e):
                return Error(_store_error(e))
            case Ok(None):
                return Ok(None)
            case Ok(existing):
                logger.info("checkout_reloaded", session_id=key, status=existing.status.value)
                return Ok(existing)

    def _draft_window(self) -> timedelta:
        """Longest a healthy begin() can spend placing its hold."""
        backoff = self._policy.authorization_backoff
        return (self._policy.call_timeout + timedelta(seconds=backoff.maximum)) * backoff.attempts

    def _track_cart(self, key: str, cart: CartStore) -> None:
        now = self._clock()
        # Sessions never settled leave entries behind; drop them once their hold is past
        for stale in [k for k, (_, until) in self._checkout_carts.items() if until <= now]:
            del self._checkout_carts[stale]
        self._checkout_carts[key] = (cart, now + self._policy.authorization_ttl)

    async def _persist(self, session: CheckoutSession) -> Result[CheckoutSession, CheckoutError]:
        match await self._sessions.save(session):
            case Error(e):
                return Error(_store_error(e))
            case Ok(False):
                return Error(CheckoutError(
                    K.CONFLICT,
                    f"Checkout {session.id} changed concurrently",
                    retryable=True,
                ))
            case Ok(True):
                return Ok(session)

    async def _advance(
        self,
        session: CheckoutSession,
        target: CheckoutStatus,
        **changes: object,
    ) -> Result[CheckoutSession, CheckoutError]:
        match session.transition(target, now=self._clock(), **changes):
            case Error(e):
                return Error(e)
            case Ok(moved):
                return await self._persist(moved)

    async def _fail(
        self,
        session: CheckoutSession,
        error: CheckoutError,
        **changes: object,
    ) -> CheckoutSession:
        """Move to FAILED; the error still reaches the caller if this write fails."""
        self._checkout_carts.pop(session.id, None)
        failure = CheckoutFailure(kind=error.kind, message=error.message)
        match await self._advance(session, S.FAILED, failure=failure, **changes):
            case Ok(failed):
                logger.info("checkout_failed", session_id=session.id, kind=error.kind.value, error=error.message)
                return failed
            case Error(e):
                logger.error(
                    "checkout_failure_not_recorded",
                    session_id=session.id,
                    kind=error.kind.value,
                    error=e.message,
                )
                return session

    async def _reject(
        self,
        session: CheckoutSession,
        error: CheckoutError,
    ) -> Result[CheckoutSession, CheckoutError]:
        await self._void(session.authorization)
        await self._fail(session, error)
        return Error(error)

    async def _void(self, handle: AuthorizationHandle | None) -> None:
        if handle is None:
            return
        match await self._call("void", lambda: self._gateway.void(handle)):
            case Error(e):
                # The hold lapses at expires_at anyway
                logger.warning("authorization_void_failed", handle_id=handle.handle_id, error=e.message)
            case Ok(_):
                logger.info("authorization_voided", handle_id=handle.handle_id)

    async def _escalate(self, session: CheckoutSession, reason: ReconciliationReason, detail: str) -> None:
        settlement = session.settlement
        entry = ReconciliationEntry(
            session_id=session.id,
            owner_key=session.owner_key,
            reason=reason,
            amount=settlement.amount if settlement is not None else session.amount_due,
            currency=session.currency,
            handle_id=session.authorization.handle_id if session.authorization else None,
            transaction_id=settlement.transaction_id if settlement is not None else None,
            detail=detail,
            created_at=self._clock(),
        )
        match await catching_async(lambda: self._reconciliation.escalate(entry), on_error=str):
            case Error(e):
                logger.critical(
                    "reconciliation_unreachable",
                    session_id=session.id,
                    reason=reason.value,
                    amount=str(entry.amount),
                    error=e,
                )
            case Ok(_):
                pass

    async def _clear_cart(self, session: CheckoutSession) -> None:
        tracked = self._checkout_carts.pop(session.id, None)
        cart = tracked[0] if tracked is not None else None
        if cart is None and self._carts is not None:
            cart = self._carts.for_owner(session.owner_key, OwnerMode.AUTHENTICATED)
        if cart is None:
            logger.warning("checkout_cart_unknown", session_id=session.id, owner_key=session.owner_key)
            return

        match await cart.clear():
            case Error(e):
                # The order stands; the customer can empty the cart by hand
                logger.error("cart_clear_failed", session_id=session.id, owner_key=session.owner_key, error=e.message)
            case Ok(_):
                logger.info("cart_cleared", session_id=session.id, owner_key=session.owner_key)


__all__ = ("CheckoutOrchestrator",)
