"""
Checkout types — session state machine, gateway values, orders, errors.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum, auto

from kungfu import Result, Ok, Error

from cartflow.cart import CartState, CartLineItem

# ═══════════════════════════════════════════════════════════════════════════════
# Status & Transitions
# ═══════════════════════════════════════════════════════════════════════════════


class CheckoutStatus(Enum):
    DRAFT = "draft"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    AWAITING_SERVER_CONFIRMATION = "awaiting_server_confirmation"
    COMMITTED = "committed"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self]


TRANSITIONS: dict[CheckoutStatus, frozenset[CheckoutStatus]] = {
    CheckoutStatus.DRAFT: frozenset({
        CheckoutStatus.AWAITING_AUTHORIZATION,
        CheckoutStatus.FAILED,
        CheckoutStatus.ABANDONED,
    }),
    CheckoutStatus.AWAITING_AUTHORIZATION: frozenset({
        CheckoutStatus.AWAITING_SERVER_CONFIRMATION,
        CheckoutStatus.FAILED,
        CheckoutStatus.ABANDONED,
    }),
    CheckoutStatus.AWAITING_SERVER_CONFIRMATION: frozenset({
        CheckoutStatus.COMMITTED,
        CheckoutStatus.FAILED,
    }),
    CheckoutStatus.COMMITTED: frozenset(),
    CheckoutStatus.FAILED: frozenset(),
    CheckoutStatus.ABANDONED: frozenset(),
}


def can_transition(source: CheckoutStatus, target: CheckoutStatus) -> bool:
    return target in TRANSITIONS[source]


# ═══════════════════════════════════════════════════════════════════════════════
# Address & Quote
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class DeliveryAddress:
    first_name: str
    last_name: str
    line1: str
    city: str
    postal_code: str
    country: str
    line2: str = ""
    region: str = ""
    phone: str = ""


@dataclass(frozen=True, slots=True)
class Quote:
    """Server-side price of a snapshot. All amounts in cents precision."""

    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    amount_due: Decimal


# ═══════════════════════════════════════════════════════════════════════════════
# Gateway Values
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class AuthorizationHandle:
    """Opaque gateway hold, scoped to one checkout session."""

    handle_id: str
    amount: Decimal
    currency: str
    expires_at: datetime | None = None
    client_secret: str = ""

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class ClientOutcome(Enum):
    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class ClientResult:
    """What the customer's client got back from the gateway."""

    handle_id: str
    outcome: ClientOutcome
    failure_reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome is ClientOutcome.SUCCEEDED


class SettlementStatus(Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SettlementResult:
    handle_id: str
    status: SettlementStatus
    amount: Decimal
    transaction_id: str | None = None
    failure_reason: str = ""


# ═══════════════════════════════════════════════════════════════════════════════
# Order
# ═══════════════════════════════════════════════════════════════════════════════


class OrderStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class Order:
    order_id: str
    order_number: str
    owner_key: str
    line_items: tuple[CartLineItem, ...]
    total_amount: Decimal
    currency: str
    status: OrderStatus
    transaction_id: str | None
    delivery_address: DeliveryAddress
    idempotency_key: str
    created_at: datetime


# ═══════════════════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════════════════


class ErrorCategory(Enum):
    RECOVERABLE_LOCAL = auto()  # Store unavailable, conflicts; try again
    GATEWAY_REJECTED = auto()  # Definitive decline or expiry; cart kept
    GATEWAY_AMBIGUOUS = auto()  # Unknown outcome after retries
    INTEGRITY = auto()  # Money moved, records disagree; escalated
    PRECONDITION = auto()  # Caller must fix something first


class CheckoutErrorKind(Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    ADDRESS_REQUIRED = "address_required"
    EMPTY_CART = "empty_cart"
    PRICE_UNAVAILABLE = "price_unavailable"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    CHECKOUT_IN_PROGRESS = "checkout_in_progress"
    HANDLE_MISMATCH = "handle_mismatch"
    STORE_UNAVAILABLE = "store_unavailable"
    CONFLICT = "conflict"
    GATEWAY_REJECTED = "gateway_rejected"
    AUTHORIZATION_EXPIRED = "authorization_expired"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    SETTLEMENT_UNKNOWN = "settlement_unknown"
    INTEGRITY = "integrity"
    RECONCILIATION = "reconciliation"


_CATEGORIES: dict[CheckoutErrorKind, ErrorCategory] = {
    CheckoutErrorKind.STORE_UNAVAILABLE: ErrorCategory.RECOVERABLE_LOCAL,
    CheckoutErrorKind.CONFLICT: ErrorCategory.RECOVERABLE_LOCAL,
    CheckoutErrorKind.GATEWAY_REJECTED: ErrorCategory.GATEWAY_REJECTED,
    CheckoutErrorKind.AUTHORIZATION_EXPIRED: ErrorCategory.GATEWAY_REJECTED,
    CheckoutErrorKind.GATEWAY_UNAVAILABLE: ErrorCategory.GATEWAY_AMBIGUOUS,
    CheckoutErrorKind.SETTLEMENT_UNKNOWN: ErrorCategory.GATEWAY_AMBIGUOUS,
    CheckoutErrorKind.INTEGRITY: ErrorCategory.INTEGRITY,
    CheckoutErrorKind.RECONCILIATION: ErrorCategory.INTEGRITY,
}


@dataclass(frozen=True, slots=True)
class CheckoutError:
    """
    Checkout operation error.

    retryable: the customer may simply try again.
    payment_captured: money moved; the UI must say the payment succeeded.
    """

    kind: CheckoutErrorKind
    message: str
    retryable: bool = False
    payment_captured: bool = False
    cause: Exception | None = None

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES.get(self.kind, ErrorCategory.PRECONDITION)


@dataclass(frozen=True, slots=True)
class CheckoutFailure:
    """Why a session ended FAILED. Persisted with the session."""

    kind: CheckoutErrorKind
    message: str


# ═══════════════════════════════════════════════════════════════════════════════
# Reconciliation
# ═══════════════════════════════════════════════════════════════════════════════


class ReconciliationReason(Enum):
    SETTLEMENT_UNKNOWN = "settlement_unknown"
    AMOUNT_MISMATCH = "amount_mismatch"
    ORDER_MISSING = "order_missing"


@dataclass(frozen=True, slots=True)
class ReconciliationEntry:
    session_id: str
    owner_key: str
    reason: ReconciliationReason
    amount: Decimal
    currency: str
    handle_id: str | None
    transaction_id: str | None
    detail: str
    created_at: datetime


# ═══════════════════════════════════════════════════════════════════════════════
# Checkout Session
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    """
    One payment attempt.

    cart_snapshot is frozen at begin() and re-priced; every amount the
    gateway sees comes from it, never from the live cart. revision
    increases with each persisted change and guards concurrent writers.
    """

    id: str
    owner_key: str
    status: CheckoutStatus
    cart_snapshot: CartState
    fingerprint: str
    quote: Quote
    currency: str
    delivery_address: DeliveryAddress
    created_at: datetime
    updated_at: datetime
    authorization: AuthorizationHandle | None = None
    settlement: SettlementResult | None = None
    order: Order | None = None
    failure: CheckoutFailure | None = None
    escalated: bool = False
    revision: int = 0

    @property
    def amount_due(self) -> Decimal:
        return self.quote.amount_due

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(
        self,
        target: CheckoutStatus,
        *,
        now: datetime,
        **changes: object,
    ) -> Result[CheckoutSession, CheckoutError]:
        if not can_transition(self.status, target):
            return Error(CheckoutError(
                CheckoutErrorKind.INVALID_TRANSITION,
                f"Cannot move checkout {self.id} from {self.status.value} to {target.value}",
            ))
        return Ok(self.updated(now=now, status=target, **changes))

    def updated(self, *, now: datetime, **changes: object) -> CheckoutSession:
        """Next revision with `changes` applied; status is not checked."""
        return replace(self, updated_at=now, revision=self.revision + 1, **changes)  # type: ignore[arg-type]


__all__ = (
    "CheckoutStatus",
    "TRANSITIONS",
    "can_transition",
    "DeliveryAddress",
    "Quote",
    "AuthorizationHandle",
    "ClientOutcome",
    "ClientResult",
    "SettlementStatus",
    "SettlementResult",
    "OrderStatus",
    "Order",
    "ErrorCategory",
    "CheckoutErrorKind",
    "CheckoutError",
    "CheckoutFailure",
    "ReconciliationReason",
    "ReconciliationEntry",
    "CheckoutSession",
)
