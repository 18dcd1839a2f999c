"""
Checkout — orchestrates payment for a cart snapshot.

    from cartflow import checkout as CO

    orchestrator = CO.CheckoutOrchestrator(
        sessions=CO.MemorySessionStore(),
        gateway=CO.FakeGateway(),
        materializer=CO.MemoryOrderMaterializer(),
        prices=CO.StaticPriceSource({"sku1": "10.00"}),
        addresses=CO.MemoryAddressBook({"acct-1": address}),
        reconciliation=CO.MemoryReconciliationQueue(),
    )
"""

from cartflow.checkout._types import (
    CheckoutStatus,
    TRANSITIONS,
    can_transition,
    DeliveryAddress,
    Quote,
    AuthorizationHandle,
    ClientOutcome,
    ClientResult,
    SettlementStatus,
    SettlementResult,
    OrderStatus,
    Order,
    ErrorCategory,
    CheckoutErrorKind,
    CheckoutError,
    CheckoutFailure,
    ReconciliationReason,
    ReconciliationEntry,
    CheckoutSession,
)
from cartflow.checkout._gateway import (
    GatewayDeclined,
    GatewayUnavailable,
    PaymentGateway,
    GatewayCall,
    FakeGateway,
)
from cartflow.checkout._collaborators import (
    AddressBook,
    MemoryAddressBook,
    PriceSource,
    StaticPriceSource,
    ReconciliationQueue,
    MemoryReconciliationQueue,
)
from cartflow.checkout._materializer import (
    OrderMaterializer,
    new_order_number,
    build_order,
    MemoryOrderMaterializer,
)
from cartflow.checkout._sessions import (
    StoreError,
    SessionStore,
    MemorySessionStore,
)
from cartflow.checkout._sqlalchemy import (
    IdempotencyKeyMixin,
    CheckoutSessionTable,
    OrderTable,
    SQLAlchemySessionStore,
    SQLAlchemyOrderMaterializer,
)
from cartflow.checkout._quote import (
    reprice,
    quote,
    fingerprint,
)
from cartflow.checkout._retry import retry_result
from cartflow.checkout._saga import (
    Compensator,
    SagaStep,
    Then,
    SagaResult,
    SagaError,
    run_step,
    run_compensators,
    run_chain,
)
from cartflow.checkout._orchestrator import CheckoutOrchestrator

__all__ = (
    # Types
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
    # Gateway
    "GatewayDeclined",
    "GatewayUnavailable",
    "PaymentGateway",
    "GatewayCall",
    "FakeGateway",
    # Collaborators
    "AddressBook",
    "MemoryAddressBook",
    "PriceSource",
    "StaticPriceSource",
    "ReconciliationQueue",
    "MemoryReconciliationQueue",
    # Orders
    "OrderMaterializer",
    "new_order_number",
    "build_order",
    "MemoryOrderMaterializer",
    # Sessions
    "StoreError",
    "SessionStore",
    "MemorySessionStore",
    # SQLAlchemy
    "IdempotencyKeyMixin",
    "CheckoutSessionTable",
    "OrderTable",
    "SQLAlchemySessionStore",
    "SQLAlchemyOrderMaterializer",
    # Pricing
    "reprice",
    "quote",
    "fingerprint",
    # Retry & Saga
    "retry_result",
    "Compensator",
    "SagaStep",
    "Then",
    "SagaResult",
    "SagaError",
    "run_step",
    "run_compensators",
    "run_chain",
    # Orchestrator
    "CheckoutOrchestrator",
)
