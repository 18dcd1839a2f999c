"""
SQLAlchemy integration — durable checkout sessions and orders.

Tables:
    checkout_sessions  one row per session; `revision` guards writers
    orders             one row per idempotency key (the session id)

Both inserts are `INSERT ... ON CONFLICT DO NOTHING`, so two racing
writers with one key leave exactly one row; the loser reads it back.

Usage:
    session_factory, engine = await create_database(url)
    sessions = SQLAlchemySessionStore(session_factory)
    orders = SQLAlchemyOrderMaterializer(session_factory, currency="USD")
"""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from typing import Any, cast

from kungfu import Result, Ok, Error
from sqlalchemy import Boolean, DateTime, Integer, String, Text, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from cartflow._types import Clock, utcnow
from cartflow.db import Base, to_cents, from_cents, as_utc
from cartflow.cart import CartLineItem, CartState, OwnerMode
from cartflow.checkout._materializer import build_order
from cartflow.checkout._sessions import StoreError
from cartflow.checkout._types import (
    AuthorizationHandle,
    CheckoutErrorKind,
    CheckoutFailure,
    CheckoutSession,
    CheckoutStatus,
    DeliveryAddress,
    Order,
    OrderStatus,
    Quote,
    SettlementResult,
    SettlementStatus,
)

_OPEN = tuple(status.value for status in CheckoutStatus if not status.is_terminal)


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotency Mixin
# ═══════════════════════════════════════════════════════════════════════════════


class IdempotencyKeyMixin:
    """
    Unique idempotency key column for tables written at-most-once.

    Example:
        class OrderTable(Base, IdempotencyKeyMixin):
            __tablename__ = "orders"
            id: Mapped[str] = mapped_column(primary_key=True)
    """

    idempotency_key: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Tables
# ═══════════════════════════════════════════════════════════════════════════════


class CheckoutSessionTable(Base):
    __tablename__ = "checkout_sessions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_due_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Snapshot, quote, address and gateway results as JSON
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderTable(Base, IdempotencyKeyMixin):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    owner_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    line_items: Mapped[str] = mapped_column(Text, nullable=False)
    delivery_address: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _insert_for(session: AsyncSession, table: type[Base]) -> Any:
    """Dialect insert with ON CONFLICT support."""
    dialect = session.bind.dialect.name if session.bind is not None else "sqlite"
    if dialect == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


# ═══════════════════════════════════════════════════════════════════════════════
# JSON Codec
# ═══════════════════════════════════════════════════════════════════════════════


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return as_utc(datetime.fromisoformat(value)) if value is not None else None


def _lines_to_json(items: tuple[CartLineItem, ...]) -> list[dict[str, Any]]:
    return [
        {
            "product_id": item.product_id,
            "unit_price_cents": to_cents(item.unit_price),
            "quantity": item.quantity,
            "display_name": item.display_name,
            "image_ref": item.image_ref,
        }
        for item in items
    ]


def _lines_from_json(data: list[dict[str, Any]]) -> tuple[CartLineItem, ...]:
    return tuple(
        CartLineItem(
            product_id=d["product_id"],
            unit_price=from_cents(d["unit_price_cents"]),
            quantity=d["quantity"],
            display_name=d.get("display_name", ""),
            image_ref=d.get("image_ref", ""),
        )
        for d in data
    )


def _order_to_json(order: Order) -> dict[str, Any]:
    return {
        "order_id": order.order_id,
        "order_number": order.order_number,
        "owner_key": order.owner_key,
        "line_items": _lines_to_json(order.line_items),
        "total_cents": to_cents(order.total_amount),
        "currency": order.currency,
        "status": order.status.value,
        "transaction_id": order.transaction_id,
        "delivery_address": asdict(order.delivery_address),
        "idempotency_key": order.idempotency_key,
        "created_at": _dt(order.created_at),
    }


def _order_from_json(d: dict[str, Any]) -> Order:
    return Order(
        order_id=d["order_id"],
        order_number=d["order_number"],
        owner_key=d["owner_key"],
        line_items=_lines_from_json(d["line_items"]),
        total_amount=from_cents(d["total_cents"]),
        currency=d["currency"],
        status=OrderStatus(d["status"]),
        transaction_id=d["transaction_id"],
        delivery_address=DeliveryAddress(**d["delivery_address"]),
        idempotency_key=d["idempotency_key"],
        created_at=cast(datetime, _parse_dt(d["created_at"])),
    )


def _payload(s: CheckoutSession) -> str:
    snapshot = s.cart_snapshot
    handle = s.authorization
    settlement = s.settlement
    return json.dumps({
        "snapshot": {
            "owner_key": snapshot.owner_key,
            "owner_mode": snapshot.owner_mode.value,
            "cart_id": snapshot.cart_id,
            "version": snapshot.version,
            "last_mutated_at": _dt(snapshot.last_mutated_at),
            "items": _lines_to_json(snapshot.items),
        },
        "quote": {
            "subtotal": to_cents(s.quote.subtotal),
            "shipping": to_cents(s.quote.shipping),
            "tax": to_cents(s.quote.tax),
            "amount_due": to_cents(s.quote.amount_due),
        },
        "delivery_address": asdict(s.delivery_address),
        "authorization": None if handle is None else {
            "handle_id": handle.handle_id,
            "amount_cents": to_cents(handle.amount),
            "currency": handle.currency,
            "expires_at": _dt(handle.expires_at),
            "client_secret": handle.client_secret,
        },
        "settlement": None if settlement is None else {
            "handle_id": settlement.handle_id,
            "status": settlement.status.value,
            "amount_cents": to_cents(settlement.amount),
            "transaction_id": settlement.transaction_id,
            "failure_reason": settlement.failure_reason,
        },
        "order": None if s.order is None else _order_to_json(s.order),
        "failure": None if s.failure is None else {
            "kind": s.failure.kind.value,
            "message": s.failure.message,
        },
    })


def _to_session(row: CheckoutSessionTable) -> CheckoutSession:
    data = json.loads(row.payload)
    snap = data["snapshot"]
    q = data["quote"]
    auth = data["authorization"]
    settled = data["settlement"]
    failure = data["failure"]

    return CheckoutSession(
        id=row.id,
        owner_key=row.owner_key,
        status=CheckoutStatus(row.status),
        cart_snapshot=CartState(
            owner_key=snap["owner_key"],
            owner_mode=OwnerMode(snap["owner_mode"]),
            cart_id=snap["cart_id"],
            items=_lines_from_json(snap["items"]),
            version=snap["version"],
            last_mutated_at=_parse_dt(snap["last_mutated_at"]),
        ),
        fingerprint=row.fingerprint,
        quote=Quote(
            subtotal=from_cents(q["subtotal"]),
            shipping=from_cents(q["shipping"]),
            tax=from_cents(q["tax"]),
            amount_due=from_cents(q["amount_due"]),
        ),
        currency=row.currency,
        delivery_address=DeliveryAddress(**data["delivery_address"]),
        created_at=cast(datetime, as_utc(row.created_at)),
        updated_at=cast(datetime, as_utc(row.updated_at)),
        authorization=None if auth is None else AuthorizationHandle(
            handle_id=auth["handle_id"],
            amount=from_cents(auth["amount_cents"]),
            currency=auth["currency"],
            expires_at=_parse_dt(auth["expires_at"]),
            client_secret=auth["client_secret"],
        ),
        settlement=None if settled is None else SettlementResult(
            handle_id=settled["handle_id"],
            status=SettlementStatus(settled["status"]),
            amount=from_cents(settled["amount_cents"]),
            transaction_id=settled["transaction_id"],
            failure_reason=settled["failure_reason"],
        ),
        order=None if data["order"] is None else _order_from_json(data["order"]),
        failure=None if failure is None else CheckoutFailure(
            kind=CheckoutErrorKind(failure["kind"]),
            message=failure["message"],
        ),
        escalated=row.escalated,
        revision=row.revision,
    )


def _row_values(s: CheckoutSession) -> dict[str, Any]:
    return {
        "owner_key": s.owner_key,
        "status": s.status.value,
        "revision": s.revision,
        "fingerprint": s.fingerprint,
        "amount_due_cents": to_cents(s.amount_due),
        "currency": s.currency,
        "escalated": s.escalated,
        "payload": _payload(s),
        "updated_at": s.updated_at,
    }


# ═══════════════════════════════════════════════════════════════════════════════
# Session Store
# ═══════════════════════════════════════════════════════════════════════════════


class SQLAlchemySessionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> Result[CheckoutSession | None, StoreError]:
        try:
            async with self._session_factory() as session:
                row = await session.get(CheckoutSessionTable, key)
                return Ok(_to_session(row) if row is not None else None)
        except Exception as e:
            return Error(StoreError(f"Failed to get: {e}", e))

    async def insert(self, checkout: CheckoutSession) -> Result[bool, StoreError]:
        try:
            async with self._session_factory() as session:
                stmt = (
                    _insert_for(session, CheckoutSessionTable)
                    .values(id=checkout.id, created_at=checkout.created_at, **_row_values(checkout))
                    .on_conflict_do_nothing(index_elements=["id"])
                )
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()
                return Ok(cursor.rowcount > 0)
        except Exception as e:
            return Error(StoreError(f"Failed to insert: {e}", e))

    async def save(self, checkout: CheckoutSession) -> Result[bool, StoreError]:
        try:
            async with self._session_factory() as session:
                cursor = cast(CursorResult[Any], await session.execute(
                    update(CheckoutSessionTable)
                    .where(CheckoutSessionTable.id == checkout.id)
                    .where(CheckoutSessionTable.revision == checkout.revision - 1)
                    .values(**_row_values(checkout))
                ))
                await session.commit()
                return Ok(cursor.rowcount > 0)
        except Exception as e:
            return Error(StoreError(f"Failed to save: {e}", e))

    async def find_open(self, owner_key: str) -> Result[tuple[CheckoutSession, ...], StoreError]:
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(CheckoutSessionTable)
                        .where(CheckoutSessionTable.owner_key == owner_key)
                        .where(CheckoutSessionTable.status.in_(_OPEN))
                        .order_by(CheckoutSessionTable.created_at)
                    )
                ).scalars().all()
                return Ok(tuple(_to_session(row) for row in rows))
        except Exception as e:
            return Error(StoreError(f"Failed to find open sessions: {e}", e))


# ═══════════════════════════════════════════════════════════════════════════════
# Order Materializer
# ═══════════════════════════════════════════════════════════════════════════════


class SQLAlchemyOrderMaterializer:
    """
    Orders table writer.

    Raises on database errors; the orchestrator retries and escalates.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        currency: str = "USD",
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._currency = currency
        self._clock = clock

    async def create_order(
        self,
        snapshot: CartState,
        settlement: SettlementResult,
        address: DeliveryAddress,
        *,
        idempotency_key: str,
    ) -> Order:
        order = build_order(
            snapshot,
            settlement,
            address,
            idempotency_key=idempotency_key,
            currency=self._currency,
            clock=self._clock,
        )
        async with self._session_factory() as session:
            stmt = (
                _insert_for(session, OrderTable)
                .values(
                    id=order.order_id,
                    idempotency_key=idempotency_key,
                    order_number=order.order_number,
                    owner_key=order.owner_key,
                    total_cents=to_cents(order.total_amount),
                    currency=order.currency,
                    status=order.status.value,
                    transaction_id=order.transaction_id,
                    line_items=json.dumps(_lines_to_json(order.line_items)),
                    delivery_address=json.dumps(asdict(order.delivery_address)),
                    created_at=order.created_at,
                )
                .on_conflict_do_nothing(index_elements=["idempotency_key"])
            )
            await session.execute(stmt)
            await session.commit()

            row = (
                await session.execute(select(OrderTable).where(OrderTable.idempotency_key == idempotency_key))
            ).scalar_one()
            return _order_from_row(row)

    async def get(self, idempotency_key: str) -> Order | None:
        async with self._session_factory() as session:
            row = (
                await session.execute(select(OrderTable).where(OrderTable.idempotency_key == idempotency_key))
            ).scalar_one_or_none()
            return _order_from_row(row) if row is not None else None

    async def count(self) -> int:
        async with self._session_factory() as session:
            return len((await session.execute(select(OrderTable.id))).all())


def _order_from_row(row: OrderTable) -> Order:
    return Order(
        order_id=row.id,
        order_number=row.order_number,
        owner_key=row.owner_key,
        line_items=_lines_from_json(json.loads(row.line_items)),
        total_amount=from_cents(row.total_cents),
        currency=row.currency,
        status=OrderStatus(row.status),
        transaction_id=row.transaction_id,
        delivery_address=DeliveryAddress(**json.loads(row.delivery_address)),
        idempotency_key=row.idempotency_key,
        created_at=cast(datetime, as_utc(row.created_at)),
    )


__all__ = (
    "IdempotencyKeyMixin",
    "CheckoutSessionTable",
    "OrderTable",
    "SQLAlchemySessionStore",
    "SQLAlchemyOrderMaterializer",
)
