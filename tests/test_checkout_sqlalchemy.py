"""End-to-end checkout over SQLAlchemy storage (SQLite file database)."""

import asyncio
from decimal import Decimal

from _support import ADDRESS, CUSTOMER, PRICES, FakeClock, fast_policy, ok, run

from cartflow.cart import OwnerMode, SQLAlchemyCartBackend, merge_carts, MemoryCartBackend
from cartflow.checkout import (
    CheckoutOrchestrator,
    CheckoutStatus,
    FakeGateway,
    MemoryAddressBook,
    MemoryReconciliationQueue,
    SQLAlchemyOrderMaterializer,
    SQLAlchemySessionStore,
    StaticPriceSource,
)
from cartflow.db import create_database


def _orchestrator(factory, gateway, carts, clock) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        sessions=SQLAlchemySessionStore(factory),
        gateway=gateway,
        materializer=SQLAlchemyOrderMaterializer(factory, clock=clock),
        prices=StaticPriceSource(PRICES),
        addresses=MemoryAddressBook({CUSTOMER.account_id: ADDRESS}),
        reconciliation=MemoryReconciliationQueue(),
        carts=carts,
        policy=fast_policy(),
        clock=clock,
    )


class TestDurableCheckout:
    def test_guest_to_order(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}"
        clock = FakeClock()
        gateway = FakeGateway(clock=clock, hang_seconds=5.0)

        async def main():
            factory, engine = await create_database(url)
            try:
                carts = SQLAlchemyCartBackend(factory, clock=clock)
                account = carts.for_owner(CUSTOMER.account_id, OwnerMode.AUTHENTICATED)
                ok(await account.add("sku2", 1, "5.00"))

                # Guest fills a device cart, then signs in
                device = MemoryCartBackend(clock=clock).for_owner(CUSTOMER.device_id)
                ok(await device.add("sku1", 3, "10.00"))
                merged = ok(await merge_carts(device, account))

                web = _orchestrator(factory, gateway, carts, clock)
                session = ok(await web.begin(CUSTOMER, account, idempotency_key="co-1"))
                client = await gateway.client_confirm(session.authorization, "pm_card_visa")
                ok(await web.authorize(session.id, client))

                # Another process finishes settlement
                worker = _orchestrator(factory, gateway, carts, clock)
                gateway.hang("server_confirm", times=3)
                committed = ok(await worker.settle("co-1"))
                again = ok(await web.settle("co-1"))

                orders = SQLAlchemyOrderMaterializer(factory)
                return (
                    merged,
                    session,
                    committed,
                    again,
                    await orders.count(),
                    await orders.get("co-1"),
                    ok(await account.load()),
                )
            finally:
                await engine.dispose()

        merged, session, committed, again, count, order, cart = run(main())
        assert merged.state.quantities() == {"sku2": 1, "sku1": 3}
        assert session.amount_due == Decimal("35.00")
        assert committed.status is CheckoutStatus.COMMITTED
        assert again == committed
        assert count == 1
        assert order == committed.order
        assert order.total_amount == Decimal("35.00")
        assert cart.is_empty
        assert gateway.count("server_confirm") == 4

    def test_double_click_places_one_hold(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}"
        clock = FakeClock()
        gateway = FakeGateway(clock=clock, hang_seconds=5.0)

        async def main():
            factory, engine = await create_database(url)
            try:
                carts = SQLAlchemyCartBackend(factory, clock=clock)
                account = carts.for_owner(CUSTOMER.account_id, OwnerMode.AUTHENTICATED)
                ok(await account.add("sku1", 2, "10.00"))

                web = _orchestrator(factory, gateway, carts, clock)
                first, second = await asyncio.gather(
                    web.begin(CUSTOMER, account),
                    web.begin(CUSTOMER, account),
                )
                return ok(first), ok(second)
            finally:
                await engine.dispose()

        first, second = run(main())
        assert first.id == second.id
        assert first.status is CheckoutStatus.AWAITING_AUTHORIZATION
        assert gateway.count("create_authorization") == 1
