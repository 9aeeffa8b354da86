import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from tableside.exceptions import (
    InactiveTableError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from tableside.models import Order, OrderCounter, OrderKind, OrderStatus, PaymentStatus, Table, TableStatus
from tableside.services import OrderLifecycleManager, OwnerRef, TRANSITIONS, can_transition
from tableside.services.catalog import BaseProductCatalog, ProductSnapshot
from tableside.services.pricing import LineRequest


# Shortest path from pending to each status
PATH_TO = {
    OrderStatus.PENDING: [],
    OrderStatus.CONFIRMED: [OrderStatus.CONFIRMED],
    OrderStatus.IN_PREPARATION: [OrderStatus.CONFIRMED, OrderStatus.IN_PREPARATION],
    OrderStatus.READY: [OrderStatus.CONFIRMED, OrderStatus.IN_PREPARATION, OrderStatus.READY],
    OrderStatus.OUT_FOR_DELIVERY: [
        OrderStatus.CONFIRMED,
        OrderStatus.IN_PREPARATION,
        OrderStatus.READY,
        OrderStatus.OUT_FOR_DELIVERY,
    ],
    OrderStatus.DELIVERED: [
        OrderStatus.CONFIRMED,
        OrderStatus.IN_PREPARATION,
        OrderStatus.READY,
        OrderStatus.DELIVERED,
    ],
    OrderStatus.CANCELLED: [OrderStatus.CANCELLED],
}

ALL_PAIRS = [(current, target) for current in OrderStatus for target in OrderStatus]
VALID_PAIRS = [pair for pair in ALL_PAIRS if can_transition(*pair)]
INVALID_PAIRS = [pair for pair in ALL_PAIRS if not can_transition(*pair)]


class StaticCatalog(BaseProductCatalog):
    """In-memory catalog for tests that bypass the products table."""

    def __init__(self, products):
        self.products = {p.id: p for p in products}

    @property
    def provider_name(self) -> str:
        return "static"

    async def get_products(self, ids, db=None):
        return {i: self.products[i] for i in ids if i in self.products}


@pytest.fixture
def place(run, orders, menu, tables):
    """Place a dine-in order at table 7 and return it."""

    async def _place(*lines, owner=None, **kwargs):
        lines = lines or (LineRequest("prod-burger", 2), LineRequest("prod-fries", 1))
        return await run(
            orders.create,
            owner=owner or OwnerRef.anonymous(qr_token="qr-table-7"),
            lines=list(lines),
            **kwargs,
        )

    return _place


@pytest.fixture
def drive(run, orders):
    """Walk an order forward to the given status."""

    async def _drive(order, status):
        for step in PATH_TO[status]:
            order = await run(orders.transition_status, order.id, step)
        return order

    return _drive


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(OrderStatus)

    def test_terminal_states_have_no_exits(self):
        assert TRANSITIONS[OrderStatus.DELIVERED] == frozenset()
        assert TRANSITIONS[OrderStatus.CANCELLED] == frozenset()

    def test_ready_cannot_be_cancelled(self):
        assert not can_transition(OrderStatus.READY, OrderStatus.CANCELLED)


class TestCreateOrder:
    async def test_prices_and_persists_dine_in_order(self, place, fetch):
        order = await place()

        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.order_kind == OrderKind.DINE_IN
        assert order.table_id == "table-7"
        assert order.customer_account_id is None
        assert order.subtotal == Decimal("25.00")
        assert order.service_fee == Decimal("2.50")
        assert order.delivery_fee == Decimal("0.00")
        assert order.total == Decimal("27.50")
        assert [(line.product_name, line.quantity) for line in order.lines] == [("Burger", 2), ("Fries", 1)]

        stored = await fetch(Order, order.id)
        assert stored.total == Decimal("27.50")

    async def test_order_numbers_are_sequential(self, place):
        numbers = [(await place()).order_number for _ in range(3)]

        assert numbers == [1, 2, 3]

    async def test_dine_in_order_occupies_free_table(self, place, fetch):
        await place()

        table = await fetch(Table, "table-7")
        assert table.status == TableStatus.OCCUPIED

    async def test_occupied_table_accepts_more_orders(self, place):
        await place()
        second = await place(LineRequest("prod-soda", 1))

        assert second.table_id == "table-7"

    async def test_account_holder_at_table_aggregates_on_table(self, place):
        order = await place(owner=OwnerRef.authenticated("customer-42", table_id="table-7"))

        assert order.customer_account_id == "customer-42"
        assert order.table_id == "table-7"

    async def test_delivery_order_with_fee(self, place):
        order = await place(
            LineRequest("prod-burger", 1),
            owner=OwnerRef.authenticated("customer-42"),
            kind=OrderKind.DELIVERY,
            delivery_fee=Decimal("7.00"),
            delivery_address="Rua das Flores, 123",
        )

        assert order.table_id is None
        assert order.total == Decimal("18.00")
        assert order.delivery_address == "Rua das Flores, 123"

    async def test_pickup_ignores_delivery_address(self, place):
        order = await place(
            owner=OwnerRef.authenticated("customer-42"),
            kind=OrderKind.PICKUP,
            delivery_address="Rua das Flores, 123",
        )

        assert order.delivery_address is None

    async def test_anonymous_order_needs_table(self, place):
        with pytest.raises(ValidationError):
            await place(owner=OwnerRef())

    async def test_table_order_must_be_dine_in(self, place):
        with pytest.raises(ValidationError):
            await place(kind=OrderKind.DELIVERY)

    async def test_delivery_fee_only_on_delivery(self, place):
        with pytest.raises(ValidationError):
            await place(delivery_fee=Decimal("5.00"))

    async def test_zero_quantity_rejected(self, place):
        with pytest.raises(ValidationError):
            await place(LineRequest("prod-burger", 0))

    async def test_unknown_product(self, place):
        with pytest.raises(NotFoundError) as exc_info:
            await place(LineRequest("prod-burger", 1), LineRequest("prod-nope", 1))

        assert exc_info.value.entity == "Product"

    async def test_unavailable_product_is_not_found(self, place):
        with pytest.raises(NotFoundError):
            await place(LineRequest("prod-retired", 1))

    async def test_stale_qr_token(self, place):
        with pytest.raises(NotFoundError):
            await place(owner=OwnerRef.anonymous(qr_token="qr-made-up"))

    async def test_inactive_table(self, place):
        with pytest.raises(InactiveTableError):
            await place(owner=OwnerRef.anonymous(qr_token="qr-table-9"))

    async def test_token_and_table_must_match(self, place):
        with pytest.raises(ValidationError):
            await place(owner=OwnerRef.anonymous(table_id="table-8", qr_token="qr-table-7"))

    async def test_failed_write_leaves_nothing_behind(self, settings, run, session_maker, fetch, tables):
        """A failure after the number and table were touched rolls everything back."""
        broken = StaticCatalog([ProductSnapshot(id="p1", name=None, unit_price=Decimal("9.90"))])
        manager = OrderLifecycleManager(settings, catalog=broken)

        with pytest.raises(IntegrityError):
            await run(manager.create, owner=OwnerRef.anonymous(qr_token="qr-table-7"), lines=[LineRequest("p1", 1)])

        async with session_maker() as session:
            assert await session.scalar(select(func.count(Order.id))) == 0
            counter = await session.get(OrderCounter, OrderCounter.ORDERS)
            assert counter.value == 0
        assert (await fetch(Table, "table-7")).status == TableStatus.FREE

    async def test_missing_order_counter_is_an_error(self, run, orders, session_maker, fetch, menu, tables):
        async with session_maker() as session:
            async with session.begin():
                await session.delete(await session.get(OrderCounter, OrderCounter.ORDERS))

        with pytest.raises(RuntimeError, match="not seeded"):
            await run(
                orders.create,
                owner=OwnerRef.anonymous(qr_token="qr-table-7"),
                lines=[LineRequest("prod-burger", 1)],
            )

        async with session_maker() as session:
            assert await session.scalar(select(func.count(Order.id))) == 0
            assert await session.get(OrderCounter, OrderCounter.ORDERS) is None
        assert (await fetch(Table, "table-7")).status == TableStatus.FREE

    async def test_external_catalog(self, settings, run, tables):
        catalog = StaticCatalog([ProductSnapshot(id="ext-1", name="Açaí", unit_price=Decimal("12.00"))])
        manager = OrderLifecycleManager(settings, catalog=catalog)

        order = await run(
            manager.create, owner=OwnerRef.anonymous(qr_token="qr-table-8"), lines=[LineRequest("ext-1", 1)]
        )

        assert order.lines[0].product_name == "Açaí"
        assert order.total == Decimal("13.20")


class TestTransitionStatus:
    @pytest.mark.parametrize("current, target", VALID_PAIRS)
    async def test_valid_transition(self, place, drive, run, orders, current, target):
        order = await drive(await place(), current)

        updated = await run(orders.transition_status, order.id, target)

        assert updated.status == target

    @pytest.mark.parametrize("current, target", INVALID_PAIRS)
    async def test_invalid_transition_leaves_status(self, place, drive, run, orders, fetch, current, target):
        order = await drive(await place(), current)

        with pytest.raises(InvalidTransitionError):
            await run(orders.transition_status, order.id, target)

        assert (await fetch(Order, order.id)).status == current

    @pytest.mark.parametrize("terminal", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
    async def test_terminal_states_are_absorbing(self, place, drive, run, orders, terminal):
        order = await drive(await place(), terminal)

        for target in OrderStatus:
            with pytest.raises(InvalidTransitionError):
                await run(orders.transition_status, order.id, target)

    async def test_error_names_both_statuses(self, place, run, orders):
        """pending -> delivered is rejected naming pending and delivered."""
        order = await place()

        with pytest.raises(InvalidTransitionError) as exc_info:
            await run(orders.transition_status, order.id, OrderStatus.DELIVERED)

        assert exc_info.value.current == "pending"
        assert exc_info.value.requested == "delivered"
        assert "pending" in str(exc_info.value)
        assert "delivered" in str(exc_info.value)

    async def test_accepts_plain_string_status(self, place, run, orders):
        order = await place()

        updated = await run(orders.transition_status, order.id, "confirmed")

        assert updated.status == OrderStatus.CONFIRMED

    async def test_unknown_order(self, run, orders, tables):
        with pytest.raises(NotFoundError):
            await run(orders.transition_status, "no-such-order", OrderStatus.CONFIRMED)

    async def test_concurrent_transitions_apply_once(self, place, run, orders, fetch):
        """Two devices confirming the same order: exactly one wins."""
        order = await place()

        results = await asyncio.gather(
            run(orders.transition_status, order.id, OrderStatus.CONFIRMED),
            run(orders.transition_status, order.id, OrderStatus.CONFIRMED),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, Order)]
        losers = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].current == "confirmed"
        assert (await fetch(Order, order.id)).status == OrderStatus.CONFIRMED


class TestCancel:
    @pytest.mark.parametrize("current", [OrderStatus.PENDING, OrderStatus.CONFIRMED])
    async def test_cancel_before_preparation(self, place, drive, run, orders, current):
        order = await drive(await place(), current)

        cancelled = await run(orders.cancel, order.id, requester="customer")

        assert cancelled.status == OrderStatus.CANCELLED

    @pytest.mark.parametrize(
        "current",
        [OrderStatus.IN_PREPARATION, OrderStatus.READY, OrderStatus.DELIVERED, OrderStatus.CANCELLED],
    )
    async def test_cancel_later_is_rejected(self, place, drive, run, orders, fetch, current):
        order = await drive(await place(), current)

        with pytest.raises(InvalidStateError):
            await run(orders.cancel, order.id, requester="customer")

        assert (await fetch(Order, order.id)).status == current

    async def test_staff_can_still_cancel_in_preparation(self, place, drive, run, orders):
        order = await drive(await place(), OrderStatus.IN_PREPARATION)

        cancelled = await run(orders.transition_status, order.id, OrderStatus.CANCELLED)

        assert cancelled.status == OrderStatus.CANCELLED


class TestQueries:
    async def test_get_and_get_by_number(self, place, run, orders):
        order = await place()

        assert (await run(orders.get, order.id)).order_number == order.order_number
        assert (await run(orders.get_by_number, order.order_number)).id == order.id

    async def test_get_by_unknown_number(self, run, orders, tables):
        with pytest.raises(NotFoundError):
            await run(orders.get_by_number, 999)

    async def test_list_newest_first_with_filter(self, place, run, orders):
        first = await place()
        second = await place()
        await run(orders.cancel, first.id, requester="staff")

        total, page = await run(orders.list_orders)
        assert total == 2
        assert [o.id for o in page] == [second.id, first.id]

        total, page = await run(orders.list_orders, status=OrderStatus.CANCELLED)
        assert total == 1
        assert page[0].id == first.id

    async def test_list_for_customer(self, place, run, orders):
        mine = await place(owner=OwnerRef.authenticated("customer-42", table_id="table-7"))
        await place()

        result = await run(orders.list_for_customer, "customer-42")

        assert [o.id for o in result] == [mine.id]

    async def test_statistics(self, place, drive, run, orders):
        kept = await place()
        cancelled = await place()
        await drive(await place(LineRequest("prod-soda", 1)), OrderStatus.IN_PREPARATION)
        await run(orders.cancel, cancelled.id, requester="staff")

        stats = await run(orders.statistics)

        assert stats["total_orders"] == 3
        assert stats["pending"] == 1
        assert stats["in_preparation"] == 1
        assert stats["cancelled"] == 1
        assert stats["delivered"] == 0
        assert stats["total_value"] == kept.total + Decimal("3.69")
