"""
Order Lifecycle Manager

Creates orders from priced lines and moves them through the status workflow:

    pending          -> confirmed | cancelled
    confirmed        -> in_preparation | cancelled
    in_preparation   -> ready | cancelled
    ready            -> out_for_delivery | delivered
    out_for_delivery -> delivered | cancelled
    delivered        -> (terminal)
    cancelled        -> (terminal)

Status writes are compare-and-set: the UPDATE only matches while the row
still holds the status that justified the transition, so two devices racing
the same order cannot both win.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.config import Settings
from tableside.database import run_with_timeout
from tableside.exceptions import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from tableside.models import (
    Order,
    OrderCounter,
    OrderKind,
    OrderLine,
    OrderStatus,
    Table,
    TableStatus,
    utc_now,
)
from tableside.services.catalog import BaseProductCatalog, SqlProductCatalog
from tableside.services.pricing import LineRequest, PricingCalculator, to_money
from tableside.services.tables import TableSessionResolver

logger = logging.getLogger(__name__)


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.IN_PREPARATION, OrderStatus.CANCELLED}),
    OrderStatus.IN_PREPARATION: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Shortcut cancellation is only offered before the kitchen starts
CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass(frozen=True)
class OwnerRef:
    """
    Who an order belongs to.

    Either an authenticated customer account, an anonymous session bound to
    a table (by id or by the QR token the diner scanned), or an account
    holder ordering at a table.
    """
    customer_account_id: Optional[str] = None
    table_id: Optional[str] = None
    qr_token: Optional[str] = None

    @classmethod
    def authenticated(cls, account_id: str, table_id: Optional[str] = None) -> "OwnerRef":
        return cls(customer_account_id=account_id, table_id=table_id)

    @classmethod
    def anonymous(cls, table_id: Optional[str] = None, qr_token: Optional[str] = None) -> "OwnerRef":
        return cls(table_id=table_id, qr_token=qr_token)

    @property
    def is_anonymous(self) -> bool:
        return self.customer_account_id is None

    @property
    def has_table(self) -> bool:
        return self.table_id is not None or self.qr_token is not None

    def describe(self) -> str:
        if self.customer_account_id:
            return f"account {self.customer_account_id}"
        return "anonymous table session"


class OrderLifecycleManager:
    """
    Owns the Order entity: creation, status transitions and lookups.

    Args:
        settings: Service fee rate and persistence timeout
        catalog: Product price lookup (defaults to the products table)
        resolver: Table lookup for dine-in orders
    """

    def __init__(
        self,
        settings: Settings,
        catalog: Optional[BaseProductCatalog] = None,
        resolver: Optional[TableSessionResolver] = None,
    ):
        self.settings = settings
        self.catalog = catalog or SqlProductCatalog()
        self.resolver = resolver or TableSessionResolver(settings)
        self.pricing = PricingCalculator(settings.service_fee_rate)

    async def _bounded(self, operation: str, awaitable):
        return await run_with_timeout(
            operation, awaitable, self.settings.persistence_timeout_seconds
        )

    # =========================================================================
    # CREATION
    # =========================================================================

    async def create(
        self,
        db: AsyncSession,
        owner: OwnerRef,
        lines: Sequence[LineRequest],
        kind: OrderKind = OrderKind.DINE_IN,
        notes: Optional[str] = None,
        delivery_fee: Decimal = Decimal("0"),
        delivery_address: Optional[str] = None,
    ) -> Order:
        """
        Validate, price and persist a new order with its lines.

        The order, its lines, the order number and the table occupancy are
        written in one transaction; on any failure nothing is visible.

        Raises:
            ValidationError: Bad owner, empty lines, quantity < 1, misplaced fee
            NotFoundError: Unknown product or table
            InactiveTableError: Table taken out of service
            PersistenceTimeoutError: The database did not answer in time
        """
        return await self._bounded(
            "create order",
            self._create(db, owner, lines, kind, notes, delivery_fee, delivery_address),
        )

    def _validate_request(
        self,
        owner: OwnerRef,
        lines: Sequence[LineRequest],
        kind: OrderKind,
        delivery_fee: Decimal,
    ) -> None:
        if owner.is_anonymous and not owner.has_table:
            raise ValidationError("Anonymous orders must be placed through a table session")
        if owner.has_table and kind != OrderKind.DINE_IN:
            raise ValidationError("Only dine-in orders can be attached to a table")
        self.pricing.validate(lines, delivery_fee)
        if delivery_fee > 0 and kind != OrderKind.DELIVERY:
            raise ValidationError("A delivery fee only applies to delivery orders")

    async def _next_order_number(self, db: AsyncSession) -> int:
        number = await db.scalar(
            update(OrderCounter)
            .where(OrderCounter.name == OrderCounter.ORDERS)
            .values(value=OrderCounter.value + 1)
            .returning(OrderCounter.value)
            .execution_options(synchronize_session=False)
        )
        if number is None:
            raise RuntimeError("Order counter is not seeded; run init_db() first")
        return number

    async def _create(
        self,
        db: AsyncSession,
        owner: OwnerRef,
        lines: Sequence[LineRequest],
        kind: OrderKind,
        notes: Optional[str],
        delivery_fee: Decimal,
        delivery_address: Optional[str],
    ) -> Order:
        kind = OrderKind(kind)
        delivery_fee = to_money(delivery_fee)
        self._validate_request(owner, lines, kind, delivery_fee)

        async with db.begin():
            table: Optional[Table] = None
            if owner.has_table:
                table = await self.resolver.find_active_table(
                    db, table_id=owner.table_id, qr_token=owner.qr_token
                )

            logger.debug(f"Pricing {len(lines)} lines against the {self.catalog.provider_name} catalog")
            products = await self.catalog.get_products(
                [line.product_id for line in lines], db
            )
            breakdown = self.pricing.price(lines, products, delivery_fee)

            order = Order(
                order_number=await self._next_order_number(db),
                status=OrderStatus.PENDING,
                order_kind=kind,
                customer_account_id=owner.customer_account_id,
                table_id=table.id if table else None,
                subtotal=breakdown.subtotal,
                service_fee=breakdown.service_fee,
                delivery_fee=breakdown.delivery_fee,
                total=breakdown.total,
                notes=notes,
                delivery_address=delivery_address if kind == OrderKind.DELIVERY else None,
                lines=[
                    OrderLine(
                        position=position,
                        product_id=line.product_id,
                        product_name=line.product_name,
                        unit_price=line.unit_price,
                        quantity=line.quantity,
                        line_subtotal=line.line_subtotal,
                        note=line.note,
                    )
                    for position, line in enumerate(breakdown.lines, start=1)
                ],
            )
            db.add(order)

            if table is not None:
                await db.execute(
                    update(Table)
                    .where(
                        Table.id == table.id,
                        Table.status.in_([TableStatus.FREE, TableStatus.RESERVED]),
                    )
                    .values(status=TableStatus.OCCUPIED)
                    .execution_options(synchronize_session=False)
                )

            await db.flush()

        logger.info(
            f"Order #{order.order_number} created for {owner.describe()} "
            f"({kind.value}, {len(order.lines)} lines, total={order.total})"
        )
        return order

    # =========================================================================
    # STATUS TRANSITIONS
    # =========================================================================

    async def transition_status(
        self,
        db: AsyncSession,
        order_id: str,
        new_status: OrderStatus,
    ) -> Order:
        """
        Move an order to a new status if the transition table allows it.

        Raises:
            NotFoundError: Unknown order
            InvalidTransitionError: Transition not in the table, or another
                caller changed the status first (reports the status now stored)
        """
        return await self._bounded(
            "transition order status",
            self._transition(db, order_id, OrderStatus(new_status)),
        )

    async def _transition(self, db: AsyncSession, order_id: str, target: OrderStatus) -> Order:
        async with db.begin():
            order = await self._load(db, order_id)
            current = order.status

            if not can_transition(current, target):
                logger.warning(
                    f"Rejected transition for order #{order.order_number}: "
                    f"{current.value} -> {target.value}"
                )
                raise InvalidTransitionError(current, target)

            if not await self._compare_and_set(db, order_id, current, target):
                latest = await self._current_status(db, order_id)
                logger.warning(
                    f"Order #{order.order_number} changed to {latest.value} concurrently; "
                    f"{target.value} not applied"
                )
                raise InvalidTransitionError(latest, target)

            order = await self._load(db, order_id, refresh=True)

        logger.info(f"Order #{order.order_number}: {current.value} -> {target.value}")
        return order

    async def cancel(self, db: AsyncSession, order_id: str, requester: str) -> Order:
        """
        Cancel an order that the kitchen has not started yet.

        Later cancellations are a staff decision and go through
        transition_status explicitly.

        Raises:
            NotFoundError: Unknown order
            InvalidStateError: Order is past confirmed
        """
        return await self._bounded("cancel order", self._cancel(db, order_id, requester))

    async def _cancel(self, db: AsyncSession, order_id: str, requester: str) -> Order:
        async with db.begin():
            order = await self._load(db, order_id)
            current = order.status

            if current not in CANCELLABLE:
                raise InvalidStateError(
                    f"Order #{order.order_number} cannot be cancelled while '{current.value}'"
                )

            if not await self._compare_and_set(db, order_id, current, OrderStatus.CANCELLED):
                latest = await self._current_status(db, order_id)
                raise InvalidStateError(
                    f"Order #{order.order_number} cannot be cancelled while '{latest.value}'"
                )

            order = await self._load(db, order_id, refresh=True)

        logger.info(f"Order #{order.order_number} cancelled by {requester}")
        return order

    async def _compare_and_set(
        self,
        db: AsyncSession,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
    ) -> bool:
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=target, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _current_status(self, db: AsyncSession, order_id: str) -> OrderStatus:
        return await db.scalar(select(Order.status).where(Order.id == order_id))

    async def _load(self, db: AsyncSession, order_id: str, refresh: bool = False) -> Order:
        query = select(Order).where(Order.id == order_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        order = await db.scalar(query)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get(self, db: AsyncSession, order_id: str) -> Order:
        async def _get() -> Order:
            async with db.begin():
                return await self._load(db, order_id)

        return await self._bounded("get order", _get())

    async def get_by_number(self, db: AsyncSession, order_number: int) -> Order:
        async def _get() -> Order:
            async with db.begin():
                order = await db.scalar(select(Order).where(Order.order_number == order_number))
                if order is None:
                    raise NotFoundError("Order", f"#{order_number}")
                return order

        return await self._bounded("get order by number", _get())

    async def list_orders(
        self,
        db: AsyncSession,
        skip: int = 0,
        limit: int = 50,
        status: Optional[OrderStatus] = None,
    ) -> tuple[int, list[Order]]:
        """Newest first, optionally filtered by status. Returns (total, page)."""

        async def _list() -> tuple[int, list[Order]]:
            query = select(Order).order_by(Order.created_at.desc(), Order.order_number.desc())
            count_query = select(func.count(Order.id))
            if status is not None:
                query = query.where(Order.status == status)
                count_query = count_query.where(Order.status == status)

            async with db.begin():
                total = await db.scalar(count_query) or 0
                result = await db.execute(query.offset(skip).limit(limit))
                return total, list(result.scalars().all())

        return await self._bounded("list orders", _list())

    async def list_for_customer(self, db: AsyncSession, customer_account_id: str) -> list[Order]:
        async def _list() -> list[Order]:
            async with db.begin():
                result = await db.execute(
                    select(Order)
                    .where(Order.customer_account_id == customer_account_id)
                    .order_by(Order.created_at.desc())
                )
                return list(result.scalars().all())

        return await self._bounded("list customer orders", _list())

    async def statistics(self, db: AsyncSession) -> dict[str, object]:
        """Order counts for the staff dashboard and the value of non-cancelled orders."""

        async def _stats() -> dict[str, object]:
            async with db.begin():
                rows = await db.execute(
                    select(Order.status, func.count(Order.id)).group_by(Order.status)
                )
                counts = {status: count for status, count in rows.all()}
                revenue = await db.scalar(
                    select(func.coalesce(func.sum(Order.total), 0)).where(
                        Order.status != OrderStatus.CANCELLED
                    )
                )

            return {
                "total_orders": sum(counts.values()),
                "pending": counts.get(OrderStatus.PENDING, 0),
                "in_preparation": counts.get(OrderStatus.IN_PREPARATION, 0),
                "delivered": counts.get(OrderStatus.DELIVERED, 0),
                "cancelled": counts.get(OrderStatus.CANCELLED, 0),
                "total_value": to_money(revenue or 0),
            }

        return await self._bounded("order statistics", _stats())
