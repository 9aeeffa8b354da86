"""
SQLAlchemy Database Models

Persistent entities of the ordering core:
- Order / OrderLine: immutable price snapshot, mutable status
- Table: physical seating unit, bound to diners through a QR token
- TableAccount: closing snapshot over a table's unsettled orders
- Product: read-only catalog entries owned by the menu service
- OrderCounter: source of the human-facing order number
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    Text,
    Enum,
    Boolean,
    ForeignKey,
    CheckConstraint,
    Index,
    text,
)
from sqlalchemy.orm import relationship

from tableside.database import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls: type[enum.Enum]) -> Enum:
    # Store the enum values ("in_preparation"), not the member names
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


Money = Numeric(10, 2)


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PREPARATION = "in_preparation"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderKind(str, enum.Enum):
    """Where the order is consumed."""
    DINE_IN = "dine-in"
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentStatus(str, enum.Enum):
    """Whether an order has been paid through its table account."""
    PENDING = "pending"
    SETTLED = "settled"
    VOIDED = "voided"  # Account cancelled by staff


class TableStatus(str, enum.Enum):
    FREE = "free"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    INACTIVE = "inactive"


class AccountStatus(str, enum.Enum):
    """
    Table account lifecycle.

    OPEN is virtual: an open account is the live view over a table's
    unsettled orders and never has a row of its own.
    """
    OPEN = "open"
    CLOSED = "closed"
    PAID = "paid"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    DEBIT_CARD = "debit_card"
    CREDIT_CARD = "credit_card"
    PIX = "pix"


class Product(Base):
    """
    Menu product as published by the catalog service.

    The ordering core only reads this table; each order line keeps its own
    copy of the name and price taken when the order was placed.
    """
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(120), nullable=False)
    unit_price = Column(Money, nullable=False)
    category = Column(String(60), nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<Product {self.name} - {self.unit_price}>"


class OrderCounter(Base):
    """Named monotonic counters; one row per sequence."""
    __tablename__ = "order_counters"

    ORDERS = "orders"

    name = Column(String(32), primary_key=True)
    value = Column(Integer, nullable=False, default=0)


class Table(Base):
    """Physical table. Its status is the mutual-exclusion signal for billing."""
    __tablename__ = "tables"

    id = Column(String(36), primary_key=True, default=new_id)
    number = Column(Integer, nullable=False, unique=True, index=True)
    capacity = Column(Integer, nullable=False, default=4)
    status = Column(_enum(TableStatus), nullable=False, default=TableStatus.FREE, index=True)
    qr_token = Column(String(64), nullable=False, unique=True, index=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint("number > 0", name="ck_tables_number_positive"),
        CheckConstraint("capacity > 0", name="ck_tables_capacity_positive"),
    )

    def __repr__(self):
        return f"<Table #{self.number} - {self.status.value}>"


class TableAccount(Base):
    """
    Closing snapshot of one occupancy of a table.

    Created in status CLOSED with the sum of its orders' totals. Only one
    CLOSED account may exist per table at a time (partial unique index).
    """
    __tablename__ = "table_accounts"

    id = Column(String(36), primary_key=True, default=new_id)
    table_id = Column(String(36), ForeignKey("tables.id"), nullable=False, index=True)
    status = Column(_enum(AccountStatus), nullable=False, default=AccountStatus.CLOSED, index=True)
    total = Column(Money, nullable=False)
    payment_method = Column(_enum(PaymentMethod), nullable=True)
    notes = Column(Text, nullable=True)

    opened_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    table = relationship("Table", lazy="joined")
    orders = relationship(
        "Order",
        primaryjoin="TableAccount.id == Order.account_id",
        order_by="Order.created_at",
        lazy="selectin",
        viewonly=True,
    )

    __table_args__ = (
        Index(
            "uq_table_accounts_one_closed",
            "table_id",
            unique=True,
            sqlite_where=text("status = 'closed'"),
            postgresql_where=text("status = 'closed'"),
        ),
    )

    def __repr__(self):
        return f"<TableAccount {self.id} - {self.status.value} - {self.total}>"


class Order(Base):
    """
    A submitted order.

    Lines and money columns are written once at creation; afterwards only
    status and payment_status change. Cancellation is a status, never a delete.
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    order_number = Column(Integer, nullable=False, unique=True, index=True)

    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    order_kind = Column(_enum(OrderKind), nullable=False, default=OrderKind.DINE_IN)
    payment_status = Column(
        _enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True
    )

    # Owner: an authenticated account, a table session, or both
    customer_account_id = Column(String(64), nullable=True, index=True)
    table_id = Column(String(36), ForeignKey("tables.id"), nullable=True, index=True)
    account_id = Column(String(36), ForeignKey("table_accounts.id"), nullable=True, index=True)

    subtotal = Column(Money, nullable=False)
    delivery_fee = Column(Money, nullable=False, default=0)
    service_fee = Column(Money, nullable=False, default=0)
    total = Column(Money, nullable=False)

    notes = Column(Text, nullable=True)
    delivery_address = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    lines = relationship(
        "OrderLine",
        order_by="OrderLine.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "customer_account_id IS NOT NULL OR table_id IS NOT NULL",
            name="ck_orders_has_owner",
        ),
    )

    def __repr__(self):
        return f"<Order #{self.order_number} - {self.order_kind.value} - {self.status.value}>"


class OrderLine(Base):
    """One product/quantity pair of an order, with the price paid."""
    __tablename__ = "order_lines"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    product_id = Column(String(36), nullable=False)
    product_name = Column(String(120), nullable=False)
    unit_price = Column(Money, nullable=False)
    quantity = Column(Integer, nullable=False)
    line_subtotal = Column(Money, nullable=False)
    note = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_lines_quantity"),
    )

    def __repr__(self):
        return f"<OrderLine {self.quantity}x {self.product_name}>"
