"""
Pydantic Schemas for Request/Response Validation

Request bodies for order creation, status updates, table administration,
account closing and settlement, and the response shapes returned by the API.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tableside.models import (
    AccountStatus,
    OrderKind,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    TableStatus,
)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OwnerIn(BaseModel):
    """
    Owner of a new order.

    The caller asserts identity: an authenticated account id from the auth
    service, or an anonymous session identified by a table QR token.
    """
    customer_account_id: Optional[str] = Field(None, max_length=64)
    table_id: Optional[str] = Field(None, max_length=36)
    qr_token: Optional[str] = Field(None, max_length=64)

    @model_validator(mode="after")
    def require_owner(self) -> "OwnerIn":
        if not (self.customer_account_id or self.table_id or self.qr_token):
            raise ValueError("An order needs an account id or a table session")
        return self


class OrderLineCreate(BaseModel):
    """Single line in an order."""
    product_id: str = Field(..., min_length=1, max_length=36)
    quantity: int = Field(..., ge=1, examples=[2])
    note: Optional[str] = Field(None, max_length=200)


class OrderCreate(BaseModel):
    """Request schema for creating a new order."""
    owner: OwnerIn
    order_kind: OrderKind = Field(default=OrderKind.DINE_IN, examples=["dine-in"])
    items: List[OrderLineCreate] = Field(..., min_length=1)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    delivery_address: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = Field(None, max_length=500)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderCancel(BaseModel):
    requester: str = Field(..., min_length=1, max_length=64)


class TableCreate(BaseModel):
    number: int = Field(..., ge=1, examples=[7])
    capacity: int = Field(default=4, ge=1)
    notes: Optional[str] = Field(None, max_length=500)


class TableUpdate(BaseModel):
    capacity: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = Field(None, max_length=500)
    status: Optional[TableStatus] = None


class AccountClose(BaseModel):
    notes: Optional[str] = Field(None, max_length=500)


class AccountSettle(BaseModel):
    payment_method: PaymentMethod = Field(..., examples=["pix"])


class AccountCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class OrderLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    line_subtotal: Decimal
    note: Optional[str]


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: int
    status: OrderStatus
    order_kind: OrderKind
    payment_status: PaymentStatus
    customer_account_id: Optional[str]
    table_id: Optional[str]
    account_id: Optional[str]
    lines: List[OrderLineResponse]
    subtotal: Decimal
    delivery_fee: Decimal
    service_fee: Decimal
    total: Decimal
    notes: Optional[str]
    delivery_address: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class OrderStatsResponse(BaseModel):
    total_orders: int
    pending: int
    in_preparation: int
    delivered: int
    cancelled: int
    total_value: Decimal


class TableResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    number: int
    capacity: int
    status: TableStatus
    qr_token: str
    notes: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]


class TableQRResponse(TableResponse):
    qr_url: str


class TableSessionResponse(BaseModel):
    """What a diner learns from scanning a QR code."""
    table_id: str
    table_number: int
    table_status: TableStatus


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    table_id: str
    status: AccountStatus
    total: Decimal
    payment_method: Optional[PaymentMethod]
    notes: Optional[str]
    opened_at: datetime
    closed_at: datetime
    paid_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    orders: List[OrderResponse]


class BillResponse(BaseModel):
    """Live bill of a table: open orders and their running total."""
    table_id: str
    table_number: int
    table_status: TableStatus
    account_status: AccountStatus
    account_id: Optional[str] = None
    orders: List[OrderResponse]
    total: Decimal


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    timestamp: datetime
