"""
FastAPI Application Entry Point

Tableside Ordering - order, table-account and settlement API.

Endpoints:
    - POST  /api/orders: Create order (account holder or table QR session)
    - PATCH /api/orders/{id}/status: Move an order through the workflow
    - POST  /api/orders/{id}/cancel: Cancel before preparation starts
    - GET   /api/sessions/{qr_token}: Resolve a scanned table QR code
    - GET   /api/tables/{id}/bill: Live bill preview
    - POST  /api/tables/{id}/account: Close the table's account
    - POST  /api/accounts/{id}/settle: Record payment, free the table
    - GET   /health: System health check
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Optional

import redis
from fastapi import FastAPI, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from tableside.core.config import Settings, get_settings, setup_logging
from tableside.database import get_db, init_db, engine
from tableside.exceptions import OrderingError
from tableside.models import AccountStatus, OrderStatus, TableAccount, TableStatus
from tableside.schemas import (
    AccountCancel,
    AccountClose,
    AccountResponse,
    AccountSettle,
    BillResponse,
    ErrorResponse,
    HealthResponse,
    OrderCancel,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    OrderStatusUpdate,
    TableCreate,
    TableQRResponse,
    TableResponse,
    TableSessionResponse,
    TableUpdate,
)
from tableside.services import (
    BillPreview,
    LineRequest,
    OrderLifecycleManager,
    OwnerRef,
    PaymentSettlementCoordinator,
    TableAccountAggregator,
    TableService,
    TableSessionResolver,
)
from tableside.tasks import record_settlement, settlement_payload

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Service fee: {settings.service_fee_rate:.0%}")
    logger.info("=" * 60)

    await init_db()

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"Production config left at development defaults: {missing}")

    logger.info("Application ready")

    yield  # Application runs

    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Restaurant ordering core: order workflow, table QR sessions, "
        "table bills and at-most-once settlement."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_order_manager(settings: Settings = Depends(get_settings)) -> OrderLifecycleManager:
    return OrderLifecycleManager(settings)


def get_table_service(settings: Settings = Depends(get_settings)) -> TableService:
    return TableService(settings)


def get_session_resolver(settings: Settings = Depends(get_settings)) -> TableSessionResolver:
    return TableSessionResolver(settings)


def get_account_aggregator(settings: Settings = Depends(get_settings)) -> TableAccountAggregator:
    return TableAccountAggregator(settings)


def get_settlement_coordinator(
    settings: Settings = Depends(get_settings),
) -> PaymentSettlementCoordinator:
    return PaymentSettlementCoordinator(settings)


def get_settlement_recorder() -> Callable[[dict], Any]:
    """Queues a paid account for the revenue ledger."""
    return record_settlement.delay


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def bill_response(preview: BillPreview) -> BillResponse:
    account = preview.closed_account
    return BillResponse(
        table_id=preview.table.id,
        table_number=preview.table.number,
        table_status=preview.table.status,
        account_status=AccountStatus.CLOSED if account else AccountStatus.OPEN,
        account_id=account.id if account else None,
        orders=[OrderResponse.model_validate(o) for o in preview.orders],
        total=preview.total,
    )


def table_qr_response(table, tables: TableService) -> TableQRResponse:
    return TableQRResponse(
        **TableResponse.model_validate(table).model_dump(),
        qr_url=tables.qr_link(table),
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> HealthResponse:
    """Verify the database and the Celery broker are reachable."""

    db_status = "healthy"
    try:
        await db.execute(select(func.count()).select_from(TableAccount))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    overall = "operational" if db_status == redis_status == "healthy" else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderResponse,
    status_code=201,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Create Order",
)
async def create_order(
    order_data: OrderCreate,
    db: AsyncSession = Depends(get_db),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderResponse:
    """
    Create an order from a cart.

    Prices come from the catalog at this moment and are frozen on the order
    lines. The response carries the computed totals and the order number.
    """
    owner = OwnerRef(
        customer_account_id=order_data.owner.customer_account_id,
        table_id=order_data.owner.table_id,
        qr_token=order_data.owner.qr_token,
    )
    order = await orders.create(
        db,
        owner=owner,
        lines=[
            LineRequest(product_id=item.product_id, quantity=item.quantity, note=item.note)
            for item in order_data.items
        ],
        kind=order_data.order_kind,
        notes=order_data.notes,
        delivery_fee=order_data.delivery_fee,
        delivery_address=order_data.delivery_address,
    )
    return OrderResponse.model_validate(order)


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    status: Optional[OrderStatus] = Query(None),
    db: AsyncSession = Depends(get_db),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderListResponse:
    """Retrieve paginated list of orders, newest first."""
    total, page = await orders.list_orders(db, skip=skip, limit=limit, status=status)
    return OrderListResponse(
        total=total,
        orders=[OrderResponse.model_validate(order) for order in page],
    )


@app.get("/api/orders/stats", response_model=OrderStatsResponse, tags=["Orders"])
async def order_statistics(
    db: AsyncSession = Depends(get_db),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderStatsResponse:
    """Order counts and value for the staff dashboard."""
    return OrderStatsResponse(**await orders.statistics(db))


@app.get("/api/orders/number/{order_number}", response_model=OrderResponse, tags=["Orders"])
async def get_order_by_number(
    order_number: int,
    db: AsyncSession = Depends(get_db),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderResponse:
    return OrderResponse.model_validate(await orders.get_by_number(db, order_number))


@app.get("/api/orders/{order_id}", response_model=OrderResponse, tags=["Orders"])
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderResponse:
    """Get a specific order by ID."""
    return OrderResponse.model_validate(await orders.get(db, order_id))


@app.patch(
    "/api/orders/{order_id}/status",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Update Order Status",
)
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderResponse:
    order = await orders.transition_status(db, order_id, body.status)
    return OrderResponse.model_validate(order)


@app.post(
    "/api/orders/{order_id}/cancel",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def cancel_order(
    order_id: str,
    body: OrderCancel,
    db: AsyncSession = Depends(get_db),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> OrderResponse:
    order = await orders.cancel(db, order_id, requester=body.requester)
    return OrderResponse.model_validate(order)


@app.get(
    "/api/customers/{customer_account_id}/orders",
    response_model=list[OrderResponse],
    tags=["Orders"],
)
async def list_customer_orders(
    customer_account_id: str,
    db: AsyncSession = Depends(get_db),
    orders: OrderLifecycleManager = Depends(get_order_manager),
) -> list[OrderResponse]:
    page = await orders.list_for_customer(db, customer_account_id)
    return [OrderResponse.model_validate(order) for order in page]


# =============================================================================
# TABLE ENDPOINTS
# =============================================================================

@app.post("/api/tables", response_model=TableQRResponse, status_code=201, tags=["Tables"])
async def create_table(
    body: TableCreate,
    db: AsyncSession = Depends(get_db),
    tables: TableService = Depends(get_table_service),
) -> TableQRResponse:
    table = await tables.create_table(db, number=body.number, capacity=body.capacity, notes=body.notes)
    return table_qr_response(table, tables)


@app.get("/api/tables", response_model=list[TableResponse], tags=["Tables"])
async def list_tables(
    status: Optional[TableStatus] = Query(None),
    db: AsyncSession = Depends(get_db),
    tables: TableService = Depends(get_table_service),
) -> list[TableResponse]:
    return [TableResponse.model_validate(t) for t in await tables.list_tables(db, status=status)]


@app.get("/api/tables/{table_id}", response_model=TableQRResponse, tags=["Tables"])
async def get_table(
    table_id: str,
    db: AsyncSession = Depends(get_db),
    tables: TableService = Depends(get_table_service),
) -> TableQRResponse:
    return table_qr_response(await tables.get_table(db, table_id), tables)


@app.patch("/api/tables/{table_id}", response_model=TableResponse, tags=["Tables"])
async def update_table(
    table_id: str,
    body: TableUpdate,
    db: AsyncSession = Depends(get_db),
    tables: TableService = Depends(get_table_service),
) -> TableResponse:
    table = await tables.update_table(
        db, table_id, capacity=body.capacity, notes=body.notes, status=body.status
    )
    return TableResponse.model_validate(table)


@app.post("/api/tables/{table_id}/qr-token", response_model=TableQRResponse, tags=["Tables"])
async def regenerate_qr_token(
    table_id: str,
    db: AsyncSession = Depends(get_db),
    tables: TableService = Depends(get_table_service),
) -> TableQRResponse:
    """Rotate the table's QR token. Printed codes with the old token stop working."""
    return table_qr_response(await tables.regenerate_qr_token(db, table_id), tables)


# =============================================================================
# TABLE SESSION ENDPOINTS (DINERS)
# =============================================================================

@app.get(
    "/api/sessions/{qr_token}",
    response_model=TableSessionResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Sessions"],
)
async def resolve_session(
    qr_token: str,
    db: AsyncSession = Depends(get_db),
    resolver: TableSessionResolver = Depends(get_session_resolver),
) -> TableSessionResponse:
    ref = await resolver.resolve(db, qr_token)
    return TableSessionResponse(table_id=ref.id, table_number=ref.number, table_status=ref.status)


@app.get("/api/sessions/{qr_token}/bill", response_model=BillResponse, tags=["Sessions"])
async def session_bill(
    qr_token: str,
    db: AsyncSession = Depends(get_db),
    accounts: TableAccountAggregator = Depends(get_account_aggregator),
) -> BillResponse:
    return bill_response(await accounts.preview_bill_by_token(db, qr_token))


# =============================================================================
# ACCOUNT ENDPOINTS
# =============================================================================

@app.get("/api/tables/{table_id}/bill", response_model=BillResponse, tags=["Accounts"])
async def table_bill(
    table_id: str,
    db: AsyncSession = Depends(get_db),
    accounts: TableAccountAggregator = Depends(get_account_aggregator),
) -> BillResponse:
    """Current open orders of the table and their running total."""
    return bill_response(await accounts.preview_bill(db, table_id))


@app.post(
    "/api/tables/{table_id}/account",
    response_model=AccountResponse,
    status_code=201,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Accounts"],
    summary="Close Table Account",
)
async def close_account(
    table_id: str,
    body: Optional[AccountClose] = None,
    db: AsyncSession = Depends(get_db),
    accounts: TableAccountAggregator = Depends(get_account_aggregator),
) -> AccountResponse:
    account = await accounts.close_account(db, table_id, notes=body.notes if body else None)
    return AccountResponse.model_validate(account)


@app.get("/api/accounts", response_model=list[AccountResponse], tags=["Accounts"])
async def list_accounts(
    status: Optional[AccountStatus] = Query(None),
    table_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    accounts: TableAccountAggregator = Depends(get_account_aggregator),
) -> list[AccountResponse]:
    page = await accounts.list_accounts(db, status=status, table_id=table_id, skip=skip, limit=limit)
    return [AccountResponse.model_validate(a) for a in page]


@app.get("/api/accounts/{account_id}", response_model=AccountResponse, tags=["Accounts"])
async def get_account(
    account_id: str,
    db: AsyncSession = Depends(get_db),
    accounts: TableAccountAggregator = Depends(get_account_aggregator),
) -> AccountResponse:
    return AccountResponse.model_validate(await accounts.get_account(db, account_id))


@app.post(
    "/api/accounts/{account_id}/settle",
    response_model=AccountResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 504: {"model": ErrorResponse}},
    tags=["Accounts"],
    summary="Settle Table Account",
)
async def settle_account(
    account_id: str,
    body: AccountSettle,
    db: AsyncSession = Depends(get_db),
    coordinator: PaymentSettlementCoordinator = Depends(get_settlement_coordinator),
    record: Callable[[dict], Any] = Depends(get_settlement_recorder),
) -> AccountResponse:
    """
    Record a confirmed payment for a closed account and free the table.

    Safe to retry: settling an already-paid account returns it unchanged.
    """
    account = await coordinator.settle(db, account_id, body.payment_method)

    # The ledger deduplicates by account id, so retries may queue again
    try:
        record(settlement_payload(account))
    except Exception as e:
        logger.exception(f"Could not queue ledger entry for account {account_id}: {e}")

    return AccountResponse.model_validate(account)


@app.post(
    "/api/accounts/{account_id}/cancel",
    response_model=AccountResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Accounts"],
)
async def cancel_account(
    account_id: str,
    body: Optional[AccountCancel] = None,
    db: AsyncSession = Depends(get_db),
    accounts: TableAccountAggregator = Depends(get_account_aggregator),
) -> AccountResponse:
    """Administrative override: void a closed account and free its table."""
    account = await accounts.cancel_account(db, account_id, reason=body.reason if body else None)
    return AccountResponse.model_validate(account)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderingError)
async def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
    """Named business and persistence errors."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")

    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tableside.main:app", host=settings.api_host, port=settings.api_port)
