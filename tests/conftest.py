"""
Shared fixtures.

Every test gets its own file-backed SQLite database so that concurrent
sessions (close/settle races) really use separate connections.
"""

from decimal import Decimal

import httpx
import pytest

from tableside.core.config import Settings, get_settings
from tableside.database import create_engine_from_settings, create_session_maker, get_db, init_db
from tableside.models import Product, Table, TableStatus
from tableside.services import (
    OrderLifecycleManager,
    PaymentSettlementCoordinator,
    TableAccountAggregator,
    TableService,
    TableSessionResolver,
)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tableside-test.db'}",
        data_directory=str(tmp_path / "data"),
        persistence_timeout_seconds=10,
        database_busy_timeout=5,
        qr_base_url="https://menu.example.com/mesa",
    )


@pytest.fixture
async def engine(settings):
    engine = create_engine_from_settings(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
def run(session_maker):
    """Call a service operation with a fresh session, as one API request would."""

    async def _run(operation, *args, **kwargs):
        async with session_maker() as session:
            return await operation(session, *args, **kwargs)

    return _run


@pytest.fixture
def fetch(session_maker):
    """Read a row back through a new session."""

    async def _fetch(model, ident):
        async with session_maker() as session:
            return await session.get(model, ident)

    return _fetch


@pytest.fixture
async def menu(session_maker) -> dict[str, Product]:
    products = {
        "burger": Product(id="prod-burger", name="Burger", unit_price=Decimal("10.00"), category="mains"),
        "fries": Product(id="prod-fries", name="Fries", unit_price=Decimal("5.00"), category="sides"),
        "picanha": Product(id="prod-picanha", name="Picanha", unit_price=Decimal("40.91"), category="mains"),
        "caipirinha": Product(id="prod-caipirinha", name="Caipirinha", unit_price=Decimal("16.82"), category="drinks"),
        "soda": Product(id="prod-soda", name="Soda", unit_price=Decimal("3.35"), category="drinks"),
        "retired": Product(
            id="prod-retired", name="Old Special", unit_price=Decimal("12.00"), is_available=False
        ),
    }
    async with session_maker() as session:
        async with session.begin():
            session.add_all(products.values())
    return products


@pytest.fixture
async def tables(session_maker) -> dict[int, Table]:
    seeded = {
        7: Table(id="table-7", number=7, capacity=4, qr_token="qr-table-7", status=TableStatus.FREE),
        8: Table(id="table-8", number=8, capacity=2, qr_token="qr-table-8", status=TableStatus.FREE),
        9: Table(id="table-9", number=9, capacity=6, qr_token="qr-table-9", status=TableStatus.INACTIVE),
    }
    async with session_maker() as session:
        async with session.begin():
            session.add_all(seeded.values())
    return seeded


@pytest.fixture
def orders(settings) -> OrderLifecycleManager:
    return OrderLifecycleManager(settings)


@pytest.fixture
def resolver(settings) -> TableSessionResolver:
    return TableSessionResolver(settings)


@pytest.fixture
def table_service(settings) -> TableService:
    return TableService(settings)


@pytest.fixture
def accounts(settings) -> TableAccountAggregator:
    return TableAccountAggregator(settings)


@pytest.fixture
def settlement(settings) -> PaymentSettlementCoordinator:
    return PaymentSettlementCoordinator(settings)


# =============================================================================
# API
# =============================================================================

@pytest.fixture
def ledger_queue() -> list[dict]:
    """Settlements the API would have sent to the Celery ledger task."""
    return []


@pytest.fixture
async def client(settings, session_maker, menu, tables, ledger_queue):
    from tableside.main import app, get_settlement_recorder

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_settlement_recorder] = lambda: ledger_queue.append

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
