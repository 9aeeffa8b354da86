import pytest

from tableside.exceptions import InactiveTableError, InvalidStateError, NotFoundError, ValidationError
from tableside.models import Table, TableStatus
from tableside.services import OwnerRef, TableService
from tableside.services.pricing import LineRequest


class StaleReadTableService(TableService):
    """Checks the number before a concurrent create of the same table committed."""

    async def _number_taken(self, db, number):
        return False


class TestTableSessionResolver:
    async def test_resolves_token_to_table(self, run, resolver, tables):
        ref = await run(resolver.resolve, "qr-table-7")

        assert ref.id == "table-7"
        assert ref.number == 7
        assert ref.status == TableStatus.FREE

    async def test_occupied_table_still_resolves(self, run, resolver, table_service, tables):
        await run(table_service.update_table, "table-7", status=TableStatus.OCCUPIED)

        ref = await run(resolver.resolve, "qr-table-7")

        assert ref.status == TableStatus.OCCUPIED

    async def test_unknown_token(self, run, resolver, tables):
        with pytest.raises(NotFoundError):
            await run(resolver.resolve, "qr-unknown")

    async def test_inactive_table(self, run, resolver, tables):
        with pytest.raises(InactiveTableError) as exc_info:
            await run(resolver.resolve, "qr-table-9")

        assert exc_info.value.table_number == 9

    async def test_regenerated_token_invalidates_old_one(self, run, resolver, table_service, tables):
        table = await run(table_service.regenerate_qr_token, "table-7")

        assert table.qr_token != "qr-table-7"
        with pytest.raises(NotFoundError):
            await run(resolver.resolve, "qr-table-7")
        assert (await run(resolver.resolve, table.qr_token)).id == "table-7"


class TestTableService:
    async def test_create_table(self, run, table_service, fetch, tables):
        table = await run(table_service.create_table, number=12, capacity=2, notes="terrace")

        stored = await fetch(Table, table.id)
        assert stored.number == 12
        assert stored.status == TableStatus.FREE
        assert len(stored.qr_token) >= 16
        assert table_service.qr_link(stored) == f"https://menu.example.com/mesa/{stored.qr_token}"

    async def test_duplicate_number_rejected(self, run, table_service, tables):
        with pytest.raises(ValidationError):
            await run(table_service.create_table, number=7)

    async def test_number_taken_concurrently_is_rejected(self, run, settings, table_service, tables):
        with pytest.raises(ValidationError, match="already exists"):
            await run(StaleReadTableService(settings).create_table, number=7)

        assert [t.number for t in await run(table_service.list_tables)] == [7, 8, 9]

        table = await run(StaleReadTableService(settings).create_table, number=10)
        assert table.number == 10

    @pytest.mark.parametrize("number, capacity", [(0, 4), (-3, 4), (5, 0)])
    async def test_invalid_dimensions(self, run, table_service, tables, number, capacity):
        with pytest.raises(ValidationError):
            await run(table_service.create_table, number=number, capacity=capacity)

    async def test_list_tables_by_status(self, run, table_service, tables):
        everything = await run(table_service.list_tables)
        inactive = await run(table_service.list_tables, status=TableStatus.INACTIVE)

        assert [t.number for t in everything] == [7, 8, 9]
        assert [t.number for t in inactive] == [9]

    async def test_get_unknown_table(self, run, table_service, tables):
        with pytest.raises(NotFoundError):
            await run(table_service.get_table, "table-404")

    async def test_update_capacity_and_notes(self, run, table_service, tables):
        table = await run(table_service.update_table, "table-8", capacity=3, notes="window")

        assert table.capacity == 3
        assert table.notes == "window"

    async def test_reactivate_table(self, run, table_service, resolver, tables):
        await run(table_service.update_table, "table-9", status=TableStatus.FREE)

        assert (await run(resolver.resolve, "qr-table-9")).status == TableStatus.FREE

    async def test_cannot_free_table_with_unpaid_bill(self, run, table_service, orders, accounts, menu, tables):
        await run(orders.create, owner=OwnerRef.anonymous(qr_token="qr-table-7"), lines=[LineRequest("prod-soda", 1)])
        await run(accounts.close_account, "table-7")

        for status in (TableStatus.FREE, TableStatus.INACTIVE):
            with pytest.raises(InvalidStateError):
                await run(table_service.update_table, "table-7", status=status)

    async def test_regenerate_unknown_table(self, run, table_service, tables):
        with pytest.raises(NotFoundError):
            await run(table_service.regenerate_qr_token, "table-404")
