"""
Table Session Resolver and Table Administration

A diner scanning a table's QR code gets an anonymous ordering session bound
to that table. The token is the only credential: regenerating it replaces
the stored value in a single UPDATE, so the old link stops resolving in the
same commit that activates the new one.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.config import Settings
from tableside.database import run_with_timeout
from tableside.exceptions import (
    InactiveTableError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from tableside.models import AccountStatus, Table, TableAccount, TableStatus, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableRef:
    """The table an anonymous session is bound to."""
    id: str
    number: int
    status: TableStatus

    @classmethod
    def from_table(cls, table: Table) -> "TableRef":
        return cls(id=table.id, number=table.number, status=table.status)


def generate_qr_token(settings: Settings) -> str:
    return secrets.token_urlsafe(settings.qr_token_bytes)


class TableSessionResolver:
    """Resolves QR tokens and table ids to active tables."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def resolve(self, db: AsyncSession, qr_token: str) -> TableRef:
        """
        Bind a scanned QR token to its table.

        The table does not need to be free; several diners may order
        against the same occupied table.

        Raises:
            NotFoundError: Unknown or regenerated (stale) token
            InactiveTableError: Table taken out of service
        """

        async def _resolve() -> TableRef:
            async with db.begin():
                table = await self.find_active_table(db, qr_token=qr_token)
            logger.info(f"QR session bound to table #{table.number}")
            return TableRef.from_table(table)

        return await run_with_timeout(
            "resolve table session", _resolve(), self.settings.persistence_timeout_seconds
        )

    async def find_active_table(
        self,
        db: AsyncSession,
        *,
        table_id: Optional[str] = None,
        qr_token: Optional[str] = None,
    ) -> Table:
        """Look up a table inside the caller's transaction and reject inactive ones."""
        if qr_token is not None:
            table = await db.scalar(select(Table).where(Table.qr_token == qr_token))
            if table is None:
                raise NotFoundError("Table session", qr_token)
            if table_id is not None and table.id != table_id:
                raise ValidationError("QR token does not belong to the given table")
        elif table_id is not None:
            table = await db.get(Table, table_id)
            if table is None:
                raise NotFoundError("Table", table_id)
        else:
            raise ValidationError("A table id or QR token is required")

        if table.status == TableStatus.INACTIVE:
            logger.warning(f"Rejected session for inactive table #{table.number}")
            raise InactiveTableError(table.number)
        return table


class TableService:
    """Staff-side table management: creation, edits and QR token rotation."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def _bounded(self, operation: str, awaitable):
        return await run_with_timeout(
            operation, awaitable, self.settings.persistence_timeout_seconds
        )

    def qr_link(self, table: Table) -> str:
        return f"{self.settings.qr_base_url.rstrip('/')}/{table.qr_token}"

    async def create_table(
        self,
        db: AsyncSession,
        number: int,
        capacity: int = 4,
        notes: Optional[str] = None,
    ) -> Table:
        if number < 1:
            raise ValidationError("Table number must be a positive integer")
        if capacity < 1:
            raise ValidationError("Table capacity must be at least 1")

        async def _create() -> Table:
            try:
                async with db.begin():
                    if await self._number_taken(db, number):
                        raise ValidationError(f"Table #{number} already exists")

                    table = Table(
                        number=number,
                        capacity=capacity,
                        notes=notes,
                        status=TableStatus.FREE,
                        qr_token=generate_qr_token(self.settings),
                    )
                    db.add(table)
                    await db.flush()
            except IntegrityError as exc:
                # Created concurrently under the same number
                raise ValidationError(f"Table #{number} already exists") from exc

            logger.info(f"Table #{number} created (capacity={capacity})")
            return table

        return await self._bounded("create table", _create())

    async def _number_taken(self, db: AsyncSession, number: int) -> bool:
        return await db.scalar(select(Table.id).where(Table.number == number)) is not None

    async def get_table(self, db: AsyncSession, table_id: str) -> Table:
        async def _get() -> Table:
            async with db.begin():
                table = await db.get(Table, table_id)
                if table is None:
                    raise NotFoundError("Table", table_id)
                return table

        return await self._bounded("get table", _get())

    async def list_tables(self, db: AsyncSession, status: Optional[TableStatus] = None) -> list[Table]:
        async def _list() -> list[Table]:
            query = select(Table).order_by(Table.number)
            if status is not None:
                query = query.where(Table.status == status)
            async with db.begin():
                result = await db.execute(query)
                return list(result.scalars().all())

        return await self._bounded("list tables", _list())

    async def update_table(
        self,
        db: AsyncSession,
        table_id: str,
        capacity: Optional[int] = None,
        notes: Optional[str] = None,
        status: Optional[TableStatus] = None,
    ) -> Table:
        """
        Edit capacity, notes or status.

        A table with a closed, unpaid account stays occupied until the
        account is settled or cancelled; staff cannot free or deactivate it.
        """
        if capacity is not None and capacity < 1:
            raise ValidationError("Table capacity must be at least 1")

        async def _update() -> Table:
            async with db.begin():
                table = await db.get(Table, table_id, with_for_update=True)
                if table is None:
                    raise NotFoundError("Table", table_id)

                if status is not None and status != table.status:
                    if status in (TableStatus.FREE, TableStatus.INACTIVE):
                        pending_bill = await db.scalar(
                            select(TableAccount.id).where(
                                TableAccount.table_id == table_id,
                                TableAccount.status == AccountStatus.CLOSED,
                            )
                        )
                        if pending_bill is not None:
                            raise InvalidStateError(
                                f"Table #{table.number} has an unpaid closed account"
                            )
                    table.status = TableStatus(status)

                if capacity is not None:
                    table.capacity = capacity
                if notes is not None:
                    table.notes = notes
                await db.flush()

            logger.info(f"Table #{table.number} updated (status={table.status.value})")
            return table

        return await self._bounded("update table", _update())

    async def regenerate_qr_token(self, db: AsyncSession, table_id: str) -> Table:
        """Issue a new QR token; the previous one stops resolving on commit."""

        async def _regenerate() -> Table:
            token = generate_qr_token(self.settings)
            async with db.begin():
                result = await db.execute(
                    update(Table)
                    .where(Table.id == table_id)
                    .values(qr_token=token, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise NotFoundError("Table", table_id)
                table = await db.scalar(
                    select(Table)
                    .where(Table.id == table_id)
                    .execution_options(populate_existing=True)
                )

            logger.info(f"QR token regenerated for table #{table.number}")
            return table

        return await self._bounded("regenerate QR token", _regenerate())
