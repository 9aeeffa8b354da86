"""
Table Account Aggregator

While a table is in use its account is virtual: the live list of the
table's non-cancelled, unpaid orders. Closing the account materializes it
as a TableAccount row holding the sum of those orders' totals and stamps
the row id on each of them.

Closing is serialized per table. On PostgreSQL the table row is locked
FOR UPDATE for the short read-sum-write span; on every backend the partial
unique index on table_accounts(table_id) WHERE status = 'closed' rejects a
second closed account, which surfaces as AccountAlreadyClosedError.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.config import Settings
from tableside.database import run_with_timeout
from tableside.exceptions import (
    AccountAlreadyClosedError,
    EmptyAccountError,
    InvalidStateError,
    NotFoundError,
)
from tableside.models import (
    AccountStatus,
    Order,
    OrderStatus,
    PaymentStatus,
    Table,
    TableAccount,
    TableStatus,
    utc_now,
)
from tableside.services.pricing import to_money
from tableside.services.tables import TableSessionResolver

logger = logging.getLogger(__name__)


@dataclass
class BillPreview:
    """Running bill of a table: its open orders and their summed total."""
    table: Table
    orders: list[Order] = field(default_factory=list)
    total: Decimal = Decimal("0.00")
    closed_account: Optional[TableAccount] = None


class TableAccountAggregator:
    """
    Aggregates a table's unsettled orders into a payable account.

    Args:
        settings: Persistence timeout
        resolver: QR token lookup for the diner-facing bill preview
    """

    def __init__(self, settings: Settings, resolver: Optional[TableSessionResolver] = None):
        self.settings = settings
        self.resolver = resolver or TableSessionResolver(settings)

    async def _bounded(self, operation: str, awaitable):
        return await run_with_timeout(
            operation, awaitable, self.settings.persistence_timeout_seconds
        )

    # =========================================================================
    # OPEN ACCOUNT (VIRTUAL)
    # =========================================================================

    async def _open_orders(
        self,
        db: AsyncSession,
        table_id: str,
        unbilled_only: bool = False,
    ) -> list[Order]:
        query = (
            select(Order)
            .where(
                Order.table_id == table_id,
                Order.status != OrderStatus.CANCELLED,
                Order.payment_status == PaymentStatus.PENDING,
            )
            .order_by(Order.created_at, Order.order_number)
        )
        if unbilled_only:
            query = query.where(Order.account_id.is_(None))
        result = await db.execute(query)
        return list(result.scalars().all())

    async def _require_table(self, db: AsyncSession, table_id: str, lock: bool = False) -> Table:
        query = select(Table).where(Table.id == table_id)
        if lock:
            query = query.with_for_update()
        table = await db.scalar(query)
        if table is None:
            raise NotFoundError("Table", table_id)
        return table

    async def _closed_account(self, db: AsyncSession, table_id: str) -> Optional[TableAccount]:
        return await db.scalar(
            select(TableAccount).where(
                TableAccount.table_id == table_id,
                TableAccount.status == AccountStatus.CLOSED,
            )
        )

    async def list_open_orders(self, db: AsyncSession, table_id: str) -> list[Order]:
        """
        Non-cancelled orders of the table whose payment is still pending,
        oldest first.

        Raises:
            NotFoundError: Unknown table
        """

        async def _list() -> list[Order]:
            async with db.begin():
                await self._require_table(db, table_id)
                return await self._open_orders(db, table_id)

        return await self._bounded("list open orders", _list())

    async def preview_bill(self, db: AsyncSession, table_id: str) -> BillPreview:
        async def _preview() -> BillPreview:
            async with db.begin():
                table = await self._require_table(db, table_id)
                return await self._build_preview(db, table)

        return await self._bounded("preview bill", _preview())

    async def preview_bill_by_token(self, db: AsyncSession, qr_token: str) -> BillPreview:
        """Bill preview for a diner holding the table's QR token."""

        async def _preview() -> BillPreview:
            async with db.begin():
                table = await self.resolver.find_active_table(db, qr_token=qr_token)
                return await self._build_preview(db, table)

        return await self._bounded("preview bill", _preview())

    async def _build_preview(self, db: AsyncSession, table: Table) -> BillPreview:
        orders = await self._open_orders(db, table.id)
        return BillPreview(
            table=table,
            orders=orders,
            total=to_money(sum((o.total for o in orders), Decimal("0"))),
            closed_account=await self._closed_account(db, table.id),
        )

    # =========================================================================
    # CLOSING
    # =========================================================================

    async def close_account(
        self,
        db: AsyncSession,
        table_id: str,
        notes: Optional[str] = None,
    ) -> TableAccount:
        """
        Materialize the table's open account as a CLOSED TableAccount.

        The table stays occupied; it is freed only by settlement.

        Raises:
            NotFoundError: Unknown table
            AccountAlreadyClosedError: A closed, unpaid account already exists
            EmptyAccountError: No qualifying orders
        """
        return await self._bounded("close account", self._close(db, table_id, notes))

    async def _close(self, db: AsyncSession, table_id: str, notes: Optional[str]) -> TableAccount:
        try:
            async with db.begin():
                table = await self._require_table(db, table_id, lock=True)
                table_number = table.number

                existing = await self._closed_account(db, table_id)
                if existing is not None:
                    logger.warning(f"Table #{table_number} already has closed account {existing.id}")
                    raise AccountAlreadyClosedError(table_id, existing.id)

                orders = await self._open_orders(db, table_id, unbilled_only=True)
                if not orders:
                    logger.warning(f"Refused to close empty account for table #{table_number}")
                    raise EmptyAccountError(table_id)

                account = TableAccount(
                    table_id=table_id,
                    status=AccountStatus.CLOSED,
                    total=to_money(sum((o.total for o in orders), Decimal("0"))),
                    opened_at=min(o.created_at for o in orders),
                    closed_at=utc_now(),
                    notes=notes,
                )
                db.add(account)
                await db.flush()

                order_ids = [o.id for o in orders]
                stamped = await db.execute(
                    update(Order)
                    .where(Order.id.in_(order_ids), Order.account_id.is_(None))
                    .values(account_id=account.id, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                if stamped.rowcount != len(order_ids):
                    raise InvalidStateError(
                        f"Orders of table #{table_number} changed while closing the account"
                    )

                account = await self._reload(db, account.id)
        except IntegrityError as exc:
            # The unique index saw a closed account committed after our read
            async with db.begin():
                winner = await self._closed_account(db, table_id)
            logger.warning(f"Concurrent close detected for table {table_id}")
            raise AccountAlreadyClosedError(table_id, winner.id if winner else None) from exc

        logger.info(
            f"Account {account.id} closed for table #{table_number}: "
            f"{len(account.orders)} orders, total={account.total}"
        )
        return account

    async def _reload(self, db: AsyncSession, account_id: str) -> TableAccount:
        account = await db.scalar(
            select(TableAccount)
            .where(TableAccount.id == account_id)
            .execution_options(populate_existing=True)
        )
        if account is None:
            raise NotFoundError("Account", account_id)
        return account

    # =========================================================================
    # ADMINISTRATIVE CANCELLATION
    # =========================================================================

    async def cancel_account(
        self,
        db: AsyncSession,
        account_id: str,
        reason: Optional[str] = None,
    ) -> TableAccount:
        """
        Void a closed account (staff override).

        The account's orders are marked voided so they never reappear on a
        later bill, and the table is freed.

        Raises:
            NotFoundError: Unknown account
            InvalidStateError: Account is not closed
        """
        return await self._bounded("cancel account", self._cancel(db, account_id, reason))

    async def _cancel(self, db: AsyncSession, account_id: str, reason: Optional[str]) -> TableAccount:
        async with db.begin():
            account = await db.get(TableAccount, account_id)
            if account is None:
                raise NotFoundError("Account", account_id)
            if account.status != AccountStatus.CLOSED:
                raise InvalidStateError(
                    f"Only closed accounts can be cancelled (account is '{account.status.value}')"
                )

            values = {"status": AccountStatus.CANCELLED, "cancelled_at": utc_now()}
            if reason:
                values["notes"] = reason
            result = await db.execute(
                update(TableAccount)
                .where(TableAccount.id == account_id, TableAccount.status == AccountStatus.CLOSED)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateError(f"Account {account_id} changed state concurrently")

            await db.execute(
                update(Order)
                .where(Order.account_id == account_id, Order.payment_status == PaymentStatus.PENDING)
                .values(payment_status=PaymentStatus.VOIDED, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                update(Table)
                .where(Table.id == account.table_id)
                .values(status=TableStatus.FREE, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            account = await self._reload(db, account_id)

        logger.info(f"Account {account_id} cancelled by staff")
        return account

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_account(self, db: AsyncSession, account_id: str) -> TableAccount:
        async def _get() -> TableAccount:
            async with db.begin():
                return await self._reload(db, account_id)

        return await self._bounded("get account", _get())

    async def list_accounts(
        self,
        db: AsyncSession,
        status: Optional[AccountStatus] = None,
        table_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[TableAccount]:
        async def _list() -> list[TableAccount]:
            query = select(TableAccount).order_by(TableAccount.closed_at.desc())
            if status is not None:
                query = query.where(TableAccount.status == status)
            if table_id is not None:
                query = query.where(TableAccount.table_id == table_id)
            async with db.begin():
                result = await db.execute(query.offset(skip).limit(limit))
                return list(result.scalars().unique().all())

        return await self._bounded("list accounts", _list())
