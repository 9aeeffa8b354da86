"""
Payment Settlement Coordinator

Finalizes payment of a closed table account. One transaction marks the
account paid, settles its orders and frees the table. The account status
write is compare-and-set on 'closed', so of two racing settle calls exactly
one applies the side effects and the other returns the already-paid account.

The coordinator is not a payment gateway: it runs after the payment has
been confirmed elsewhere and records which method was used.
"""

import logging
from typing import Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.config import Settings
from tableside.database import run_with_timeout
from tableside.exceptions import InvalidStateError, NotFoundError, ValidationError
from tableside.models import (
    AccountStatus,
    Order,
    PaymentMethod,
    PaymentStatus,
    Table,
    TableAccount,
    TableStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


class PaymentSettlementCoordinator:
    """
    Settles closed accounts exactly once.

    Args:
        settings: Persistence timeout
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    async def settle(
        self,
        db: AsyncSession,
        account_id: str,
        payment_method: Union[PaymentMethod, str],
    ) -> TableAccount:
        """
        Mark a closed account paid, settle its orders and free its table.

        Idempotent by account id: settling an account that is already paid
        returns it unchanged, so a client retrying after a network timeout
        never double-credits the account or frees the table twice.

        Raises:
            ValidationError: Unknown payment method
            NotFoundError: Unknown account
            InvalidStateError: Account is not closed (and not already paid)
            PersistenceTimeoutError: Nothing was applied; safe to retry
        """
        try:
            method = PaymentMethod(payment_method)
        except ValueError as exc:
            valid = [m.value for m in PaymentMethod]
            raise ValidationError(
                f"Invalid payment method '{payment_method}'. Options: {valid}"
            ) from exc

        return await run_with_timeout(
            "settle account",
            self._settle(db, account_id, method),
            self.settings.persistence_timeout_seconds,
        )

    async def _settle(
        self,
        db: AsyncSession,
        account_id: str,
        method: PaymentMethod,
    ) -> TableAccount:
        async with db.begin():
            account = await self._load(db, account_id, lock=True)

            if account.status == AccountStatus.PAID:
                self._log_replay(account, method)
                return account
            if account.status != AccountStatus.CLOSED:
                raise InvalidStateError(
                    f"Account {account_id} is '{account.status.value}'; only closed accounts can be paid"
                )

            paid_at = utc_now()
            claimed = await db.execute(
                update(TableAccount)
                .where(TableAccount.id == account_id, TableAccount.status == AccountStatus.CLOSED)
                .values(
                    status=AccountStatus.PAID,
                    payment_method=method,
                    paid_at=paid_at,
                    updated_at=paid_at,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                # Another settle call won the race
                account = await self._load(db, account_id, refresh=True)
                if account.status == AccountStatus.PAID:
                    self._log_replay(account, method)
                    return account
                raise InvalidStateError(
                    f"Account {account_id} is '{account.status.value}'; only closed accounts can be paid"
                )

            settled = await db.execute(
                update(Order)
                .where(Order.account_id == account_id, Order.payment_status == PaymentStatus.PENDING)
                .values(payment_status=PaymentStatus.SETTLED, updated_at=paid_at)
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                update(Table)
                .where(Table.id == account.table_id)
                .values(status=TableStatus.FREE, updated_at=paid_at)
                .execution_options(synchronize_session=False)
            )

            account = await self._load(db, account_id, refresh=True)

        logger.info(
            f"Account {account_id} paid via {method.value}: total={account.total}, "
            f"{settled.rowcount} orders settled, table #{account.table.number} freed"
        )
        return account

    async def _load(
        self,
        db: AsyncSession,
        account_id: str,
        lock: bool = False,
        refresh: bool = False,
    ) -> TableAccount:
        query = select(TableAccount).where(TableAccount.id == account_id)
        if lock:
            query = query.with_for_update(of=TableAccount)
        if refresh:
            query = query.execution_options(populate_existing=True)
        account = await db.scalar(query)
        if account is None:
            raise NotFoundError("Account", account_id)
        return account

    def _log_replay(self, account: TableAccount, method: PaymentMethod) -> None:
        if account.payment_method != method:
            logger.warning(
                f"Settle retry for account {account.id} with {method.value}; "
                f"already paid via {account.payment_method.value}"
            )
        else:
            logger.info(f"Account {account.id} already paid; returning existing settlement")
