"""
Celery Tasks
Background tasks that run after a table account is settled.
"""

import logging
import time
from typing import Any

from tableside.celery_worker import celery_app
from tableside.models import TableAccount
from tableside.services.excel_manager import ExcelManager

logger = logging.getLogger(__name__)


def settlement_payload(account: TableAccount) -> dict[str, Any]:
    """JSON-safe summary of a paid account for the revenue ledger."""
    return {
        "account_id": account.id,
        "table_number": account.table.number if account.table else None,
        "total": str(account.total),
        "payment_method": account.payment_method.value if account.payment_method else None,
        "order_numbers": [o.order_number for o in account.orders],
        "opened_at": account.opened_at.isoformat() if account.opened_at else None,
        "closed_at": account.closed_at.isoformat() if account.closed_at else None,
        "paid_at": account.paid_at.isoformat() if account.paid_at else None,
    }


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def record_settlement(self, settlement: dict) -> dict:
    """
    Append a settled account to the revenue ledger.

    Args:
        settlement: Output of settlement_payload()

    Returns:
        dict: Result of the export operation
    """
    task_id = self.request.id
    account_id = settlement.get('account_id', 'unknown')

    logger.info(f"Task {task_id}: recording account {account_id}")
    start_time = time.time()

    result = ExcelManager().export_settlement(settlement)

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed

    if result['success']:
        logger.info(f"Task {task_id}: account {account_id} recorded in {elapsed}s")
    else:
        logger.warning(f"Task {task_id}: account {account_id} not recorded - {result['message']}")

    return result

