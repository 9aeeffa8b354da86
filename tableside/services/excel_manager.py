"""
Revenue Ledger Manager with Concurrency Control

Appends settled table accounts to an Excel workbook. Several Celery workers
may write at once, so every read-modify-write of the file happens under a
FileLock. Appending is idempotent by account id: a settlement that is
reported twice (client retry, task redelivery) produces one ledger row.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import pandas as pd
from filelock import FileLock, Timeout

from tableside.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class ExcelManager:
    """File-locked revenue ledger."""

    LEDGER_COLUMNS = [
        "account_id",
        "table_number",
        "total",
        "payment_method",
        "order_count",
        "order_numbers",
        "opened_at",
        "closed_at",
        "paid_at",
        "exported_at",
    ]

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.data_dir = Path(settings.data_directory)
        self.ledger_file = self.data_dir / settings.ledger_filename
        self.lock_file = self.data_dir / f"{settings.ledger_filename}.lock"
        self.lock_timeout = settings.ledger_lock_timeout

    def _ensure_data_dir(self) -> None:
        """Create data directory if needed."""
        if not self.data_dir.exists():
            self.data_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {self.data_dir}")

    def _load_or_create_df(self) -> pd.DataFrame:
        """Load existing ledger or create an empty one."""
        if self.ledger_file.exists():
            return pd.read_excel(self.ledger_file, engine="openpyxl", dtype={"account_id": str})
        return pd.DataFrame(columns=self.LEDGER_COLUMNS)

    def export_settlement(self, settlement: dict[str, Any]) -> dict[str, Any]:
        """Append a settled account to the ledger with file locking."""
        self._ensure_data_dir()

        account_id = settlement.get("account_id", "unknown")
        result = {
            "success": False,
            "message": "",
            "account_id": account_id,
            "exported_at": None,
        }

        try:
            lock = FileLock(str(self.lock_file), timeout=self.lock_timeout)

            with lock:
                logger.debug(f"Lock acquired for account {account_id}")

                df = self._load_or_create_df()

                if account_id in set(df["account_id"].astype(str)):
                    result["success"] = True
                    result["message"] = f"Account {account_id} already in ledger"
                    logger.info(result["message"])
                    return result

                export_time = datetime.now().isoformat()
                order_numbers = settlement.get("order_numbers") or []
                new_row = {
                    "account_id": account_id,
                    "table_number": settlement.get("table_number"),
                    "total": settlement.get("total"),
                    "payment_method": settlement.get("payment_method"),
                    "order_count": len(order_numbers),
                    "order_numbers": ",".join(str(n) for n in order_numbers),
                    "opened_at": settlement.get("opened_at"),
                    "closed_at": settlement.get("closed_at"),
                    "paid_at": settlement.get("paid_at"),
                    "exported_at": export_time,
                }

                df = pd.concat([df, pd.DataFrame([new_row])], ignore_index=True)
                df.to_excel(str(self.ledger_file), index=False, engine="openpyxl")

                logger.info(f"Account {account_id} recorded in revenue ledger")

                result["success"] = True
                result["message"] = f"Account {account_id} exported"
                result["exported_at"] = export_time

            logger.debug(f"Lock released for account {account_id}")

        except Timeout:
            result["message"] = f"Lock timeout ({self.lock_timeout}s)"
            logger.error(f"Ledger lock timeout for account {account_id}")

        return result

    def get_all_settlements(self) -> list[dict[str, Any]]:
        """Read every ledger row."""
        if not self.ledger_file.exists():
            return []
        df = pd.read_excel(self.ledger_file, engine="openpyxl", dtype={"account_id": str})
        return df.to_dict("records")

    def clear_ledger(self) -> bool:
        """Delete the ledger and its lock file."""
        for f in [self.ledger_file, self.lock_file]:
            if f.exists():
                f.unlink()
        logger.info("Revenue ledger cleared")
        return True
