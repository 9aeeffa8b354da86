"""
Revenue Ledger Verification Script

Checks the Excel revenue ledger after a simulation: every settled account
must appear exactly once.
Run from project root: python scripts/verify.py
"""

import os
import sys
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pandas as pd

from tableside.core.config import get_settings
from tableside.services.excel_manager import ExcelManager


def verify_ledger() -> bool:
    """Verify ledger integrity. Returns False on missing file or duplicates."""
    ledger = ExcelManager(get_settings())

    print("=" * 60)
    print("REVENUE LEDGER VERIFICATION")
    print("=" * 60)
    print(f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"File: {ledger.ledger_file}")
    print("=" * 60)

    if not ledger.ledger_file.exists():
        print("\nLedger file not found!")
        print("   Run the simulation first: python scripts/simulate.py")
        return False

    try:
        df = pd.read_excel(ledger.ledger_file, engine="openpyxl", dtype={"account_id": str})
    except Exception as e:
        print(f"\nCould not read ledger: {e}")
        return False

    print(f"\nSettled accounts: {len(df)}")

    missing = [col for col in ExcelManager.LEDGER_COLUMNS if col not in df.columns]
    if missing:
        print(f"Missing columns: {missing}")
    else:
        print("All ledger columns present")

    duplicates = int(df["account_id"].duplicated().sum()) if "account_id" in df.columns else 0
    if duplicates:
        print(f"{duplicates} duplicate account ids found!")
    else:
        print("No duplicate account ids")

    if "total" in df.columns and len(df) > 0:
        totals = pd.to_numeric(df["total"], errors="coerce")
        print("\nREVENUE:")
        print(f"   Total: {totals.sum():.2f}")
        print(f"   Average bill: {totals.mean():.2f}")

    if "payment_method" in df.columns and len(df) > 0:
        print("\nBY PAYMENT METHOD:")
        for method, count in df["payment_method"].value_counts().items():
            print(f"   {method}: {count}")

    print("\nRECENT SETTLEMENTS:")
    print("-" * 60)
    if len(df) > 0:
        cols = [c for c in ["account_id", "table_number", "total", "payment_method", "paid_at"] if c in df.columns]
        print(df[cols].tail(5).to_string(index=False))

    print("\n" + "=" * 60)
    print("VERIFICATION " + ("FAILED" if duplicates or missing else "COMPLETE"))
    print("=" * 60)

    return not duplicates and not missing


if __name__ == "__main__":
    sys.exit(0 if verify_ledger() else 1)
