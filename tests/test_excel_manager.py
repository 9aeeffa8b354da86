from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from tableside.celery_worker import celery_app
from tableside.core.config import get_settings
from tableside.services.excel_manager import ExcelManager
from tableside.tasks import record_settlement, settlement_payload


def make_settlement(account_id: str, total: str = "63.50") -> dict:
    return {
        "account_id": account_id,
        "table_number": 7,
        "total": total,
        "payment_method": "pix",
        "order_numbers": [1, 2],
        "opened_at": "2026-03-01T19:02:11",
        "closed_at": "2026-03-01T21:40:00",
        "paid_at": "2026-03-01T21:43:27",
    }


@pytest.fixture
def ledger(settings) -> ExcelManager:
    return ExcelManager(settings)


class TestExcelManager:
    def test_empty_ledger(self, ledger):
        assert ledger.get_all_settlements() == []

    def test_export_creates_ledger(self, ledger):
        result = ledger.export_settlement(make_settlement("acc-1"))

        assert result["success"] is True
        assert result["exported_at"] is not None
        assert ledger.ledger_file.exists()

        rows = ledger.get_all_settlements()
        assert len(rows) == 1
        assert rows[0]["account_id"] == "acc-1"
        assert rows[0]["order_count"] == 2
        assert rows[0]["order_numbers"] == "1,2"

    def test_export_is_idempotent_by_account(self, ledger):
        ledger.export_settlement(make_settlement("acc-1"))
        again = ledger.export_settlement(make_settlement("acc-1"))

        assert again["success"] is True
        assert "already" in again["message"]
        assert len(ledger.get_all_settlements()) == 1

    def test_appends_distinct_accounts(self, ledger):
        for account_id in ("acc-1", "acc-2", "acc-3"):
            ledger.export_settlement(make_settlement(account_id))

        assert [r["account_id"] for r in ledger.get_all_settlements()] == ["acc-1", "acc-2", "acc-3"]

    def test_clear_ledger(self, ledger):
        ledger.export_settlement(make_settlement("acc-1"))

        assert ledger.clear_ledger() is True
        assert not ledger.ledger_file.exists()


class TestRecordSettlementTask:
    def test_payload_is_json_safe(self):
        paid_at = datetime(2026, 3, 1, 21, 43, 27, tzinfo=timezone.utc)
        account = SimpleNamespace(
            id="acc-9",
            table=SimpleNamespace(number=7),
            total="63.50",
            payment_method=SimpleNamespace(value="pix"),
            orders=[SimpleNamespace(order_number=3), SimpleNamespace(order_number=5)],
            opened_at=paid_at,
            closed_at=paid_at,
            paid_at=paid_at,
        )

        payload = settlement_payload(account)

        assert payload["account_id"] == "acc-9"
        assert payload["table_number"] == 7
        assert payload["total"] == "63.50"
        assert payload["payment_method"] == "pix"
        assert payload["order_numbers"] == [3, 5]
        assert payload["paid_at"] == "2026-03-01T21:43:27+00:00"

    def test_task_writes_ledger(self, settings, monkeypatch):
        monkeypatch.setattr("tableside.services.excel_manager.get_settings", lambda: settings)

        result = record_settlement.apply(args=[make_settlement("acc-7")]).get()

        assert result["success"] is True
        assert result["account_id"] == "acc-7"
        assert [r["account_id"] for r in ExcelManager(settings).get_all_settlements()] == ["acc-7"]

    def test_worker_is_configured_from_settings(self):
        settings = get_settings()

        assert celery_app.conf.broker_url == settings.redis_url
        assert celery_app.conf.task_default_queue == settings.ledger_queue
        assert celery_app.conf.worker_concurrency == settings.ledger_worker_concurrency
        assert celery_app.conf.result_expires == settings.task_result_ttl_seconds
