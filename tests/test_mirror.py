from datetime import datetime
from unittest.mock import MagicMock, patch

import httpx
from sqlalchemy.exc import OperationalError

from reconciler.models import OrderMirror
from reconciler.services.mirror import (
    MirrorSync,
    RestMirrorWriter,
    SqlMirrorWriter,
    SyncStatus,
    to_mirror_record,
)


def ledger_row(**overrides):
    row = {
        "payment_id": "pay_001",
        "patient_id": "P001",
        "order_id": "ord_001",
        "product_code": "MJL_2.5mg_1m",
        "items": "マンジャロ 2.5mg",
        "amount": "13000",
        "order_datetime": "2025-01-15T00:30:00Z",
        "payment_status": "COMPLETED",
        "refund_status": "",
        "refunded_amount": "",
        "refunded_at": "",
        "refund_id": "",
        "ship_name": "山田太郎",
        "postal": "1234567",
        "address": "東京都千代田区1-1",
        "email": "taro@example.com",
        "phone": "09012345678",
        "shipping_status": "",
        "shipping_date": "",
        "tracking_number": "",
        "carrier": "",
    }
    row.update(overrides)
    return row


class TestMirrorRecord:
    def test_field_mapping(self):
        record = to_mirror_record(ledger_row(), tenant_id="clinic-a")

        assert record["id"] == "pay_001"
        assert record["tenant_id"] == "clinic-a"
        assert record["amount"] == 13000
        assert record["paid_at"] == datetime(2025, 1, 15, 0, 30)
        assert record["product_name"] == "マンジャロ 2.5mg"
        assert record["shipping_name"] == "山田太郎"
        assert record["postal_code"] == "1234567"

    def test_defaults_for_blank_values(self):
        record = to_mirror_record(ledger_row(patient_id="", amount="", payment_status="", shipping_status=""))

        assert record["patient_id"] is None
        assert record["amount"] == 0
        assert record["payment_status"] == "COMPLETED"
        assert record["shipping_status"] == "pending"
        assert record["refunded_at"] is None


class TestSqlMirrorWriter:
    def test_upsert_inserts_then_updates(self, mirror_db, db):
        sync = MirrorSync(SqlMirrorWriter(mirror_db), tenant_id="clinic-a")

        assert sync.sync_row(ledger_row()).status == SyncStatus.SYNCED
        assert sync.sync_row(ledger_row(refund_status="COMPLETED", refunded_amount="13000")).ok

        rows = db.query(OrderMirror).all()
        assert len(rows) == 1
        assert rows[0].refund_status == "COMPLETED"
        assert rows[0].refunded_amount == 13000
        assert rows[0].patient_id == "P001"

    def test_row_without_patient_is_mirrored(self, mirror_db, db):
        sync = MirrorSync(SqlMirrorWriter(mirror_db))
        sync.sync_row(ledger_row(patient_id=""))

        order = db.query(OrderMirror).filter(OrderMirror.id == "pay_001").first()
        assert order is not None
        assert order.patient_id is None

    def test_resync_is_idempotent(self, mirror_db, db):
        sync = MirrorSync(SqlMirrorWriter(mirror_db))
        rows = [ledger_row(payment_id=f"pay_{i}") for i in range(3)]
        sync.sync_rows(rows)
        summary = sync.sync_rows(rows)

        assert summary.synced == 3
        assert db.query(OrderMirror).count() == 3


class TestMirrorSync:
    def test_disabled_writer_skips(self):
        result = MirrorSync(None).sync_row(ledger_row())
        assert result.status == SyncStatus.SKIPPED
        assert result.ok

    def test_missing_payment_id_skips(self):
        writer = MagicMock()
        result = MirrorSync(writer).sync_row(ledger_row(payment_id=""))
        assert result.status == SyncStatus.SKIPPED
        writer.upsert.assert_not_called()

    def test_database_error_reported_not_raised(self):
        writer = MagicMock()
        writer.upsert.side_effect = OperationalError("INSERT", {}, Exception("connection refused"))

        result = MirrorSync(writer).sync_row(ledger_row())

        assert result.status == SyncStatus.FAILED
        assert not result.ok
        assert "connection refused" in result.error

    def test_summary_counts(self):
        writer = MagicMock()
        writer.upsert.side_effect = [None, httpx.ConnectError("down"), None]

        summary = MirrorSync(writer).sync_rows([
            ledger_row(payment_id="pay_1"),
            ledger_row(payment_id="pay_2"),
            ledger_row(payment_id=""),
            ledger_row(payment_id="pay_3"),
        ])

        assert summary.total == 4
        assert summary.synced == 2
        assert summary.failed == 1
        assert summary.skipped == 1
        assert summary.errors[0].startswith("pay_2:")

    def test_unexpected_error_reported_not_raised(self):
        writer = MagicMock()
        writer.upsert.side_effect = OverflowError("Python int too large to convert to SQLite INTEGER")

        result = MirrorSync(writer).sync_row(ledger_row())

        assert result.status == SyncStatus.FAILED
        assert "too large" in result.error

    def test_source_row_replaces_snapshot(self):
        writer = MagicMock()
        current = {"pay_001": ledger_row(refund_status="COMPLETED")}
        sync = MirrorSync(writer, source=current.get)

        result = sync.sync_row(ledger_row(refund_status=""))

        assert result.status == SyncStatus.SYNCED
        assert writer.upsert.call_args[0][0]["refund_status"] == "COMPLETED"

    def test_row_gone_from_source_skips(self):
        writer = MagicMock()
        result = MirrorSync(writer, source=lambda payment_id: None).sync_row(ledger_row())
        assert result.status == SyncStatus.SKIPPED
        writer.upsert.assert_not_called()


class TestRestMirrorWriter:
    @patch("reconciler.services.mirror.httpx.post")
    def test_posts_upsert(self, mock_post):
        mock_post.return_value = MagicMock(status_code=201)
        writer = RestMirrorWriter("https://db.example.com/", "service-key", timeout=3.0)

        writer.upsert(to_mirror_record(ledger_row()))

        args, kwargs = mock_post.call_args
        assert args[0] == "https://db.example.com/rest/v1/orders"
        assert kwargs["params"] == {"on_conflict": "id"}
        assert kwargs["headers"]["Prefer"] == "resolution=merge-duplicates"
        assert kwargs["headers"]["apikey"] == "service-key"
        assert kwargs["timeout"] == 3.0
        payload = kwargs["json"][0]
        assert payload["id"] == "pay_001"
        assert payload["paid_at"] == "2025-01-15T00:30:00Z"
        assert payload["updated_at"].endswith("Z")
        assert datetime.fromisoformat(payload["updated_at"][:-1]).year >= 2025

    @patch("reconciler.services.mirror.httpx.post")
    def test_http_error_becomes_failed_result(self, mock_post):
        response = MagicMock()
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "500 Internal Server Error", request=MagicMock(), response=MagicMock()
        )
        mock_post.return_value = response

        sync = MirrorSync(RestMirrorWriter("https://db.example.com", "key"))
        result = sync.sync_row(ledger_row())

        assert result.status == SyncStatus.FAILED
