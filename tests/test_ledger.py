import pytest

from reconciler.services.index import IdentityIndex
from reconciler.services.ledger import (
    LEDGER_FIELDS,
    LedgerStore,
    MissingKeyError,
    UnknownFieldError,
    exclusion_reason,
    normalize_record,
    SkipReason,
)
from reconciler.sheets import MemorySheet


def _record(store, key):
    record = store.get(key)
    record.pop("row")
    return record


class TestHeaderBinding:
    def test_empty_sheet_gets_full_header(self, store):
        store.header_map()
        assert store.sheet.header() == LEDGER_FIELDS

    def test_missing_columns_appended_after_existing(self):
        sheet = MemorySheet("ledger", header=["payment_id", "amount", "memo"])
        store = LedgerStore(sheet)
        store.header_map()
        header = sheet.header()
        assert header[:3] == ["payment_id", "amount", "memo"]
        assert set(LEDGER_FIELDS) <= set(header)

    def test_columns_resolved_by_name_not_position(self):
        sheet = MemorySheet("ledger", header=list(reversed(LEDGER_FIELDS)))
        store = LedgerStore(sheet)
        store.upsert_row("pay_1", {"patient_id": "P1", "amount": "1000"})

        header = sheet.header()
        values = sheet.read_row(2)
        assert values[header.index("payment_id")] == "pay_1"
        assert values[header.index("patient_id")] == "P1"
        assert values[header.index("amount")] == "1000"

    def test_reordered_between_operations(self):
        sheet = MemorySheet("ledger")
        store = LedgerStore(sheet)
        store.upsert_row("pay_1", {"patient_id": "P1"})

        # Another writer inserts a column at the front
        sheet._rows = [["memo"] + r for r in sheet._rows]
        sheet._rows[1][0] = "hand note"

        store.upsert_row("pay_1", {"amount": "2000"})
        record = _record(store, "pay_1")
        assert record["patient_id"] == "P1"
        assert record["amount"] == "2000"
        assert sheet.read_row(2)[0] == "hand note"

    def test_legacy_header_aliases(self):
        legacy = [("patientId" if f == "patient_id" else f) for f in LEDGER_FIELDS]
        sheet = MemorySheet("ledger", header=legacy)
        store = LedgerStore(sheet)
        store.upsert_row("pay_1", {"patient_id": "P9"})

        assert "patient_id" not in sheet.header()
        assert sheet.read_row(2)[legacy.index("patientId")] == "P9"
        assert store.get("pay_1")["patient_id"] == "P9"


class TestUpsert:
    def test_insert_then_merge_keeps_single_row(self, store):
        first = store.upsert_row("pay_1", {"payment_status": "COMPLETED"})
        second = store.upsert_row("pay_1", {"amount": "1000"})

        assert first.created is True
        assert second.created is False
        assert first.row == second.row == 2
        assert store.sheet.last_row() == 2

    def test_repeated_event_is_idempotent(self, store):
        fields = {"patient_id": "P1", "amount": "1000", "payment_status": "COMPLETED"}
        store.upsert_row("pay_1", fields)
        snapshot = [list(r) for r in store.sheet._rows]
        store.upsert_row("pay_1", fields)
        assert store.sheet._rows == snapshot

    def test_absent_fields_are_not_clobbered(self, store):
        store.upsert_row("pay_1", {"patient_id": "P1", "amount": "1000", "email": "a@example.com"})
        store.upsert_row("pay_1", {"refund_status": "COMPLETED", "refunded_amount": "1000"})

        record = _record(store, "pay_1")
        assert record["patient_id"] == "P1"
        assert record["email"] == "a@example.com"
        assert record["refund_status"] == "COMPLETED"

    def test_order_independence(self):
        completed = {"patient_id": "P1", "amount": "1000", "payment_status": "COMPLETED"}
        refund = {"refund_status": "COMPLETED", "refunded_amount": "1000", "refund_id": "rf_1"}

        a = LedgerStore(MemorySheet("a"))
        a.upsert_row("pay_1", completed)
        a.upsert_row("pay_1", refund)

        b = LedgerStore(MemorySheet("b"))
        b.upsert_row("pay_1", refund)
        b.upsert_row("pay_1", completed)

        assert _record(a, "pay_1") == _record(b, "pay_1")

    def test_key_is_never_rewritten(self, store):
        store.upsert_row("pay_1", {"payment_id": "pay_other", "amount": "5"})
        assert store.get("pay_other") is None
        assert store.get("pay_1")["amount"] == "5"

    def test_missing_key_raises(self, store):
        with pytest.raises(MissingKeyError):
            store.upsert_row("", {"amount": "1"})

    def test_unknown_field_raises(self, store):
        with pytest.raises(UnknownFieldError):
            store.upsert_row("pay_1", {"favourite_colour": "blue"})

    def test_patient_index_updated(self, store):
        store.upsert_row("pay_1", {"patient_id": "P1"})
        store.upsert_row("pay_2", {"patient_id": "P1"})
        assert store.patient_index.rows_for("P1") == [3, 2]


class TestIndexRepair:
    def test_index_points_past_end(self, store):
        store.upsert_row("pay_1", {"amount": "1"})
        store.index.upsert("pay_1", 99)

        assert store.find_row_by_key("pay_1") == 2
        assert store.index.lookup("pay_1") == 2

    def test_index_points_at_other_key(self, store):
        store.upsert_row("pay_1", {"amount": "1"})
        store.upsert_row("pay_2", {"amount": "2"})
        store.index.upsert("pay_1", 3)

        assert store.get("pay_1")["amount"] == "1"
        assert store.index.lookup("pay_1") == 2

    def test_missing_index_entry_falls_back_to_scan(self, store):
        store.upsert_row("pay_1", {"amount": "1"})
        store.index = IdentityIndex(MemorySheet("fresh_index"))

        result = store.upsert_row("pay_1", {"amount": "2"})
        assert result.created is False
        assert store.sheet.last_row() == 2
        assert store.index.lookup("pay_1") == 2

    def test_stale_index_never_creates_duplicate(self, store):
        store.upsert_row("pay_1", {"amount": "1"})
        store.index.discard("pay_1")
        store.upsert_row("pay_1", {"amount": "2"})
        assert store.scan_keys() == {"pay_1": 2}


class TestExclusion:
    def test_refund_present(self):
        assert exclusion_reason({"payment_id": "p", "refund_status": "COMPLETED"}) == SkipReason.REFUND_PRESENT

    def test_failed_status_case_insensitive(self):
        assert exclusion_reason({"payment_id": "p", "payment_status": "failed"}) == SkipReason.FAILED_STATUS

    def test_missing_key(self):
        assert exclusion_reason({"payment_id": " "}) == SkipReason.MISSING_KEY

    def test_first_reason_wins(self):
        row = {"payment_id": "", "refund_status": "COMPLETED", "payment_status": "FAILED"}
        assert exclusion_reason(row) == SkipReason.REFUND_PRESENT

    def test_valid_row(self):
        assert exclusion_reason({"payment_id": "p", "payment_status": "COMPLETED"}) is None


class TestAppendBatch:
    def test_mixed_batch_counts_each_row_once(self, store):
        rows = [{"payment_id": f"pay_{i}", "payment_status": "COMPLETED"} for i in range(5)]
        rows += [
            {"payment_id": "pay_r1", "refund_status": "COMPLETED"},
            {"payment_id": "pay_r2", "refund_status": "COMPLETED", "payment_status": "FAILED"},
            {"payment_id": "pay_f1", "payment_status": "failed"},
            {"payment_id": "pay_f2", "payment_status": "FAILED"},
            {"payment_id": "", "payment_status": "COMPLETED"},
        ]

        result = store.append_batch(rows)

        assert result.appended == 5
        assert result.skipped_total == 5
        assert result.skipped["refund_present"] == 2
        assert result.skipped["failed_status"] == 2
        assert result.skipped["missing_key"] == 1
        assert store.sheet.last_row() == 6
        assert store.index.verify(store).consistent

    def test_existing_and_repeated_keys_merge(self, store):
        store.upsert_row("pay_1", {"patient_id": "P1"})

        result = store.append_batch([
            {"payment_id": "pay_1", "amount": "500"},
            {"payment_id": "pay_2"},
            {"payment_id": "pay_2", "patient_id": "P2"},
        ])

        assert result.appended == 1
        assert result.merged == 2
        assert store.sheet.last_row() == 3
        assert store.get("pay_1")["patient_id"] == "P1"
        assert store.get("pay_1")["amount"] == "500"
        assert store.get("pay_2")["patient_id"] == "P2"

    def test_blank_cells_do_not_erase(self, store):
        store.upsert_row("pay_1", {"patient_id": "P1", "email": "a@example.com"})
        store.append_batch([{"payment_id": "pay_1", "patient_id": "", "email": "", "amount": "900"}])

        record = store.get("pay_1")
        assert record["patient_id"] == "P1"
        assert record["email"] == "a@example.com"
        assert record["amount"] == "900"

    def test_rows_are_normalized(self, store):
        store.append_batch([{
            "payment_id": "pay_1.0",
            "order_datetime": "2025/01/15 09:30:00",
            "amount": "¥13,000",
            "postal": "123-4567",
            "tracking_number": "123456789012",
        }])

        record = store.get("pay_1")
        assert record["order_datetime"] == "2025-01-15T00:30:00Z"
        assert record["amount"] == "13000"
        assert record["postal"] == "1234567"
        assert record["carrier"] == "yamato"

    def test_empty_batch(self, store):
        result = store.append_batch([])
        assert result.appended == 0
        assert result.skipped_total == 0


class TestScans:
    def test_reassign_patient(self, store):
        store.upsert_row("pay_1", {"patient_id": "OLD"})
        store.upsert_row("pay_2", {"patient_id": "OTHER"})
        store.upsert_row("pay_3", {"patient_id": "OLD"})

        changed = store.reassign_patient("OLD", "NEW")

        assert [r["payment_id"] for r in changed] == ["pay_1", "pay_3"]
        assert store.get("pay_2")["patient_id"] == "OTHER"
        assert store.get("pay_3")["patient_id"] == "NEW"

    def test_iter_rows_skips_keyless_rows(self, store):
        store.upsert_row("pay_1", {"amount": "1"})
        store.sheet.append_row([""] * len(store.sheet.header()))
        store.upsert_row("pay_2", {"amount": "2"})

        assert [r["payment_id"] for _, r in store.iter_rows()] == ["pay_1", "pay_2"]
        assert store.scan_keys() == {"pay_1": 2, "pay_2": 4}

    def test_normalize_record_only_touches_present_fields(self):
        out = normalize_record({"email": " A@B.COM ", "unrelated": "x"}, "Asia/Tokyo")
        assert out == {"email": "a@b.com"}
