import unittest
from unittest.mock import patch

from receipt_cloud.db import InMemoryTableGateway
from receipt_cloud.errors import GatewayError
from receipt_cloud.receipts import LookupStatus, ReceiptStore, parse_amount
from receipt_cloud.schemas import ReceiptRecord, ReceiptStatus
from receipt_cloud.serials import SerialIssuer


def make_receipt(**overrides) -> ReceiptRecord:
    fields = {
        "serial_number": "2026-N-0007",
        "customer_name": "张三",
        "customer_phone": "13800138000",
        "membership_type": "守护·家园年卡",
        "membership_label": "【标准】守护·家园年卡",
        "amount": 2580,
        "contract_date": "2026-01-30",
        "handler_name": "测试管家",
        "pdf_url": "https://example.test/receipts/pdfs/a.pdf",
        "pdf_path": "pdfs/a.pdf",
        "pdf_size": 123456,
        "status": "active",
        "notes": "首次签约",
        "metadata": {"source": "web"},
    }
    fields.update(overrides)
    return ReceiptRecord(**fields)


class ReceiptStoreTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryTableGateway()
        self.store = ReceiptStore(self.db)

    def test_save_then_get_round_trips_set_fields(self):
        receipt = make_receipt()
        self.assertTrue(self.store.save_receipt(receipt))
        fetched = self.store.get_by_serial(receipt.serial_number)
        self.assertIsNotNone(fetched)
        explicit = receipt.model_dump(exclude_unset=True)
        self.assertEqual(fetched.model_dump(include=set(explicit)), explicit)

    def test_save_applies_defaults(self):
        self.store.save_receipt(ReceiptRecord(serial_number="2026-N-0001", customer_name="A"))
        fetched = self.store.get_by_serial("2026-N-0001")
        self.assertEqual(fetched.status, "active")
        self.assertEqual(fetched.customer_phone, "")
        self.assertEqual(fetched.pdf_size, 0)
        self.assertEqual(fetched.metadata, {})
        self.assertIsNotNone(fetched.pdf_generated_at)
        self.assertIsNotNone(fetched.updated_at)

    def test_second_save_overwrites(self):
        self.store.save_receipt(make_receipt(customer_name="张三"))
        self.store.save_receipt(make_receipt(customer_name="李四"))
        self.assertEqual(len(self.db.tables["serial_numbers"]), 1)
        self.assertEqual(self.store.get_by_serial("2026-N-0007").customer_name, "李四")

    def test_save_enriches_issued_serial_row(self):
        serial = SerialIssuer(self.db).issue_serial("张三", 2580)
        created_at = self.db.tables["serial_numbers"][0]["created_at"]
        self.assertTrue(self.store.save_receipt(make_receipt(serial_number=serial)))
        rows = self.db.tables["serial_numbers"]
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["handler_name"], "测试管家")
        self.assertEqual(rows[0]["created_at"], created_at)

    def test_save_returns_false_on_backend_error(self):
        with patch.object(self.db, "upsert", side_effect=GatewayError("permission denied")):
            self.assertFalse(self.store.save_receipt(make_receipt()))

    def test_lookup_distinguishes_not_found_from_error(self):
        self.assertEqual(self.store.lookup("missing").status, LookupStatus.NOT_FOUND)
        with patch.object(self.db, "select", side_effect=GatewayError("network down")):
            result = self.store.lookup("missing")
        self.assertEqual(result.status, LookupStatus.ERROR)
        self.assertEqual(result.error.message, "network down")

    def test_get_by_serial_collapses_error_to_none(self):
        self.store.save_receipt(make_receipt())
        with patch.object(self.db, "select", side_effect=GatewayError("network down")):
            self.assertIsNone(self.store.get_by_serial("2026-N-0007"))
        self.assertIsNone(self.store.get_by_serial("2026-N-9999"))

    def test_recent_is_newest_first_and_bounded(self):
        for i in range(1, 4):
            self.store.save_receipt(make_receipt(serial_number=f"2026-N-000{i}"))
        recent = self.store.get_recent(limit=2)
        self.assertEqual([r.serial_number for r in recent], ["2026-N-0003", "2026-N-0002"])

    def test_recent_empty_on_error(self):
        with patch.object(self.db, "select", side_effect=GatewayError("boom")):
            self.assertEqual(self.store.get_recent(), [])

    def test_search_matches_name_serial_and_phone(self):
        self.store.save_receipt(
            make_receipt(serial_number="2026-N-0007", customer_name="张三", customer_phone="13800000001")
        )
        self.store.save_receipt(
            make_receipt(serial_number="2026-N-0008", customer_name="Li Si", customer_phone="13900000002")
        )
        self.assertEqual([r.serial_number for r in self.store.search("张三")], ["2026-N-0007"])
        self.assertEqual([r.serial_number for r in self.store.search("0007")], ["2026-N-0007"])
        self.assertEqual([r.serial_number for r in self.store.search("1390000")], ["2026-N-0008"])
        self.assertEqual([r.serial_number for r in self.store.search("li si")], ["2026-N-0008"])
        self.assertEqual(self.store.search("nobody"), [])

    def test_search_respects_limit(self):
        for i in range(1, 5):
            self.store.save_receipt(make_receipt(serial_number=f"2026-N-000{i}"))
        self.assertEqual(len(self.store.search("2026-N", limit=3)), 3)

    def test_update_status_allows_any_transition_by_default(self):
        self.store.save_receipt(make_receipt(status="expired"))
        self.assertTrue(self.store.update_status("2026-N-0007", "active"))
        self.assertEqual(self.store.get_by_serial("2026-N-0007").status, "active")

    def test_update_status_sets_notes_only_when_given(self):
        self.store.save_receipt(make_receipt(notes="original"))
        self.store.update_status("2026-N-0007", ReceiptStatus.CANCELLED)
        self.assertEqual(self.store.get_by_serial("2026-N-0007").notes, "original")
        self.store.update_status("2026-N-0007", ReceiptStatus.CANCELLED, notes="客户退款")
        fetched = self.store.get_by_serial("2026-N-0007")
        self.assertEqual(fetched.status, "cancelled")
        self.assertEqual(fetched.notes, "客户退款")

    def test_update_status_rejects_unknown_status(self):
        self.store.save_receipt(make_receipt())
        self.assertFalse(self.store.update_status("2026-N-0007", "archived"))
        self.assertEqual(self.store.get_by_serial("2026-N-0007").status, "active")

    def test_update_status_false_on_backend_error(self):
        with patch.object(self.db, "update", side_effect=GatewayError("boom")):
            self.assertFalse(self.store.update_status("2026-N-0007", "cancelled"))

    def test_strict_transitions(self):
        store = ReceiptStore(self.db, strict_transitions=True)
        store.save_receipt(make_receipt())
        self.assertTrue(store.update_status("2026-N-0007", "cancelled"))
        self.assertFalse(store.update_status("2026-N-0007", "active"))
        self.assertEqual(store.get_by_serial("2026-N-0007").status, "cancelled")
        self.assertFalse(store.update_status("2026-N-0404", "expired"))

    def add_row(self, serial, amount, status="active"):
        self.db.insert(
            "serial_numbers",
            {"serial_number": serial, "amount": 0, "status": status},
        )
        # Rows written by older clients can carry amounts the column would now reject.
        self.db.tables["serial_numbers"][-1]["amount"] = amount

    def test_statistics(self):
        for serial, amount, status in [
            ("2026-N-0001", 100, "active"),
            ("2026-N-0002", 200, "active"),
            ("2026-N-0003", "bad", "cancelled"),
        ]:
            self.add_row(serial, amount, status)
        stats = self.store.get_statistics()
        self.assertEqual(stats.total, 3)
        self.assertEqual(stats.total_amount, 300)
        self.assertEqual(stats.active, 2)
        self.assertEqual(stats.cancelled, 1)
        self.assertEqual(stats.average_amount, 100)

    def test_statistics_date_bounds_are_inclusive(self):
        for serial, created_at in [
            ("2026-N-0001", "2026-01-01T00:00:00+00:00"),
            ("2026-N-0002", "2026-02-01T00:00:00+00:00"),
            ("2026-N-0003", "2026-03-01T00:00:00+00:00"),
        ]:
            self.db.insert(
                "serial_numbers",
                {"serial_number": serial, "amount": 10, "created_at": created_at},
            )
        stats = self.store.get_statistics(
            "2026-02-01T00:00:00+00:00", "2026-03-01T00:00:00+00:00"
        )
        self.assertEqual(stats.total, 2)
        self.assertEqual(stats.total_amount, 20)

    def test_statistics_empty(self):
        stats = self.store.get_statistics()
        self.assertEqual(stats.total, 0)
        self.assertEqual(stats.average_amount, 0)

    def test_statistics_none_on_error(self):
        with patch.object(self.db, "select", side_effect=GatewayError("boom")):
            self.assertIsNone(self.store.get_statistics())

    def test_listings_keep_rows_next_to_unparseable_amount(self):
        self.add_row("2026-N-0001", 100)
        self.add_row("2026-N-0002", "bad")

        recent = {r.serial_number: r.amount for r in self.store.get_recent()}
        self.assertEqual(recent, {"2026-N-0001": 100, "2026-N-0002": 0})

        found = {r.serial_number for r in self.store.search("2026-N")}
        self.assertEqual(found, {"2026-N-0001", "2026-N-0002"})

        self.assertEqual(self.store.get_by_serial("2026-N-0002").amount, 0)
        self.assertEqual(self.store.get_statistics().total_amount, 100)

    def test_listings_skip_only_malformed_rows(self):
        self.add_row("2026-N-0001", 100)
        self.add_row("2026-N-0002", 200)
        self.db.tables["serial_numbers"][-1]["customer_name"] = {"not": "a name"}

        with self.assertLogs("receipt_cloud.receipts", level="WARNING"):
            recent = self.store.get_recent()
        self.assertEqual([r.serial_number for r in recent], ["2026-N-0001"])

    def test_parse_amount(self):
        self.assertEqual(parse_amount("12.5"), 12.5)
        self.assertEqual(parse_amount(None), 0)
        self.assertEqual(parse_amount("bad"), 0)
        self.assertEqual(parse_amount("nan"), 0)


if __name__ == "__main__":
    unittest.main()
