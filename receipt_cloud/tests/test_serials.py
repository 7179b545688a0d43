import re
import unittest
from datetime import datetime
from unittest.mock import patch

from receipt_cloud.db import InMemoryTableGateway
from receipt_cloud.errors import UNIQUE_VIOLATION, GatewayError
from receipt_cloud.serials import SerialIssuer, format_serial, next_number

# 2026-06-09, far enough from a year boundary for any local timezone.
FIXED_NOW = 1781000000.5


class SerialHelpersTests(unittest.TestCase):
    def test_format_pads_to_four_digits_and_widens(self):
        self.assertEqual(format_serial(2026, 7), "2026-N-0007")
        self.assertEqual(format_serial(2026, 12345), "2026-N-12345")

    def test_next_number(self):
        self.assertEqual(next_number(None), 1)
        self.assertEqual(next_number("2026-N-0041"), 42)
        self.assertEqual(next_number("garbage"), 1)


class SerialIssuerTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryTableGateway()
        self.issuer = SerialIssuer(self.db)
        self.year = datetime.now().year

    def test_serial_format_uses_current_year(self):
        serial = self.issuer.issue_serial("张三", 2580)
        self.assertRegex(serial, r"^\d{4}-N-\d+$")
        self.assertTrue(serial.startswith(f"{self.year}-N-"))

    def test_sequential_issuance_is_gapless(self):
        serials = [self.issuer.issue_serial(f"customer {i}", i) for i in range(5)]
        suffixes = [int(s.rsplit("-", 1)[1]) for s in serials]
        self.assertEqual(suffixes, [1, 2, 3, 4, 5])
        self.assertEqual(len(self.db.tables["serial_numbers"]), 5)

    def test_issuance_records_customer_and_amount(self):
        serial = self.issuer.issue_serial("李四", 199)
        rows = self.db.select("serial_numbers")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["serial_number"], serial)
        self.assertEqual(rows[0]["customer_name"], "李四")
        self.assertEqual(rows[0]["amount"], 199)

    def test_continues_from_latest_serial_of_the_year(self):
        self.db.insert("serial_numbers", {"serial_number": f"{self.year - 1}-N-0900"})
        self.db.insert("serial_numbers", {"serial_number": f"{self.year}-N-0041"})
        self.assertEqual(self.issuer.issue_serial(), f"{self.year}-N-0042")

    def test_counter_widens_past_four_digits(self):
        self.db.insert("serial_numbers", {"serial_number": f"{self.year}-N-9999"})
        self.assertEqual(self.issuer.issue_serial(), f"{self.year}-N-10000")

    def test_insert_failure_falls_back_to_timestamp_serial(self):
        issuer = SerialIssuer(self.db, clock=lambda: FIXED_NOW)
        with patch.object(
            self.db,
            "insert",
            side_effect=GatewayError("duplicate key", code=UNIQUE_VIOLATION),
        ):
            serial = issuer.issue_serial("王五", 100)
        self.assertRegex(serial, r"^\d{4}-N-\d{4}$")
        self.assertEqual(serial, "2026-N-0500")
        self.assertEqual(self.db.tables["serial_numbers"], [])

    def test_read_failure_falls_back(self):
        issuer = SerialIssuer(self.db, clock=lambda: FIXED_NOW)
        with patch.object(self.db, "select", side_effect=GatewayError("timeout")):
            self.assertEqual(issuer.issue_serial(), "2026-N-0500")

    def _racing_insert(self):
        real_insert = self.db.insert
        raced = []

        def insert(table, row):
            if not raced:
                # Another tab wins the same number first.
                raced.append(row["serial_number"])
                real_insert(table, {**row, "customer_name": "other tab"})
            return real_insert(table, row)

        return insert, raced

    def test_conflict_degrades_to_fallback_by_default(self):
        issuer = SerialIssuer(self.db, clock=lambda: FIXED_NOW)
        insert, raced = self._racing_insert()
        with patch.object(self.db, "insert", side_effect=insert):
            serial = issuer.issue_serial("me")
        self.assertEqual(raced, ["2026-N-0001"])
        self.assertEqual(serial, "2026-N-0500")
        self.assertFalse(issuer.check_serial_exists(serial))

    def test_retry_policy_rereads_after_conflict(self):
        issuer = SerialIssuer(
            self.db, conflict_policy="retry", max_attempts=3, clock=lambda: FIXED_NOW
        )
        insert, raced = self._racing_insert()
        with patch.object(self.db, "insert", side_effect=insert):
            serial = issuer.issue_serial("me")
        self.assertEqual(serial, "2026-N-0002")
        self.assertTrue(issuer.check_serial_exists("2026-N-0001"))
        self.assertTrue(issuer.check_serial_exists("2026-N-0002"))

    def test_retry_policy_gives_up_after_max_attempts(self):
        issuer = SerialIssuer(
            self.db, conflict_policy="retry", max_attempts=2, clock=lambda: FIXED_NOW
        )
        with patch.object(
            self.db,
            "insert",
            side_effect=GatewayError("duplicate key", code=UNIQUE_VIOLATION),
        ) as insert:
            serial = issuer.issue_serial()
        self.assertEqual(insert.call_count, 2)
        self.assertEqual(serial, "2026-N-0500")

    def test_unknown_policy_rejected(self):
        with self.assertRaises(ValueError):
            SerialIssuer(self.db, conflict_policy="lock")

    def test_check_serial_exists(self):
        serial = self.issuer.issue_serial()
        self.assertTrue(self.issuer.check_serial_exists(serial))
        self.assertFalse(self.issuer.check_serial_exists("1999-N-0001"))

    def test_check_serial_exists_treats_errors_as_missing(self):
        serial = self.issuer.issue_serial()
        with patch.object(self.db, "select", side_effect=GatewayError("boom")):
            self.assertFalse(self.issuer.check_serial_exists(serial))

    def test_recent_serials_newest_first(self):
        issued = [self.issuer.issue_serial(f"c{i}", i) for i in range(3)]
        recent = self.issuer.get_recent_serials(limit=2)
        self.assertEqual([r.serial_number for r in recent], issued[::-1][:2])

    def test_recent_serials_empty_on_error(self):
        with patch.object(self.db, "select", side_effect=GatewayError("boom")):
            self.assertEqual(self.issuer.get_recent_serials(), [])

    def test_recent_serials_read_unparseable_amount_as_zero(self):
        self.issuer.issue_serial("a", 100)
        self.issuer.issue_serial("b", 200)
        self.db.tables["serial_numbers"][-1]["amount"] = "bad"
        amounts = {r.customer_name: r.amount for r in self.issuer.get_recent_serials()}
        self.assertEqual(amounts, {"a": 100, "b": 0})

    def test_fallback_pattern(self):
        issuer = SerialIssuer(self.db)
        self.assertTrue(re.match(r"^\d{4}-N-\d{4}$", issuer.fallback_serial(2026)))


if __name__ == "__main__":
    unittest.main()
