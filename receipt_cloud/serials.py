"""
Sequential serial-number issuance for generated receipts.

Serials look like ``2026-N-0007``: the calendar year, a fixed ``N`` marker and
a per-year counter zero-padded to four digits (it widens past 9999). The
counter is derived by reading the newest serial of the year and adding one,
so two concurrent issuers can compute the same number; the unique constraint
on ``serial_number`` rejects the second insert, which then either degrades to
a timestamp-derived provisional serial or re-reads and retries, depending on
the configured conflict policy.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from typing import Callable, Literal

from pydantic import ValidationError

from receipt_cloud.db import Order, TableGateway, eq, like
from receipt_cloud.errors import GatewayError
from receipt_cloud.schemas import SerialRecord, parse_amount

logger = logging.getLogger(__name__)

SERIAL_TABLE = "serial_numbers"
SERIAL_PATTERN = re.compile(r"^\d{4}-N-\d+$")
_TRAILING_DIGITS = re.compile(r"(\d+)$")

ConflictPolicy = Literal["fallback", "retry"]


def format_serial(year: int, number: int) -> str:
    return f"{year}-N-{number:04d}"


def next_number(last_serial: str | None) -> int:
    if not last_serial:
        return 1
    match = _TRAILING_DIGITS.search(last_serial)
    if not match:
        return 1
    return int(match.group(1)) + 1


class SerialIssuer:
    def __init__(
        self,
        db: TableGateway,
        *,
        conflict_policy: ConflictPolicy = "fallback",
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        if conflict_policy not in ("fallback", "retry"):
            raise ValueError(f"unknown serial conflict policy: {conflict_policy}")
        self.db = db
        self.conflict_policy = conflict_policy
        self.max_attempts = max(1, max_attempts)
        self.clock = clock

    def _current_year(self) -> int:
        return datetime.fromtimestamp(self.clock()).year

    def fallback_serial(self, year: int) -> str:
        """Provisional serial from the last four digits of the millisecond clock."""
        millis = str(int(self.clock() * 1000))
        return f"{year}-N-{millis[-4:]}"

    def _latest_serial(self, year: int) -> str | None:
        rows = self.db.select(
            SERIAL_TABLE,
            [like("serial_number", f"{year}-N-%")],
            columns=["serial_number"],
            order=[Order("created_at", descending=True)],
            limit=1,
        )
        return rows[0]["serial_number"] if rows else None

    def issue_serial(self, customer_name: str = "", amount: float = 0) -> str:
        """Issue and record the next serial of the current year.

        Never raises: any failure degrades to ``fallback_serial``, which is
        neither checked for uniqueness nor stored, so callers must treat it
        as provisional.
        """
        year = self._current_year()
        attempts = self.max_attempts if self.conflict_policy == "retry" else 1
        attempt = 0
        while True:
            attempt += 1
            try:
                serial_number = format_serial(year, next_number(self._latest_serial(year)))
                self.db.insert(
                    SERIAL_TABLE,
                    {
                        "serial_number": serial_number,
                        "customer_name": customer_name,
                        "amount": amount,
                    },
                )
            except GatewayError as exc:
                if exc.is_conflict and attempt < attempts:
                    logger.warning(
                        "Serial conflict on attempt %d/%d, re-reading: %s",
                        attempt,
                        attempts,
                        exc.message,
                    )
                    continue
                fallback = self.fallback_serial(year)
                logger.error(
                    "Saving serial number failed, using provisional %s: %s",
                    fallback,
                    exc.as_dict(),
                )
                return fallback
            logger.info("Issued serial number %s", serial_number)
            return serial_number

    def check_serial_exists(self, serial_number: str) -> bool:
        try:
            rows = self.db.select(
                SERIAL_TABLE,
                [eq("serial_number", serial_number)],
                columns=["id"],
                limit=1,
            )
        except GatewayError as exc:
            logger.warning("Serial lookup failed for %s: %s", serial_number, exc.message)
            return False
        return bool(rows)

    def get_recent_serials(self, limit: int = 10) -> list[SerialRecord]:
        try:
            rows = self.db.select(
                SERIAL_TABLE,
                columns=["id", "serial_number", "customer_name", "amount", "created_at"],
                order=[Order("created_at", descending=True)],
                limit=limit,
            )
        except GatewayError as exc:
            logger.error("Fetching recent serials failed: %s", exc.as_dict())
            return []
        records = []
        for row in rows:
            try:
                records.append(
                    SerialRecord.model_validate(
                        {**row, "amount": parse_amount(row.get("amount"))}
                    )
                )
            except ValidationError as exc:
                logger.warning("Skipping malformed serial row %s: %s", row.get("id"), exc)
        return records
