"""
Storage of full receipt records in the serial_numbers table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from receipt_cloud.db import Order, TableGateway, any_of, eq, gte, ilike, lte, utc_now_iso
from receipt_cloud.errors import GatewayError
from receipt_cloud.schemas import (
    ReceiptRecord,
    ReceiptStatistics,
    ReceiptStatus,
    parse_amount,
)

logger = logging.getLogger(__name__)

RECEIPT_TABLE = "serial_numbers"

# Only enforced when the store runs with strict_transitions=True.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    ReceiptStatus.ACTIVE.value: frozenset(
        {ReceiptStatus.CANCELLED.value, ReceiptStatus.EXPIRED.value}
    ),
    ReceiptStatus.CANCELLED.value: frozenset(),
    ReceiptStatus.EXPIRED.value: frozenset(),
}


class LookupStatus(Enum):
    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"


@dataclass
class LookupResult:
    status: LookupStatus
    record: Optional[ReceiptRecord] = None
    error: Optional[GatewayError] = None

    @property
    def found(self) -> bool:
        return self.status == LookupStatus.FOUND


def record_from_row(row: dict) -> ReceiptRecord:
    """Build a record from a stored row; an unparseable amount reads as 0."""
    return ReceiptRecord.model_validate({**row, "amount": parse_amount(row.get("amount"))})


def is_transition_allowed(current: Optional[str], new: str) -> bool:
    if current == new:
        return True
    return new in ALLOWED_TRANSITIONS.get(current or ReceiptStatus.ACTIVE.value, frozenset())


class ReceiptStore:
    def __init__(self, db: TableGateway, *, strict_transitions: bool = False):
        self.db = db
        self.strict_transitions = strict_transitions

    def save_receipt(self, receipt: ReceiptRecord) -> bool:
        """Upsert a full record keyed on serial_number.

        This is also how a bare row created by the serial issuer is enriched
        into a full receipt later.
        """
        logger.info("Saving receipt record %s", receipt.serial_number)
        now = utc_now_iso()
        row = {
            "serial_number": receipt.serial_number,
            "customer_name": receipt.customer_name,
            "customer_phone": receipt.customer_phone or "",
            "membership_type": receipt.membership_type,
            "membership_label": receipt.membership_label or "",
            "amount": receipt.amount,
            "contract_date": receipt.contract_date,
            "handler_name": receipt.handler_name or "",
            "pdf_url": receipt.pdf_url or "",
            "pdf_path": receipt.pdf_path or "",
            "pdf_size": receipt.pdf_size or 0,
            "pdf_generated_at": receipt.pdf_generated_at or now,
            "status": receipt.status or ReceiptStatus.ACTIVE.value,
            "notes": receipt.notes or "",
            "metadata": receipt.metadata or {},
            "updated_at": now,
        }
        try:
            self.db.upsert(RECEIPT_TABLE, row, conflict_key="serial_number")
        except GatewayError as exc:
            logger.error(
                "Saving receipt record %s failed: %s",
                receipt.serial_number,
                exc.as_dict(),
            )
            return False
        logger.info("Receipt record %s saved", receipt.serial_number)
        return True

    def lookup(self, serial_number: str) -> LookupResult:
        """Point lookup that keeps "not found" and "backend failed" apart."""
        try:
            rows = self.db.select(
                RECEIPT_TABLE, [eq("serial_number", serial_number)], limit=1
            )
        except GatewayError as exc:
            logger.error(
                "Fetching receipt record %s failed: %s", serial_number, exc.as_dict()
            )
            return LookupResult(LookupStatus.ERROR, error=exc)
        if not rows:
            return LookupResult(LookupStatus.NOT_FOUND)
        try:
            record = record_from_row(rows[0])
        except ValidationError as exc:
            logger.error("Receipt record %s is malformed: %s", serial_number, exc)
            return LookupResult(
                LookupStatus.ERROR, error=GatewayError(f"malformed row: {exc}")
            )
        return LookupResult(LookupStatus.FOUND, record=record)

    def get_by_serial(self, serial_number: str) -> Optional[ReceiptRecord]:
        return self.lookup(serial_number).record

    def _list(self, filters, limit: int, action: str) -> list[ReceiptRecord]:
        try:
            rows = self.db.select(
                RECEIPT_TABLE,
                filters,
                order=[Order("created_at", descending=True)],
                limit=limit,
            )
        except GatewayError as exc:
            logger.error("%s failed: %s", action, exc.as_dict())
            return []
        records = []
        for row in rows:
            try:
                records.append(record_from_row(row))
            except ValidationError as exc:
                logger.warning(
                    "%s skipped malformed row %s: %s",
                    action,
                    row.get("serial_number"),
                    exc,
                )
        return records

    def get_recent(self, limit: int = 20) -> list[ReceiptRecord]:
        return self._list([], limit, "Listing recent receipts")

    def search(self, keyword: str, limit: int = 50) -> list[ReceiptRecord]:
        """Case-insensitive substring match on customer name, serial or phone."""
        pattern = f"%{keyword}%"
        condition = any_of(
            ilike("customer_name", pattern),
            ilike("serial_number", pattern),
            ilike("customer_phone", pattern),
        )
        return self._list([condition], limit, f"Searching receipts for {keyword!r}")

    def update_status(
        self,
        serial_number: str,
        status: ReceiptStatus | str,
        notes: Optional[str] = None,
    ) -> bool:
        try:
            new_status = ReceiptStatus(status).value
        except ValueError:
            logger.error("Rejecting unknown receipt status %r for %s", status, serial_number)
            return False

        if self.strict_transitions:
            current = self.lookup(serial_number)
            if not current.found:
                logger.error(
                    "Cannot change status of %s: %s", serial_number, current.status.value
                )
                return False
            if not is_transition_allowed(current.record.status, new_status):
                logger.warning(
                    "Rejecting status transition %s -> %s for %s",
                    current.record.status,
                    new_status,
                    serial_number,
                )
                return False

        patch = {"status": new_status, "updated_at": utc_now_iso()}
        if notes:
            patch["notes"] = notes
        try:
            updated = self.db.update(
                RECEIPT_TABLE, patch, [eq("serial_number", serial_number)]
            )
        except GatewayError as exc:
            logger.error(
                "Updating status of %s failed: %s", serial_number, exc.as_dict()
            )
            return False
        if not updated:
            logger.warning("Status update matched no receipt for %s", serial_number)
        logger.info("Receipt %s status set to %s", serial_number, new_status)
        return True

    def get_statistics(
        self, start_date: Optional[str] = None, end_date: Optional[str] = None
    ) -> Optional[ReceiptStatistics]:
        """Aggregate counts and amounts client-side over every matching row."""
        filters = []
        if start_date:
            filters.append(gte("created_at", start_date))
        if end_date:
            filters.append(lte("created_at", end_date))
        try:
            rows = self.db.select(
                RECEIPT_TABLE, filters, columns=["amount", "status", "created_at"]
            )
        except GatewayError as exc:
            logger.error("Computing receipt statistics failed: %s", exc.as_dict())
            return None

        total = len(rows)
        total_amount = sum(parse_amount(row.get("amount")) for row in rows)
        active = sum(1 for row in rows if row.get("status") == ReceiptStatus.ACTIVE.value)
        cancelled = sum(
            1 for row in rows if row.get("status") == ReceiptStatus.CANCELLED.value
        )
        return ReceiptStatistics(
            total=total,
            total_amount=total_amount,
            active=active,
            cancelled=cancelled,
            average_amount=total_amount / total if total > 0 else 0,
        )
