"""
Invoice Number Allocator

Issues sequential document numbers per (owner, series).

Display / persisted form: {series}{sequence:06d}  e.g. A000042
Wire form:                series="A", aa="42"

Each (owner, series) pair has a dedicated counter document in
`invoice_counters`; numbers are taken with a single atomic
find_one_and_update($inc). The counter is seeded once from the highest number
already stored for the pair, so existing invoice streams continue without gaps.
"""

import re
import logging
from typing import Tuple
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from models.invoice import utcnow

logger = logging.getLogger(__name__)

SEQUENCE_WIDTH = 6
SERIES_PATTERN = re.compile(r'^[A-Z]+$')
INVOICE_NUMBER_PATTERN = re.compile(r'^([A-Z]+)(\d+)$')


class AllocationError(RuntimeError):
    """Numbering failed; nothing was issued. Safe to retry."""
    retryable = True


def validate_series(series: str) -> str:
    if not series or not SERIES_PATTERN.match(series):
        raise ValueError(f"Invalid series: {series!r} (uppercase letters only)")
    return series


def format_invoice_number(series: str, sequence: int) -> str:
    return f"{series}{sequence:0{SEQUENCE_WIDTH}d}"


def parse_invoice_number(invoice_number: str) -> Tuple[str, int]:
    """Split "A000042" into ("A", 42)"""
    match = INVOICE_NUMBER_PATTERN.match(invoice_number or "")
    if not match:
        raise ValueError(f"Invalid invoice number format: {invoice_number}")
    return match.group(1), int(match.group(2))


class NumberingService:
    """Per-owner, per-series counters backed by MongoDB"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def next_number(self, user_id: str, series: str) -> str:
        """Allocate the next number. Fails closed with AllocationError."""
        validate_series(series)
        try:
            await self._ensure_counter(user_id, series)
            counter = await self.db.invoice_counters.find_one_and_update(
                {"user_id": user_id, "series": series},
                {"$inc": {"seq": 1}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            logger.error(f"[NUMBERING] Counter unavailable for {user_id}/{series}: {e}")
            raise AllocationError(f"Invoice counter unavailable for series {series}") from e

        if not counter or "seq" not in counter:
            logger.error(f"[NUMBERING] Counter missing after seed for {user_id}/{series}")
            raise AllocationError(f"Invoice counter unavailable for series {series}")

        number = format_invoice_number(series, int(counter["seq"]))
        logger.info(f"[NUMBERING] Issued {number} for user {user_id}")
        return number

    async def peek_next_number(self, user_id: str, series: str) -> str:
        """Number the next allocation would return, without consuming it"""
        validate_series(series)
        counter = await self.db.invoice_counters.find_one({"user_id": user_id, "series": series})
        if counter:
            current = int(counter.get("seq", 0))
        else:
            current = await self._highest_stored_sequence(user_id, series)
        return format_invoice_number(series, current + 1)

    async def resync(self, user_id: str, series: str) -> int:
        """
        Move the counter forward to the highest stored number.

        Used after a numbering collision (a number inserted outside the counter).
        The counter never moves backwards.
        """
        highest = await self._highest_stored_sequence(user_id, series)
        await self.db.invoice_counters.update_one(
            {"user_id": user_id, "series": series},
            {"$max": {"seq": highest}, "$set": {"updated_at": utcnow()}},
            upsert=True
        )
        logger.warning(f"[NUMBERING] Counter {user_id}/{series} resynced to {highest}")
        return highest

    async def release(self, user_id: str, invoice_number: str) -> bool:
        """
        Give back a number that was allocated but never stored.

        Only the most recent allocation can be returned; if the counter has
        moved on, the number stays consumed and False is returned.
        """
        series, sequence = parse_invoice_number(invoice_number)
        result = await self.db.invoice_counters.update_one(
            {"user_id": user_id, "series": series, "seq": sequence},
            {"$inc": {"seq": -1}, "$set": {"updated_at": utcnow()}}
        )
        if result.modified_count:
            logger.info(f"[NUMBERING] Released unused {invoice_number} for user {user_id}")
            return True
        logger.warning(f"[NUMBERING] Could not release {invoice_number}, later numbers already issued")
        return False

    async def _ensure_counter(self, user_id: str, series: str):
        existing = await self.db.invoice_counters.find_one({"user_id": user_id, "series": series})
        if existing:
            return

        seed = await self._highest_stored_sequence(user_id, series)
        try:
            await self.db.invoice_counters.update_one(
                {"user_id": user_id, "series": series},
                {"$setOnInsert": {"seq": seed, "created_at": utcnow()}},
                upsert=True
            )
            logger.info(f"[NUMBERING] Seeded counter {user_id}/{series} at {seed}")
        except DuplicateKeyError:
            # Concurrent seed won; its value is equivalent
            pass

    async def _highest_stored_sequence(self, user_id: str, series: str) -> int:
        cursor = self.db.invoices.find(
            {"user_id": user_id, "series": series, "invoice_number": {"$regex": f"^{series}\\d+$"}},
            {"invoice_number": 1}
        )
        highest = 0
        async for doc in cursor:
            try:
                _, sequence = parse_invoice_number(doc["invoice_number"])
            except ValueError:
                continue
            highest = max(highest, sequence)
        return highest


def split_for_wire(invoice_number: str) -> Tuple[str, str]:
    """Wire form: series plus the bare integer sequence (leading zeros stripped)"""
    series, sequence = parse_invoice_number(invoice_number)
    return series, str(sequence)
