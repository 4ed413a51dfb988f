"""
Idempotency guard for externally originated invoices.

The lookup by (user_id, external_reference) is only a shortcut; the unique
partial index on that pair (database/mongodb.py) decides races between
concurrent deliveries of the same webhook.
"""

import logging
from typing import Optional, Tuple
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from models.invoice import Invoice

logger = logging.getLogger(__name__)

EXTERNAL_REFERENCE_INDEX = "uniq_owner_external_reference"


def is_external_reference_conflict(error: DuplicateKeyError) -> bool:
    """True when the duplicate key is the external reference, not the invoice number"""
    details = error.details or {}
    key_pattern = details.get("keyPattern") or {}
    if key_pattern:
        return "external_reference" in key_pattern
    return EXTERNAL_REFERENCE_INDEX in str(error) or "external_reference" in str(error)


class IdempotencyService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def find_existing(self, user_id: str, external_reference: Optional[str]) -> Optional[Invoice]:
        if not external_reference:
            return None
        doc = await self.db.invoices.find_one({"user_id": user_id, "external_reference": external_reference})
        if doc:
            logger.info(f"[IDEMPOTENCY] Reference {external_reference} already issued as {doc['invoice_number']}")
            return Invoice(**doc)
        return None

    async def insert_once(self, invoice: Invoice) -> Tuple[Invoice, bool]:
        """
        Insert the invoice unless its external reference is already stored.

        Returns (stored invoice, created). Duplicate invoice numbers propagate as
        DuplicateKeyError so the caller can re-allocate.
        """
        try:
            result = await self.db.invoices.insert_one(invoice.to_document())
        except DuplicateKeyError as e:
            if not invoice.external_reference or not is_external_reference_conflict(e):
                raise
            existing = await self.find_existing(invoice.user_id, invoice.external_reference)
            if existing is None:
                raise
            logger.warning(
                f"[IDEMPOTENCY] Concurrent delivery for reference {invoice.external_reference}; "
                f"returning {existing.invoice_number}"
            )
            return existing, False

        if invoice.id is None:
            invoice.id = str(result.inserted_id)
        return invoice, True
