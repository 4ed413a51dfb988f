"""
Business settings provider

Reads the issuing business's profile from the `settings` collection and its
bank accounts from `banking`, and turns them into the issuer snapshot stored
on every invoice. Also exposes the per-business myDATA credential override.
"""

import logging
from typing import Dict, List, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase

from config import DEVELOPMENT, get_settings
from models.invoice import Address, BankAccount, Issuer, TaxInfo, TaxOffice
from models.mydata import MyDataCredentials
from services.mydata_client import resolve_credentials

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_TERMS_DAYS = 30


class BusinessNotConfiguredError(Exception):
    """Owner has no usable tax settings"""

    def __init__(self, message: str = "Complete your tax settings (AFM) before creating invoices"):
        super().__init__(message)


class BusinessSettingsService:
    """Issuer snapshot and myDATA credentials for one owner"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_settings_document(self, user_id: str) -> Optional[dict]:
        return await self.db.settings.find_one({"user_id": user_id})

    async def get_bank_accounts(self, user_id: str) -> List[BankAccount]:
        cursor = self.db.banking.find({"user_id": user_id}).sort([("is_default", -1), ("created_at", -1)])
        accounts = []
        async for doc in cursor:
            if not doc.get("iban"):
                continue
            accounts.append(BankAccount(
                account_name=doc.get("account_name"),
                bank_name=doc.get("bank_name"),
                iban=doc["iban"],
                swift=doc.get("swift"),
                is_default=bool(doc.get("is_default", False))
            ))
        return accounts

    async def build_issuer(self, user_id: str) -> Issuer:
        """Issuer snapshot for a new invoice. Raises BusinessNotConfiguredError."""
        doc = await self.get_settings_document(user_id)
        tax = (doc or {}).get("tax") or {}
        afm = (tax.get("afm") or "").strip()
        if not afm:
            logger.warning(f"Invoice attempt without tax settings for user {user_id}")
            raise BusinessNotConfiguredError()

        business = doc.get("business") or {}
        address = doc.get("address") or {}
        doy = tax.get("doy") or {}

        return Issuer(
            vat_number=afm,
            country="GR",
            branch=int(doc.get("branch", 0) or 0),
            name=business.get("legal_name") or business.get("trading_name") or "",
            legal_form=business.get("legal_form"),
            address=Address(
                street=address.get("street"),
                number=address.get("number"),
                postal_code=address.get("postal_code"),
                city=address.get("city"),
                prefecture=address.get("prefecture"),
                country="GR"
            ),
            tax_info=TaxInfo(
                afm=afm,
                doy=TaxOffice(code=doy.get("code"), name=doy.get("name")),
                gemi=tax.get("gemi")
            ),
            activity_codes=[
                entry.get("code") if isinstance(entry, dict) else str(entry)
                for entry in tax.get("activity_codes", [])
                if entry
            ],
            banking=await self.get_bank_accounts(user_id)
        )

    async def payment_terms_days(self, user_id: str) -> int:
        doc = await self.get_settings_document(user_id)
        invoicing = (doc or {}).get("invoicing") or {}
        return int(invoicing.get("payment_terms", DEFAULT_PAYMENT_TERMS_DAYS))

    async def get_credential_override(self, user_id: str) -> Dict[str, object]:
        """Per-business myDATA credentials as stored (possibly incomplete)"""
        doc = await self.get_settings_document(user_id)
        stored = (doc or {}).get("mydata_credentials") or {}
        user = (stored.get("user_id") or "").strip()
        key = (stored.get("subscription_key") or "").strip()
        return {
            "user_id": user,
            "subscription_key": key,
            "environment": stored.get("environment") or DEVELOPMENT,
            "is_configured": bool(user and key),
        }

    async def get_credentials(self, user_id: str, environment: Optional[str] = None) -> MyDataCredentials:
        """
        Resolve the credentials to transmit with.

        The business's stored environment is used unless one is given; in a
        production deployment every business transmits to production.
        """
        settings = get_settings()
        override = await self.get_credential_override(user_id)
        if environment is None:
            environment = settings.environment if settings.is_production else override["environment"]
        return resolve_credentials(environment, override, settings)
