"""
Shared fixtures: an in-memory stand-in for the Motor database and canned
myDATA payloads.

The fake implements the subset of the collection API the services use and
enforces unique indexes by raising pymongo's DuplicateKeyError, so the same
code paths run as against MongoDB. Every operation yields to the event loop
once, which lets asyncio.gather() interleave concurrent callers.
"""

import asyncio
import copy
import re
import uuid
from datetime import datetime
from types import SimpleNamespace

import httpx
import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings
from database.mongodb import ensure_indexes
from models.invoice import (
    Counterpart,
    IncomeClassification,
    Invoice,
    InvoiceLine,
    InvoiceType,
    Issuer,
    TaxInfo,
)
from services.invoice_validation import apply_derivation
from services.mydata_client import MyDataClient


# ============================================================
# FAKE MOTOR
# ============================================================

_MISSING = object()


def _get(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set(doc, path, value):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _match_value(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        present = value is not _MISSING
        for op, arg in condition.items():
            if op == "$in":
                if not present or value not in arg:
                    return False
            elif op == "$ne":
                if present and value == arg:
                    return False
            elif op == "$exists":
                if present != bool(arg):
                    return False
            elif op == "$type":
                if arg != "string" or not isinstance(value, str):
                    return False
            elif op == "$regex":
                if not isinstance(value, str) or not re.search(arg, value):
                    return False
            elif op in ("$gt", "$gte", "$lt", "$lte"):
                if not present or value is None:
                    return False
                if op == "$gt" and not value > arg:
                    return False
                if op == "$gte" and not value >= arg:
                    return False
                if op == "$lt" and not value < arg:
                    return False
                if op == "$lte" and not value <= arg:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    return value is not _MISSING and value == condition


def matches(doc, query):
    return all(_match_value(_get(doc, field), condition) for field, condition in (query or {}).items())


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key, direction=None):
        keys = key if isinstance(key, list) else [(key, direction or 1)]
        for field, order in reversed(keys):
            self._docs.sort(
                key=lambda d: (_get(d, field) is _MISSING or _get(d, field) is None,
                               _get(d, field) if _get(d, field) not in (_MISSING, None) else 0),
                reverse=order == -1
            )
        return self

    def skip(self, count):
        self._skip = count
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _window(self):
        docs = self._docs[self._skip:]
        return docs[:self._limit] if self._limit else docs

    async def to_list(self, length=None):
        docs = self._window()
        return docs[:length] if length else docs

    def __aiter__(self):
        self._iter = iter(self._window())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.indexes = []
        self.fail_with = None  # set to an exception to simulate an unavailable server

    async def _enter(self):
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with

    async def create_index(self, keys, unique=False, partialFilterExpression=None, name=None, **kwargs):
        fields = [keys] if isinstance(keys, str) else [field for field, _ in keys]
        index_name = name or "_".join(fields)
        self.indexes.append({
            "name": index_name,
            "fields": fields,
            "unique": unique,
            "partial": partialFilterExpression,
        })
        return index_name

    def _check_unique(self, candidate, ignore=None):
        for other in self.docs:
            if other is ignore:
                continue
            if other["_id"] == candidate["_id"]:
                raise DuplicateKeyError("E11000 duplicate key error index: _id_", 11000, {"keyPattern": {"_id": 1}})

        for index in self.indexes:
            if not index["unique"]:
                continue
            if index["partial"] and not matches(candidate, index["partial"]):
                continue
            key = tuple(_get(candidate, f) for f in index["fields"])
            for other in self.docs:
                if other is ignore:
                    continue
                if index["partial"] and not matches(other, index["partial"]):
                    continue
                if tuple(_get(other, f) for f in index["fields"]) == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {index['name']}",
                        11000,
                        {"keyPattern": {f: 1 for f in index["fields"]}}
                    )

    def _find(self, query):
        return [doc for doc in self.docs if matches(doc, query)]

    async def insert_one(self, document):
        await self._enter()
        doc = copy.deepcopy(document)
        doc.setdefault("_id", uuid.uuid4().hex)
        self._check_unique(doc)
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query=None, projection=None):
        await self._enter()
        found = self._find(query)
        return copy.deepcopy(found[0]) if found else None

    def find(self, query=None, projection=None):
        if self.fail_with is not None:
            raise self.fail_with
        return FakeCursor([copy.deepcopy(doc) for doc in self._find(query)])

    async def count_documents(self, query):
        await self._enter()
        return len(self._find(query))

    def _apply(self, doc, update, inserting):
        for op, fields in update.items():
            for path, value in fields.items():
                current = _get(doc, path)
                if op == "$set":
                    _set(doc, path, copy.deepcopy(value))
                elif op == "$setOnInsert":
                    if inserting:
                        _set(doc, path, copy.deepcopy(value))
                elif op == "$inc":
                    _set(doc, path, (0 if current is _MISSING else current) + value)
                elif op == "$max":
                    if current is _MISSING or value > current:
                        _set(doc, path, value)
                elif op == "$push":
                    items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                    if current is _MISSING:
                        _set(doc, path, copy.deepcopy(items))
                    else:
                        current.extend(copy.deepcopy(items))
                else:
                    raise NotImplementedError(op)

    def _upsert_seed(self, query):
        return {k: v for k, v in query.items() if not (isinstance(v, dict) and any(x.startswith("$") for x in v))}

    def _update(self, query, update, upsert):
        found = self._find(query)
        if found:
            target = found[0]
            updated = copy.deepcopy(target)
            self._apply(updated, update, inserting=False)
            self._check_unique(updated, ignore=target)
            modified = updated != target
            target.clear()
            target.update(updated)
            return target, 1, int(modified), None

        if not upsert:
            return None, 0, 0, None

        doc = self._upsert_seed(query)
        self._apply(doc, update, inserting=True)
        doc.setdefault("_id", uuid.uuid4().hex)
        self._check_unique(doc)
        self.docs.append(doc)
        return doc, 0, 0, doc["_id"]

    async def update_one(self, query, update, upsert=False):
        await self._enter()
        _, matched, modified, upserted_id = self._update(query, update, upsert)
        return SimpleNamespace(matched_count=matched, modified_count=modified, upserted_id=upserted_id)

    async def find_one_and_update(self, query, update, upsert=False, return_document=ReturnDocument.BEFORE):
        await self._enter()
        before = self._find(query)
        before = copy.deepcopy(before[0]) if before else None
        doc, _, _, _ = self._update(query, update, upsert)
        if return_document == ReturnDocument.AFTER:
            return copy.deepcopy(doc) if doc is not None else None
        return before


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


class UnavailableError(PyMongoError):
    pass


# ============================================================
# FIXTURES
# ============================================================

USER_ID = "user-1"
ISSUER_AFM = "123456789"


@pytest.fixture
def fake_db():
    database = FakeDatabase()
    asyncio.run(ensure_indexes(database))
    return database


def business_settings_document(user_id=USER_ID, with_credentials=True):
    doc = {
        "_id": f"settings-{user_id}",
        "user_id": user_id,
        "business": {"legal_name": "Acme Services IKE", "legal_form": "ike"},
        "tax": {
            "afm": ISSUER_AFM,
            "gemi": "123456701000",
            "doy": {"code": "1104", "name": "Athens A"},
            "activity_codes": [{"code": "62.01", "description": "Software"}],
        },
        "address": {
            "street": "Ermou",
            "number": "10",
            "postal_code": "10563",
            "city": "Athens",
            "prefecture": "Attica",
        },
        "invoicing": {"payment_terms": 30},
    }
    if with_credentials:
        doc["mydata_credentials"] = {
            "user_id": "acme-aade",
            "subscription_key": "sub-key-123",
            "environment": "development",
        }
    return doc


@pytest.fixture
def configured_db(fake_db):
    """Fake database holding one fully configured business"""
    fake_db.settings.docs.append(business_settings_document())
    fake_db.banking.docs.append({
        "_id": "bank-1",
        "user_id": USER_ID,
        "bank_name": "Piraeus",
        "iban": "GR1601101250000000012300695",
        "is_default": True,
        "created_at": datetime(2026, 1, 1),
    })
    return fake_db


@pytest.fixture
def test_settings():
    return Settings(
        mongo_url="mongodb://test",
        db_name="test",
        environment="development",
        mydata_dev_url="https://mydata.test/dev",
        mydata_prod_url="https://mydata.test/prod",
        mydata_timeout_seconds=1.0,
        mydata_default_user_id=None,
        mydata_default_subscription_key=None,
        _env_file=None,
    )


def mock_client(settings, handler):
    """MyDataClient answering through an httpx.MockTransport handler"""
    return MyDataClient(settings, transport=httpx.MockTransport(handler))


# ============================================================
# CANNED MYDATA PAYLOADS
# ============================================================

SUCCESS_RESPONSE = """<?xml version="1.0" encoding="utf-8"?>
<ResponseDoc xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">
  <response>
    <index>1</index>
    <invoiceUid>A1B2C3D4E5F6</invoiceUid>
    <invoiceMark>400001234567890</invoiceMark>
    <authenticationCode>FEDCBA9876543210</authenticationCode>
    <statusCode>Success</statusCode>
  </response>
</ResponseDoc>"""

REJECTION_RESPONSE = """<?xml version="1.0" encoding="utf-8"?>
<ResponseDoc>
  <response>
    <index>1</index>
    <statusCode>ValidationError</statusCode>
    <errors>
      <error>
        <message>bad AFM</message>
        <code>123</code>
      </error>
      <error>
        <message>bad date</message>
        <code>456</code>
      </error>
    </errors>
  </response>
</ResponseDoc>"""

CANCELLATION_RESPONSE = """<ResponseDoc>
  <response>
    <index>1</index>
    <cancellationMark>400009999999999</cancellationMark>
    <statusCode>Success</statusCode>
  </response>
</ResponseDoc>"""


def wrap_in_envelope(payload: str) -> str:
    escaped = payload.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    return f'<string xmlns="http://schemas.microsoft.com/2003/10/Serialization/">{escaped}</string>'


# ============================================================
# DOCUMENT BUILDERS
# ============================================================

def service_line(unit_price=100, quantity=1, vat_category="1", description="Consulting", **extra):
    return InvoiceLine(
        line_number=1,
        description=description,
        quantity=quantity,
        unit_price=unit_price,
        vat_category=vat_category,
        income_classification=[IncomeClassification(
            classification_type="E3_561_001",
            category_id="category1_3"
        )],
        **extra
    )


def make_invoice(invoice_number="A000042", invoice_type=InvoiceType.SERVICE, lines=None,
                 counterpart=None, **overrides):
    """A derived, valid invoice ready for serialization"""
    invoice = Invoice(
        _id=overrides.pop("_id", "inv-1"),
        user_id=overrides.pop("user_id", USER_ID),
        invoice_number=invoice_number,
        series=invoice_number.rstrip("0123456789"),
        invoice_type=invoice_type,
        issue_date=overrides.pop("issue_date", datetime(2026, 3, 1, 10, 0)),
        issuer=Issuer(vat_number=ISSUER_AFM, name="Acme Services IKE", tax_info=TaxInfo(afm=ISSUER_AFM)),
        counterpart=counterpart or Counterpart(
            vat_number="987654321",
            name="Client SA",
            tax_info=TaxInfo(afm="987654321")
        ),
        lines=lines if lines is not None else [service_line()],
        **overrides
    )
    return apply_derivation(invoice)
