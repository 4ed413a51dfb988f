"""Invoice Models for the myDATA invoicing core"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum

from models.mydata import ProtocolError


def utcnow() -> datetime:
    """Naive UTC timestamp, the shape MongoDB hands back"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class TransmissionStatus(str, Enum):
    PENDING = "pending"
    TRANSMITTED = "transmitted"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransmissionFailure(str, Enum):
    NETWORK = "network"
    VALIDATION = "validation"
    SERVER_ERROR = "server_error"
    AUTHENTICATION = "authentication"


class InvoiceType(str, Enum):
    SALE = "1.1"
    SALE_INTRA_COMMUNITY = "1.2"
    SALE_THIRD_COUNTRY = "1.3"
    SALE_ON_BEHALF = "1.4"
    SALE_CLEARANCE = "1.5"
    SALE_SUPPLEMENTARY = "1.6"
    SERVICE = "2.1"
    SERVICE_INTRA_COMMUNITY = "2.2"
    SERVICE_THIRD_COUNTRY = "2.3"
    SERVICE_SUPPLEMENTARY = "2.4"
    CREDIT_NOTE_ASSOCIATED = "5.1"
    CREDIT_NOTE_UNASSOCIATED = "5.2"
    RETAIL_SALES_RECEIPT = "11.1"
    RETAIL_SERVICE_RECEIPT = "11.2"

    @property
    def is_retail(self) -> bool:
        return self.value.startswith("11.")

    @property
    def is_pure_service(self) -> bool:
        # myDATA rejects itemDescr/quantity/measurementUnit on plain service invoices
        return self in PURE_SERVICE_TYPES


PURE_SERVICE_TYPES = frozenset({InvoiceType.SERVICE})


class VatCategory(str, Enum):
    VAT_24 = "1"
    VAT_13 = "2"
    VAT_6 = "3"
    VAT_17 = "4"
    VAT_9 = "5"
    VAT_4 = "6"
    ZERO_RATED = "7"
    EXEMPT = "8"


class MeasurementUnit(str, Enum):
    PIECES = "pcs"
    HOURS = "hrs"
    DAYS = "days"
    KILOGRAMS = "kg"
    METERS = "m"
    SQUARE_METERS = "m2"
    LITERS = "liters"
    MONTHS = "months"


class PaymentMethod(str, Enum):
    DOMESTIC_BANK_ACCOUNT = "1"
    FOREIGN_BANK_ACCOUNT = "2"
    CASH = "3"
    CHEQUE = "4"
    ON_CREDIT = "5"
    WEB_BANKING = "6"
    POS = "7"


class InvoiceSource(str, Enum):
    MANUAL = "manual"
    GUESTCODE = "guestcode"
    API = "api"


class Currency(str, Enum):
    EUR = "EUR"
    USD = "USD"
    GBP = "GBP"


class ModificationAction(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    TRANSMITTED = "transmitted"
    TRANSMISSION_FAILED = "transmission_failed"
    TRANSMISSION_RETRY = "transmission_retry"


# ============================================================
# PARTIES
# ============================================================

class Address(BaseModel):
    street: Optional[str] = None
    number: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    prefecture: Optional[str] = None
    country: str = "GR"


class TaxOffice(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None


class TaxInfo(BaseModel):
    afm: Optional[str] = None
    doy: Optional[TaxOffice] = None
    gemi: Optional[str] = None


class BankAccount(BaseModel):
    account_name: Optional[str] = None
    bank_name: Optional[str] = None
    iban: str
    swift: Optional[str] = None
    is_default: bool = False


class Issuer(BaseModel):
    """The business issuing the invoice (snapshot of its settings)"""
    vat_number: str
    country: str = "GR"
    branch: int = 0
    name: str
    legal_form: Optional[str] = None
    address: Address = Field(default_factory=Address)
    tax_info: TaxInfo = Field(default_factory=TaxInfo)
    activity_codes: List[str] = []
    banking: List[BankAccount] = []


class Counterpart(BaseModel):
    """The invoice recipient"""
    vat_number: Optional[str] = None
    country: str = "GR"
    branch: int = 0
    name: Optional[str] = None
    email: Optional[str] = None
    address: Address = Field(default_factory=Address)
    tax_info: TaxInfo = Field(default_factory=TaxInfo)

    @property
    def afm(self) -> Optional[str]:
        return self.tax_info.afm or self.vat_number or None


# ============================================================
# LINES & TOTALS
# ============================================================

class IncomeClassification(BaseModel):
    classification_type: str  # E3_561_001, ...
    category_id: str  # category1_1, ...
    amount: Optional[float] = None  # falls back to the line net value


class InvoiceLine(BaseModel):
    line_number: int
    description: Optional[str] = None
    item_description: Optional[str] = None
    quantity: float = 1
    unit: MeasurementUnit = MeasurementUnit.PIECES
    unit_price: float = 0
    net_value: float = 0
    vat_category: VatCategory = VatCategory.VAT_24
    vat_amount: float = 0
    vat_exemption_category: Optional[str] = None
    withheld_amount: float = 0
    fees_amount: float = 0
    stamp_duty_amount: float = 0
    other_taxes_amount: float = 0
    deductions_amount: float = 0
    line_comments: Optional[str] = None
    income_classification: List[IncomeClassification] = []


class InvoiceTotals(BaseModel):
    total_net_value: float = 0
    total_vat_amount: float = 0
    total_withheld_amount: float = 0
    total_fees_amount: float = 0
    total_stamp_duty_amount: float = 0
    total_other_taxes_amount: float = 0
    total_deductions_amount: float = 0
    total_gross_value: float = 0
    total_amount: float = 0


class TaxTotal(BaseModel):
    """VAT analysis row, grouped by category (never by rate)"""
    vat_category: VatCategory
    rate: float
    underlying_value: float
    tax_amount: float


class Payment(BaseModel):
    method: PaymentMethod = PaymentMethod.CASH
    amount: Optional[float] = None
    paid_date: Optional[datetime] = None
    info: Optional[str] = None


# ============================================================
# TRANSMISSION & AUDIT
# ============================================================

class TransmissionInfo(BaseModel):
    """Acknowledgment data reconciled back from myDATA"""
    mark: Optional[str] = None
    uid: Optional[str] = None
    authentication_code: Optional[str] = None
    qr_code: Optional[str] = None  # data URL of the verification code image
    transmitted_at: Optional[datetime] = None
    cancellation_mark: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    transmission_failure: Optional[TransmissionFailure] = None
    errors: List[ProtocolError] = []
    # set while a send is in flight; the document is frozen until it clears
    claim_id: Optional[str] = None
    claimed_at: Optional[datetime] = None


class Modification(BaseModel):
    date: datetime = Field(default_factory=utcnow)
    action: ModificationAction
    user_id: Optional[str] = None
    description: Optional[str] = None


# ============================================================
# AGGREGATE ROOT
# ============================================================

class Invoice(BaseModel):
    """Invoice document as persisted in the invoices collection"""
    id: Optional[str] = Field(default=None, alias="_id")
    user_id: str
    invoice_number: str
    series: str = "A"
    invoice_type: InvoiceType = InvoiceType.SERVICE
    source: InvoiceSource = InvoiceSource.MANUAL
    external_reference: Optional[str] = None
    external_order_id: Optional[str] = None
    customer_id: Optional[str] = None
    issue_date: datetime = Field(default_factory=utcnow)
    due_date: Optional[datetime] = None
    issuer: Issuer
    counterpart: Counterpart = Field(default_factory=Counterpart)
    lines: List[InvoiceLine] = []
    totals: InvoiceTotals = Field(default_factory=InvoiceTotals)
    taxes_totals: List[TaxTotal] = []
    status: InvoiceStatus = InvoiceStatus.DRAFT
    transmission_status: TransmissionStatus = TransmissionStatus.PENDING
    acknowledgment: TransmissionInfo = Field(default_factory=TransmissionInfo)
    payment: Payment = Field(default_factory=Payment)
    currency: Currency = Currency.EUR
    exchange_rate: float = 1
    notes: Optional[str] = None
    modifications: List[Modification] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0  # optimistic concurrency counter

    class Config:
        populate_by_name = True

    def outstanding_amount(self) -> float:
        if self.status == InvoiceStatus.PAID:
            return 0.0
        return round(self.totals.total_amount - (self.payment.amount or 0), 2)

    def overdue_days(self, now: Optional[datetime] = None) -> int:
        if self.status not in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE) or self.due_date is None:
            return 0
        now = now or utcnow()
        if self.due_date >= now:
            return 0
        delta = now - self.due_date
        return delta.days + (1 if delta.seconds or delta.microseconds else 0)

    def to_document(self) -> dict:
        doc = self.model_dump(mode="python", by_alias=True, exclude={"id"})
        if self.id is not None:
            doc["_id"] = self.id
        return plain_enums(doc)


def plain_enums(value):
    """Replace Enum members by their values so the document is BSON-encodable"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: plain_enums(v) for k, v in value.items()}
    if isinstance(value, list):
        return [plain_enums(v) for v in value]
    return value


# ============================================================
# REQUEST / RESPONSE MODELS
# ============================================================

class InvoiceLineInput(BaseModel):
    """Line item as supplied by callers; derived amounts are never accepted"""
    description: Optional[str] = None
    item_description: Optional[str] = None
    quantity: float = 1
    unit: MeasurementUnit = MeasurementUnit.PIECES
    unit_price: float = 0
    vat_category: VatCategory = VatCategory.VAT_24
    vat_exemption_category: Optional[str] = None
    withheld_amount: float = 0
    fees_amount: float = 0
    stamp_duty_amount: float = 0
    other_taxes_amount: float = 0
    deductions_amount: float = 0
    line_comments: Optional[str] = None
    income_classification: List[IncomeClassification] = []


class InvoiceCreate(BaseModel):
    """Model for creating an invoice"""
    series: str = "A"
    invoice_type: InvoiceType = InvoiceType.SERVICE
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    customer_id: Optional[str] = None
    counterpart: Optional[Counterpart] = None
    lines: List[InvoiceLineInput] = []
    payment: Payment = Field(default_factory=Payment)
    currency: Currency = Currency.EUR
    exchange_rate: float = 1
    notes: Optional[str] = None
    send: bool = False  # issue and transmit immediately


class InvoiceUpdate(BaseModel):
    """Partial update; only allowed while the document is not transmitted"""
    invoice_type: Optional[InvoiceType] = None
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    customer_id: Optional[str] = None
    counterpart: Optional[Counterpart] = None
    lines: Optional[List[InvoiceLineInput]] = None
    payment: Optional[Payment] = None
    currency: Optional[Currency] = None
    notes: Optional[str] = None
    send: bool = False


class PaymentRequest(BaseModel):
    amount: Optional[float] = None  # defaults to the invoice total
    paid_date: Optional[datetime] = None
    method: Optional[PaymentMethod] = None
    info: Optional[str] = None
    partial: bool = False  # accumulate instead of settling the invoice


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class InvoiceResponse(Invoice):
    """Invoice plus the values derived at read time"""
    amount_due: float = 0
    days_overdue: int = 0

    @classmethod
    def from_invoice(cls, invoice: Invoice, now: Optional[datetime] = None) -> "InvoiceResponse":
        data = invoice.model_dump(by_alias=True)
        return cls(
            **data,
            amount_due=invoice.outstanding_amount(),
            days_overdue=invoice.overdue_days(now)
        )


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceResponse]
    total: int
    page: int
    limit: int


class NextNumberResponse(BaseModel):
    series: str
    next_number: str


class RevenueStats(BaseModel):
    total_invoices: int = 0
    total_revenue: float = 0
    paid_invoices: int = 0
    paid_revenue: float = 0
    overdue_invoices: int = 0
    overdue_revenue: float = 0
