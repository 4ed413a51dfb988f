"""Payloads accepted from external integrations (X-API-Key routes)"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from models.invoice import MeasurementUnit, PaymentMethod, VatCategory, InvoiceType
from models.mydata import ProtocolError


class ExternalAddress(BaseModel):
    street: Optional[str] = None
    number: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: str = "GR"


class ExternalCustomer(BaseModel):
    """Consumer buying through the external app"""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    afm: Optional[str] = None
    address: ExternalAddress = Field(default_factory=ExternalAddress)


class ExternalItem(BaseModel):
    description: Optional[str] = None
    item_description: Optional[str] = None
    quantity: float = 1
    unit: MeasurementUnit = MeasurementUnit.PIECES
    unit_price: float
    vat_category: VatCategory = VatCategory.VAT_24


class ExternalPayment(BaseModel):
    stripe_session_id: Optional[str] = None  # idempotency key
    method: Optional[PaymentMethod] = None


class ExternalReceiptCreate(BaseModel):
    """POST /api/external/receipts"""
    customer: ExternalCustomer
    items: List[ExternalItem] = Field(..., min_length=1)
    payment: ExternalPayment
    event_name: Optional[str] = None
    event_date: Optional[str] = None
    order_id: Optional[str] = None


class ExternalCounterpart(BaseModel):
    name: Optional[str] = None
    business_name: Optional[str] = None
    vat_number: Optional[str] = None
    country: str = "GR"
    address: ExternalAddress = Field(default_factory=ExternalAddress)


class ExternalInvoiceCreate(BaseModel):
    """POST /api/external/invoices (B2B commission invoices)"""
    counterpart: ExternalCounterpart
    items: List[ExternalItem] = Field(..., min_length=1)
    payment: Optional[ExternalPayment] = None
    invoice_type: Optional[InvoiceType] = None
    host_id: Optional[str] = None
    reference: Optional[str] = None  # idempotency key
    notes: Optional[str] = None


class ExternalDocumentResponse(BaseModel):
    """Compact view returned to external callers"""
    id: str
    number: str
    invoice_type: str
    mark: Optional[str] = None
    qr_code: Optional[str] = None
    status: str  # transmission status
    total_amount: float
    issue_date: Optional[datetime] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    created: bool = True
    errors: List[ProtocolError] = []
    message: Optional[str] = None
