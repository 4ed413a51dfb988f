"""
Invoice lifecycle service

Orchestrates numbering, derivation, the state machine and myDATA
transmission for one owner's invoices. Route handlers stay thin: they build
an InvoiceService(db, client) and translate its typed exceptions to HTTP.

Transmission outcomes:
    transmitted  acknowledgment stored, document locked
    rejected     protocol errors stored verbatim, transmission_status=failed
    (exception)  network / auth / server trouble, document left pending
"""

import uuid
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from config import get_settings
from models.external import (
    ExternalDocumentResponse,
    ExternalInvoiceCreate,
    ExternalReceiptCreate,
)
from models.invoice import (
    Address,
    Counterpart,
    IncomeClassification,
    Invoice,
    InvoiceCreate,
    InvoiceLine,
    InvoiceLineInput,
    InvoiceListResponse,
    InvoiceResponse,
    InvoiceSource,
    InvoiceStatus,
    InvoiceType,
    InvoiceUpdate,
    Modification,
    ModificationAction,
    Payment,
    PaymentMethod,
    PaymentRequest,
    RevenueStats,
    TaxInfo,
    TransmissionStatus,
    VatCategory,
    plain_enums,
    utcnow,
)
from models.mydata import ProtocolError, TransmittedDoc
from services.business_settings_service import BusinessSettingsService
from services.idempotency_service import IdempotencyService
from services.invoice_state import InvalidTransitionError, InvoiceStateMachine
from services.invoice_validation import (
    FieldError,
    InvoiceValidationError,
    apply_derivation,
    ensure_transmittable,
)
from services.mydata_client import CredentialsNotConfiguredError, MyDataClient, TransmissionError
from services.mydata_transformer import invoice_to_xml
from services.numbering_service import AllocationError, NumberingService, validate_series
from services.totals_service import to_decimal, money
from services.verification_code import render_verification_code

logger = logging.getLogger(__name__)

RECEIPT_SERIES = "R"
EXTERNAL_INVOICE_SERIES = "A"
REVENUE_CLASSIFICATION = "E3_561_001"
RECEIPT_CATEGORY = "category1_1"
SERVICE_CATEGORY = "category1_3"

EU_MEMBER_STATES = {
    "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FI", "FR", "DE", "HU", "IE", "IT",
    "LV", "LT", "LU", "MT", "NL", "PL", "PT", "RO", "SK", "SI", "ES", "SE",
}


class InvoiceNotFoundError(Exception):
    pass


class ConcurrentModificationError(InvalidTransitionError):
    """The stored document changed since it was loaded"""


class TransmissionOutcome(BaseModel):
    status: str  # draft | transmitted | rejected | cancelled
    invoice: Invoice
    errors: List[ProtocolError] = []


def new_invoice_id() -> str:
    return uuid.uuid4().hex


def infer_external_invoice_type(country: str) -> InvoiceType:
    """Service invoice type by counterpart location"""
    country = (country or "GR").upper()
    if country == "GR":
        return InvoiceType.SERVICE
    if country in EU_MEMBER_STATES:
        return InvoiceType.SERVICE_INTRA_COMMUNITY
    return InvoiceType.SERVICE_THIRD_COUNTRY


def build_lines(inputs: List[InvoiceLineInput]) -> List[InvoiceLine]:
    """Caller lines with numbering; amounts are derived later"""
    return [
        InvoiceLine(line_number=index + 1, **line.model_dump())
        for index, line in enumerate(inputs)
    ]


class InvoiceService:
    def __init__(self, db: AsyncIOMotorDatabase, client: Optional[MyDataClient] = None, clock=utcnow):
        self.db = db
        self.client = client
        self.clock = clock
        self.numbering = NumberingService(db)
        self.business = BusinessSettingsService(db)
        self.idempotency = IdempotencyService(db)

    # ============================================================
    # PERSISTENCE
    # ============================================================

    async def _load(self, user_id: str, invoice_id: str) -> Invoice:
        doc = await self.db.invoices.find_one({"_id": invoice_id, "user_id": user_id})
        if not doc:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
        return Invoice(**doc)

    async def _save(self, invoice: Invoice):
        """Write the whole document, guarded by its version counter"""
        expected = invoice.version
        invoice.version = expected + 1
        doc = invoice.to_document()
        doc.pop("_id", None)

        result = await self.db.invoices.update_one(
            {"_id": invoice.id, "user_id": invoice.user_id, "version": expected},
            {"$set": doc}
        )
        if result.matched_count == 0:
            invoice.version = expected
            raise ConcurrentModificationError(
                f"Invoice {invoice.invoice_number} was modified concurrently, reload and retry"
            )

    async def _insert_new(self, invoice: Invoice) -> Tuple[Invoice, bool]:
        """
        Number and store a new invoice.

        A numbering collision resyncs the counter and retries once before
        failing with AllocationError.
        """
        for attempt in range(2):
            invoice.invoice_number = await self.numbering.next_number(invoice.user_id, invoice.series)
            apply_derivation(invoice)
            try:
                stored, created = await self.idempotency.insert_once(invoice)
            except DuplicateKeyError:
                logger.warning(
                    f"[NUMBERING] Collision on {invoice.invoice_number} (attempt {attempt + 1}), resyncing"
                )
                await self.numbering.resync(invoice.user_id, invoice.series)
                continue

            if not created:
                # Lost an idempotency race: our number was never stored
                await self.numbering.release(invoice.user_id, invoice.invoice_number)
            return stored, created

        raise AllocationError(f"Could not allocate a unique number in series {invoice.series}")

    async def _refresh_overdue(self, invoice: Invoice) -> Invoice:
        """Apply sent -> overdue at read time and persist it conditionally"""
        machine = InvoiceStateMachine(invoice, clock=self.clock)
        if not machine.refresh_overdue():
            return invoice

        entry = invoice.modifications[-1]
        result = await self.db.invoices.update_one(
            {"_id": invoice.id, "user_id": invoice.user_id, "status": InvoiceStatus.SENT.value},
            {
                "$set": {"status": InvoiceStatus.OVERDUE.value, "updated_at": invoice.updated_at},
                "$inc": {"version": 1},
                "$push": {"modifications": plain_enums(entry.model_dump())},
            }
        )
        if result.modified_count:
            invoice.version += 1
            logger.info(f"Invoice {invoice.invoice_number} is now overdue")
            return invoice

        # Someone else moved it first; the stored state wins
        return await self._load(invoice.user_id, invoice.id)

    def _audit_created(self, invoice: Invoice, description: str):
        invoice.modifications.append(Modification(
            date=self.clock(),
            action=ModificationAction.CREATED,
            user_id=invoice.user_id,
            description=description
        ))

    def _require_client(self) -> MyDataClient:
        if self.client is None or not self.client.is_open:
            raise RuntimeError("myDATA client is not available")
        return self.client

    # ============================================================
    # READ
    # ============================================================

    async def get_invoice(self, user_id: str, invoice_id: str) -> Invoice:
        invoice = await self._load(user_id, invoice_id)
        return await self._refresh_overdue(invoice)

    async def list_invoices(self, user_id: str, status: Optional[str] = None,
                            transmission_status: Optional[str] = None, series: Optional[str] = None,
                            customer_id: Optional[str] = None, date_from: Optional[datetime] = None,
                            date_to: Optional[datetime] = None, page: int = 1,
                            limit: int = 20) -> InvoiceListResponse:
        query = {"user_id": user_id}
        if status:
            query["status"] = status
        if transmission_status:
            query["transmission_status"] = transmission_status
        if series:
            query["series"] = series
        if customer_id:
            query["customer_id"] = customer_id
        if date_from or date_to:
            query["issue_date"] = {}
            if date_from:
                query["issue_date"]["$gte"] = date_from
            if date_to:
                query["issue_date"]["$lte"] = date_to

        page = max(page, 1)
        total = await self.db.invoices.count_documents(query)
        docs = await self.db.invoices.find(query).sort("issue_date", -1).skip((page - 1) * limit).limit(limit).to_list(limit)

        now = self.clock()
        invoices = []
        for doc in docs:
            invoice = await self._refresh_overdue(Invoice(**doc))
            invoices.append(InvoiceResponse.from_invoice(invoice, now))

        return InvoiceListResponse(invoices=invoices, total=total, page=page, limit=limit)

    async def next_number(self, user_id: str, series: str) -> str:
        return await self.numbering.peek_next_number(user_id, series)

    async def revenue_stats(self, user_id: str, date_from: Optional[datetime] = None,
                            date_to: Optional[datetime] = None) -> RevenueStats:
        """Totals per owner, cancelled documents excluded"""
        query = {"user_id": user_id, "status": {"$ne": InvoiceStatus.CANCELLED.value}}
        if date_from or date_to:
            query["issue_date"] = {}
            if date_from:
                query["issue_date"]["$gte"] = date_from
            if date_to:
                query["issue_date"]["$lte"] = date_to

        now = self.clock()
        counts = {"total": 0, "paid": 0, "overdue": 0}
        sums = {"total": Decimal("0"), "paid": Decimal("0"), "overdue": Decimal("0")}

        cursor = self.db.invoices.find(query, {"status": 1, "due_date": 1, "totals.total_amount": 1})
        async for doc in cursor:
            amount = to_decimal((doc.get("totals") or {}).get("total_amount", 0))
            counts["total"] += 1
            sums["total"] += amount

            state = doc.get("status")
            if state == InvoiceStatus.PAID.value:
                counts["paid"] += 1
                sums["paid"] += amount
            elif state == InvoiceStatus.OVERDUE.value or (
                state == InvoiceStatus.SENT.value and doc.get("due_date") and doc["due_date"] < now
            ):
                counts["overdue"] += 1
                sums["overdue"] += amount

        return RevenueStats(
            total_invoices=counts["total"],
            total_revenue=money(sums["total"]),
            paid_invoices=counts["paid"],
            paid_revenue=money(sums["paid"]),
            overdue_invoices=counts["overdue"],
            overdue_revenue=money(sums["overdue"]),
        )

    # ============================================================
    # CREATE / EDIT
    # ============================================================

    async def _resolve_counterpart(self, user_id: str, counterpart: Optional[Counterpart],
                                   customer_id: Optional[str]) -> Counterpart:
        if counterpart is not None:
            return counterpart
        if not customer_id:
            return Counterpart()

        customer = await self.db.customers.find_one({"_id": customer_id, "user_id": user_id})
        if not customer:
            raise InvoiceValidationError([FieldError(field="customer_id", message="Customer not found")])

        address = customer.get("address") or {}
        afm = customer.get("afm") or customer.get("vat_number")
        country = address.get("country") or customer.get("country") or "GR"
        return Counterpart(
            vat_number=afm,
            country=country,
            name=customer.get("name"),
            email=customer.get("email"),
            address=Address(
                street=address.get("street"),
                number=address.get("number"),
                postal_code=address.get("postal_code"),
                city=address.get("city"),
                prefecture=address.get("prefecture"),
                country=country
            ),
            tax_info=TaxInfo(afm=afm)
        )

    async def create_invoice(self, user_id: str, data: InvoiceCreate) -> TransmissionOutcome:
        try:
            validate_series(data.series)
        except ValueError as e:
            raise InvoiceValidationError([FieldError(field="series", message=str(e))])

        issuer = await self.business.build_issuer(user_id)
        counterpart = await self._resolve_counterpart(user_id, data.counterpart, data.customer_id)
        issue_date = data.issue_date or self.clock()
        due_date = data.due_date
        if due_date is None:
            due_date = issue_date + timedelta(days=await self.business.payment_terms_days(user_id))

        invoice = Invoice(
            _id=new_invoice_id(),
            user_id=user_id,
            invoice_number="",
            series=data.series,
            invoice_type=data.invoice_type,
            source=InvoiceSource.MANUAL,
            customer_id=data.customer_id,
            issue_date=issue_date,
            due_date=due_date,
            issuer=issuer,
            counterpart=counterpart,
            lines=build_lines(data.lines),
            payment=data.payment,
            currency=data.currency,
            exchange_rate=data.exchange_rate,
            notes=data.notes,
            created_at=self.clock(),
            updated_at=self.clock(),
        )

        # Everything checkable is checked before a number is consumed
        apply_derivation(invoice, require_number=False)
        if data.send:
            InvoiceStateMachine(invoice, clock=self.clock).ensure_sendable()
            ensure_transmittable(invoice)

        self._audit_created(invoice, "Invoice created")
        invoice, _ = await self._insert_new(invoice)
        logger.info(f"Invoice {invoice.invoice_number} created for user {user_id}")

        if data.send:
            return await self._transmit(invoice, issue_on_success=True)
        return TransmissionOutcome(status=invoice.status.value, invoice=invoice)

    async def update_invoice(self, user_id: str, invoice_id: str, data: InvoiceUpdate) -> TransmissionOutcome:
        invoice = await self._load(user_id, invoice_id)
        machine = InvoiceStateMachine(invoice, clock=self.clock)
        machine.ensure_editable()

        changes = data.model_dump(exclude_unset=True, exclude={"send", "lines", "counterpart", "payment"})
        for field, value in changes.items():
            setattr(invoice, field, value)
        if data.counterpart is not None:
            invoice.counterpart = data.counterpart
        if data.lines is not None:
            invoice.lines = build_lines(data.lines)
        if data.payment is not None:
            invoice.payment = data.payment

        apply_derivation(invoice)
        machine.record_edit("Invoice modified")

        if data.send:
            machine.ensure_sendable()
            ensure_transmittable(invoice)
            await self._save(invoice)
            return await self._transmit(invoice, issue_on_success=invoice.status == InvoiceStatus.DRAFT)

        await self._save(invoice)
        return TransmissionOutcome(status=invoice.status.value, invoice=invoice)

    async def cancel_locally(self, user_id: str, invoice_id: str, reason: Optional[str] = None) -> Invoice:
        """Cancel a document that never reached myDATA"""
        invoice = await self._load(user_id, invoice_id)
        InvoiceStateMachine(invoice, clock=self.clock).cancel_locally(reason)
        await self._save(invoice)
        logger.info(f"Invoice {invoice.invoice_number} cancelled locally")
        return invoice

    async def record_payment(self, user_id: str, invoice_id: str, payload: PaymentRequest) -> Invoice:
        invoice = await self.get_invoice(user_id, invoice_id)
        machine = InvoiceStateMachine(invoice, clock=self.clock)
        # A payment event settles the invoice; partial amounts accumulate until they cover the total
        machine.record_payment(
            amount=payload.amount,
            paid_date=payload.paid_date,
            method=payload.method,
            info=payload.info,
            explicit=not payload.partial
        )
        await self._save(invoice)
        return invoice

    # ============================================================
    # TRANSMISSION
    # ============================================================

    async def _transmit(self, invoice: Invoice, issue_on_success: bool = False) -> TransmissionOutcome:
        client = self._require_client()
        machine = InvoiceStateMachine(invoice, clock=self.clock)

        if issue_on_success:
            machine.ensure_sendable()
        ensure_transmittable(invoice)
        credentials = await self.business.get_credentials(invoice.user_id)

        # Claim the document: a concurrent claim fails the version check, and
        # edits are refused until the claim is released below
        machine.begin_transmission()
        await self._save(invoice)
        claim_id = invoice.acknowledgment.claim_id
        logged = len(invoice.modifications)

        xml = invoice_to_xml(invoice)
        logger.info(f"[MYDATA] Sending {invoice.invoice_number} as {credentials.masked()}")

        try:
            result = await client.send_invoices(xml, credentials)
        except TransmissionError as e:
            machine.note_transient_failure(e.failure)
            await self._finish_transmission(invoice, claim_id, logged)
            raise

        if not result.success:
            machine.mark_failed(result.errors)
            invoice = await self._finish_transmission(invoice, claim_id, logged)
            return TransmissionOutcome(status="rejected", invoice=invoice, errors=result.errors)

        ack = result.acknowledgment
        qr_code = render_verification_code(
            ack.mark, ack.uid, ack.authentication_code, get_settings().verification_url_template
        )
        machine.mark_transmitted(ack, qr_code)
        issued = issue_on_success and invoice.status == InvoiceStatus.DRAFT
        if issued:
            machine.issue()
        invoice = await self._finish_transmission(invoice, claim_id, logged, issued=issued)
        logger.info(f"[MYDATA] Invoice {invoice.invoice_number} transmitted with mark {ack.mark}")
        return TransmissionOutcome(status="transmitted", invoice=invoice)

    async def _finish_transmission(self, invoice: Invoice, claim_id: str, logged: int,
                                   issued: bool = False) -> Invoice:
        """
        Record the outcome of a send and release the claim.

        Keyed on the claim rather than the document version: payments and
        overdue marking may land while the send is in flight and must survive.
        Only draft documents are issued here, and drafts cannot be paid, so
        writing the commercial status never overwrites a concurrent change.
        """
        fields = {
            "transmission_status": invoice.transmission_status.value,
            "acknowledgment": plain_enums(invoice.acknowledgment.model_dump()),
            "updated_at": invoice.updated_at,
        }
        if issued:
            fields["status"] = invoice.status.value
        update = {"$set": fields, "$inc": {"version": 1}}
        entries = [plain_enums(entry.model_dump()) for entry in invoice.modifications[logged:]]
        if entries:
            update["$push"] = {"modifications": {"$each": entries}}

        result = await self.db.invoices.update_one(
            {"_id": invoice.id, "user_id": invoice.user_id, "acknowledgment.claim_id": claim_id},
            update
        )
        if result.matched_count == 0:
            logger.error(
                f"[MYDATA] Claim on {invoice.invoice_number} was lost before the outcome was stored "
                f"(mark={invoice.acknowledgment.mark})"
            )
            raise ConcurrentModificationError(
                f"Invoice {invoice.invoice_number} transmission claim expired, reconcile with myDATA"
            )
        return await self._load(invoice.user_id, invoice.id)

    async def transmit_invoice(self, user_id: str, invoice_id: str) -> TransmissionOutcome:
        """Send (or retry) one invoice to myDATA"""
        invoice = await self._load(user_id, invoice_id)
        if invoice.status == InvoiceStatus.CANCELLED:
            raise InvalidTransitionError(
                f"Invoice {invoice.invoice_number} is cancelled",
                current=invoice.status.value,
                requested=TransmissionStatus.TRANSMITTED.value
            )
        return await self._transmit(invoice, issue_on_success=invoice.status == InvoiceStatus.DRAFT)

    async def cancel_in_mydata(self, user_id: str, invoice_id: str,
                               reason: Optional[str] = None) -> TransmissionOutcome:
        """Protocol cancellation: the authority issues a new cancellation mark"""
        client = self._require_client()
        invoice = await self._load(user_id, invoice_id)
        if invoice.transmission_status != TransmissionStatus.TRANSMITTED:
            raise InvalidTransitionError(
                "Only invoices transmitted to myDATA can be cancelled in myDATA",
                current=invoice.transmission_status.value,
                requested=TransmissionStatus.CANCELLED.value
            )

        credentials = await self.business.get_credentials(user_id)
        result = await client.cancel_invoice(invoice.acknowledgment.mark, credentials)

        if not result.success:
            return TransmissionOutcome(status="rejected", invoice=invoice, errors=result.errors)

        InvoiceStateMachine(invoice, clock=self.clock).apply_protocol_cancellation(result.cancellation_mark, reason)
        await self._save(invoice)
        return TransmissionOutcome(status="cancelled", invoice=invoice)

    async def transmitted_documents(self, user_id: str, date_from: datetime,
                                    date_to: datetime) -> List[TransmittedDoc]:
        client = self._require_client()
        credentials = await self.business.get_credentials(user_id)
        return await client.request_transmitted_docs(date_from, date_to, credentials)

    # ============================================================
    # EXTERNAL SOURCES
    # ============================================================

    async def _issue_external(self, invoice: Invoice, mark_paid: bool) -> ExternalDocumentResponse:
        """Store, issue and try to transmit an externally sourced document"""
        self._audit_created(invoice, f"Created from {invoice.source.value}")
        invoice, created = await self._insert_new(invoice)
        if not created:
            return external_view(invoice, created=False, message="Document already exists")

        machine = InvoiceStateMachine(invoice, clock=self.clock)
        machine.issue()
        if mark_paid:
            machine.record_payment(paid_date=invoice.issue_date, method=invoice.payment.method)
        await self._save(invoice)
        logger.info(f"{invoice.invoice_number} issued from {invoice.source.value}")

        # The document exists whatever happens next; transmission can be retried
        try:
            outcome = await self._transmit(invoice)
        except (TransmissionError, CredentialsNotConfiguredError, InvoiceValidationError) as e:
            logger.error(f"[MYDATA] {invoice.invoice_number} left pending: {e}")
            return external_view(invoice, message=str(e))

        return external_view(outcome.invoice, errors=outcome.errors)

    async def create_external_receipt(self, user_id: str, payload: ExternalReceiptCreate,
                                      source: InvoiceSource = InvoiceSource.API) -> ExternalDocumentResponse:
        reference = payload.payment.stripe_session_id
        existing = await self.idempotency.find_existing(user_id, reference)
        if existing:
            return external_view(existing, created=False, message="Receipt already exists")

        issuer = await self.business.build_issuer(user_id)
        customer = payload.customer
        name = f"{customer.first_name or ''} {customer.last_name or ''}".strip() or customer.email
        country = customer.address.country or "GR"
        counterpart = Counterpart(
            vat_number=customer.afm,
            country=country,
            name=name,
            email=customer.email,
            address=Address(
                street=customer.address.street,
                number=customer.address.number,
                postal_code=customer.address.postal_code,
                city=customer.address.city,
                prefecture=customer.address.state,
                country=country
            ),
            tax_info=TaxInfo(afm=customer.afm)
        )

        lines = [
            InvoiceLineInput(
                description=item.description or f"{payload.event_name or 'Event'} Ticket",
                item_description=item.item_description or (
                    f"Event Date: {payload.event_date}" if payload.event_date else None
                ),
                quantity=item.quantity,
                unit=item.unit,
                unit_price=item.unit_price,
                vat_category=item.vat_category,
                income_classification=[IncomeClassification(
                    classification_type=REVENUE_CLASSIFICATION,
                    category_id=RECEIPT_CATEGORY
                )]
            )
            for item in payload.items
        ]

        now = self.clock()
        invoice = Invoice(
            _id=new_invoice_id(),
            user_id=user_id,
            invoice_number="",
            series=RECEIPT_SERIES,
            invoice_type=InvoiceType.RETAIL_SERVICE_RECEIPT,
            source=source,
            external_reference=reference,
            external_order_id=payload.order_id,
            issue_date=now,
            due_date=now,
            issuer=issuer,
            counterpart=counterpart,
            lines=build_lines(lines),
            payment=Payment(method=payload.payment.method or PaymentMethod.POS),
            notes=f"Event: {payload.event_name}" if payload.event_name else None,
            created_at=now,
            updated_at=now,
        )
        apply_derivation(invoice, require_number=False)
        return await self._issue_external(invoice, mark_paid=True)

    async def create_external_invoice(self, user_id: str, payload: ExternalInvoiceCreate,
                                      source: InvoiceSource = InvoiceSource.API) -> ExternalDocumentResponse:
        party = payload.counterpart
        country = (party.country or "GR").upper()
        if country == "GR" and not party.vat_number:
            raise InvoiceValidationError([
                FieldError(field="counterpart.vat_number", message="Greek counterpart must have AFM")
            ])

        existing = await self.idempotency.find_existing(user_id, payload.reference)
        if existing:
            return external_view(existing, created=False, message="Invoice already exists")

        issuer = await self.business.build_issuer(user_id)
        invoice_type = payload.invoice_type or infer_external_invoice_type(country)
        reverse_charge = invoice_type in (InvoiceType.SERVICE_INTRA_COMMUNITY, InvoiceType.SERVICE_THIRD_COUNTRY)

        counterpart = Counterpart(
            vat_number=party.vat_number,
            country=country,
            name=party.name or party.business_name,
            address=Address(
                street=party.address.street,
                number=party.address.number,
                postal_code=party.address.postal_code,
                city=party.address.city,
                prefecture=party.address.state,
                country=country
            ),
            tax_info=TaxInfo(afm=party.vat_number)
        )

        lines = [
            InvoiceLineInput(
                description=item.description or "Commission",
                item_description=item.item_description,
                quantity=item.quantity,
                unit=item.unit,
                unit_price=item.unit_price,
                vat_category=VatCategory.ZERO_RATED if reverse_charge else item.vat_category,
                income_classification=[IncomeClassification(
                    classification_type=REVENUE_CLASSIFICATION,
                    category_id=SERVICE_CATEGORY
                )]
            )
            for item in payload.items
        ]

        default_method = PaymentMethod.DOMESTIC_BANK_ACCOUNT if country == "GR" else PaymentMethod.FOREIGN_BANK_ACCOUNT
        method = payload.payment.method if payload.payment and payload.payment.method else default_method

        now = self.clock()
        invoice = Invoice(
            _id=new_invoice_id(),
            user_id=user_id,
            invoice_number="",
            series=EXTERNAL_INVOICE_SERIES,
            invoice_type=invoice_type,
            source=source,
            external_reference=payload.reference,
            external_order_id=payload.host_id,
            issue_date=now,
            due_date=now + timedelta(days=await self.business.payment_terms_days(user_id)),
            issuer=issuer,
            counterpart=counterpart,
            lines=build_lines(lines),
            payment=Payment(method=method, amount=0),
            notes=payload.notes,
            created_at=now,
            updated_at=now,
        )
        apply_derivation(invoice, require_number=False)
        return await self._issue_external(invoice, mark_paid=False)

    async def get_external_document(self, user_id: str, invoice_id: str) -> ExternalDocumentResponse:
        return external_view(await self._load(user_id, invoice_id), created=False)

    async def get_by_external_reference(self, user_id: str, reference: str) -> ExternalDocumentResponse:
        invoice = await self.idempotency.find_existing(user_id, reference)
        if invoice is None:
            raise InvoiceNotFoundError(f"No document for external reference {reference}")
        return external_view(invoice, created=False)


def external_view(invoice: Invoice, created: bool = True, errors: Optional[List[ProtocolError]] = None,
                  message: Optional[str] = None) -> ExternalDocumentResponse:
    ack = invoice.acknowledgment
    return ExternalDocumentResponse(
        id=invoice.id,
        number=invoice.invoice_number,
        invoice_type=invoice.invoice_type.value,
        mark=ack.mark,
        qr_code=ack.qr_code,
        status=invoice.transmission_status.value,
        total_amount=invoice.totals.total_amount,
        issue_date=invoice.issue_date,
        customer_name=invoice.counterpart.name,
        customer_email=invoice.counterpart.email,
        created=created,
        errors=errors if errors is not None else list(ack.errors),
        message=message,
    )
