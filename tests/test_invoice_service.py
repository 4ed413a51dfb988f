"""
Invoice lifecycle end to end: fake Mongo, myDATA behind an httpx.MockTransport.
"""

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from config import get_settings
from conftest import (
    CANCELLATION_RESPONSE,
    REJECTION_RESPONSE,
    SUCCESS_RESPONSE,
    USER_ID,
    UnavailableError,
    mock_client,
)
from models.external import (
    ExternalAddress,
    ExternalCounterpart,
    ExternalCustomer,
    ExternalInvoiceCreate,
    ExternalItem,
    ExternalPayment,
    ExternalReceiptCreate,
)
from models.invoice import (
    Counterpart,
    IncomeClassification,
    InvoiceCreate,
    InvoiceLineInput,
    InvoiceStatus,
    InvoiceType,
    InvoiceUpdate,
    ModificationAction,
    PaymentMethod,
    PaymentRequest,
    TaxInfo,
    TransmissionFailure,
    TransmissionStatus,
    VatCategory,
)
from services.business_settings_service import BusinessNotConfiguredError
from services.invoice_service import ConcurrentModificationError, InvoiceNotFoundError, InvoiceService
from services.invoice_state import InvalidTransitionError, InvoiceLockedError
from services.invoice_validation import InvoiceValidationError
from services.mydata_client import CredentialsNotConfiguredError, TransmissionNetworkError
from services.numbering_service import AllocationError

NOW = datetime(2026, 3, 1, 10, 0)


def success(mark="400001234567890"):
    return SUCCESS_RESPONSE.replace("400001234567890", mark)


class FakeMyData:
    """Answers SendInvoices from a script of responses; the last one repeats"""

    def __init__(self, *send_script, cancel=CANCELLATION_RESPONSE):
        self.send_script = list(send_script) or [success()]
        self.cancel = cancel
        self.requests = []

    @property
    def sent(self):
        return [r for r in self.requests if r.url.path.endswith("/SendInvoices")]

    def __call__(self, request):
        self.requests.append(request)
        if request.url.path.endswith("/CancelInvoice"):
            return httpx.Response(200, text=self.cancel)

        answer = self.send_script.pop(0) if len(self.send_script) > 1 else self.send_script[0]
        if answer == "network":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, text=answer)


class MidSendMyData(FakeMyData):
    """Runs another operation on the same service while SendInvoices is in flight"""

    def __init__(self, during_send, *send_script):
        super().__init__(*send_script)
        self.during_send = during_send
        self.service = None
        self.outcome = None

    async def __call__(self, request):
        if request.url.path.endswith("/SendInvoices") and self.outcome is None:
            try:
                self.outcome = await self.during_send(self.service)
            except InvalidTransitionError as e:
                self.outcome = e
        return super().__call__(request)

    def transmit(self, invoice_id):
        async def operation(service):
            self.service = service
            return await service.transmit_invoice(USER_ID, invoice_id)
        return operation


def run(db, settings, operation, mydata=None, clock=NOW):
    async def _run():
        async with mock_client(settings, mydata or FakeMyData()) as client:
            service = InvoiceService(db, client, clock=lambda: clock)
            return await operation(service)
    return asyncio.run(_run())


def invoice_request(send=False, unit_price=100, **overrides):
    values = dict(
        series="A",
        invoice_type=InvoiceType.SERVICE,
        counterpart=Counterpart(name="Client SA", vat_number="987654321", tax_info=TaxInfo(afm="987654321")),
        lines=[InvoiceLineInput(
            description="Consulting",
            unit_price=unit_price,
            vat_category=VatCategory.VAT_24,
            income_classification=[IncomeClassification(
                classification_type="E3_561_001",
                category_id="category1_3"
            )]
        )],
        send=send,
    )
    values.update(overrides)
    return InvoiceCreate(**values)


def receipt_request(session_id="cs_test_1", **overrides):
    values = dict(
        customer=ExternalCustomer(first_name="Maria", last_name="Papadopoulou", email="maria@example.com"),
        items=[ExternalItem(unit_price=50, vat_category=VatCategory.VAT_24)],
        payment=ExternalPayment(stripe_session_id=session_id),
        event_name="Summer Festival",
        event_date="2026-07-01",
        order_id="order-9",
    )
    values.update(overrides)
    return ExternalReceiptCreate(**values)


def stored(db, invoice_id):
    return next(doc for doc in db.invoices.docs if doc["_id"] == invoice_id)


class TestCreateInvoice:
    def test_creates_numbered_draft(self, configured_db, test_settings):
        outcome = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        invoice = outcome.invoice

        assert outcome.status == "draft"
        assert invoice.invoice_number == "A000001"
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.transmission_status == TransmissionStatus.PENDING
        assert invoice.totals.total_amount == 124.0
        assert invoice.due_date == NOW + timedelta(days=30)
        assert invoice.issuer.vat_number == "123456789"
        assert invoice.modifications[0].action == ModificationAction.CREATED
        assert stored(configured_db, invoice.id)["invoice_number"] == "A000001"

    def test_numbers_are_sequential(self, configured_db, test_settings):
        async def create_three(service):
            return [
                (await service.create_invoice(USER_ID, invoice_request())).invoice.invoice_number
                for _ in range(3)
            ]

        assert run(configured_db, test_settings, create_three) == ["A000001", "A000002", "A000003"]

    def test_invalid_lines_do_not_consume_a_number(self, configured_db, test_settings):
        bad = invoice_request(lines=[InvoiceLineInput(description="x", quantity=-1, unit_price=10)])
        with pytest.raises(InvoiceValidationError):
            run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, bad))

        assert configured_db.invoices.docs == []
        assert run(configured_db, test_settings, lambda s: s.next_number(USER_ID, "A")) == "A000001"

    def test_unsendable_draft_is_refused_before_numbering(self, configured_db, test_settings):
        request = invoice_request(send=True, counterpart=Counterpart(vat_number="987654321"))
        with pytest.raises(InvalidTransitionError):
            run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, request))
        assert configured_db.invoices.docs == []

    def test_invalid_series(self, configured_db, test_settings):
        with pytest.raises(InvoiceValidationError):
            run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request(series="a1")))

    def test_business_without_afm(self, fake_db, test_settings):
        with pytest.raises(BusinessNotConfiguredError):
            run(fake_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))

    def test_counterpart_from_customer(self, configured_db, test_settings):
        configured_db.customers.docs.append({
            "_id": "cust-1",
            "user_id": USER_ID,
            "name": "Beta OE",
            "afm": "111111111",
            "address": {"street": "Stadiou", "city": "Athens", "postal_code": "10564"},
        })
        request = invoice_request(counterpart=None, customer_id="cust-1")
        invoice = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, request)).invoice

        assert invoice.counterpart.name == "Beta OE"
        assert invoice.counterpart.afm == "111111111"

    def test_numbering_collision_resyncs_and_retries(self, configured_db, test_settings):
        run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        # A number written outside the counter
        configured_db.invoices.docs.append({
            "_id": "legacy", "user_id": USER_ID, "series": "A", "invoice_number": "A000002"
        })

        invoice = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request())).invoice
        assert invoice.invoice_number == "A000003"

    def test_counter_unavailable_fails_closed(self, configured_db, test_settings):
        configured_db.invoice_counters.fail_with = UnavailableError("no primary")
        with pytest.raises(AllocationError):
            run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        assert configured_db.invoices.docs == []


class TestTransmission:
    def test_send_on_create(self, configured_db, test_settings):
        mydata = FakeMyData(success())
        outcome = run(configured_db, test_settings,
                      lambda s: s.create_invoice(USER_ID, invoice_request(send=True)), mydata)
        invoice = outcome.invoice

        assert outcome.status == "transmitted"
        assert invoice.status == InvoiceStatus.SENT
        assert invoice.transmission_status == TransmissionStatus.TRANSMITTED
        assert invoice.acknowledgment.mark == "400001234567890"
        assert invoice.acknowledgment.uid == "A1B2C3D4E5F6"
        assert invoice.acknowledgment.authentication_code == "FEDCBA9876543210"
        assert invoice.acknowledgment.qr_code.startswith("data:image/png;base64,")

        body = mydata.sent[0].content.decode()
        assert "<aa>1</aa>" in body
        assert "<series>A</series>" in body
        assert mydata.sent[0].headers["aade-user-id"] == "acme-aade"

        doc = stored(configured_db, invoice.id)
        assert doc["transmission_status"] == "transmitted"
        assert doc["acknowledgment"]["mark"] == "400001234567890"

    def test_rejection_keeps_errors_in_order(self, configured_db, test_settings):
        outcome = run(configured_db, test_settings,
                      lambda s: s.create_invoice(USER_ID, invoice_request(send=True)),
                      FakeMyData(REJECTION_RESPONSE))
        invoice = outcome.invoice

        assert outcome.status == "rejected"
        assert [(e.code, e.message) for e in outcome.errors] == [("123", "bad AFM"), ("456", "bad date")]
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.transmission_status == TransmissionStatus.FAILED
        assert invoice.acknowledgment.transmission_failure == TransmissionFailure.VALIDATION

        doc = stored(configured_db, invoice.id)
        assert [e["code"] for e in doc["acknowledgment"]["errors"]] == ["123", "456"]
        assert doc["acknowledgment"]["mark"] is None

    def test_network_failure_leaves_invoice_pending(self, configured_db, test_settings):
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        invoice_id = created.invoice.id

        with pytest.raises(TransmissionNetworkError):
            run(configured_db, test_settings, lambda s: s.transmit_invoice(USER_ID, invoice_id),
                FakeMyData("network"))

        doc = stored(configured_db, invoice_id)
        assert doc["status"] == "draft"
        assert doc["transmission_status"] == "pending"
        assert doc["acknowledgment"]["transmission_failure"] == "network"

    def test_retry_after_rejection(self, configured_db, test_settings):
        first = run(configured_db, test_settings,
                    lambda s: s.create_invoice(USER_ID, invoice_request(send=True)),
                    FakeMyData(REJECTION_RESPONSE))

        outcome = run(configured_db, test_settings,
                      lambda s: s.transmit_invoice(USER_ID, first.invoice.id), FakeMyData(success()))

        assert outcome.status == "transmitted"
        assert outcome.invoice.invoice_number == first.invoice.invoice_number
        assert outcome.invoice.status == InvoiceStatus.SENT
        assert outcome.invoice.acknowledgment.errors == []
        actions = [m.action for m in outcome.invoice.modifications]
        assert ModificationAction.TRANSMISSION_FAILED in actions
        assert ModificationAction.TRANSMISSION_RETRY in actions

    def test_transmitted_invoice_cannot_be_sent_again(self, configured_db, test_settings):
        outcome = run(configured_db, test_settings,
                      lambda s: s.create_invoice(USER_ID, invoice_request(send=True)))
        with pytest.raises(InvalidTransitionError):
            run(configured_db, test_settings, lambda s: s.transmit_invoice(USER_ID, outcome.invoice.id))

    def test_concurrent_transmissions_send_once(self, configured_db, test_settings):
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        mydata = FakeMyData(success())

        async def race(service):
            return await asyncio.gather(
                service.transmit_invoice(USER_ID, created.invoice.id),
                service.transmit_invoice(USER_ID, created.invoice.id),
                return_exceptions=True
            )

        results = run(configured_db, test_settings, race, mydata)

        assert len(mydata.sent) == 1
        assert sum(1 for r in results if isinstance(r, ConcurrentModificationError)) == 1
        assert stored(configured_db, created.invoice.id)["transmission_status"] == "transmitted"

    def test_locked_after_transmission(self, configured_db, test_settings):
        outcome = run(configured_db, test_settings,
                      lambda s: s.create_invoice(USER_ID, invoice_request(send=True)))
        invoice_id = outcome.invoice.id

        with pytest.raises(InvoiceLockedError):
            run(configured_db, test_settings,
                lambda s: s.update_invoice(USER_ID, invoice_id, InvoiceUpdate(notes="changed")))
        with pytest.raises(InvoiceLockedError):
            run(configured_db, test_settings, lambda s: s.cancel_locally(USER_ID, invoice_id))

    def test_cancel_in_mydata(self, configured_db, test_settings):
        outcome = run(configured_db, test_settings,
                      lambda s: s.create_invoice(USER_ID, invoice_request(send=True)))
        mydata = FakeMyData()

        cancelled = run(configured_db, test_settings,
                        lambda s: s.cancel_in_mydata(USER_ID, outcome.invoice.id, "duplicate"), mydata)

        assert cancelled.status == "cancelled"
        assert cancelled.invoice.acknowledgment.cancellation_mark == "400009999999999"
        assert cancelled.invoice.acknowledgment.mark == "400001234567890"
        assert cancelled.invoice.transmission_status == TransmissionStatus.CANCELLED
        assert cancelled.invoice.status == InvoiceStatus.CANCELLED
        assert mydata.requests[0].url.params["mark"] == "400001234567890"

    def test_cancel_in_mydata_requires_transmission(self, configured_db, test_settings):
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        with pytest.raises(InvalidTransitionError):
            run(configured_db, test_settings, lambda s: s.cancel_in_mydata(USER_ID, created.invoice.id))

    def test_missing_credentials(self, configured_db, test_settings):
        configured_db.settings.docs[0].pop("mydata_credentials")
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))

        with pytest.raises(CredentialsNotConfiguredError):
            run(configured_db, test_settings, lambda s: s.transmit_invoice(USER_ID, created.invoice.id))
        assert stored(configured_db, created.invoice.id)["transmission_status"] == "pending"


class TestEditsAndPayments:
    def test_update_draft_rederives_totals(self, configured_db, test_settings):
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        lines = [InvoiceLineInput(
            description="Design", quantity=2, unit_price=50, vat_category=VatCategory.VAT_13,
            income_classification=[IncomeClassification(classification_type="E3_561_001", category_id="category1_3")]
        )]

        outcome = run(configured_db, test_settings,
                      lambda s: s.update_invoice(USER_ID, created.invoice.id, InvoiceUpdate(lines=lines)))

        assert outcome.invoice.totals.total_net_value == 100.0
        assert outcome.invoice.totals.total_vat_amount == 13.0
        assert outcome.invoice.invoice_number == "A000001"
        assert stored(configured_db, created.invoice.id)["version"] == created.invoice.version + 1

    def test_local_cancellation_of_draft(self, configured_db, test_settings):
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        invoice = run(configured_db, test_settings, lambda s: s.cancel_locally(USER_ID, created.invoice.id, "typo"))
        assert invoice.status == InvoiceStatus.CANCELLED
        assert invoice.modifications[-1].description == "typo"

    def test_full_payment(self, configured_db, test_settings):
        sent = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request(send=True)))
        invoice = run(configured_db, test_settings,
                      lambda s: s.record_payment(USER_ID, sent.invoice.id, PaymentRequest()))
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.payment.amount == 124.0

    def test_payment_with_amount_settles_invoice(self, configured_db, test_settings):
        sent = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request(send=True)))
        invoice = run(configured_db, test_settings,
                      lambda s: s.record_payment(USER_ID, sent.invoice.id, PaymentRequest(amount=50)))

        assert invoice.status == InvoiceStatus.PAID
        assert invoice.payment.amount == 50.0
        assert stored(configured_db, sent.invoice.id)["status"] == "paid"

    def test_partial_payments_accumulate(self, configured_db, test_settings):
        sent = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request(send=True)))

        partial = run(configured_db, test_settings,
                      lambda s: s.record_payment(USER_ID, sent.invoice.id, PaymentRequest(amount=50, partial=True)))
        assert partial.status == InvoiceStatus.SENT
        assert partial.outstanding_amount() == 74.0

        paid = run(configured_db, test_settings,
                   lambda s: s.record_payment(USER_ID, sent.invoice.id, PaymentRequest(amount=74, partial=True)))
        assert paid.status == InvoiceStatus.PAID

    def test_draft_cannot_be_paid(self, configured_db, test_settings):
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        with pytest.raises(InvalidTransitionError):
            run(configured_db, test_settings, lambda s: s.record_payment(USER_ID, created.invoice.id, PaymentRequest()))

    def test_other_owner_cannot_read(self, configured_db, test_settings):
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        with pytest.raises(InvoiceNotFoundError):
            run(configured_db, test_settings, lambda s: s.get_invoice("someone-else", created.invoice.id))


class TestReads:
    def test_overdue_is_persisted_on_read(self, configured_db, test_settings):
        sent = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request(send=True)))
        later = NOW + timedelta(days=31)

        invoice = run(configured_db, test_settings, lambda s: s.get_invoice(USER_ID, sent.invoice.id), clock=later)

        assert invoice.status == InvoiceStatus.OVERDUE
        doc = stored(configured_db, sent.invoice.id)
        assert doc["status"] == "overdue"
        assert doc["version"] == invoice.version
        assert doc["modifications"][-1]["action"] == "overdue"

    def test_not_overdue_before_due_date(self, configured_db, test_settings):
        sent = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request(send=True)))
        invoice = run(configured_db, test_settings, lambda s: s.get_invoice(USER_ID, sent.invoice.id),
                      clock=NOW + timedelta(days=5))
        assert invoice.status == InvoiceStatus.SENT

    def test_list_with_filters(self, configured_db, test_settings):
        async def populate(service):
            await service.create_invoice(USER_ID, invoice_request())
            await service.create_invoice(USER_ID, invoice_request(send=True))
            return await service.list_invoices(USER_ID, status="draft")

        listing = run(configured_db, test_settings, populate)
        assert listing.total == 1
        assert [i.invoice_number for i in listing.invoices] == ["A000001"]
        assert listing.invoices[0].amount_due == 124.0

    def test_revenue_stats(self, configured_db, test_settings):
        async def populate(service):
            paid = await service.create_invoice(USER_ID, invoice_request(send=True, unit_price=100))
            await service.record_payment(USER_ID, paid.invoice.id, PaymentRequest())
            await service.create_invoice(USER_ID, invoice_request(send=True, unit_price=50))
            draft = await service.create_invoice(USER_ID, invoice_request(unit_price=1000))
            await service.cancel_locally(USER_ID, draft.invoice.id)

        mydata = FakeMyData(success("400000000000001"), success("400000000000002"))
        run(configured_db, test_settings, populate, mydata)

        stats = run(configured_db, test_settings, lambda s: s.revenue_stats(USER_ID), clock=NOW + timedelta(days=40))

        assert stats.total_invoices == 2
        assert stats.total_revenue == 186.0
        assert stats.paid_invoices == 1
        assert stats.paid_revenue == 124.0
        assert stats.overdue_invoices == 1
        assert stats.overdue_revenue == 62.0

    def test_next_number_preview_does_not_consume(self, configured_db, test_settings):
        assert run(configured_db, test_settings, lambda s: s.next_number(USER_ID, "A")) == "A000001"
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        assert created.invoice.invoice_number == "A000001"


class TestExternalDocuments:
    def test_receipt_is_paid_and_transmitted(self, configured_db, test_settings):
        result = run(configured_db, test_settings, lambda s: s.create_external_receipt(USER_ID, receipt_request()))

        assert result.created is True
        assert result.number == "R000001"
        assert result.invoice_type == "11.2"
        assert result.status == "transmitted"
        assert result.mark == "400001234567890"
        assert result.total_amount == 62.0
        assert result.customer_name == "Maria Papadopoulou"

        doc = stored(configured_db, result.id)
        assert doc["status"] == "paid"
        assert doc["payment"]["method"] == PaymentMethod.POS.value
        assert doc["external_reference"] == "cs_test_1"
        assert doc["lines"][0]["description"] == "Summer Festival Ticket"

    def test_same_session_returns_same_receipt(self, configured_db, test_settings):
        mydata = FakeMyData(success())

        async def deliver_twice(service):
            first = await service.create_external_receipt(USER_ID, receipt_request())
            second = await service.create_external_receipt(USER_ID, receipt_request())
            return first, second

        first, second = run(configured_db, test_settings, deliver_twice, mydata)

        assert second.created is False
        assert second.id == first.id
        assert second.number == first.number
        assert second.mark == first.mark
        assert len(configured_db.invoices.docs) == 1
        assert len(mydata.sent) == 1

    def test_concurrent_deliveries_store_one_receipt(self, configured_db, test_settings):
        async def race(service):
            return await asyncio.gather(
                service.create_external_receipt(USER_ID, receipt_request()),
                service.create_external_receipt(USER_ID, receipt_request()),
            )

        results = run(configured_db, test_settings, race)

        assert sorted(r.created for r in results) == [False, True]
        assert results[0].number == results[1].number == "R000001"
        assert len(configured_db.invoices.docs) == 1
        # the losing delivery gives its number back
        assert configured_db.invoice_counters.docs[0]["seq"] == 1

    def test_receipt_survives_network_failure(self, configured_db, test_settings):
        result = run(configured_db, test_settings,
                     lambda s: s.create_external_receipt(USER_ID, receipt_request()), FakeMyData("network"))

        assert result.created is True
        assert result.status == "pending"
        assert result.mark is None
        assert "Cannot reach myDATA" in result.message

        retried = run(configured_db, test_settings, lambda s: s.transmit_invoice(USER_ID, result.id))
        assert retried.status == "transmitted"
        assert retried.invoice.status == InvoiceStatus.PAID

    def test_lookup_by_reference(self, configured_db, test_settings):
        created = run(configured_db, test_settings, lambda s: s.create_external_receipt(USER_ID, receipt_request()))

        found = run(configured_db, test_settings, lambda s: s.get_by_external_reference(USER_ID, "cs_test_1"))
        assert found.id == created.id
        assert found.created is False

        with pytest.raises(InvoiceNotFoundError):
            run(configured_db, test_settings, lambda s: s.get_by_external_reference(USER_ID, "cs_unknown"))

    def test_domestic_b2b_invoice(self, configured_db, test_settings):
        payload = ExternalInvoiceCreate(
            counterpart=ExternalCounterpart(business_name="Host OE", vat_number="222222222"),
            items=[ExternalItem(description="Commission", unit_price=200)],
            reference="payout-1",
        )
        result = run(configured_db, test_settings, lambda s: s.create_external_invoice(USER_ID, payload))

        assert result.number == "A000001"
        assert result.invoice_type == "2.1"
        assert result.total_amount == 248.0
        doc = stored(configured_db, result.id)
        assert doc["status"] == "sent"
        assert doc["payment"]["method"] == PaymentMethod.DOMESTIC_BANK_ACCOUNT.value

    def test_greek_counterpart_needs_afm(self, configured_db, test_settings):
        payload = ExternalInvoiceCreate(
            counterpart=ExternalCounterpart(name="Host OE"),
            items=[ExternalItem(unit_price=200)],
        )
        with pytest.raises(InvoiceValidationError):
            run(configured_db, test_settings, lambda s: s.create_external_invoice(USER_ID, payload))

    def test_intra_community_invoice_is_reverse_charged(self, configured_db, test_settings):
        payload = ExternalInvoiceCreate(
            counterpart=ExternalCounterpart(
                name="Gastgeber GmbH",
                vat_number="DE123456789",
                country="DE",
                address=ExternalAddress(street="Hauptstr. 5", postal_code="10115", city="Berlin", country="DE"),
            ),
            items=[ExternalItem(unit_price=200, vat_category=VatCategory.VAT_24)],
            reference="payout-2",
        )
        result = run(configured_db, test_settings, lambda s: s.create_external_invoice(USER_ID, payload))

        assert result.invoice_type == "2.2"
        assert result.total_amount == 200.0
        assert result.status == "transmitted"
        doc = stored(configured_db, result.id)
        assert doc["lines"][0]["vat_category"] == VatCategory.ZERO_RATED.value
        assert doc["payment"]["method"] == PaymentMethod.FOREIGN_BANK_ACCOUNT.value


class TestTransmissionIsolation:
    def changed_lines(self):
        return [InvoiceLineInput(
            description="Changed",
            unit_price=999,
            vat_category=VatCategory.VAT_24,
            income_classification=[IncomeClassification(classification_type="E3_561_001", category_id="category1_3")]
        )]

    def test_edit_during_send_is_refused(self, configured_db, test_settings):
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        invoice_id = created.invoice.id
        mydata = MidSendMyData(
            lambda s: s.update_invoice(USER_ID, invoice_id, InvoiceUpdate(lines=self.changed_lines()))
        )

        outcome = run(configured_db, test_settings, mydata.transmit(invoice_id), mydata)

        assert isinstance(mydata.outcome, InvoiceLockedError)
        assert outcome.status == "transmitted"
        doc = stored(configured_db, invoice_id)
        assert doc["transmission_status"] == "transmitted"
        assert doc["acknowledgment"]["mark"] == "400001234567890"
        assert doc["acknowledgment"]["claim_id"] is None
        assert doc["totals"]["total_amount"] == 124.0

    def test_local_cancel_during_send_is_refused(self, configured_db, test_settings):
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        invoice_id = created.invoice.id
        mydata = MidSendMyData(lambda s: s.cancel_locally(USER_ID, invoice_id))

        outcome = run(configured_db, test_settings, mydata.transmit(invoice_id), mydata)

        assert isinstance(mydata.outcome, InvoiceLockedError)
        assert outcome.invoice.status == InvoiceStatus.SENT
        assert stored(configured_db, invoice_id)["status"] == "sent"

    def test_payment_during_send_is_kept(self, configured_db, test_settings):
        payload = ExternalInvoiceCreate(
            counterpart=ExternalCounterpart(business_name="Host OE", vat_number="222222222"),
            items=[ExternalItem(description="Commission", unit_price=200)],
            reference="payout-9",
        )
        pending = run(configured_db, test_settings,
                      lambda s: s.create_external_invoice(USER_ID, payload), FakeMyData("network"))
        mydata = MidSendMyData(lambda s: s.record_payment(USER_ID, pending.id, PaymentRequest()))

        outcome = run(configured_db, test_settings, mydata.transmit(pending.id), mydata)

        assert mydata.outcome.status == InvoiceStatus.PAID
        assert outcome.status == "transmitted"
        doc = stored(configured_db, pending.id)
        assert doc["status"] == "paid"
        assert doc["payment"]["amount"] == 248.0
        assert doc["transmission_status"] == "transmitted"
        actions = [m["action"] for m in doc["modifications"]]
        assert actions.index("paid") < actions.index("transmitted")

    def test_unrenderable_verification_code_keeps_acknowledgment(self, configured_db, test_settings,
                                                                  monkeypatch):
        created = run(configured_db, test_settings, lambda s: s.create_invoice(USER_ID, invoice_request()))
        monkeypatch.setenv("VERIFICATION_URL_TEMPLATE", "https://x/{0}?mark={mark}")
        get_settings.cache_clear()
        try:
            outcome = run(configured_db, test_settings,
                          lambda s: s.transmit_invoice(USER_ID, created.invoice.id))
        finally:
            get_settings.cache_clear()

        assert outcome.status == "transmitted"
        assert outcome.invoice.acknowledgment.qr_code is None
        doc = stored(configured_db, created.invoice.id)
        assert doc["transmission_status"] == "transmitted"
        assert doc["acknowledgment"]["mark"] == "400001234567890"

    def test_issued_receipt_awaiting_transmission_cannot_be_edited(self, configured_db, test_settings):
        receipt = run(configured_db, test_settings,
                      lambda s: s.create_external_receipt(USER_ID, receipt_request()), FakeMyData("network"))

        with pytest.raises(InvoiceLockedError):
            run(configured_db, test_settings,
                lambda s: s.update_invoice(USER_ID, receipt.id, InvoiceUpdate(lines=self.changed_lines())))

        doc = stored(configured_db, receipt.id)
        assert doc["totals"]["total_amount"] == 62.0
        assert doc["payment"]["amount"] == 62.0
