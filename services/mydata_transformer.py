"""
myDATA Wire Transformer

Serializes invoices to the InvoicesDoc schema and parses the authority's
ResponseDoc / RequestedDoc payloads.

Parsing is two-stage:
    unwrap_envelope()  strips the optional string-typed envelope
                       (<string xmlns="...Serialization/">&lt;ResponseDoc...</string>)
    parse_payload()    reads the actual ResponseDoc

Error pairs are surfaced exactly as received, in document order.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Union

from lxml import etree

from models.invoice import (
    Counterpart,
    IncomeClassification,
    Invoice,
    InvoiceLine,
    MeasurementUnit,
)
from models.mydata import (
    SUCCESS_STATUS_CODE,
    Acknowledgment,
    CancellationResult,
    ProtocolError,
    ResponseItem,
    SendResult,
    TransmittedDoc,
)
from services.classification_service import aggregate_classifications, line_classifications
from services.numbering_service import split_for_wire
from services.totals_service import quantize_money, to_decimal

logger = logging.getLogger(__name__)

INVOICE_NS = "http://www.aade.gr/myDATA/invoice/v1.0"
ICLS_NS = "https://www.aade.gr/myDATA/incomeClassificaton/v1.0"
NSMAP = {None: INVOICE_NS, "icls": ICLS_NS}

ENVELOPE_TAG = "string"
DOMESTIC_COUNTRY = "GR"

MEASUREMENT_UNIT_CODES = {
    MeasurementUnit.PIECES: "1",
    MeasurementUnit.HOURS: "2",
    MeasurementUnit.DAYS: "3",
    MeasurementUnit.KILOGRAMS: "4",
    MeasurementUnit.METERS: "5",
    MeasurementUnit.SQUARE_METERS: "6",
    MeasurementUnit.LITERS: "7",
    MeasurementUnit.MONTHS: "8",
}

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)

XmlInput = Union[str, bytes]


class ResponseFormatError(ValueError):
    """Payload is not a ResponseDoc we can interpret"""


# ============================================================
# FORMATTING HELPERS
# ============================================================

def format_amount(value) -> str:
    return str(quantize_money(value))


def format_quantity(value) -> str:
    quantity = to_decimal(value)
    if quantity == quantity.to_integral_value():
        return str(int(quantity))
    return format(quantity.normalize(), "f")


def format_date(value: Union[date, datetime]) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def measurement_unit_code(unit: Union[MeasurementUnit, str]) -> str:
    try:
        return MEASUREMENT_UNIT_CODES[MeasurementUnit(unit)]
    except ValueError:
        return MEASUREMENT_UNIT_CODES[MeasurementUnit.PIECES]


def _el(parent, tag: str, text=None, ns: str = INVOICE_NS):
    element = etree.SubElement(parent, f"{{{ns}}}{tag}")
    if text is not None:
        # lxml escapes &, <, > and quotes on output
        element.text = str(text)
    return element


# ============================================================
# SERIALIZE
# ============================================================

def _append_address(parent, address):
    block = _el(parent, "address")
    _el(block, "street", address.street or "")
    _el(block, "number", address.number or "")
    _el(block, "postalCode", address.postal_code or "")
    _el(block, "city", address.city or "")


def _append_issuer(invoice_el, invoice: Invoice):
    issuer = invoice.issuer
    block = _el(invoice_el, "issuer")
    _el(block, "vatNumber", issuer.tax_info.afm or issuer.vat_number)
    _el(block, "country", issuer.country or DOMESTIC_COUNTRY)
    _el(block, "branch", issuer.branch)
    if (issuer.country or DOMESTIC_COUNTRY) != DOMESTIC_COUNTRY:
        _el(block, "name", issuer.name)
        _append_address(block, issuer.address)


def _append_business_counterpart(invoice_el, counterpart: Counterpart):
    country = counterpart.country or DOMESTIC_COUNTRY
    block = _el(invoice_el, "counterpart")
    _el(block, "vatNumber", counterpart.afm or "")
    _el(block, "country", country)
    _el(block, "branch", counterpart.branch)
    if country != DOMESTIC_COUNTRY:
        if counterpart.name:
            _el(block, "name", counterpart.name)
        _append_address(block, counterpart.address)


def _append_retail_counterpart(invoice_el, counterpart: Counterpart):
    country = counterpart.country or DOMESTIC_COUNTRY
    block = _el(invoice_el, "counterpart")
    if counterpart.afm:
        _el(block, "vatNumber", counterpart.afm)
        _el(block, "country", country)
        _el(block, "branch", counterpart.branch)
    else:
        # anonymous consumer: country only
        _el(block, "country", country)


def _append_classification(parent, entry: IncomeClassification):
    block = _el(parent, "incomeClassification")
    _el(block, "classificationType", entry.classification_type, ns=ICLS_NS)
    _el(block, "classificationCategory", entry.category_id, ns=ICLS_NS)
    _el(block, "amount", format_amount(entry.amount), ns=ICLS_NS)


def _append_line(invoice_el, line: InvoiceLine, invoice: Invoice):
    block = _el(invoice_el, "invoiceDetails")
    _el(block, "lineNumber", line.line_number)
    if not invoice.invoice_type.is_pure_service:
        if line.description:
            _el(block, "itemDescr", line.description)
        _el(block, "quantity", format_quantity(line.quantity))
        _el(block, "measurementUnit", measurement_unit_code(line.unit))
    _el(block, "netValue", format_amount(line.net_value))
    _el(block, "vatCategory", line.vat_category.value)
    _el(block, "vatAmount", format_amount(line.vat_amount))
    if line.vat_exemption_category:
        _el(block, "vatExemptionCategory", line.vat_exemption_category)
    for entry in line_classifications(line):
        _append_classification(block, entry)


def _append_summary(invoice_el, invoice: Invoice):
    totals = invoice.totals
    block = _el(invoice_el, "invoiceSummary")
    _el(block, "totalNetValue", format_amount(totals.total_net_value))
    _el(block, "totalVatAmount", format_amount(totals.total_vat_amount))
    _el(block, "totalWithheldAmount", format_amount(totals.total_withheld_amount))
    _el(block, "totalFeesAmount", format_amount(totals.total_fees_amount))
    _el(block, "totalStampDutyAmount", format_amount(totals.total_stamp_duty_amount))
    _el(block, "totalOtherTaxesAmount", format_amount(totals.total_other_taxes_amount))
    _el(block, "totalDeductionsAmount", format_amount(totals.total_deductions_amount))
    _el(block, "totalGrossValue", format_amount(totals.total_gross_value))
    for entry in aggregate_classifications(invoice.lines):
        _append_classification(block, entry)


def build_invoice_element(invoice: Invoice):
    series, aa = split_for_wire(invoice.invoice_number)

    root = etree.Element(f"{{{INVOICE_NS}}}InvoicesDoc", nsmap=NSMAP)
    invoice_el = _el(root, "invoice")

    _append_issuer(invoice_el, invoice)
    if invoice.invoice_type.is_retail:
        _append_retail_counterpart(invoice_el, invoice.counterpart)
    else:
        _append_business_counterpart(invoice_el, invoice.counterpart)

    header = _el(invoice_el, "invoiceHeader")
    _el(header, "series", series)
    _el(header, "aa", aa)
    _el(header, "issueDate", format_date(invoice.issue_date))
    _el(header, "invoiceType", invoice.invoice_type.value)
    _el(header, "currency", invoice.currency.value)

    payment_methods = _el(invoice_el, "paymentMethods")
    details = _el(payment_methods, "paymentMethodDetails")
    _el(details, "type", invoice.payment.method.value)
    _el(details, "amount", format_amount(invoice.totals.total_amount))

    for line in invoice.lines:
        _append_line(invoice_el, line, invoice)

    _append_summary(invoice_el, invoice)
    return root


def invoice_to_xml(invoice: Invoice) -> str:
    """Serialize a validated invoice into an InvoicesDoc document"""
    root = build_invoice_element(invoice)
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True).decode("utf-8")


def build_cancellation_request(mark: str) -> dict:
    """CancelInvoice takes the original mark as a query parameter and no body"""
    mark = (mark or "").strip()
    if not mark.isdigit():
        raise ValueError(f"Invalid myDATA mark: {mark!r}")
    return {"mark": mark}


# ============================================================
# DESERIALIZE
# ============================================================

def _local(element) -> str:
    return etree.QName(element).localname


def _child(element, name: str):
    for child in element:
        if isinstance(child.tag, str) and _local(child) == name:
            return child
    return None


def _children(element, name: str) -> List:
    return [child for child in element if isinstance(child.tag, str) and _local(child) == name]


def _text(element, name: str) -> Optional[str]:
    child = _child(element, name)
    if child is None or child.text is None:
        return None
    value = child.text.strip()
    return value or None


def _parse_root(payload: XmlInput):
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    try:
        return etree.fromstring(payload.strip(), parser=_PARSER)
    except etree.XMLSyntaxError as e:
        raise ResponseFormatError(f"Unparseable myDATA response: {e}") from e


def unwrap_envelope(payload: XmlInput) -> bytes:
    """
    Strip one string-typed envelope if present.

    Returns the inner document bytes, or the input unchanged when the payload
    is already a bare document.
    """
    raw = payload.encode("utf-8") if isinstance(payload, str) else payload
    root = _parse_root(raw)
    if _local(root) != ENVELOPE_TAG:
        return raw

    inner = (root.text or "").strip()
    if not inner.startswith("<"):
        raise ResponseFormatError("String envelope does not contain an XML document")
    logger.debug("[MYDATA] Unwrapped string envelope")
    return inner.encode("utf-8")


def parse_errors(element) -> List[ProtocolError]:
    errors_el = _child(element, "errors")
    if errors_el is None:
        return []
    return [
        ProtocolError(code=_text(error_el, "code") or "", message=_text(error_el, "message") or "")
        for error_el in _children(errors_el, "error")
    ]


def parse_payload(payload: XmlInput) -> List[ResponseItem]:
    """Read the <response> entries of an (unwrapped) ResponseDoc"""
    root = _parse_root(payload)
    if _local(root) != "ResponseDoc":
        raise ResponseFormatError(f"Expected ResponseDoc, got {_local(root)}")

    items = []
    for response_el in _children(root, "response"):
        index = _text(response_el, "index")
        items.append(ResponseItem(
            index=int(index) if index and index.isdigit() else None,
            status_code=_text(response_el, "statusCode") or "",
            invoice_uid=_text(response_el, "invoiceUid"),
            invoice_mark=_text(response_el, "invoiceMark"),
            authentication_code=_text(response_el, "authenticationCode"),
            cancellation_mark=_text(response_el, "cancellationMark"),
            errors=parse_errors(response_el),
        ))
    return items


def parse_response_doc(payload: XmlInput) -> List[ResponseItem]:
    return parse_payload(unwrap_envelope(payload))


def _first_item(payload: XmlInput) -> ResponseItem:
    items = parse_response_doc(payload)
    if not items:
        raise ResponseFormatError("ResponseDoc contains no response entries")
    return items[0]


def parse_send_response(payload: XmlInput) -> SendResult:
    """Interpret the answer to SendInvoices for a single-invoice document"""
    item = _first_item(payload)

    if item.is_success:
        if not (item.invoice_mark and item.invoice_uid and item.authentication_code):
            raise ResponseFormatError("Success response without mark, uid and authentication code")
        return SendResult(
            success=True,
            status_code=item.status_code,
            acknowledgment=Acknowledgment(
                index=item.index,
                mark=item.invoice_mark,
                uid=item.invoice_uid,
                authentication_code=item.authentication_code,
            ),
        )

    return SendResult(success=False, status_code=item.status_code, errors=item.errors)


def parse_cancellation_response(payload: XmlInput) -> CancellationResult:
    item = _first_item(payload)

    if item.is_success:
        if not item.cancellation_mark:
            raise ResponseFormatError("Success response without cancellation mark")
        return CancellationResult(
            success=True,
            status_code=item.status_code,
            cancellation_mark=item.cancellation_mark,
        )

    return CancellationResult(success=False, status_code=item.status_code, errors=item.errors)


def _parse_issue_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def parse_requested_docs(payload: XmlInput) -> List[TransmittedDoc]:
    """Read a RequestedDoc answer to RequestTransmittedDocs"""
    root = _parse_root(unwrap_envelope(payload))
    if _local(root) != "RequestedDoc":
        raise ResponseFormatError(f"Expected RequestedDoc, got {_local(root)}")

    cancellations = {}
    cancelled_doc = _child(root, "cancelledInvoicesDoc")
    if cancelled_doc is not None:
        for cancelled_el in _children(cancelled_doc, "cancelledInvoice"):
            mark = _text(cancelled_el, "invoiceMark")
            if mark:
                cancellations[mark] = _text(cancelled_el, "cancellationMark")

    documents = []
    invoices_doc = _child(root, "invoicesDoc")
    for invoice_el in _children(invoices_doc, "invoice") if invoices_doc is not None else []:
        issuer = _child(invoice_el, "issuer")
        counterpart = _child(invoice_el, "counterpart")
        header = _child(invoice_el, "invoiceHeader")
        summary = _child(invoice_el, "invoiceSummary")
        gross = _text(summary, "totalGrossValue") if summary is not None else None
        mark = _text(invoice_el, "mark")
        documents.append(TransmittedDoc(
            mark=mark,
            uid=_text(invoice_el, "uid"),
            authentication_code=_text(invoice_el, "authenticationCode"),
            issuer_vat_number=_text(issuer, "vatNumber") if issuer is not None else None,
            counterpart_vat_number=_text(counterpart, "vatNumber") if counterpart is not None else None,
            series=_text(header, "series") if header is not None else None,
            aa=_text(header, "aa") if header is not None else None,
            issue_date=_parse_issue_date(_text(header, "issueDate")) if header is not None else None,
            invoice_type=_text(header, "invoiceType") if header is not None else None,
            total_gross_value=float(Decimal(gross)) if gross else None,
            cancelled_by_mark=cancellations.get(mark) if mark else None,
        ))
    return documents
