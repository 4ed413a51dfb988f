"""
Pre-persistence validation and derivation pass.

Runs before every write of an invoice document: recomputes line amounts,
totals and the VAT analysis, then checks the cross-field invariants. The result
is explicit (ok | list of field errors); nothing is derived inside the storage
layer.
"""

from typing import List, Optional
from pydantic import BaseModel

from models.invoice import Invoice, InvoiceLine, InvoiceTotals, TaxTotal
from services.invoice_state import check_acknowledgment_invariant
from services.numbering_service import parse_invoice_number
from services.totals_service import (
    LineValidationError,
    compute_lines,
    compute_tax_totals,
    compute_totals,
    quantize_money,
)


class FieldError(BaseModel):
    field: str
    message: str


class ValidationResult(BaseModel):
    ok: bool
    errors: List[FieldError] = []
    lines: List[InvoiceLine] = []
    totals: Optional[InvoiceTotals] = None
    taxes_totals: List[TaxTotal] = []


class InvoiceValidationError(Exception):
    """Local validation failure, reported before any network call"""

    def __init__(self, errors: List[FieldError]):
        self.errors = errors
        super().__init__("; ".join(f"{e.field}: {e.message}" for e in errors))


def derive(invoice: Invoice, require_number: bool = True) -> ValidationResult:
    """Recompute derived amounts and check document invariants"""
    errors: List[FieldError] = []

    if require_number:
        try:
            parse_invoice_number(invoice.invoice_number)
        except ValueError as e:
            errors.append(FieldError(field="invoice_number", message=str(e)))

    try:
        lines = compute_lines(invoice.lines)
    except LineValidationError as e:
        errors.append(FieldError(field=e.field, message=e.message))
        return ValidationResult(ok=False, errors=errors)

    totals = compute_totals(lines)

    gross = quantize_money(totals.total_net_value) + quantize_money(totals.total_vat_amount)
    if quantize_money(totals.total_gross_value) != gross:
        errors.append(FieldError(field="totals.total_gross_value", message="Gross value must equal net + VAT"))

    if invoice.due_date and invoice.due_date < invoice.issue_date.replace(hour=0, minute=0, second=0, microsecond=0):
        errors.append(FieldError(field="due_date", message="Due date cannot precede issue date"))

    invariant = check_acknowledgment_invariant(invoice)
    if invariant:
        errors.append(FieldError(field="acknowledgment", message=invariant))

    return ValidationResult(
        ok=not errors,
        errors=errors,
        lines=lines,
        totals=totals,
        taxes_totals=compute_tax_totals(lines),
    )


def apply_derivation(invoice: Invoice, require_number: bool = True) -> Invoice:
    """Run derive() and write the derived values back, or raise"""
    result = derive(invoice, require_number)
    if not result.ok:
        raise InvoiceValidationError(result.errors)
    invoice.lines = result.lines
    invoice.totals = result.totals
    invoice.taxes_totals = result.taxes_totals
    return invoice


def transmission_errors(invoice: Invoice) -> List[FieldError]:
    """Rules the document must satisfy before it is serialized for myDATA"""
    errors: List[FieldError] = []
    counterpart = invoice.counterpart
    invoice_type = invoice.invoice_type

    if not (invoice.issuer.tax_info.afm or invoice.issuer.vat_number):
        errors.append(FieldError(field="issuer.vat_number", message="Issuer AFM is required"))

    if not invoice.lines:
        errors.append(FieldError(field="lines", message="At least one line is required"))

    if not invoice_type.is_retail:
        if not (counterpart.name or "").strip():
            errors.append(FieldError(field="counterpart.name", message="Counterpart name is required"))
        if not counterpart.afm:
            errors.append(FieldError(
                field="counterpart.vat_number",
                message="Counterpart VAT number is required for business invoices"
            ))
        if counterpart.country != "GR":
            address = counterpart.address
            for field in ("street", "postal_code", "city"):
                if not getattr(address, field):
                    errors.append(FieldError(
                        field=f"counterpart.address.{field}",
                        message="Full address is required for non-domestic counterparts"
                    ))

    for index, line in enumerate(invoice.lines):
        if not line.income_classification:
            errors.append(FieldError(
                field=f"lines[{index}].income_classification",
                message="Income classification is required"
            ))

    return errors


def ensure_transmittable(invoice: Invoice):
    errors = transmission_errors(invoice)
    if errors:
        raise InvoiceValidationError(errors)
