"""
Totals Engine

Recomputes line and document aggregates from line items. Amounts are handled
as Decimal with ROUND_HALF_UP to two places and stored as floats.

    net_value    = quantity * unit_price
    vat_amount   = net_value * rate(vat_category)
    gross        = net + vat
    total_amount = gross - withheld + fees + other_taxes - deductions

Callers never supply net_value / vat_amount; they are always derived here.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Sequence, Union

from models.invoice import (
    InvoiceLine,
    InvoiceLineInput,
    InvoiceTotals,
    TaxTotal,
    VatCategory,
)

CENT = Decimal("0.01")

# myDATA VAT category table. 7 (zero-rated) and 8 (exempt) share the 0 rate
# but remain distinct categories.
VAT_RATES = {
    VatCategory.VAT_24: Decimal("0.24"),
    VatCategory.VAT_13: Decimal("0.13"),
    VatCategory.VAT_6: Decimal("0.06"),
    VatCategory.VAT_17: Decimal("0.17"),
    VatCategory.VAT_9: Decimal("0.09"),
    VatCategory.VAT_4: Decimal("0.04"),
    VatCategory.ZERO_RATED: Decimal("0"),
    VatCategory.EXEMPT: Decimal("0"),
}


class LineValidationError(ValueError):
    """Raised for line input the engine refuses to compute"""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


def to_decimal(value: Union[Decimal, float, int, str, None]) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # floats go through str() to avoid binary artefacts
    return Decimal(str(value))


def quantize_money(value: Union[Decimal, float, int, str, None]) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money(value: Union[Decimal, float, int, str, None]) -> float:
    return float(quantize_money(value))


def vat_rate(category: Union[VatCategory, str]) -> Decimal:
    try:
        return VAT_RATES[VatCategory(category)]
    except ValueError:
        raise LineValidationError("vat_category", f"Unknown VAT category: {category}")


def compute_line(line: Union[InvoiceLineInput, InvoiceLine], line_number: int) -> InvoiceLine:
    """Derive net and VAT amounts for one line"""
    prefix = f"lines[{line_number - 1}]"
    quantity = to_decimal(line.quantity)
    unit_price = to_decimal(line.unit_price)

    if quantity < 0:
        raise LineValidationError(f"{prefix}.quantity", "Quantity cannot be negative")
    if unit_price < 0:
        raise LineValidationError(f"{prefix}.unit_price", "Unit price cannot be negative")

    for field in ("withheld_amount", "fees_amount", "stamp_duty_amount",
                  "other_taxes_amount", "deductions_amount"):
        if to_decimal(getattr(line, field)) < 0:
            raise LineValidationError(f"{prefix}.{field}", "Amount cannot be negative")

    net_value = quantize_money(quantity * unit_price)
    vat_amount = quantize_money(net_value * vat_rate(line.vat_category))

    data = line.model_dump(exclude={"line_number", "net_value", "vat_amount"})
    return InvoiceLine(
        **data,
        line_number=line_number,
        net_value=float(net_value),
        vat_amount=float(vat_amount),
    )


def compute_lines(lines: Sequence[Union[InvoiceLineInput, InvoiceLine]]) -> List[InvoiceLine]:
    return [compute_line(line, index + 1) for index, line in enumerate(lines)]


def compute_totals(lines: Iterable[InvoiceLine]) -> InvoiceTotals:
    """Sum document-level aggregates from already-computed lines"""
    net = vat = withheld = fees = stamp = other = deductions = Decimal("0")

    for line in lines:
        net += to_decimal(line.net_value)
        vat += to_decimal(line.vat_amount)
        withheld += to_decimal(line.withheld_amount)
        fees += to_decimal(line.fees_amount)
        stamp += to_decimal(line.stamp_duty_amount)
        other += to_decimal(line.other_taxes_amount)
        deductions += to_decimal(line.deductions_amount)

    gross = net + vat
    # stamp duty is reported in the summary but is not part of the payable total
    total = gross - withheld + fees + other - deductions

    return InvoiceTotals(
        total_net_value=money(net),
        total_vat_amount=money(vat),
        total_withheld_amount=money(withheld),
        total_fees_amount=money(fees),
        total_stamp_duty_amount=money(stamp),
        total_other_taxes_amount=money(other),
        total_deductions_amount=money(deductions),
        total_gross_value=money(gross),
        total_amount=money(total),
    )


def compute_tax_totals(lines: Iterable[InvoiceLine]) -> List[TaxTotal]:
    """VAT analysis per category, in order of first occurrence"""
    buckets = {}
    for line in lines:
        category = VatCategory(line.vat_category)
        bucket = buckets.setdefault(category, [Decimal("0"), Decimal("0")])
        bucket[0] += to_decimal(line.net_value)
        bucket[1] += to_decimal(line.vat_amount)

    return [
        TaxTotal(
            vat_category=category,
            rate=float(VAT_RATES[category] * 100),
            underlying_value=money(underlying),
            tax_amount=money(tax),
        )
        for category, (underlying, tax) in buckets.items()
    ]
