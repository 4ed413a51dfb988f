"""
Classification Aggregator

Rolls per-line income classifications up into the document-level entries
required by the invoice summary. Entries sharing (classification_type,
category_id) are summed; output order is the order of first occurrence.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

from models.invoice import IncomeClassification, InvoiceLine
from services.totals_service import money, to_decimal


def line_classifications(line: InvoiceLine) -> List[IncomeClassification]:
    """Classifications of a line with the amount resolved (net value fallback)"""
    resolved = []
    for entry in line.income_classification:
        amount = entry.amount if entry.amount is not None else line.net_value
        resolved.append(IncomeClassification(
            classification_type=entry.classification_type,
            category_id=entry.category_id,
            amount=money(amount),
        ))
    return resolved


def aggregate_classifications(lines: Iterable[InvoiceLine]) -> List[IncomeClassification]:
    """Sum line classifications per (type, category) pair"""
    totals: Dict[Tuple[str, str], Decimal] = {}

    for line in lines:
        for entry in line_classifications(line):
            key = (entry.classification_type, entry.category_id)
            totals[key] = totals.get(key, Decimal("0")) + to_decimal(entry.amount)

    return [
        IncomeClassification(
            classification_type=classification_type,
            category_id=category_id,
            amount=money(amount),
        )
        for (classification_type, category_id), amount in totals.items()
    ]
