from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
import io
import re
from typing import Iterable, Optional

EXPORT_COLUMNS = (
    "Date",
    "Type",
    "Category",
    "Amount (INR)",
    "Original Amount",
    "Original Currency",
    "Description",
)

LINE_BREAKS = re.compile(r"\r\n|[\n\r\x0b\x0c\x85\u2028\u2029]")
QUOTE_TRIGGERS = (",", '"', "'")


@dataclass(frozen=True)
class ExportRow:
    date: date
    type: str
    category: Optional[str]
    amount: Decimal
    original_amount: Optional[Decimal]
    original_currency: Optional[str]
    description: Optional[str]


def escape_field(value: Optional[str]) -> str:
    if value is None:
        return ""
    flattened = LINE_BREAKS.sub(" ", value)
    if any(trigger in flattened for trigger in QUOTE_TRIGGERS):
        return '"' + flattened.replace('"', '""') + '"'
    return flattened


def render_transactions_csv(rows: Iterable[ExportRow]) -> str:
    out = io.StringIO()
    out.write(",".join(EXPORT_COLUMNS) + "\n")
    for row in rows:
        fields = [
            row.date.isoformat(),
            row.type,
            escape_field(row.category),
            str(row.amount),
            str(row.original_amount) if row.original_amount is not None else "",
            escape_field(row.original_currency),
            escape_field(row.description),
        ]
        out.write(",".join(fields) + "\n")
    return out.getvalue()
