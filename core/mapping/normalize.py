"""Record normalization.

Turns positional raw rows into typed ``ParsedInvoiceRecord``s using a
resolved ColumnMapping. This is the only place tracking numbers are
normalized; everything downstream compares the normalized form.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from carriers.templates import normalize_tracking_number
from core.models.canonical import ColumnMapping, ParsedInvoiceRecord, RawTable

_CURRENCY_SYMBOLS = re.compile(r"[£$€¥]")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")
_DMY_DATE = re.compile(r"^(\d{1,2})([/.\-])(\d{1,2})\2(\d{4})$")
_COMPACT_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")

ZERO = Decimal("0")


@dataclass
class NormalizationResult:
    """Typed records plus drop counts and warnings for one table."""
    records: List[ParsedInvoiceRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    dropped_missing_tracking: int = 0
    dropped_missing_cost: int = 0

    @property
    def rows_dropped(self) -> int:
        return self.dropped_missing_tracking + self.dropped_missing_cost


def parse_cost(value) -> Decimal:
    """Parse a money cell. Unreadable, missing and negative values give 0."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        amount = Decimal(str(value))
    else:
        cleaned = _CURRENCY_SYMBOLS.sub("", str(value)).replace(",", "")
        cleaned = "".join(cleaned.split())
        if not cleaned:
            return ZERO
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return ZERO
    if not amount.is_finite() or amount < 0:
        return ZERO
    return amount


def parse_weight(value, header: str = "") -> float:
    """Parse a weight cell as kilograms; gram headers are converted."""
    if value is None or value == "":
        return 0.0
    try:
        weight = float(str(value).replace(",", "").strip())
    except ValueError:
        return 0.0
    header_lower = (header or "").lower()
    if "(g)" in header_lower or "gram" in header_lower:
        return weight / 1000
    return weight


def _iso(year: int, month: int, day: int) -> str:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return ""


def parse_date(value) -> str:
    """Parse a date cell to ``YYYY-MM-DD``; "" when the format is unknown.

    Accepts ISO dates and datetimes, DD/MM/YYYY, DD-MM-YYYY, DD.MM.YYYY
    and the compact YYYYMMDD used in DHL exports.
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    if not text:
        return ""

    match = _ISO_DATE.match(text)
    if match:
        return _iso(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = _DMY_DATE.match(text)
    if match:
        return _iso(int(match.group(4)), int(match.group(3)), int(match.group(1)))

    match = _COMPACT_DATE.match(text)
    if match:
        return _iso(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    return ""


def _header_at(headers, index: Optional[int]) -> str:
    if index is None or index < 0 or index >= len(headers):
        return ""
    return headers[index]


def normalize_records(
    table: RawTable,
    mapping: ColumnMapping,
    default_currency: str = "GBP",
) -> NormalizationResult:
    """Apply a column mapping to every row of a table.

    Rows with no tracking number or a zero cost are dropped and counted.
    Running this on a table whose tracking numbers are already normalized
    yields identical records.
    """
    result = NormalizationResult()

    for row in table.rows:
        tracking = normalize_tracking_number(row.cell(mapping.tracking))
        if not tracking:
            result.dropped_missing_tracking += 1
            continue

        cost = parse_cost(row.cell(mapping.cost))
        if cost == ZERO:
            result.dropped_missing_cost += 1
            continue

        currency = row.cell(mapping.currency).strip().upper() or default_currency
        result.records.append(
            ParsedInvoiceRecord(
                tracking_number=tracking,
                shipping_cost=cost,
                currency=currency,
                service_type=row.cell(mapping.service).strip(),
                weight_kg=parse_weight(
                    row.cell(mapping.weight), _header_at(table.headers, mapping.weight)
                ),
                shipping_date=parse_date(row.cell(mapping.date)),
                raw_record=row.as_dict(),
            )
        )

    if result.dropped_missing_tracking:
        result.warnings.append(
            f"{result.dropped_missing_tracking} rows skipped: missing tracking number"
        )
    if result.dropped_missing_cost:
        result.warnings.append(
            f"{result.dropped_missing_cost} rows skipped: missing or zero cost"
        )
    return result
