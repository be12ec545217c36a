"""Royal Mail manifest parser.

Royal Mail bills per manifest rather than per tracking number, so its CSV
cannot go through the normal column mapper. This parser reads the fixed
manifest layout and aggregates net cost per (date, product code).

Layout: three header lines, then one line per sales-order item with the
date as DD.MM.YYYY in column 0, product code in 11, volume in 20, net
value in 32 and gross value in 34. A trailing "Overall Result" line holds
totals and is ignored.
"""

import csv
import io
import re
from collections import OrderedDict
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from core.models.canonical import DecimalValue
from parsing.csv_adapter import decode_text

HEADER_LINES = 3
MIN_FIELDS = 35

COL_DATE = 0
COL_SALES_ORDER = 1
COL_DESTINATION = 9
COL_DESTINATION_ALT = 10
COL_PRODUCT_CODE = 11
COL_PRODUCT_DESCRIPTION = 12
COL_VOLUME = 20
COL_NET_VALUE = 32
COL_GROSS_VALUE = 34

PRODUCT_CODE_SERVICE_TYPES: Dict[str, str] = {
    "TPS": "rm_tracked_48",
    "TPM": "rm_tracked_24",
    "SD1": "special_delivery_1pm",
    "SD9": "special_delivery_9am",
    "MPR": "intl_tracked_ddp",
    "MP7": "intl_tracked_packet",
    "IBB": "intl_adjustment",
    "IFB": "intl_admin_charge",
    "RXA": "admin_charge",
}

# Admin charges and adjustments are not shipment costs
EXCLUDED_PRODUCT_CODES = frozenset({"IFB", "RXA", "IBB"})

_DOMESTIC_PATTERNS = (
    (re.compile(r"^VF\d+GB$"), "rm_tracked_48"),
    (re.compile(r"^LA\d+GB$"), "rm_tracked_48"),
    (re.compile(r"^AS\d+GB$"), "rm_tracked_24"),
    (re.compile(r"^SD\d+GB$"), "special_delivery_1pm"),
    (re.compile(r"^[A-Z]{2}\d+GB$"), "rm_tracked_48"),
)


class ManifestRow(BaseModel):
    date: str
    sales_order_no: str = ""
    product_code: str
    product_description: str = ""
    destination_country: str = "GB"
    quantity: int = 1
    net_value: DecimalValue = Decimal("0")
    gross_value: DecimalValue = Decimal("0")

    @property
    def vat_amount(self) -> Decimal:
        return self.gross_value - self.net_value


class DailyCost(BaseModel):
    """Net cost for one product on one manifest date."""
    date: str
    product_code: str
    service_type: str
    total_quantity: int = 0
    total_net_cost: DecimalValue = Decimal("0")

    @property
    def average_cost_per_item(self) -> Decimal:
        if not self.total_quantity:
            return self.total_net_cost
        return self.total_net_cost / self.total_quantity


class ProductTotals(BaseModel):
    quantity: int = 0
    cost: DecimalValue = Decimal("0")


class ManifestSummary(BaseModel):
    start_date: str = ""
    end_date: str = ""
    total_rows: int = 0
    total_net_value: DecimalValue = Decimal("0")
    product_breakdown: Dict[str, ProductTotals] = Field(default_factory=dict)


class ManifestParseResult(BaseModel):
    rows: List[ManifestRow] = Field(default_factory=list)
    daily_costs: List[DailyCost] = Field(default_factory=list)
    summary: ManifestSummary = Field(default_factory=ManifestSummary)


def service_type_for_product(product_code: str) -> str:
    """Internal service type for a Royal Mail product code."""
    return PRODUCT_CODE_SERVICE_TYPES.get(product_code, f"rm_{product_code.lower()}")


def infer_service_type_from_tracking(tracking_number: str) -> Optional[str]:
    """Best-guess service type from a Royal Mail tracking prefix."""
    if not tracking_number:
        return None
    upper = tracking_number.strip().upper()
    for pattern, service_type in _DOMESTIC_PATTERNS:
        if pattern.match(upper):
            return service_type
    return None


def _number(value: str) -> Decimal:
    if not value or value == "#":
        return Decimal("0")
    try:
        return Decimal(value.replace(",", ""))
    except InvalidOperation:
        return Decimal("0")


def _manifest_date(value: str) -> str:
    day, month, year = value.split(".")
    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"


def parse_manifest_rows(text: str) -> List[ManifestRow]:
    rows: List[ManifestRow] = []
    reader = csv.reader(io.StringIO(text, newline=""))
    for line_no, fields in enumerate(reader):
        if line_no < HEADER_LINES or not fields:
            continue
        if fields[0].strip() == "Overall Result" or len(fields) < MIN_FIELDS:
            continue
        fields = [f.strip() for f in fields]
        raw_date = fields[COL_DATE]
        if not raw_date or raw_date == "Date" or raw_date.count(".") != 2:
            continue

        quantity = _number(fields[COL_VOLUME])
        net_value = _number(fields[COL_NET_VALUE])
        if quantity == 0 and net_value == 0:
            continue

        rows.append(
            ManifestRow(
                date=_manifest_date(raw_date),
                sales_order_no=fields[COL_SALES_ORDER],
                product_code=fields[COL_PRODUCT_CODE],
                product_description=fields[COL_PRODUCT_DESCRIPTION],
                destination_country=fields[COL_DESTINATION] or fields[COL_DESTINATION_ALT] or "GB",
                quantity=int(quantity) or 1,
                net_value=net_value,
                gross_value=_number(fields[COL_GROSS_VALUE]),
            )
        )
    return rows


def aggregate_daily_costs(rows: List[ManifestRow]) -> List[DailyCost]:
    """Sum quantity and net cost per (date, product code), skipping admin codes."""
    daily: "OrderedDict[tuple, DailyCost]" = OrderedDict()
    for row in rows:
        if row.product_code in EXCLUDED_PRODUCT_CODES:
            continue
        key = (row.date, row.product_code)
        entry = daily.get(key)
        if entry is None:
            daily[key] = DailyCost(
                date=row.date,
                product_code=row.product_code,
                service_type=service_type_for_product(row.product_code),
                total_quantity=row.quantity,
                total_net_cost=row.net_value,
            )
        else:
            entry.total_quantity += row.quantity
            entry.total_net_cost += row.net_value
    return sorted(daily.values(), key=lambda d: (d.date, d.product_code))


def parse_royal_mail_manifest(data: bytes) -> ManifestParseResult:
    """Parse a Royal Mail manifest CSV into rows, daily costs and a summary."""
    text, _ = decode_text(data)
    rows = parse_manifest_rows(text)

    breakdown: Dict[str, ProductTotals] = {}
    for row in rows:
        totals = breakdown.setdefault(row.product_code, ProductTotals())
        totals.quantity += row.quantity
        totals.cost += row.net_value

    dates = sorted(r.date for r in rows)
    summary = ManifestSummary(
        start_date=dates[0] if dates else "",
        end_date=dates[-1] if dates else "",
        total_rows=len(rows),
        total_net_value=sum((r.net_value for r in rows), Decimal("0")),
        product_breakdown=breakdown,
    )
    return ManifestParseResult(rows=rows, daily_costs=aggregate_daily_costs(rows), summary=summary)
