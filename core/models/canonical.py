"""Canonical data models for carrier invoice ingestion.

These models are shared by every stage of the pipeline:

    bytes -> RawTable -> ColumnMapping -> ParsedInvoiceRecord
          -> ReconciliationDecision / AnalyzedRecord

Money is always ``Decimal``. Raw rows are positional so semantic fields are
resolved to column indices once, during column mapping.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


# =============================================================================
# Value Parsers
# =============================================================================

def _parse_decimal(value):
    """Parse decimal from API payloads (floats, ints, numeric strings)."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("boolean is not a money amount")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        try:
            return Decimal(s)
        except InvalidOperation as exc:
            raise ValueError(f"Cannot parse amount: {value}") from exc
    return value


DecimalValue = Annotated[Decimal, BeforeValidator(_parse_decimal)]


# =============================================================================
# Enums
# =============================================================================

class FileType(str, Enum):
    """Detected upload file type."""
    CSV = "csv"
    XLSX = "xlsx"
    XLS = "xls"
    PDF = "pdf"
    UNKNOWN = "unknown"


class SemanticField(str, Enum):
    """Invoice columns the mapper tries to locate."""
    TRACKING = "tracking"
    COST = "cost"
    DATE = "date"
    SERVICE = "service"
    WEIGHT = "weight"
    CURRENCY = "currency"


REQUIRED_FIELDS: Tuple[SemanticField, ...] = (SemanticField.TRACKING, SemanticField.COST)

REQUIRED_FIELD_LABELS: Dict[SemanticField, str] = {
    SemanticField.TRACKING: "Tracking Number",
    SemanticField.COST: "Cost/Amount",
}


class UploadMode(str, Enum):
    """Conflict-resolution policy applied uniformly to a batch."""
    ADD_ONLY = "add_only"
    OVERWRITE_ALL = "overwrite_all"
    UPDATE_IF_HIGHER = "update_if_higher"
    UPDATE_IF_LOWER = "update_if_lower"
    ADD_TO_EXISTING = "add_to_existing"


class RecordAction(str, Enum):
    """Analysis-time decision for one invoice record."""
    CREATE = "create"
    UPDATE = "update"
    ADD = "add"
    SKIP = "skip"
    BLOCKED = "blocked"


class CostProvenance(str, Enum):
    """Whether a stored cost is carrier-invoiced or approximated."""
    ACTUAL = "actual"
    ESTIMATED = "estimated"


# =============================================================================
# Base Model
# =============================================================================

class CanonicalBase(BaseModel):
    """Base model for all canonical data structures."""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Raw Tables (format adapter output)
# =============================================================================

class RawRow(CanonicalBase):
    """One data row as ordered (header, cell) pairs."""
    model_config = ConfigDict(frozen=True)

    cells: Tuple[Tuple[str, str], ...] = ()

    def cell(self, index: Optional[int]) -> str:
        """Cell at a column index, or "" when the index is None/out of range."""
        if index is None or index < 0 or index >= len(self.cells):
            return ""
        return self.cells[index][1]

    def as_dict(self) -> Dict[str, str]:
        return {header: value for header, value in self.cells}


class RawTable(CanonicalBase):
    """Headers plus positional rows, produced once per file."""
    model_config = ConfigDict(frozen=True)

    headers: Tuple[str, ...] = ()
    rows: Tuple[RawRow, ...] = ()

    @classmethod
    def from_lists(cls, headers: Sequence[str], rows: Sequence[Sequence[str]]) -> "RawTable":
        """Build a table from a header list and equal-length row lists."""
        header_tuple = tuple(headers)
        raw_rows = tuple(
            RawRow(cells=tuple(zip(header_tuple, (str(v) for v in row))))
            for row in rows
        )
        return cls(headers=header_tuple, rows=raw_rows)


class AdapterResult(CanonicalBase):
    """What every format adapter returns; no semantic interpretation."""
    file_type: FileType
    table: RawTable
    warnings: List[str] = Field(default_factory=list)


# =============================================================================
# Column Mapping
# =============================================================================

class ColumnMapping(CanonicalBase):
    """Semantic field -> column index, with per-field confidence."""
    tracking: Optional[int] = None
    cost: Optional[int] = None
    date: Optional[int] = None
    service: Optional[int] = None
    weight: Optional[int] = None
    currency: Optional[int] = None
    confidence: Dict[str, float] = Field(default_factory=dict)

    def index_for(self, field: SemanticField) -> Optional[int]:
        return getattr(self, field.value)

    @property
    def unmapped_required(self) -> List[str]:
        """Labels of required fields that have no column."""
        return [
            REQUIRED_FIELD_LABELS[f] for f in REQUIRED_FIELDS
            if self.index_for(f) is None
        ]

    @property
    def is_complete(self) -> bool:
        return not self.unmapped_required


# =============================================================================
# Parsed Records
# =============================================================================

class ParsedInvoiceRecord(CanonicalBase):
    """A typed invoice line ready for reconciliation.

    ``tracking_number`` is already normalized; ``shipping_date`` is ISO
    ``YYYY-MM-DD`` or "" when the source date could not be read.
    """
    tracking_number: str
    shipping_cost: DecimalValue = Field(..., ge=0)
    currency: str = "GBP"
    service_type: str = ""
    weight_kg: float = 0.0
    shipping_date: str = ""
    raw_record: Dict[str, str] = Field(default_factory=dict)


class ExistingShipment(CanonicalBase):
    """Shipment as currently stored; consulted, never owned, by analysis."""
    id: Optional[int] = None
    tracking_number: str
    carrier: str
    shipping_cost: DecimalValue = Decimal("0")
    cost_locked: bool = False
    cost_provenance: CostProvenance = CostProvenance.ESTIMATED
    version: int = 1
    order_id: Optional[str] = None
    shipping_date: Optional[str] = None
    service_type: Optional[str] = None


class ReconciliationDecision(CanonicalBase):
    """Outcome of the reconciliation rules for one record."""
    action: RecordAction
    reason: str
    cost_difference: Optional[DecimalValue] = None
    new_cost: Optional[DecimalValue] = None


class AnalyzedRecord(ParsedInvoiceRecord):
    """A parsed record annotated with its decision and the state it saw.

    ``existing_version`` is the shipment row version at analysis time; the
    commit phase refuses to write if the row has moved since.
    """
    action: RecordAction
    reason: str
    cost_difference: Optional[DecimalValue] = None
    new_cost: Optional[DecimalValue] = None
    existing_cost: Optional[DecimalValue] = None
    existing_provenance: Optional[CostProvenance] = None
    existing_version: Optional[int] = None
    unmatched: bool = False
