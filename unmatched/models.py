"""Unmatched invoice record models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from core.models.canonical import DecimalValue


class UnmatchedStatus(str, Enum):
    """pending = needs review, matched = linked to an order,
    voided = wasted label, resolved = handled with notes."""
    PENDING = "pending"
    MATCHED = "matched"
    VOIDED = "voided"
    RESOLVED = "resolved"


# Terminal statuses reachable from pending
RESOLVED_STATUSES = (UnmatchedStatus.MATCHED, UnmatchedStatus.VOIDED, UnmatchedStatus.RESOLVED)


class UnmatchedRecord(BaseModel):
    """An invoice line with no shipment and no order referencing it."""
    id: Optional[int] = None
    tracking_number: str
    carrier: str
    shipping_cost: DecimalValue = Decimal("0")
    currency: str = "GBP"
    service_type: Optional[str] = None
    weight_kg: Optional[float] = None
    shipping_date: Optional[str] = None

    # Invoice metadata
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    file_name: Optional[str] = None
    upload_key: Optional[str] = None

    # Resolution
    status: UnmatchedStatus = UnmatchedStatus.PENDING
    resolution_notes: Optional[str] = None
    matched_order_id: Optional[str] = None
    matched_shipment_id: Optional[int] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    created_at: Optional[datetime] = None
    raw_record: Dict[str, str] = Field(default_factory=dict)


class StatusUpdate(BaseModel):
    """Requested transition for one unmatched record.

    ``order_ref`` is required for ``matched`` and may be an order id, order
    number, platform order id or part of the customer name.
    """
    status: UnmatchedStatus
    notes: Optional[str] = None
    order_ref: Optional[str] = None
    resolved_by: str = "system"


class UnmatchedPage(BaseModel):
    records: List[UnmatchedRecord] = Field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0
    status_counts: Dict[str, int] = Field(default_factory=dict)


class DedupeResult(BaseModel):
    duplicate_groups: int = 0
    deleted: int = 0
    deleted_ids: List[int] = Field(default_factory=list)
