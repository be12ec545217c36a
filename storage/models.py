"""Storage-side models for orders, carrier accounts and new shipments."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from core.models.canonical import CostProvenance, DecimalValue


class Order(BaseModel):
    """An order as seen by reconciliation: identity plus referenced tracking numbers."""
    id: str
    order_number: Optional[str] = None
    platform_order_id: Optional[str] = None
    platform: Optional[str] = None
    customer_name: Optional[str] = None
    tracking_numbers: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class CarrierAccount(BaseModel):
    id: Optional[int] = None
    carrier: str
    account_number: Optional[str] = None
    display_name: Optional[str] = None
    created_at: Optional[datetime] = None


class ShipmentDraft(BaseModel):
    """Fields for a shipment about to be inserted."""
    tracking_number: str
    carrier: str
    shipping_cost: DecimalValue = Decimal("0")
    currency: str = "GBP"
    service_type: Optional[str] = None
    weight_kg: Optional[float] = None
    shipping_date: Optional[str] = None
    cost_provenance: CostProvenance = CostProvenance.ESTIMATED
    cost_locked: bool = False
    order_id: Optional[str] = None
    carrier_account_id: Optional[int] = None
    status: str = "from_invoice"
    upload_key: Optional[str] = None
