"""Royal Mail manifest cost allocation.

Royal Mail bills per manifest day, not per parcel, so a shipment's cost is
estimated as the average net cost per item of its product on its shipping
date. Matching order for each stored shipment:

1. its shipping date, with the service types its own service maps to
2. its shipping date, with the service type inferred from the tracking prefix
3. the day before or after (manifest and ship dates drift by a day), with
   the service's types, then with the inferred types

Matched shipments become ordinary invoice records, so the write goes through
the same analysis and guarded commit as any other upload.
"""

from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from core.models.canonical import DecimalValue, ExistingShipment, ParsedInvoiceRecord
from core.models.refs import AnalysisResult, CommitResult
from parsing.manifest import DailyCost, ManifestSummary, infer_service_type_from_tracking


# =============================================================================
# Configuration
# =============================================================================

MANIFEST_CARRIER = "royalmail"

# Service types the manifest parser produces; a shipment carrying one of
# these needs no translation
MANIFEST_SERVICE_TYPES = frozenset({
    "rm_tracked_48",
    "rm_tracked_24",
    "special_delivery_1pm",
    "special_delivery_9am",
    "intl_tracked_ddp",
    "intl_tracked_packet",
})

CENT = Decimal("0.01")


# =============================================================================
# Models
# =============================================================================

class AllocatedShipment(BaseModel):
    """A shipment matched to a manifest day."""
    tracking_number: str
    shipping_date: str
    service_type: str = ""
    product_code: str
    manifest_date: str
    adjacent_day: bool = False
    previous_cost: Optional[DecimalValue] = None
    new_cost: DecimalValue
    cost_source: str


class UnallocatedShipment(BaseModel):
    tracking_number: str
    shipping_date: str
    service_type: str = ""
    inferred_service: bool = False


class ManifestAllocation(BaseModel):
    allocated: List[AllocatedShipment] = Field(default_factory=list)
    unallocated: List[UnallocatedShipment] = Field(default_factory=list)

    def to_records(self) -> List[ParsedInvoiceRecord]:
        return [
            ParsedInvoiceRecord(
                tracking_number=a.tracking_number,
                shipping_cost=a.new_cost,
                currency="GBP",
                service_type=a.service_type,
                shipping_date=a.shipping_date,
                raw_record={"product_code": a.product_code, "cost_source": a.cost_source},
            )
            for a in self.allocated
        ]


class ManifestAllocationReport(BaseModel):
    """Result of allocating one manifest; ``commit`` is None on a dry run."""
    file_name: Optional[str] = None
    dry_run: bool = False
    start_date: str
    end_date: str
    summary: ManifestSummary
    shipments_found: int = 0
    allocated: List[AllocatedShipment] = Field(default_factory=list)
    unallocated: List[UnallocatedShipment] = Field(default_factory=list)
    analysis: AnalysisResult
    commit: Optional[CommitResult] = None


# =============================================================================
# Matching
# =============================================================================

def candidate_service_types(service_type: Optional[str]) -> List[str]:
    """Manifest service types to try for a stored service name, most likely first."""
    if not service_type:
        return []
    if service_type in MANIFEST_SERVICE_TYPES:
        return [service_type]

    lower = service_type.lower()
    if "tracked_48" in lower or "tps" in lower:
        return ["rm_tracked_48"]
    if "tracked_24" in lower or "tpm" in lower:
        return ["rm_tracked_24"]
    if "special_delivery" in lower:
        return ["special_delivery_1pm", "special_delivery_9am"]
    if "intl" in lower and "parcel" in lower:
        return ["intl_tracked_ddp", "intl_tracked_packet"]
    if "intl" in lower and "packet" in lower:
        return ["intl_tracked_packet", "intl_tracked_ddp"]
    if "intl" in lower:
        return ["intl_tracked_ddp", "intl_tracked_packet"]
    return [service_type]


def _adjacent_dates(day: str) -> List[str]:
    try:
        parsed = date.fromisoformat(day)
    except ValueError:
        return []
    return [(parsed - timedelta(days=1)).isoformat(), (parsed + timedelta(days=1)).isoformat()]


def _lookup(
    index: Dict[Tuple[str, str], DailyCost],
    dates: Sequence[str],
    service_types: Sequence[str],
) -> Optional[DailyCost]:
    for day in dates:
        for service_type in service_types:
            cost = index.get((day, service_type))
            if cost is not None:
                return cost
    return None


def match_daily_cost(
    shipment: ExistingShipment,
    index: Dict[Tuple[str, str], DailyCost],
) -> Tuple[Optional[DailyCost], bool]:
    """Find the manifest day for one shipment.

    Returns:
        (daily cost or None, True when it came from an adjacent day)
    """
    ship_date = (shipment.shipping_date or "").split("T")[0]
    service = shipment.service_type or infer_service_type_from_tracking(shipment.tracking_number)
    inferred = infer_service_type_from_tracking(shipment.tracking_number)

    service_types = candidate_service_types(service)
    inferred_types = candidate_service_types(inferred)

    matched = _lookup(index, [ship_date], service_types)
    if matched is None and inferred and inferred != service:
        matched = _lookup(index, [ship_date], inferred_types)
    if matched is not None:
        return matched, False

    adjacent = _adjacent_dates(ship_date)
    matched = _lookup(index, adjacent, service_types) or _lookup(index, adjacent, inferred_types)
    return matched, matched is not None


def allocate_manifest_costs(
    daily_costs: Sequence[DailyCost],
    shipments: Sequence[ExistingShipment],
) -> ManifestAllocation:
    """Assign each shipment the average per-item cost of its manifest day.

    Shipments without a shipping date are ignored; those with no matching
    day, or whose day averages to zero, are reported as unallocated.
    """
    index = {(d.date, d.service_type): d for d in daily_costs}
    allocation = ManifestAllocation()

    for shipment in shipments:
        ship_date = (shipment.shipping_date or "").split("T")[0]
        if not ship_date:
            continue
        service = shipment.service_type or infer_service_type_from_tracking(shipment.tracking_number) or ""

        matched, adjacent = match_daily_cost(shipment, index)
        if matched is None or matched.average_cost_per_item <= 0:
            allocation.unallocated.append(
                UnallocatedShipment(
                    tracking_number=shipment.tracking_number,
                    shipping_date=ship_date,
                    service_type=service,
                    inferred_service=bool(service) and not shipment.service_type,
                )
            )
            continue

        average = matched.average_cost_per_item
        source = f"Royal Mail manifest: {matched.product_code} avg {average:.2f}/item"
        if adjacent:
            source += f" (adjacent day {matched.date})"
        allocation.allocated.append(
            AllocatedShipment(
                tracking_number=shipment.tracking_number,
                shipping_date=ship_date,
                service_type=service,
                product_code=matched.product_code,
                manifest_date=matched.date,
                adjacent_day=adjacent,
                previous_cost=shipment.shipping_cost,
                new_cost=average.quantize(CENT, rounding=ROUND_HALF_UP),
                cost_source=source,
            )
        )

    return allocation
