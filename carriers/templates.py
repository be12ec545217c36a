"""Carrier templates: tracking-number patterns, header synonyms, provenance.

Provenance is carrier-determined: a carrier either always invoices actual
costs or always supplies estimates. A shipment whose stored cost is actual
can never be overwritten by an estimated-provenance carrier.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Pattern, Sequence

from core.models.canonical import CostProvenance

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class CarrierTemplate:
    """Per-carrier detection and validation rules."""
    code: str
    name: str
    cost_provenance: CostProvenance
    tracking_patterns: Sequence[Pattern] = ()
    common_headers: Dict[str, List[str]] = field(default_factory=dict)

    def matches_tracking(self, normalized_tracking: str) -> bool:
        return any(p.match(normalized_tracking) for p in self.tracking_patterns)


DHL_TEMPLATE = CarrierTemplate(
    code="dhl",
    name="DHL Express",
    cost_provenance=CostProvenance.ACTUAL,
    tracking_patterns=(
        re.compile(r"^\d{10,11}$"),   # standard AWB
        re.compile(r"^JD\d{18}$"),
    ),
    common_headers={
        "tracking": ["AWB", "Waybill", "Tracking", "Shipment ID", "Shipment Number", "AWB Number"],
        "cost": ["Total Amount (excl. VAT)", "Total Charge", "Net Amount", "Charge", "Amount"],
        "date": ["Ship Date", "Shipment Date", "Pickup Date", "Date"],
        "service": ["Service", "Product", "Product Name", "Service Code"],
        "weight": ["Weight", "Actual Weight", "Charged Weight", "Weight (KG)"],
        "currency": ["Currency", "Curr", "Currency Code"],
    },
)

ROYALMAIL_TEMPLATE = CarrierTemplate(
    code="royalmail",
    name="Royal Mail",
    cost_provenance=CostProvenance.ESTIMATED,
    tracking_patterns=(
        re.compile(r"^[A-Z]{2}\d{9}[A-Z]{2}$"),
        re.compile(r"^[A-Z]{2}\d{9}GB$"),
    ),
    common_headers={
        "tracking": ["Barcode", "Tracking", "Item ID", "Tracking Number"],
        "cost": ["Postage", "Cost", "Amount", "Price"],
        "date": ["Date", "Post Date", "Despatch Date", "Ship Date"],
        "service": ["Service", "Product", "Service Name", "Mail Class"],
        "weight": ["Weight", "Weight (g)", "Weight (kg)"],
        "currency": ["Currency"],
    },
)

DEUTSCHEPOST_TEMPLATE = CarrierTemplate(
    code="deutschepost",
    name="Deutsche Post Cross-Border",
    cost_provenance=CostProvenance.ESTIMATED,
    tracking_patterns=(
        re.compile(r"^[A-Z]{2}\d{9}DE$"),
    ),
    common_headers={
        "tracking": ["Tracking Number", "Item ID", "Barcode"],
        "cost": ["Postage", "Amount", "Cost"],
        "date": ["Date", "Posting Date"],
        "service": ["Product", "Service"],
        "weight": ["Weight (g)", "Weight"],
        "currency": ["Currency"],
    },
)

CARRIER_TEMPLATES: Dict[str, CarrierTemplate] = {
    t.code: t for t in (DHL_TEMPLATE, ROYALMAIL_TEMPLATE, DEUTSCHEPOST_TEMPLATE)
}

SUPPORTED_CARRIERS = tuple(CARRIER_TEMPLATES)


def normalize_tracking_number(tracking: Optional[str]) -> str:
    """Strip all whitespace and upper-case. Idempotent."""
    if tracking is None:
        return ""
    return _WHITESPACE.sub("", str(tracking)).upper()


def get_template(carrier: str) -> CarrierTemplate:
    """Template for a carrier code, raising ValueError for unknown carriers."""
    try:
        return CARRIER_TEMPLATES[carrier.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown carrier '{carrier}'. Supported: {', '.join(SUPPORTED_CARRIERS)}"
        ) from None


def provenance_for_carrier(carrier: str) -> CostProvenance:
    """Cost provenance implied by the carrier that supplied a record."""
    return get_template(carrier).cost_provenance


def detect_carrier_from_tracking(tracking: str) -> Optional[str]:
    """First carrier whose patterns match the (normalized) tracking number.

    Royal Mail's generic two-letter pattern also accepts Deutsche Post ``..DE``
    numbers, so the more specific Deutsche Post template is checked first.
    """
    normalized = normalize_tracking_number(tracking)
    for template in (DHL_TEMPLATE, DEUTSCHEPOST_TEMPLATE, ROYALMAIL_TEMPLATE):
        if template.matches_tracking(normalized):
            return template.code
    return None


def validate_tracking_for_carrier(tracking: str, carrier: str) -> bool:
    return get_template(carrier).matches_tracking(normalize_tracking_number(tracking))


def detect_carrier_from_headers(headers: Iterable[str]) -> Optional[str]:
    """Carrier whose header synonyms overlap the file's headers the most.

    Returns None when no carrier scores or when the best score is tied.
    """
    lowered = {h.strip().lower() for h in headers if h}
    scores = []
    for template in CARRIER_TEMPLATES.values():
        synonyms = {s.lower() for values in template.common_headers.values() for s in values}
        scores.append((len(lowered & synonyms), template.code))
    scores.sort(reverse=True)
    if not scores or scores[0][0] == 0:
        return None
    if len(scores) > 1 and scores[1][0] == scores[0][0]:
        return None
    return scores[0][1]
