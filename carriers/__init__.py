"""Carrier template registry.

Usage:
    from carriers import normalize_tracking_number, provenance_for_carrier

    tracking = normalize_tracking_number(" 1234 567890 ")
    provenance = provenance_for_carrier("dhl")  # CostProvenance.ACTUAL
"""

from carriers.templates import (
    CarrierTemplate,
    CARRIER_TEMPLATES,
    SUPPORTED_CARRIERS,
    DHL_TEMPLATE,
    ROYALMAIL_TEMPLATE,
    DEUTSCHEPOST_TEMPLATE,
    normalize_tracking_number,
    get_template,
    provenance_for_carrier,
    detect_carrier_from_tracking,
    detect_carrier_from_headers,
    validate_tracking_for_carrier,
)

__all__ = [
    "CarrierTemplate",
    "CARRIER_TEMPLATES",
    "SUPPORTED_CARRIERS",
    "DHL_TEMPLATE",
    "ROYALMAIL_TEMPLATE",
    "DEUTSCHEPOST_TEMPLATE",
    "normalize_tracking_number",
    "get_template",
    "provenance_for_carrier",
    "detect_carrier_from_tracking",
    "detect_carrier_from_headers",
    "validate_tracking_for_carrier",
]
