"""Unmatched invoice queue.

Invoice lines that match neither a shipment nor an order are parked here
for manual review instead of being dropped.
"""

from unmatched.models import (
    UnmatchedStatus,
    UnmatchedRecord,
    StatusUpdate,
    UnmatchedPage,
    DedupeResult,
)
from unmatched.service import UnmatchedQueue, find_order

__all__ = [
    "UnmatchedStatus",
    "UnmatchedRecord",
    "StatusUpdate",
    "UnmatchedPage",
    "DedupeResult",
    "UnmatchedQueue",
    "find_order",
]
