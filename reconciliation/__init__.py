"""Cost reconciliation: decide, then commit.

``engine`` decides what each invoice record would do against a snapshot of
stored shipments. ``commit`` applies those decisions with optimistic
concurrency. ``allocation`` turns a Royal Mail manifest into per-shipment
costs. ``service`` ties them to parsing and storage.
"""

from reconciliation.engine import COST_TOLERANCE, analyze_records, decide, is_same_cost
from reconciliation.commit import commit_records, compute_upload_key
from reconciliation.allocation import allocate_manifest_costs, candidate_service_types
from reconciliation.service import IngestionService

__all__ = [
    "COST_TOLERANCE",
    "analyze_records",
    "decide",
    "is_same_cost",
    "commit_records",
    "compute_upload_key",
    "allocate_manifest_costs",
    "candidate_service_types",
    "IngestionService",
]
