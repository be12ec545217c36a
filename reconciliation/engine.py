"""Reconciliation engine: decide what each invoice record does to stored costs.

Exposes high-level functions:
- decide(record, carrier, existing, has_order, mode) -> ReconciliationDecision
- analyze_records(records, carrier, mode, existing, order_refs) -> AnalysisResult

Both are pure. The caller supplies a read snapshot of existing shipments and
of the tracking numbers referenced by orders; nothing here touches storage.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from carriers.templates import get_template
from core.models.canonical import (
    AnalyzedRecord,
    CostProvenance,
    ExistingShipment,
    ParsedInvoiceRecord,
    ReconciliationDecision,
    RecordAction,
    UploadMode,
)
from core.models.refs import AnalysisResult, AnalysisTotals


# =============================================================================
# Configuration
# =============================================================================

# Differences strictly below this are "the same cost"
COST_TOLERANCE = Decimal("0.01")

REASON_LOCKED = "Cost is locked - manual override protected"
REASON_PROVENANCE = "Cannot overwrite verified actual cost with estimate"
REASON_ADD_ONLY = "Record exists - add only mode"
REASON_UNCHANGED = "Cost unchanged"
REASON_NOT_HIGHER = "New cost is not higher"
REASON_NOT_LOWER = "New cost is not lower"
REASON_NO_ADD_TARGET = "No existing shipment to add to"
REASON_CREATE = "New shipment linked to order"
REASON_NO_ORDER = "No matching order found"

WARNING_LOCKED = "Some records are blocked because they have manually locked costs"


def _money(amount: Decimal) -> str:
    return f"{amount:.2f}"


def is_same_cost(difference: Decimal) -> bool:
    return abs(difference) < COST_TOLERANCE


# =============================================================================
# Single-record decision
# =============================================================================

def decide(
    record: ParsedInvoiceRecord,
    carrier: str,
    existing: Optional[ExistingShipment],
    has_order: bool,
    mode: UploadMode,
) -> ReconciliationDecision:
    """Apply the reconciliation rules to one record.

    Precedence:
    1. no shipment, add_to_existing      -> skip (nothing to add to)
    2. no shipment, an order references  -> create
    3. no shipment, no order             -> skip, routed to the unmatched queue
    4. shipment exists:
       a. cost_locked                    -> blocked
       b. actual cost vs estimated carrier -> blocked
       c. the upload mode's rule
    """
    incoming = record.shipping_cost

    if existing is None:
        if mode == UploadMode.ADD_TO_EXISTING:
            return ReconciliationDecision(action=RecordAction.SKIP, reason=REASON_NO_ADD_TARGET)
        if has_order:
            return ReconciliationDecision(
                action=RecordAction.CREATE, reason=REASON_CREATE, new_cost=incoming
            )
        return ReconciliationDecision(action=RecordAction.SKIP, reason=REASON_NO_ORDER)

    difference = incoming - existing.shipping_cost

    if existing.cost_locked:
        return ReconciliationDecision(
            action=RecordAction.BLOCKED, reason=REASON_LOCKED, cost_difference=difference
        )

    incoming_provenance = get_template(carrier).cost_provenance
    if (
        existing.cost_provenance == CostProvenance.ACTUAL
        and incoming_provenance == CostProvenance.ESTIMATED
    ):
        return ReconciliationDecision(
            action=RecordAction.BLOCKED, reason=REASON_PROVENANCE, cost_difference=difference
        )

    same = is_same_cost(difference)

    if mode == UploadMode.ADD_ONLY:
        return ReconciliationDecision(
            action=RecordAction.SKIP, reason=REASON_ADD_ONLY, cost_difference=difference
        )

    if mode == UploadMode.OVERWRITE_ALL:
        if same:
            return ReconciliationDecision(
                action=RecordAction.SKIP, reason=REASON_UNCHANGED, cost_difference=difference
            )
        direction = "increases" if difference > 0 else "decreases"
        return ReconciliationDecision(
            action=RecordAction.UPDATE,
            reason=f"Cost {direction} by {_money(abs(difference))}",
            cost_difference=difference,
            new_cost=incoming,
        )

    if mode == UploadMode.UPDATE_IF_HIGHER:
        if difference > 0 and not same:
            return ReconciliationDecision(
                action=RecordAction.UPDATE,
                reason=f"Cost increases by {_money(difference)}",
                cost_difference=difference,
                new_cost=incoming,
            )
        return ReconciliationDecision(
            action=RecordAction.SKIP,
            reason=REASON_UNCHANGED if same else REASON_NOT_HIGHER,
            cost_difference=difference,
        )

    if mode == UploadMode.UPDATE_IF_LOWER:
        if difference < 0 and not same:
            return ReconciliationDecision(
                action=RecordAction.UPDATE,
                reason=f"Cost decreases by {_money(abs(difference))}",
                cost_difference=difference,
                new_cost=incoming,
            )
        return ReconciliationDecision(
            action=RecordAction.SKIP,
            reason=REASON_UNCHANGED if same else REASON_NOT_LOWER,
            cost_difference=difference,
        )

    # ADD_TO_EXISTING: duties and surcharges stack onto the stored cost
    total = existing.shipping_cost + incoming
    return ReconciliationDecision(
        action=RecordAction.ADD,
        reason=f"Add {_money(incoming)} to existing {_money(existing.shipping_cost)} = {_money(total)}",
        cost_difference=difference,
        new_cost=total,
    )


# =============================================================================
# Batch analysis
# =============================================================================

def _after_write(
    shipment: Optional[ExistingShipment],
    record: ParsedInvoiceRecord,
    carrier: str,
    new_cost: Decimal,
    order_id: Optional[str],
) -> ExistingShipment:
    """Snapshot state a later record in the same batch will see once this write lands."""
    provenance = get_template(carrier).cost_provenance
    if shipment is None:
        return ExistingShipment(
            tracking_number=record.tracking_number,
            carrier=carrier,
            shipping_cost=new_cost,
            cost_provenance=provenance,
            version=1,
            order_id=order_id,
        )
    return shipment.model_copy(
        update={"shipping_cost": new_cost, "cost_provenance": provenance, "version": shipment.version + 1}
    )


def _summary_warnings(
    records: List[AnalyzedRecord],
    carrier: str,
) -> List[str]:
    template = get_template(carrier)
    warnings: List[str] = []

    if template.cost_provenance == CostProvenance.ESTIMATED:
        warnings.append(
            f"{template.name} costs are estimates based on country averages, not actual invoice costs"
        )
    if any(r.reason == REASON_LOCKED for r in records):
        warnings.append(WARNING_LOCKED)
    if any(r.reason == REASON_PROVENANCE for r in records):
        warnings.append(
            f"Some records are blocked because they would overwrite actual costs with {template.name} estimates"
        )

    if template.tracking_patterns:
        mismatched = sum(1 for r in records if not template.matches_tracking(r.tracking_number))
        if mismatched:
            warnings.append(
                f"{mismatched} tracking numbers do not match the {template.name} format - check the selected carrier"
            )
    return warnings


def analyze_records(
    records: Iterable[ParsedInvoiceRecord],
    carrier: str,
    mode: UploadMode,
    existing: Mapping[str, ExistingShipment],
    order_refs: Mapping[str, str],
) -> AnalysisResult:
    """Decide every record in a batch against a snapshot.

    Args:
        records: Parsed records (tracking numbers already normalized)
        carrier: Carrier code of the upload
        mode: Upload mode applied to every record
        existing: Tracking number -> stored shipment for this carrier
        order_refs: Tracking number -> id of an order referencing it

    Returns:
        AnalysisResult with per-record decisions, totals and warnings

    A tracking number repeated within the batch is decided against the state
    the earlier occurrence leaves behind, so e.g. two duty lines for the same
    shipment both add, each expecting the row version the previous one writes.
    """
    carrier = carrier.lower()
    get_template(carrier)  # unknown carrier -> ValueError before any work

    working: Dict[str, ExistingShipment] = dict(existing)
    analyzed: List[AnalyzedRecord] = []
    totals = AnalysisTotals()

    for record in records:
        shipment = working.get(record.tracking_number)
        order_id = order_refs.get(record.tracking_number)
        decision = decide(record, carrier, shipment, order_id is not None, mode)

        unmatched = (
            shipment is None
            and decision.action == RecordAction.SKIP
            and decision.reason == REASON_NO_ORDER
        )
        analyzed.append(
            AnalyzedRecord(
                **record.model_dump(include=set(ParsedInvoiceRecord.model_fields)),
                action=decision.action,
                reason=decision.reason,
                cost_difference=decision.cost_difference,
                new_cost=decision.new_cost,
                existing_cost=shipment.shipping_cost if shipment else None,
                existing_provenance=shipment.cost_provenance if shipment else None,
                existing_version=shipment.version if shipment else None,
                unmatched=unmatched,
            )
        )

        totals.total += 1
        if decision.action == RecordAction.CREATE:
            totals.to_create += 1
        elif decision.action == RecordAction.UPDATE:
            totals.to_update += 1
        elif decision.action == RecordAction.ADD:
            totals.to_add += 1
        elif decision.action == RecordAction.BLOCKED:
            totals.to_block += 1
        else:
            totals.to_skip += 1
            if unmatched:
                totals.unmatched += 1

        if decision.action in (RecordAction.CREATE, RecordAction.UPDATE, RecordAction.ADD):
            working[record.tracking_number] = _after_write(
                shipment, record, carrier, decision.new_cost, order_id
            )

    return AnalysisResult(
        carrier=carrier,
        upload_mode=mode,
        records=analyzed,
        totals=totals,
        warnings=_summary_warnings(analyzed, carrier),
    )
