"""Unmatched queue: capture, review and resolution of orphan invoice lines.

A record enters as ``pending`` and leaves exactly once, to ``matched``,
``voided`` or ``resolved``. Matching locates an order, synthesizes the
shipment that was missing and links both to the record.
"""

import sqlite3
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from carriers.templates import provenance_for_carrier
from core.audit.events import AuditEventType, AuditLogger
from core.errors import (
    InvalidTransitionError,
    OrderNotFoundError,
    RecordNotFoundError,
    WriteError,
)
from core.models.canonical import ParsedInvoiceRecord
from core.models.refs import UploadMetadata
from core.observability.logging import get_logger, with_correlation
from storage import carrier_accounts, orders, shipments
from storage.db import PathLike
from storage.models import Order, ShipmentDraft
from unmatched import db as unmatched_db
from unmatched.models import (
    RESOLVED_STATUSES,
    DedupeResult,
    StatusUpdate,
    UnmatchedPage,
    UnmatchedRecord,
    UnmatchedStatus,
)

logger = get_logger(__name__)


def find_order(order_ref: str, db_path: PathLike) -> Optional[Order]:
    """Locate an order by id, then order number, then platform order id,
    then a customer-name fragment that identifies exactly one order."""
    ref = (order_ref or "").strip()
    if not ref:
        return None
    for lookup in (orders.get_order, orders.get_order_by_number, orders.get_order_by_platform_id):
        order = lookup(ref, db_path)
        if order is not None:
            return order
    candidates = orders.search_orders_by_customer(ref, db_path, limit=2)
    if len(candidates) == 1:
        return candidates[0]
    return None


class UnmatchedQueue:
    """Operations on the unmatched invoice records of one database."""

    def __init__(self, db_path: PathLike, audit: Optional[AuditLogger] = None):
        self.db_path = db_path
        self.audit = audit or AuditLogger()

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def enqueue(
        self,
        record: ParsedInvoiceRecord,
        carrier: str,
        metadata: Optional[UploadMetadata] = None,
        upload_key: Optional[str] = None,
    ) -> UnmatchedRecord:
        """Store an invoice line verbatim as pending."""
        metadata = metadata or UploadMetadata()
        stored = unmatched_db.insert_unmatched(
            UnmatchedRecord(
                tracking_number=record.tracking_number,
                carrier=carrier,
                shipping_cost=record.shipping_cost,
                currency=record.currency,
                service_type=record.service_type or None,
                weight_kg=record.weight_kg or None,
                shipping_date=record.shipping_date or None,
                invoice_number=metadata.invoice_number,
                invoice_date=metadata.invoice_date,
                file_name=metadata.file_name,
                upload_key=upload_key or metadata.upload_key,
                raw_record=record.raw_record,
            ),
            self.db_path,
        )
        return stored

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def get(self, record_id: int) -> UnmatchedRecord:
        record = unmatched_db.get_unmatched(record_id, self.db_path)
        if record is None:
            raise RecordNotFoundError(f"Unmatched record {record_id} not found")
        return record

    def list(
        self,
        status: Optional[UnmatchedStatus] = None,
        carrier: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> UnmatchedPage:
        """A page of records plus per-status counts for the carrier filter."""
        status_value = status.value if status else None
        return UnmatchedPage(
            records=unmatched_db.list_unmatched(self.db_path, status_value, carrier, limit, offset),
            total=unmatched_db.count_unmatched(self.db_path, status_value, carrier),
            limit=limit,
            offset=offset,
            status_counts=unmatched_db.status_counts(self.db_path, carrier),
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def update_status(self, record_id: int, update: StatusUpdate) -> UnmatchedRecord:
        """Move a pending record to matched, voided or resolved.

        Raises:
            RecordNotFoundError: no record with this id
            InvalidTransitionError: record is not pending, or the target is pending
            OrderNotFoundError: ``matched`` without a locatable order
            WriteError: the shipment for a match could not be created
        """
        record = self.get(record_id)
        if update.status not in RESOLVED_STATUSES:
            raise InvalidTransitionError(f"Cannot move a record to {update.status.value}")
        if record.status != UnmatchedStatus.PENDING:
            raise InvalidTransitionError(
                f"Record {record_id} is {record.status.value}; only pending records can change status"
            )

        with with_correlation(carrier=record.carrier, tracking_number=record.tracking_number, stage="unmatched"):
            order_id = None
            shipment_id = None
            if update.status == UnmatchedStatus.MATCHED:
                order = find_order(update.order_ref or "", self.db_path)
                if order is None:
                    raise OrderNotFoundError(self._order_not_found_message(update.order_ref or ""))
                order_id = order.id
                shipment_id = self._create_matched_shipment(record, order)

            moved = unmatched_db.resolve_pending(
                record_id,
                update.status,
                update.resolved_by,
                self.db_path,
                notes=update.notes,
                matched_order_id=order_id,
                matched_shipment_id=shipment_id,
            )
            if not moved:
                if shipment_id is not None:
                    # Shipments start at version 1; a later write means someone else owns it now
                    removed = shipments.delete_shipment(shipment_id, 1, self.db_path)
                    logger.warning(
                        "Match lost to a concurrent status change",
                        extra_fields={"record_id": record_id, "shipment_id": shipment_id, "removed": removed},
                    )
                raise InvalidTransitionError(f"Record {record_id} changed status concurrently")

            logger.info(
                "Unmatched record status changed",
                extra_fields={"record_id": record_id, "status": update.status.value, "order_id": order_id},
            )
            self.audit.log_info(
                AuditEventType.UNMATCHED_STATUS_CHANGED,
                f"Unmatched record {record_id} -> {update.status.value}",
                carrier=record.carrier,
                tracking_number=record.tracking_number,
                upload_key=record.upload_key,
                actor=update.resolved_by,
                details={
                    "record_id": record_id,
                    "status": update.status.value,
                    "matched_order_id": order_id,
                    "matched_shipment_id": shipment_id,
                    "notes": update.notes,
                },
            )
        return self.get(record_id)

    def _order_not_found_message(self, order_ref: str) -> str:
        ref = order_ref.strip()
        if ref and len(orders.search_orders_by_customer(ref, self.db_path, limit=2)) > 1:
            return (
                f"Order not found: '{ref}' is an ambiguous customer name matching several orders. "
                "Use the order number or platform order ID instead."
            )
        return (
            "Order not found. Try searching by order number, platform order ID, "
            "or customer name."
        )

    def _create_matched_shipment(self, record: UnmatchedRecord, order: Order) -> int:
        draft = ShipmentDraft(
            tracking_number=record.tracking_number,
            carrier=record.carrier,
            shipping_cost=record.shipping_cost,
            currency=record.currency,
            service_type=record.service_type,
            weight_kg=record.weight_kg,
            shipping_date=record.shipping_date,
            cost_provenance=provenance_for_carrier(record.carrier),
            order_id=order.id,
            carrier_account_id=carrier_accounts.carrier_account_id(record.carrier, self.db_path),
            status="matched_from_unmatched",
            upload_key=record.upload_key,
        )
        try:
            return shipments.create_shipment(draft, self.db_path)
        except sqlite3.IntegrityError as exc:
            raise WriteError(record.tracking_number, f"Failed to create shipment: {exc}") from exc

    def delete(self, record_id: int, actor: str = "system") -> None:
        """Remove a record outright.

        Raises:
            RecordNotFoundError: no record with this id
        """
        record = self.get(record_id)
        if not unmatched_db.delete_unmatched(record_id, self.db_path):
            raise RecordNotFoundError(f"Unmatched record {record_id} not found")
        self.audit.log_info(
            AuditEventType.UNMATCHED_DELETED,
            f"Unmatched record {record_id} deleted",
            carrier=record.carrier,
            tracking_number=record.tracking_number,
            actor=actor,
            details={"record_id": record_id, "status": record.status.value},
        )

    def dedupe(self, actor: str = "system") -> DedupeResult:
        """Keep one pending record per (tracking number, invoice number, cost).

        The earliest-created record of each group survives; on equal
        timestamps the lowest id wins.
        """
        groups: Dict[Tuple, List[UnmatchedRecord]] = defaultdict(list)
        total = unmatched_db.count_unmatched(self.db_path, UnmatchedStatus.PENDING.value)
        pending = unmatched_db.list_unmatched(
            self.db_path, UnmatchedStatus.PENDING.value, limit=max(total, 1), offset=0
        )
        for record in pending:
            key = (record.tracking_number, record.invoice_number or "", record.shipping_cost)
            groups[key].append(record)

        to_delete: List[int] = []
        duplicate_groups = 0
        for members in groups.values():
            if len(members) < 2:
                continue
            duplicate_groups += 1
            members.sort(key=lambda r: (r.created_at, r.id))
            to_delete.extend(r.id for r in members[1:])

        deleted = unmatched_db.delete_many(to_delete, self.db_path)
        result = DedupeResult(
            duplicate_groups=duplicate_groups, deleted=deleted, deleted_ids=sorted(to_delete)
        )
        if deleted:
            logger.info("Deduplicated unmatched records", extra_fields=result.model_dump())
            self.audit.log_info(
                AuditEventType.UNMATCHED_DEDUPED,
                f"Removed {deleted} duplicate unmatched records",
                actor=actor,
                details=result.model_dump(),
            )
        return result
