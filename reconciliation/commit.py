"""Commit phase: apply analyzed decisions to storage.

Every create, update and add re-reads the shipment row, decides the record
again against it under the commit's upload mode, and writes with a single
conditional statement guarded by ``cost_locked = 0`` and the row version
captured at analysis time. The cost written is always the re-decided one;
a submitted action that the stored row no longer supports is refused. A
failure on one record is recorded as that record's outcome and the batch
carries on.

The whole commit is idempotent per upload key: the first commit writes a
row to the upload ledger, and any later commit with the same key returns
that stored result without touching shipments again.
"""

import hashlib
import json
import sqlite3
from decimal import Decimal
from typing import Iterable, List, Optional

from carriers.templates import provenance_for_carrier
from core.audit.events import AuditEventType, AuditLogger
from core.errors import StaleWriteError, WriteError
from core.models.canonical import AnalyzedRecord, RecordAction, UploadMode
from core.models.refs import (
    CommitResult,
    OutcomeRecord,
    RecordOutcome,
    UploadHistory,
    UploadMetadata,
)
from core.observability.logging import get_logger, with_correlation
from reconciliation.engine import REASON_LOCKED, decide
from storage import carrier_accounts, orders, shipments, upload_history
from storage.db import PathLike
from storage.models import ShipmentDraft
from unmatched.service import UnmatchedQueue

logger = get_logger(__name__)

MESSAGE_UNMATCHED = "No matching order - saved for reconciliation"
MESSAGE_ORDER_GONE = "Order no longer references this tracking number - saved for reconciliation"
MESSAGE_STALE = "Shipment changed since analysis - re-analyze and retry"
MESSAGE_MISSING = "Shipment no longer exists"
MESSAGE_EXISTS = "Shipment was created since analysis - re-analyze and retry"
MESSAGE_DECISION_MISMATCH = "Submitted action does not match the stored shipment - re-analyze and retry"


def _cost_text(amount: Decimal) -> str:
    return format(amount.normalize(), "f")


def compute_upload_key(
    carrier: str,
    mode: UploadMode,
    records: Iterable[AnalyzedRecord],
    invoice_number: Optional[str] = None,
) -> str:
    """Stable key for a batch: same carrier, mode, invoice and lines give the same key.

    Decisions are not part of the key, so re-analyzing the same file
    against a changed database still replays the first commit.
    """
    payload = {
        "carrier": carrier.lower(),
        "mode": UploadMode(mode).value,
        "invoice_number": invoice_number or "",
        "records": [
            [r.tracking_number, _cost_text(r.shipping_cost), r.currency, r.shipping_date]
            for r in records
        ],
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class _Committer:
    """Applies one batch. Holds the per-batch lookups shared by every record."""

    def __init__(
        self,
        carrier: str,
        mode: UploadMode,
        upload_key: str,
        metadata: UploadMetadata,
        db_path: PathLike,
        audit: AuditLogger,
        queue: UnmatchedQueue,
    ):
        self.carrier = carrier
        self.mode = mode
        self.upload_key = upload_key
        self.metadata = metadata
        self.db_path = db_path
        self.audit = audit
        self.queue = queue
        self.provenance = provenance_for_carrier(carrier)
        self.account_id = carrier_accounts.carrier_account_id(carrier, db_path)

    def apply(self, record: AnalyzedRecord) -> OutcomeRecord:
        if record.action == RecordAction.SKIP:
            if record.unmatched:
                return self._park(record, MESSAGE_UNMATCHED)
            return OutcomeRecord(
                tracking_number=record.tracking_number,
                outcome=RecordOutcome.SKIPPED,
                message=record.reason,
            )
        if record.action == RecordAction.BLOCKED:
            return self._blocked(record, record.reason)
        if record.action == RecordAction.CREATE:
            return self._create(record)
        return self._update(record)

    def _park(self, record: AnalyzedRecord, message: str) -> OutcomeRecord:
        self.queue.enqueue(record, self.carrier, self.metadata, upload_key=self.upload_key)
        return OutcomeRecord(
            tracking_number=record.tracking_number,
            outcome=RecordOutcome.SKIPPED,
            message=message,
            unmatched=True,
        )

    def _blocked(self, record: AnalyzedRecord, reason: str) -> OutcomeRecord:
        self.audit.log_blocked(
            AuditEventType.WRITE_BLOCKED,
            f"Write blocked for {record.tracking_number}: {reason}",
            upload_key=self.upload_key,
            carrier=self.carrier,
            tracking_number=record.tracking_number,
            actor=self.metadata.actor,
            details={"incoming_cost": str(record.shipping_cost), "reason": reason},
        )
        return OutcomeRecord(
            tracking_number=record.tracking_number,
            outcome=RecordOutcome.BLOCKED,
            message=reason,
        )

    def _create(self, record: AnalyzedRecord) -> OutcomeRecord:
        if shipments.get_shipment(record.tracking_number, self.carrier, self.db_path) is not None:
            raise StaleWriteError(record.tracking_number, MESSAGE_EXISTS)

        order_id = orders.orders_for_tracking([record.tracking_number], self.db_path).get(
            record.tracking_number
        )
        if order_id is None:
            return self._park(record, MESSAGE_ORDER_GONE)

        decision = decide(record, self.carrier, None, True, self.mode)
        if decision.action != RecordAction.CREATE:
            raise WriteError(record.tracking_number, MESSAGE_DECISION_MISMATCH)

        draft = ShipmentDraft(
            tracking_number=record.tracking_number,
            carrier=self.carrier,
            shipping_cost=decision.new_cost,
            currency=record.currency,
            service_type=record.service_type or None,
            weight_kg=record.weight_kg or None,
            shipping_date=record.shipping_date or None,
            cost_provenance=self.provenance,
            order_id=order_id,
            carrier_account_id=self.account_id,
            upload_key=self.upload_key,
        )
        try:
            shipments.create_shipment(draft, self.db_path)
        except sqlite3.IntegrityError as exc:
            raise WriteError(record.tracking_number, f"Failed to create shipment: {exc}") from exc
        return OutcomeRecord(
            tracking_number=record.tracking_number,
            outcome=RecordOutcome.CREATED,
            message=decision.reason,
        )

    def _update(self, record: AnalyzedRecord) -> OutcomeRecord:
        current = shipments.get_shipment(record.tracking_number, self.carrier, self.db_path)
        if current is None:
            raise WriteError(record.tracking_number, MESSAGE_MISSING)
        if current.cost_locked:
            return self._blocked(record, REASON_LOCKED)
        if current.version != record.existing_version:
            raise StaleWriteError(record.tracking_number, MESSAGE_STALE)

        decision = decide(record, self.carrier, current, True, self.mode)
        if decision.action == RecordAction.BLOCKED:
            return self._blocked(record, decision.reason)
        if decision.action != record.action:
            raise WriteError(record.tracking_number, MESSAGE_DECISION_MISMATCH)

        written = shipments.update_cost_if_current(
            current.id,
            current.version,
            decision.new_cost,
            self.provenance,
            self.db_path,
            upload_key=self.upload_key,
        )
        if not written:
            # Lock or version moved between the read and the write
            raise StaleWriteError(record.tracking_number, MESSAGE_STALE)

        outcome = RecordOutcome.ADDED if decision.action == RecordAction.ADD else RecordOutcome.UPDATED
        return OutcomeRecord(
            tracking_number=record.tracking_number,
            outcome=outcome,
            message=decision.reason,
        )

    def failed(self, record: AnalyzedRecord, message: str) -> OutcomeRecord:
        self.audit.log_error(
            AuditEventType.WRITE_FAILED,
            f"Write failed for {record.tracking_number}: {message}",
            upload_key=self.upload_key,
            carrier=self.carrier,
            tracking_number=record.tracking_number,
            actor=self.metadata.actor,
            details={"action": record.action.value, "error": message},
        )
        return OutcomeRecord(
            tracking_number=record.tracking_number,
            outcome=RecordOutcome.ERRORED,
            message=message,
        )


def _history(
    upload_key: str,
    carrier: str,
    mode: UploadMode,
    metadata: UploadMetadata,
    outcomes: List[OutcomeRecord],
) -> UploadHistory:
    def count(outcome: RecordOutcome) -> int:
        return sum(1 for o in outcomes if o.outcome == outcome)

    return UploadHistory(
        upload_key=upload_key,
        carrier=carrier,
        upload_mode=mode,
        file_name=metadata.file_name,
        invoice_number=metadata.invoice_number,
        actor=metadata.actor,
        total_records=len(outcomes),
        created_count=count(RecordOutcome.CREATED),
        updated_count=count(RecordOutcome.UPDATED),
        added_count=count(RecordOutcome.ADDED),
        skipped_count=count(RecordOutcome.SKIPPED),
        blocked_count=count(RecordOutcome.BLOCKED),
        error_count=count(RecordOutcome.ERRORED),
        unmatched_count=sum(1 for o in outcomes if o.unmatched),
    )


def commit_records(
    records: List[AnalyzedRecord],
    carrier: str,
    mode: UploadMode,
    metadata: Optional[UploadMetadata],
    db_path: PathLike,
    audit: Optional[AuditLogger] = None,
    queue: Optional[UnmatchedQueue] = None,
) -> CommitResult:
    """Apply analyzed records and record the upload in the ledger.

    Args:
        records: Output of analysis, in file order
        carrier: Carrier code of the upload
        mode: Upload mode the records were analyzed under
        metadata: File name, invoice number, actor and optional upload key
        db_path: Path to database
        audit: Audit logger (defaults to one with no backends)
        queue: Unmatched queue for orphan records (defaults to one on db_path)

    Returns:
        CommitResult. ``replayed`` is True when the upload key was already
        committed, in which case nothing is written.
    """
    carrier = carrier.lower()
    mode = UploadMode(mode)
    metadata = metadata or UploadMetadata()
    audit = audit or AuditLogger()
    queue = queue or UnmatchedQueue(db_path, audit)
    upload_key = metadata.upload_key or compute_upload_key(
        carrier, mode, records, metadata.invoice_number
    )

    with with_correlation(
        upload_key=upload_key,
        carrier=carrier,
        file_name=metadata.file_name,
        upload_mode=mode.value,
        stage="commit",
    ):
        previous = upload_history.get_commit_result(upload_key, db_path)
        if previous is not None:
            return _replayed(previous, audit, metadata)

        logger.info("Commit started", extra_fields={"records": len(records)})
        committer = _Committer(carrier, mode, upload_key, metadata, db_path, audit, queue)
        outcomes: List[OutcomeRecord] = []

        for record in records:
            with with_correlation(tracking_number=record.tracking_number):
                try:
                    outcomes.append(committer.apply(record))
                except WriteError as exc:
                    logger.warning("Record write failed", extra_fields={"error": exc.reason})
                    outcomes.append(committer.failed(record, exc.reason))
                except Exception as exc:
                    logger.exception("Unexpected error committing record")
                    outcomes.append(committer.failed(record, str(exc)))

        history = _history(upload_key, carrier, mode, metadata, outcomes)
        try:
            history = upload_history.record_upload(history, outcomes, db_path)
        except sqlite3.IntegrityError:
            # A concurrent commit of the same batch won the ledger insert
            previous = upload_history.get_commit_result(upload_key, db_path)
            if previous is None:
                raise
            return _replayed(previous, audit, metadata)

        counts = history.model_dump(include={
            "total_records", "created_count", "updated_count", "added_count",
            "skipped_count", "blocked_count", "error_count", "unmatched_count",
        })
        logger.info("Commit complete", extra_fields=counts)
        audit.log_info(
            AuditEventType.COMMIT_COMPLETED,
            f"Committed {history.total_records} {carrier} records",
            upload_key=upload_key,
            carrier=carrier,
            actor=metadata.actor,
            details={**counts, "upload_mode": mode.value, "file_name": metadata.file_name},
        )
        if history.unmatched_count:
            audit.log_info(
                AuditEventType.UNMATCHED_QUEUED,
                f"{history.unmatched_count} records saved for reconciliation",
                upload_key=upload_key,
                carrier=carrier,
                actor=metadata.actor,
                details={"unmatched": history.unmatched_count},
            )
        return CommitResult(outcomes=outcomes, upload_history=history)


def _replayed(previous: CommitResult, audit: AuditLogger, metadata: UploadMetadata) -> CommitResult:
    logger.info("Upload already committed, returning stored result")
    audit.log_info(
        AuditEventType.COMMIT_REPLAYED,
        "Upload already committed",
        upload_key=previous.upload_history.upload_key,
        carrier=previous.upload_history.carrier,
        actor=metadata.actor,
    )
    return previous
