"""
Commit Tests

Covers the write side of ingestion against a real SQLite database:
1. Outcomes and ledger counts for a mixed batch
2. State changes between analysis and commit (lock, version, order, row)
3. Per-record failure isolation
4. Idempotent replay by upload key
5. End-to-end file analysis through IngestionService
6. DHL folder batch ordering
"""

import os
import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

from core.audit.events import AuditEventType, AuditLogger, InMemoryAuditBackend
from core.models.canonical import (
    AnalyzedRecord,
    CostProvenance,
    ParsedInvoiceRecord,
    RecordAction,
    UploadMode,
)
from core.models.refs import RecordOutcome, UploadMetadata
from reconciliation.commit import (
    MESSAGE_DECISION_MISMATCH,
    MESSAGE_EXISTS,
    MESSAGE_ORDER_GONE,
    MESSAGE_STALE,
    MESSAGE_UNMATCHED,
    compute_upload_key,
)
from reconciliation.engine import REASON_LOCKED, REASON_PROVENANCE
from reconciliation.service import IngestionService
from scripts.process_dhl_invoices import plan_dhl_batch, process_folder
from storage import shipments, upload_history
from storage.db import init_db
from storage.models import Order, ShipmentDraft
from storage.orders import save_order
from unmatched.models import UnmatchedStatus


@pytest.fixture
def db_path():
    """Create a temporary database with the full schema."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        path = f.name
    init_db(path)
    yield path
    try:
        os.unlink(path)
    except PermissionError:
        pass


@pytest.fixture
def audit_backend():
    return InMemoryAuditBackend()


@pytest.fixture
def service(db_path, audit_backend):
    audit = AuditLogger()
    audit.add_backend(audit_backend)
    return IngestionService(db_path, audit=audit)


def add_order(db_path, order_id, *tracking):
    save_order(Order(id=order_id, order_number=f"#{order_id}", tracking_numbers=list(tracking)), db_path)


def add_shipment(db_path, tracking, cost, locked=False, provenance=CostProvenance.ACTUAL):
    return shipments.create_shipment(
        ShipmentDraft(
            tracking_number=tracking,
            carrier="dhl",
            shipping_cost=Decimal(cost),
            cost_provenance=provenance,
            cost_locked=locked,
        ),
        db_path,
    )


def rec(tracking, cost):
    return ParsedInvoiceRecord(tracking_number=tracking, shipping_cost=Decimal(cost))


def outcomes_of(result):
    return [(o.tracking_number, o.outcome) for o in result.outcomes]


class TestCommitOutcomes:
    """Mixed batches write what analysis decided."""

    def test_create_update_and_unmatched(self, service, db_path, audit_backend):
        add_order(db_path, "ord-1", "1111111111")
        add_shipment(db_path, "2222222222", "10.00")

        analysis = service.analyze_records(
            [rec("1111111111", "5.00"), rec("2222222222", "12.00"), rec("3333333333", "4.00")],
            "dhl",
            UploadMode.OVERWRITE_ALL,
        )
        result = service.commit(
            analysis.records, "dhl", UploadMode.OVERWRITE_ALL,
            UploadMetadata(file_name="CBGR1.csv", invoice_number="INV-1"),
        )

        assert outcomes_of(result) == [
            ("1111111111", RecordOutcome.CREATED),
            ("2222222222", RecordOutcome.UPDATED),
            ("3333333333", RecordOutcome.SKIPPED),
        ]
        assert result.outcomes[2].unmatched is True
        assert result.outcomes[2].message == MESSAGE_UNMATCHED
        assert result.replayed is False

        created = shipments.get_shipment("1111111111", "dhl", db_path)
        assert created.shipping_cost == Decimal("5.00")
        assert created.version == 1
        assert created.order_id == "ord-1"
        assert created.cost_provenance == CostProvenance.ACTUAL

        updated = shipments.get_shipment("2222222222", "dhl", db_path)
        assert updated.shipping_cost == Decimal("12.00")
        assert updated.version == 2

        history = result.upload_history
        assert (history.total_records, history.created_count, history.updated_count,
                history.skipped_count, history.unmatched_count) == (3, 1, 1, 1, 1)
        assert history.invoice_number == "INV-1"

        page = service.queue.list(status=UnmatchedStatus.PENDING)
        assert [r.tracking_number for r in page.records] == ["3333333333"]
        assert page.records[0].upload_key == history.upload_key
        assert page.records[0].invoice_number == "INV-1"

        assert audit_backend.query(event_type=AuditEventType.COMMIT_COMPLETED.value)
        assert audit_backend.query(event_type=AuditEventType.UNMATCHED_QUEUED.value)

    def test_hundred_record_ledger(self, service, db_path):
        creates = [f"1{i:09d}" for i in range(60)]
        updates = [f"2{i:09d}" for i in range(20)]
        orphans = [f"3{i:09d}" for i in range(15)]
        locked = [f"4{i:09d}" for i in range(5)]

        add_order(db_path, "ord-bulk", *creates)
        for tracking in updates:
            add_shipment(db_path, tracking, "1.00")
        for tracking in locked:
            add_shipment(db_path, tracking, "1.00", locked=True)

        records = [rec(t, "2.00") for t in creates + updates + orphans + locked]
        result = service.commit(records, "dhl", UploadMode.OVERWRITE_ALL)
        history = result.upload_history

        assert history.total_records == 100
        assert history.created_count == 60
        assert history.updated_count == 20
        assert history.skipped_count == 15
        assert history.blocked_count == 5
        assert history.error_count == 0
        assert history.unmatched_count == 15
        assert service.queue.list().total == 15

    def test_repeated_tracking_adds_stack(self, service, db_path):
        add_shipment(db_path, "1234567890", "5.00")

        result = service.commit(
            [rec("1234567890", "1.50"), rec("1234567890", "1.00")],
            "dhl",
            UploadMode.ADD_TO_EXISTING,
        )

        assert [o.outcome for o in result.outcomes] == [RecordOutcome.ADDED, RecordOutcome.ADDED]
        stored = shipments.get_shipment("1234567890", "dhl", db_path)
        assert stored.shipping_cost == Decimal("7.50")
        assert stored.version == 3


class TestStateChangesSinceAnalysis:
    """Commit re-checks every row it writes."""

    def test_lock_after_analysis_blocks(self, service, db_path, audit_backend):
        shipment_id = add_shipment(db_path, "1234567890", "10.00")
        analysis = service.analyze_records([rec("1234567890", "12.00")], "dhl", UploadMode.OVERWRITE_ALL)
        assert analysis.records[0].action == RecordAction.UPDATE

        shipments.set_cost_locked(shipment_id, True, db_path)
        result = service.commit(analysis.records, "dhl", UploadMode.OVERWRITE_ALL)

        assert result.outcomes[0].outcome == RecordOutcome.BLOCKED
        assert result.outcomes[0].message == REASON_LOCKED
        assert shipments.get_shipment("1234567890", "dhl", db_path).shipping_cost == Decimal("10.00")

        blocked = audit_backend.query(event_type=AuditEventType.WRITE_BLOCKED.value)
        assert len(blocked) == 1
        assert blocked[0].tracking_number == "1234567890"

    def test_version_moved_is_errored(self, service, db_path, audit_backend):
        shipment_id = add_shipment(db_path, "1234567890", "10.00")
        analysis = service.analyze_records([rec("1234567890", "12.00")], "dhl", UploadMode.OVERWRITE_ALL)

        assert shipments.update_cost_if_current(
            shipment_id, 1, Decimal("11.00"), CostProvenance.ACTUAL, db_path
        )
        result = service.commit(analysis.records, "dhl", UploadMode.OVERWRITE_ALL)

        assert result.outcomes[0].outcome == RecordOutcome.ERRORED
        assert result.outcomes[0].message == MESSAGE_STALE
        assert result.upload_history.error_count == 1
        assert shipments.get_shipment("1234567890", "dhl", db_path).shipping_cost == Decimal("11.00")
        assert audit_backend.query(event_type=AuditEventType.WRITE_FAILED.value)

    def test_shipment_created_since_analysis(self, service, db_path):
        add_order(db_path, "ord-1", "1234567890")
        analysis = service.analyze_records([rec("1234567890", "12.00")], "dhl", UploadMode.OVERWRITE_ALL)
        assert analysis.records[0].action == RecordAction.CREATE

        add_shipment(db_path, "1234567890", "9.00")
        result = service.commit(analysis.records, "dhl", UploadMode.OVERWRITE_ALL)

        assert result.outcomes[0].outcome == RecordOutcome.ERRORED
        assert result.outcomes[0].message == MESSAGE_EXISTS
        assert shipments.get_shipment("1234567890", "dhl", db_path).shipping_cost == Decimal("9.00")

    def test_order_gone_goes_to_queue(self, service, db_path):
        add_order(db_path, "ord-1", "1234567890")
        analysis = service.analyze_records([rec("1234567890", "12.00")], "dhl", UploadMode.OVERWRITE_ALL)

        add_order(db_path, "ord-1")
        result = service.commit(analysis.records, "dhl", UploadMode.OVERWRITE_ALL)

        outcome = result.outcomes[0]
        assert outcome.outcome == RecordOutcome.SKIPPED
        assert outcome.unmatched is True
        assert outcome.message == MESSAGE_ORDER_GONE
        assert shipments.get_shipment("1234567890", "dhl", db_path) is None
        assert service.queue.list().total == 1


class TestSubmittedDecisions:
    """Commit decides again; submitted actions and costs are not trusted."""

    def test_update_over_actual_cost_stays_blocked(self, service, db_path, audit_backend):
        shipments.create_shipment(
            ShipmentDraft(
                tracking_number="AB123456789GB",
                carrier="royalmail",
                shipping_cost=Decimal("9.00"),
                cost_provenance=CostProvenance.ACTUAL,
            ),
            db_path,
        )
        analysis = service.analyze_records([rec("AB123456789GB", "3.00")], "royalmail", UploadMode.OVERWRITE_ALL)
        assert analysis.records[0].action == RecordAction.BLOCKED

        altered = analysis.records[0].model_copy(
            update={"action": RecordAction.UPDATE, "new_cost": Decimal("3.00")}
        )
        result = service.commit([altered], "royalmail", UploadMode.OVERWRITE_ALL)

        assert result.outcomes[0].outcome == RecordOutcome.BLOCKED
        assert result.outcomes[0].message == REASON_PROVENANCE
        stored = shipments.get_shipment("AB123456789GB", "royalmail", db_path)
        assert stored.shipping_cost == Decimal("9.00")
        assert stored.cost_provenance == CostProvenance.ACTUAL
        assert stored.version == 1
        assert audit_backend.query(event_type=AuditEventType.WRITE_BLOCKED.value)

    def test_submitted_cost_is_ignored(self, service, db_path):
        add_shipment(db_path, "1234567890", "10.00")
        analysis = service.analyze_records([rec("1234567890", "12.00")], "dhl", UploadMode.OVERWRITE_ALL)

        altered = analysis.records[0].model_copy(update={"new_cost": Decimal("99.00")})
        result = service.commit([altered], "dhl", UploadMode.OVERWRITE_ALL)

        assert result.outcomes[0].outcome == RecordOutcome.UPDATED
        assert shipments.get_shipment("1234567890", "dhl", db_path).shipping_cost == Decimal("12.00")

    def test_commit_mode_is_enforced(self, service, db_path):
        add_shipment(db_path, "1234567890", "10.00")
        analysis = service.analyze_records([rec("1234567890", "8.00")], "dhl", UploadMode.OVERWRITE_ALL)
        assert analysis.records[0].action == RecordAction.UPDATE

        result = service.commit(analysis.records, "dhl", UploadMode.UPDATE_IF_HIGHER)

        assert result.outcomes[0].outcome == RecordOutcome.ERRORED
        assert result.outcomes[0].message == MESSAGE_DECISION_MISMATCH
        assert shipments.get_shipment("1234567890", "dhl", db_path).shipping_cost == Decimal("10.00")

    def test_create_refused_in_add_mode(self, service, db_path):
        add_order(db_path, "ord-1", "1234567890")
        submitted = AnalyzedRecord(
            tracking_number="1234567890",
            shipping_cost=Decimal("5.00"),
            action=RecordAction.CREATE,
            reason="",
            new_cost=Decimal("5.00"),
        )

        result = service.commit([submitted], "dhl", UploadMode.ADD_TO_EXISTING)

        assert result.outcomes[0].outcome == RecordOutcome.ERRORED
        assert result.outcomes[0].message == MESSAGE_DECISION_MISMATCH
        assert shipments.get_shipment("1234567890", "dhl", db_path) is None


class TestTrackingNormalization:
    """Records built outside the parser are normalized before lookup."""

    def test_plain_record_matches_stored_shipment(self, service, db_path):
        add_shipment(db_path, "JD012345678901234567", "5.00")

        result = service.commit(
            [rec(" jd0123 45678901234567", "7.00")], "dhl", UploadMode.OVERWRITE_ALL
        )

        assert outcomes_of(result) == [("JD012345678901234567", RecordOutcome.UPDATED)]
        assert result.outcomes[0].unmatched is False
        assert shipments.get_shipment("JD012345678901234567", "dhl", db_path).shipping_cost == Decimal("7.00")
        assert service.queue.list().total == 0

    def test_analyze_records_normalizes(self, service, db_path):
        add_shipment(db_path, "1234567890", "5.00")

        analysis = service.analyze_records([rec("1234 5678 90", "6.00")], "dhl", UploadMode.OVERWRITE_ALL)

        assert analysis.records[0].tracking_number == "1234567890"
        assert analysis.records[0].action == RecordAction.UPDATE


class TestFailureIsolation:
    """One failing record never stops the batch."""

    def test_unexpected_exception_is_recorded(self, service, db_path, audit_backend, monkeypatch):
        add_order(db_path, "ord-1", "1111111111")
        add_shipment(db_path, "2222222222", "10.00")

        def boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(shipments, "update_cost_if_current", boom)
        result = service.commit(
            [rec("2222222222", "12.00"), rec("1111111111", "5.00")],
            "dhl",
            UploadMode.OVERWRITE_ALL,
        )

        assert outcomes_of(result) == [
            ("2222222222", RecordOutcome.ERRORED),
            ("1111111111", RecordOutcome.CREATED),
        ]
        assert result.outcomes[0].message == "disk full"
        failed = audit_backend.query(event_type=AuditEventType.WRITE_FAILED.value)
        assert [e.tracking_number for e in failed] == ["2222222222"]
        assert failed[0].details["error"] == "disk full"


class TestIdempotentReplay:
    """Same batch, same key, one ledger row."""

    def test_second_commit_is_replayed(self, service, db_path, audit_backend):
        add_shipment(db_path, "1234567890", "10.00")
        analysis = service.analyze_records([rec("1234567890", "12.00")], "dhl", UploadMode.OVERWRITE_ALL)
        metadata = UploadMetadata(file_name="CBGR1.csv", invoice_number="INV-1")

        first = service.commit(analysis.records, "dhl", UploadMode.OVERWRITE_ALL, metadata)
        second = service.commit(analysis.records, "dhl", UploadMode.OVERWRITE_ALL, metadata)

        assert first.replayed is False
        assert second.replayed is True
        assert second.upload_history.upload_key == first.upload_history.upload_key
        assert outcomes_of(second) == outcomes_of(first)
        assert shipments.get_shipment("1234567890", "dhl", db_path).version == 2
        assert upload_history.count_uploads(db_path) == 1
        assert audit_backend.query(event_type=AuditEventType.COMMIT_REPLAYED.value)

    def test_replay_after_reanalysis(self, service, db_path):
        add_shipment(db_path, "1234567890", "10.00")
        records = [rec("1234567890", "12.00")]

        first = service.commit(records, "dhl", UploadMode.OVERWRITE_ALL)
        again = service.analyze_records(records, "dhl", UploadMode.OVERWRITE_ALL)
        # The stored cost now equals the invoice, so a fresh analysis would skip
        assert again.records[0].action == RecordAction.SKIP

        second = service.commit(again.records, "dhl", UploadMode.OVERWRITE_ALL)
        assert second.replayed is True
        assert second.outcomes[0].outcome == RecordOutcome.UPDATED
        assert upload_history.count_uploads(db_path) == 1

    def test_explicit_upload_key(self, service, db_path):
        add_order(db_path, "ord-1", "1111111111")
        metadata = UploadMetadata(upload_key="client-key-1")

        first = service.commit([rec("1111111111", "5.00")], "dhl", UploadMode.OVERWRITE_ALL, metadata)
        second = service.commit([rec("1111111111", "6.00")], "dhl", UploadMode.OVERWRITE_ALL, metadata)

        assert first.upload_history.upload_key == "client-key-1"
        assert second.replayed is True
        assert shipments.get_shipment("1111111111", "dhl", db_path).shipping_cost == Decimal("5.00")


class TestUploadKey:
    """Key derivation from batch content."""

    def _analyzed(self, cost, action=RecordAction.UPDATE):
        return AnalyzedRecord(
            tracking_number="1234567890",
            shipping_cost=Decimal(cost),
            action=action,
            reason="",
        )

    def test_stable_and_content_sensitive(self):
        key = compute_upload_key("dhl", UploadMode.OVERWRITE_ALL, [self._analyzed("5.00")], "INV-1")

        assert key == compute_upload_key("DHL", "overwrite_all", [self._analyzed("5.0")], "INV-1")
        assert key == compute_upload_key(
            "dhl", UploadMode.OVERWRITE_ALL, [self._analyzed("5.00", RecordAction.SKIP)], "INV-1"
        )
        assert key != compute_upload_key("dhl", UploadMode.OVERWRITE_ALL, [self._analyzed("5.01")], "INV-1")
        assert key != compute_upload_key("dhl", UploadMode.ADD_TO_EXISTING, [self._analyzed("5.00")], "INV-1")
        assert key != compute_upload_key("dhl", UploadMode.OVERWRITE_ALL, [self._analyzed("5.00")], "INV-2")
        assert len(key) == 64


class TestIngestionService:
    """File bytes through analysis and commit."""

    def test_analyze_csv(self, service, db_path, audit_backend):
        add_order(db_path, "ord-1", "1111111111")
        data = b"AWB,Amount,Currency\n1111111111,5.00,GBP\n2222222222,3.00,GBP\n,1.00,GBP\n"

        report = service.analyze(data, "invoice.csv", "dhl", UploadMode.OVERWRITE_ALL)

        assert report.needs_manual_mapping is False
        assert report.rows_read == 3
        assert report.rows_dropped == 1
        assert report.analysis.totals.to_create == 1
        assert report.analysis.totals.unmatched == 1
        assert audit_backend.query(event_type=AuditEventType.ANALYSIS_COMPLETED.value)

    def test_incomplete_mapping(self, service, audit_backend):
        report = service.analyze(b"Foo,Bar\n1,2\n", "invoice.csv", "dhl", UploadMode.OVERWRITE_ALL)

        assert report.needs_manual_mapping is True
        assert report.analysis is None
        assert report.unmapped_required == ["Tracking Number", "Cost/Amount"]
        assert audit_backend.query(event_type=AuditEventType.MAPPING_INCOMPLETE.value)

    def test_manual_mapping(self, service):
        report = service.analyze(
            b"Foo,Bar\n1111111111,2.50\n",
            "invoice.csv",
            "dhl",
            UploadMode.OVERWRITE_ALL,
            manual_mapping={"tracking": "Foo", "cost": 1},
        )
        assert report.needs_manual_mapping is False
        assert report.analysis.records[0].shipping_cost == Decimal("2.50")

    def test_unknown_carrier(self, service):
        with pytest.raises(ValueError):
            service.analyze(b"AWB,Amount\n1,2\n", "invoice.csv", "pigeon", UploadMode.OVERWRITE_ALL)


class TestDhlBatch:
    """Shipping invoices first, then duties stacked on top."""

    def test_plan_order(self, tmp_path):
        for name in ("CBGIR_1.csv", "cbgr_2.csv", "CBGR_1.csv", "notes.csv", "CBGR_3.txt"):
            (tmp_path / name).write_text("AWB,Amount\n")

        plan = plan_dhl_batch(tmp_path)

        assert [(p.name, mode) for p, mode in plan] == [
            ("CBGR_1.csv", UploadMode.OVERWRITE_ALL),
            ("cbgr_2.csv", UploadMode.OVERWRITE_ALL),
            ("CBGIR_1.csv", UploadMode.ADD_TO_EXISTING),
        ]

    def test_process_folder(self, tmp_path: Path, service, db_path):
        add_order(db_path, "ord-1", "1234567890")
        (tmp_path / "CBGR_1.csv").write_text("AWB,Amount\n1234567890,20.00\n")
        (tmp_path / "CBGIR_1.csv").write_text("AWB,Amount\n1234567890,4.50\n")

        totals = process_folder(tmp_path, service)

        assert totals["files"] == 2
        assert totals["created"] == 1
        assert totals["added"] == 1
        stored = shipments.get_shipment("1234567890", "dhl", db_path)
        assert stored.shipping_cost == Decimal("24.50")
        assert stored.version == 2
