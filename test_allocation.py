"""
Royal Mail Manifest Allocation Tests

Validates estimating per-shipment Royal Mail costs from a billing manifest:
1. Service type translation and day matching (exact, inferred, adjacent)
2. Allocation of average per-item costs
3. Applying allocations through analysis and the guarded commit
"""

import os
import tempfile
from decimal import Decimal

import pytest

from core.audit.events import AuditEventType, AuditLogger, InMemoryAuditBackend
from core.errors import NoTableFoundError
from core.models.canonical import CostProvenance, ExistingShipment, RecordAction
from core.models.refs import RecordOutcome
from parsing.manifest import DailyCost
from reconciliation.allocation import (
    allocate_manifest_costs,
    candidate_service_types,
    match_daily_cost,
)
from reconciliation.engine import REASON_PROVENANCE
from reconciliation.service import IngestionService
from storage import shipments
from storage.db import init_db
from storage.models import ShipmentDraft


def manifest_line(date, code, volume, net, gross):
    fields = [""] * 35
    fields[0] = date
    fields[1] = "SO-1"
    fields[9] = "GB"
    fields[11] = code
    fields[12] = f"{code} product"
    fields[20] = volume
    fields[32] = net
    fields[34] = gross
    return ",".join(fields)


MANIFEST = "\n".join([
    "Royal Mail Manifest",
    "Account,123",
    "Date,Sales Order,...",
    manifest_line("05.01.2024", "TPS", "2", "7.00", "8.40"),
    manifest_line("05.01.2024", "TPS", "1", "3.50", "4.20"),
    manifest_line("06.01.2024", "TPM", "3", "12.00", "14.40"),
]).encode("utf-8")


def daily(day, code, service_type, quantity, net):
    return DailyCost(
        date=day,
        product_code=code,
        service_type=service_type,
        total_quantity=quantity,
        total_net_cost=Decimal(net),
    )


def stored(tracking, shipping_date, service_type=None, cost="0"):
    return ExistingShipment(
        tracking_number=tracking,
        carrier="royalmail",
        shipping_cost=Decimal(cost),
        shipping_date=shipping_date,
        service_type=service_type,
    )


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


def add_royal_mail_shipment(db_path, tracking, shipping_date, service_type=None,
                            cost="0", provenance=CostProvenance.ESTIMATED):
    return shipments.create_shipment(
        ShipmentDraft(
            tracking_number=tracking,
            carrier="royalmail",
            shipping_cost=Decimal(cost),
            shipping_date=shipping_date,
            service_type=service_type,
            cost_provenance=provenance,
        ),
        db_path,
    )


class TestServiceTypes:
    """Stored service names to manifest service types."""

    @pytest.mark.parametrize("service_type,expected", [
        (None, []),
        ("", []),
        ("rm_tracked_24", ["rm_tracked_24"]),
        ("royal_mail_tracked_48_parcel", ["rm_tracked_48"]),
        ("rm_special_delivery_guaranteed", ["special_delivery_1pm", "special_delivery_9am"]),
        ("rm_intl_business_parcels_tracked_country", ["intl_tracked_ddp", "intl_tracked_packet"]),
        ("rm_intl_tracked_packet", ["intl_tracked_packet", "intl_tracked_ddp"]),
        ("rm_intl_signed", ["intl_tracked_ddp", "intl_tracked_packet"]),
        ("courier", ["courier"]),
    ])
    def test_candidates(self, service_type, expected):
        assert candidate_service_types(service_type) == expected


class TestDayMatching:
    """Exact date first, then inferred service, then adjacent days."""

    def _index(self, *costs):
        return {(c.date, c.service_type): c for c in costs}

    def test_exact_day(self):
        tps = daily("2024-01-05", "TPS", "rm_tracked_48", 2, "7.00")
        matched, adjacent = match_daily_cost(stored("VF1GB", "2024-01-05T10:30:00", "rm_tracked_48"), self._index(tps))
        assert matched is tps
        assert adjacent is False

    def test_inferred_service_same_day(self):
        tps = daily("2024-01-05", "TPS", "rm_tracked_48", 2, "7.00")
        matched, adjacent = match_daily_cost(stored("VF123GB", "2024-01-05", "courier"), self._index(tps))
        assert matched is tps
        assert adjacent is False

    def test_adjacent_day(self):
        tpm = daily("2024-01-06", "TPM", "rm_tracked_24", 3, "12.00")
        matched, adjacent = match_daily_cost(stored("AS1GB", "2024-01-07", "rm_tracked_24"), self._index(tpm))
        assert matched is tpm
        assert adjacent is True

    def test_two_days_away_is_no_match(self):
        tpm = daily("2024-01-06", "TPM", "rm_tracked_24", 3, "12.00")
        matched, adjacent = match_daily_cost(stored("AS1GB", "2024-01-08", "rm_tracked_24"), self._index(tpm))
        assert matched is None
        assert adjacent is False


class TestAllocation:
    """Average per-item cost per matched shipment."""

    def test_allocate(self):
        costs = [
            daily("2024-01-05", "TPS", "rm_tracked_48", 3, "10.00"),
            daily("2024-01-06", "TPM", "rm_tracked_24", 3, "12.00"),
        ]
        allocation = allocate_manifest_costs(costs, [
            stored("VF1GB", "2024-01-05", "rm_tracked_48", cost="2.00"),
            stored("AS2GB", "2024-01-05"),
            stored("12345", "2024-01-06", "special_delivery_1pm"),
            stored("VF3GB", None, "rm_tracked_48"),
        ])

        assert [(a.tracking_number, a.new_cost, a.adjacent_day) for a in allocation.allocated] == [
            ("VF1GB", Decimal("3.33"), False),
            ("AS2GB", Decimal("4.00"), True),
        ]
        first = allocation.allocated[0]
        assert first.previous_cost == Decimal("2.00")
        assert first.cost_source == "Royal Mail manifest: TPS avg 3.33/item"
        assert allocation.allocated[1].service_type == "rm_tracked_24"
        assert "adjacent day 2024-01-06" in allocation.allocated[1].cost_source

        assert [(u.tracking_number, u.inferred_service) for u in allocation.unallocated] == [("12345", False)]

        records = allocation.to_records()
        assert [(r.tracking_number, r.shipping_cost, r.shipping_date) for r in records] == [
            ("VF1GB", Decimal("3.33"), "2024-01-05"),
            ("AS2GB", Decimal("4.00"), "2024-01-05"),
        ]
        assert records[0].raw_record["product_code"] == "TPS"

    def test_zero_cost_day_is_unallocated(self):
        costs = [daily("2024-01-05", "TPS", "rm_tracked_48", 2, "0")]
        allocation = allocate_manifest_costs(costs, [stored("VF1GB", "2024-01-05")])

        assert allocation.allocated == []
        assert [(u.tracking_number, u.service_type, u.inferred_service) for u in allocation.unallocated] == [
            ("VF1GB", "rm_tracked_48", True),
        ]


class TestManifestService:
    """Allocations go through analysis and the guarded commit."""

    def _seed(self, db_path):
        add_royal_mail_shipment(db_path, "VF000000001GB", "2024-01-05", "rm_tracked_48")
        add_royal_mail_shipment(db_path, "AS000000002GB", "2024-01-05")
        add_royal_mail_shipment(db_path, "LA000000003GB", "2024-01-05", "rm_tracked_48",
                                cost="5.00", provenance=CostProvenance.ACTUAL)
        add_royal_mail_shipment(db_path, "12345", "2024-01-06", "special_delivery_1pm")
        add_royal_mail_shipment(db_path, "VF000000009GB", "2024-02-01", "rm_tracked_48")

    def test_dry_run_writes_nothing(self, service, db_path):
        self._seed(db_path)

        report = service.allocate_manifest(MANIFEST, file_name="rm.csv", dry_run=True)

        assert report.dry_run is True
        assert report.commit is None
        assert (report.start_date, report.end_date) == ("2024-01-05", "2024-01-06")
        assert report.shipments_found == 4
        assert [a.tracking_number for a in report.allocated] == [
            "VF000000001GB", "AS000000002GB", "LA000000003GB",
        ]
        assert [u.tracking_number for u in report.unallocated] == ["12345"]
        assert [r.action for r in report.analysis.records] == [
            RecordAction.UPDATE, RecordAction.UPDATE, RecordAction.BLOCKED,
        ]
        assert shipments.get_shipment("VF000000001GB", "royalmail", db_path).shipping_cost == Decimal("0")

    def test_apply_and_replay(self, service, db_path, audit_backend):
        self._seed(db_path)

        report = service.allocate_manifest(MANIFEST, file_name="rm.csv", actor="ops")

        outcomes = [(o.tracking_number, o.outcome) for o in report.commit.outcomes]
        assert outcomes == [
            ("VF000000001GB", RecordOutcome.UPDATED),
            ("AS000000002GB", RecordOutcome.UPDATED),
            ("LA000000003GB", RecordOutcome.BLOCKED),
        ]
        assert report.commit.outcomes[2].message == REASON_PROVENANCE

        first = shipments.get_shipment("VF000000001GB", "royalmail", db_path)
        assert first.shipping_cost == Decimal("3.50")
        assert first.cost_provenance == CostProvenance.ESTIMATED
        assert shipments.get_shipment("AS000000002GB", "royalmail", db_path).shipping_cost == Decimal("4.00")
        protected = shipments.get_shipment("LA000000003GB", "royalmail", db_path)
        assert protected.shipping_cost == Decimal("5.00")
        assert protected.cost_provenance == CostProvenance.ACTUAL

        assert report.commit.upload_history.actor == "ops"
        assert report.commit.upload_history.invoice_number == "manifest:2024-01-05:2024-01-06"
        assert audit_backend.query(event_type=AuditEventType.MANIFEST_ALLOCATED.value)

        again = service.allocate_manifest(MANIFEST, file_name="rm.csv")
        assert again.commit.replayed is True
        assert shipments.get_shipment("VF000000001GB", "royalmail", db_path).version == 2

    def test_date_filter(self, service, db_path):
        self._seed(db_path)

        report = service.allocate_manifest(
            MANIFEST, dry_run=True, start_date="2024-01-06", end_date="2024-01-06"
        )

        assert report.shipments_found == 1
        assert report.allocated == []

    def test_empty_manifest(self, service):
        with pytest.raises(NoTableFoundError):
            service.allocate_manifest(b"Royal Mail Manifest\nAccount,123\nDate\n")
