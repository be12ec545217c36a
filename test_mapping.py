"""
Column Mapping and Normalization Tests

Validates header detection (keyword scoring, cost exclusions, priority
cost names, one header per field) and the record normalizer (costs,
weights, dates, drop counts, idempotence).
"""

from decimal import Decimal

import pytest

from carriers.templates import (
    detect_carrier_from_headers,
    detect_carrier_from_tracking,
    normalize_tracking_number,
    validate_tracking_for_carrier,
)
from core.errors import InvalidMappingError
from core.mapping.engine import PRIORITY_CONFIDENCE, ColumnMapper, detect_columns, score_header
from core.mapping.normalize import normalize_records, parse_cost, parse_date, parse_weight
from core.models.canonical import ColumnMapping, RawTable


class TestColumnDetection:
    """Header scoring and greedy assignment."""

    def test_dhl_export_headers(self):
        headers = [
            "Line Type", "Shipment Number", "Shipment Date", "Product Name",
            "Weight (kg)", "Currency", "XC1 Charge", "Total amount (excl. VAT)",
        ]
        mapping = detect_columns(headers)

        assert mapping.tracking == 1
        assert mapping.date == 2
        assert mapping.service == 3
        assert mapping.weight == 4
        assert mapping.currency == 5
        assert mapping.cost == 7
        assert mapping.confidence["cost"] == PRIORITY_CONFIDENCE
        assert mapping.is_complete

    def test_extra_charge_never_cost(self):
        mapping = detect_columns(["AWB", "XC1 Charge", "Amount"])
        assert mapping.tracking == 0
        assert mapping.cost == 2

    def test_duties_excluded_from_cost(self):
        mapping = detect_columns(["Tracking Number", "Duties", "Total"])
        assert mapping.cost == 2

        mapping = detect_columns(["Tracking Number", "Duty Amount"])
        assert mapping.cost is None
        assert mapping.unmapped_required == ["Cost/Amount"]

    def test_vat_inclusive_total_excluded(self):
        mapping = detect_columns(["AWB", "Total incl. VAT", "Net Amount"])
        assert mapping.cost == 2

    def test_header_used_once(self):
        # "Shipment Date" is the best tracking candidate too, but date claims it first
        mapping = detect_columns(["Shipment Date", "Ref"])
        assert mapping.date == 0
        assert mapping.tracking is None
        assert not mapping.is_complete

    def test_losing_field_falls_back_to_next_best_header(self):
        # Both tracking and date score highest on "Shipment Date"; date scores higher
        headers = ["Shipment Date", "Item ID Ref", "Amount"]
        assert score_header("Shipment Date", ["shipment date"]) > score_header("Shipment Date", ["shipment"])

        mapping = detect_columns(headers)

        assert mapping.date == 0
        assert mapping.tracking == 1
        assert mapping.cost == 2
        assert mapping.confidence["date"] == 2.0
        assert mapping.confidence["tracking"] == pytest.approx(7 / 11 + 0.1, abs=1e-4)
        assert mapping.is_complete

    def test_tighter_match_scores_higher(self):
        keywords = ["amount"]
        assert score_header("Amount", keywords) > score_header("Amount paid in advance", keywords)
        assert score_header("Something else", keywords) == 0.0

    def test_incomplete_mapping_does_not_raise(self):
        mapping = ColumnMapper().detect(["Foo", "Bar"])
        assert mapping.tracking is None and mapping.cost is None
        assert mapping.unmapped_required == ["Tracking Number", "Cost/Amount"]


class TestManualMapping:
    """User-supplied mappings by index or header name."""

    def test_by_index_and_name(self):
        mapping = ColumnMapper().manual_mapping(["Foo", "Bar", "When"], {"tracking": 0, "cost": "Bar", "date": "2"})
        assert (mapping.tracking, mapping.cost, mapping.date) == (0, 1, 2)
        assert mapping.is_complete

    def test_unknown_field(self):
        with pytest.raises(InvalidMappingError):
            ColumnMapper().manual_mapping(["Foo"], {"colour": 0})

    def test_unknown_header(self):
        with pytest.raises(InvalidMappingError):
            ColumnMapper().manual_mapping(["Foo"], {"tracking": "Nope"})

    def test_out_of_range(self):
        with pytest.raises(InvalidMappingError):
            ColumnMapper().manual_mapping(["Foo", "Bar"], {"tracking": 0, "cost": 2})


class TestValueParsers:
    """Cost, weight and date parsing."""

    def test_parse_cost(self):
        assert parse_cost("£1,234.50") == Decimal("1234.50")
        assert parse_cost(" 12 ") == Decimal("12")
        assert parse_cost("€ 3.10") == Decimal("3.10")
        assert parse_cost(7.25) == Decimal("7.25")
        assert parse_cost("abc") == Decimal("0")
        assert parse_cost("") == Decimal("0")
        assert parse_cost(None) == Decimal("0")

    def test_negative_cost_is_unusable(self):
        assert parse_cost("-5.00") == Decimal("0")

    def test_parse_weight(self):
        assert parse_weight("500", "Weight (g)") == 0.5
        assert parse_weight("2.5", "Weight") == 2.5
        assert parse_weight("heavy", "Weight") == 0.0
        assert parse_weight("", "Weight") == 0.0

    def test_parse_date(self):
        assert parse_date("2024-01-03") == "2024-01-03"
        assert parse_date("2024-01-03T10:15:00") == "2024-01-03"
        assert parse_date("03/01/2024") == "2024-01-03"
        assert parse_date("03-01-2024") == "2024-01-03"
        assert parse_date("03.01.2024") == "2024-01-03"
        assert parse_date("20240103") == "2024-01-03"

    def test_unreadable_dates(self):
        assert parse_date("31/02/2024") == ""
        assert parse_date("Jan 3rd") == ""
        assert parse_date(None) == ""


class TestNormalizeRecords:
    """Applying a mapping to a raw table."""

    HEADERS = ["AWB", "Weight (g)", "Amount", "Currency"]

    def _table(self, rows):
        return RawTable.from_lists(self.HEADERS, rows)

    def _mapping(self):
        return ColumnMapping(tracking=0, weight=1, cost=2, currency=3)

    def test_drops_and_warnings(self):
        table = self._table([
            ["12 3456 7890", "1500", "£10.00", ""],
            ["", "100", "5.00", "GBP"],
            ["999", "100", "0", "GBP"],
            ["888", "100", "-3.00", "GBP"],
        ])
        result = normalize_records(table, self._mapping(), default_currency="EUR")

        assert len(result.records) == 1
        record = result.records[0]
        assert record.tracking_number == "1234567890"
        assert record.shipping_cost == Decimal("10.00")
        assert record.weight_kg == 1.5
        assert record.currency == "EUR"

        assert result.dropped_missing_tracking == 1
        assert result.dropped_missing_cost == 2
        assert result.rows_dropped == 3
        assert result.warnings == [
            "1 rows skipped: missing tracking number",
            "2 rows skipped: missing or zero cost",
        ]

    def test_idempotent_on_normalized_input(self):
        first = normalize_records(
            self._table([["ab 123 c", "250", "4.50", "gbp"], ["JD0001", "10", "1", "USD"]]),
            self._mapping(),
        )
        again = normalize_records(
            self._table([
                [r.tracking_number, "250", str(r.shipping_cost), r.currency] for r in first.records
            ]),
            self._mapping(),
        )
        assert [(r.tracking_number, r.shipping_cost, r.currency) for r in again.records] == [
            (r.tracking_number, r.shipping_cost, r.currency) for r in first.records
        ]


class TestCarrierTemplates:
    """Tracking-number normalization and carrier detection."""

    def test_normalize_tracking_number(self):
        assert normalize_tracking_number(" ab 12\t34 ") == "AB1234"
        assert normalize_tracking_number(normalize_tracking_number("ab 12")) == "AB12"
        assert normalize_tracking_number(None) == ""

    def test_detect_from_tracking(self):
        assert detect_carrier_from_tracking("1234567890") == "dhl"
        assert detect_carrier_from_tracking("AB123456789GB") == "royalmail"
        assert detect_carrier_from_tracking("LX123456789DE") == "deutschepost"
        assert detect_carrier_from_tracking("???") is None

    def test_validate_tracking(self):
        assert validate_tracking_for_carrier("12345 67890", "dhl")
        assert not validate_tracking_for_carrier("AB123456789GB", "dhl")

    def test_detect_from_headers(self):
        assert detect_carrier_from_headers(["AWB Number", "Total Charge", "Waybill"]) == "dhl"
        assert detect_carrier_from_headers(["Nothing", "Useful"]) is None
