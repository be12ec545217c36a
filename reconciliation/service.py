"""Ingestion service: the analyze/commit facade over parsing and storage.

Usage:
    service = IngestionService(settings.db_path, audit=build_audit_logger(settings.db_path))
    report = service.analyze(data, "CBGR123.csv", "dhl", UploadMode.OVERWRITE_ALL)
    if not report.needs_manual_mapping:
        result = service.commit(report.analysis.records, "dhl", UploadMode.OVERWRITE_ALL,
                                UploadMetadata(file_name="CBGR123.csv"))
"""

from typing import List, Optional, Sequence

from carriers.templates import get_template, normalize_tracking_number
from core.audit.events import AuditEventType, AuditLogger
from core.errors import NoTableFoundError
from core.mapping.engine import ColumnMapper
from core.models.canonical import AnalyzedRecord, ParsedInvoiceRecord, UploadMode
from core.models.refs import (
    AnalysisReport,
    AnalysisResult,
    CommitResult,
    UploadHistory,
    UploadMetadata,
)
from core.observability.logging import get_logger, with_correlation
from parsing.manifest import parse_royal_mail_manifest
from parsing.runner import ManualMapping, parse_file
from reconciliation.allocation import (
    MANIFEST_CARRIER,
    ManifestAllocationReport,
    allocate_manifest_costs,
)
from reconciliation.commit import commit_records
from reconciliation.engine import analyze_records
from storage import orders, shipments, upload_history
from storage.db import PathLike
from unmatched.service import UnmatchedQueue

logger = get_logger(__name__)


def _normalized(records: Sequence[ParsedInvoiceRecord]) -> List[ParsedInvoiceRecord]:
    """Records with normalized tracking numbers; already-normalized ones pass through unchanged."""
    result = []
    for record in records:
        tracking = normalize_tracking_number(record.tracking_number)
        if tracking != record.tracking_number:
            record = record.model_copy(update={"tracking_number": tracking})
        result.append(record)
    return result


class IngestionService:
    """Parses invoice files, decides their effect and commits the result."""

    def __init__(
        self,
        db_path: PathLike,
        audit: Optional[AuditLogger] = None,
        default_currency: str = "GBP",
        mapper: Optional[ColumnMapper] = None,
    ):
        self.db_path = db_path
        self.audit = audit or AuditLogger()
        self.default_currency = default_currency
        self.mapper = mapper or ColumnMapper()
        self.queue = UnmatchedQueue(db_path, self.audit)

    def analyze(
        self,
        data: bytes,
        filename: Optional[str],
        carrier: str,
        mode: UploadMode,
        manual_mapping: Optional[ManualMapping] = None,
    ) -> AnalysisReport:
        """Parse a file and decide every record against current storage.

        Nothing is written except audit events.

        Raises:
            FormatError: the file cannot yield a table
            InvalidMappingError: ``manual_mapping`` does not fit the headers
            ValueError: unknown carrier
        """
        carrier = carrier.lower()
        mode = UploadMode(mode)
        get_template(carrier)

        with with_correlation(carrier=carrier, file_name=filename, upload_mode=mode.value):
            parsed = parse_file(
                data,
                filename,
                manual_mapping=manual_mapping,
                default_currency=self.default_currency,
                mapper=self.mapper,
            )
            report = AnalysisReport(
                file_name=filename,
                file_type=parsed.file_type,
                headers=parsed.headers,
                column_mapping=parsed.column_mapping,
                needs_manual_mapping=parsed.needs_manual_mapping,
                unmapped_required=parsed.unmapped_required,
                parse_warnings=parsed.warnings,
                rows_read=len(parsed.table.rows),
                rows_dropped=parsed.rows_dropped,
            )
            if parsed.needs_manual_mapping:
                self.audit.log_warning(
                    AuditEventType.MAPPING_INCOMPLETE,
                    f"Columns need manual mapping: {', '.join(parsed.unmapped_required)}",
                    carrier=carrier,
                    details={"file_name": filename, "headers": parsed.headers},
                )
                return report

            report.analysis = self.analyze_records(parsed.records, carrier, mode)
            self.audit.log_info(
                AuditEventType.ANALYSIS_COMPLETED,
                f"Analyzed {report.analysis.totals.total} {carrier} records",
                carrier=carrier,
                details={"file_name": filename, **report.analysis.totals.model_dump()},
            )
        return report

    def analyze_records(
        self,
        records: Sequence[ParsedInvoiceRecord],
        carrier: str,
        mode: UploadMode,
    ) -> AnalysisResult:
        """Decide already-parsed records against a fresh storage snapshot."""
        carrier = carrier.lower()
        records = _normalized(records)
        tracking = [r.tracking_number for r in records]
        existing = shipments.get_shipments_by_tracking(tracking, carrier, self.db_path)
        order_refs = orders.orders_for_tracking(tracking, self.db_path)

        with with_correlation(carrier=carrier, stage="analyze"):
            result = analyze_records(records, carrier, UploadMode(mode), existing, order_refs)
            logger.info("Analysis complete", extra_fields=result.totals.model_dump())
        return result

    def commit(
        self,
        records: Sequence[ParsedInvoiceRecord],
        carrier: str,
        mode: UploadMode,
        metadata: Optional[UploadMetadata] = None,
    ) -> CommitResult:
        """Apply a batch.

        Records that arrive without decisions (plain ParsedInvoiceRecords) are
        analyzed first against the current state. Tracking numbers are
        normalized either way, so records built outside the parser match
        stored shipments.
        """
        carrier = carrier.lower()
        mode = UploadMode(mode)
        records = _normalized(records)
        analyzed: List[AnalyzedRecord]
        if all(isinstance(r, AnalyzedRecord) for r in records):
            analyzed = list(records)
        else:
            analyzed = self.analyze_records(records, carrier, mode).records
        return commit_records(
            analyzed,
            carrier,
            mode,
            metadata,
            self.db_path,
            audit=self.audit,
            queue=self.queue,
        )

    def allocate_manifest(
        self,
        data: bytes,
        file_name: Optional[str] = None,
        dry_run: bool = False,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        actor: str = "system",
    ) -> ManifestAllocationReport:
        """Estimate Royal Mail shipment costs from a manifest and apply them.

        Stored Royal Mail shipments dated within the range (the manifest's own
        dates unless given) are matched to manifest days. The resulting costs
        are analyzed and committed in ``overwrite_all`` mode, so locked and
        actual costs stay protected and re-running the same manifest replays.

        Raises:
            NoTableFoundError: the manifest holds no cost rows
        """
        manifest = parse_royal_mail_manifest(data)
        if not manifest.rows:
            raise NoTableFoundError("No valid rows found in Royal Mail manifest", file_type="csv")

        start = start_date or manifest.summary.start_date
        end = end_date or manifest.summary.end_date

        with with_correlation(carrier=MANIFEST_CARRIER, file_name=file_name, stage="allocate"):
            found = shipments.list_shipments_between(MANIFEST_CARRIER, start, end, self.db_path)
            allocation = allocate_manifest_costs(manifest.daily_costs, found)
            analysis = self.analyze_records(
                allocation.to_records(), MANIFEST_CARRIER, UploadMode.OVERWRITE_ALL
            )

            commit = None
            if not dry_run and analysis.records:
                commit = self.commit(
                    analysis.records,
                    MANIFEST_CARRIER,
                    UploadMode.OVERWRITE_ALL,
                    UploadMetadata(file_name=file_name, invoice_number=f"manifest:{start}:{end}", actor=actor),
                )

            logger.info(
                "Manifest allocated",
                extra_fields={
                    "shipments": len(found),
                    "allocated": len(allocation.allocated),
                    "unallocated": len(allocation.unallocated),
                    "dry_run": dry_run,
                },
            )
            self.audit.log_info(
                AuditEventType.MANIFEST_ALLOCATED,
                f"Allocated manifest costs to {len(allocation.allocated)} of {len(found)} shipments",
                upload_key=commit.upload_history.upload_key if commit else None,
                carrier=MANIFEST_CARRIER,
                actor=actor,
                details={
                    "file_name": file_name,
                    "start_date": start,
                    "end_date": end,
                    "dry_run": dry_run,
                    "unallocated": len(allocation.unallocated),
                },
            )

        return ManifestAllocationReport(
            file_name=file_name,
            dry_run=dry_run,
            start_date=start,
            end_date=end,
            summary=manifest.summary,
            shipments_found=len(found),
            allocated=allocation.allocated,
            unallocated=allocation.unallocated,
            analysis=analysis,
            commit=commit,
        )

    def list_uploads(
        self,
        carrier: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[UploadHistory]:
        return upload_history.list_uploads(self.db_path, carrier=carrier, limit=limit, offset=offset)
