"""Ingestion activities for the invoice upload workflow.

Temporal activities that wrap ``IngestionService`` analyze and commit.
Inputs and outputs are plain dataclasses; records cross the workflow
boundary as JSON-mode dicts so money stays exact.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from temporalio import activity

from core.audit.events import build_audit_logger
from core.config import get_settings
from core.models.canonical import AnalyzedRecord, UploadMode
from core.models.refs import UploadMetadata
from core.observability.logging import (
    log_activity_complete,
    log_activity_error,
    log_activity_start,
    with_correlation,
)
from reconciliation.service import IngestionService
from storage.db import init_db


@dataclass
class AnalyzeUploadInput:
    """Input for analyze_invoice_upload activity.

    Attributes:
        file_path: Absolute path to the uploaded invoice file
        carrier: Carrier code (dhl, royalmail, deutschepost)
        upload_mode: UploadMode value
        manual_mapping: Optional field -> column index or header name
        db_path: Database override (defaults to INVOICE_DB_PATH)
    """
    file_path: str
    carrier: str
    upload_mode: str
    manual_mapping: Optional[Dict[str, Any]] = None
    db_path: Optional[str] = None


@dataclass
class AnalyzeUploadOutput:
    """Output from analyze_invoice_upload activity.

    Attributes:
        file_name: Base name of the analyzed file
        needs_manual_mapping: True when columns could not be detected
        headers: Header row, for building a manual mapping
        unmapped_required: Required fields without a column
        warnings: Parse and analysis warnings
        totals: Decision counts (empty when mapping is needed)
        records: Analyzed records (JSON-mode dicts)
    """
    file_name: str
    needs_manual_mapping: bool
    headers: List[str] = field(default_factory=list)
    unmapped_required: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    totals: Dict[str, int] = field(default_factory=dict)
    records: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class CommitUploadInput:
    """Input for commit_invoice_upload activity.

    Attributes:
        carrier: Carrier code
        upload_mode: UploadMode value
        records: Analyzed records from analyze_invoice_upload
        file_name: Source file name for the ledger
        invoice_number: Carrier invoice number, part of the upload key
        upload_key: Explicit idempotency key (derived from the batch when None)
        actor: Who started the upload
        workflow_id: Calling workflow, for log correlation
        db_path: Database override (defaults to INVOICE_DB_PATH)
    """
    carrier: str
    upload_mode: str
    records: List[Dict[str, Any]]
    file_name: Optional[str] = None
    invoice_number: Optional[str] = None
    upload_key: Optional[str] = None
    actor: str = "workflow"
    workflow_id: Optional[str] = None
    db_path: Optional[str] = None


@dataclass
class CommitUploadOutput:
    """Output from commit_invoice_upload activity."""
    upload_key: str
    replayed: bool
    counts: Dict[str, int]
    outcomes: List[Dict[str, Any]] = field(default_factory=list)


def _service(db_path: Optional[str]) -> IngestionService:
    settings = get_settings()
    path = Path(db_path) if db_path else settings.db_path
    init_db(path)
    return IngestionService(
        path,
        audit=build_audit_logger(path, settings.audit_dir),
        default_currency=settings.default_currency,
    )


@activity.defn
async def analyze_invoice_upload(input: AnalyzeUploadInput) -> AnalyzeUploadOutput:
    """Parse an invoice file and decide every record against storage.

    Raises:
        FormatError: file cannot yield a table (not retried)
        InvalidMappingError: manual mapping does not fit the headers (not retried)
    """
    started = time.monotonic()
    path = Path(input.file_path)
    log_activity_start("analyze_invoice_upload", file_path=input.file_path, carrier=input.carrier)

    try:
        with with_correlation(carrier=input.carrier, file_name=path.name, activity_name="analyze_invoice_upload"):
            report = _service(input.db_path).analyze(
                path.read_bytes(),
                path.name,
                input.carrier,
                UploadMode(input.upload_mode),
                manual_mapping=input.manual_mapping,
            )
    except Exception as e:
        log_activity_error("analyze_invoice_upload", str(e), file_path=input.file_path)
        raise

    output = AnalyzeUploadOutput(
        file_name=path.name,
        needs_manual_mapping=report.needs_manual_mapping,
        headers=report.headers,
        unmapped_required=report.unmapped_required,
        warnings=list(report.parse_warnings),
    )
    if report.analysis is not None:
        output.warnings.extend(report.analysis.warnings)
        output.totals = report.analysis.totals.model_dump()
        output.records = [r.model_dump(mode="json") for r in report.analysis.records]

    log_activity_complete(
        "analyze_invoice_upload",
        duration_ms=(time.monotonic() - started) * 1000,
        records=len(output.records),
        needs_manual_mapping=output.needs_manual_mapping,
    )
    return output


@activity.defn
async def commit_invoice_upload(input: CommitUploadInput) -> CommitUploadOutput:
    """Apply analyzed records. Safe to retry: a repeated upload key replays."""
    started = time.monotonic()
    log_activity_start("commit_invoice_upload", carrier=input.carrier, records=len(input.records))

    records = [AnalyzedRecord.model_validate(r) for r in input.records]
    metadata = UploadMetadata(
        file_name=input.file_name,
        invoice_number=input.invoice_number,
        upload_key=input.upload_key,
        actor=input.actor,
    )
    try:
        with with_correlation(workflow_id=input.workflow_id, activity_name="commit_invoice_upload"):
            result = _service(input.db_path).commit(
                records, input.carrier, UploadMode(input.upload_mode), metadata
            )
    except Exception as e:
        log_activity_error("commit_invoice_upload", str(e), carrier=input.carrier)
        raise

    history = result.upload_history
    counts = {
        "total": history.total_records,
        "created": history.created_count,
        "updated": history.updated_count,
        "added": history.added_count,
        "skipped": history.skipped_count,
        "blocked": history.blocked_count,
        "errored": history.error_count,
        "unmatched": history.unmatched_count,
    }
    log_activity_complete(
        "commit_invoice_upload",
        duration_ms=(time.monotonic() - started) * 1000,
        upload_key=history.upload_key,
        replayed=result.replayed,
        **counts,
    )
    return CommitUploadOutput(
        upload_key=history.upload_key,
        replayed=result.replayed,
        counts=counts,
        outcomes=[o.model_dump(mode="json") for o in result.outcomes],
    )
