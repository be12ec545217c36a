"""Upload, ledger and audit models.

These wrap the per-record canonical types into the shapes returned by
``analyze`` and ``commit`` and persisted in the upload ledger.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from core.models.canonical import AnalyzedRecord, ColumnMapping, FileType, UploadMode


# =============================================================================
# Analysis
# =============================================================================

class AnalysisTotals(BaseModel):
    """Decision counts for an analyzed batch."""
    total: int = 0
    to_create: int = 0
    to_update: int = 0
    to_add: int = 0
    to_skip: int = 0
    to_block: int = 0
    unmatched: int = Field(default=0, description="Skips that will go to the unmatched queue")


class AnalysisResult(BaseModel):
    """Per-record decisions for a batch. Pure output, nothing persisted."""
    carrier: str
    upload_mode: UploadMode
    records: List[AnalyzedRecord] = Field(default_factory=list)
    totals: AnalysisTotals = Field(default_factory=AnalysisTotals)
    warnings: List[str] = Field(default_factory=list)


class AnalysisReport(BaseModel):
    """Full file analysis: parse diagnostics plus reconciliation decisions.

    When ``needs_manual_mapping`` is True, ``analysis`` is None and the caller
    must supply a column mapping and re-run analysis.
    """
    file_name: Optional[str] = None
    file_type: FileType
    headers: List[str] = Field(default_factory=list)
    column_mapping: Optional[ColumnMapping] = None
    needs_manual_mapping: bool = False
    unmapped_required: List[str] = Field(default_factory=list)
    parse_warnings: List[str] = Field(default_factory=list)
    rows_read: int = 0
    rows_dropped: int = 0
    analysis: Optional[AnalysisResult] = None


# =============================================================================
# Commit
# =============================================================================

class RecordOutcome(str, Enum):
    """Commit-time result for one record."""
    CREATED = "created"
    UPDATED = "updated"
    ADDED = "added"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    ERRORED = "errored"


class OutcomeRecord(BaseModel):
    """What happened to one record during commit."""
    tracking_number: str
    outcome: RecordOutcome
    message: str
    unmatched: bool = False


class UploadMetadata(BaseModel):
    """Caller-supplied context for a commit.

    ``upload_key`` makes commit idempotent: a second commit with the same key
    returns the stored result. When omitted, a key is derived from the batch.
    """
    file_name: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    upload_key: Optional[str] = None
    actor: str = "system"


class UploadHistory(BaseModel):
    """Ledger row for one committed upload.

    The six outcome counts always sum to ``total_records``.
    """
    id: Optional[int] = None
    upload_key: str
    carrier: str
    upload_mode: UploadMode
    file_name: Optional[str] = None
    invoice_number: Optional[str] = None
    actor: str = "system"
    total_records: int = 0
    created_count: int = 0
    updated_count: int = 0
    added_count: int = 0
    skipped_count: int = 0
    blocked_count: int = 0
    error_count: int = 0
    unmatched_count: int = 0
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _counts_sum_to_total(self) -> "UploadHistory":
        counted = (
            self.created_count + self.updated_count + self.added_count
            + self.skipped_count + self.blocked_count + self.error_count
        )
        if counted != self.total_records:
            raise ValueError(
                f"outcome counts sum to {counted}, expected {self.total_records}"
            )
        if self.unmatched_count > self.skipped_count:
            raise ValueError("unmatched_count cannot exceed skipped_count")
        return self


class CommitResult(BaseModel):
    """Per-record outcomes plus the ledger row they produced."""
    outcomes: List[OutcomeRecord] = Field(default_factory=list)
    upload_history: UploadHistory
    replayed: bool = Field(default=False, description="True when returned from a previous commit")


# =============================================================================
# Audit Event Models
# =============================================================================

class AuditSeverity(str, Enum):
    """Severity levels for audit events."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    BLOCK = "BLOCK"


class AuditEvent(BaseModel):
    """An audit event for tracking ingestion actions.

    Every committed upload, blocked write and queue transition leaves one of
    these behind so a batch can be reviewed or replayed later.
    """
    event_id: str = Field(..., description="Unique event identifier")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Event timestamp")
    event_type: str = Field(..., description="Type of event")
    severity: AuditSeverity = Field(default=AuditSeverity.INFO, description="Event severity")

    # Context
    upload_key: Optional[str] = Field(None, description="Associated upload")
    carrier: Optional[str] = Field(None, description="Carrier of the upload")
    tracking_number: Optional[str] = Field(None, description="Associated tracking number")
    workflow_id: Optional[str] = Field(None, description="Temporal workflow ID")

    # Details
    message: str = Field(..., description="Human-readable message")
    details: dict = Field(default_factory=dict, description="Additional event details")

    # Actor
    actor: str = Field(default="system", description="Who/what performed the action")
