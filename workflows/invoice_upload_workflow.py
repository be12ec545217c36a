"""
Invoice Upload Workflow

Durable two-phase upload:
ANALYZE → (NEEDS_MAPPING | PREVIEWED) or COMMIT → COMMITTED

The analyze activity runs against a fresh snapshot of stored shipments.
Commit is idempotent per upload key, so activity retries cannot apply a
batch twice.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.ingest import (
        analyze_invoice_upload,
        commit_invoice_upload,
        AnalyzeUploadInput,
        CommitUploadInput,
    )


TASK_QUEUE_DEFAULT = "invoice-default"

# File-level errors never heal on retry
NON_RETRYABLE_ERRORS = [
    "FormatError",
    "UnsupportedFileTypeError",
    "EncryptedPdfError",
    "ScannedPdfError",
    "NoTableFoundError",
    "InvalidMappingError",
    "ValueError",
]


class UploadStatus(str, Enum):
    NEEDS_MAPPING = "NEEDS_MAPPING"
    PREVIEWED = "PREVIEWED"
    COMMITTED = "COMMITTED"


@dataclass
class InvoiceUploadInput:
    """Input for the invoice upload workflow"""
    file_path: str
    carrier: str
    upload_mode: str
    preview_only: bool = False
    manual_mapping: Optional[Dict[str, Any]] = None
    invoice_number: Optional[str] = None
    upload_key: Optional[str] = None
    actor: str = "workflow"
    db_path: Optional[str] = None


@dataclass
class InvoiceUploadOutput:
    """Output from the invoice upload workflow"""
    status: str
    file_name: str
    totals: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    headers: List[str] = field(default_factory=list)
    unmapped_required: List[str] = field(default_factory=list)
    upload_key: Optional[str] = None
    replayed: bool = False
    counts: Dict[str, int] = field(default_factory=dict)


@workflow.defn
class InvoiceUploadWorkflow:
    """Analyze an invoice file and, unless previewing, commit it."""

    @workflow.run
    async def run(self, input: InvoiceUploadInput) -> InvoiceUploadOutput:
        workflow.logger.info(f"Starting invoice upload for {input.carrier}: {input.file_path}")

        activity_options = {
            "start_to_close_timeout": timedelta(minutes=5),
            "retry_policy": RetryPolicy(
                maximum_attempts=3,
                initial_interval=timedelta(seconds=1),
                backoff_coefficient=2.0,
                non_retryable_error_types=NON_RETRYABLE_ERRORS,
            ),
        }

        analysis = await workflow.execute_activity(
            analyze_invoice_upload,
            AnalyzeUploadInput(
                file_path=input.file_path,
                carrier=input.carrier,
                upload_mode=input.upload_mode,
                manual_mapping=input.manual_mapping,
                db_path=input.db_path,
            ),
            **activity_options,
        )

        output = InvoiceUploadOutput(
            status=UploadStatus.PREVIEWED.value,
            file_name=analysis.file_name,
            totals=analysis.totals,
            warnings=analysis.warnings,
            headers=analysis.headers,
            unmapped_required=analysis.unmapped_required,
        )

        if analysis.needs_manual_mapping:
            workflow.logger.warning(
                f"Columns need manual mapping: {', '.join(analysis.unmapped_required)}"
            )
            output.status = UploadStatus.NEEDS_MAPPING.value
            return output

        if input.preview_only:
            return output

        commit = await workflow.execute_activity(
            commit_invoice_upload,
            CommitUploadInput(
                carrier=input.carrier,
                upload_mode=input.upload_mode,
                records=analysis.records,
                file_name=analysis.file_name,
                invoice_number=input.invoice_number,
                upload_key=input.upload_key,
                actor=input.actor,
                workflow_id=workflow.info().workflow_id,
                db_path=input.db_path,
            ),
            **activity_options,
        )

        output.status = UploadStatus.COMMITTED.value
        output.upload_key = commit.upload_key
        output.replayed = commit.replayed
        output.counts = commit.counts
        workflow.logger.info(f"Invoice upload committed: {commit.counts}")
        return output
