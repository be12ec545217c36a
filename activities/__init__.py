"""Temporal activities for invoice uploads."""

from activities.ingest import (
    AnalyzeUploadInput,
    AnalyzeUploadOutput,
    CommitUploadInput,
    CommitUploadOutput,
    analyze_invoice_upload,
    commit_invoice_upload,
)

__all__ = [
    "AnalyzeUploadInput",
    "AnalyzeUploadOutput",
    "CommitUploadInput",
    "CommitUploadOutput",
    "analyze_invoice_upload",
    "commit_invoice_upload",
]
