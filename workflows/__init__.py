"""Temporal workflows for invoice uploads."""

from workflows.invoice_upload_workflow import (
    InvoiceUploadInput,
    InvoiceUploadOutput,
    InvoiceUploadWorkflow,
    TASK_QUEUE_DEFAULT,
    UploadStatus,
)

__all__ = [
    "InvoiceUploadInput",
    "InvoiceUploadOutput",
    "InvoiceUploadWorkflow",
    "TASK_QUEUE_DEFAULT",
    "UploadStatus",
]
