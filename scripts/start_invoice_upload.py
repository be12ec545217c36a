"""Start an invoice upload workflow on Temporal.

Connects to Temporal, starts an InvoiceUploadWorkflow for one file and
prints the result.
"""

import argparse
import asyncio
import sys
import uuid
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import get_settings
from core.models.canonical import UploadMode
from core.observability.logging import configure_from_settings, get_logger
from temporal_client import get_temporal_client
from workflows.invoice_upload_workflow import InvoiceUploadInput, InvoiceUploadWorkflow

logger = get_logger(__name__)


async def start_invoice_upload(
    file_path: str,
    carrier: str,
    upload_mode: UploadMode,
    preview_only: bool = False,
    invoice_number: str = None,
):
    """Start the upload workflow and wait for its result."""
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Invoice file not found: {file_path}")

    settings = get_settings()
    workflow_id = f"invoice-upload-{carrier}-{uuid.uuid4().hex[:8]}"

    client = await get_temporal_client()
    logger.info(f"Connected to Temporal: {client.namespace}")

    handle = await client.start_workflow(
        InvoiceUploadWorkflow.run,
        InvoiceUploadInput(
            file_path=str(path.resolve()),
            carrier=carrier,
            upload_mode=upload_mode.value,
            preview_only=preview_only,
            invoice_number=invoice_number,
            actor="cli",
        ),
        task_queue=settings.temporal_task_queue,
        id=workflow_id,
    )
    logger.info(f"Workflow started: {handle.id}")
    return await handle.result()


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Start an invoice upload workflow")
    parser.add_argument("file", help="Path to the invoice file (CSV, XLSX, XLS or PDF)")
    parser.add_argument("--carrier", required=True, choices=["dhl", "royalmail", "deutschepost"])
    parser.add_argument(
        "--mode",
        choices=[m.value for m in UploadMode],
        default=UploadMode.UPDATE_IF_HIGHER.value,
        help="Upload mode (default: update_if_higher)",
    )
    parser.add_argument("--preview", action="store_true", help="Analyze only, do not commit")
    parser.add_argument("--invoice-number", default=None)
    args = parser.parse_args()

    configure_from_settings(get_settings())
    result = asyncio.run(start_invoice_upload(
        args.file, args.carrier, UploadMode(args.mode), args.preview, args.invoice_number,
    ))

    print("\n" + "=" * 60)
    print(f"STATUS: {result.status}")
    print("=" * 60)
    print(f"File: {result.file_name}")
    print(f"Totals: {result.totals}")
    if result.counts:
        print(f"Outcomes: {result.counts}")
        print(f"Upload key: {result.upload_key}{' (replayed)' if result.replayed else ''}")
    for warning in result.warnings:
        print(f"  ! {warning}")
    if result.unmapped_required:
        print(f"Unmapped: {', '.join(result.unmapped_required)}")
        print(f"Headers: {result.headers}")


if __name__ == "__main__":
    main()
