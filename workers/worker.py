"""Worker for invoice uploads.

Polls the ``invoice-default`` task queue (or TEMPORAL_TASK_QUEUE) and runs
the upload workflow with its analyze and commit activities.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from activities.ingest import analyze_invoice_upload, commit_invoice_upload
from core.config import get_settings
from core.observability.logging import configure_from_settings, get_logger
from storage.db import init_db
from temporal_client import get_temporal_client
from workflows.invoice_upload_workflow import InvoiceUploadWorkflow

logger = get_logger(__name__)

WORKFLOWS = [InvoiceUploadWorkflow]
ACTIVITIES = [analyze_invoice_upload, commit_invoice_upload]


async def run_worker(task_queue: str) -> None:
    """Start a worker listening on a task queue.

    Raises:
        Exception: If connection to Temporal fails
    """
    client = await get_temporal_client()
    logger.info("Connected to Temporal", extra_fields={"namespace": client.namespace})

    worker = Worker(
        client,
        task_queue=task_queue,
        workflows=WORKFLOWS,
        activities=ACTIVITIES,
    )
    logger.info(
        "Worker running (Ctrl+C to stop)",
        extra_fields={"task_queue": task_queue, "workflows": len(WORKFLOWS), "activities": len(ACTIVITIES)},
    )
    await worker.run()


def main():
    """Entry point for worker with CLI args."""
    settings = get_settings()
    configure_from_settings(settings)

    parser = argparse.ArgumentParser(description="Invoice Upload Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=settings.temporal_task_queue,
        help=f"Task queue to poll (default: {settings.temporal_task_queue})",
    )
    args = parser.parse_args()

    init_db(settings.db_path)
    try:
        asyncio.run(run_worker(args.queue))
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


if __name__ == "__main__":
    main()
