"""Batch process DHL invoice CSVs from a folder.

Shipping invoices (``CBGR*``) are committed first with ``overwrite_all``,
then duty invoices (``CBGIR*``) are stacked on top with ``add_to_existing``.

Usage:
    python scripts/process_dhl_invoices.py /path/to/invoices [--dry-run]
"""

import argparse
import sys
from pathlib import Path
from typing import Dict, List, Tuple

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.audit.events import build_audit_logger
from core.config import get_settings
from core.errors import FormatError
from core.models.canonical import UploadMode
from core.models.refs import UploadMetadata
from core.observability.logging import configure_from_settings, get_logger
from reconciliation.service import IngestionService
from storage.db import init_db

logger = get_logger(__name__)

SHIPPING_PREFIX = "CBGR"
DUTIES_PREFIX = "CBGIR"


def plan_dhl_batch(folder: Path) -> List[Tuple[Path, UploadMode]]:
    """Files to process in order, each with the mode it is committed under."""
    files = sorted(p for p in folder.iterdir() if p.suffix.lower() == ".csv")
    shipping = [p for p in files if p.name.upper().startswith(SHIPPING_PREFIX)]
    duties = [p for p in files if p.name.upper().startswith(DUTIES_PREFIX)]
    return (
        [(p, UploadMode.OVERWRITE_ALL) for p in shipping]
        + [(p, UploadMode.ADD_TO_EXISTING) for p in duties]
    )


def process_folder(
    folder: Path,
    service: IngestionService,
    dry_run: bool = False,
) -> Dict[str, int]:
    """Analyze and (unless dry_run) commit every DHL invoice in a folder.

    Returns:
        Totals across all files
    """
    totals = {"files": 0, "records": 0, "created": 0, "updated": 0, "added": 0,
              "skipped": 0, "blocked": 0, "errored": 0, "unmatched": 0, "failed_files": 0}

    for path, mode in plan_dhl_batch(folder):
        logger.info(f"Processing {path.name} ({mode.value})")
        try:
            report = service.analyze(path.read_bytes(), path.name, "dhl", mode)
        except FormatError as e:
            logger.error(f"Skipping {path.name}: {e}")
            totals["failed_files"] += 1
            continue

        totals["files"] += 1
        if report.needs_manual_mapping or report.analysis is None:
            logger.warning(f"{path.name}: columns need manual mapping ({', '.join(report.unmapped_required)})")
            totals["failed_files"] += 1
            continue

        for warning in report.parse_warnings + report.analysis.warnings:
            logger.warning(f"{path.name}: {warning}")
        totals["records"] += report.analysis.totals.total

        if dry_run:
            logger.info(f"{path.name}: {report.analysis.totals.model_dump()}")
            continue

        result = service.commit(
            report.analysis.records,
            "dhl",
            mode,
            UploadMetadata(file_name=path.name, invoice_number=path.stem, actor="batch"),
        )
        history = result.upload_history
        totals["created"] += history.created_count
        totals["updated"] += history.updated_count
        totals["added"] += history.added_count
        totals["skipped"] += history.skipped_count
        totals["blocked"] += history.blocked_count
        totals["errored"] += history.error_count
        totals["unmatched"] += history.unmatched_count
        suffix = " (already committed)" if result.replayed else ""
        logger.info(
            f"{path.name}: created={history.created_count} updated={history.updated_count} "
            f"added={history.added_count} skipped={history.skipped_count} "
            f"blocked={history.blocked_count} errors={history.error_count}{suffix}"
        )

    return totals


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Batch process DHL invoice CSVs")
    parser.add_argument("folder", type=Path, help="Folder holding CBGR/CBGIR CSV files")
    parser.add_argument("--dry-run", action="store_true", help="Analyze only, do not commit")
    args = parser.parse_args()

    if not args.folder.is_dir():
        print(f"Folder not found: {args.folder}")
        sys.exit(1)

    settings = get_settings()
    configure_from_settings(settings)
    init_db(settings.db_path)
    service = IngestionService(
        settings.db_path,
        audit=build_audit_logger(settings.db_path, settings.audit_dir),
        default_currency=settings.default_currency,
    )

    totals = process_folder(args.folder, service, dry_run=args.dry_run)

    print("\n" + "=" * 60)
    print("DHL BATCH SUMMARY")
    print("=" * 60)
    for key, value in totals.items():
        print(f"  {key:<14} {value}")
    sys.exit(1 if totals["failed_files"] or totals["errored"] else 0)


if __name__ == "__main__":
    main()
