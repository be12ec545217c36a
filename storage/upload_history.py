"""Upload ledger.

One row per committed upload, unique on ``upload_key``. The per-record
outcomes are stored alongside the counts so a repeated commit can return
exactly what the first one produced.
"""

import json
import sqlite3
from datetime import datetime
from typing import List, Optional

from core.models.canonical import UploadMode
from core.models.refs import CommitResult, OutcomeRecord, UploadHistory
from storage.db import PathLike, connect, utcnow


def _row_to_history(row: sqlite3.Row) -> UploadHistory:
    return UploadHistory(
        id=row["id"],
        upload_key=row["upload_key"],
        carrier=row["carrier"],
        upload_mode=UploadMode(row["upload_mode"]),
        file_name=row["file_name"],
        invoice_number=row["invoice_number"],
        actor=row["actor"],
        total_records=row["total_records"],
        created_count=row["created_count"],
        updated_count=row["updated_count"],
        added_count=row["added_count"],
        skipped_count=row["skipped_count"],
        blocked_count=row["blocked_count"],
        error_count=row["error_count"],
        unmatched_count=row["unmatched_count"],
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
    )


def record_upload(
    history: UploadHistory,
    outcomes: List[OutcomeRecord],
    db_path: PathLike,
) -> UploadHistory:
    """Persist a ledger row.

    Raises:
        sqlite3.IntegrityError: an upload with the same key is already recorded
    """
    now = utcnow()
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            INSERT INTO upload_history
            (upload_key, carrier, upload_mode, file_name, invoice_number, actor,
             total_records, created_count, updated_count, added_count, skipped_count,
             blocked_count, error_count, unmatched_count, outcomes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            history.upload_key,
            history.carrier,
            history.upload_mode.value,
            history.file_name,
            history.invoice_number,
            history.actor,
            history.total_records,
            history.created_count,
            history.updated_count,
            history.added_count,
            history.skipped_count,
            history.blocked_count,
            history.error_count,
            history.unmatched_count,
            json.dumps([o.model_dump(mode="json") for o in outcomes]),
            now,
        ))
        conn.commit()
        return history.model_copy(update={"id": cursor.lastrowid, "created_at": datetime.fromisoformat(now)})
    finally:
        conn.close()


def get_upload(upload_key: str, db_path: PathLike) -> Optional[UploadHistory]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM upload_history WHERE upload_key = ?", (upload_key,)).fetchone()
        return _row_to_history(row) if row else None
    finally:
        conn.close()


def get_commit_result(upload_key: str, db_path: PathLike) -> Optional[CommitResult]:
    """Stored result of a previous commit, marked as replayed."""
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM upload_history WHERE upload_key = ?", (upload_key,)).fetchone()
        if not row:
            return None
        outcomes = [OutcomeRecord.model_validate(o) for o in json.loads(row["outcomes"] or "[]")]
        return CommitResult(outcomes=outcomes, upload_history=_row_to_history(row), replayed=True)
    finally:
        conn.close()


def list_uploads(
    db_path: PathLike,
    carrier: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[UploadHistory]:
    """Ledger rows, newest first."""
    query = "SELECT * FROM upload_history"
    params: list = []
    if carrier:
        query += " WHERE carrier = ?"
        params.append(carrier)
    query += " ORDER BY id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    conn = connect(db_path)
    try:
        return [_row_to_history(r) for r in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def count_uploads(db_path: PathLike, carrier: Optional[str] = None) -> int:
    conn = connect(db_path)
    try:
        if carrier:
            row = conn.execute("SELECT COUNT(*) FROM upload_history WHERE carrier = ?", (carrier,)).fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) FROM upload_history").fetchone()
        return row[0]
    finally:
        conn.close()
