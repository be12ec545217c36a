"""Unmatched invoice record persistence."""

import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from storage.db import PathLike, connect, utcnow
from unmatched.models import UnmatchedRecord, UnmatchedStatus


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_record(row: sqlite3.Row) -> UnmatchedRecord:
    """Convert a database row to UnmatchedRecord."""
    return UnmatchedRecord(
        id=row["id"],
        tracking_number=row["tracking_number"],
        carrier=row["carrier"],
        shipping_cost=Decimal(row["shipping_cost"]),
        currency=row["currency"] or "GBP",
        service_type=row["service_type"],
        weight_kg=row["weight_kg"],
        shipping_date=row["shipping_date"],
        invoice_number=row["invoice_number"],
        invoice_date=row["invoice_date"],
        file_name=row["file_name"],
        upload_key=row["upload_key"],
        status=UnmatchedStatus(row["status"]),
        resolution_notes=row["resolution_notes"],
        matched_order_id=row["matched_order_id"],
        matched_shipment_id=row["matched_shipment_id"],
        resolved_at=_parse_ts(row["resolved_at"]),
        resolved_by=row["resolved_by"],
        created_at=_parse_ts(row["created_at"]),
        raw_record=json.loads(row["raw_data"] or "{}"),
    )


def insert_unmatched(record: UnmatchedRecord, db_path: PathLike) -> UnmatchedRecord:
    """Persist a record verbatim with status pending.

    Args:
        record: Record to store (id, status and created_at are assigned here)
        db_path: Path to database

    Returns:
        UnmatchedRecord with id and created_at populated
    """
    now = utcnow()
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            INSERT INTO unmatched_invoice_records
            (tracking_number, carrier, shipping_cost, currency, service_type, weight_kg,
             shipping_date, invoice_number, invoice_date, file_name, upload_key,
             status, created_at, raw_data)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.tracking_number,
            record.carrier,
            str(record.shipping_cost),
            record.currency,
            record.service_type,
            record.weight_kg,
            record.shipping_date,
            record.invoice_number,
            record.invoice_date,
            record.file_name,
            record.upload_key,
            UnmatchedStatus.PENDING.value,
            now,
            json.dumps(record.raw_record),
        ))
        conn.commit()
        return record.model_copy(update={
            "id": cursor.lastrowid,
            "status": UnmatchedStatus.PENDING,
            "created_at": datetime.fromisoformat(now),
        })
    finally:
        conn.close()


def get_unmatched(record_id: int, db_path: PathLike) -> Optional[UnmatchedRecord]:
    conn = connect(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM unmatched_invoice_records WHERE id = ?", (record_id,)
        ).fetchone()
        return _row_to_record(row) if row else None
    finally:
        conn.close()


def _filters(status: Optional[str], carrier: Optional[str]):
    clauses, params = [], []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if carrier:
        clauses.append("carrier = ?")
        params.append(carrier)
    where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
    return where, params


def list_unmatched(
    db_path: PathLike,
    status: Optional[str] = None,
    carrier: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[UnmatchedRecord]:
    """Records matching the filters, newest first."""
    where, params = _filters(status, carrier)
    conn = connect(db_path)
    try:
        rows = conn.execute(
            f"SELECT * FROM unmatched_invoice_records{where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ).fetchall()
        return [_row_to_record(r) for r in rows]
    finally:
        conn.close()


def count_unmatched(
    db_path: PathLike,
    status: Optional[str] = None,
    carrier: Optional[str] = None,
) -> int:
    where, params = _filters(status, carrier)
    conn = connect(db_path)
    try:
        return conn.execute(f"SELECT COUNT(*) FROM unmatched_invoice_records{where}", params).fetchone()[0]
    finally:
        conn.close()


def status_counts(db_path: PathLike, carrier: Optional[str] = None) -> Dict[str, int]:
    """Count per status; every status is present, zero when empty."""
    where, params = _filters(None, carrier)
    counts = {s.value: 0 for s in UnmatchedStatus}
    conn = connect(db_path)
    try:
        for row in conn.execute(
            f"SELECT status, COUNT(*) AS n FROM unmatched_invoice_records{where} GROUP BY status", params
        ):
            counts[row["status"]] = row["n"]
        return counts
    finally:
        conn.close()


def resolve_pending(
    record_id: int,
    status: UnmatchedStatus,
    resolved_by: str,
    db_path: PathLike,
    notes: Optional[str] = None,
    matched_order_id: Optional[str] = None,
    matched_shipment_id: Optional[int] = None,
) -> bool:
    """Move a record out of pending. Conditional on it still being pending.

    Returns:
        True if the row was updated, False if it was missing or no longer pending
    """
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE unmatched_invoice_records
            SET status = ?, resolution_notes = ?, resolved_at = ?, resolved_by = ?,
                matched_order_id = ?, matched_shipment_id = ?
            WHERE id = ? AND status = ?
        """, (
            status.value,
            notes,
            utcnow(),
            resolved_by,
            matched_order_id,
            matched_shipment_id,
            record_id,
            UnmatchedStatus.PENDING.value,
        ))
        conn.commit()
        return cursor.rowcount == 1
    finally:
        conn.close()


def delete_unmatched(record_id: int, db_path: PathLike) -> bool:
    conn = connect(db_path)
    try:
        cursor = conn.execute("DELETE FROM unmatched_invoice_records WHERE id = ?", (record_id,))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def delete_many(record_ids: Iterable[int], db_path: PathLike) -> int:
    ids = list(record_ids)
    if not ids:
        return 0
    conn = connect(db_path)
    try:
        deleted = 0
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ",".join("?" * len(chunk))
            cursor = conn.execute(
                f"DELETE FROM unmatched_invoice_records WHERE id IN ({placeholders})", chunk
            )
            deleted += cursor.rowcount
        conn.commit()
        return deleted
    finally:
        conn.close()
