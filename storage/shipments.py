"""Shipment store.

Reads return ``ExistingShipment`` snapshots. The only cost write is
``update_cost_if_current``, a single conditional UPDATE that succeeds only
while the row is unlocked and still at the version the caller saw.
"""

import sqlite3
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from core.models.canonical import CostProvenance, ExistingShipment
from storage.db import PathLike, connect, utcnow
from storage.models import ShipmentDraft

# SQLite's default bound-parameter limit is 999 on older builds
_IN_CHUNK = 500


def _row_to_shipment(row: sqlite3.Row) -> ExistingShipment:
    """Convert a database row to ExistingShipment; missing provenance reads as estimated."""
    return ExistingShipment(
        id=row["id"],
        tracking_number=row["tracking_number"],
        carrier=row["carrier"],
        shipping_cost=Decimal(row["shipping_cost"] or "0"),
        cost_locked=bool(row["cost_locked"]),
        cost_provenance=CostProvenance(row["cost_provenance"] or CostProvenance.ESTIMATED.value),
        version=row["version"],
        order_id=row["order_id"],
        shipping_date=row["shipping_date"],
        service_type=row["service_type"],
    )


def get_shipment(tracking_number: str, carrier: str, db_path: PathLike) -> Optional[ExistingShipment]:
    conn = connect(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM shipments WHERE tracking_number = ? AND carrier = ?",
            (tracking_number, carrier),
        ).fetchone()
        return _row_to_shipment(row) if row else None
    finally:
        conn.close()


def get_shipment_by_id(shipment_id: int, db_path: PathLike) -> Optional[ExistingShipment]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM shipments WHERE id = ?", (shipment_id,)).fetchone()
        return _row_to_shipment(row) if row else None
    finally:
        conn.close()


def get_shipments_by_tracking(
    tracking_numbers: Iterable[str],
    carrier: str,
    db_path: PathLike,
) -> Dict[str, ExistingShipment]:
    """Snapshot of existing shipments for a carrier, keyed by tracking number.

    Args:
        tracking_numbers: Normalized tracking numbers to look up
        carrier: Carrier code
        db_path: Path to database

    Returns:
        Dict of tracking number -> ExistingShipment for the ones that exist
    """
    unique = sorted(set(tracking_numbers))
    found: Dict[str, ExistingShipment] = {}
    conn = connect(db_path)
    try:
        for start in range(0, len(unique), _IN_CHUNK):
            chunk = unique[start:start + _IN_CHUNK]
            placeholders = ",".join("?" * len(chunk))
            rows = conn.execute(
                f"SELECT * FROM shipments WHERE carrier = ? AND tracking_number IN ({placeholders})",
                (carrier, *chunk),
            ).fetchall()
            for row in rows:
                found[row["tracking_number"]] = _row_to_shipment(row)
        return found
    finally:
        conn.close()


def create_shipment(draft: ShipmentDraft, db_path: PathLike) -> int:
    """Insert a shipment at version 1.

    Raises:
        sqlite3.IntegrityError: a shipment for (tracking_number, carrier) already exists
    """
    now = utcnow()
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            INSERT INTO shipments
            (tracking_number, carrier, shipping_cost, currency, service_type, weight_kg,
             shipping_date, cost_provenance, cost_locked, version, order_id,
             carrier_account_id, status, upload_key, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?)
        """, (
            draft.tracking_number,
            draft.carrier,
            str(draft.shipping_cost),
            draft.currency,
            draft.service_type,
            draft.weight_kg,
            draft.shipping_date,
            draft.cost_provenance.value,
            int(draft.cost_locked),
            draft.order_id,
            draft.carrier_account_id,
            draft.status,
            draft.upload_key,
            now,
            now,
        ))
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def update_cost_if_current(
    shipment_id: int,
    expected_version: int,
    new_cost: Decimal,
    cost_provenance: CostProvenance,
    db_path: PathLike,
    upload_key: Optional[str] = None,
) -> bool:
    """Conditionally write a new cost and bump the row version.

    Returns:
        True if the row was written; False if it is locked or its version moved
    """
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE shipments
            SET shipping_cost = ?, cost_provenance = ?, version = version + 1,
                upload_key = COALESCE(?, upload_key), updated_at = ?
            WHERE id = ? AND cost_locked = 0 AND version = ?
        """, (str(new_cost), cost_provenance.value, upload_key, utcnow(), shipment_id, expected_version))
        conn.commit()
        return cursor.rowcount == 1
    finally:
        conn.close()


def set_cost_locked(shipment_id: int, locked: bool, db_path: PathLike) -> bool:
    """Lock or unlock a shipment's cost (manual override). Bumps the version."""
    conn = connect(db_path)
    try:
        cursor = conn.execute(
            "UPDATE shipments SET cost_locked = ?, version = version + 1, updated_at = ? WHERE id = ?",
            (int(locked), utcnow(), shipment_id),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def delete_shipment(shipment_id: int, expected_version: int, db_path: PathLike) -> bool:
    """Delete a shipment only if nothing has written to it since ``expected_version``."""
    conn = connect(db_path)
    try:
        cursor = conn.execute(
            "DELETE FROM shipments WHERE id = ? AND version = ?", (shipment_id, expected_version)
        )
        conn.commit()
        return cursor.rowcount == 1
    finally:
        conn.close()


def list_shipments(carrier: Optional[str], db_path: PathLike) -> List[ExistingShipment]:
    conn = connect(db_path)
    try:
        if carrier:
            rows = conn.execute(
                "SELECT * FROM shipments WHERE carrier = ? ORDER BY id", (carrier,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM shipments ORDER BY id").fetchall()
        return [_row_to_shipment(r) for r in rows]
    finally:
        conn.close()


def list_shipments_between(
    carrier: str,
    start_date: str,
    end_date: str,
    db_path: PathLike,
) -> List[ExistingShipment]:
    """Shipments for a carrier whose shipping date falls within [start_date, end_date].

    Dates are ISO ``YYYY-MM-DD``; stored timestamps on ``end_date`` are included.
    """
    conn = connect(db_path)
    try:
        rows = conn.execute("""
            SELECT * FROM shipments
            WHERE carrier = ? AND shipping_date >= ? AND shipping_date <= ?
            ORDER BY shipping_date, id
        """, (carrier, start_date, f"{end_date}T23:59:59")).fetchall()
        return [_row_to_shipment(r) for r in rows]
    finally:
        conn.close()
