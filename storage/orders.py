"""Order store: order identities and the tracking numbers they reference."""

import sqlite3
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from carriers.templates import normalize_tracking_number
from storage.db import PathLike, connect, utcnow
from storage.models import Order

_IN_CHUNK = 500


def _tracking_for(conn: sqlite3.Connection, order_id: str) -> List[str]:
    rows = conn.execute(
        "SELECT tracking_number FROM order_tracking_numbers WHERE order_id = ? ORDER BY tracking_number",
        (order_id,),
    ).fetchall()
    return [r["tracking_number"] for r in rows]


def _row_to_order(conn: sqlite3.Connection, row: sqlite3.Row) -> Order:
    return Order(
        id=row["id"],
        order_number=row["order_number"],
        platform_order_id=row["platform_order_id"],
        platform=row["platform"],
        customer_name=row["customer_name"],
        tracking_numbers=_tracking_for(conn, row["id"]),
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
    )


def save_order(order: Order, db_path: PathLike) -> Order:
    """Insert or replace an order and its tracking references (stored normalized)."""
    conn = connect(db_path)
    try:
        conn.execute("""
            INSERT OR REPLACE INTO orders
            (id, order_number, platform_order_id, platform, customer_name, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            order.id,
            order.order_number,
            order.platform_order_id,
            order.platform,
            order.customer_name,
            (order.created_at.isoformat() if order.created_at else utcnow()),
        ))
        conn.execute("DELETE FROM order_tracking_numbers WHERE order_id = ?", (order.id,))
        for tracking in {normalize_tracking_number(t) for t in order.tracking_numbers}:
            if tracking:
                conn.execute(
                    "INSERT INTO order_tracking_numbers (order_id, tracking_number) VALUES (?, ?)",
                    (order.id, tracking),
                )
        conn.commit()
        return _row_to_order(conn, conn.execute("SELECT * FROM orders WHERE id = ?", (order.id,)).fetchone())
    finally:
        conn.close()


def _get_one(column: str, value: str, db_path: PathLike) -> Optional[Order]:
    conn = connect(db_path)
    try:
        rows = conn.execute(f"SELECT * FROM orders WHERE {column} = ? LIMIT 2", (value,)).fetchall()
        # An ambiguous identifier is not a match
        if len(rows) != 1:
            return None
        return _row_to_order(conn, rows[0])
    finally:
        conn.close()


def get_order(order_id: str, db_path: PathLike) -> Optional[Order]:
    return _get_one("id", order_id, db_path)


def get_order_by_number(order_number: str, db_path: PathLike) -> Optional[Order]:
    return _get_one("order_number", order_number, db_path)


def get_order_by_platform_id(platform_order_id: str, db_path: PathLike) -> Optional[Order]:
    return _get_one("platform_order_id", platform_order_id, db_path)


def search_orders_by_customer(fragment: str, db_path: PathLike, limit: int = 10) -> List[Order]:
    """Orders whose customer name contains ``fragment`` (case-insensitive)."""
    conn = connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM orders WHERE customer_name LIKE ? ESCAPE '\\' ORDER BY id LIMIT ?",
            (_like_pattern(fragment), limit),
        ).fetchall()
        return [_row_to_order(conn, r) for r in rows]
    finally:
        conn.close()


def _like_pattern(fragment: str) -> str:
    escaped = fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def orders_for_tracking(tracking_numbers: Iterable[str], db_path: PathLike) -> Dict[str, str]:
    """Map of tracking number -> order id for tracking numbers some order references.

    When several orders reference the same tracking number the lowest order
    id wins, so the answer is stable.
    """
    unique = sorted({t for t in tracking_numbers if t})
    found: Dict[str, str] = {}
    conn = connect(db_path)
    try:
        for start in range(0, len(unique), _IN_CHUNK):
            chunk = unique[start:start + _IN_CHUNK]
            placeholders = ",".join("?" * len(chunk))
            rows = conn.execute(
                f"""
                SELECT tracking_number, MIN(order_id) AS order_id
                FROM order_tracking_numbers
                WHERE tracking_number IN ({placeholders})
                GROUP BY tracking_number
                """,
                chunk,
            ).fetchall()
            for row in rows:
                found[row["tracking_number"]] = row["order_id"]
        return found
    finally:
        conn.close()
