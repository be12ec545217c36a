"""Database schema and connection helpers.

All stores share one SQLite database. Money columns are stored as TEXT so
Decimal values round-trip exactly.

Tables:
- shipments: one row per (tracking_number, carrier), with a row version
  used for optimistic concurrency at commit time
- orders / order_tracking_numbers: orders and the tracking numbers they reference
- carrier_accounts: carrier account directory
- unmatched_invoice_records: invoice lines with no matching order
- upload_history: one ledger row per committed upload, keyed by upload_key
- audit_events: audit trail written by core.audit
"""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Union

from core.config import get_settings
from core.observability.logging import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]


def default_db_path() -> Path:
    return get_settings().db_path


def connect(db_path: PathLike) -> sqlite3.Connection:
    """Open a connection with dict-style rows."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def utcnow() -> str:
    return datetime.utcnow().isoformat()


def init_db(db_path: PathLike) -> None:
    """Create all tables and indexes if they do not exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS shipments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tracking_number TEXT NOT NULL,
                carrier TEXT NOT NULL,
                shipping_cost TEXT NOT NULL DEFAULT '0',
                currency TEXT DEFAULT 'GBP',
                service_type TEXT,
                weight_kg REAL,
                shipping_date TEXT,
                cost_provenance TEXT,
                cost_locked INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 1,
                order_id TEXT,
                carrier_account_id INTEGER,
                status TEXT,
                upload_key TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                UNIQUE(tracking_number, carrier)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                order_number TEXT,
                platform_order_id TEXT,
                platform TEXT,
                customer_name TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS order_tracking_numbers (
                order_id TEXT NOT NULL REFERENCES orders(id),
                tracking_number TEXT NOT NULL,
                PRIMARY KEY (order_id, tracking_number)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS carrier_accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                carrier TEXT NOT NULL UNIQUE,
                account_number TEXT,
                display_name TEXT,
                created_at TEXT NOT NULL
            )
        """)

        # No uniqueness here: duplicates are removed by an explicit dedupe
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS unmatched_invoice_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tracking_number TEXT NOT NULL,
                carrier TEXT NOT NULL,
                shipping_cost TEXT NOT NULL,
                currency TEXT DEFAULT 'GBP',
                service_type TEXT,
                weight_kg REAL,
                shipping_date TEXT,
                invoice_number TEXT,
                invoice_date TEXT,
                file_name TEXT,
                upload_key TEXT,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'matched', 'voided', 'resolved')),
                resolution_notes TEXT,
                matched_order_id TEXT,
                matched_shipment_id INTEGER,
                created_at TEXT NOT NULL,
                resolved_at TEXT,
                resolved_by TEXT,
                raw_data TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS upload_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                upload_key TEXT NOT NULL UNIQUE,
                carrier TEXT NOT NULL,
                upload_mode TEXT NOT NULL,
                file_name TEXT,
                invoice_number TEXT,
                actor TEXT DEFAULT 'system',
                total_records INTEGER NOT NULL,
                created_count INTEGER NOT NULL DEFAULT 0,
                updated_count INTEGER NOT NULL DEFAULT 0,
                added_count INTEGER NOT NULL DEFAULT 0,
                skipped_count INTEGER NOT NULL DEFAULT 0,
                blocked_count INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                unmatched_count INTEGER NOT NULL DEFAULT 0,
                outcomes TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_events (
                event_id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                event_type TEXT NOT NULL,
                severity TEXT NOT NULL,
                upload_key TEXT,
                carrier TEXT,
                tracking_number TEXT,
                workflow_id TEXT,
                message TEXT NOT NULL,
                details TEXT,
                actor TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_shipments_tracking
            ON shipments(tracking_number)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_tracking_lookup
            ON order_tracking_numbers(tracking_number)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_unmatched_status
            ON unmatched_invoice_records(status)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_unmatched_carrier
            ON unmatched_invoice_records(carrier)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_unmatched_tracking
            ON unmatched_invoice_records(tracking_number)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_upload
            ON audit_events(upload_key)
        """)

        conn.commit()
        logger.debug("Database schema initialized", extra_fields={"db_path": str(db_path)})
    finally:
        conn.close()
