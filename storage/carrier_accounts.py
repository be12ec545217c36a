"""Carrier account directory."""

import sqlite3
from datetime import datetime
from typing import List, Optional

from storage.db import PathLike, connect, utcnow
from storage.models import CarrierAccount


def _row_to_account(row: sqlite3.Row) -> CarrierAccount:
    return CarrierAccount(
        id=row["id"],
        carrier=row["carrier"],
        account_number=row["account_number"],
        display_name=row["display_name"],
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
    )


def add_carrier_account(account: CarrierAccount, db_path: PathLike) -> CarrierAccount:
    """Register the account used for a carrier. One account per carrier."""
    now = utcnow()
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            INSERT OR REPLACE INTO carrier_accounts (carrier, account_number, display_name, created_at)
            VALUES (?, ?, ?, ?)
        """, (account.carrier, account.account_number, account.display_name, now))
        conn.commit()
        account.id = cursor.lastrowid
        account.created_at = datetime.fromisoformat(now)
        return account
    finally:
        conn.close()


def get_carrier_account(carrier: str, db_path: PathLike) -> Optional[CarrierAccount]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM carrier_accounts WHERE carrier = ?", (carrier,)).fetchone()
        return _row_to_account(row) if row else None
    finally:
        conn.close()


def carrier_account_id(carrier: str, db_path: PathLike) -> Optional[int]:
    account = get_carrier_account(carrier, db_path)
    return account.id if account else None


def list_carrier_accounts(db_path: PathLike) -> List[CarrierAccount]:
    conn = connect(db_path)
    try:
        return [_row_to_account(r) for r in conn.execute("SELECT * FROM carrier_accounts ORDER BY carrier")]
    finally:
        conn.close()
