"""SQLite persistence for shipments, orders, carrier accounts and the upload ledger.

Every function takes an explicit ``db_path``; nothing here holds module-level
connections or caches.
"""

from storage.db import connect, init_db, default_db_path
from storage.models import Order, CarrierAccount, ShipmentDraft

__all__ = [
    "connect",
    "init_db",
    "default_db_path",
    "Order",
    "CarrierAccount",
    "ShipmentDraft",
]
