"""API Routes Package."""

from api.routes import health, invoices, unmatched, uploads

__all__ = [
    "health",
    "invoices",
    "unmatched",
    "uploads",
]
