"""Exception hierarchy for invoice ingestion and reconciliation.

Only conditions that stop work on a whole file or a whole request are
exceptions. Per-record conditions (dropped rows, blocked writes, unmatched
tracking numbers) are reported as counted outcomes instead.
"""

from typing import Optional


class InvoiceIngestionError(Exception):
    """Base class for all ingestion errors."""


# =============================================================================
# File-level (fatal for the file, no partial processing)
# =============================================================================

class FormatError(InvoiceIngestionError):
    """File is unrecognized, corrupt, or holds no usable table."""

    def __init__(self, message: str, file_type: Optional[str] = None):
        super().__init__(message)
        self.file_type = file_type


class UnsupportedFileTypeError(FormatError):
    """No magic-byte signature or known extension matched."""


class EncryptedPdfError(FormatError):
    """PDF requires a password to read."""


class ScannedPdfError(FormatError):
    """PDF has pages but no extractable text (image-only / scanned)."""


class NoTableFoundError(FormatError):
    """Fewer than two rows could be reconstructed from the PDF text."""


# =============================================================================
# Record-level
# =============================================================================

class WriteError(InvoiceIngestionError):
    """A single storage write failed. Isolated to that record's outcome."""

    def __init__(self, tracking_number: str, message: str):
        super().__init__(f"{tracking_number}: {message}")
        self.tracking_number = tracking_number
        self.reason = message


class StaleWriteError(WriteError):
    """Shipment row version moved between analysis and commit."""


# =============================================================================
# Unmatched queue
# =============================================================================

class RecordNotFoundError(InvoiceIngestionError):
    """Unmatched record id does not exist."""


class InvalidTransitionError(InvoiceIngestionError):
    """Status change not allowed from the record's current status."""


class OrderNotFoundError(InvoiceIngestionError):
    """No order could be located for a manual match."""


class InvalidMappingError(InvoiceIngestionError):
    """A manually supplied column mapping does not fit the file's headers."""
