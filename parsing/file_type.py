"""File type detection from magic bytes with an extension fallback."""

from pathlib import PurePath
from typing import Optional

from core.models.canonical import FileType

# Leading signatures
_SIGNATURES = (
    (b"%PDF", FileType.PDF),
    (b"PK\x03\x04", FileType.XLSX),       # ZIP container (Office Open XML)
    (b"\xd0\xcf\x11\xe0", FileType.XLS),  # OLE compound document
)

_EXTENSIONS = {
    "csv": FileType.CSV,
    "txt": FileType.CSV,
    "xlsx": FileType.XLSX,
    "xls": FileType.XLS,
    "pdf": FileType.PDF,
}

_LABELS = {
    FileType.CSV: "CSV",
    FileType.XLSX: "Excel (XLSX)",
    FileType.XLS: "Excel (XLS)",
    FileType.PDF: "PDF",
}


def file_extension(filename: Optional[str]) -> str:
    if not filename:
        return ""
    return PurePath(filename).suffix.lstrip(".").lower()


def detect_file_type(data: bytes, filename: Optional[str] = None) -> FileType:
    """Detect the upload's file type.

    Magic bytes win over the extension; CSV has no signature so it is only
    ever recognised by extension.
    """
    head = bytes(data[:8])
    for signature, file_type in _SIGNATURES:
        if head.startswith(signature):
            return file_type
    return _EXTENSIONS.get(file_extension(filename), FileType.UNKNOWN)


def file_type_label(file_type: FileType) -> str:
    """Human-readable name for a file type."""
    return _LABELS.get(file_type, "Unknown")
