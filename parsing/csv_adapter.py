"""CSV format adapter.

Produces a RawTable from delimited text. Quoted fields may contain commas,
doubled quotes and line breaks; blank lines are ignored and every field is
trimmed. Rows whose field count disagrees with the header are skipped with
a warning rather than failing the file.
"""

import csv
import io
from typing import List, Tuple

from core.errors import FormatError
from core.models.canonical import AdapterResult, FileType, RawTable
from core.observability.logging import get_logger

logger = get_logger(__name__)

# Tried in order; latin-1 decodes any byte sequence
ENCODINGS = ("utf-8-sig", "cp1252", "latin-1")


def decode_text(data: bytes) -> Tuple[str, str]:
    """Decode bytes with the first encoding that succeeds."""
    for encoding in ENCODINGS:
        try:
            return data.decode(encoding), encoding
        except UnicodeDecodeError:
            continue
    raise FormatError("Could not decode CSV file", file_type=FileType.CSV.value)


def _is_blank(fields: List[str]) -> bool:
    return not fields or (len(fields) == 1 and not fields[0].strip())


def parse_csv_text(text: str) -> AdapterResult:
    """Parse CSV text into headers and rows."""
    warnings: List[str] = []
    reader = csv.reader(io.StringIO(text, newline=""))

    headers: List[str] = []
    rows: List[List[str]] = []
    for fields in reader:
        if _is_blank(fields):
            continue
        cells = [f.strip() for f in fields]
        if not headers:
            headers = cells
            continue
        if len(cells) != len(headers):
            warnings.append(
                f"Row {reader.line_num} skipped: expected {len(headers)} columns, got {len(cells)}"
            )
            continue
        rows.append(cells)

    if not headers or (not rows and not warnings):
        raise FormatError(
            "File must contain at least a header row and one data row",
            file_type=FileType.CSV.value,
        )
    if not rows:
        raise FormatError("No valid data rows found", file_type=FileType.CSV.value)

    return AdapterResult(
        file_type=FileType.CSV,
        table=RawTable.from_lists(headers, rows),
        warnings=warnings,
    )


def parse_csv(data: bytes) -> AdapterResult:
    """Decode and parse an uploaded CSV file."""
    text, encoding = decode_text(data)
    result = parse_csv_text(text)
    if encoding != ENCODINGS[0]:
        logger.info("CSV decoded with fallback encoding", extra_fields={"encoding": encoding})
    return result
