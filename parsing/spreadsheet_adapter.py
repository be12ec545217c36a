"""Spreadsheet format adapter (xlsx via openpyxl, legacy xls via xlrd).

Only the first sheet is read. Row 1 is the header row; fully blank rows are
skipped. Every cell is stringified so the rest of the pipeline sees the same
shape as a CSV upload.
"""

import io
from datetime import date, datetime, time
from typing import Iterable, List, Sequence

import openpyxl
import xlrd

from core.errors import FormatError
from core.models.canonical import AdapterResult, FileType, RawTable


def cell_to_text(value) -> str:
    """Render a cell value the way it would appear in a CSV export."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value).strip()


def _build_table(rows: Iterable[Sequence], file_type: FileType) -> AdapterResult:
    materialized: List[List[str]] = [[cell_to_text(v) for v in row] for row in rows]
    if len(materialized) < 2:
        raise FormatError(
            "Sheet must contain at least a header row and one data row",
            file_type=file_type.value,
        )

    headers = materialized[0]
    # Trailing blank header cells are sheet padding
    while headers and not headers[-1]:
        headers.pop()
    if not headers:
        raise FormatError("Sheet has no header row", file_type=file_type.value)

    data_rows: List[List[str]] = []
    for row in materialized[1:]:
        if all(not cell for cell in row):
            continue
        padded = (row + [""] * len(headers))[:len(headers)]
        data_rows.append(padded)

    if not data_rows:
        raise FormatError("No valid data rows found", file_type=file_type.value)

    return AdapterResult(file_type=file_type, table=RawTable.from_lists(headers, data_rows))


def parse_xlsx(data: bytes) -> AdapterResult:
    try:
        wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        raise FormatError(f"Could not read Excel file: {exc}", file_type=FileType.XLSX.value) from exc

    try:
        if not wb.worksheets:
            raise FormatError("Excel file contains no sheets", file_type=FileType.XLSX.value)
        return _build_table(wb.worksheets[0].iter_rows(values_only=True), FileType.XLSX)
    finally:
        wb.close()


def parse_xls(data: bytes) -> AdapterResult:
    try:
        book = xlrd.open_workbook(file_contents=data)
    except Exception as exc:
        raise FormatError(f"Could not read Excel file: {exc}", file_type=FileType.XLS.value) from exc

    if book.nsheets == 0:
        raise FormatError("Excel file contains no sheets", file_type=FileType.XLS.value)

    sheet = book.sheet_by_index(0)

    def _value(cell):
        if cell.ctype == xlrd.XL_CELL_DATE:
            return xlrd.xldate_as_datetime(cell.value, book.datemode)
        if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
            return None
        return cell.value

    rows = ([_value(c) for c in sheet.row(i)] for i in range(sheet.nrows))
    return _build_table(rows, FileType.XLS)


def parse_spreadsheet(data: bytes, file_type: FileType) -> AdapterResult:
    """Parse an xlsx or xls upload."""
    if file_type == FileType.XLS:
        return parse_xls(data)
    return parse_xlsx(data)
