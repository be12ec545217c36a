"""Parse runner: bytes in, typed invoice records out.

Usage:
    result = parse_file(data, "CBGR123.csv")
    if result.needs_manual_mapping:
        result = apply_manual_mapping(result, {"tracking": 0, "cost": 3})
    records = result.records
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple, Union

from core.errors import UnsupportedFileTypeError
from core.mapping.engine import ColumnMapper
from core.mapping.normalize import normalize_records
from core.models.canonical import (
    AdapterResult,
    ColumnMapping,
    FileType,
    ParsedInvoiceRecord,
    RawTable,
)
from core.observability.logging import get_logger, with_correlation
from parsing.csv_adapter import parse_csv
from parsing.file_type import detect_file_type, file_extension
from parsing.pdf_adapter import parse_pdf
from parsing.spreadsheet_adapter import parse_spreadsheet

logger = get_logger(__name__)

ManualMapping = Union[ColumnMapping, Mapping[str, Union[int, str, None]]]

# DHL exports mix shipment lines ("S") with invoice summary lines ("I")
LINE_TYPE_HEADER = "line type"
SHIPMENT_LINE_TYPES = ("S", "")


@dataclass
class ParseResult:
    """Everything learned from one file before reconciliation."""
    file_type: FileType
    table: RawTable
    column_mapping: ColumnMapping
    records: List[ParsedInvoiceRecord] = field(default_factory=list)
    needs_manual_mapping: bool = False
    adapter_warnings: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    rows_dropped: int = 0

    @property
    def headers(self) -> List[str]:
        return list(self.table.headers)

    @property
    def unmapped_required(self) -> List[str]:
        return self.column_mapping.unmapped_required


def read_table(data: bytes, filename: Optional[str] = None) -> AdapterResult:
    """Detect the file type and run the matching format adapter."""
    file_type = detect_file_type(data, filename)
    if file_type == FileType.PDF:
        return parse_pdf(data)
    if file_type in (FileType.XLSX, FileType.XLS):
        return parse_spreadsheet(data, file_type)
    if file_type == FileType.CSV:
        return parse_csv(data)
    raise UnsupportedFileTypeError(
        f"Unsupported file type: {file_extension(filename) or 'unknown'}. "
        "Please use CSV, Excel (.xlsx/.xls), or PDF.",
        file_type=FileType.UNKNOWN.value,
    )


def drop_summary_lines(table: RawTable) -> Tuple[RawTable, int]:
    """Remove non-shipment lines from tables that carry a Line Type column."""
    lowered = [h.strip().lower() for h in table.headers]
    if LINE_TYPE_HEADER not in lowered:
        return table, 0
    index = lowered.index(LINE_TYPE_HEADER)
    kept = tuple(r for r in table.rows if r.cell(index).strip().upper() in SHIPMENT_LINE_TYPES)
    return RawTable(headers=table.headers, rows=kept), len(table.rows) - len(kept)


def _resolve_mapping(
    headers: List[str],
    manual_mapping: Optional[ManualMapping],
    mapper: ColumnMapper,
) -> ColumnMapping:
    if manual_mapping is None:
        return mapper.detect(headers)
    if isinstance(manual_mapping, ColumnMapping):
        assignments: Dict[str, Optional[int]] = {
            name: getattr(manual_mapping, name)
            for name in ("tracking", "cost", "date", "service", "weight", "currency")
        }
        return mapper.manual_mapping(headers, assignments)
    return mapper.manual_mapping(headers, manual_mapping)


def _map_and_normalize(
    adapter: AdapterResult,
    mapping: ColumnMapping,
    default_currency: str,
) -> ParseResult:
    table, summary_lines = drop_summary_lines(adapter.table)
    warnings = list(adapter.warnings)
    if summary_lines:
        warnings.append(f"{summary_lines} invoice summary lines skipped")

    if not mapping.is_complete:
        warnings.append(f"Could not auto-detect columns: {', '.join(mapping.unmapped_required)}")
        return ParseResult(
            file_type=adapter.file_type,
            table=table,
            column_mapping=mapping,
            needs_manual_mapping=True,
            adapter_warnings=list(adapter.warnings),
            warnings=warnings,
        )

    normalized = normalize_records(table, mapping, default_currency=default_currency)
    warnings.extend(normalized.warnings)
    return ParseResult(
        file_type=adapter.file_type,
        table=table,
        column_mapping=mapping,
        records=normalized.records,
        adapter_warnings=list(adapter.warnings),
        warnings=warnings,
        rows_dropped=normalized.rows_dropped,
    )


def parse_file(
    data: bytes,
    filename: Optional[str] = None,
    manual_mapping: Optional[ManualMapping] = None,
    default_currency: str = "GBP",
    mapper: Optional[ColumnMapper] = None,
) -> ParseResult:
    """Parse an uploaded invoice file.

    Raises:
        FormatError: (or a subclass) when the file cannot yield a table
        InvalidMappingError: when ``manual_mapping`` does not fit the headers
    """
    mapper = mapper or ColumnMapper()
    with with_correlation(file_name=filename, stage="parse"):
        adapter = read_table(data, filename)
        mapping = _resolve_mapping(list(adapter.table.headers), manual_mapping, mapper)
        result = _map_and_normalize(adapter, mapping, default_currency)
        logger.info(
            "Parsed invoice file",
            extra_fields={
                "file_type": result.file_type.value,
                "rows": len(result.table.rows),
                "records": len(result.records),
                "needs_manual_mapping": result.needs_manual_mapping,
            },
        )
    return result


def apply_manual_mapping(
    result: ParseResult,
    manual_mapping: ManualMapping,
    default_currency: str = "GBP",
    mapper: Optional[ColumnMapper] = None,
) -> ParseResult:
    """Re-run normalization on an already parsed table with a user mapping."""
    mapper = mapper or ColumnMapper()
    mapping = _resolve_mapping(result.headers, manual_mapping, mapper)
    adapter = AdapterResult(
        file_type=result.file_type,
        table=result.table,
        warnings=result.adapter_warnings,
    )
    return _map_and_normalize(adapter, mapping, default_currency)
