"""Invoice file parsing: type detection, format adapters, table layout.

Usage:
    from parsing import parse_file

    result = parse_file(data, "invoice.pdf")
"""

from parsing.file_type import detect_file_type, file_type_label
from parsing.csv_adapter import parse_csv, parse_csv_text
from parsing.spreadsheet_adapter import parse_spreadsheet, parse_xlsx, parse_xls
from parsing.pdf_adapter import parse_pdf, PDF_STRUCTURE_WARNING
from parsing.layout import TextFragment, Tolerances, derive_tolerances, reconstruct_table
from parsing.runner import ParseResult, read_table, parse_file, apply_manual_mapping
from parsing.manifest import (
    ManifestParseResult,
    DailyCost,
    parse_royal_mail_manifest,
    service_type_for_product,
    infer_service_type_from_tracking,
)

__all__ = [
    "detect_file_type",
    "file_type_label",
    "parse_csv",
    "parse_csv_text",
    "parse_spreadsheet",
    "parse_xlsx",
    "parse_xls",
    "parse_pdf",
    "PDF_STRUCTURE_WARNING",
    "TextFragment",
    "Tolerances",
    "derive_tolerances",
    "reconstruct_table",
    "ParseResult",
    "read_table",
    "parse_file",
    "apply_manual_mapping",
    "ManifestParseResult",
    "DailyCost",
    "parse_royal_mail_manifest",
    "service_type_for_product",
    "infer_service_type_from_tracking",
]
