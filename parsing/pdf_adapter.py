"""PDF format adapter (PyMuPDF).

Extracts positioned text spans from every page and hands them to
``parsing.layout`` for table reconstruction. Encrypted and image-only PDFs
are rejected with distinct errors so the caller can tell the user what to do.
"""

from typing import List

import fitz

from core.errors import EncryptedPdfError, FormatError, ScannedPdfError
from core.models.canonical import AdapterResult, FileType
from core.observability.logging import get_logger
from parsing.layout import TextFragment, derive_tolerances, reconstruct_table

logger = get_logger(__name__)

PDF_STRUCTURE_WARNING = (
    "PDF parsing may not preserve exact table structure. Please verify the extracted data."
)


def extract_fragments(doc: fitz.Document) -> List[TextFragment]:
    """Text spans with their top-left position and height, for every page."""
    fragments: List[TextFragment] = []
    for page_index, page in enumerate(doc):
        text_dict = page.get_text("dict")
        for block in text_dict.get("blocks", []):
            for line in block.get("lines", []):
                for span in line.get("spans", []):
                    text = span.get("text", "")
                    if not text.strip():
                        continue
                    x0, y0, _, y1 = span["bbox"]
                    fragments.append(
                        TextFragment(x=x0, y=y0, text=text, height=y1 - y0, page=page_index)
                    )
    return fragments


def parse_pdf(data: bytes) -> AdapterResult:
    """Parse a PDF invoice into a RawTable.

    Raises:
        EncryptedPdfError: the document needs a password
        ScannedPdfError: pages exist but hold no extractable text
        NoTableFoundError: fewer than two table rows recovered
        FormatError: the file cannot be opened or has no pages
    """
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise FormatError(f"Failed to parse PDF: {exc}", file_type=FileType.PDF.value) from exc

    with doc:
        if doc.needs_pass or doc.is_encrypted:
            raise EncryptedPdfError(
                "This PDF is encrypted. Please decrypt it and try again.",
                file_type=FileType.PDF.value,
            )
        if doc.page_count == 0:
            raise FormatError("PDF contains no pages", file_type=FileType.PDF.value)

        fragments = extract_fragments(doc)

    if not fragments:
        raise ScannedPdfError(
            "This PDF appears to be scanned or image-based and contains no extractable text. "
            "Please export the data as CSV or Excel instead.",
            file_type=FileType.PDF.value,
        )

    tolerances = derive_tolerances(fragments)
    logger.debug(
        "Reconstructing PDF table",
        extra_fields={
            "fragments": len(fragments),
            "line_tolerance": round(tolerances.line, 2),
            "column_tolerance": round(tolerances.column, 2),
        },
    )
    table = reconstruct_table(fragments, tolerances)
    return AdapterResult(file_type=FileType.PDF, table=table, warnings=[PDF_STRUCTURE_WARNING])
