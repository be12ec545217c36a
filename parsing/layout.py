"""Table reconstruction from positioned text fragments.

PDFs carry no table structure, only words at coordinates. This module
rebuilds rows and columns from those coordinates and nothing else, so it
can be exercised without a PDF:

1. group fragments into lines by Y (per page) within a line tolerance
2. sort each line left to right
3. cluster X positions across all lines into column centres
4. assign every fragment to its nearest column centre
5. treat the first non-empty line as the header row

Tolerances scale with the median fragment height so large and small fonts
both reconstruct; fixed bands are used when no heights are known.
"""

from dataclasses import dataclass
from statistics import median
from typing import List, Optional, Sequence, Tuple

from core.errors import NoTableFoundError
from core.models.canonical import FileType, RawTable

DEFAULT_LINE_TOLERANCE = 5.0
DEFAULT_COLUMN_TOLERANCE = 30.0

# Multiples of the median text height
LINE_TOLERANCE_RATIO = 0.5
COLUMN_TOLERANCE_RATIO = 3.0


@dataclass(frozen=True)
class TextFragment:
    """A word (or run of words) at a position. Y grows down the page."""
    x: float
    y: float
    text: str
    height: float = 0.0
    page: int = 0


@dataclass(frozen=True)
class Tolerances:
    line: float
    column: float


def derive_tolerances(fragments: Sequence[TextFragment]) -> Tolerances:
    """Line and column tolerances from font metrics, or the fixed fallbacks."""
    heights = [f.height for f in fragments if f.height > 0]
    if not heights:
        return Tolerances(DEFAULT_LINE_TOLERANCE, DEFAULT_COLUMN_TOLERANCE)
    h = median(heights)
    return Tolerances(line=h * LINE_TOLERANCE_RATIO, column=h * COLUMN_TOLERANCE_RATIO)


def group_lines(fragments: Sequence[TextFragment], tolerance: float) -> List[List[TextFragment]]:
    """Group fragments into lines, top to bottom, each sorted left to right.

    A fragment joins the current line when its Y is within ``tolerance`` of
    the line's first fragment on the same page.
    """
    ordered = sorted((f for f in fragments if f.text.strip()), key=lambda f: (f.page, f.y, f.x))
    lines: List[List[TextFragment]] = []
    anchor: Optional[Tuple[int, float]] = None
    for fragment in ordered:
        if anchor is not None and fragment.page == anchor[0] and abs(fragment.y - anchor[1]) < tolerance:
            lines[-1].append(fragment)
        else:
            lines.append([fragment])
            anchor = (fragment.page, fragment.y)
    for line in lines:
        line.sort(key=lambda f: f.x)
    return lines


def cluster_columns(xs: Sequence[float], tolerance: float) -> List[float]:
    """Column centres: mean of each run of sorted X positions closer than ``tolerance``."""
    if not xs:
        return []
    ordered = sorted(xs)
    clusters: List[List[float]] = [[ordered[0]]]
    for x in ordered[1:]:
        if x - clusters[-1][-1] < tolerance:
            clusters[-1].append(x)
        else:
            clusters.append([x])
    return [sum(c) / len(c) for c in clusters]


def nearest_column(x: float, centres: Sequence[float]) -> int:
    return min(range(len(centres)), key=lambda i: abs(centres[i] - x))


def reconstruct_rows(
    fragments: Sequence[TextFragment],
    tolerances: Optional[Tolerances] = None,
) -> List[List[str]]:
    """Rebuild a grid of cell strings, dropping lines with no text."""
    tol = tolerances or derive_tolerances(fragments)
    lines = group_lines(fragments, tol.line)
    centres = cluster_columns([f.x for line in lines for f in line], tol.column)
    if not centres:
        return []

    rows: List[List[str]] = []
    for line in lines:
        cells = [""] * len(centres)
        for fragment in line:
            index = nearest_column(fragment.x, centres)
            text = fragment.text.strip()
            cells[index] = f"{cells[index]} {text}" if cells[index] else text
        if any(cells):
            rows.append(cells)
    return rows


def reconstruct_table(
    fragments: Sequence[TextFragment],
    tolerances: Optional[Tolerances] = None,
) -> RawTable:
    """Reconstruct a RawTable; blank header cells become ``Column_N``.

    Raises:
        NoTableFoundError: fewer than two rows (header plus data) recovered
    """
    rows = reconstruct_rows(fragments, tolerances)
    if len(rows) < 2:
        raise NoTableFoundError(
            "Could not extract table structure from PDF. "
            "Please export the data as CSV or Excel instead.",
            file_type=FileType.PDF.value,
        )
    headers = [h or f"Column_{i + 1}" for i, h in enumerate(rows[0])]
    return RawTable.from_lists(headers, rows[1:])
