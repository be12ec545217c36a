"""Column mapping and record normalization.

The mapper finds which header holds each semantic field; the normalizer
turns raw rows into typed ParsedInvoiceRecords using that mapping.
"""

from core.mapping.engine import (
    ColumnMapper,
    MappingConfig,
    COLUMN_KEYWORDS,
    COST_COLUMN_EXCLUSIONS,
    COST_COLUMN_PRIORITIES,
    PRIORITY_CONFIDENCE,
    detect_columns,
    score_header,
)
from core.mapping.normalize import (
    NormalizationResult,
    normalize_records,
    parse_cost,
    parse_weight,
    parse_date,
)

__all__ = [
    "ColumnMapper",
    "MappingConfig",
    "COLUMN_KEYWORDS",
    "COST_COLUMN_EXCLUSIONS",
    "COST_COLUMN_PRIORITIES",
    "PRIORITY_CONFIDENCE",
    "detect_columns",
    "score_header",
    "NormalizationResult",
    "normalize_records",
    "parse_cost",
    "parse_weight",
    "parse_date",
]
