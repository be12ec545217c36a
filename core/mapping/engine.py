"""Column mapping engine.

Works out which header in an invoice file holds each semantic field
(tracking number, cost, date, service, weight, currency) by scoring
headers against per-field keyword lists.

Scoring for a keyword found inside a header:

    score = len(keyword) / len(header)          # tighter matches win
          + (n_keywords - rank) / n_keywords    # canonical names win

A handful of exact cost column names short-circuit to the maximum score,
and sub-charge columns (extra charges, duties, VAT-inclusive totals) are
never cost candidates. Missing required fields do not raise: the caller
gets a partial mapping and completes it manually.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from core.errors import InvalidMappingError
from core.models.canonical import ColumnMapping, SemanticField
from core.observability.logging import get_logger

logger = get_logger(__name__)


# Keywords per field, ordered by priority (first = most canonical)
COLUMN_KEYWORDS: Dict[SemanticField, List[str]] = {
    SemanticField.TRACKING: [
        "shipment number",
        "awb number",
        "tracking number",
        "awb",
        "waybill",
        "tracking",
        "shipment",
        "reference",
        "barcode",
        "item id",
    ],
    SemanticField.COST: [
        "total amount",
        "net amount",
        "total charge",
        "total cost",
        "total price",
        "postage",
        "total",
        "amount",
        "cost",
        "price",
        "net",
        "fee",
        # "charge" alone is too generic: XC1 Charge, Weight Charge, ...
    ],
    SemanticField.DATE: ["shipment date", "ship date", "date", "ship", "pickup", "despatch", "post"],
    SemanticField.SERVICE: ["product name", "service", "product", "type", "mail class", "service code"],
    SemanticField.WEIGHT: ["weight (kg)", "weight", "kg", "gram", "mass"],
    SemanticField.CURRENCY: ["currency", "curr", "ccy"],
}

# Sub-charges that must never be mistaken for the shipment total
COST_COLUMN_EXCLUSIONS: List[str] = [
    "xc1", "xc2", "xc3", "xc4", "xc5", "xc6", "xc7", "xc8", "xc9",
    "total extra charges",
    "extra charges",
    "weight charge",
    "other charges",
    "discount",
    "invoice fee",
    "surcharge",
    "duty",
    "duties",
    "incl. vat",
    "incl vat",
]

# Exact carrier cost columns, in priority order
COST_COLUMN_PRIORITIES: List[str] = [
    "total amount (excl. vat)",
    "total amount excl vat",
    "net total",
    "net amount",
    "total charge",
    "shipping cost",
    "postage cost",
]

PRIORITY_CONFIDENCE = 10.0


@dataclass
class MappingConfig:
    """Keyword tables used by the mapper; override for unusual carriers."""
    keywords: Dict[SemanticField, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in COLUMN_KEYWORDS.items()}
    )
    cost_exclusions: List[str] = field(default_factory=lambda: list(COST_COLUMN_EXCLUSIONS))
    cost_priorities: List[str] = field(default_factory=lambda: list(COST_COLUMN_PRIORITIES))


DEFAULT_MAPPING_CONFIG = MappingConfig()


@dataclass(order=True)
class _Candidate:
    # Sort key: higher score first, then earlier header, then field order
    sort_key: Tuple[float, int, int]
    semantic: SemanticField = field(compare=False)
    column: int = field(compare=False)
    score: float = field(compare=False)


def _normalize_header(header: str) -> str:
    return " ".join(str(header).lower().split())


def score_header(header: str, keywords: Sequence[str]) -> float:
    """Best keyword score for one header, 0.0 when no keyword matches."""
    normalized = _normalize_header(header)
    if not normalized:
        return 0.0
    best = 0.0
    count = len(keywords)
    for rank, keyword in enumerate(keywords):
        if keyword in normalized:
            match_ratio = len(keyword) / len(normalized)
            priority_bonus = (count - rank) / count
            best = max(best, match_ratio + priority_bonus)
    return best


class ColumnMapper:
    """Scores headers and resolves a ColumnMapping.

    Usage:
        mapper = ColumnMapper()
        mapping = mapper.detect(["AWB Number", "Total Amount (excl. VAT)"])
        if not mapping.is_complete:
            # ask the user, then:
            mapping = mapper.manual_mapping(headers, {"tracking": 0, "cost": 1})
    """

    def __init__(self, config: MappingConfig = DEFAULT_MAPPING_CONFIG):
        self.config = config

    def is_cost_excluded(self, header: str) -> bool:
        normalized = _normalize_header(header)
        return any(exclusion in normalized for exclusion in self.config.cost_exclusions)

    def _priority_cost_column(self, headers: Sequence[str]) -> Optional[int]:
        """Column of the highest-ranked exact cost name, first header on ties."""
        best: Optional[Tuple[int, int]] = None
        for index, header in enumerate(headers):
            normalized = _normalize_header(header)
            if not normalized or self.is_cost_excluded(header):
                continue
            for rank, name in enumerate(self.config.cost_priorities):
                if normalized == name or name in normalized:
                    if best is None or rank < best[0]:
                        best = (rank, index)
                    break
        return best[1] if best else None

    def _candidates(self, headers: Sequence[str]) -> List[_Candidate]:
        candidates: List[_Candidate] = []
        field_order = list(self.config.keywords)
        priority_cost = self._priority_cost_column(headers)

        for index, header in enumerate(headers):
            for order, semantic in enumerate(field_order):
                if semantic == SemanticField.COST:
                    if priority_cost is not None:
                        continue
                    if self.is_cost_excluded(header):
                        continue
                score = score_header(header, self.config.keywords[semantic])
                if score > 0:
                    candidates.append(_Candidate((-score, index, order), semantic, index, score))

        if priority_cost is not None:
            order = field_order.index(SemanticField.COST)
            candidates.append(
                _Candidate((-PRIORITY_CONFIDENCE, priority_cost, order),
                           SemanticField.COST, priority_cost, PRIORITY_CONFIDENCE)
            )
        return sorted(candidates)

    def detect(self, headers: Sequence[str]) -> ColumnMapping:
        """Resolve the best column for every field.

        Candidates are taken greedily by descending score, so each header
        serves at most one field and a field that loses its best header to a
        stronger claim falls back to its next-best header.
        """
        assigned: Dict[SemanticField, _Candidate] = {}
        used_columns = set()
        for candidate in self._candidates(headers):
            if candidate.semantic in assigned or candidate.column in used_columns:
                continue
            assigned[candidate.semantic] = candidate
            used_columns.add(candidate.column)

        mapping = ColumnMapping(
            **{f.value: c.column for f, c in assigned.items()},
            confidence={f.value: round(c.score, 4) for f, c in assigned.items()},
        )
        if mapping.unmapped_required:
            logger.info(
                "Column detection incomplete",
                extra_fields={"unmapped": mapping.unmapped_required, "headers": list(headers)},
            )
        return mapping

    def manual_mapping(
        self,
        headers: Sequence[str],
        assignments: Mapping[str, Union[int, str, None]],
    ) -> ColumnMapping:
        """Build a mapping from user-chosen columns (index or header name).

        Raises:
            InvalidMappingError: unknown field, unknown header, or index out of range
        """
        values: Dict[str, Optional[int]] = {}
        for key, target in assignments.items():
            try:
                semantic = SemanticField(key)
            except ValueError:
                raise InvalidMappingError(f"Unknown field '{key}'") from None
            if target is None or target == "":
                values[semantic.value] = None
                continue
            if isinstance(target, str) and not target.lstrip("-").isdigit():
                if target not in headers:
                    raise InvalidMappingError(f"Header '{target}' not found in file")
                values[semantic.value] = list(headers).index(target)
                continue
            index = int(target)
            if index < 0 or index >= len(headers):
                raise InvalidMappingError(
                    f"Column {index} for '{key}' is out of range (file has {len(headers)} columns)"
                )
            values[semantic.value] = index

        return ColumnMapping(**values, confidence={k: 1.0 for k, v in values.items() if v is not None})


def detect_columns(headers: Sequence[str], config: MappingConfig = DEFAULT_MAPPING_CONFIG) -> ColumnMapping:
    """Module-level shortcut for ``ColumnMapper(config).detect(headers)``."""
    return ColumnMapper(config).detect(headers)
