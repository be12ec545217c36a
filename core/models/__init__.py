"""Core data models for invoice ingestion and reconciliation."""

from core.models.canonical import (
    # Base
    CanonicalBase,
    DecimalValue,

    # Enums
    FileType,
    SemanticField,
    UploadMode,
    RecordAction,
    CostProvenance,
    REQUIRED_FIELDS,

    # Tables and mapping
    RawRow,
    RawTable,
    AdapterResult,
    ColumnMapping,

    # Records
    ParsedInvoiceRecord,
    ExistingShipment,
    ReconciliationDecision,
    AnalyzedRecord,
)

from core.models.refs import (
    AnalysisTotals,
    AnalysisResult,
    AnalysisReport,
    RecordOutcome,
    OutcomeRecord,
    UploadMetadata,
    UploadHistory,
    CommitResult,
    AuditEvent,
    AuditSeverity,
)

__all__ = [
    # Base
    "CanonicalBase",
    "DecimalValue",

    # Enums
    "FileType",
    "SemanticField",
    "UploadMode",
    "RecordAction",
    "CostProvenance",
    "REQUIRED_FIELDS",

    # Tables and mapping
    "RawRow",
    "RawTable",
    "AdapterResult",
    "ColumnMapping",

    # Records
    "ParsedInvoiceRecord",
    "ExistingShipment",
    "ReconciliationDecision",
    "AnalyzedRecord",

    # Upload / ledger
    "AnalysisTotals",
    "AnalysisResult",
    "AnalysisReport",
    "RecordOutcome",
    "OutcomeRecord",
    "UploadMetadata",
    "UploadHistory",
    "CommitResult",

    # Audit
    "AuditEvent",
    "AuditSeverity",
]
