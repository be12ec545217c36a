"""Core audit module - audit event tracking and persistence."""

from core.audit.events import (
    AuditLogger,
    AuditEventType,
    AuditBackend,
    SQLiteAuditBackend,
    JSONFileAuditBackend,
    InMemoryAuditBackend,
    build_audit_logger,
    create_audit_event,
)

__all__ = [
    "AuditLogger",
    "AuditEventType",
    "AuditBackend",
    "SQLiteAuditBackend",
    "JSONFileAuditBackend",
    "InMemoryAuditBackend",
    "build_audit_logger",
    "create_audit_event",
]
