"""
Audit and Logging Tests

Validates the ambient stack shared by every stage:
1. Audit backends (in-memory, SQLite, daily JSON files)
2. AuditLogger fan-out and failure tolerance
3. Correlation context and log formatters
4. Settings from environment variables
"""

import json
import logging
import os
import tempfile
from dataclasses import FrozenInstanceError
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from core.audit.events import (
    AuditBackend,
    AuditEventType,
    AuditLogger,
    InMemoryAuditBackend,
    JSONFileAuditBackend,
    SQLiteAuditBackend,
    build_audit_logger,
    create_audit_event,
)
from core.config import get_settings
from core.models.refs import AuditSeverity
from core.observability.logging import (
    CorrelationContext,
    HumanReadableFormatter,
    StructuredFormatter,
    get_correlation_context,
    with_correlation,
)
from storage.db import init_db


def make_record(message="Commit complete", **extra_fields):
    record = logging.LogRecord("reconciliation.commit", logging.INFO, __file__, 1, message, (), None)
    record.extra_fields = extra_fields
    return record


class TestAuditEvents:
    """Event construction and backends."""

    def test_create_audit_event(self):
        event = create_audit_event(
            AuditEventType.WRITE_BLOCKED,
            "Write blocked",
            AuditSeverity.BLOCK,
            upload_key="key-1",
            carrier="dhl",
            tracking_number="1234567890",
            details={"reason": "locked"},
        )
        assert event.event_type == "WRITE_BLOCKED"
        assert event.severity == AuditSeverity.BLOCK
        assert event.actor == "system"
        assert event.event_id

    def test_in_memory_filters(self):
        backend = InMemoryAuditBackend()
        backend.log(create_audit_event(AuditEventType.COMMIT_COMPLETED, "a", upload_key="k1"))
        backend.log(create_audit_event(AuditEventType.COMMIT_COMPLETED, "b", upload_key="k2"))
        backend.log(create_audit_event(AuditEventType.WRITE_FAILED, "c", upload_key="k1"))

        assert len(backend.query(event_type="COMMIT_COMPLETED")) == 2
        assert [e.message for e in backend.query(upload_key="k1")] == ["a", "c"]
        assert len(backend.query(limit=1)) == 1

        backend.clear()
        assert backend.query() == []

    def test_sqlite_backend(self):
        with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
            db_path = f.name
        try:
            init_db(db_path)
            backend = SQLiteAuditBackend(db_path)
            backend.log(create_audit_event(
                AuditEventType.UNMATCHED_QUEUED, "queued", upload_key="k1", details={"unmatched": 3},
            ))
            backend.log(create_audit_event(AuditEventType.COMMIT_COMPLETED, "done", upload_key="k2"))

            events = backend.query(upload_key="k1")
            assert len(events) == 1
            assert events[0].event_type == "UNMATCHED_QUEUED"
            assert events[0].details == {"unmatched": 3}
            assert len(backend.query(start_time=datetime.utcnow() - timedelta(minutes=5))) == 2
        finally:
            os.unlink(db_path)

    def test_json_file_backend(self, tmp_path):
        backend = JSONFileAuditBackend(tmp_path / "audit")
        event = create_audit_event(AuditEventType.ANALYSIS_COMPLETED, "analyzed", carrier="dhl")
        backend.log(event)
        backend.log(create_audit_event(AuditEventType.MAPPING_INCOMPLETE, "mapping"))

        daily = tmp_path / "audit" / f"{event.timestamp.strftime('%Y-%m-%d')}.json"
        assert len(json.loads(daily.read_text())) == 2

        found = backend.query(event_type="ANALYSIS_COMPLETED")
        assert [e.event_id for e in found] == [event.event_id]


class _FailingBackend(AuditBackend):
    def log(self, event):
        raise OSError("disk full")

    def query(self, event_type=None, upload_key=None, start_time=None, end_time=None, limit=100):
        return []


class TestAuditLogger:
    """Fan-out to several backends."""

    def test_failing_backend_does_not_stop_others(self):
        memory = InMemoryAuditBackend()
        audit = AuditLogger()
        audit.add_backend(_FailingBackend())
        audit.add_backend(memory)

        audit.log_error(AuditEventType.WRITE_FAILED, "Write failed", tracking_number="1234567890")

        events = memory.query()
        assert len(events) == 1
        assert events[0].severity == AuditSeverity.ERROR

    def test_severity_helpers(self):
        memory = InMemoryAuditBackend()
        audit = AuditLogger()
        audit.add_backend(memory)

        audit.log_info(AuditEventType.COMMIT_COMPLETED, "info")
        audit.log_warning(AuditEventType.MAPPING_INCOMPLETE, "warn")
        audit.log_blocked(AuditEventType.WRITE_BLOCKED, "block")

        assert [e.severity for e in audit.query()] == [
            AuditSeverity.INFO, AuditSeverity.WARN, AuditSeverity.BLOCK,
        ]

    def test_no_backends(self):
        audit = AuditLogger()
        audit.log_info(AuditEventType.COMMIT_COMPLETED, "nobody listening")
        assert audit.query() == []

    def test_build_audit_logger(self, tmp_path):
        db_path = tmp_path / "audit.db"
        init_db(db_path)
        audit = build_audit_logger(db_path, tmp_path / "files")

        audit.log_info(AuditEventType.COMMIT_COMPLETED, "done", upload_key="k1")

        assert len(audit.query(upload_key="k1")) == 1
        assert list((tmp_path / "files").glob("*.json"))


class TestCorrelation:
    """Context propagation into log lines."""

    def test_nested_context(self):
        assert get_correlation_context().upload_key is None
        with with_correlation(upload_key="key-1", carrier="dhl"):
            with with_correlation(tracking_number="1234567890", carrier=None):
                ctx = get_correlation_context()
                assert ctx.to_dict() == {
                    "upload_key": "key-1", "carrier": "dhl", "tracking_number": "1234567890",
                }
            assert get_correlation_context().tracking_number is None
        assert get_correlation_context().to_dict() == {}

    def test_merge_keeps_existing_values(self):
        ctx = CorrelationContext(carrier="dhl").merge(stage="commit")
        assert ctx.carrier == "dhl"
        assert ctx.stage == "commit"

    def test_structured_formatter(self):
        with with_correlation(upload_key="key-1", carrier="dhl"):
            line = StructuredFormatter().format(make_record(created=12))
        data = json.loads(line)
        assert data["message"] == "Commit complete"
        assert data["level"] == "INFO"
        assert data["upload_key"] == "key-1"
        assert data["carrier"] == "dhl"
        assert data["created"] == 12

    def test_human_readable_formatter(self):
        with with_correlation(upload_key="abcdef1234567890", carrier="dhl"):
            line = HumanReadableFormatter().format(make_record(created=12))
        assert "[INFO ] reconciliation.commit [dhl/abcdef123456]: Commit complete created=12" in line

    def test_human_readable_without_context(self):
        line = HumanReadableFormatter().format(make_record())
        assert "[-]: Commit complete" in line


class TestSettings:
    """Environment-driven configuration."""

    def test_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("INVOICE_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("INVOICE_AUDIT_DIR", str(tmp_path / "audit"))
        monkeypatch.setenv("INVOICE_DEFAULT_CURRENCY", "eur")
        monkeypatch.setenv("INVOICE_LOG_JSON", "yes")
        monkeypatch.setenv("TEMPORAL_TASK_QUEUE", "invoices-test")

        settings = get_settings()

        assert settings.db_path == tmp_path / "x.db"
        assert settings.audit_dir == tmp_path / "audit"
        assert settings.default_currency == "EUR"
        assert settings.log_json is True
        assert settings.temporal_task_queue == "invoices-test"

    def test_defaults(self, monkeypatch):
        for name in ("INVOICE_DB_PATH", "INVOICE_AUDIT_DIR", "INVOICE_DEFAULT_CURRENCY",
                     "INVOICE_LOG_JSON", "INVOICE_LOG_LEVEL", "TEMPORAL_TASK_QUEUE"):
            monkeypatch.delenv(name, raising=False)

        settings = get_settings()

        assert settings.db_path.name == "invoice_ingestion.db"
        assert settings.audit_dir is None
        assert settings.default_currency == "GBP"
        assert settings.log_level == "INFO"
        assert settings.log_json is False
        assert settings.temporal_task_queue == "invoice-default"

    def test_frozen(self):
        settings = get_settings()
        with pytest.raises(FrozenInstanceError):
            settings.db_path = Path("elsewhere.db")
