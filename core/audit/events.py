"""Audit event logging and persistence.

Provides structured audit logging for ingestion actions, from file analysis
through commit and unmatched-queue resolution. Supports multiple persistence
backends.
"""

import json
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from core.models.refs import AuditEvent, AuditSeverity
from core.observability.logging import get_logger

logger = get_logger(__name__)


class AuditEventType(str, Enum):
    """Standard audit event types."""
    # Workflow events
    WORKFLOW_STARTED = "WORKFLOW_STARTED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    WORKFLOW_FAILED = "WORKFLOW_FAILED"

    # Analysis events
    ANALYSIS_COMPLETED = "ANALYSIS_COMPLETED"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    MAPPING_INCOMPLETE = "MAPPING_INCOMPLETE"
    MANIFEST_ALLOCATED = "MANIFEST_ALLOCATED"

    # Commit events
    COMMIT_STARTED = "COMMIT_STARTED"
    COMMIT_COMPLETED = "COMMIT_COMPLETED"
    COMMIT_REPLAYED = "COMMIT_REPLAYED"
    WRITE_BLOCKED = "WRITE_BLOCKED"
    WRITE_FAILED = "WRITE_FAILED"

    # Unmatched queue events
    UNMATCHED_QUEUED = "UNMATCHED_QUEUED"
    UNMATCHED_STATUS_CHANGED = "UNMATCHED_STATUS_CHANGED"
    UNMATCHED_DELETED = "UNMATCHED_DELETED"
    UNMATCHED_DEDUPED = "UNMATCHED_DEDUPED"


def create_audit_event(
    event_type: AuditEventType,
    message: str,
    severity: AuditSeverity = AuditSeverity.INFO,
    upload_key: Optional[str] = None,
    carrier: Optional[str] = None,
    tracking_number: Optional[str] = None,
    workflow_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    actor: str = "system",
) -> AuditEvent:
    """Create a new audit event with auto-generated ID and timestamp.

    Args:
        event_type: Type of event
        message: Human-readable message
        severity: Event severity level
        upload_key: Associated upload
        carrier: Carrier of the upload
        tracking_number: Associated tracking number
        workflow_id: Temporal workflow ID
        details: Additional structured details
        actor: Who/what performed the action

    Returns:
        Configured AuditEvent ready for logging
    """
    return AuditEvent(
        event_id=str(uuid.uuid4()),
        timestamp=datetime.utcnow(),
        event_type=event_type.value,
        severity=severity,
        upload_key=upload_key,
        carrier=carrier,
        tracking_number=tracking_number,
        workflow_id=workflow_id,
        message=message,
        details=details or {},
        actor=actor,
    )


def _matches(
    event: AuditEvent,
    event_type: Optional[str],
    upload_key: Optional[str],
    start_time: Optional[datetime],
    end_time: Optional[datetime],
) -> bool:
    if event_type and event.event_type != event_type:
        return False
    if upload_key and event.upload_key != upload_key:
        return False
    if start_time and event.timestamp < start_time:
        return False
    if end_time and event.timestamp > end_time:
        return False
    return True


class AuditBackend(ABC):
    """Abstract base class for audit persistence backends."""

    @abstractmethod
    def log(self, event: AuditEvent) -> None:
        """Persist an audit event."""
        pass

    @abstractmethod
    def query(
        self,
        event_type: Optional[str] = None,
        upload_key: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query audit events with filters."""
        pass


class SQLiteAuditBackend(AuditBackend):
    """Audit backend writing to the ``audit_events`` table.

    The table is created by ``storage.db.init_db``.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)

    def log(self, event: AuditEvent) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("""
                INSERT INTO audit_events
                (event_id, timestamp, event_type, severity, upload_key, carrier,
                 tracking_number, workflow_id, message, details, actor)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event.event_id,
                event.timestamp.isoformat(),
                event.event_type,
                event.severity.value,
                event.upload_key,
                event.carrier,
                event.tracking_number,
                event.workflow_id,
                event.message,
                json.dumps(event.details, default=str),
                event.actor,
            ))
            conn.commit()
        finally:
            conn.close()

    def query(
        self,
        event_type: Optional[str] = None,
        upload_key: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses = []
        params: list = []
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type)
        if upload_key:
            clauses.append("upload_key = ?")
            params.append(upload_key)
        if start_time:
            clauses.append("timestamp >= ?")
            params.append(start_time.isoformat())
        if end_time:
            clauses.append("timestamp <= ?")
            params.append(end_time.isoformat())

        query = "SELECT * FROM audit_events"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY timestamp LIMIT ?"
        params.append(limit)

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            return [
                AuditEvent(
                    event_id=row["event_id"],
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                    event_type=row["event_type"],
                    severity=AuditSeverity(row["severity"]),
                    upload_key=row["upload_key"],
                    carrier=row["carrier"],
                    tracking_number=row["tracking_number"],
                    workflow_id=row["workflow_id"],
                    message=row["message"],
                    details=json.loads(row["details"] or "{}"),
                    actor=row["actor"] or "system",
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()


class JSONFileAuditBackend(AuditBackend):
    """Audit backend that stores events in JSON files.

    Stores one file per day in YYYY-MM-DD.json format.
    """

    def __init__(self, base_path: Path):
        """Initialize with base directory for audit files."""
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_file_path(self, date: datetime) -> Path:
        return self.base_path / f"{date.strftime('%Y-%m-%d')}.json"

    def log(self, event: AuditEvent) -> None:
        """Append event to daily file."""
        file_path = self._get_file_path(event.timestamp)

        events = []
        if file_path.exists():
            with open(file_path, "r", encoding="utf-8") as f:
                events = json.load(f)

        events.append(event.model_dump(mode="json"))

        with open(file_path, "w", encoding="utf-8") as f:
            json.dump(events, f, indent=2)

    def query(
        self,
        event_type: Optional[str] = None,
        upload_key: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query events from JSON files."""
        results = []

        first_day = start_time or datetime(2020, 1, 1)
        last_day = end_time or datetime.utcnow()

        current = datetime(first_day.year, first_day.month, first_day.day)
        while current <= last_day and len(results) < limit:
            file_path = self._get_file_path(current)
            if file_path.exists():
                with open(file_path, "r", encoding="utf-8") as f:
                    events = json.load(f)

                for event_data in events:
                    event = AuditEvent.model_validate(event_data)
                    if not _matches(event, event_type, upload_key, start_time, end_time):
                        continue
                    results.append(event)
                    if len(results) >= limit:
                        break

            current += timedelta(days=1)

        return results


class InMemoryAuditBackend(AuditBackend):
    """In-memory audit backend for testing."""

    def __init__(self):
        self._events: List[AuditEvent] = []

    def log(self, event: AuditEvent) -> None:
        self._events.append(event)

    def query(
        self,
        event_type: Optional[str] = None,
        upload_key: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        results = [
            e for e in self._events
            if _matches(e, event_type, upload_key, start_time, end_time)
        ]
        return results[:limit]

    def clear(self) -> None:
        """Clear all events (for testing)."""
        self._events.clear()


class AuditLogger:
    """Main audit logger that supports multiple backends.

    Usage:
        audit = AuditLogger()
        audit.add_backend(SQLiteAuditBackend(db_path))

        audit.log_info(
            AuditEventType.COMMIT_COMPLETED,
            "Committed 120 DHL records",
            upload_key="a1b2c3",
            carrier="dhl",
        )
    """

    def __init__(self):
        self._backends: List[AuditBackend] = []

    def add_backend(self, backend: AuditBackend) -> None:
        """Add an audit backend."""
        self._backends.append(backend)

    def log(self, event: AuditEvent) -> None:
        """Log event to all backends."""
        for backend in self._backends:
            try:
                backend.log(event)
            except Exception:
                # Audit failures must not fail the upload
                logger.exception(
                    "Audit logging failed",
                    extra_fields={"backend": type(backend).__name__, "event_type": event.event_type},
                )

    def log_info(self, event_type: AuditEventType, message: str, **kwargs) -> None:
        """Log an INFO level event."""
        self.log(create_audit_event(event_type, message, AuditSeverity.INFO, **kwargs))

    def log_warning(self, event_type: AuditEventType, message: str, **kwargs) -> None:
        """Log a WARN level event."""
        self.log(create_audit_event(event_type, message, AuditSeverity.WARN, **kwargs))

    def log_error(self, event_type: AuditEventType, message: str, **kwargs) -> None:
        """Log an ERROR level event."""
        self.log(create_audit_event(event_type, message, AuditSeverity.ERROR, **kwargs))

    def log_blocked(self, event_type: AuditEventType, message: str, **kwargs) -> None:
        """Log a BLOCK level event (a write refused by a protection rule)."""
        self.log(create_audit_event(event_type, message, AuditSeverity.BLOCK, **kwargs))

    def query(
        self,
        event_type: Optional[str] = None,
        upload_key: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query events from all backends (returns first backend's results)."""
        if not self._backends:
            return []
        return self._backends[0].query(event_type, upload_key, start_time, end_time, limit)


def build_audit_logger(db_path: Union[str, Path], audit_dir: Optional[Path] = None) -> AuditLogger:
    """Audit logger writing to the database and, when configured, daily JSON files."""
    audit = AuditLogger()
    audit.add_backend(SQLiteAuditBackend(db_path))
    if audit_dir is not None:
        audit.add_backend(JSONFileAuditBackend(audit_dir))
    return audit
