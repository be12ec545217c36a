"""Runtime configuration.

Values come from environment variables, optionally seeded from a ``.env``
file at the repository root (same convention as ``temporal_client.py``).

Usage:
    from core.config import get_settings

    settings = get_settings()
    conn = connect(settings.db_path)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]

env_path = REPO_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Application settings.

    Attributes:
        db_path: SQLite database holding shipments, orders and the queue
        audit_dir: Directory for JSON audit files (None disables file audit)
        default_currency: Currency assumed when a file has no currency column
        log_level: Root log level name
        log_json: Emit structured JSON logs instead of human-readable lines
        temporal_task_queue: Task queue polled by the upload worker
    """
    db_path: Path
    audit_dir: Optional[Path]
    default_currency: str = "GBP"
    log_level: str = "INFO"
    log_json: bool = False
    temporal_task_queue: str = "invoice-default"


def get_settings() -> Settings:
    """Build settings from the current environment.

    Not cached: each call reflects the environment at call time, so tests
    can point the app at a temporary database with ``monkeypatch.setenv``.
    """
    audit_dir = os.getenv("INVOICE_AUDIT_DIR")
    return Settings(
        db_path=Path(os.getenv("INVOICE_DB_PATH", str(REPO_ROOT / "invoice_ingestion.db"))),
        audit_dir=Path(audit_dir) if audit_dir else None,
        default_currency=os.getenv("INVOICE_DEFAULT_CURRENCY", "GBP").upper(),
        log_level=os.getenv("INVOICE_LOG_LEVEL", "INFO").upper(),
        log_json=_env_bool("INVOICE_LOG_JSON", False),
        temporal_task_queue=os.getenv("TEMPORAL_TASK_QUEUE", "invoice-default"),
    )
