"""FastAPI server for carrier invoice ingestion.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health, invoices, unmatched, uploads
from core import __version__
from core.audit.events import build_audit_logger
from core.config import Settings, get_settings
from core.observability.logging import configure_from_settings, get_logger
from reconciliation.service import IngestionService
from storage.db import init_db
from unmatched.service import UnmatchedQueue

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        configure_from_settings(settings)
        init_db(settings.db_path)
        audit = build_audit_logger(settings.db_path, settings.audit_dir)
        app.state.settings = settings
        app.state.ingestion = IngestionService(
            settings.db_path, audit=audit, default_currency=settings.default_currency
        )
        app.state.unmatched = UnmatchedQueue(settings.db_path, audit)
        logger.info("Invoice ingestion API starting up", extra_fields={"db_path": str(settings.db_path)})

        yield

        logger.info("Invoice ingestion API shutting down")

    app = FastAPI(
        title="Carrier Invoice Ingestion API",
        description="Upload carrier invoices, preview their effect on shipment costs and commit them",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(invoices.router, prefix="/invoices", tags=["Invoices"])
    app.include_router(uploads.router, prefix="/uploads", tags=["Uploads"])
    app.include_router(unmatched.router, prefix="/unmatched", tags=["Unmatched"])

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
