"""Request dependencies: services created once in the app lifespan."""

from fastapi import Request

from reconciliation.service import IngestionService
from unmatched.service import UnmatchedQueue


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion


def get_unmatched_queue(request: Request) -> UnmatchedQueue:
    return request.app.state.unmatched
