"""Upload ledger endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from api.dependencies import get_ingestion_service
from core.models.refs import CommitResult, UploadHistory
from reconciliation.service import IngestionService
from storage import upload_history

router = APIRouter()


class UploadListResponse(BaseModel):
    """Paginated upload history, newest first."""
    items: List[UploadHistory]
    total: int
    limit: int
    offset: int


@router.get("", response_model=UploadListResponse)
async def list_uploads(
    carrier: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: IngestionService = Depends(get_ingestion_service),
) -> UploadListResponse:
    """List committed uploads."""
    return UploadListResponse(
        items=service.list_uploads(carrier=carrier, limit=limit, offset=offset),
        total=upload_history.count_uploads(service.db_path, carrier=carrier),
        limit=limit,
        offset=offset,
    )


@router.get("/{upload_key}", response_model=CommitResult)
async def get_upload(
    upload_key: str,
    service: IngestionService = Depends(get_ingestion_service),
) -> CommitResult:
    """Per-record outcomes of one committed upload."""
    result = upload_history.get_commit_result(upload_key, service.db_path)
    if result is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return result
