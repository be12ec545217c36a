"""Unmatched queue endpoints."""

from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_unmatched_queue
from core.errors import (
    InvalidTransitionError,
    OrderNotFoundError,
    RecordNotFoundError,
    WriteError,
)
from unmatched.models import DedupeResult, StatusUpdate, UnmatchedPage, UnmatchedRecord, UnmatchedStatus
from unmatched.service import UnmatchedQueue

router = APIRouter()


@router.get("", response_model=UnmatchedPage)
async def list_unmatched(
    status: Optional[UnmatchedStatus] = None,
    carrier: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    queue: UnmatchedQueue = Depends(get_unmatched_queue),
) -> UnmatchedPage:
    """List unmatched records with per-status counts."""
    return queue.list(status=status, carrier=carrier, limit=limit, offset=offset)


@router.patch("/{record_id}", response_model=UnmatchedRecord)
async def update_unmatched(
    record_id: int,
    update: StatusUpdate,
    queue: UnmatchedQueue = Depends(get_unmatched_queue),
) -> UnmatchedRecord:
    """Match, void or resolve a pending record."""
    try:
        return queue.update_status(record_id, update)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except OrderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except (InvalidTransitionError, WriteError) as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.delete("/{record_id}")
async def delete_unmatched(
    record_id: int,
    queue: UnmatchedQueue = Depends(get_unmatched_queue),
) -> Dict[str, str]:
    """Delete an unmatched record."""
    try:
        queue.delete(record_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"message": "Record deleted"}


@router.post("/dedupe", response_model=DedupeResult)
async def dedupe_unmatched(
    queue: UnmatchedQueue = Depends(get_unmatched_queue),
) -> DedupeResult:
    """Remove duplicate pending records."""
    return queue.dedupe()
