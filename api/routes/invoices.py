"""Invoice endpoints.

Two-phase upload: ``/analyze`` previews what a file would do to stored
shipment costs, ``/commit`` applies the previewed records.
``/royalmail/manifest`` estimates Royal Mail costs from a billing manifest.
"""

import json
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field, ValidationError

from api.dependencies import get_ingestion_service
from core.errors import FormatError, InvalidMappingError
from core.models.canonical import AnalyzedRecord, ParsedInvoiceRecord, UploadMode
from core.models.refs import AnalysisReport, CommitResult, UploadMetadata
from reconciliation.allocation import ManifestAllocationReport
from reconciliation.service import IngestionService

router = APIRouter()


class CommitRequest(BaseModel):
    """Records to commit, usually the ``analysis.records`` of an analyze response.

    Records without an ``action`` are analyzed again before commit.
    """
    carrier: str
    upload_mode: UploadMode
    records: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: UploadMetadata = Field(default_factory=UploadMetadata)


def _parse_mapping(mapping: Optional[str]) -> Optional[Dict[str, Union[int, str, None]]]:
    if not mapping:
        return None
    try:
        parsed = json.loads(mapping)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Mapping is not valid JSON: {exc}")
    if not isinstance(parsed, dict):
        raise HTTPException(status_code=400, detail="Mapping must be a JSON object of field -> column")
    return parsed


def _to_records(payload: List[Dict[str, Any]]) -> List[ParsedInvoiceRecord]:
    records: List[ParsedInvoiceRecord] = []
    try:
        for item in payload:
            model = AnalyzedRecord if "action" in item else ParsedInvoiceRecord
            records.append(model.model_validate(item))
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=json.loads(exc.json()))
    return records


@router.post("/analyze", response_model=AnalysisReport)
async def analyze_invoice(
    file: UploadFile = File(...),
    carrier: str = Form(...),
    upload_mode: UploadMode = Form(UploadMode.UPDATE_IF_HIGHER),
    mapping: Optional[str] = Form(None),
    service: IngestionService = Depends(get_ingestion_service),
) -> AnalysisReport:
    """Parse an invoice file and preview every record's decision.

    When columns cannot be detected the response has
    ``needs_manual_mapping`` set and lists the headers; resend with
    ``mapping`` as JSON, e.g. ``{"tracking": 0, "cost": "Net Amount"}``.
    """
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    try:
        return service.analyze(
            content,
            file.filename,
            carrier,
            upload_mode,
            manual_mapping=_parse_mapping(mapping),
        )
    except (FormatError, InvalidMappingError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/commit", response_model=CommitResult)
async def commit_invoice(
    request: CommitRequest,
    service: IngestionService = Depends(get_ingestion_service),
) -> CommitResult:
    """Apply analyzed records. Repeating a commit returns the stored result."""
    records = _to_records(request.records)
    try:
        return service.commit(records, request.carrier, request.upload_mode, request.metadata)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/royalmail/manifest", response_model=ManifestAllocationReport)
async def allocate_royal_mail_manifest(
    file: UploadFile = File(...),
    dry_run: bool = Form(False),
    start_date: Optional[str] = Form(None),
    end_date: Optional[str] = Form(None),
    actor: str = Form("api"),
    service: IngestionService = Depends(get_ingestion_service),
) -> ManifestAllocationReport:
    """Allocate a Royal Mail manifest's daily costs to stored shipments.

    With ``dry_run`` the matches and decisions are returned without writing.
    ``start_date``/``end_date`` (YYYY-MM-DD) narrow the shipments considered.
    """
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    try:
        return service.allocate_manifest(
            content,
            file_name=file.filename,
            dry_run=dry_run,
            start_date=start_date,
            end_date=end_date,
            actor=actor,
        )
    except FormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
