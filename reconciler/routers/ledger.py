"""Operator endpoints for the ledger: lookups, batch transcription, identity
merge, mirror resync and index maintenance."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse

from ..integrations.csv_parser import parse_transcription_csv
from ..pipeline import InvalidTenantError, PipelineRegistry, ReconciliationPipeline, get_registry
from ..schemas.ledger import (
    IndexRebuildResponse,
    IndexReport,
    LedgerRow,
    MergePatientsRequest,
    MergePatientsResponse,
    MirrorSyncSummary,
    TranscriptionRequest,
    TranscriptionSummary,
)
from ..services.guard import LedgerLockTimeout
from ..services.merge import MergeValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ledger", tags=["ledger"])


def get_pipeline(
    tenant_id: Optional[str] = Query(None),
    registry: PipelineRegistry = Depends(get_registry),
) -> ReconciliationPipeline:
    try:
        return registry.get(tenant_id)
    except InvalidTenantError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _busy(e: LedgerLockTimeout) -> HTTPException:
    logger.warning(f"Operator request rejected, ledger busy: {e}")
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="ledger_busy")


@router.get("/rows/{payment_id}", response_model=LedgerRow)
def get_row(payment_id: str, pipeline: ReconciliationPipeline = Depends(get_pipeline)):
    try:
        record = pipeline.get_row(payment_id.strip())
    except LedgerLockTimeout as e:
        raise _busy(e)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Row not found")
    return LedgerRow.model_validate(record)


@router.post("/transcribe", response_model=TranscriptionSummary)
def transcribe(request: TranscriptionRequest, pipeline: ReconciliationPipeline = Depends(get_pipeline)):
    try:
        return pipeline.transcribe(request.rows)
    except LedgerLockTimeout as e:
        raise _busy(e)


@router.post("/transcribe/csv", response_model=TranscriptionSummary)
async def transcribe_csv(
    file: UploadFile = File(...),
    pipeline: ReconciliationPipeline = Depends(get_pipeline),
):
    try:
        content = (await file.read()).decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded")

    try:
        rows = parse_transcription_csv(content)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        return pipeline.transcribe(rows)
    except LedgerLockTimeout as e:
        raise _busy(e)


@router.post("/merge-patients", response_model=MergePatientsResponse)
def merge_patients(request: MergePatientsRequest, pipeline: ReconciliationPipeline = Depends(get_pipeline)):
    try:
        result = pipeline.merge_patients(request.old_patient_id, request.new_patient_id)
    except MergeValidationError as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=MergePatientsResponse(ok=False, error=e.code).model_dump(),
        )
    except LedgerLockTimeout as e:
        logger.warning(f"merge-patients rejected, ledger busy: {e}")
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=MergePatientsResponse(ok=False, error="ledger_busy").model_dump(),
        )

    return MergePatientsResponse(ok=True, updated=result.updated)


@router.post("/mirror/resync", response_model=MirrorSyncSummary)
def resync_mirror(pipeline: ReconciliationPipeline = Depends(get_pipeline)):
    try:
        return pipeline.resync_mirror()
    except LedgerLockTimeout as e:
        raise _busy(e)


@router.get("/index/verify", response_model=IndexReport)
def verify_index(pipeline: ReconciliationPipeline = Depends(get_pipeline)):
    try:
        return pipeline.verify_index()
    except LedgerLockTimeout as e:
        raise _busy(e)


@router.post("/index/rebuild", response_model=IndexRebuildResponse)
def rebuild_index(pipeline: ReconciliationPipeline = Depends(get_pipeline)):
    try:
        return pipeline.rebuild_index()
    except LedgerLockTimeout as e:
        raise _busy(e)
