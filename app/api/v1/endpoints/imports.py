"""
Bulk member import endpoints.
"""
import json
import time
from typing import List, Optional
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session
from app.api.deps import get_db, get_import_manager, lookup_run
from app.models.db import ImportLog
from app.models.schemas.base import ResponseBase
from app.models.schemas.imports import (
    StartImportRequest, ImportRunRead, ImportResultRead, ImportLogRead, AuditEntryRead
)
from app.services.error_report import build_error_report
from app.services.import_errors import ImportSetupError
from app.services.import_service import ImportManager, ImportRun
from app.utils import get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)


def _run_read(run: ImportRun) -> ImportRunRead:
    latest = run.latest
    return ImportRunRead(
        run_id=run.run_id,
        clinic_id=run.clinic_id,
        state=run.state.value,
        total_chunks=run.total_chunks,
        failed_chunk_index=run.failed_chunk_index,
        last_error=run.last_error,
        result=ImportResultRead(**latest.to_dict()) if latest is not None else None,
    )


@router.post(
    "/",
    response_model=ResponseBase,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a bulk member import"
)
async def start_import(
    payload: StartImportRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    manager: ImportManager = Depends(get_import_manager)
) -> ResponseBase:
    """Register a run and execute it in the background.

    Poll ``GET /imports/{run_id}`` or follow ``/imports/{run_id}/stream`` for progress.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", None)

    try:
        run = manager.create_run(payload.clinic_id, payload.records, payload.options, payload.file_name)
    except ImportSetupError as e:
        logger.warning("Import rejected before execution", clinic_id=payload.clinic_id, error=str(e), request_id=request_id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    background_tasks.add_task(manager.execute, run.run_id)

    log_business_event(
        event_type="import_requested",
        details={"records": len(run.candidates), "file_name": payload.file_name},
        run_id=run.run_id,
        clinic_id=run.clinic_id,
        request_id=request_id
    )
    log_performance(
        operation="start_import",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"records": len(run.candidates)}
    )
    return ResponseBase(
        success=True,
        message="Import accepted",
        data={"run_id": run.run_id, "records": len(run.candidates)}
    )


@router.get(
    "/history",
    response_model=List[ImportLogRead],
    summary="List import history for a clinic"
)
async def list_import_history(
    clinic_id: str = Query(..., description="Clinic whose imports are listed"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
) -> List[ImportLogRead]:
    logs = (
        db.query(ImportLog)
        .filter(ImportLog.clinic_id == clinic_id)
        .order_by(ImportLog.created_at.desc())
        .limit(limit)
        .all()
    )
    return [ImportLogRead.model_validate(log) for log in logs]


@router.get(
    "/{run_id}",
    response_model=ImportRunRead,
    summary="Get import run state and counters"
)
async def get_import_run(
    run_id: str,
    manager: ImportManager = Depends(get_import_manager)
) -> ImportRunRead:
    return _run_read(lookup_run(manager, run_id))


@router.get(
    "/{run_id}/stream",
    summary="Stream progress snapshots as NDJSON"
)
async def stream_import_run(
    run_id: str,
    manager: ImportManager = Depends(get_import_manager)
) -> StreamingResponse:
    run = lookup_run(manager, run_id)

    async def _lines():
        async for snapshot in run.stream():
            yield json.dumps({"run_id": run.run_id, "state": run.state.value, "result": snapshot.to_dict()}) + "\n"

    return StreamingResponse(_lines(), media_type="application/x-ndjson")


@router.post(
    "/{run_id}/cancel",
    response_model=ResponseBase,
    summary="Cancel a running or halted import"
)
async def cancel_import_run(
    run_id: str,
    manager: ImportManager = Depends(get_import_manager)
) -> ResponseBase:
    """A running import stops after its current chunk; a halted one is closed for good."""
    lookup_run(manager, run_id)
    try:
        run = await manager.cancel(run_id)
    except ImportSetupError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    logger.info("Import cancellation processed", run_id=run_id, state=run.state.value)
    return ResponseBase(success=True, message="Cancellation accepted", data={"run_id": run_id, "state": run.state.value})


@router.post(
    "/{run_id}/resume",
    response_model=ResponseBase,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Resume a halted import"
)
async def resume_import_run(
    run_id: str,
    background_tasks: BackgroundTasks,
    from_chunk_index: Optional[int] = Query(None, ge=0, description="Defaults to the failed / next unprocessed chunk"),
    manager: ImportManager = Depends(get_import_manager)
) -> ResponseBase:
    lookup_run(manager, run_id)
    try:
        run = manager.check_resumable(run_id)
    except ImportSetupError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    background_tasks.add_task(manager.resume, run_id, from_chunk_index)
    return ResponseBase(
        success=True,
        message="Resume accepted",
        data={"run_id": run_id, "from_chunk_index": from_chunk_index if from_chunk_index is not None else run.failed_chunk_index}
    )


@router.get(
    "/{run_id}/errors.csv",
    summary="Download the row error report"
)
async def download_error_report(
    run_id: str,
    manager: ImportManager = Depends(get_import_manager)
) -> Response:
    run = lookup_run(manager, run_id)
    latest = run.latest
    if latest is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Import has not produced results yet")
    return Response(
        content=build_error_report(latest),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="import-{run_id}-errors.csv"'}
    )


@router.get(
    "/{run_id}/audit",
    response_model=List[AuditEntryRead],
    summary="Audit trail of an import run"
)
async def get_import_audit(
    run_id: str,
    manager: ImportManager = Depends(get_import_manager)
) -> List[AuditEntryRead]:
    run = lookup_run(manager, run_id)
    return [AuditEntryRead(**entry.to_dict()) for entry in run.audit.entries]
