### exportqueue/exports/router.py

"""
Export API Endpoints

Provides REST API for creating, monitoring, downloading and cancelling exports.
"""

import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from exportqueue.core.config import settings
from exportqueue.core.db import get_db
from exportqueue.exports.access import AccessGate, get_access_gate
from exportqueue.exports.exceptions import (
    AlreadyConsumedError,
    ConcurrentUpdateError,
    ExportError,
    ExportNotFoundError,
    ForbiddenError,
    InvalidConfigurationError,
    InvalidStateTransitionError,
    NotReadyError,
)
from exportqueue.exports.models import ExportStatus
from exportqueue.exports.schemas import (
    ExportListItem,
    ExportRequest,
    ExportResponse,
    JobView,
    PaginatedExportListResponse,
)
from exportqueue.exports.services import ExportService
from exportqueue.exports.storage import LocalFileStore
from exportqueue.exports.tasks import advance_export
from exportqueue.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/exports", tags=["Exports"])

_ERROR_STATUS = {
    InvalidConfigurationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ExportNotFoundError: status.HTTP_404_NOT_FOUND,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    NotReadyError: status.HTTP_409_CONFLICT,
    InvalidStateTransitionError: status.HTTP_409_CONFLICT,
    AlreadyConsumedError: status.HTTP_410_GONE,
    ConcurrentUpdateError: status.HTTP_409_CONFLICT,
}


def get_file_store() -> LocalFileStore:
    return LocalFileStore(settings.export_storage_dir)


def get_export_service(
    db: Session = Depends(get_db),
    file_store: LocalFileStore = Depends(get_file_store),
    access_gate: AccessGate = Depends(get_access_gate),
) -> ExportService:
    return ExportService(db, file_store, access_gate=access_gate)


def _http_error(e: ExportError) -> HTTPException:
    code = _ERROR_STATUS.get(type(e), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=str(e))


@router.post("", response_model=ExportResponse, status_code=status.HTTP_202_ACCEPTED)
def request_export(
    export_request: ExportRequest,
    service: ExportService = Depends(get_export_service),
    access_gate: AccessGate = Depends(get_access_gate),
):
    """
    Create a new export job.

    Returns immediately with the job signature and status URL; the scheduler
    builds the file in the background. Poll the status URL for progress.
    """
    owner_id = access_gate.current_identity()
    if owner_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No identity supplied")

    try:
        signature = service.create_job(
            export_request.list_ref,
            columns=export_request.columns,
            separator=export_request.separator,
            include_header=export_request.include_header,
            owner_id=owner_id,
        )
    except ExportError as e:
        raise _http_error(e)

    # First page right away; the beat schedule picks the job up if the broker is unavailable
    try:
        advance_export.delay(signature)
    except Exception as e:
        logger.warning(f"Could not enqueue first tick for export {signature}: {e}")

    status_url = f"{settings.api_prefix}/exports/{signature}"
    return ExportResponse(
        signature=signature,
        status=ExportStatus.QUEUED,
        message=f"Export job created successfully. Check status at {status_url}",
        status_url=status_url,
    )


@router.get("/my-exports", response_model=PaginatedExportListResponse)
def list_my_exports(
    page: int = Query(1, ge=1, description="Page number"),
    per_page: int = Query(10, ge=1, le=100, description="Items per page"),
    status_filter: Optional[ExportStatus] = Query(None, description="Filter by status"),
    service: ExportService = Depends(get_export_service),
    access_gate: AccessGate = Depends(get_access_gate),
):
    """
    List the current user's export jobs, newest first.
    """
    owner_id = access_gate.current_identity()
    if owner_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No identity supplied")

    jobs, total_items = service.list_jobs(owner_id, page=page, per_page=per_page, status=status_filter)

    items = [
        ExportListItem(
            id=job.signature,
            status=job.status,
            steps_processed=job.steps_processed,
            total_steps=job.total_steps,
            created_at=job.created_at,
            last_updated_at=job.last_updated_at,
        )
        for job in jobs
    ]

    return PaginatedExportListResponse(
        items=items,
        total_items=total_items,
        page=page,
        per_page=per_page,
        total_pages=math.ceil(total_items / per_page) if per_page > 0 else 0,
    )


@router.get("/{signature}", response_model=JobView)
def get_export_status(
    signature: str,
    service: ExportService = Depends(get_export_service),
    access_gate: AccessGate = Depends(get_access_gate),
):
    """
    Check the status of an export job.

    **Status Values:**
    - QUEUED: Export job registered, waiting for the first tick
    - PROCESSING: Export is being generated; progress and ETA included
    - FINISHED: Export ready; download link present until it is downloaded
    - REJECTED: Export cancelled or failed (see error_message)
    """
    try:
        return service.get_status(signature, access_gate.current_identity())
    except ExportError as e:
        raise _http_error(e)


@router.get("/{signature}/download")
def download_export(
    signature: str,
    service: ExportService = Depends(get_export_service),
    access_gate: AccessGate = Depends(get_access_gate),
):
    """
    Download the exported file. Each export can be downloaded exactly once;
    the file is deleted as it is served.
    """
    try:
        content, filename = service.download(signature, access_gate.current_identity())
    except ExportError as e:
        raise _http_error(e)

    response = Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
    # Lets the polling page notice the download started
    response.set_cookie(f"downloaded_{signature}", "true", path="/")
    return response


@router.post("/{signature}/cancel", response_model=JobView)
def cancel_export(
    signature: str,
    service: ExportService = Depends(get_export_service),
    access_gate: AccessGate = Depends(get_access_gate),
):
    """
    Cancel a queued or running export job.
    """
    requester_id = access_gate.current_identity()
    try:
        service.cancel(signature, requester_id)
        return service.get_status(signature, requester_id)
    except ExportError as e:
        raise _http_error(e)
