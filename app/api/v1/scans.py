"""Scan endpoints: submit a scan, read its status, cancel it."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db
from app.models import ScanJob
from app.schemas.scans import ScanJobResponse, ScanSubmitRequest, ScanSubmitResponse
from app.services.jobs import (
    JobSubmissionError,
    RepositoryNotFoundError,
    mark_cancelled,
    submit_scan,
)

router = APIRouter()


@router.post("", response_model=ScanSubmitResponse, status_code=202)
def post_scan(
    body: ScanSubmitRequest,
    db: Annotated[Session, Depends(get_db)],
) -> ScanSubmitResponse:
    """
    Queue a scan of a repository branch.

    The job is picked up by a worker; poll GET /scans/{id} for progress.
    Webhook-triggered scans cancel older pending or running scans of the same
    branch (see SUPERSEDE_POLICY).
    """
    try:
        job = submit_scan(db, body, get_settings())
    except RepositoryNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    except JobSubmissionError as e:
        raise HTTPException(status_code=422, detail=e.message) from e
    return ScanSubmitResponse(job_id=job.id, status=job.status)


@router.get("/{job_id}", response_model=ScanJobResponse)
def get_scan(
    job_id: int,
    db: Annotated[Session, Depends(get_db)],
) -> ScanJobResponse:
    """Return status, progress and, once finished, the scan summary."""
    job = db.get(ScanJob, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Scan {job_id} not found")
    return ScanJobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=ScanJobResponse)
def cancel_scan(
    job_id: int,
    db: Annotated[Session, Depends(get_db)],
) -> ScanJobResponse:
    """Cancel a pending or running scan. A running scan stops at its next stage boundary."""
    job = db.get(ScanJob, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Scan {job_id} not found")
    if not mark_cancelled(db, job_id):
        raise HTTPException(
            status_code=409,
            detail=f"Scan {job_id} already finished with status {job.status}",
        )
    db.refresh(job)
    return ScanJobResponse.model_validate(job)
