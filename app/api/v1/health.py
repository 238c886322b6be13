"""Health check: database connectivity and scan queue depth."""

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import check_db_connected, get_db
from app.models import ScanJob
from app.models.scan_job import JOB_PENDING, JOB_RUNNING
from app.schemas.health import HealthResponse, QueueDepth

router = APIRouter()


def _queue_depth(db: Session) -> QueueDepth | None:
    try:
        rows = db.execute(
            select(ScanJob.status, func.count())
            .where(ScanJob.status.in_((JOB_PENDING, JOB_RUNNING)))
            .group_by(ScanJob.status)
        ).all()
    except SQLAlchemyError:
        return None
    counts = dict(rows)
    return QueueDepth(pending=counts.get(JOB_PENDING, 0), running=counts.get(JOB_RUNNING, 0))


@router.get("/", response_model=HealthResponse)
def get_health(db: Session = Depends(get_db)) -> HealthResponse:
    """
    Service status, database connectivity and how many scans are queued or running.
    Used by load balancers and monitoring; never fails on a database outage.
    """
    connected = check_db_connected(db)
    return HealthResponse(
        status="ok",
        environment=settings.APP_ENV,
        database="connected" if connected else "disconnected",
        queue=_queue_depth(db) if connected else None,
    )
