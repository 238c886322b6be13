"""Scan job submission and lifecycle transitions on the durable queue.

Every state change is a conditional UPDATE guarded by the expected current
status, so concurrent workers, the watchdog and the stalled detector never
overwrite each other's terminal decisions.
"""

import hashlib
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models.base import utcnow
from app.models.repository import Repository
from app.models.scan_job import (
    ACTIVE_JOB_STATUSES,
    JOB_CANCELLED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    ScanJob,
)
from app.schemas.findings import SCANNER_KINDS

if TYPE_CHECKING:
    from app.core.config import Settings
    from app.schemas.scans import ScanSubmitRequest

logger = logging.getLogger(__name__)

SCAN_PROFILES: dict[str, tuple[str, ...]] = {
    "quick": ("sast", "secrets"),
    "full": SCANNER_KINDS,
}
SCAN_TYPE_CUSTOM = "custom"

# Bump when mapper or fingerprint changes make earlier results unfit for cloning.
SCANNER_SET_VERSION = 1

# Candidates inspected per claim attempt; losing a race moves on to the next.
_CLAIM_BATCH = 5

STALLED_MESSAGE = "Scan stalled: worker lease expired"


class JobSubmissionError(Exception):
    """Raised when a scan request cannot be turned into a job."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


class RepositoryNotFoundError(JobSubmissionError):
    """The repository to scan does not exist."""


def timeout_message(timeout_sec: float) -> str:
    minutes = int(timeout_sec // 60) if timeout_sec >= 60 else round(timeout_sec / 60, 2)
    return f"Scan timeout: exceeded {minutes} minutes"


def resolve_scanners(scan_type: str, enabled: Iterable[str] | None = None) -> tuple[str, list[str]]:
    """
    Return (scan_type, enabled kinds in canonical order).

    An explicit scanner list wins over the profile; the scan type is then
    recomputed so only a run of every scanner class counts as full.
    """
    if enabled is None:
        if scan_type not in SCAN_PROFILES:
            raise JobSubmissionError(f"Unknown scan type: {scan_type}")
        kinds = set(SCAN_PROFILES[scan_type])
    else:
        kinds = set(enabled)
        unknown = kinds - set(SCANNER_KINDS)
        if unknown:
            raise JobSubmissionError(f"Unknown scanner kinds: {', '.join(sorted(unknown))}")
        if not kinds:
            raise JobSubmissionError("At least one scanner must be enabled")
    ordered = [k for k in SCANNER_KINDS if k in kinds]
    for name, profile in SCAN_PROFILES.items():
        if set(profile) == kinds:
            return name, ordered
    return SCAN_TYPE_CUSTOM, ordered


def scanner_set_key(kinds: Iterable[str]) -> str:
    """Cache key component for an enabled scanner set; order-insensitive."""
    canonical = ",".join(sorted(set(kinds)))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    return f"v{SCANNER_SET_VERSION}:{canonical}:{digest}"


def backoff_delay(attempt: int, base_sec: float, max_sec: float) -> float:
    """Exponential backoff for the given 1-based attempt, capped at max_sec."""
    if attempt < 1:
        attempt = 1
    return min(base_sec * (2 ** (attempt - 1)), max_sec)


def transition(
    session: Session,
    job_id: int,
    to_status: str,
    from_statuses: Iterable[str],
    owner: str | None = None,
    guards: Iterable[Any] = (),
    **values: Any,
) -> bool:
    """
    Move a job to to_status only if it is currently in from_statuses. Commits; True if it moved.

    With an owner the job must still be leased to it. Extra guards are ANDed into the WHERE clause.
    """
    conditions = [ScanJob.id == job_id, ScanJob.status.in_(tuple(from_statuses)), *guards]
    if owner is not None:
        conditions.append(ScanJob.lease_owner == owner)
    stmt = (
        update(ScanJob)
        .where(*conditions)
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    moved = (session.execute(stmt).rowcount or 0) == 1
    session.commit()
    return moved


def supersede_older_jobs(session: Session, job: ScanJob, policy: str) -> int:
    """Cancel older pending/running jobs on the same repository branch when the policy applies."""
    applies = policy == "always" or (policy == "webhook" and job.trigger == "webhook")
    if not applies:
        return 0
    now = utcnow()
    stmt = (
        update(ScanJob)
        .where(
            ScanJob.repository_id == job.repository_id,
            ScanJob.branch == job.branch,
            ScanJob.status.in_(ACTIVE_JOB_STATUSES),
            ScanJob.id < job.id,
        )
        .values(
            status=JOB_CANCELLED,
            error_message=f"Superseded by scan {job.id}",
            progress_stage="Cancelled",
            completed_at=now,
            lease_owner=None,
            lease_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    cancelled = session.execute(stmt).rowcount or 0
    if cancelled:
        logger.info(
            "Superseded older scans",
            extra={"job_id": job.id, "superseded": cancelled, "branch": job.branch},
        )
    return cancelled


def submit_scan(session: Session, request: "ScanSubmitRequest", settings: "Settings") -> ScanJob:
    """Create a pending job for the request and apply the supersession policy."""
    repo = session.get(Repository, request.repository_id)
    if repo is None:
        raise RepositoryNotFoundError(f"Repository {request.repository_id} not found")

    scan_type, kinds = resolve_scanners(request.scan_type, request.enabled_scanners)
    job = ScanJob(
        workspace_id=repo.workspace_id,
        repository_id=repo.id,
        branch=(request.branch or repo.default_branch).strip(),
        commit_sha=request.commit_sha.lower() if request.commit_sha else None,
        scan_type=scan_type,
        enabled_scanners=kinds,
        scanner_set_key=scanner_set_key(kinds),
        trigger=request.trigger,
        status=JOB_PENDING,
        available_at=utcnow(),
    )
    session.add(job)
    session.flush()
    supersede_older_jobs(session, job, settings.SUPERSEDE_POLICY)
    session.commit()
    session.refresh(job)
    logger.info(
        "Scan submitted",
        extra={
            "job_id": job.id,
            "repository_id": job.repository_id,
            "branch": job.branch,
            "scan_type": job.scan_type,
            "trigger": job.trigger,
        },
    )
    return job


def claim_next_job(session: Session, owner: str, lease_sec: float, now: datetime | None = None) -> ScanJob | None:
    """
    Claim the oldest available pending job by compare-and-set; None when the queue is empty.

    Claiming counts as an attempt. Two workers racing for the same row both
    issue the UPDATE; only the one that sees status=pending wins.
    """
    now = now or utcnow()
    candidates = session.execute(
        select(ScanJob.id)
        .where(ScanJob.status == JOB_PENDING, ScanJob.available_at <= now)
        .order_by(ScanJob.available_at, ScanJob.id)
        .limit(_CLAIM_BATCH)
    ).scalars().all()
    for job_id in candidates:
        stmt = (
            update(ScanJob)
            .where(ScanJob.id == job_id, ScanJob.status == JOB_PENDING)
            .values(
                status=JOB_RUNNING,
                lease_owner=owner,
                lease_expires_at=now + timedelta(seconds=lease_sec),
                started_at=now,
                attempts=ScanJob.attempts + 1,
                progress_stage="Starting",
                progress_percentage=0,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if (session.execute(stmt).rowcount or 0) == 1:
            session.commit()
            job = session.get(ScanJob, job_id, populate_existing=True)
            logger.info(
                "Claimed scan job",
                extra={"job_id": job_id, "worker": owner, "attempt": job.attempts if job else None},
            )
            return job
        session.rollback()
    session.rollback()
    return None


def renew_lease(session: Session, job_id: int, owner: str, lease_sec: float) -> bool:
    """Extend the lease; False when the job is no longer running under this owner."""
    now = utcnow()
    stmt = (
        update(ScanJob)
        .where(ScanJob.id == job_id, ScanJob.status == JOB_RUNNING, ScanJob.lease_owner == owner)
        .values(lease_expires_at=now + timedelta(seconds=lease_sec))
        .execution_options(synchronize_session=False)
    )
    renewed = (session.execute(stmt).rowcount or 0) == 1
    session.commit()
    return renewed


def update_progress(session: Session, job_id: int, stage: str, percentage: int) -> bool:
    return transition(
        session,
        job_id,
        JOB_RUNNING,
        (JOB_RUNNING,),
        progress_stage=stage[:255],
        progress_percentage=max(0, min(100, percentage)),
    )


def mark_failed(
    session: Session,
    job_id: int,
    message: str,
    from_statuses: Iterable[str] = ACTIVE_JOB_STATUSES,
    owner: str | None = None,
    guards: Iterable[Any] = (),
    **values: Any,
) -> bool:
    now = utcnow()
    moved = transition(
        session,
        job_id,
        JOB_FAILED,
        from_statuses,
        owner,
        guards,
        error_message=message,
        progress_stage="Failed",
        progress_percentage=100,
        completed_at=now,
        lease_owner=None,
        lease_expires_at=None,
        **values,
    )
    if moved:
        logger.info("Scan failed", extra={"job_id": job_id, "reason": message})
    return moved


def mark_cancelled(session: Session, job_id: int, reason: str = "Cancelled by user") -> bool:
    moved = transition(
        session,
        job_id,
        JOB_CANCELLED,
        ACTIVE_JOB_STATUSES,
        error_message=reason,
        progress_stage="Cancelled",
        completed_at=utcnow(),
        lease_owner=None,
        lease_expires_at=None,
    )
    if moved:
        logger.info("Scan cancelled", extra={"job_id": job_id, "reason": reason})
    return moved


def schedule_retry(
    session: Session,
    job_id: int,
    delay_sec: float,
    error: str,
    owner: str | None = None,
) -> bool:
    """Return a running job to the queue, available again after delay_sec."""
    now = utcnow()
    moved = transition(
        session,
        job_id,
        JOB_PENDING,
        (JOB_RUNNING,),
        owner,
        available_at=now + timedelta(seconds=delay_sec),
        lease_owner=None,
        lease_expires_at=None,
        started_at=None,
        progress_stage="Queued",
        progress_percentage=0,
        error_message=f"Retrying after error: {error}"[:2000],
    )
    if moved:
        logger.info("Scan scheduled for retry", extra={"job_id": job_id, "delay_sec": delay_sec})
    return moved


def is_cancelled(session: Session, job_id: int) -> bool:
    status = session.execute(select(ScanJob.status).where(ScanJob.id == job_id)).scalar_one_or_none()
    return status == JOB_CANCELLED


def fail_timed_out_jobs(session: Session, timeout_sec: float, now: datetime | None = None) -> list[int]:
    """Fail running jobs whose wall-clock time exceeded the limit, regardless of lease health."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=timeout_sec)
    ids = session.execute(
        select(ScanJob.id).where(ScanJob.status == JOB_RUNNING, ScanJob.started_at < cutoff)
    ).scalars().all()
    message = timeout_message(timeout_sec)
    failed = [job_id for job_id in ids if mark_failed(session, job_id, message, (JOB_RUNNING,))]
    if failed:
        logger.warning("Failed timed-out scans", extra={"job_ids": failed})
    return failed


def recover_stalled_jobs(
    session: Session,
    max_attempts: int,
    now: datetime | None = None,
) -> tuple[list[int], list[int]]:
    """
    Reclaim running jobs whose lease expired. Returns (requeued, failed).

    A job with attempts left goes back to pending; otherwise it fails. Each
    move re-checks the expiry, so a lease renewed since the select is left alone.
    """
    now = now or utcnow()
    rows = session.execute(
        select(ScanJob.id, ScanJob.attempts).where(
            ScanJob.status == JOB_RUNNING,
            ScanJob.lease_expires_at.is_not(None),
            ScanJob.lease_expires_at < now,
        )
    ).all()
    requeued: list[int] = []
    failed: list[int] = []
    still_expired = (ScanJob.lease_expires_at < now,)
    for job_id, attempts in rows:
        if attempts >= max_attempts:
            if mark_failed(session, job_id, STALLED_MESSAGE, (JOB_RUNNING,), guards=still_expired):
                failed.append(job_id)
        elif transition(
            session,
            job_id,
            JOB_PENDING,
            (JOB_RUNNING,),
            guards=still_expired,
            available_at=now,
            lease_owner=None,
            lease_expires_at=None,
            started_at=None,
            progress_stage="Queued",
            progress_percentage=0,
        ):
            requeued.append(job_id)
    if requeued or failed:
        logger.warning(
            "Recovered stalled scans",
            extra={"requeued": requeued, "failed": failed},
        )
    return requeued, failed
