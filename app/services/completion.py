"""Job completion: de-duplicated severity counts, security score and the immutable job summary."""

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.base import utcnow
from app.models.scan_job import ACTIVE_JOB_STATUSES, JOB_COMPLETED, JOB_RUNNING, ScannerRun
from app.models.vulnerability import VULN_OPEN, UnifiedVulnerability, VulnerabilityInstance
from app.schemas.findings import SEVERITY_VALUES
from app.services.errors import EMPTY_REPOSITORY_MESSAGE
from app.services.jobs import mark_failed, transition
from app.services.scanners import AdapterResult
from app.services.scoring import ScoredVulnerability, SecurityScore, calculate_security_score

logger = logging.getLogger(__name__)


@dataclass
class CompletionContext:
    duration_seconds: float
    files_scanned: int | None = None
    lines_of_code: int | None = None
    scanner_results: list[AdapterResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class JobSummary:
    counts: dict[str, int]
    total: int
    score: SecurityScore


def open_vulnerabilities_for_job(session: Session, job_id: int) -> list[ScoredVulnerability]:
    """Distinct open unified vulnerabilities reachable through the job's own instances."""
    rows = session.execute(
        select(UnifiedVulnerability.id, UnifiedVulnerability.severity, UnifiedVulnerability.scanner_type)
        .join(VulnerabilityInstance, VulnerabilityInstance.vulnerability_id == UnifiedVulnerability.id)
        .where(
            VulnerabilityInstance.scan_job_id == job_id,
            UnifiedVulnerability.status == VULN_OPEN,
        )
        .distinct()
    ).all()
    return [ScoredVulnerability(severity=r.severity, kind=r.scanner_type) for r in rows]


def summarize_job(session: Session, job_id: int) -> JobSummary:
    vulns = open_vulnerabilities_for_job(session, job_id)
    counts = {s: 0 for s in SEVERITY_VALUES}
    for v in vulns:
        if v.severity in counts:
            counts[v.severity] += 1
    return JobSummary(counts=counts, total=len(vulns), score=calculate_security_score(vulns))


def complete_job(
    session: Session,
    job_id: int,
    context: CompletionContext,
    owner: str | None = None,
) -> JobSummary | None:
    """
    Write the job's summary once and mark it completed.

    Counts are recomputed from instances, never taken from raw finding
    totals. Returns None when the job already left the running state
    (timed out, cancelled) or, given an owner, is no longer leased to it;
    nothing is written then.
    """
    summary = summarize_job(session, job_id)
    values = {
        "progress_stage": "Scan complete",
        "progress_percentage": 100,
        "completed_at": utcnow(),
        "lease_owner": None,
        "lease_expires_at": None,
        "vulnerabilities_found": summary.total,
        "critical_count": summary.counts["critical"],
        "high_count": summary.counts["high"],
        "medium_count": summary.counts["medium"],
        "low_count": summary.counts["low"],
        "info_count": summary.counts["info"],
        "security_score": summary.score.score,
        "security_grade": summary.score.grade,
        "score_breakdown": summary.score.breakdown,
        "duration_seconds": round(context.duration_seconds, 3),
        "warnings": list(context.warnings),
        "error_message": None,
    }
    if context.files_scanned is not None:
        values["files_scanned"] = context.files_scanned
    if context.lines_of_code is not None:
        values["lines_of_code"] = context.lines_of_code

    if not transition(session, job_id, JOB_COMPLETED, (JOB_RUNNING,), owner, **values):
        logger.warning(
            "Job left running state or changed owner before completion; summary not written",
            extra={"job_id": job_id, "worker": owner},
        )
        return None

    session.add_all(
        ScannerRun(
            scan_job_id=job_id,
            scanner=result.scanner,
            kind=result.kind,
            success=result.success,
            findings_count=len(result.findings),
            duration_ms=result.duration_ms,
            errors=result.errors[:50],
        )
        for result in context.scanner_results
    )
    session.commit()

    logger.info(
        "Scan completed",
        extra={
            "job_id": job_id,
            "vulnerabilities_found": summary.total,
            "security_score": summary.score.score,
            "security_grade": summary.score.grade,
            "duration_seconds": values["duration_seconds"],
        },
    )
    return summary


def fail_empty_repository(
    session: Session,
    job_id: int,
    owner: str | None = None,
    files_scanned: int = 0,
) -> bool:
    """Terminal failure for a repository with nothing to scan: zero counts, zero duration."""
    return mark_failed(
        session,
        job_id,
        EMPTY_REPOSITORY_MESSAGE,
        ACTIVE_JOB_STATUSES,
        owner,
        vulnerabilities_found=0,
        critical_count=0,
        high_count=0,
        medium_count=0,
        low_count=0,
        info_count=0,
        files_scanned=files_scanned,
        lines_of_code=0,
        duration_seconds=0.0,
    )
