"""Deduplication and unification: map one job's findings onto durable vulnerability identities.

Every finding is keyed by its fingerprint. The unified row for a fingerprint
is written with a single INSERT .. ON CONFLICT DO UPDATE, so two jobs on
different branches detecting the same issue at the same time still end up
with one row. Each finding then gets an insert-only instance row keyed by
its instance key.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import insert_for
from app.models.base import as_utc, utcnow
from app.models.scan_job import JOB_COMPLETED, ScanJob
from app.models.vulnerability import (
    VULN_FIXED,
    VULN_OPEN,
    UnifiedVulnerability,
    VulnerabilityInstance,
)
from app.schemas.findings import (
    SEVERITY_ORDER,
    ContainerFinding,
    Finding,
    SastFinding,
    worst_severity,
)
from app.services.errors import UnificationError
from app.services.fingerprint import compute_fingerprints, compute_instance_key

logger = logging.getLogger(__name__)

SCAN_TYPE_FULL = "full"

_SEVERITY_RANK = {s: i for i, s in enumerate(SEVERITY_ORDER)}


@dataclass
class UnificationStats:
    findings: int = 0
    fingerprints: int = 0
    created: int = 0
    updated: int = 0
    instances_created: int = 0
    instances_existing: int = 0


@dataclass
class _Group:
    representative: Finding
    severity: str
    findings: list[Finding]


def _severity_rank(column):
    return case(_SEVERITY_RANK, value=column, else_=-1)


def _location_fields(finding: Finding) -> dict:
    if isinstance(finding, ContainerFinding):
        return {
            "file_path": None,
            "line_start": None,
            "line_end": None,
            "package_name": finding.package_name,
            "package_version": finding.package_version,
        }
    if hasattr(finding, "file_path"):
        return {
            "file_path": finding.file_path,
            "line_start": finding.line_start,
            "line_end": finding.line_end,
            "package_name": None,
            "package_version": None,
        }
    return {
        "file_path": getattr(finding, "manifest_path", None),
        "line_start": None,
        "line_end": None,
        "package_name": finding.package_name,
        "package_version": finding.package_version,
    }


def _unified_values(job: ScanJob, fingerprint: str, group: _Group, now: datetime) -> dict:
    f = group.representative
    location = _location_fields(f)
    cwe = f.cwe[0] if isinstance(f, SastFinding) and f.cwe else None
    return {
        "workspace_id": job.workspace_id,
        "repository_id": job.repository_id,
        "fingerprint": fingerprint,
        "scanner_type": f.kind,
        "rule_id": f.rule_id[:512],
        "title": f.title[:1024],
        "description": f.description or "No description available",
        "severity": group.severity,
        "status": VULN_OPEN,
        "cwe": cwe,
        "file_path": location["file_path"],
        "line_start": location["line_start"],
        "package_name": location["package_name"],
        "scanner_metadata": {"scanner": f.scanner, **f.metadata},
        "confidence": f.confidence,
        "first_detected_at": now,
        "last_seen_at": now,
        "updated_at": now,
    }


def group_by_fingerprint(findings: Iterable[Finding], repository_id: int) -> dict[str, _Group]:
    """Group findings by fingerprint; the first finding represents the group, severity is the worst seen."""
    findings = list(findings)
    groups: dict[str, _Group] = {}
    for finding, fp in zip(findings, compute_fingerprints(findings, repository_id)):
        group = groups.get(fp)
        if group is None:
            groups[fp] = _Group(representative=finding, severity=finding.severity, findings=[finding])
        else:
            group.findings.append(finding)
            group.severity = worst_severity(group.severity, finding.severity)
    return groups


def upsert_unified(session: Session, job: ScanJob, fingerprint: str, group: _Group, now: datetime) -> tuple[int, bool]:
    """
    Atomic create-or-refresh of one unified vulnerability. Returns (id, created).

    On conflict: last_seen_at is refreshed, a fixed row is re-opened and its
    resolved_at cleared, and severity only ever moves up. Triage states
    (accepted, false_positive, ignored) are preserved.
    """
    insert = insert_for(session)
    table = UnifiedVulnerability
    stmt = insert(table).values(**_unified_values(job, fingerprint, group, now))
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.workspace_id, table.fingerprint],
        set_={
            "last_seen_at": now,
            "updated_at": now,
            "status": case((table.status == VULN_FIXED, VULN_OPEN), else_=table.status),
            "resolved_at": case((table.status == VULN_FIXED, None), else_=table.resolved_at),
            "severity": case(
                (_severity_rank(excluded.severity) > _severity_rank(table.severity), excluded.severity),
                else_=table.severity,
            ),
        },
    ).returning(table.id, table.first_detected_at)
    row = session.execute(stmt).one()
    created = as_utc(row.first_detected_at) == now
    return row.id, created


def insert_instance(session: Session, job: ScanJob, unified_id: int, finding: Finding, now: datetime) -> bool:
    """Insert one occurrence row; returns False when the instance key already exists."""
    insert = insert_for(session)
    key = compute_instance_key(job.id, unified_id, finding)
    stmt = (
        insert(VulnerabilityInstance)
        .values(
            scan_job_id=job.id,
            vulnerability_id=unified_id,
            instance_key=key,
            scanner=finding.scanner,
            raw_finding=finding.model_dump(mode="json"),
            detected_at=now,
            **_location_fields(finding),
        )
        .on_conflict_do_nothing(index_elements=[VulnerabilityInstance.instance_key])
        .returning(VulnerabilityInstance.id)
    )
    return session.execute(stmt).scalar_one_or_none() is not None


def unify_findings(session: Session, job: ScanJob, findings: list[Finding]) -> UnificationStats:
    """
    Unify all findings of one job and record their instances, in one transaction.

    Fingerprints are processed in sorted order so concurrent jobs lock unified
    rows in the same order. Any database error rolls back and raises
    UnificationError; it is never retried.
    """
    stats = UnificationStats(findings=len(findings))
    now = utcnow()
    groups = group_by_fingerprint(findings, job.repository_id)
    stats.fingerprints = len(groups)
    try:
        for fingerprint in sorted(groups):
            group = groups[fingerprint]
            unified_id, created = upsert_unified(session, job, fingerprint, group, now)
            if created:
                stats.created += 1
            else:
                stats.updated += 1
            for finding in group.findings:
                if insert_instance(session, job, unified_id, finding, now):
                    stats.instances_created += 1
                else:
                    stats.instances_existing += 1
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(
            "Unification failed: %s",
            e,
            extra={"job_id": job.id, "fingerprints": stats.fingerprints},
        )
        raise UnificationError(f"Failed to unify findings for scan {job.id}", cause=e) from e

    logger.info(
        "Findings unified",
        extra={
            "job_id": job.id,
            "findings_count": stats.findings,
            "fingerprints": stats.fingerprints,
            "created": stats.created,
            "updated": stats.updated,
            "instances_created": stats.instances_created,
            "instances_existing": stats.instances_existing,
        },
    )
    return stats


def reconcile_fixed(session: Session, job: ScanJob, covered_kinds: Iterable[str]) -> int:
    """
    Mark open vulnerabilities fixed when a genuine full re-scan no longer finds them.

    Candidates belong to the job's repository, were seen by an earlier completed
    full non-cached scan of the same branch and have no instance in this job.
    Only scanner kinds whose adapters succeeded in this job are considered:
    absence from a failed scanner is not evidence of a fix. Cached and partial
    scans are skipped.
    """
    kinds = sorted(set(covered_kinds))
    if job.is_cached or job.scan_type != SCAN_TYPE_FULL or not kinds:
        logger.info(
            "Skipping reconciliation",
            extra={"job_id": job.id, "is_cached": job.is_cached, "scan_type": job.scan_type},
        )
        return 0

    prior_instances = (
        select(VulnerabilityInstance.vulnerability_id)
        .join(ScanJob, ScanJob.id == VulnerabilityInstance.scan_job_id)
        .where(
            and_(
                ScanJob.repository_id == job.repository_id,
                ScanJob.branch == job.branch,
                ScanJob.status == JOB_COMPLETED,
                ScanJob.is_cached.is_(False),
                ScanJob.scan_type == SCAN_TYPE_FULL,
                ScanJob.id < job.id,
            )
        )
    )
    current_instances = select(VulnerabilityInstance.vulnerability_id).where(
        VulnerabilityInstance.scan_job_id == job.id
    )
    now = utcnow()
    stmt = (
        update(UnifiedVulnerability)
        .where(
            UnifiedVulnerability.workspace_id == job.workspace_id,
            UnifiedVulnerability.repository_id == job.repository_id,
            UnifiedVulnerability.status == VULN_OPEN,
            UnifiedVulnerability.scanner_type.in_(kinds),
            UnifiedVulnerability.id.in_(prior_instances),
            UnifiedVulnerability.id.not_in(current_instances),
        )
        .values(status=VULN_FIXED, resolved_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    try:
        fixed = session.execute(stmt).rowcount or 0
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise UnificationError(f"Failed to reconcile fixed vulnerabilities for scan {job.id}", cause=e) from e
    logger.info("Reconciled fixed vulnerabilities", extra={"job_id": job.id, "fixed": fixed, "kinds": kinds})
    return fixed
