"""Commit-addressed result cache.

A job whose (repository, commit, scanner set) matches an earlier completed job
reuses that job's results: the earlier instances are cloned under the new
job's identity instead of re-running every scanner. The outcome is an explicit
state, never an exception: CacheMiss, CacheHit, or CacheHitVoid when a match
existed but nothing usable could be cloned.
"""

import logging
from dataclasses import dataclass, field

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.base import utcnow
from app.models.scan_job import JOB_COMPLETED, ScanJob
from app.models.vulnerability import UnifiedVulnerability, VulnerabilityInstance
from app.schemas.findings import parse_finding
from app.services.dedup import insert_instance
from app.services.errors import PipelineFatalError

logger = logging.getLogger(__name__)

_MAX_SKIP_REASONS = 20


@dataclass
class CloneStats:
    cloned: int = 0
    # Already present under the target job (clone re-run)
    existing: int = 0
    skipped: int = 0
    reasons: list[str] = field(default_factory=list)

    @property
    def usable(self) -> int:
        return self.cloned + self.existing


@dataclass(frozen=True)
class CacheMiss:
    pass


@dataclass(frozen=True)
class CacheHit:
    source_job_id: int
    stats: CloneStats = field(default_factory=CloneStats)


@dataclass(frozen=True)
class CacheHitVoid:
    source_job_id: int
    stats: CloneStats = field(default_factory=CloneStats)


CacheState = CacheMiss | CacheHit | CacheHitVoid


def find_cached_job(session: Session, job: ScanJob) -> CacheMiss | CacheHit:
    """Most recently completed other job with the same repository, commit and scanner set."""
    if not job.commit_sha:
        return CacheMiss()
    source_id = session.execute(
        select(ScanJob.id)
        .where(
            ScanJob.repository_id == job.repository_id,
            ScanJob.commit_sha == job.commit_sha,
            ScanJob.scanner_set_key == job.scanner_set_key,
            ScanJob.status == JOB_COMPLETED,
            ScanJob.id != job.id,
        )
        .order_by(ScanJob.completed_at.desc(), ScanJob.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if source_id is None:
        return CacheMiss()
    return CacheHit(source_job_id=source_id)


def clone_instances(session: Session, source_job_id: int, target_job: ScanJob) -> CloneStats:
    """
    Copy the source job's instances into the target job. Idempotent.

    Each stored payload is validated back into a Finding and its instance key
    recomputed for the target job; rows that fail validation are skipped and
    counted. Unified rows that were cloned get last_seen_at refreshed.
    """
    stats = CloneStats()
    now = utcnow()
    unified_ids: set[int] = set()
    try:
        rows = session.execute(
            select(VulnerabilityInstance)
            .where(VulnerabilityInstance.scan_job_id == source_job_id)
            .order_by(VulnerabilityInstance.id)
        ).scalars().all()
        for row in rows:
            try:
                finding = parse_finding(row.raw_finding)
            except ValidationError as e:
                stats.skipped += 1
                if len(stats.reasons) < _MAX_SKIP_REASONS:
                    stats.reasons.append(f"instance {row.id}: {e.error_count()} validation error(s)")
                continue
            if insert_instance(session, target_job, row.vulnerability_id, finding, now):
                stats.cloned += 1
            else:
                stats.existing += 1
            unified_ids.add(row.vulnerability_id)

        if unified_ids:
            session.execute(
                update(UnifiedVulnerability)
                .where(UnifiedVulnerability.id.in_(sorted(unified_ids)))
                .values(last_seen_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise PipelineFatalError(
            f"Failed to clone cached results from scan {source_job_id}", cause=e
        ) from e

    logger.info(
        "Cloned cached instances",
        extra={
            "job_id": target_job.id,
            "source_job_id": source_job_id,
            "cloned": stats.cloned,
            "existing": stats.existing,
            "skipped": stats.skipped,
        },
    )
    return stats


def apply_cache(session: Session, job: ScanJob) -> CacheState:
    """
    Check the cache for job and clone on a hit.

    A hit that yields zero usable rows is void: the caller must run a full
    scan instead of reporting an empty result as success.
    """
    lookup = find_cached_job(session, job)
    if isinstance(lookup, CacheMiss):
        logger.info("Cache miss", extra={"job_id": job.id})
        return lookup

    stats = clone_instances(session, lookup.source_job_id, job)
    if stats.usable == 0:
        logger.warning(
            "Cache hit void: nothing usable to clone, running full scan",
            extra={"job_id": job.id, "source_job_id": lookup.source_job_id, "skipped": stats.skipped},
        )
        return CacheHitVoid(source_job_id=lookup.source_job_id, stats=stats)

    source = session.get(ScanJob, lookup.source_job_id)
    job.is_cached = True
    job.cached_from_job_id = lookup.source_job_id
    if source is not None:
        job.files_scanned = source.files_scanned
        job.lines_of_code = source.lines_of_code
    session.commit()
    return CacheHit(source_job_id=lookup.source_job_id, stats=stats)
