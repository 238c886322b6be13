"""Scan pipeline: drives one claimed job through cache, fetch, scan, unify and completion.

Stages run strictly in order. Database work runs in a thread on the job's own
session, one call at a time, so the event loop is never blocked and the
session is never used from two threads at once.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, TypeVar

from sqlalchemy.orm import Session

from app.core.database import SessionFactory, session_scope
from app.models.repository import Repository
from app.models.scan_job import JOB_CANCELLED, JOB_RUNNING, ScanJob
from app.services.cache import CacheHit, CacheHitVoid, apply_cache
from app.services.commit_resolver import CommitResolver, ResolvedCommit
from app.services.completion import CompletionContext, complete_job, fail_empty_repository
from app.services.dedup import SCAN_TYPE_FULL, reconcile_fixed, unify_findings
from app.services.errors import (
    EMPTY_REPOSITORY_MESSAGE,
    EmptyRepositoryError,
    JobCancelledError,
    PipelineFatalError,
)
from app.services.jobs import is_cancelled, update_progress
from app.services.orchestrator import OrchestrationResult, ScannerOrchestrator
from app.services.progress import EventSink, ProgressTracker
from app.services.source_fetcher import SourceFetcher, SourceStats, working_tree

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

PipelineOutcome = Literal["completed", "cached", "empty"]


class _JobDb:
    """Serialized, off-loop access to one job execution's session."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self._lock = asyncio.Lock()

    async def __call__(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            task = asyncio.ensure_future(asyncio.to_thread(fn, self.session, *args))
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                # The thread still owns the session; keep the lock until it returns.
                await asyncio.wait([task])
                raise


@dataclass(frozen=True)
class _JobInfo:
    """Loop-side snapshot of the job fields the coordinator reads."""

    id: int
    status: str
    branch: str
    commit_sha: str | None
    scan_type: str
    enabled_scanners: tuple[str, ...]
    full_name: str
    clone_url: str


def _load_job(session: Session, job_id: int) -> tuple[ScanJob, _JobInfo]:
    job = session.get(ScanJob, job_id)
    if job is None:
        raise PipelineFatalError(f"Scan job {job_id} not found")
    repo = session.get(Repository, job.repository_id)
    if repo is None:
        raise PipelineFatalError(f"Repository {job.repository_id} for scan {job_id} not found")
    info = _JobInfo(
        id=job.id,
        status=job.status,
        branch=job.branch,
        commit_sha=job.commit_sha,
        scan_type=job.scan_type,
        enabled_scanners=tuple(job.enabled_scanners or ()),
        full_name=repo.full_name,
        clone_url=repo.clone_url,
    )
    return job, info


def _record_commit(session: Session, job: ScanJob, resolved: ResolvedCommit) -> None:
    job.commit_sha = resolved.sha
    job.commit_is_synthetic = resolved.synthetic
    session.commit()


class ScanPipeline:
    """
    Executes one scan job end to end.

    Every exit path emits a terminal progress event: complete on success,
    failed otherwise. Exceptions propagate to the worker pool, which owns the
    retry decision; an empty repository is handled here as a terminal failed
    state and is not an exception.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        source_fetcher: SourceFetcher,
        orchestrator: ScannerOrchestrator,
        commit_resolver: CommitResolver,
        settings: "Settings",
        event_sink: EventSink | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._fetcher = source_fetcher
        self._orchestrator = orchestrator
        self._resolver = commit_resolver
        self._settings = settings
        self._event_sink = event_sink

    async def run(self, job_id: int, owner: str | None = None) -> PipelineOutcome:
        """Run the job; with an owner, terminal writes only land while that worker still holds the lease."""
        started = time.monotonic()
        with session_scope(self._session_factory) as session:
            db = _JobDb(session)

            async def write_progress(message: str, percentage: int) -> None:
                await db(update_progress, job_id, message, percentage)

            progress = ProgressTracker(job_id, sink=self._event_sink, writer=write_progress)
            try:
                return await self._execute(db, job_id, owner, progress, started)
            except JobCancelledError as e:
                await progress.emit("failed", f"Scan cancelled: {e.message}")
                raise
            except asyncio.CancelledError:
                await progress.emit("failed", "Scan aborted")
                raise
            except Exception as e:
                await progress.emit("failed", f"Scan failed: {getattr(e, 'message', None) or e}")
                raise

    async def _check_cancelled(self, db: _JobDb, job_id: int) -> None:
        if await db(is_cancelled, job_id):
            raise JobCancelledError(f"Scan {job_id} was cancelled")

    async def _execute(
        self,
        db: _JobDb,
        job_id: int,
        owner: str | None,
        progress: ProgressTracker,
        started: float,
    ) -> PipelineOutcome:
        job, info = await db(_load_job, job_id)
        if info.status == JOB_CANCELLED:
            raise JobCancelledError(f"Scan {job_id} was cancelled before it started")
        if info.status != JOB_RUNNING:
            raise PipelineFatalError(f"Scan {job_id} is {info.status}, expected running")

        if not info.commit_sha:
            resolved = await self._resolver.resolve(info.full_name, info.branch)
            await db(_record_commit, job, resolved)
        await self._check_cancelled(db, job_id)

        warnings: list[str] = []
        state = await db(apply_cache, job)
        if isinstance(state, CacheHit):
            context = CompletionContext(
                duration_seconds=time.monotonic() - started,
                warnings=[f"Results reused from scan {state.source_job_id} at the same commit"],
            )
            summary = await db(complete_job, job_id, context, owner)
            if summary is None:
                raise JobCancelledError(f"Scan {job_id} left running state before completion")
            await progress.emit("complete", f"Scan complete (cached): {summary.total} vulnerabilities")
            return "cached"
        if isinstance(state, CacheHitVoid):
            warnings.append(
                f"Cached results from scan {state.source_job_id} were unusable; ran a full scan"
            )

        await progress.emit("fetch", "Cloning repository...")
        try:
            orchestration, stats = await self._fetch_and_scan(db, info, progress)
        except EmptyRepositoryError:
            await db(fail_empty_repository, job_id, owner)
            await progress.emit("failed", EMPTY_REPOSITORY_MESSAGE)
            return "empty"
        warnings.extend(orchestration.warnings)
        await progress.emit(
            "scanner_complete",
            f"Scanners finished: {len(orchestration.findings)} findings",
        )
        await self._check_cancelled(db, job_id)

        await progress.emit("normalizing", f"Unifying {len(orchestration.findings)} findings")
        await db(unify_findings, job, orchestration.findings)
        if info.scan_type == SCAN_TYPE_FULL:
            await db(reconcile_fixed, job, orchestration.succeeded_kinds)

        context = CompletionContext(
            duration_seconds=time.monotonic() - started,
            files_scanned=stats.file_count,
            lines_of_code=stats.line_count,
            scanner_results=orchestration.results,
            warnings=warnings,
        )
        summary = await db(complete_job, job_id, context, owner)
        if summary is None:
            raise JobCancelledError(f"Scan {job_id} left running state before completion")
        await progress.emit("complete", f"Scan complete: {summary.total} vulnerabilities")
        return "completed"

    async def _fetch_and_scan(
        self,
        db: _JobDb,
        info: _JobInfo,
        progress: ProgressTracker,
    ) -> tuple[OrchestrationResult, SourceStats]:
        async with working_tree(
            self._fetcher,
            info.clone_url,
            info.branch,
            parent_dir=self._settings.SCAN_WORKDIR,
            prefix=f"scan-{info.id}-",
        ) as tree:
            logger.info(
                "Working tree ready",
                extra={
                    "job_id": info.id,
                    "file_count": tree.stats.file_count,
                    "line_count": tree.stats.line_count,
                },
            )
            await self._check_cancelled(db, info.id)
            await progress.emit("scanning", f"Running {len(info.enabled_scanners)} scanners")
            orchestration = await self._orchestrator.run(tree, info.enabled_scanners, progress)
            return orchestration, tree.stats
