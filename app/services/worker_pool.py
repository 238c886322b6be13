"""Bounded worker pool over the durable scan job queue.

N worker coroutines claim pending jobs and run the pipeline for each. Around
every in-flight job the pool keeps a lease heartbeat; a watchdog enforces the
wall-clock timeout independently of the lease, and a stalled-job detector
reclaims jobs whose lease expired (their worker died). The retry decision is
made here, from the exception class alone.
"""

import asyncio
import logging
import os
import socket
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, Protocol, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.core.database import SessionFactory, session_scope
from app.models.scan_job import JOB_RUNNING, ScanJob
from app.services.errors import JobCancelledError, ScanPipelineError
from app.services.jobs import (
    backoff_delay,
    claim_next_job,
    fail_timed_out_jobs,
    mark_failed,
    recover_stalled_jobs,
    renew_lease,
    schedule_retry,
    timeout_message,
)

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

JobOutcome = Literal["completed", "cached", "empty", "failed", "retrying", "cancelled", "timed_out"]


@dataclass(frozen=True)
class JobResult:
    job_id: int
    outcome: str
    error: str | None
    duration_seconds: float


class CompletionHook(Protocol):
    async def on_job_finished(self, result: JobResult) -> None: ...


class LoggingCompletionHook:
    """Default hook: one usage record and one audit record per job execution."""

    async def on_job_finished(self, result: JobResult) -> None:
        logger.info(
            "Scan usage recorded",
            extra={
                "job_id": result.job_id,
                "outcome": result.outcome,
                "duration_seconds": round(result.duration_seconds, 3),
            },
        )
        logger.info(
            "Audit: scan execution finished",
            extra={"job_id": result.job_id, "outcome": result.outcome, "error": result.error},
        )


class Pipeline(Protocol):
    async def run(self, job_id: int, owner: str | None = None) -> str: ...


@dataclass
class _InFlight:
    task: asyncio.Task
    owner: str
    started: float
    cancel_reason: str | None = None


def is_retryable(exc: BaseException) -> bool:
    """Transient infrastructure errors are retried; domain and unexpected errors are not."""
    if isinstance(exc, ScanPipelineError):
        return exc.retryable
    return isinstance(exc, (OperationalError, ConnectionError, TimeoutError))


def _error_message(exc: BaseException) -> str:
    return getattr(exc, "message", None) or str(exc) or type(exc).__name__


def _claim_id(session: Session, owner: str, lease_sec: float) -> int | None:
    job = claim_next_job(session, owner, lease_sec)
    return job.id if job is not None else None


def _attempts(session: Session, job_id: int) -> int:
    return session.execute(select(ScanJob.attempts).where(ScanJob.id == job_id)).scalar_one_or_none() or 0


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerPool:
    def __init__(
        self,
        session_factory: SessionFactory,
        pipeline: Pipeline,
        settings: "Settings",
        completion_hook: CompletionHook | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._pipeline = pipeline
        self._settings = settings
        self._hook = completion_hook or LoggingCompletionHook()
        self._worker_id = worker_id or default_worker_id()
        self._inflight: dict[int, _InFlight] = {}
        self._stopping = asyncio.Event()

    @property
    def in_flight(self) -> list[int]:
        return sorted(self._inflight)

    async def _db(self, fn: Callable[..., T], *args: Any) -> T:
        """Run fn(session, *args) in a thread on a short-lived session."""

        def call() -> T:
            with session_scope(self._session_factory) as session:
                return fn(session, *args)

        return await asyncio.to_thread(call)

    async def run(self) -> None:
        s = self._settings
        logger.info(
            "Worker pool starting",
            extra={"worker": self._worker_id, "concurrency": s.WORKER_CONCURRENCY},
        )
        background = [
            asyncio.create_task(self._periodic(self.check_timeouts, s.WATCHDOG_INTERVAL_SEC, "watchdog")),
            asyncio.create_task(
                self._periodic(self.recover_stalled, s.STALLED_CHECK_INTERVAL_SEC, "stalled detector")
            ),
        ]
        workers = [asyncio.create_task(self._worker_loop(i)) for i in range(s.WORKER_CONCURRENCY)]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in background + workers:
                task.cancel()
            await asyncio.gather(*background, *workers, return_exceptions=True)
            logger.info("Worker pool stopped", extra={"worker": self._worker_id})

    def stop(self) -> None:
        """Stop claiming new jobs; in-flight jobs run to completion."""
        self._stopping.set()

    async def _periodic(self, fn: Callable[[], Awaitable[Any]], interval: float, name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await fn()
            except Exception as e:
                logger.error("%s pass failed: %s", name, e, exc_info=True)

    async def _worker_loop(self, index: int) -> None:
        owner = f"{self._worker_id}:{index}"
        while not self._stopping.is_set():
            try:
                job_id = await self._db(_claim_id, owner, self._settings.JOB_LEASE_SEC)
            except Exception as e:
                logger.error("Failed to claim scan job: %s", e, extra={"worker": owner})
                job_id = None
            if job_id is None:
                try:
                    await asyncio.wait_for(
                        self._stopping.wait(), timeout=self._settings.WORKER_POLL_INTERVAL_SEC
                    )
                except asyncio.TimeoutError:
                    pass
                continue
            await self.execute(job_id, owner)

    async def execute(self, job_id: int, owner: str) -> JobOutcome:
        """
        Run the pipeline for an already claimed job and settle its outcome.

        The completion hook runs exactly once, whatever happened.
        """
        started = time.monotonic()
        task = asyncio.create_task(self._pipeline.run(job_id, owner))
        entry = _InFlight(task=task, owner=owner, started=started)
        self._inflight[job_id] = entry
        heartbeat = asyncio.create_task(self._heartbeat(job_id, entry))
        outcome: JobOutcome = "failed"
        error: str | None = None
        try:
            try:
                result = await task
                outcome = result  # type: ignore[assignment]
            except asyncio.CancelledError:
                if entry.cancel_reason == "timeout":
                    outcome = "timed_out"
                    error = timeout_message(self._settings.SCAN_TIMEOUT_SEC)
                elif entry.cancel_reason == "lease_lost":
                    outcome = "cancelled"
                    error = "Job is no longer leased by this worker"
                else:
                    raise
            except JobCancelledError as e:
                outcome, error = "cancelled", e.message
            except Exception as e:
                error = _error_message(e)
                outcome = await self._settle_failure(job_id, owner, e)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self._inflight.pop(job_id, None)
            await self._run_hook(JobResult(job_id, outcome, error, time.monotonic() - started))
        return outcome

    async def _settle_failure(self, job_id: int, owner: str, exc: Exception) -> JobOutcome:
        message = _error_message(exc)
        s = self._settings
        if is_retryable(exc):
            attempts = await self._db(_attempts, job_id)
            if attempts < s.JOB_MAX_ATTEMPTS:
                delay = backoff_delay(attempts, s.RETRY_BACKOFF_BASE_SEC, s.RETRY_BACKOFF_MAX_SEC)
                if await self._db(schedule_retry, job_id, delay, message, owner):
                    logger.warning(
                        "Transient scan failure, retrying: %s",
                        message,
                        extra={"job_id": job_id, "attempt": attempts, "delay_sec": delay},
                    )
                    return "retrying"
            message = f"{message} (gave up after {attempts} attempts)"
        else:
            logger.error(
                "Scan failed: %s",
                message,
                exc_info=not isinstance(exc, ScanPipelineError),
                extra={"job_id": job_id, "error_type": type(exc).__name__},
            )
        await self._db(mark_failed, job_id, message, (JOB_RUNNING,), owner)
        return "failed"

    async def _run_hook(self, result: JobResult) -> None:
        try:
            await self._hook.on_job_finished(result)
        except Exception as e:
            logger.error(
                "Completion hook failed: %s",
                e,
                exc_info=True,
                extra={"job_id": result.job_id},
            )

    async def _heartbeat(self, job_id: int, entry: _InFlight) -> None:
        s = self._settings
        while True:
            await asyncio.sleep(s.JOB_LEASE_RENEW_SEC)
            try:
                renewed = await self._db(renew_lease, job_id, entry.owner, s.JOB_LEASE_SEC)
            except Exception as e:
                logger.warning("Lease renewal failed: %s", e, extra={"job_id": job_id})
                continue
            if not renewed:
                logger.warning(
                    "Lease lost (cancelled, superseded or reclaimed); aborting scan",
                    extra={"job_id": job_id, "worker": entry.owner},
                )
                if entry.cancel_reason is None:
                    entry.cancel_reason = "lease_lost"
                entry.task.cancel()
                return

    async def check_timeouts(self) -> list[int]:
        """Fail and abandon every job over the wall-clock limit. Returns the ids failed here."""
        limit = self._settings.SCAN_TIMEOUT_SEC
        message = timeout_message(limit)
        now = time.monotonic()
        timed_out: list[int] = []
        for job_id, entry in list(self._inflight.items()):
            if entry.cancel_reason is not None or now - entry.started < limit:
                continue
            entry.cancel_reason = "timeout"
            if await self._db(mark_failed, job_id, message, (JOB_RUNNING,), entry.owner):
                timed_out.append(job_id)
            entry.task.cancel()
            logger.warning("Scan timed out", extra={"job_id": job_id, "timeout_sec": limit})
        # Running rows owned by processes that no longer exist.
        timed_out.extend(
            j for j in await self._db(fail_timed_out_jobs, limit) if j not in timed_out
        )
        return timed_out

    async def recover_stalled(self) -> tuple[list[int], list[int]]:
        return await self._db(recover_stalled_jobs, self._settings.JOB_MAX_ATTEMPTS)
