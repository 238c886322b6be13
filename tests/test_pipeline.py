"""End-to-end tests for app.services.pipeline with fake fetcher, scanners and resolver."""

import asyncio
import os
import unittest
from unittest.mock import AsyncMock

from sqlalchemy import func, select

from app.models import ScanJob, VulnerabilityInstance
from app.models.base import utcnow
from app.models.scan_job import JOB_CANCELLED, JOB_COMPLETED, JOB_FAILED, JOB_RUNNING
from app.services.commit_resolver import ResolvedCommit
from app.services.dedup import unify_findings
from app.services.errors import EMPTY_REPOSITORY_MESSAGE, EmptyRepositoryError, JobCancelledError
from app.services.orchestrator import ScannerOrchestrator
from app.services.pipeline import ScanPipeline
from app.services.progress import ScanEvent
from app.services.scanners import AdapterResult
from app.services.source_fetcher import SourceStats, WorkingTree
from tests.support import add_job, add_repository, make_session_factory, make_settings, sast, secret

RESOLVED = "c" * 40


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[ScanEvent] = []

    async def publish(self, event: ScanEvent) -> None:
        self.events.append(event)

    @property
    def stages(self) -> list[str]:
        return [e.stage for e in self.events if not e.stage.startswith("scanner_")]


class FakeFetcher:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, str, str]] = []

    async def fetch(self, clone_url: str, branch: str, dest: str) -> SourceStats:
        self.calls.append((clone_url, branch, dest))
        if self.error is not None:
            raise self.error
        return SourceStats(file_count=3, line_count=120, byte_size=4096)


class StaticAdapter:
    def __init__(self, name: str, kind: str, findings) -> None:
        self.name = name
        self.kind = kind
        self.findings = findings

    async def run(self, tree: WorkingTree) -> AdapterResult:
        return AdapterResult(self.name, self.kind, True, findings=list(self.findings))


class TestScanPipeline(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.session = self.factory()
        self.repo = add_repository(self.session)
        self.sink = RecordingSink()
        self.fetcher = FakeFetcher()
        self.resolver = AsyncMock()
        self.resolver.resolve.return_value = ResolvedCommit(sha=RESOLVED, synthetic=False)
        self.adapters = {
            "sast": StaticAdapter("semgrep", "sast", [sast(line=1), sast(line=2)]),
            "secrets": StaticAdapter("gitleaks", "secrets", [secret()]),
        }

    def tearDown(self) -> None:
        self.session.close()

    def pipeline(self) -> ScanPipeline:
        return ScanPipeline(
            session_factory=self.factory,
            source_fetcher=self.fetcher,
            orchestrator=ScannerOrchestrator(self.adapters),
            commit_resolver=self.resolver,
            settings=make_settings(),
            event_sink=self.sink,
        )

    def reload(self, job_id: int) -> ScanJob:
        self.session.expire_all()
        return self.session.get(ScanJob, job_id)

    def test_full_scan_completes(self) -> None:
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=None, started_at=utcnow())

        outcome = asyncio.run(self.pipeline().run(job.id))
        self.assertEqual(outcome, "completed")
        job = self.reload(job.id)
        self.assertEqual(job.status, JOB_COMPLETED)
        self.assertEqual(job.commit_sha, RESOLVED)
        self.assertFalse(job.commit_is_synthetic)
        self.assertEqual(job.vulnerabilities_found, 3)
        self.assertEqual(job.files_scanned, 3)
        self.assertEqual(job.lines_of_code, 120)
        self.assertEqual(job.progress_percentage, 100)
        # Full profile, but only two scanner classes are registered here.
        self.assertIn("No scanner registered for sca; skipped", job.warnings)
        self.assertEqual(
            self.sink.stages,
            ["fetch", "scanning", "scanner_complete", "normalizing", "complete"],
        )
        self.resolver.resolve.assert_awaited_once_with("octo/app", "main")
        clone_url, branch, dest = self.fetcher.calls[0]
        self.assertEqual((clone_url, branch), ("https://github.com/octo/app.git", "main"))
        self.assertFalse(os.path.exists(dest))

    def test_given_commit_is_not_resolved(self) -> None:
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha="d" * 40)
        asyncio.run(self.pipeline().run(job.id))
        self.resolver.resolve.assert_not_awaited()
        self.assertEqual(self.reload(job.id).commit_sha, "d" * 40)

    def test_completion_refused_once_lease_moved_to_another_worker(self) -> None:
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha="d" * 40, lease_owner="worker-b")
        with self.assertRaises(JobCancelledError):
            asyncio.run(self.pipeline().run(job.id, "worker-a"))
        job = self.reload(job.id)
        self.assertEqual(job.status, JOB_RUNNING)
        self.assertEqual(job.lease_owner, "worker-b")
        self.assertIsNone(job.security_score)
        self.assertEqual(self.sink.stages[-1], "failed")

    def test_cache_hit_skips_fetch_and_scanners(self) -> None:
        source = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=RESOLVED, files_scanned=9)
        unify_findings(self.session, source, [sast(), secret()])
        source.status = JOB_COMPLETED
        source.completed_at = utcnow()
        self.session.commit()
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=RESOLVED)

        outcome = asyncio.run(self.pipeline().run(job.id))
        self.assertEqual(outcome, "cached")
        self.assertEqual(self.fetcher.calls, [])
        job = self.reload(job.id)
        self.assertEqual(job.status, JOB_COMPLETED)
        self.assertTrue(job.is_cached)
        self.assertEqual(job.cached_from_job_id, source.id)
        self.assertEqual(job.vulnerabilities_found, 2)
        self.assertEqual(job.files_scanned, 9)
        self.assertEqual(self.sink.stages, ["complete"])
        instances = self.session.execute(
            select(func.count()).select_from(VulnerabilityInstance).where(VulnerabilityInstance.scan_job_id == job.id)
        ).scalar_one()
        self.assertEqual(instances, 2)

    def test_void_cache_hit_runs_full_scan(self) -> None:
        add_job(self.session, self.repo, status=JOB_COMPLETED, commit_sha=RESOLVED, completed_at=utcnow())
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=RESOLVED)

        outcome = asyncio.run(self.pipeline().run(job.id))
        self.assertEqual(outcome, "completed")
        self.assertEqual(len(self.fetcher.calls), 1)
        job = self.reload(job.id)
        self.assertFalse(job.is_cached)
        self.assertTrue(any("were unusable" in w for w in job.warnings))

    def test_empty_repository_fails_job_without_raising(self) -> None:
        self.fetcher = FakeFetcher(error=EmptyRepositoryError(EMPTY_REPOSITORY_MESSAGE))
        job = add_job(self.session, self.repo, status=JOB_RUNNING)

        outcome = asyncio.run(self.pipeline().run(job.id))
        self.assertEqual(outcome, "empty")
        job = self.reload(job.id)
        self.assertEqual(job.status, JOB_FAILED)
        self.assertEqual(job.error_message, EMPTY_REPOSITORY_MESSAGE)
        self.assertEqual(job.vulnerabilities_found, 0)
        self.assertEqual(self.sink.stages, ["fetch", "failed"])

    def test_cancelled_job_raises_and_emits_failed(self) -> None:
        job = add_job(self.session, self.repo, status=JOB_CANCELLED)
        with self.assertRaises(JobCancelledError):
            asyncio.run(self.pipeline().run(job.id))
        self.assertEqual(self.sink.stages, ["failed"])
        self.assertEqual(self.fetcher.calls, [])

    def test_rescan_marks_missing_issue_fixed(self) -> None:
        first = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha="1" * 40)
        asyncio.run(self.pipeline().run(first.id))

        self.adapters["secrets"] = StaticAdapter("gitleaks", "secrets", [])
        second = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha="2" * 40)
        asyncio.run(self.pipeline().run(second.id))

        second = self.reload(second.id)
        self.assertEqual(second.vulnerabilities_found, 2)
        self.assertEqual(second.high_count, 2)


if __name__ == "__main__":
    unittest.main()
