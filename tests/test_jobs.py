"""Tests for app.services.jobs: submission, supersession, queue claims and lifecycle transitions."""

import unittest
from datetime import timedelta
from unittest.mock import MagicMock, patch

from sqlalchemy import update

from app.models import ScanJob
from app.models.base import utcnow
from app.models.scan_job import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
)
from app.schemas.scans import ScanSubmitRequest
from app.services.jobs import (
    STALLED_MESSAGE,
    JobSubmissionError,
    RepositoryNotFoundError,
    backoff_delay,
    claim_next_job,
    fail_timed_out_jobs,
    mark_cancelled,
    mark_failed,
    recover_stalled_jobs,
    renew_lease,
    resolve_scanners,
    scanner_set_key,
    schedule_retry,
    submit_scan,
    timeout_message,
    update_progress,
)
from tests.support import add_job, add_repository, make_session_factory, make_settings


class TestResolveScanners(unittest.TestCase):
    def test_profiles(self) -> None:
        self.assertEqual(resolve_scanners("quick"), ("quick", ["sast", "secrets"]))
        self.assertEqual(
            resolve_scanners("full"),
            ("full", ["sast", "sca", "secrets", "iac", "container"]),
        )

    def test_explicit_list_recomputes_scan_type(self) -> None:
        self.assertEqual(resolve_scanners("quick", ["secrets", "sast"]), ("quick", ["sast", "secrets"]))
        self.assertEqual(resolve_scanners("full", ["sast"]), ("custom", ["sast"]))
        self.assertEqual(
            resolve_scanners("quick", ["container", "iac", "secrets", "sca", "sast"])[0],
            "full",
        )

    def test_invalid_requests(self) -> None:
        with self.assertRaises(JobSubmissionError):
            resolve_scanners("deep")
        with self.assertRaises(JobSubmissionError):
            resolve_scanners("full", [])
        with self.assertRaises(JobSubmissionError):
            resolve_scanners("full", ["sast", "dast"])


class TestHelpers(unittest.TestCase):
    def test_scanner_set_key_is_order_insensitive_and_versioned(self) -> None:
        self.assertEqual(scanner_set_key(["secrets", "sast"]), "v1:sast,secrets:702c70a3ce3b3cbe")
        self.assertEqual(scanner_set_key(["sast", "secrets", "sast"]), scanner_set_key(["secrets", "sast"]))

    def test_backoff_delay(self) -> None:
        self.assertEqual(backoff_delay(1, 2.0, 60.0), 2.0)
        self.assertEqual(backoff_delay(3, 2.0, 60.0), 8.0)
        self.assertEqual(backoff_delay(10, 2.0, 60.0), 60.0)
        self.assertEqual(backoff_delay(0, 2.0, 60.0), 2.0)

    def test_timeout_message(self) -> None:
        self.assertEqual(timeout_message(1800), "Scan timeout: exceeded 30 minutes")
        self.assertEqual(timeout_message(30), "Scan timeout: exceeded 0.5 minutes")


class _JobsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session = make_session_factory()()
        self.repo = add_repository(self.session)

    def tearDown(self) -> None:
        self.session.close()

    def status(self, job_id: int) -> str:
        self.session.expire_all()
        return self.session.get(ScanJob, job_id).status


class TestSubmitScan(_JobsTestCase):
    def test_creates_pending_job_with_defaults(self) -> None:
        job = submit_scan(self.session, ScanSubmitRequest(repository_id=self.repo.id), make_settings())
        self.assertEqual(job.status, JOB_PENDING)
        self.assertEqual(job.branch, "main")
        self.assertIsNone(job.commit_sha)
        self.assertEqual(job.scan_type, "full")
        self.assertEqual(job.enabled_scanners, ["sast", "sca", "secrets", "iac", "container"])
        self.assertTrue(job.scanner_set_key.startswith("v1:"))

    def test_unknown_repository(self) -> None:
        with self.assertRaises(RepositoryNotFoundError):
            submit_scan(self.session, ScanSubmitRequest(repository_id=999), make_settings())

    def test_explicit_subset_is_custom(self) -> None:
        request = ScanSubmitRequest(repository_id=self.repo.id, enabled_scanners=["sca"], commit_sha="ABCDEF1")
        job = submit_scan(self.session, request, make_settings())
        self.assertEqual(job.scan_type, "custom")
        self.assertEqual(job.commit_sha, "abcdef1")


class TestSupersession(_JobsTestCase):
    def _older(self) -> tuple[ScanJob, ScanJob, ScanJob, ScanJob]:
        pending = add_job(self.session, self.repo, status=JOB_PENDING)
        running = add_job(self.session, self.repo, status=JOB_RUNNING)
        done = add_job(self.session, self.repo, status=JOB_COMPLETED)
        other_branch = add_job(self.session, self.repo, status=JOB_PENDING, branch="develop")
        return pending, running, done, other_branch

    def test_webhook_scan_cancels_older_active_scans_on_branch(self) -> None:
        pending, running, done, other_branch = self._older()
        request = ScanSubmitRequest(repository_id=self.repo.id, trigger="webhook")
        new = submit_scan(self.session, request, make_settings(SUPERSEDE_POLICY="webhook"))

        self.assertEqual(self.status(pending.id), JOB_CANCELLED)
        self.assertEqual(self.status(running.id), JOB_CANCELLED)
        self.assertEqual(self.status(done.id), JOB_COMPLETED)
        self.assertEqual(self.status(other_branch.id), JOB_PENDING)
        self.assertEqual(self.session.get(ScanJob, pending.id).error_message, f"Superseded by scan {new.id}")
        self.assertEqual(self.status(new.id), JOB_PENDING)

    def test_manual_scan_does_not_supersede_under_webhook_policy(self) -> None:
        pending, running, _, _ = self._older()
        submit_scan(self.session, ScanSubmitRequest(repository_id=self.repo.id), make_settings(SUPERSEDE_POLICY="webhook"))
        self.assertEqual(self.status(pending.id), JOB_PENDING)
        self.assertEqual(self.status(running.id), JOB_RUNNING)

    def test_never_policy(self) -> None:
        pending, _, _, _ = self._older()
        request = ScanSubmitRequest(repository_id=self.repo.id, trigger="webhook")
        submit_scan(self.session, request, make_settings(SUPERSEDE_POLICY="never"))
        self.assertEqual(self.status(pending.id), JOB_PENDING)

    def test_always_policy(self) -> None:
        pending, _, _, _ = self._older()
        submit_scan(self.session, ScanSubmitRequest(repository_id=self.repo.id), make_settings(SUPERSEDE_POLICY="always"))
        self.assertEqual(self.status(pending.id), JOB_CANCELLED)


class TestClaim(_JobsTestCase):
    def test_claims_oldest_available_and_counts_attempt(self) -> None:
        first = add_job(self.session, self.repo)
        second = add_job(self.session, self.repo)
        add_job(self.session, self.repo, available_at=utcnow() + timedelta(hours=1))

        claimed = claim_next_job(self.session, "worker-a", 60.0)
        self.assertEqual(claimed.id, first.id)
        self.assertEqual(claimed.status, JOB_RUNNING)
        self.assertEqual(claimed.attempts, 1)
        self.assertEqual(claimed.lease_owner, "worker-a")
        self.assertIsNotNone(claimed.lease_expires_at)
        self.assertIsNotNone(claimed.started_at)

        self.assertEqual(claim_next_job(self.session, "worker-b", 60.0).id, second.id)
        # Remaining job is not yet available.
        self.assertIsNone(claim_next_job(self.session, "worker-c", 60.0))

    def test_lost_race_yields_nothing(self) -> None:
        session = MagicMock()
        candidates = MagicMock()
        candidates.scalars.return_value.all.return_value = [7]
        lost = MagicMock(rowcount=0)
        session.execute.side_effect = [candidates, lost]

        self.assertIsNone(claim_next_job(session, "worker-a", 60.0))
        session.commit.assert_not_called()
        session.get.assert_not_called()

    def test_lease_renewal_requires_owner(self) -> None:
        add_job(self.session, self.repo)
        job = claim_next_job(self.session, "worker-a", 60.0)
        self.assertTrue(renew_lease(self.session, job.id, "worker-a", 60.0))
        self.assertFalse(renew_lease(self.session, job.id, "worker-b", 60.0))
        mark_cancelled(self.session, job.id)
        self.assertFalse(renew_lease(self.session, job.id, "worker-a", 60.0))


class TestTransitions(_JobsTestCase):
    def test_progress_only_while_running(self) -> None:
        job = add_job(self.session, self.repo, status=JOB_RUNNING)
        self.assertTrue(update_progress(self.session, job.id, "Cloning repository...", 15))
        mark_cancelled(self.session, job.id)
        self.assertFalse(update_progress(self.session, job.id, "Running scanners", 20))
        self.session.expire_all()
        self.assertEqual(self.session.get(ScanJob, job.id).progress_percentage, 15)

    def test_cancel_terminal_job_is_refused(self) -> None:
        job = add_job(self.session, self.repo, status=JOB_COMPLETED)
        self.assertFalse(mark_cancelled(self.session, job.id))
        self.assertEqual(self.status(job.id), JOB_COMPLETED)

    def test_schedule_retry_returns_job_to_queue_later(self) -> None:
        job = add_job(self.session, self.repo, status=JOB_RUNNING, lease_owner="w")
        self.assertTrue(schedule_retry(self.session, job.id, 30.0, "network down"))
        self.session.expire_all()
        job = self.session.get(ScanJob, job.id)
        self.assertEqual(job.status, JOB_PENDING)
        self.assertIsNone(job.lease_owner)
        self.assertIn("network down", job.error_message)
        self.assertIsNone(claim_next_job(self.session, "worker-a", 60.0))
        self.assertIsNotNone(claim_next_job(self.session, "worker-a", 60.0, now=utcnow() + timedelta(seconds=31)))

    def test_stale_owner_cannot_retry_or_fail(self) -> None:
        job = add_job(self.session, self.repo, status=JOB_RUNNING, lease_owner="worker-b")
        self.assertFalse(schedule_retry(self.session, job.id, 30.0, "network down", owner="worker-a"))
        self.assertFalse(mark_failed(self.session, job.id, "boom", (JOB_RUNNING,), owner="worker-a"))
        self.assertEqual(self.status(job.id), JOB_RUNNING)
        self.assertTrue(mark_failed(self.session, job.id, "boom", (JOB_RUNNING,), owner="worker-b"))
        self.assertEqual(self.status(job.id), JOB_FAILED)


class TestSupervision(_JobsTestCase):
    def test_timed_out_jobs_fail(self) -> None:
        old = add_job(self.session, self.repo, status=JOB_RUNNING, started_at=utcnow() - timedelta(hours=2))
        fresh = add_job(self.session, self.repo, status=JOB_RUNNING, started_at=utcnow())

        self.assertEqual(fail_timed_out_jobs(self.session, 1800), [old.id])
        self.assertEqual(self.status(old.id), JOB_FAILED)
        self.assertEqual(self.session.get(ScanJob, old.id).error_message, "Scan timeout: exceeded 30 minutes")
        self.assertEqual(self.status(fresh.id), JOB_RUNNING)

    def test_stalled_jobs_requeued_or_failed(self) -> None:
        expired = utcnow() - timedelta(minutes=1)
        retryable = add_job(self.session, self.repo, status=JOB_RUNNING, attempts=1, lease_expires_at=expired)
        exhausted = add_job(self.session, self.repo, status=JOB_RUNNING, attempts=3, lease_expires_at=expired)
        healthy = add_job(
            self.session, self.repo, status=JOB_RUNNING, attempts=1, lease_expires_at=utcnow() + timedelta(minutes=5)
        )

        requeued, failed = recover_stalled_jobs(self.session, max_attempts=3)
        self.assertEqual(requeued, [retryable.id])
        self.assertEqual(failed, [exhausted.id])
        self.assertEqual(self.status(retryable.id), JOB_PENDING)
        self.assertEqual(self.session.get(ScanJob, exhausted.id).error_message, STALLED_MESSAGE)
        self.assertEqual(self.status(healthy.id), JOB_RUNNING)

    def test_lease_renewed_after_selection_is_not_reclaimed(self) -> None:
        expired = utcnow() - timedelta(minutes=1)
        retryable = add_job(self.session, self.repo, status=JOB_RUNNING, attempts=1, lease_expires_at=expired)
        exhausted = add_job(self.session, self.repo, status=JOB_RUNNING, attempts=3, lease_expires_at=expired)
        execute = self.session.execute
        calls = []

        def renew_after_select(stmt, *args, **kwargs):
            calls.append(stmt)
            if len(calls) > 1:
                return execute(stmt, *args, **kwargs)
            rows = execute(stmt, *args, **kwargs).all()
            execute(
                update(ScanJob)
                .where(ScanJob.id.in_([retryable.id, exhausted.id]))
                .values(lease_expires_at=utcnow() + timedelta(minutes=5))
                .execution_options(synchronize_session=False)
            )
            return MagicMock(all=MagicMock(return_value=rows))

        with patch.object(self.session, "execute", side_effect=renew_after_select):
            requeued, failed = recover_stalled_jobs(self.session, max_attempts=3)

        self.assertEqual(len(calls), 3)
        self.assertEqual((requeued, failed), ([], []))
        self.assertEqual(self.status(retryable.id), JOB_RUNNING)
        self.assertEqual(self.status(exhausted.id), JOB_RUNNING)


if __name__ == "__main__":
    unittest.main()
