"""Integration tests for app.services.cache: lookup, cloning and void hits."""

import unittest

from sqlalchemy import func, select, update

from app.models import ScanJob, VulnerabilityInstance
from app.models.base import utcnow
from app.models.scan_job import JOB_COMPLETED, JOB_RUNNING
from app.services.cache import (
    CacheHit,
    CacheHitVoid,
    CacheMiss,
    apply_cache,
    clone_instances,
    find_cached_job,
)
from app.services.dedup import unify_findings
from app.services.fingerprint import compute_instance_key
from tests.support import add_job, add_repository, make_session_factory, sast, sca

COMMIT = "b" * 40


class _CacheTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session = make_session_factory()()
        self.repo = add_repository(self.session)

    def tearDown(self) -> None:
        self.session.close()

    def completed_source(self, findings, **values) -> ScanJob:
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT, **values)
        unify_findings(self.session, job, findings)
        job.status = JOB_COMPLETED
        job.completed_at = utcnow()
        job.files_scanned = 42
        job.lines_of_code = 1234
        self.session.commit()
        return job

    def instances(self, job_id: int) -> list[VulnerabilityInstance]:
        return list(
            self.session.execute(
                select(VulnerabilityInstance)
                .where(VulnerabilityInstance.scan_job_id == job_id)
                .order_by(VulnerabilityInstance.id)
            ).scalars()
        )


class TestFindCachedJob(_CacheTestCase):
    def test_miss_without_commit(self) -> None:
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=None)
        self.assertIsInstance(find_cached_job(self.session, job), CacheMiss)

    def test_different_scanner_set_is_a_miss(self) -> None:
        self.completed_source([sast()], scan_type="quick")
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT, scan_type="full")
        self.assertIsInstance(find_cached_job(self.session, job), CacheMiss)

    def test_unfinished_source_is_a_miss(self) -> None:
        add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT)
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT)
        self.assertIsInstance(find_cached_job(self.session, job), CacheMiss)

    def test_hit_on_same_commit_and_scanner_set(self) -> None:
        source = self.completed_source([sast()])
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT)
        result = find_cached_job(self.session, job)
        self.assertIsInstance(result, CacheHit)
        self.assertEqual(result.source_job_id, source.id)


class TestCloneInstances(_CacheTestCase):
    def test_clone_recomputes_keys_and_is_idempotent(self) -> None:
        source = self.completed_source([sast(), sca()])
        target = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT)

        stats = clone_instances(self.session, source.id, target)
        self.assertEqual((stats.cloned, stats.existing, stats.skipped), (2, 0, 0))
        cloned = self.instances(target.id)
        self.assertEqual(len(cloned), 2)
        source_keys = {i.instance_key for i in self.instances(source.id)}
        self.assertTrue(source_keys.isdisjoint({i.instance_key for i in cloned}))
        self.assertIn(compute_instance_key(target.id, cloned[0].vulnerability_id, sast()), {i.instance_key for i in cloned})

        again = clone_instances(self.session, source.id, target)
        self.assertEqual((again.cloned, again.existing), (0, 2))
        self.assertEqual(len(self.instances(target.id)), 2)

    def test_invalid_payload_is_skipped(self) -> None:
        source = self.completed_source([sast(), sca()])
        bad_id = self.instances(source.id)[0].id
        self.session.execute(
            update(VulnerabilityInstance)
            .where(VulnerabilityInstance.id == bad_id)
            .values(raw_finding={"kind": "sast"})
        )
        self.session.commit()
        target = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT)

        stats = clone_instances(self.session, source.id, target)
        self.assertEqual((stats.cloned, stats.skipped), (1, 1))
        self.assertEqual(len(stats.reasons), 1)


class TestApplyCache(_CacheTestCase):
    def test_hit_marks_job_cached(self) -> None:
        source = self.completed_source([sast()])
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT)

        state = apply_cache(self.session, job)
        self.assertIsInstance(state, CacheHit)
        self.session.refresh(job)
        self.assertTrue(job.is_cached)
        self.assertEqual(job.cached_from_job_id, source.id)
        self.assertEqual(job.files_scanned, 42)
        self.assertEqual(job.lines_of_code, 1234)

    def test_source_without_instances_is_void(self) -> None:
        self.completed_source([])
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT)

        state = apply_cache(self.session, job)
        self.assertIsInstance(state, CacheHitVoid)
        self.session.refresh(job)
        self.assertFalse(job.is_cached)
        self.assertIsNone(job.cached_from_job_id)

    def test_all_payloads_invalid_is_void(self) -> None:
        source = self.completed_source([sast()])
        self.session.execute(
            update(VulnerabilityInstance)
            .where(VulnerabilityInstance.scan_job_id == source.id)
            .values(raw_finding={"kind": "unknown"})
        )
        self.session.commit()
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT)

        state = apply_cache(self.session, job)
        self.assertIsInstance(state, CacheHitVoid)
        self.assertEqual(state.stats.skipped, 1)
        count = self.session.execute(
            select(func.count()).select_from(VulnerabilityInstance).where(VulnerabilityInstance.scan_job_id == job.id)
        ).scalar_one()
        self.assertEqual(count, 0)

    def test_miss(self) -> None:
        job = add_job(self.session, self.repo, status=JOB_RUNNING, commit_sha=COMMIT)
        self.assertIsInstance(apply_cache(self.session, job), CacheMiss)


if __name__ == "__main__":
    unittest.main()
