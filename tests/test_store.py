"""
Tests for store.py
"""

import unittest
from datetime import timedelta

from models import JobStatus, OperationKind
from tests.support import download_request, make_store
from utils import utcnow


class JobStoreTest(unittest.TestCase):
    def setUp(self):
        self.store = make_store()

    def test_create_fills_defaults(self):
        job = self.store.create(download_request())

        self.assertTrue(job.job_id)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.progress, 0)
        self.assertEqual(job.operation_kind, OperationKind.DOWNLOAD)
        self.assertEqual(job.platform, "youtube")
        self.assertEqual(job.operation_options["format"], "mp4")
        self.assertIsNone(job.output_path)
        self.assertIsNone(job.error_message)
        self.assertIsNone(job.completed_at)
        self.assertEqual(job.expires_at - job.created_at, timedelta(hours=24))

    def test_ids_are_unique(self):
        ids = {self.store.create(download_request()).job_id for _ in range(5)}
        self.assertEqual(len(ids), 5)

    def test_get_unknown_returns_none(self):
        self.assertIsNone(self.store.get("missing"))

    def test_terminal_status_stamps_completed_at(self):
        job = self.store.create(download_request())
        self.store.set_status(job.job_id, JobStatus.PROCESSING, 5)
        self.assertIsNone(self.store.get(job.job_id).completed_at)

        self.assertTrue(self.store.set_status(job.job_id, JobStatus.COMPLETED, 100))

        stored = self.store.get(job.job_id)
        self.assertEqual(stored.status, JobStatus.COMPLETED)
        self.assertEqual(stored.progress, 100)
        self.assertIsNotNone(stored.completed_at)

    def test_terminal_state_is_final(self):
        job = self.store.create(download_request())
        self.store.set_status(job.job_id, JobStatus.PROCESSING)
        self.store.set_status(job.job_id, JobStatus.COMPLETED, 100)
        completed_at = self.store.get(job.job_id).completed_at

        self.assertFalse(self.store.set_status(job.job_id, JobStatus.PROCESSING, 10))
        self.assertFalse(self.store.set_progress(job.job_id, 20))
        self.assertFalse(self.store.set_error(job.job_id, "late failure"))
        self.assertFalse(self.store.set_download_url(job.job_id, "/elsewhere"))

        stored = self.store.get(job.job_id)
        self.assertEqual(stored.status, JobStatus.COMPLETED)
        self.assertEqual(stored.progress, 100)
        self.assertIsNone(stored.error_message)
        self.assertEqual(stored.completed_at, completed_at)

    def test_update_for_unknown_job_is_noop(self):
        self.assertFalse(self.store.set_status("missing", JobStatus.PROCESSING))
        self.assertFalse(self.store.set_error("missing", "boom"))
        self.assertFalse(self.store.set_output("missing", "/tmp/x.mp4"))

    def test_progress_only_moves_forward_while_processing(self):
        job = self.store.create(download_request())
        self.assertFalse(self.store.set_progress(job.job_id, 30))

        self.store.set_status(job.job_id, JobStatus.PROCESSING, 5)
        self.assertTrue(self.store.set_progress(job.job_id, 30))
        self.assertFalse(self.store.set_progress(job.job_id, 20))
        self.assertEqual(self.store.get(job.job_id).progress, 30)

        self.store.set_progress(job.job_id, 150)
        self.assertEqual(self.store.get(job.job_id).progress, 100)

    def test_set_error_forces_failed(self):
        job = self.store.create(download_request())
        self.store.set_status(job.job_id, JobStatus.PROCESSING)

        self.assertTrue(self.store.set_error(job.job_id, "Video unavailable"))

        stored = self.store.get(job.job_id)
        self.assertEqual(stored.status, JobStatus.FAILED)
        self.assertEqual(stored.error_message, "Video unavailable")
        self.assertIsNotNone(stored.completed_at)

    def test_output_is_set_once(self):
        job = self.store.create(download_request())
        self.store.set_status(job.job_id, JobStatus.PROCESSING)

        self.assertTrue(self.store.set_output(job.job_id, "/data/first.mp4"))
        self.assertFalse(self.store.set_output(job.job_id, "/data/second.mp4"))
        self.assertEqual(self.store.get(job.job_id).output_path, "/data/first.mp4")

    def test_list_expired(self):
        old = self.store.create(download_request(), now=utcnow() - timedelta(hours=25))
        fresh = self.store.create(download_request())

        expired_ids = [job.job_id for job in self.store.list_expired()]

        self.assertEqual(expired_ids, [old.job_id])
        self.assertNotIn(fresh.job_id, expired_ids)

    def test_deleted_job_is_not_resurrected(self):
        job = self.store.create(download_request())

        self.assertTrue(self.store.delete(job.job_id))
        self.assertFalse(self.store.delete(job.job_id))
        self.assertFalse(self.store.set_status(job.job_id, JobStatus.PROCESSING))
        self.assertIsNone(self.store.get(job.job_id))

    def test_list_jobs_and_counts(self):
        first = self.store.create(download_request())
        self.store.create(download_request())
        self.store.set_error(first.job_id, "boom")

        items, total = self.store.list_jobs(page=1, size=10, status=JobStatus.FAILED)
        self.assertEqual(total, 1)
        self.assertEqual(items[0].job_id, first.job_id)

        counts = self.store.count_by_status()
        self.assertEqual(counts["failed"], 1)
        self.assertEqual(counts["pending"], 1)
        self.assertEqual(counts["completed"], 0)
