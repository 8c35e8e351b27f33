"""
Job store: the single owner of job records.

Every mutation is one conditional UPDATE run under a lock, so a reader sees
either the old row or the new one. Rows in a terminal state never change
again; updates aimed at them, or at ids that no longer exist, are logged and
ignored.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional

from models import TERMINAL_STATUSES, Job, JobStatus
from schemas import request_kind
from utils import JOB_RETENTION_HOURS, detect_platform, utcnow

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(self, session_factory, retention: timedelta = timedelta(hours=JOB_RETENTION_HOURS)):
        self._session_factory = session_factory
        self._retention = retention
        self._lock = threading.RLock()

    @contextmanager
    def _session(self):
        with self._lock:
            db = self._session_factory()
            try:
                yield db
            finally:
                db.close()

    def create(self, request, now: Optional[datetime] = None) -> Job:
        """Persist a new pending job for a validated request and return it."""
        kind = request_kind(request)
        created_at = now or utcnow()
        job = Job(
            input_ref=request.input_ref,
            platform=detect_platform(request.input_ref),
            operation_kind=kind,
            operation_options=request.operation_options.model_dump(),
            status=JobStatus.PENDING,
            progress=0,
            created_at=created_at,
            expires_at=created_at + self._retention,
        )
        with self._session() as db:
            db.add(job)
            db.commit()
            db.refresh(job)
            db.expunge(job)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._session() as db:
            job = db.get(Job, job_id)
            if job is not None:
                db.expunge(job)
            return job

    def list_jobs(self, page: int = 1, size: int = 15, status: Optional[JobStatus] = None):
        with self._session() as db:
            query = db.query(Job)
            if status:
                query = query.filter(Job.status == status)
            total = query.count()
            items = query.order_by(Job.created_at.desc()).offset((page - 1) * size).limit(size).all()
            db.expunge_all()
            return items, total

    def list_by_status(self, status: JobStatus) -> list[Job]:
        with self._session() as db:
            items = db.query(Job).filter(Job.status == status).order_by(Job.created_at.asc()).all()
            db.expunge_all()
            return items

    def list_expired(self, now: Optional[datetime] = None) -> list[Job]:
        now = now or utcnow()
        with self._session() as db:
            items = db.query(Job).filter(Job.expires_at < now).all()
            db.expunge_all()
            return items

    def count_by_status(self) -> dict:
        counts = {status.value: 0 for status in JobStatus}
        with self._session() as db:
            for job_status, in db.query(Job.status).all():
                counts[job_status.value] += 1
        return counts

    def _update(self, job_id: str, values: dict, *criteria) -> bool:
        with self._session() as db:
            updated = (
                db.query(Job)
                .filter(Job.job_id == job_id, Job.status.not_in(TERMINAL_STATUSES), *criteria)
                .update(values, synchronize_session=False)
            )
            db.commit()
        if not updated:
            logger.debug(f"Ignored update for job {job_id}: {sorted(values)}")
        return bool(updated)

    def set_status(self, job_id: str, status: JobStatus, progress: Optional[int] = None) -> bool:
        values = {"status": status}
        if progress is not None:
            values["progress"] = _clamp(progress)
        if status in TERMINAL_STATUSES:
            values["completed_at"] = utcnow()
        applied = self._update(job_id, values)
        if not applied:
            logger.warning(f"Status update to {status.value} skipped for job {job_id} (missing or finished)")
        return applied

    def set_progress(self, job_id: str, progress: int) -> bool:
        progress = _clamp(progress)
        return self._update(
            job_id,
            {"progress": progress},
            Job.status == JobStatus.PROCESSING,
            Job.progress <= progress,
        )

    def set_output(self, job_id: str, output_path: str) -> bool:
        return self._update(job_id, {"output_path": output_path}, Job.output_path.is_(None))

    def set_download_url(self, job_id: str, download_url: str) -> bool:
        return self._update(job_id, {"download_url": download_url})

    def set_title(self, job_id: str, title: str) -> bool:
        return self._update(job_id, {"title": title})

    def set_error(self, job_id: str, detail: str) -> bool:
        applied = self._update(
            job_id,
            {
                "status": JobStatus.FAILED,
                "error_message": detail or "Processing failed",
                "completed_at": utcnow(),
            },
        )
        if not applied:
            logger.warning(f"Failure of job {job_id} not recorded (missing or finished): {detail}")
        return applied

    def delete(self, job_id: str) -> bool:
        with self._session() as db:
            deleted = db.query(Job).filter(Job.job_id == job_id).delete(synchronize_session=False)
            db.commit()
        return bool(deleted)


def _clamp(progress: int) -> int:
    return max(0, min(100, int(progress)))
