import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from models import JobStatus
from utils import JOB_RETENTION_HOURS, OUTPUT_DIR, REAPER_INTERVAL_SECONDS, UPLOAD_DIR, remove_file, utcnow

logger = logging.getLogger(__name__)


def _mtime(entry) -> datetime:
    return datetime.fromtimestamp(entry.stat().st_mtime, timezone.utc).replace(tzinfo=None)


class Reaper:
    """
    Periodic sweep deleting expired jobs together with their output files.

    Expired jobs that are still processing are left for a later sweep so the
    worker never writes into a deleted record. Uploads older than the
    retention window are removed as well, unless a pending or processing job
    still reads them. Output files whose record is gone are reclaimed once
    they pass the same age.
    """

    def __init__(
        self,
        store,
        scheduler=None,
        interval: float = REAPER_INTERVAL_SECONDS,
        upload_dir: Optional[str] = UPLOAD_DIR,
        upload_max_age: timedelta = timedelta(hours=JOB_RETENTION_HOURS),
        output_dir: Optional[str] = OUTPUT_DIR,
    ):
        self.store = store
        self.scheduler = scheduler
        self.interval = interval
        self.upload_dir = upload_dir
        self.upload_max_age = upload_max_age
        self.output_dir = output_dir
        self._stop = threading.Event()
        self._thread = None

    def _in_flight(self, job) -> bool:
        if job.status == JobStatus.PROCESSING:
            return True
        return self.scheduler is not None and self.scheduler.is_active(job.job_id)

    def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """Delete everything expired as of `now`; return the deleted job ids."""
        now = now or utcnow()
        deleted = []
        for job in self.store.list_expired(now):
            if self._in_flight(job):
                logger.info(f"Deferring cleanup of job {job.job_id}: still processing")
                continue
            try:
                if job.output_path and not remove_file(job.output_path):
                    logger.warning(f"Output for job {job.job_id} already gone: {job.output_path}")
            except OSError as e:
                logger.error(f"File cleanup error for job {job.job_id}: {e}")
            if self.store.delete(job.job_id):
                deleted.append(job.job_id)
                logger.info(f"Reaped expired job {job.job_id}")
        self.sweep_uploads(now)
        self.sweep_orphans(now)
        return deleted

    def _referenced_uploads(self) -> set:
        referenced = set()
        for status in (JobStatus.PENDING, JobStatus.PROCESSING):
            referenced.update(job.input_ref for job in self.store.list_by_status(status))
        return referenced

    def sweep_uploads(self, now: datetime) -> int:
        if not self.upload_dir or not os.path.isdir(self.upload_dir):
            return 0
        referenced = self._referenced_uploads()
        removed = 0
        for entry in os.scandir(self.upload_dir):
            if not entry.is_file() or now - _mtime(entry) <= self.upload_max_age:
                continue
            if os.path.splitext(entry.name)[0] in referenced:
                logger.info(f"Keeping upload {entry.name}: a queued job still uses it")
                continue
            try:
                if remove_file(entry.path):
                    removed += 1
                    logger.info(f"Deleted stale upload {entry.name}")
            except OSError as e:
                logger.warning(f"Failed to delete upload {entry.path}: {e}")
        return removed

    def sweep_orphans(self, now: datetime) -> int:
        """Remove old output files that no job record points at."""
        if not self.output_dir or not os.path.isdir(self.output_dir):
            return 0
        removed = 0
        for entry in os.scandir(self.output_dir):
            if not entry.is_file() or now - _mtime(entry) <= self.upload_max_age:
                continue
            if self.store.get(os.path.splitext(entry.name)[0]) is not None:
                continue
            try:
                if remove_file(entry.path):
                    removed += 1
                    logger.info(f"Deleted orphaned output {entry.name}")
            except OSError as e:
                logger.warning(f"Failed to delete output {entry.path}: {e}")
        return removed

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Cleanup error: {e}", exc_info=True)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="reaper", daemon=True)
        self._thread.start()
        logger.info(f"Reaper started, sweeping every {self.interval}s")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
