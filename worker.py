import logging
import threading
from collections import deque
from typing import Optional

from celery import Celery

from models import JobStatus
from operations import OperationAdapter, OperationResult
from utils import PROGRESS_STEP, REDIS_URL, WORKER_CONCURRENCY

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DOWNLOAD_URL_TEMPLATE = "/api/jobs/{job_id}/file"

# Initialize Celery
celery_app = Celery(
    "video_worker",
    broker=REDIS_URL,
    backend=REDIS_URL
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)


class ProgressThrottle:
    """
    Progress sink handed to the operation adapter.

    Maps operation progress p into 10 + 0.8 * p (dispatch already wrote 5,
    the terminal write owns 100) and forwards a value only once it reaches
    the next multiple of `step`.
    """

    def __init__(self, store, job_id: str, step: int = PROGRESS_STEP):
        self.store = store
        self.job_id = job_id
        self.step = max(1, step)
        self.last_sent = 0

    def __call__(self, progress: int) -> None:
        mapped = 10 + int(max(0, min(100, progress)) * 0.8)
        mapped -= mapped % self.step
        if mapped <= self.last_sent:
            return
        self.last_sent = mapped
        self.store.set_progress(self.job_id, mapped)


class Scheduler:
    """
    FIFO job queue drained by a fixed pool of worker threads.

    With the default single slot at most one job is processing at a time and
    jobs complete in submission order.
    """

    def __init__(
        self,
        store,
        adapter: OperationAdapter,
        concurrency: int = WORKER_CONCURRENCY,
        progress_step: int = PROGRESS_STEP,
    ):
        self.store = store
        self.adapter = adapter
        self.concurrency = max(1, concurrency)
        self.progress_step = progress_step
        self._pending = deque()
        self._active = {}
        self._cond = threading.Condition()
        self._threads = []
        self._running = False

    # --- submission ---

    def submit(self, request):
        job = self.store.create(request)
        self.enqueue(job.job_id)
        logger.info(f"Job {job.job_id} ({job.operation_kind.value}) queued")
        return job

    def enqueue(self, job_id: str) -> None:
        with self._cond:
            self._pending.append(job_id)
            self._cond.notify()

    def cancel(self, job_id: str) -> bool:
        """Cancel a pending or running job. Returns False if it is neither."""
        with self._cond:
            if job_id in self._pending:
                self._pending.remove(job_id)
                queued = True
            elif job_id in self._active:
                self._active[job_id].set()
                logger.info(f"Cancellation requested for running job {job_id}")
                return True
            else:
                queued = False
        if queued:
            self.store.set_error(job_id, "Cancelled")
            logger.info(f"Job {job_id} cancelled before dispatch")
        return queued

    def recover(self) -> None:
        """Reconcile jobs left behind by a previous process."""
        for job in self.store.list_by_status(JobStatus.PROCESSING):
            self.store.set_error(job.job_id, "Interrupted by server restart")
            logger.warning(f"Job {job.job_id} was interrupted by a restart")
        for job in self.store.list_by_status(JobStatus.PENDING):
            self.enqueue(job.job_id)
            logger.info(f"Recovered job {job.job_id} from database")

    # --- introspection ---

    def is_active(self, job_id: str) -> bool:
        with self._cond:
            return job_id in self._active

    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    def active_count(self) -> int:
        with self._cond:
            return len(self._active)

    # --- execution ---

    def run_job(self, job_id: str, cancel_event: Optional[threading.Event] = None) -> None:
        job = self.store.get(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found in database.")
            return
        if job.status != JobStatus.PENDING or not self.store.set_status(job_id, JobStatus.PROCESSING, 5):
            logger.warning(f"Job {job_id} is {job.status.value}, not dispatching")
            return

        logger.info(f"Processing job {job_id}...")
        try:
            result = self.adapter.run(
                job,
                on_progress=ProgressThrottle(self.store, job_id, self.progress_step),
                cancel_event=cancel_event,
            )
        except Exception as e:
            logger.error(f"Error processing job {job_id}: {e}", exc_info=True)
            result = OperationResult.failed(str(e) or "Processing failed")

        if result.success:
            if result.title:
                self.store.set_title(job_id, result.title)
            self.store.set_output(job_id, result.output_path)
            self.store.set_download_url(job_id, DOWNLOAD_URL_TEMPLATE.format(job_id=job_id))
            self.store.set_status(job_id, JobStatus.COMPLETED, 100)
            logger.info(f"Job {job_id} completed successfully.")
        else:
            self.store.set_error(job_id, result.error or "Processing failed")
            logger.info(f"Job {job_id} failed: {result.error}")

    def _next(self):
        with self._cond:
            while self._running and not self._pending:
                self._cond.wait()
            if not self._running:
                return None, None
            job_id = self._pending.popleft()
            cancel_event = threading.Event()
            self._active[job_id] = cancel_event
            return job_id, cancel_event

    def _worker_loop(self) -> None:
        while True:
            job_id, cancel_event = self._next()
            if job_id is None:
                return
            try:
                self.run_job(job_id, cancel_event)
            except Exception as e:
                logger.error(f"Internal worker error on job {job_id}: {e}", exc_info=True)
                self.store.set_error(job_id, str(e) or "Processing failed")
            finally:
                with self._cond:
                    self._active.pop(job_id, None)

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
        for slot in range(self.concurrency):
            thread = threading.Thread(target=self._worker_loop, name=f"job-worker-{slot}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Internal worker started with {self.concurrency} slot(s).")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._cond:
            self._running = False
            for cancel_event in self._active.values():
                cancel_event.set()
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []


def build_scheduler(session_factory=None) -> Scheduler:
    from database import SessionLocal, engine, init_db
    from store import JobStore

    init_db(engine)
    return Scheduler(JobStore(session_factory or SessionLocal), OperationAdapter())


@celery_app.task(name="process_job")
def celery_task(job_id: str):
    return build_scheduler().run_job(job_id)


def run_worker():
    """Run as a Celery node; the solo pool keeps execution to one job at a time."""
    logger.info("Starting worker as Celery node...")
    celery_app.start(argv=["worker", "--loglevel=info", "-P", "solo"])


if __name__ == "__main__":
    run_worker()
