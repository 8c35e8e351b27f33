"""Shared helpers for the test suite."""

import threading
import time
from datetime import timedelta

from database import init_db, make_engine, make_session_factory
from models import OperationKind
from operations import Operation, OperationCancelled
from schemas import parse_job_request
from store import JobStore

YOUTUBE_URL = "https://youtube.com/watch?v=abc"


def make_store(retention=timedelta(hours=24)):
    engine = make_engine("sqlite://")
    init_db(engine)
    return JobStore(make_session_factory(engine), retention=retention)


def download_request(url=YOUTUBE_URL, fmt="mp4"):
    return parse_job_request({
        "inputRef": url,
        "operationKind": "download",
        "operationOptions": {"format": fmt},
    })


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    raise AssertionError("condition not met in time")


class FakeOperation(Operation):
    """
    Stand-in executor that writes a small file.

    Inputs listed in `fail_on` raise; while `gate` is unset the operation
    blocks (honouring cancellation).
    """

    def __init__(self, kind=OperationKind.DOWNLOAD, payload=b"fake video bytes", fail_on=(), gate=None,
                 progress=(25, 50, 75, 100)):
        self.kind = kind
        self.payload = payload
        self.fail_on = set(fail_on)
        self.gate = gate
        self.progress = progress
        self.calls = []
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def output_extension(self, options):
        return f".{options.get('format', 'mp4')}"

    def execute(self, job, work_dir, on_progress, cancel_event):
        with self._lock:
            self.calls.append(job.job_id)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                while not self.gate.wait(0.01):
                    if cancel_event is not None and cancel_event.is_set():
                        raise OperationCancelled()
            for value in self.progress:
                on_progress(value)
            if job.input_ref in self.fail_on:
                raise RuntimeError("Video unavailable")
            output = work_dir / f"output{self.output_extension(job.operation_options)}"
            output.write_bytes(self.payload)
            return output, "Fake title"
        finally:
            with self._lock:
                self.running -= 1
