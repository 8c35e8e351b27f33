"""Read-only job lookups for status polling and file downloads."""

import os

from models import JobStatus
from utils import content_type_for


class JobNotFound(Exception):
    pass


class OutputNotReady(Exception):
    pass


class OutputMissing(Exception):
    pass


def get_status(store, job_id: str):
    job = store.get(job_id)
    if job is None:
        raise JobNotFound(job_id)
    return job


def download_filename(job) -> str:
    extension = os.path.splitext(job.output_path)[1]
    prefix = job.platform or job.operation_kind.value
    return f"video_{prefix}_{job.job_id}{extension}"


def open_output(store, job_id: str):
    """
    Open a finished job's output file for streaming.

    The file is opened here, before any bytes are sent, so a concurrent
    deletion gives either the whole file or OutputMissing.

    Returns (file object, download filename, content type).
    """
    job = get_status(store, job_id)
    if job.status != JobStatus.COMPLETED or not job.output_path:
        raise OutputNotReady(job_id)
    try:
        handle = open(job.output_path, "rb")
    except FileNotFoundError:
        raise OutputMissing(job_id)
    return handle, download_filename(job), content_type_for(job.output_path)


def iter_file(handle, chunk_size: int = 1024 * 1024):
    with handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk
