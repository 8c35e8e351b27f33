import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import aiofiles
from fastapi import APIRouter, Body, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

# Local imports
from database import SessionLocal, engine, init_db
from models import JobStatus, OperationKind
from operations import OperationAdapter
from reaper import Reaper
from retrieval import JobNotFound, OutputMissing, OutputNotReady, get_status, iter_file, open_output
from schemas import (
    HealthResponse,
    JobAccepted,
    JobListResponse,
    JobResponse,
    JobStatusResponse,
    UploadResponse,
    parse_job_request,
    request_kind,
)
from store import JobStore
from utils import (
    MAX_UPLOAD_MB,
    OUTPUT_DIR,
    REDIS_URL,
    SUPPORTED_UPLOAD_TYPES,
    UPLOAD_DIR,
    USE_CELERY,
    calculate_checksum,
    ensure_storage_dirs,
    resolve_upload,
)
from worker import Scheduler, celery_task

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

UPLOAD_EXTENSIONS = {
    "video/mp4": ".mp4",
    "video/avi": ".avi",
    "video/quicktime": ".mov",
    "video/x-msvideo": ".avi",
}


def redis_available(url: str = REDIS_URL) -> bool:
    try:
        import redis
        r = redis.from_url(url, socket_connect_timeout=1)
        r.ping()
        return True
    except Exception:
        return False


# --- dependencies ---

def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


router = APIRouter(prefix="/api")


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, store: JobStore = Depends(get_store)):
    """Health check with queue counters"""
    scheduler = request.app.state.scheduler
    backend = "Celery" if request.app.state.use_celery else "Internal Threading"
    return {
        "status": "healthy",
        "message": f"API is healthy. Backend: {backend}",
        "queues": {
            "pending": scheduler.pending_count(),
            "active": scheduler.active_count(),
            "jobs": store.count_by_status(),
        },
    }


@router.post("/uploads", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_video(request: Request, file: UploadFile = File(...)):
    """Store an uploaded video; its fileId is the inputRef for processing jobs."""
    if file.content_type not in SUPPORTED_UPLOAD_TYPES:
        raise HTTPException(status_code=400, detail="Unsupported file type. Please use MP4, AVI, or MOV files.")

    content = await file.read()
    if len(content) > MAX_UPLOAD_MB * 1024 * 1024:
        raise HTTPException(status_code=400, detail=f"File size exceeds {MAX_UPLOAD_MB}MB limit.")
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    checksum = calculate_checksum(content)
    upload_dir = request.app.state.upload_dir
    input_path = os.path.join(upload_dir, f"{checksum}{UPLOAD_EXTENSIONS[file.content_type]}")
    if not os.path.exists(input_path):
        os.makedirs(upload_dir, exist_ok=True)
        async with aiofiles.open(input_path, "wb") as out_file:
            await out_file.write(content)
    else:
        # Same content uploaded again: restart its retention window
        os.utime(input_path)
    logger.info(f"Stored upload {checksum} ({len(content)} bytes)")

    return {
        "file_id": checksum,
        "filename": file.filename or "unknown",
        "size": len(content),
        "content_type": file.content_type,
    }


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    page: int = Query(1, ge=1),
    size: int = Query(15, ge=1, le=100),
    status: Optional[JobStatus] = None,
    store: JobStore = Depends(get_store),
):
    """List jobs with pagination and status filter"""
    items, total = store.list_jobs(page=page, size=size, status=status)
    return {
        "items": [JobResponse.model_validate(job) for job in items],
        "total": total,
        "page": page,
        "size": size,
        "pages": (total + size - 1) // size,
    }


@router.post("/jobs", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(request: Request, payload: dict = Body(...)):
    """
    Submit a job: {inputRef, operationKind, operationOptions}.

    Invalid URLs, options or kinds are rejected here and never queued.
    """
    try:
        job_request = parse_job_request(payload)
    except ValidationError as e:
        raise RequestValidationError(e.errors())

    kind = request_kind(job_request)
    if kind != OperationKind.DOWNLOAD and not job_request.input_ref.startswith(("http://", "https://")):
        if resolve_upload(job_request.input_ref, request.app.state.upload_dir) is None:
            raise HTTPException(status_code=400, detail="Unknown upload reference")

    if request.app.state.use_celery:
        job = request.app.state.store.create(job_request)
        celery_task.delay(job.job_id)
        logger.info(f"Job {job.job_id} sent to Celery")
    else:
        job = request.app.state.scheduler.submit(job_request)

    return {"job_id": job.job_id, "status": job.status}


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, store: JobStore = Depends(get_store)):
    try:
        return JobResponse.model_validate(get_status(store, job_id))
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
async def job_status(job_id: str, store: JobStore = Depends(get_store)):
    """Get status and progress of a job"""
    try:
        job = get_status(store, job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse.model_validate(job)


@router.get("/jobs/{job_id}/file")
def download_file(job_id: str, store: JobStore = Depends(get_store)):
    """Stream the output of a completed job as an attachment"""
    try:
        handle, filename, content_type = open_output(store, job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except OutputNotReady:
        raise HTTPException(status_code=404, detail="File not ready for download")
    except OutputMissing:
        raise HTTPException(status_code=404, detail="File not found")

    headers = {
        "Content-Disposition": f'attachment; filename="{filename}"',
        "Content-Length": str(os.fstat(handle.fileno()).st_size),
        "X-Job-Id": job_id,
    }
    return StreamingResponse(iter_file(handle), media_type=content_type, headers=headers)


@router.post("/jobs/{job_id}/cancel", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def cancel_job(job_id: str, store: JobStore = Depends(get_store), scheduler: Scheduler = Depends(get_scheduler)):
    job = store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status.is_terminal or not scheduler.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Job is {job.status.value} and cannot be cancelled")
    job = store.get(job_id) or job
    return {"job_id": job_id, "status": job.status}


def create_app(
    store: Optional[JobStore] = None,
    adapter: Optional[OperationAdapter] = None,
    scheduler: Optional[Scheduler] = None,
    reaper: Optional[Reaper] = None,
    use_celery: bool = USE_CELERY,
    upload_dir: str = UPLOAD_DIR,
    output_dir: str = OUTPUT_DIR,
    run_background: bool = True,
) -> FastAPI:
    """
    Build the application and its collaborators.

    Anything not passed in is constructed from the environment settings.
    Worker threads and the reaper run for the lifetime of the app.
    """
    if store is None:
        init_db(engine)
        store = JobStore(SessionLocal)
    if scheduler is None:
        scheduler = Scheduler(store, adapter or OperationAdapter(output_dir=output_dir, upload_dir=upload_dir))
    if reaper is None:
        reaper = Reaper(store, scheduler, upload_dir=upload_dir, output_dir=output_dir)

    if use_celery and not redis_available():
        logger.warning("Redis not found. Using internal threading exclusively.")
        use_celery = False

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_storage_dirs(upload_dir, output_dir)
        if run_background:
            if not use_celery:
                logger.info("Starting internal worker and recovering jobs (Stand-alone mode)")
                scheduler.recover()
                scheduler.start()
            reaper.start()
        yield
        reaper.stop()
        scheduler.stop()

    app = FastAPI(
        title="Video Job Service",
        version="1.0.0",
        description="Queued video downloads and processing with polling and expiring downloads",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.scheduler = scheduler
    app.state.reaper = reaper
    app.state.use_celery = use_celery
    app.state.upload_dir = upload_dir
    app.state.output_dir = output_dir

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    print("\nStarting Video Job Service...")
    print("API: http://0.0.0.0:8001")
    print("Docs: http://0.0.0.0:8001/docs")
    uvicorn.run(app, host="0.0.0.0", port=8001)
