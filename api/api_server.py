"""
BreathLens API Server
======================
FastAPI adapter layer over the magnification engine.

This module provides HTTP endpoints to:
1. Upload a video
2. Start magnification of a region (runs in the background)
3. Poll job status and progress
4. Cancel a running job
5. Download the magnified result

It holds no processing logic; jobs call tools.offline_processor.
"""

import logging
import uuid
from pathlib import Path

from fastapi import FastAPI, File, UploadFile, HTTPException, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from core.pipeline import ProcessingParameters
from core.results import Cancelled, Failed
from runtime.errors import ErrorKind, MagnificationError
from runtime.video import ROI
from tools.offline_processor import magnify_video_file

from .schemas import (
    UploadResponse, MagnifyRequest, StatusResponse, JobState
)
from .job_manager import Job, JobManager, TERMINAL_STATES


logger = logging.getLogger(__name__)

# === Configuration ===
API_DIR = Path(__file__).parent
UPLOADS_DIR = API_DIR / "storage" / "uploads"
OUTPUTS_DIR = API_DIR / "storage" / "outputs"

MAX_FILE_SIZE = 512 * 1024 * 1024  # 512MB
ALLOWED_MIME_TYPES = {
    "video/mp4": ".mp4"
}

# === Initialize App ===
app = FastAPI(
    title="BreathLens API",
    description="Motion magnification of breathing and other subtle periodic movement",
    version="0.1.0"
)

# Enable CORS for frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for local development
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize job manager
job_manager = JobManager(UPLOADS_DIR, OUTPUTS_DIR)


# === Helper Functions ===

def validate_file(file: UploadFile) -> None:
    """Validate uploaded file type."""
    if file.content_type not in ALLOWED_MIME_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file type: {file.content_type}. Allowed: MP4"
        )


def require_job(job_id: str) -> Job:
    job = job_manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
    return job


def status_of(job: Job) -> StatusResponse:
    return StatusResponse(
        job_id=job.job_id,
        state=job.state,
        progress=job.progress,
        stage=job.stage,
        error=job.error,
        error_kind=job.error_kind,
        failed_stage=job.failed_stage
    )


def process_job_background(job_id: str) -> None:
    """
    Background task running one magnification job.

    Runs in the server's worker thread pool; progress and the terminal
    result are written back to the job record.
    """
    job = job_manager.get_job(job_id)
    if not job or job.state != JobState.QUEUED:
        return

    job_manager.update_state(job_id, JobState.PROCESSING)
    output_path = OUTPUTS_DIR / f"{job.job_id}_magnified.mp4"

    def on_progress(fraction: float, stage: str):
        job_manager.update_progress(job_id, int(fraction * 100), stage)

    try:
        result = magnify_video_file(
            str(job.input_path),
            str(output_path),
            roi=job.roi,
            params=job.params,
            cancel_token=job.cancel_token,
            progress=on_progress
        )
    except (OSError, ValueError, MagnificationError) as e:
        logger.exception("[API] Job %s could not be processed", job_id)
        kind = e.kind.value if isinstance(e, MagnificationError) else "io"
        job_manager.fail(job_id, str(e), error_kind=kind)
        return
    except Exception as e:
        logger.exception("[API] Job %s failed unexpectedly", job_id)
        job_manager.fail(job_id, str(e), error_kind=ErrorKind.RESOURCE.value)
        return

    if isinstance(result, Cancelled):
        job_manager.update_state(job_id, JobState.CANCELLED)
        logger.info("[API] Job %s cancelled after %d frames", job_id, result.frames_completed)
    elif isinstance(result, Failed):
        job_manager.fail(
            job_id,
            result.describe(),
            error_kind=result.kind.value,
            failed_stage=result.stage
        )
    else:
        job_manager.set_output(job_id, output_path)
        job_manager.update_state(job_id, JobState.COMPLETED, progress=100)


# === API Endpoints ===

@app.post("/api/upload", response_model=UploadResponse)
async def upload_file(file: UploadFile = File(...)):
    """
    Upload a video for magnification.

    Accepts: MP4 video
    Max size: 512MB

    Returns job_id for tracking.
    """
    validate_file(file)

    # Generate unique filename
    ext = ALLOWED_MIME_TYPES[file.content_type]
    job_id = str(uuid.uuid4())
    file_path = UPLOADS_DIR / f"{job_id}{ext}"

    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)

    # Save file with size check
    total_size = 0
    with open(file_path, "wb") as buffer:
        while chunk := await file.read(1024 * 1024):  # 1MB chunks
            total_size += len(chunk)
            if total_size > MAX_FILE_SIZE:
                buffer.close()
                file_path.unlink()  # Delete partial file
                raise HTTPException(
                    status_code=413,
                    detail="File too large. Maximum size: 512MB"
                )
            buffer.write(chunk)

    job = job_manager.create_job(file.filename, file_path, job_id=job_id)

    return UploadResponse(
        job_id=job.job_id,
        filename=file.filename
    )


@app.post("/api/process", response_model=StatusResponse)
async def process_file(request: MagnifyRequest, background_tasks: BackgroundTasks):
    """
    Start magnifying an uploaded video.

    The processing runs in the background (non-blocking).
    Poll /api/status/{job_id} to check progress.
    """
    job = require_job(request.job_id)

    if job.state not in [JobState.UPLOADED, JobState.CANCELLED, JobState.FAILED]:
        raise HTTPException(
            status_code=400,
            detail=f"Job cannot be processed in state: {job.state.value}"
        )

    roi = None
    if request.roi is not None:
        roi = ROI(request.roi.x, request.roi.y, request.roi.width, request.roi.height)

    params = ProcessingParameters(
        gain=request.gain,
        f_min=request.f_min,
        f_max=request.f_max,
        pyramid_depth=request.pyramid_depth
    )

    job_manager.queue_job(request.job_id, roi, params)
    background_tasks.add_task(process_job_background, request.job_id)

    return status_of(job)


@app.get("/api/status/{job_id}", response_model=StatusResponse)
async def get_status(job_id: str):
    """
    Get the current status of a job.

    States: uploaded, queued, processing, completed, cancelled, failed
    Progress: 0-100
    """
    job = require_job(job_id)

    return status_of(job)


@app.post("/api/cancel/{job_id}", response_model=StatusResponse)
async def cancel_job(job_id: str):
    """
    Cancel a queued or running job.

    A running job stops at the next frame boundary and ends as 'cancelled'.
    """
    job = require_job(job_id)

    if job.state == JobState.UPLOADED or job.state in TERMINAL_STATES:
        raise HTTPException(
            status_code=400,
            detail=f"Job cannot be cancelled in state: {job.state.value}"
        )

    job_manager.cancel_job(job_id)
    return status_of(job)


@app.get("/api/result/{job_id}")
async def get_result(job_id: str):
    """
    Download the magnified video.

    Only available after job state is 'completed'.
    """
    job = require_job(job_id)

    if job.state != JobState.COMPLETED:
        raise HTTPException(
            status_code=400,
            detail=f"Result not ready. Current state: {job.state.value}"
        )

    if not job.output_path or not job.output_path.exists():
        raise HTTPException(status_code=404, detail="Result file not found")

    return FileResponse(
        path=job.output_path,
        filename=f"magnified_{job.filename}",
        media_type="video/mp4"
    )


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "BreathLens API"}


# === Run Server ===

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(message)s')
    logger.info("[API] Uploads directory: %s", UPLOADS_DIR)
    logger.info("[API] Outputs directory: %s", OUTPUTS_DIR)

    uvicorn.run(
        "api.api_server:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
