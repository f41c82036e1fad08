"""
BreathLens API - Job Manager
=============================
In-memory job state tracker with filesystem storage paths.
"""

import uuid
from threading import Lock
from typing import Dict, Optional
from pathlib import Path
from dataclasses import dataclass, field
from datetime import datetime

from core.pipeline import CancellationToken, ProcessingParameters
from runtime.video import ROI
from .schemas import JobState


TERMINAL_STATES = {JobState.COMPLETED, JobState.CANCELLED, JobState.FAILED}


@dataclass
class Job:
    """Represents a magnification job."""
    job_id: str
    filename: str
    input_path: Path
    output_path: Optional[Path] = None
    state: JobState = JobState.UPLOADED
    progress: int = 0
    stage: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    failed_stage: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    roi: Optional[ROI] = None
    params: Optional[ProcessingParameters] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)


class JobManager:
    """
    In-memory job state tracker.

    Manages job lifecycle: uploaded → queued → processing → completed | cancelled | failed
    """

    def __init__(self, uploads_dir: Path, outputs_dir: Path):
        self.uploads_dir = uploads_dir
        self.outputs_dir = outputs_dir
        self.jobs: Dict[str, Job] = {}
        self._lock = Lock()

        # Ensure directories exist
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)

    def create_job(self, filename: str, input_path: Path, job_id: Optional[str] = None) -> Job:
        """Create a new job after file upload."""
        job = Job(
            job_id=job_id or str(uuid.uuid4()),
            filename=filename,
            input_path=input_path,
            state=JobState.UPLOADED
        )
        with self._lock:
            self.jobs[job.job_id] = job
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get job by ID."""
        return self.jobs.get(job_id)

    def update_state(self, job_id: str, state: JobState,
                     progress: int = None, error: str = None) -> Optional[Job]:
        """Update job state and progress."""
        with self._lock:
            job = self.jobs.get(job_id)
            if job:
                job.state = state
                if progress is not None:
                    job.progress = progress
                if error is not None:
                    job.error = error
        return job

    def update_progress(self, job_id: str, progress: int, stage: str) -> Optional[Job]:
        """Record pipeline progress (0-100) without changing state."""
        with self._lock:
            job = self.jobs.get(job_id)
            if job:
                job.progress = max(job.progress, progress)
                job.stage = stage
        return job

    def fail(self, job_id: str, error: str, error_kind: str = None,
             failed_stage: str = None) -> Optional[Job]:
        """Mark a job failed with error detail."""
        with self._lock:
            job = self.jobs.get(job_id)
            if job:
                job.state = JobState.FAILED
                job.error = error
                job.error_kind = error_kind
                job.failed_stage = failed_stage
        return job

    def set_output(self, job_id: str, output_path: Path) -> Optional[Job]:
        """Set the output file path for a completed job."""
        job = self.jobs.get(job_id)
        if job:
            job.output_path = output_path
        return job

    def queue_job(self, job_id: str, roi: Optional[ROI],
                  params: ProcessingParameters) -> Optional[Job]:
        """Queue a job for processing with a fresh cancellation token."""
        with self._lock:
            job = self.jobs.get(job_id)
            if job:
                job.state = JobState.QUEUED
                job.progress = 0
                job.stage = None
                job.error = None
                job.error_kind = None
                job.failed_stage = None
                job.roi = roi
                job.params = params
                job.cancel_token = CancellationToken()
        return job

    def cancel_job(self, job_id: str) -> Optional[Job]:
        """
        Request cancellation.

        A queued job is cancelled immediately; a running job stops at the
        next frame boundary.
        """
        with self._lock:
            job = self.jobs.get(job_id)
            if job and job.state not in TERMINAL_STATES:
                job.cancel_token.cancel()
                if job.state == JobState.QUEUED:
                    job.state = JobState.CANCELLED
        return job
