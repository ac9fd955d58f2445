"""In-memory directory of every job created in this process."""
from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .errors import InvalidTransitionError, JobNotFoundError
from .models import JobInfo, JobKind, JobStatus

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobRegistry:
    def __init__(self):
        self._jobs: Dict[str, JobInfo] = {}
        self._lock = threading.Lock()

    def create(self, kind: JobKind) -> JobInfo:
        with self._lock:
            job_id = str(uuid.uuid4())
            while job_id in self._jobs:
                job_id = str(uuid.uuid4())
            job = JobInfo(id=job_id, kind=kind, status=JobStatus.running, created_at=utc_now_iso())
            self._jobs[job_id] = job
            return job.model_copy()

    def get(self, job_id: str) -> JobInfo:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.model_copy()

    def list(self) -> List[JobInfo]:
        with self._lock:
            return [job.model_copy() for job in self._jobs.values()]

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            return job is not None and job.status is JobStatus.running

    def transition(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> JobInfo:
        """Move a running job to a terminal status. Happens at most once per job."""
        status = JobStatus(status)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if not status.terminal:
                raise InvalidTransitionError(f"Job {job_id} cannot go back to {status.value}")
            if job.status.terminal:
                raise InvalidTransitionError(f"Job {job_id} is already {job.status.value}")
            job = job.model_copy(update={"status": status, "finished_at": utc_now_iso(), "error": error})
            self._jobs[job_id] = job
        logger.info("Job %s -> %s", job_id, status.value)
        return job.model_copy()
