"""In-memory job registry: job lifecycle, one-shot artifact delivery and expiry."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

from engine.errors import JobFailedError, NotFoundError, StillProcessingError
from engine.events import log_event
from engine.paths import safe_unlink

logger = logging.getLogger(__name__)

JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

TERMINAL_STATUSES = (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
)


def utc_now():
    return datetime.now(timezone.utc)


@dataclass
class Job:
    id: str
    source_ref: Any
    trim_range: Any
    status: str
    created_at: datetime
    artifact_path: Optional[str] = None
    filename: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None
    served: bool = False

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class JobView:
    job_id: str
    status: str
    created_at: datetime
    file_size: Optional[int] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jobId": self.job_id, "status": self.status}
        if self.file_size is not None:
            payload["fileSize"] = self.file_size
        if self.error is not None:
            payload["error"] = self.error
        return payload


class JobRegistry:
    """Lock-guarded map of job id to job state.

    Each job is written by exactly one runner; the registry only guarantees
    that a terminal transition is applied at most once and never to a job that
    has been removed. Files are deleted by whichever caller removed the job
    from the map, so no two callers ever delete the same artifact.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()
        self._clock = clock or utc_now

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id) -> bool:
        with self._lock:
            return job_id in self._jobs

    def create_job(self, source_ref, trim_range=None) -> Job:
        job = Job(
            id=uuid4().hex,
            source_ref=source_ref,
            trim_range=trim_range,
            status=JOB_STATUS_PROCESSING,
            created_at=self._clock(),
        )
        with self._lock:
            self._jobs[job.id] = job
        log_event(logging.INFO, "job_created", job_id=job.id, source_url=getattr(source_ref, "source_url", None))
        return replace(job)

    def get(self, job_id) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def get_status(self, job_id) -> JobView:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"job not found: {job_id}")
            return JobView(
                job_id=job.id,
                status=job.status,
                created_at=job.created_at,
                file_size=job.file_size,
                error=job.error,
                completed_at=job.completed_at,
            )

    def complete(self, job_id, artifact_path, filename=None) -> bool:
        """Move a processing job to completed. Returns ``False`` when discarded."""
        try:
            size = os.path.getsize(artifact_path)
        except OSError:
            size = None
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JOB_STATUS_PROCESSING:
                current = job.status if job else None
                applied = False
            else:
                job.status = JOB_STATUS_COMPLETED
                job.artifact_path = str(artifact_path)
                job.filename = filename or os.path.basename(str(artifact_path))
                job.file_size = size
                job.completed_at = self._clock()
                applied = True
        if not applied:
            log_event(logging.WARNING, "job_update_discarded", job_id=job_id, update="completed", current=current)
            return False
        log_event(logging.INFO, "job_completed", job_id=job_id, file_size=size)
        return True

    def fail(self, job_id, error) -> bool:
        """Move a processing job to failed. Returns ``False`` when discarded."""
        message = str(error) or type(error).__name__
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JOB_STATUS_PROCESSING:
                current = job.status if job else None
                applied = False
            else:
                job.status = JOB_STATUS_FAILED
                job.error = message
                job.completed_at = self._clock()
                applied = True
        if not applied:
            log_event(logging.WARNING, "job_update_discarded", job_id=job_id, update="failed", current=current)
            return False
        log_event(logging.WARNING, "job_failed", job_id=job_id, error=message)
        return True

    def acquire_artifact(self, job_id) -> tuple[str, str]:
        """Claim a completed job's artifact for delivery.

        Returns ``(path, filename)`` and marks the job served, so any later
        claim raises ``NotFoundError``. Raises ``StillProcessingError`` or
        ``JobFailedError`` for jobs that have no artifact to deliver.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.served:
                raise NotFoundError(f"job not found: {job_id}")
            if job.status == JOB_STATUS_PROCESSING:
                raise StillProcessingError(f"job still processing: {job_id}")
            if job.status == JOB_STATUS_FAILED:
                raise JobFailedError(job.error or "job failed")
            if not job.artifact_path or not os.path.isfile(job.artifact_path):
                raise NotFoundError(f"artifact missing for job: {job_id}")
            job.served = True
            return job.artifact_path, job.filename or os.path.basename(job.artifact_path)

    def remove(self, job_id) -> bool:
        """Drop the job and delete its artifact. Tolerates unknown ids."""
        with self._lock:
            job = self._jobs.pop(job_id, None)
        if job is None:
            return False
        if job.artifact_path:
            try:
                safe_unlink(job.artifact_path)
            except OSError:
                logger.warning("Artifact cleanup failed for %s", job.artifact_path)
        return True

    def finalize_delivery(self, job_id, *, delivered: bool) -> bool:
        removed = self.remove(job_id)
        log_event(logging.INFO, "job_delivered" if delivered else "job_delivery_incomplete", job_id=job_id)
        return removed

    def sweep_expired(self, max_age) -> int:
        """Remove every job older than ``max_age`` (seconds or timedelta).

        Served jobs are skipped; their delivery is still streaming the artifact
        and ``finalize_delivery`` removes them once it ends.
        """
        if not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=float(max_age))
        cutoff = self._clock() - max_age
        with self._lock:
            expired = [job for job in self._jobs.values() if job.created_at < cutoff and not job.served]
            for job in expired:
                self._jobs.pop(job.id, None)
        for job in expired:
            if job.artifact_path:
                try:
                    safe_unlink(job.artifact_path)
                except OSError:
                    logger.warning("Artifact cleanup failed for %s", job.artifact_path)
            log_event(logging.INFO, "job_expired", job_id=job.id, status=job.status)
        if expired:
            logger.info("Expired %d job(s)", len(expired))
        return len(expired)
