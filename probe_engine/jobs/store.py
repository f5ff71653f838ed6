"""In-memory registry of job lifecycle records."""

import logging
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from probe_engine.models.job import FINISHED_STATUSES, JobStatus, JobView
from probe_engine.models.result import TestResult

log = logging.getLogger(__name__)


def epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass(kw_only=True)
class Job:
    """Mutable job record, written only by the task that runs it."""

    id: str
    total: int
    created_at: int
    status: JobStatus = "queued"
    completed: int = 0
    results: Sequence[TestResult] | None = None
    error: str | None = None
    report_id: str | None = None
    finished_at: float | None = None

    def to_view(self) -> JobView:
        return JobView(
            id=self.id,
            status=self.status,
            total=self.total,
            completed=self.completed,
            results=list(self.results) if self.results is not None else None,
            error=self.error,
            created_at=self.created_at,
            report_id=self.report_id,
        )


@dataclass(kw_only=True)
class JobStore:
    """Holds every job of the process until it is evicted."""

    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    _jobs: dict[str, Job] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __len__(self) -> int:
        return len(self._jobs)

    def create(self, total: int) -> Job:
        """Register a new queued job with a random identifier."""
        job = Job(id=str(uuid.uuid4()), total=total, created_at=epoch_ms())
        with self._lock:
            self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Job | None:
        """Return the live record; only the owning task may mutate it."""
        return self._jobs.get(job_id)

    def snapshot(self, job_id: str) -> JobView | None:
        """Return a frozen copy of the job, or None if unknown."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.to_view() if job is not None else None

    def update(self, job: Job, **changes: object) -> None:
        """Apply several field changes so readers never see half of them."""
        with self._lock:
            for name, value in changes.items():
                setattr(job, name, value)
            if job.status in FINISHED_STATUSES and job.finished_at is None:
                job.finished_at = self.clock()

    def evict_finished(self, max_age: float) -> int:
        """Drop done/failed jobs that finished more than ``max_age`` seconds ago.

        Returns:
            Number of evicted jobs

        """
        cutoff = self.clock() - max_age
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.finished_at is not None and job.finished_at <= cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            log.info("Evicted %d finished job(s)", len(expired))
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
