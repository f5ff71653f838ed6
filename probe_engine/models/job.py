"""Read-only view of a job as exposed to pollers."""

from collections.abc import Sequence
from typing import Literal

from probe_engine.models.base import Model
from probe_engine.models.result import TestResult

type JobStatus = Literal["queued", "running", "done", "failed"]

FINISHED_STATUSES: frozenset[str] = frozenset({"done", "failed"})


class JobView(Model):
    """Consistent snapshot of a job record."""

    id: str
    status: JobStatus
    total: int
    completed: int
    results: Sequence[TestResult] | None = None
    error: str | None = None
    created_at: int
    report_id: str | None = None
