"""Admission and concurrent execution of probe batches."""

import asyncio
import logging
import uuid
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from probe_engine.admission.allowlist import Allowlist
from probe_engine.admission.quota import QuotaLimiter
from probe_engine.admission.ssrf import SsrfGuard
from probe_engine.dispatch.prober import Prober
from probe_engine.errors import (
    AllowlistRejection,
    BatchValidationError,
    BlockedTest,
    QuotaExceeded,
    SsrfRejection,
)
from probe_engine.jobs.store import Job, JobStore, epoch_ms
from probe_engine.models.job import JobView
from probe_engine.models.probe import DEFAULT_CONCURRENCY, DEFAULT_TIMEOUT_MS, TestSpec
from probe_engine.models.result import Report, TestResult
from probe_engine.reports.store import ReportStore

log = logging.getLogger(__name__)

ANONYMOUS_IDENTITY = "ip:anonymous"
NOT_IN_ALLOWLIST = "Not in allowlist"
MIN_TIMEOUT_MS = 100


@dataclass(kw_only=True)
class DispatchScheduler:
    """Admits probe batches and runs each one as a background job.

    Admission runs allowlist, SSRF and quota checks in that order, each
    raising its own error. Admitted batches are executed by a bounded pool of
    worker coroutines; progress is observable only through the job record.
    """

    prober: Prober
    job_store: JobStore
    report_store: ReportStore
    ssrf_guard: SsrfGuard
    quota: QuotaLimiter
    allowlist: Allowlist | None = None
    _tasks: set[asyncio.Task[None]] = field(default_factory=set, repr=False)

    async def submit(
        self,
        tests: Sequence[TestSpec],
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        concurrency: int = DEFAULT_CONCURRENCY,
        identity: str = ANONYMOUS_IDENTITY,
    ) -> str:
        """Admit a batch and start executing it.

        Args:
            tests: Probes to run, in the order results will be reported
            timeout_ms: Per-request timeout applied to every probe
            concurrency: Requested number of workers
            identity: Quota key of the caller (see ``identity_key``)

        Returns:
            Identifier of the queued job

        Raises:
            BatchValidationError: If the batch or its options are malformed
            AllowlistRejection: If a target is outside the allowlist
            SsrfRejection: If a target is local, private, or unresolvable
            QuotaExceeded: If the caller has no requests left in its window

        """
        tests = list(tests)
        self._validate_options(tests, timeout_ms, concurrency)
        self._check_allowlist(tests)

        findings = await self.ssrf_guard.validate_batch(tests)
        if findings:
            log.info("Batch refused by SSRF guard: %d target(s)", len(findings))
            raise SsrfRejection(findings)

        decision = self.quota.hit(identity)
        if not decision.allowed:
            raise QuotaExceeded(identity, decision.remaining, decision.reset_ms)

        job = self.job_store.create(len(tests))
        task = asyncio.create_task(
            self._run_job(job, tests, timeout_ms, concurrency), name=f"job-{job.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        log.info(
            "Queued job %s: %d test(s), concurrency=%d, timeout=%dms",
            job.id,
            len(tests),
            concurrency,
            timeout_ms,
        )
        return job.id

    def get_job(self, job_id: str) -> JobView | None:
        return self.job_store.snapshot(job_id)

    def get_report(self, report_id: str) -> Report | None:
        return self.report_store.get(report_id)

    async def join(self) -> None:
        """Wait until every job started so far has finished."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def aclose(self, timeout: float = 10.0) -> None:
        """Let running jobs finish for up to ``timeout`` seconds, then cancel them."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            log.warning("Cancelled %d unfinished job(s) on shutdown", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    def _validate_options(
        self, tests: Sequence[TestSpec], timeout_ms: int, concurrency: int
    ) -> None:
        errors: list[dict[str, str]] = []
        if not tests:
            errors.append({"field": "tests", "message": "at least one test is required"})
        if timeout_ms < MIN_TIMEOUT_MS:
            errors.append(
                {"field": "timeoutMs", "message": f"must be >= {MIN_TIMEOUT_MS}"}
            )
        if concurrency < 1:
            errors.append({"field": "concurrency", "message": "must be >= 1"})
        if errors:
            raise BatchValidationError(errors)

    def _check_allowlist(self, tests: Sequence[TestSpec]) -> None:
        if self.allowlist is None:
            return
        blocked = [
            BlockedTest(index=index, url=test.url, reason=NOT_IN_ALLOWLIST)
            for index, test in enumerate(tests)
            if not self.allowlist.allows(test.url)
        ]
        if blocked:
            log.info("Batch refused by allowlist: %d target(s)", len(blocked))
            raise AllowlistRejection(blocked)

    async def _run_job(
        self, job: Job, tests: Sequence[TestSpec], timeout_ms: int, concurrency: int
    ) -> None:
        try:
            self.job_store.update(job, status="running")
            results = await self._dispatch(job, tests, timeout_ms, concurrency)
            report = Report.from_results(str(uuid.uuid4()), epoch_ms(), results)
            await asyncio.to_thread(self.report_store.save, report)
        except asyncio.CancelledError:
            self.job_store.update(job, status="failed", error="job cancelled")
            raise
        except Exception as exc:
            log.exception("Job %s failed", job.id)
            self.job_store.update(job, status="failed", error=describe_failure(exc))
            return

        self.job_store.update(
            job,
            status="done",
            results=results,
            completed=len(results),
            report_id=report.id,
        )
        log.info(
            "Job %s done: %d passed, %d failed (report %s)",
            job.id,
            report.summary.passed,
            report.summary.failed,
            report.id,
        )

    async def _dispatch(
        self, job: Job, tests: Sequence[TestSpec], timeout_ms: int, concurrency: int
    ) -> Sequence[TestResult]:
        """Run every test on a pool of workers and return results in input order."""
        results: list[TestResult | None] = [None] * len(tests)
        # One iterator shared by all workers; each index is handed out once.
        claims = iter(range(len(tests)))
        workers = max(1, min(concurrency, len(tests)))

        async with asyncio.TaskGroup() as group:
            for number in range(workers):
                group.create_task(
                    self._worker(job, tests, claims, results, timeout_ms),
                    name=f"job-{job.id}-worker-{number}",
                )

        final = [result for result in results if result is not None]
        if len(final) != len(tests):
            raise RuntimeError(
                f"worker pool finished with {len(tests) - len(final)} unfinished test(s)"
            )
        return final

    async def _worker(
        self,
        job: Job,
        tests: Sequence[TestSpec],
        claims: Iterator[int],
        results: list[TestResult | None],
        timeout_ms: int,
    ) -> None:
        for index in claims:
            results[index] = await self.prober.probe(tests[index], timeout_ms)
            self.job_store.update(job, completed=job.completed + 1)


def describe_failure(exc: BaseException) -> str:
    """Summarise a scheduling fault, unwrapping task-group exceptions."""
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return str(exc) or type(exc).__name__
