"""Tests for batch admission and dispatch."""

import asyncio
from collections.abc import Sequence
from pathlib import Path

import aiohttp
import pytest

from probe_engine.admission.allowlist import Allowlist
from probe_engine.admission.quota import QuotaLimiter
from probe_engine.admission.ssrf import SsrfGuard
from probe_engine.dispatch.prober import Prober
from probe_engine.dispatch.scheduler import DispatchScheduler, describe_failure
from probe_engine.errors import (
    AllowlistRejection,
    BatchValidationError,
    QuotaExceeded,
    SsrfRejection,
)
from probe_engine.jobs.store import JobStore
from probe_engine.models.probe import TestSpec
from probe_engine.reports.store import ReportStore
from probe_engine.testing.factories import TestSpecFactory
from probe_engine.testing.probers import ScriptedProber


async def public_lookup(host: str) -> Sequence[str]:
    return ["93.184.216.34"]


def make_scheduler(
    tmp_path: Path,
    prober: Prober,
    *,
    allowlist: Allowlist | None = None,
    max_requests: int = 100,
) -> DispatchScheduler:
    return DispatchScheduler(
        prober=prober,
        job_store=JobStore(),
        report_store=ReportStore(directory=tmp_path / "reports"),
        ssrf_guard=SsrfGuard(lookup=public_lookup),
        quota=QuotaLimiter(window_ms=60_000, max_requests=max_requests),
        allowlist=allowlist,
    )


async def test_submit_returns_job_id_before_work_completes(tmp_path: Path) -> None:
    scheduler = make_scheduler(tmp_path, ScriptedProber(delay=0.05))

    job_id = await scheduler.submit(TestSpecFactory.batch(2))

    job = scheduler.get_job(job_id)
    assert job is not None
    assert job.status in {"queued", "running"}
    assert job.total == 2
    assert job.report_id is None

    await scheduler.join()


async def test_results_follow_input_order(tmp_path: Path) -> None:
    """Ten tests on three workers give ten results aligned with the inputs."""
    tests = TestSpecFactory.batch(10)
    scheduler = make_scheduler(tmp_path, ScriptedProber(delay=0.001))

    job_id = await scheduler.submit(tests, concurrency=3)
    await scheduler.join()

    job = scheduler.get_job(job_id)
    assert job is not None
    assert job.status == "done"
    assert job.completed == job.total == 10
    assert job.results is not None
    assert [r.url for r in job.results] == [t.url for t in tests]

    assert job.report_id is not None
    report = scheduler.get_report(job.report_id)
    assert report is not None
    assert report.summary.total == 10
    assert [r.url for r in report.results] == [t.url for t in tests]


async def test_each_test_is_probed_exactly_once(tmp_path: Path) -> None:
    tests = TestSpecFactory.batch(25)
    prober = ScriptedProber()
    scheduler = make_scheduler(tmp_path, prober)

    await scheduler.submit(tests, concurrency=7)
    await scheduler.join()

    assert sorted(prober.calls) == sorted(t.url for t in tests)


async def test_worker_count_is_capped(tmp_path: Path) -> None:
    """No more probes run at once than the requested concurrency."""
    in_flight = 0
    peak = 0

    class CountingProber(Prober):
        async def send(self, test: TestSpec, timeout_ms: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return 200

    scheduler = make_scheduler(tmp_path, CountingProber())

    await scheduler.submit(TestSpecFactory.batch(9), concurrency=3)
    await scheduler.join()

    assert peak == 3


async def test_mixed_outcomes_still_finish_done(tmp_path: Path) -> None:
    """Failing probes are recorded per test and never fail the job."""
    tests = [
        TestSpecFactory.build(url="https://example.com/ok"),
        TestSpecFactory.build(url="https://example.com/error"),
        TestSpecFactory.build(url="https://example.com/down"),
        TestSpecFactory.build(url="https://example.com/gone", expected_status=410),
    ]
    prober = ScriptedProber(
        outcomes={
            "https://example.com/error": 503,
            "https://example.com/down": aiohttp.ClientConnectionError("refused"),
            "https://example.com/gone": 410,
        }
    )
    scheduler = make_scheduler(tmp_path, prober)

    job_id = await scheduler.submit(tests, concurrency=2)
    await scheduler.join()

    job = scheduler.get_job(job_id)
    assert job is not None and job.results is not None
    assert job.status == "done"
    assert [r.ok for r in job.results] == [True, False, False, True]
    assert [r.actual_status for r in job.results] == [200, 503, None, 410]
    assert job.results[2].error == "refused"

    assert job.report_id is not None
    report = scheduler.get_report(job.report_id)
    assert report is not None
    assert (report.summary.passed, report.summary.failed) == (2, 2)


async def test_request_build_error_is_recorded_per_test(tmp_path: Path) -> None:
    """A test the client cannot send does not take the rest of the batch down."""
    tests = [
        TestSpecFactory.build(url="https://example.com/ok"),
        TestSpecFactory.build(url="https://example.com/bad"),
    ]
    prober = ScriptedProber(
        outcomes={
            "https://example.com/bad": ValueError(
                "Method cannot contain non-token characters"
            )
        }
    )
    scheduler = make_scheduler(tmp_path, prober)

    job_id = await scheduler.submit(tests)
    await scheduler.join()

    job = scheduler.get_job(job_id)
    assert job is not None and job.results is not None
    assert job.status == "done"
    assert [r.ok for r in job.results] == [True, False]
    assert job.results[1].actual_status is None
    assert job.results[1].error == "Method cannot contain non-token characters"
    assert job.report_id is not None
    assert scheduler.get_report(job.report_id) is not None


async def test_unexpected_fault_marks_job_failed(tmp_path: Path) -> None:
    """A non-transport error is a scheduling failure with no report."""
    prober = ScriptedProber(outcomes={"https://example.com/bug": RuntimeError("bug")})
    scheduler = make_scheduler(tmp_path, prober)

    job_id = await scheduler.submit(
        [TestSpecFactory.build(url="https://example.com/bug")]
    )
    await scheduler.join()

    job = scheduler.get_job(job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.error == "bug"
    assert job.report_id is None
    assert job.results is None


async def test_report_write_failure_marks_job_failed(tmp_path: Path) -> None:
    blocker = tmp_path / "reports"
    blocker.write_text("not a directory")
    scheduler = make_scheduler(tmp_path, ScriptedProber())

    job_id = await scheduler.submit(TestSpecFactory.batch(1))
    await scheduler.join()

    job = scheduler.get_job(job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.error
    assert job.report_id is None


async def test_allowlist_rejection_lists_blocked_indices(tmp_path: Path) -> None:
    prober = ScriptedProber()
    scheduler = make_scheduler(
        tmp_path, prober, allowlist=Allowlist.from_env_value("api.example.org")
    )

    with pytest.raises(AllowlistRejection) as exc_info:
        await scheduler.submit(
            [
                TestSpec(url="https://example.com/"),
                TestSpec(url="https://api.example.org/v1"),
            ]
        )

    assert exc_info.value.errors() == [
        {"index": 0, "url": "https://example.com/", "reason": "Not in allowlist"}
    ]
    assert len(scheduler.job_store) == 0
    assert prober.calls == []


async def test_empty_allowlist_refuses_everything(tmp_path: Path) -> None:
    scheduler = make_scheduler(
        tmp_path, ScriptedProber(), allowlist=Allowlist.from_env_value("")
    )

    with pytest.raises(AllowlistRejection):
        await scheduler.submit([TestSpec(url="https://example.com/")])


async def test_ssrf_rejection_runs_after_allowlist(tmp_path: Path) -> None:
    scheduler = make_scheduler(tmp_path, ScriptedProber())

    with pytest.raises(SsrfRejection) as exc_info:
        await scheduler.submit(
            [TestSpec(url="https://example.com/"), TestSpec(url="http://127.0.0.1:8000")]
        )

    (finding,) = exc_info.value.findings
    assert finding.index == 1
    assert finding.reason == "localhost/private address not allowed"
    assert len(scheduler.job_store) == 0


async def test_rejected_batches_do_not_consume_quota(tmp_path: Path) -> None:
    scheduler = make_scheduler(tmp_path, ScriptedProber(), max_requests=1)

    with pytest.raises(SsrfRejection):
        await scheduler.submit([TestSpec(url="http://localhost/")], identity="ip:a")

    assert scheduler.quota.usage("ip:a").count == 0


async def test_quota_exhaustion(tmp_path: Path) -> None:
    scheduler = make_scheduler(tmp_path, ScriptedProber(), max_requests=1)

    await scheduler.submit(TestSpecFactory.batch(1), identity="key:abc")
    with pytest.raises(QuotaExceeded) as exc_info:
        await scheduler.submit(TestSpecFactory.batch(1), identity="key:abc")

    assert exc_info.value.remaining == 0
    assert 0 < exc_info.value.reset_ms <= 60_000
    assert len(scheduler.job_store) == 1

    await scheduler.submit(TestSpecFactory.batch(1), identity="key:other")
    await scheduler.join()


@pytest.mark.parametrize(
    ("tests", "options"),
    [
        ([], {}),
        ([TestSpec(url="https://example.com/")], {"timeout_ms": 50}),
        ([TestSpec(url="https://example.com/")], {"concurrency": 0}),
    ],
)
async def test_invalid_options_are_rejected(
    tmp_path: Path, tests: list[TestSpec], options: dict[str, int]
) -> None:
    scheduler = make_scheduler(tmp_path, ScriptedProber())

    with pytest.raises(BatchValidationError):
        await scheduler.submit(tests, **options)


async def test_unknown_ids_return_none(tmp_path: Path) -> None:
    scheduler = make_scheduler(tmp_path, ScriptedProber())

    assert scheduler.get_job("nope") is None
    assert scheduler.get_report("nope") is None


async def test_progress_is_monotonic(tmp_path: Path) -> None:
    scheduler = make_scheduler(tmp_path, ScriptedProber(delay=0.005))

    job_id = await scheduler.submit(TestSpecFactory.batch(6), concurrency=2)
    seen: list[int] = []
    while True:
        job = scheduler.get_job(job_id)
        assert job is not None
        assert job.completed <= job.total
        seen.append(job.completed)
        if job.status == "done":
            break
        await asyncio.sleep(0.002)

    assert seen == sorted(seen)
    assert seen[-1] == 6


async def test_aclose_cancels_unfinished_jobs(tmp_path: Path) -> None:
    scheduler = make_scheduler(tmp_path, ScriptedProber(delay=10))

    job_id = await scheduler.submit(TestSpecFactory.batch(1))
    await asyncio.sleep(0)
    await scheduler.aclose(timeout=0.01)

    job = scheduler.get_job(job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.error == "job cancelled"


def test_describe_failure_unwraps_groups() -> None:
    group = ExceptionGroup("outer", [ValueError("inner problem")])

    assert describe_failure(group) == "inner problem"
    assert describe_failure(RuntimeError()) == "RuntimeError"
