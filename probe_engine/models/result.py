"""Models for probe execution results and reports."""

from collections.abc import Sequence

from pydantic import Field

from probe_engine.models.base import Model


class TestResult(Model):
    """Outcome of a single probe.

    ``actual_status`` is ``None`` only when the request never produced an HTTP
    response; ``error`` then carries the transport failure.
    """

    __test__ = False

    url: str
    method: str
    expected_status: int | None = None
    actual_status: int | None = None
    time_ms: int
    ok: bool
    error: str | None = None


class ReportSummary(Model):
    """Pass/fail counts of a report."""

    total: int
    passed: int
    failed: int


class Report(Model):
    """Immutable record of a finished job."""

    id: str
    created_at: int = Field(..., description="Unix epoch milliseconds")
    results: Sequence[TestResult]
    summary: ReportSummary

    @classmethod
    def from_results(
        cls, report_id: str, created_at: int, results: Sequence[TestResult]
    ) -> "Report":
        """Build a report and its summary from ordered results."""
        passed = sum(1 for result in results if result.ok)
        return cls(
            id=report_id,
            created_at=created_at,
            results=list(results),
            summary=ReportSummary(
                total=len(results),
                passed=passed,
                failed=len(results) - passed,
            ),
        )
