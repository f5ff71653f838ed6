"""Errors raised while admitting a probe batch."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, kw_only=True)
class BlockedTest:
    """A test refused by an admission stage, keyed by its batch index."""

    index: int
    url: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        """Serialise for an HTTP error body."""
        return {"index": self.index, "url": self.url, "reason": self.reason}


class AdmissionError(Exception):
    """Base class for batches refused before any job is created."""

    status: int = 400
    message: str = "Batch rejected"

    def errors(self) -> Sequence[Mapping[str, Any]]:
        """Structured details for the response body."""
        return []


class BatchValidationError(AdmissionError):
    """Raised when the submitted batch does not match the request schema."""

    status = 400
    message = "Invalid request"

    def __init__(self, field_errors: Sequence[Mapping[str, str]]) -> None:
        super().__init__(f"{self.message}: {len(field_errors)} error(s)")
        self.field_errors = list(field_errors)

    def errors(self) -> Sequence[Mapping[str, Any]]:
        return self.field_errors


class AllowlistRejection(AdmissionError):
    """Raised when one or more targets are outside the allowlist."""

    status = 403
    message = "One or more targets are not in the allowlist"

    def __init__(self, blocked: Sequence[BlockedTest]) -> None:
        super().__init__(f"{self.message}: {len(blocked)} blocked")
        self.blocked = list(blocked)

    def errors(self) -> Sequence[Mapping[str, Any]]:
        return [item.to_dict() for item in self.blocked]


class SsrfRejection(AdmissionError):
    """Raised when one or more targets point at a private or local address."""

    status = 400
    message = "One or more targets resolve to disallowed addresses"

    def __init__(self, findings: Sequence[BlockedTest]) -> None:
        super().__init__(f"{self.message}: {len(findings)} blocked")
        self.findings = list(findings)

    def errors(self) -> Sequence[Mapping[str, Any]]:
        return [item.to_dict() for item in self.findings]


class QuotaExceeded(AdmissionError):
    """Raised when the caller has used up its request window."""

    status = 429
    message = "Quota exceeded"

    def __init__(self, identity: str, remaining: int, reset_ms: int) -> None:
        super().__init__(f"{self.message} for {identity}")
        self.identity = identity
        self.remaining = remaining
        self.reset_ms = reset_ms
