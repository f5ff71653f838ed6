"""Fixed-window request quota per caller identity."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 60_000
DEFAULT_MAX = 60


def monotonic_ms() -> float:
    return time.monotonic() * 1000


def identity_key(api_key: str | None, ip: str | None) -> str:
    """Build the quota key, preferring the API key over the client address."""
    if api_key:
        return f"key:{api_key}"
    return f"ip:{ip or 'anonymous'}"


@dataclass(frozen=True, kw_only=True)
class QuotaDecision:
    """Outcome of counting one request against a window."""

    allowed: bool
    remaining: int
    reset_ms: int


@dataclass(frozen=True, kw_only=True)
class QuotaUsage:
    """Current window state for an identity."""

    count: int
    window_start: float | None


@dataclass(kw_only=True)
class _QuotaEntry:
    window_start: float
    count: int


@dataclass(kw_only=True)
class QuotaLimiter:
    """In-memory fixed-window limiter.

    A caller may spend the whole window budget at once; the counter only
    restarts when the window rolls over.
    """

    window_ms: int = DEFAULT_WINDOW_MS
    max_requests: int = DEFAULT_MAX
    clock: Callable[[], float] = field(default=monotonic_ms, repr=False)
    _entries: dict[str, _QuotaEntry] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def hit(
        self,
        identity: str,
        window_ms: int | None = None,
        max_requests: int | None = None,
    ) -> QuotaDecision:
        """Count one request for ``identity`` and report whether it is allowed."""
        window = window_ms if window_ms is not None else self.window_ms
        limit = max_requests if max_requests is not None else self.max_requests

        with self._lock:
            now = self.clock()
            entry = self._entries.get(identity)
            if entry is None or now - entry.window_start >= window:
                self._entries[identity] = _QuotaEntry(window_start=now, count=1)
                return QuotaDecision(allowed=True, remaining=limit - 1, reset_ms=window)

            entry.count += 1
            count = entry.count
            elapsed = now - entry.window_start

        decision = QuotaDecision(
            allowed=count <= limit,
            remaining=max(0, limit - count),
            reset_ms=max(0, int(window - elapsed)),
        )
        if not decision.allowed:
            log.info("Quota exhausted for %s (count=%d, max=%d)", identity, count, limit)
        return decision

    def usage(self, identity: str) -> QuotaUsage:
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None:
                return QuotaUsage(count=0, window_start=None)
            return QuotaUsage(count=entry.count, window_start=entry.window_start)

    def reset(self, identity: str) -> None:
        """Forget the window of one identity."""
        with self._lock:
            self._entries.pop(identity, None)

    def reset_all(self) -> None:
        """Forget every window."""
        with self._lock:
            self._entries.clear()
