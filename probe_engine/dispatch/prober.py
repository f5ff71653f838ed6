"""Execution of a single outbound HTTP probe."""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import aiohttp

from probe_engine.admission.ssrf import PublicAddressResolver
from probe_engine.models.probe import TestSpec
from probe_engine.models.result import TestResult

log = logging.getLogger(__name__)

TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientError,
    TimeoutError,
    OSError,
)

# aiohttp raises ValueError while building a malformed request.
PROBE_ERRORS: tuple[type[BaseException], ...] = (*TRANSPORT_ERRORS, ValueError)

USER_AGENT = "probe-engine/0.1"


def is_ok(actual_status: int, expected_status: int | None) -> bool:
    """Pass when the expected status matches, or on any 2xx if none was given."""
    if expected_status is not None:
        return actual_status == expected_status
    return 200 <= actual_status < 300


@dataclass(frozen=True, kw_only=True)
class Prober(ABC):
    """Sends one request per test and turns the outcome into a result.

    Any HTTP status is a completed probe. Transport failures and requests
    the client refuses to build are captured in the result instead of being
    raised.
    """

    @abstractmethod
    async def send(self, test: TestSpec, timeout_ms: int) -> int:
        """Perform the request and return the response status code."""

    async def probe(self, test: TestSpec, timeout_ms: int) -> TestResult:
        start = time.perf_counter()
        try:
            status = await self.send(test, timeout_ms)
        except PROBE_ERRORS as exc:
            elapsed = _elapsed_ms(start)
            message = describe_transport_error(exc, timeout_ms)
            log.info("Probe %s %s failed: %s", test.method, test.url, message)
            return TestResult(
                url=test.url,
                method=test.method,
                expected_status=test.expected_status,
                actual_status=None,
                time_ms=elapsed,
                ok=False,
                error=message,
            )

        elapsed = _elapsed_ms(start)
        log.debug("Probe %s %s -> %d in %dms", test.method, test.url, status, elapsed)
        return TestResult(
            url=test.url,
            method=test.method,
            expected_status=test.expected_status,
            actual_status=status,
            time_ms=elapsed,
            ok=is_ok(status, test.expected_status),
            error=None,
        )


def describe_transport_error(exc: BaseException, timeout_ms: int) -> str:
    if isinstance(exc, TimeoutError):
        return f"timeout of {timeout_ms}ms exceeded"
    return str(exc) or type(exc).__name__


def _elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)


@dataclass(frozen=True, kw_only=True)
class HttpProber(Prober):
    """Prober backed by a shared aiohttp session.

    Redirects are not followed: a redirect is reported as its own status so a
    public target cannot bounce the probe to an internal address. The default
    session resolves through ``PublicAddressResolver``, which refuses private
    addresses at connect time.
    """

    session: aiohttp.ClientSession = field(repr=False)

    @classmethod
    @asynccontextmanager
    async def from_defaults(cls) -> AsyncGenerator["HttpProber", None]:
        """Create a prober with a managed session lifecycle."""
        connector = aiohttp.TCPConnector(resolver=PublicAddressResolver())
        async with aiohttp.ClientSession(
            connector=connector,
            headers={"User-Agent": USER_AGENT},
        ) as session:
            yield cls(session=session)

    async def send(self, test: TestSpec, timeout_ms: int) -> int:
        kwargs: dict[str, object] = {}
        if isinstance(test.body, (str, bytes)):
            kwargs["data"] = test.body
        elif test.body is not None:
            kwargs["json"] = test.body

        async with self.session.request(
            test.method,
            test.url,
            headers=dict(test.headers or {}),
            timeout=aiohttp.ClientTimeout(total=timeout_ms / 1000),
            allow_redirects=False,
            **kwargs,
        ) as response:
            await response.read()
            return response.status
