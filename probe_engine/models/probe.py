"""Models for probe batches submitted by callers."""

import re
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import Field, field_validator
from yarl import URL

from probe_engine.models.base import Model

DEFAULT_TIMEOUT_MS = 8000
DEFAULT_CONCURRENCY = 5

# RFC 9110 token: methods and header names.
HTTP_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
HEADER_VALUE_FORBIDDEN = re.compile(r"[\r\n\x00]")


class TestSpec(Model):
    """A single HTTP probe to execute against a target URL."""

    __test__ = False

    url: str = Field(..., description="Absolute http(s) URL to probe")
    method: str = Field(default="GET", description="HTTP method")
    headers: Mapping[str, str] | None = Field(
        default=None, description="Extra request headers"
    )
    body: Any = Field(default=None, description="Opaque request body")
    expected_status: int | None = Field(
        default=None, description="Status that counts as a pass (2xx if unset)"
    )

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        try:
            url = URL(value)
        except ValueError as exc:
            raise ValueError(f"url is not a valid URL: {exc}") from exc
        if url.scheme not in {"http", "https"} or not url.host:
            raise ValueError("url must be an absolute http or https URL")
        return value

    @field_validator("method")
    @classmethod
    def _normalize_method(cls, value: str) -> str:
        method = value.strip().upper()
        if not method:
            raise ValueError("method must not be empty")
        if not HTTP_TOKEN.match(method):
            raise ValueError(f"method is not a valid HTTP token: {method!r}")
        return method

    @field_validator("headers")
    @classmethod
    def _check_headers(
        cls, value: Mapping[str, str] | None
    ) -> Mapping[str, str] | None:
        for name, header_value in (value or {}).items():
            if not HTTP_TOKEN.match(name):
                raise ValueError(f"header name is not a valid HTTP token: {name!r}")
            if HEADER_VALUE_FORBIDDEN.search(header_value):
                raise ValueError(f"header {name!r} contains a control character")
        return value


class RunRequest(Model):
    """Body of a batch submission."""

    tests: Sequence[TestSpec] = Field(..., min_length=1)
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, ge=100)
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)
