"""Domain allowlist deciding which hosts may be probed."""

import logging
from collections.abc import Iterable, Sequence

from yarl import URL

log = logging.getLogger(__name__)


def normalize_pattern(pattern: str) -> str:
    """Strip a leading ``*.`` or ``.`` and case-fold the pattern."""
    normalized = pattern.strip()
    normalized = normalized.removeprefix("*.")
    normalized = normalized.removeprefix(".")
    return normalized.lower()


def parse_allowlist(value: str | None) -> Sequence[str]:
    """Parse a comma-separated list of domain patterns."""
    if not value:
        return ()
    return tuple(
        normalized
        for item in value.split(",")
        if (normalized := normalize_pattern(item))
    )


def host_from_input(value: object) -> str:
    """Extract the hostname from a URL, or return a bare hostname unchanged.

    Malformed URLs yield an empty string, which never matches.
    """
    if not isinstance(value, str):
        return ""
    if "://" not in value:
        return value
    try:
        return URL(value).host or ""
    except (ValueError, TypeError):
        return ""


def matches_pattern(host: str, pattern: str) -> bool:
    """Check whether ``host`` equals ``pattern`` or is one of its subdomains."""
    if not host or not pattern:
        return False
    normalized = normalize_pattern(pattern)
    if not normalized:
        return False
    host = host.lower()
    return host == normalized or host.endswith("." + normalized)


class Allowlist:
    """Set of permitted domain suffixes.

    An empty allowlist permits nothing. Patterns change only through
    ``configure``.
    """

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self._patterns: tuple[str, ...] = ()
        self.configure(patterns)

    @classmethod
    def from_env_value(cls, value: str | None) -> "Allowlist":
        """Build an allowlist from a comma-separated setting."""
        return cls(parse_allowlist(value))

    @property
    def patterns(self) -> Sequence[str]:
        return self._patterns

    def configure(self, patterns: Iterable[str]) -> None:
        """Replace the pattern set."""
        self._patterns = tuple(
            normalized for p in patterns if (normalized := normalize_pattern(p))
        )
        log.info("Allowlist configured with %d pattern(s)", len(self._patterns))

    def allows(self, value: object) -> bool:
        """Return whether the URL or hostname is permitted."""
        host = host_from_input(value)
        if not host or not self._patterns:
            return False
        return any(matches_pattern(host, pattern) for pattern in self._patterns)
