"""File-backed persistence of finished job reports."""

import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from probe_engine.models.result import Report

log = logging.getLogger(__name__)

REPORT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True, kw_only=True)
class ReportStore:
    """Stores one ``<id>.json`` file per report under ``directory``."""

    directory: Path

    def path_for(self, report_id: str) -> Path | None:
        """Return the file for ``report_id``, or None for ids that are not plain names."""
        if not REPORT_ID_PATTERN.match(report_id):
            return None
        return self.directory / f"{report_id}.json"

    def save(self, report: Report) -> None:
        """Write the report atomically; saving the same report twice is harmless."""
        path = self.path_for(report.id)
        if path is None:
            raise ValueError(f"Invalid report id: {report.id!r}")

        self.directory.mkdir(parents=True, exist_ok=True)
        payload = report.model_dump_json(by_alias=True, indent=2)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.directory, prefix=f".{report.id}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        log.info("Saved report %s (%d result(s))", report.id, report.summary.total)

    def get(self, report_id: str) -> Report | None:
        """Load a report; missing or unreadable files are reported as None."""
        path = self.path_for(report_id)
        if path is None:
            return None
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            log.warning("Cannot read report %s: %s", report_id, exc)
            return None

        try:
            return Report.model_validate_json(raw)
        except ValidationError as exc:
            log.warning("Corrupt report %s: %s", report_id, exc)
            return None

    def purge_expired(self, ttl: float, *, dry_run: bool = False) -> int:
        """Delete report files last modified more than ``ttl`` seconds ago.

        Args:
            ttl: Retention period in seconds
            dry_run: Count matching files without deleting them

        Returns:
            Number of files removed (or that would be removed)

        """
        if not self.directory.exists():
            return 0

        cutoff = time.time() - ttl
        cleaned = 0
        for path in self.directory.glob("*.json"):
            try:
                if not path.is_file() or path.stat().st_mtime >= cutoff:
                    continue
                if not dry_run:
                    path.unlink()
            except OSError as exc:
                log.warning("Cannot purge %s: %s", path, exc)
                continue
            cleaned += 1

        if cleaned:
            log.info("Purged %d expired report(s)", cleaned)
        return cleaned
