"""Per-project cache of the latest round's raw readings.

Only used for diagnostics. Each store() replaces the project's previous
round. cleanup() prunes readings older than the retention window (24 hours
by default) and forgets projects with nothing left.
"""

from __future__ import annotations

import logging
import time

from .ReadingFetcher import OracleReading

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 24 * 60 * 60


class ReadingHistory:
    """In-memory mapping of project id to its most recent readings."""

    def __init__(self, retention_seconds: float = DEFAULT_RETENTION_SECONDS) -> None:
        self.retention_seconds = retention_seconds
        self._readings: dict[str, list[OracleReading]] = {}

    def __len__(self) -> int:
        return len(self._readings)

    def __contains__(self, project_id: object) -> bool:
        return project_id in self._readings

    def store(self, project_id: str, readings: list[OracleReading]) -> None:
        """Replace the stored readings for a project (last write wins)."""
        self._readings[project_id] = list(readings)

    def get(self, project_id: str) -> list[OracleReading]:
        """Get a copy of a project's readings (empty if unknown)."""
        return list(self._readings.get(project_id, []))

    def project_ids(self) -> list[str]:
        return list(self._readings)

    def cleanup(self, max_age_seconds: float | None = None) -> int:
        """Drop readings older than the retention window.

        :param max_age_seconds: Override for the retention window.
        :returns: Number of readings removed.
        """
        max_age = self.retention_seconds if max_age_seconds is None else max_age_seconds
        cutoff_ms = (time.time() - max_age) * 1000

        removed = 0
        for project_id, readings in list(self._readings.items()):
            kept = [r for r in readings if r.timestamp > cutoff_ms]
            if len(kept) == len(readings):
                continue

            removed += len(readings) - len(kept)
            if kept:
                self._readings[project_id] = kept
            else:
                del self._readings[project_id]
            logger.info(
                f"Cleaned up {len(readings) - len(kept)} old readings "
                f"for project {project_id}"
            )

        return removed
