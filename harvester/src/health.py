"""
Health file writer for the harvester daemon.

Writes a JSON health file at a configurable path with:
- last_cycle_ts: ISO timestamp of the most recent completed harvest cycle.
- last_login_ts: ISO timestamp of the most recent successful portal login.
- records_emitted: Records produced by the last cycle.
- spool_count: Number of records pending in the local spool.

The file is rewritten on every state change, providing a simple liveness
signal that a container HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-03-06: Track login and per-cycle record counts
- 2026-03-02: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes harvester health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_cycle_ts: str | None = None
        self._last_login_ts: str | None = None
        self._records_emitted: int = 0
        self._spool_count: int = 0

    def record_cycle(self, records_emitted: int, spool_count: int) -> None:
        """Record a finished cycle and write the health file."""
        self._last_cycle_ts = datetime.now(tz=UTC).isoformat()
        self._records_emitted = records_emitted
        self._spool_count = spool_count
        self._write()

    def record_login(self) -> None:
        """Record a successful login and write the health file."""
        self._last_login_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def _write(self) -> None:
        data = {
            "last_cycle_ts": self._last_cycle_ts,
            "last_login_ts": self._last_login_ts,
            "records_emitted": self._records_emitted,
            "spool_count": self._spool_count,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data))
