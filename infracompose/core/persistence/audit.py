"""
Audit ledger — append-only record of every deployment operation.

One NDJSON line per deploy, destroy or pipeline run, written to
``.state/audit.ndjson`` beside the manifest. Lines are only ever appended.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from infracompose.core.persistence.manifest_file import DEFAULT_STATE_DIR

logger = logging.getLogger(__name__)

AUDIT_FILE = "audit.ndjson"


class AuditEntry(BaseModel):
    """One finished operation as seen by the ledger."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    operation_id: str = ""
    operation_type: str = ""       # deploy | destroy | pipeline
    environment: str = ""
    stacks_affected: list[str] = Field(default_factory=list)

    status: str = ""               # ok | partial | failed | cancelled
    resources_total: int = 0
    resources_succeeded: int = 0
    resources_failed: int = 0
    duration_ms: int = 0

    errors: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)


class AuditWriter:
    """Appends to and reads back one ledger file.

    Give either an explicit ``path`` or the ``project_root`` whose state
    directory holds the ledger; with neither, the current directory is used.
    """

    def __init__(self, path: Path | None = None, project_root: Path | None = None):
        if path is None:
            path = (project_root or Path()) / DEFAULT_STATE_DIR / AUDIT_FILE
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        # A ledger that cannot be written must not fail the deployment it records
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Could not append to audit ledger %s: %s", self._path, e)
            return
        logger.debug("Audited %s %s (%s)", entry.operation_type, entry.operation_id, entry.status)

    def read_all(self) -> list[AuditEntry]:
        """Oldest first; unparseable lines are logged and skipped."""
        return list(self._entries())

    def read_recent(self, n: int = 20) -> list[AuditEntry]:
        return list(deque(self._entries(), maxlen=n))

    def _entries(self):
        if not self._path.is_file():
            return
        with self._path.open(encoding="utf-8") as f:
            for number, raw in enumerate(f, start=1):
                if not raw.strip():
                    continue
                try:
                    yield AuditEntry.model_validate_json(raw)
                except ValueError as e:
                    logger.warning("Audit ledger %s line %d unreadable: %s", self._path.name, number, e)
