"""Decision journal - append-only audit trail.

Stores one JSON file per record in <namespace>/decisions/ for audit and
carryover context. Records are self-contained and never edited; the only way
to remove them is an explicit whole-journal reset.

Filename: 2026-01-15T10-30-00.123456Z-<uuid8>.json
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from superego.lib.decision_parser import Verdict
from superego.lib.paths import Namespace, find_all_namespaces

logger = logging.getLogger(__name__)


class RecordType(StrEnum):
    DECISION = "decision"
    FEEDBACK_CLAIMED = "feedback_claimed"
    OVERRIDE_GRANTED = "override_granted"
    OVERRIDE_CONSUMED = "override_consumed"
    DISABLED = "disabled"
    ENABLED = "enabled"
    PHASE_CHANGED = "phase_changed"
    LOCK_CLEARED = "lock_cleared"


class Decision(BaseModel):
    """Outcome of one evaluation. Immutable once created."""

    model_config = {"frozen": True}

    verdict: Verdict
    feedback: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    session_id: str | None = None
    trigger_reason: str = ""


class JournalRecord(BaseModel):
    """A single journal entry."""

    model_config = {"frozen": True}

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    session_id: str | None = None
    type: RecordType
    verdict: Verdict | None = None
    trigger: str | None = None
    context: str | None = None

    @classmethod
    def from_decision(cls, decision: Decision) -> JournalRecord:
        return cls(
            timestamp=decision.timestamp,
            session_id=decision.session_id,
            type=RecordType.DECISION,
            verdict=decision.verdict,
            trigger=decision.trigger_reason or None,
            context=decision.feedback or None,
        )


class DecisionJournal:
    def __init__(self, namespace: Namespace):
        self.namespace = namespace
        self.decisions_dir = namespace.decisions_dir

    def append(self, record: JournalRecord) -> Path:
        """Write a new record. Never overwrites an existing one.

        The record is fully written to a temp file first and then hard-linked
        into place, so readers never see a partial record and a name clash
        fails instead of clobbering.
        """
        self.decisions_dir.mkdir(parents=True, exist_ok=True)
        stamp = record.timestamp.astimezone(UTC).strftime("%Y-%m-%dT%H-%M-%S.%fZ")

        fd, temp_path_str = tempfile.mkstemp(
            prefix=".record-", suffix=".tmp", dir=str(self.decisions_dir)
        )
        temp_path = Path(temp_path_str)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            while True:
                path = self.decisions_dir / f"{stamp}-{uuid.uuid4().hex[:8]}.json"
                try:
                    os.link(temp_path, path)
                    break
                except FileExistsError:
                    continue
        finally:
            temp_path.unlink(missing_ok=True)

        logger.debug(f"Journal {self.namespace.label}: {record.type} -> {path.name}")
        return path

    def read_all(self) -> list[JournalRecord]:
        """Read every record, oldest first. Malformed files are skipped."""
        if not self.decisions_dir.is_dir():
            return []

        loaded: list[tuple[JournalRecord, str]] = []
        for path in self.decisions_dir.glob("*.json"):
            try:
                loaded.append((JournalRecord.model_validate_json(path.read_text(encoding="utf-8")), path.name))
            except (OSError, ValidationError) as e:
                logger.warning(f"Skipping malformed decision file {path}: {e}")

        # File name breaks timestamp ties so every read returns the same order
        loaded.sort(key=lambda item: (item[0].timestamp, item[1]))
        return [record for record, _ in loaded]

    def reset(self) -> None:
        """Remove the whole journal (explicit reset only)."""
        shutil.rmtree(self.decisions_dir, ignore_errors=True)


def read_all_sessions(root: Path) -> list[JournalRecord]:
    """Read records from every namespace under ``root``, oldest first."""
    records: list[JournalRecord] = []
    for namespace in find_all_namespaces(root):
        records.extend(DecisionJournal(namespace).read_all())
    # Stable: ties keep per-namespace order, namespaces in sorted order
    records.sort(key=lambda r: r.timestamp)
    return records
