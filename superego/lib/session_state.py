"""Per-session state file management.

Provides atomic read/write of the session state record that coordinates
evaluations across hook invocations:

- last_evaluated: watermark; transcript entries at or before it were reviewed
- phase: optional work phase used to gate write actions
- pending_override: single-use exemption, consumed by the next gated check
- disabled: short-circuits every evaluation and gate to "allow"

Session file: <namespace>/state.json

A corrupt or unreadable state file is treated as "reset to defaults". Failing
open (allow) is preferred over wedging the user's session on a bad file.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum
from pathlib import Path

from filelock import FileLock
from pydantic import BaseModel, ValidationError

from superego.lib.paths import Namespace

logger = logging.getLogger(__name__)

UPDATE_LOCK_TIMEOUT = 10


class Phase(StrEnum):
    EXPLORING = "exploring"
    DISCUSSING = "discussing"
    READY = "ready"
    UNSET = "unset"


class PendingOverride(BaseModel):
    """Single-use exemption from the write gate."""

    reason: str
    issued_at: datetime


class SessionState(BaseModel):
    """Coordination state for one session namespace."""

    last_evaluated: datetime | None = None
    phase: Phase = Phase.UNSET
    pending_override: PendingOverride | None = None
    disabled: bool = False

    def mark_evaluated_at(self, timestamp: datetime) -> bool:
        """Advance the watermark to ``timestamp``.

        Use the transcript READ time, not the completion time, so messages
        written while the evaluator was running are picked up next time.
        The watermark never moves backwards.

        Returns:
            True if the watermark moved
        """
        if self.last_evaluated is not None and timestamp <= self.last_evaluated:
            return False
        self.last_evaluated = timestamp
        return True

    def consume_override(self) -> PendingOverride | None:
        override = self.pending_override
        self.pending_override = None
        return override


class StateStore:
    """Reads and writes <namespace>/state.json."""

    def __init__(self, namespace: Namespace):
        self.namespace = namespace
        self.path = namespace.state_file

    def load(self) -> SessionState:
        """Load state from disk (defaults if missing, corrupt or invalid)."""
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return SessionState()
        except OSError as e:
            logger.warning(f"Unreadable state file {self.path}, using defaults: {e}")
            return SessionState()

        try:
            return SessionState.model_validate_json(text)
        except ValidationError as e:
            # Covers both malformed JSON and schema mismatch
            logger.warning(f"Corrupt state file {self.path}, using defaults: {e}")
            return SessionState()

    def save(self, state: SessionState) -> None:
        """Save state atomically: temp file in the same directory, then replace."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path_str = tempfile.mkstemp(
            prefix="state-", suffix=".tmp", dir=str(self.path.parent)
        )
        temp_path = Path(temp_path_str)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(state.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    def update(self, mutate: Callable[[SessionState], None]) -> SessionState:
        """Load, modify and save under a file lock.

        Serializes read-modify-write cycles from independent processes so an
        override issued while an evaluation persists its watermark is not lost.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.path) + ".lock", timeout=UPDATE_LOCK_TIMEOUT)
        with lock:
            state = self.load()
            mutate(state)
            self.save(state)
            return state

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
