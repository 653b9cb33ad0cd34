"""Per-session evaluation lock.

Uses atomic directory creation: ``os.mkdir`` either creates <namespace>/eval.lock
or fails because it already exists, and the kernel guarantees only one caller
wins. Acquisition never waits - a busy session means "skip this evaluation".

There is no wall-clock expiry. A crashed holder leaves the directory behind
until something clears it explicitly (``superego reset`` or a fresh session
start). Expiring by age could let two evaluations run at once if the first is
merely slow.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from superego.lib.paths import Namespace

logger = logging.getLogger(__name__)

OWNER_FILE = "owner.json"


@dataclass(frozen=True)
class Lock:
    """Proof of holding the evaluation lock for one namespace."""

    path: Path
    pid: int = field(default_factory=os.getpid)
    acquired_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class LockManager:
    def __init__(self, namespace: Namespace):
        self.namespace = namespace
        self.path = namespace.lock_dir

    def try_acquire(self) -> Lock | None:
        """Take the lock if free.

        Returns:
            Lock on success, None if another process holds it
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.mkdir(self.path)
        except FileExistsError:
            logger.info(f"Evaluation already in progress for {self.namespace.label}")
            return None

        lock = Lock(path=self.path)
        try:
            (self.path / OWNER_FILE).write_text(
                json.dumps({"pid": lock.pid, "acquired_at": lock.acquired_at.isoformat()})
            )
        except OSError as e:
            # Owner info is diagnostic only
            logger.debug(f"Could not write lock owner info: {e}")
        return lock

    def release(self, lock: Lock | None) -> None:
        """Release the lock. Releasing twice, or a lock already cleared, is a no-op."""
        if lock is None:
            return
        (lock.path / OWNER_FILE).unlink(missing_ok=True)
        try:
            lock.path.rmdir()
        except FileNotFoundError:
            pass

    def held(self) -> bool:
        return self.path.is_dir()

    def holder_info(self) -> dict[str, Any] | None:
        """Owner details recorded at acquisition, if the lock is held."""
        try:
            return json.loads((self.path / OWNER_FILE).read_text())
        except (OSError, json.JSONDecodeError):
            return None

    def force_clear(self) -> bool:
        """Remove a stale lock left behind by a crashed holder.

        Returns:
            True if a lock directory was removed
        """
        if not self.path.exists():
            return False
        holder = self.holder_info()
        logger.warning(f"Clearing evaluation lock for {self.namespace.label} (holder: {holder})")
        shutil.rmtree(self.path, ignore_errors=True)
        return True

    @contextmanager
    def acquire(self) -> Iterator[Lock | None]:
        """Scoped acquisition; yields None when busy and always releases."""
        lock = self.try_acquire()
        try:
            yield lock
        finally:
            self.release(lock)
