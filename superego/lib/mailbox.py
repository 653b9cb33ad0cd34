"""Single-slot, single-claim feedback handoff.

The evaluation writes at most one pending feedback item per session into
<namespace>/feedback. A hook later claims it: the slot is renamed to a
claimer-unique name first, so of several concurrent claimers exactly one gets
the text and the others see an empty slot.
"""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from enum import StrEnum
from pathlib import Path

from superego.lib.errors import MailboxError
from superego.lib.paths import Namespace

logger = logging.getLogger(__name__)


class MailboxPolicy(StrEnum):
    """What post() does when an unclaimed item is already waiting."""

    OVERWRITE = "overwrite"  # newer evaluation supersedes the unclaimed one
    KEEP = "keep"  # first unclaimed concern wins until it is delivered


class FeedbackMailbox:
    def __init__(self, namespace: Namespace, policy: MailboxPolicy = MailboxPolicy.OVERWRITE):
        self.namespace = namespace
        self.policy = MailboxPolicy(policy)
        self.path = namespace.feedback_file

    def has_feedback(self) -> bool:
        """Check for pending feedback without claiming it."""
        try:
            return self.path.stat().st_size > 0
        except FileNotFoundError:
            return False

    def post(self, text: str) -> bool:
        """Write feedback into the slot.

        Returns:
            True if the slot now holds ``text``; False if the KEEP policy left
            an existing unclaimed item in place.

        Raises:
            MailboxError: If the slot could not be written
        """
        if self.policy == MailboxPolicy.KEEP and self.has_feedback():
            logger.info(f"Unclaimed feedback already waiting for {self.namespace.label}, keeping it")
            return False

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path_str = tempfile.mkstemp(
                prefix="feedback-", suffix=".tmp", dir=str(self.path.parent)
            )
            temp_path = Path(temp_path_str)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(text)
                # Replacing is atomic, so the slot is never half-written
                os.replace(temp_path, self.path)
            except BaseException:
                temp_path.unlink(missing_ok=True)
                raise
        except OSError as e:
            raise MailboxError(f"Failed to write feedback slot {self.path}: {e}") from e
        return True

    def claim(self) -> str | None:
        """Atomically read-and-clear the slot.

        Returns:
            The feedback text, or None if there was none or another claimer
            won the race.
        """
        claimed = self.path.with_name(f"{self.path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}")
        try:
            os.rename(self.path, claimed)
        except FileNotFoundError:
            return None

        try:
            content = claimed.read_text(encoding="utf-8")
        finally:
            claimed.unlink(missing_ok=True)

        if not content.strip():
            return None
        return content

    def discard(self) -> None:
        self.path.unlink(missing_ok=True)
