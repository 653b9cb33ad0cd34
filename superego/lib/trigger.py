"""Trigger policy - decides whether an evaluation is due.

Cheap and side-effect free, so every hook event may ask. Due when any of:

- the caller forces it
- a proposed change is at least ``change_threshold`` lines
- at least ``interval`` has passed since the last evaluation AND there is
  something pending

Large changes are reviewed up front because they are expensive to undo; the
interval catches gradual drift during long sessions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from superego.lib.config import SuperegoConfig

# Tools whose input describes a file change the write gate cares about
CHANGE_TOOLS = frozenset({"Edit", "Write", "MultiEdit"})

WRITE_PREVIEW_LINES = 100


@dataclass(frozen=True)
class TriggerDecision:
    due: bool
    reason: str

    @classmethod
    def fire(cls, reason: str) -> TriggerDecision:
        return cls(due=True, reason=reason)

    @classmethod
    def hold(cls, reason: str) -> TriggerDecision:
        return cls(due=False, reason=reason)


class TriggerPolicy:
    def __init__(self, interval: timedelta, change_threshold: int):
        self.interval = interval
        self.change_threshold = change_threshold

    @classmethod
    def from_config(cls, config: SuperegoConfig) -> TriggerPolicy:
        return cls(
            interval=timedelta(minutes=config.eval_interval_minutes),
            change_threshold=config.change_threshold_lines,
        )

    def evaluate(
        self,
        last_evaluated: datetime | None,
        now: datetime,
        pending_count: int,
        change_size: int | None = None,
        forced: bool = False,
    ) -> TriggerDecision:
        """Decide whether to evaluate now.

        Args:
            last_evaluated: Current watermark (None if never evaluated)
            now: Current time
            pending_count: Number of unevaluated transcript entries
            change_size: Line count of a proposed change, if any
            forced: Caller asked for an evaluation regardless

        Returns:
            TriggerDecision with ``due`` and a short reason string
        """
        if forced:
            return TriggerDecision.fire("forced")

        if change_size is not None and change_size >= self.change_threshold:
            return TriggerDecision.fire("change_size")

        if pending_count <= 0:
            if change_size is not None:
                return TriggerDecision.hold("below_threshold")
            return TriggerDecision.hold("nothing_pending")

        if last_evaluated is None:
            return TriggerDecision.fire("first_evaluation")

        if now - last_evaluated >= self.interval:
            return TriggerDecision.fire("interval")

        if change_size is not None:
            return TriggerDecision.hold("below_threshold")
        return TriggerDecision.hold("interval_not_elapsed")


def _line_count(text: Any) -> int:
    if not isinstance(text, str) or not text:
        return 0
    return len(text.splitlines())


def count_change_lines(tool_name: str | None, tool_input: dict[str, Any] | None) -> int:
    """Size of a proposed file change in lines.

    Edit counts the larger of the old and new strings, Write counts the new
    content, MultiEdit sums its edits. Anything else is 0.
    """
    if not tool_input or tool_name not in CHANGE_TOOLS:
        return 0

    if tool_name == "Edit":
        return max(_line_count(tool_input.get("old_string")), _line_count(tool_input.get("new_string")))
    if tool_name == "Write":
        return _line_count(tool_input.get("content"))

    edits = tool_input.get("edits") or []
    return sum(
        max(_line_count(edit.get("old_string")), _line_count(edit.get("new_string")))
        for edit in edits
        if isinstance(edit, dict)
    )


def describe_change(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Render a proposed change as text for the evaluation message."""
    file_path = tool_input.get("file_path", "unknown")

    if tool_name == "Write":
        lines = (tool_input.get("content") or "").splitlines()
        preview = "\n".join(lines[:WRITE_PREVIEW_LINES])
        if len(lines) > WRITE_PREVIEW_LINES:
            preview += f"\n... ({len(lines) - WRITE_PREVIEW_LINES} more lines)"
        return f"Tool: Write\nFile: {file_path}\nContent:\n{preview}"

    if tool_name == "Edit":
        return (
            f"Tool: Edit\nFile: {file_path}\n"
            f"Old:\n{tool_input.get('old_string', '')}\n"
            f"New:\n{tool_input.get('new_string', '')}"
        )

    parts = [f"Tool: {tool_name}", f"File: {file_path}"]
    for i, edit in enumerate(tool_input.get("edits") or [], start=1):
        if not isinstance(edit, dict):
            continue
        parts.append(f"Edit {i} old:\n{edit.get('old_string', '')}")
        parts.append(f"Edit {i} new:\n{edit.get('new_string', '')}")
    return "\n".join(parts)
