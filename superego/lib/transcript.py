"""Transcript reading and the evaluation cursor.

Reads Claude Code session JSONL into immutable TranscriptEntry objects and
tracks which prefix of the conversation has already been evaluated. The cursor
never mutates entries; it only compares timestamps against the watermark
stored in the session state.

System reminders are injected by the host on every turn. In a long session the
same reminder appears hundreds of times, so only the most recent copy of each
distinct reminder is kept in the pending slice.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from superego.lib.session_state import SessionState, StateStore

logger = logging.getLogger(__name__)

_REMINDER_RE = re.compile(r"<system-reminder>(.*?)</system-reminder>", re.DOTALL)
_TOOL_RESULT_LIMIT = 500


class TranscriptEntry(BaseModel):
    """One immutable record from the monitored conversation."""

    model_config = ConfigDict(frozen=True)

    role: str  # user | assistant | summary
    content: str = ""
    timestamp: datetime | None = None
    is_system_reminder: bool = False
    dedup_key: str | None = None
    session_id: str | None = None

    thinking: str | None = None
    tool_uses: list[str] = Field(default_factory=list)
    tool_results: list[str] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # Naive timestamps are UTC so they compare with the watermark
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# --- Reading ---


def _parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def strip_system_reminders(text: str) -> str:
    """Remove <system-reminder>...</system-reminder> blocks from text."""
    return _REMINDER_RE.sub("", text).strip()


def _reminder_key(text: str) -> str:
    return " ".join(" ".join(_REMINDER_RE.findall(text)).split())


def _tool_summary(name: str, tool_input: Any) -> str:
    """Extract the key identifier from a tool input (file path, command, pattern)."""
    if not isinstance(tool_input, dict):
        return name
    if name in ("Edit", "Write", "Read", "MultiEdit", "NotebookEdit"):
        detail = tool_input.get("file_path", "")
    elif name == "Bash":
        detail = tool_input.get("command", "")
    elif name in ("Glob", "Grep"):
        detail = tool_input.get("pattern", "")
    else:
        detail = ""
    return f"{name}({detail})" if detail else name


def _stringify(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if parts:
            return "\n".join(parts)
    return json.dumps(content)


def _user_entry(record: dict[str, Any], timestamp: datetime | None) -> TranscriptEntry | None:
    content = record.get("message", {}).get("content", "")
    texts: list[str] = []
    tool_results: list[str] = []

    if isinstance(content, str):
        texts.append(content)
    elif isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                texts.append(block["text"])
            elif block.get("type") == "tool_result" and block.get("content") is not None:
                tool_results.append(_stringify(block["content"]))

    raw_text = "\n".join(texts)
    cleaned = strip_system_reminders(raw_text)
    is_reminder = bool(raw_text.strip()) and not cleaned and not tool_results

    if not cleaned and not tool_results and not is_reminder:
        return None

    return TranscriptEntry(
        role="user",
        content=raw_text.strip() if is_reminder else cleaned,
        timestamp=timestamp,
        is_system_reminder=is_reminder,
        dedup_key=_reminder_key(raw_text) if is_reminder else None,
        session_id=record.get("sessionId"),
        tool_results=tool_results,
    )


def _assistant_entry(record: dict[str, Any], timestamp: datetime | None) -> TranscriptEntry | None:
    content = record.get("message", {}).get("content", [])
    if isinstance(content, str):
        content = [{"type": "text", "text": content}]

    texts, thoughts, tool_uses = [], [], []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and block.get("text"):
            texts.append(block["text"])
        elif block_type == "thinking" and block.get("thinking"):
            thoughts.append(block["thinking"])
        elif block_type == "tool_use" and block.get("name"):
            tool_uses.append(_tool_summary(block["name"], block.get("input")))

    if not texts and not thoughts and not tool_uses:
        return None

    return TranscriptEntry(
        role="assistant",
        content="\n".join(texts),
        timestamp=timestamp,
        session_id=record.get("sessionId"),
        thinking="\n".join(thoughts) or None,
        tool_uses=tool_uses,
    )


def parse_record(record: dict[str, Any]) -> TranscriptEntry | None:
    """Convert one JSONL record into an entry (None for types we don't evaluate)."""
    record_type = record.get("type")
    timestamp = _parse_timestamp(record.get("timestamp"))

    if record_type == "summary":
        summary = record.get("summary")
        if not summary:
            return None
        return TranscriptEntry(role="summary", content=summary, timestamp=timestamp)
    if record_type == "user":
        return _user_entry(record, timestamp)
    if record_type == "assistant":
        return _assistant_entry(record, timestamp)
    return None


def read_transcript(path: Path) -> list[TranscriptEntry]:
    """Read and parse a transcript JSONL file.

    Skips malformed lines rather than failing entirely.

    Raises:
        OSError: If the file cannot be opened
    """
    entries = []
    with Path(path).open(encoding="utf-8") as f:
        for line_num, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                if not isinstance(record, dict):
                    raise ValueError("record is not an object")
                entry = parse_record(record)
            except (ValueError, ValidationError) as e:
                logger.warning(f"Skipping malformed line {line_num} in transcript {path}: {e}")
                continue
            if entry is not None:
                entries.append(entry)
    return entries


# --- Selection ---


def _matches_session(entry: TranscriptEntry, session_id: str | None) -> bool:
    return session_id is None or entry.session_id == session_id


def dedup_system_reminders(entries: Sequence[TranscriptEntry]) -> list[TranscriptEntry]:
    """Drop all but the most recent system reminder per dedup key."""
    last_index: dict[str, int] = {}
    for i, entry in enumerate(entries):
        if entry.is_system_reminder:
            last_index[entry.dedup_key or entry.content] = i

    return [
        entry
        for i, entry in enumerate(entries)
        if not entry.is_system_reminder or last_index[entry.dedup_key or entry.content] == i
    ]


def entries_since(
    entries: Iterable[TranscriptEntry],
    since: datetime | None,
    session_id: str | None = None,
) -> list[TranscriptEntry]:
    """Entries strictly after ``since`` (all of them when ``since`` is None).

    Entries without a timestamp (summaries) ride along as context after
    compaction, but only when something timestamped is new: on their own
    they never make the slice non-empty once a watermark exists.
    """
    selected = []
    for entry in entries:
        if not _matches_session(entry, session_id):
            continue
        if since is not None and entry.timestamp is not None and entry.timestamp <= since:
            continue
        selected.append(entry)
    if since is not None and all(entry.timestamp is None for entry in selected):
        return []
    return selected


def entries_in_window(
    entries: Iterable[TranscriptEntry],
    start: datetime,
    end: datetime,
    session_id: str | None = None,
) -> list[TranscriptEntry]:
    """Timestamped entries with start < timestamp <= end (carryover context)."""
    return [
        entry
        for entry in entries
        if entry.timestamp is not None
        and start < entry.timestamp <= end
        and entry.role != "summary"
        and not entry.is_system_reminder
        and _matches_session(entry, session_id)
    ]


class TranscriptCursor:
    """Computes the unevaluated slice of a transcript for one namespace."""

    def __init__(self, store: StateStore):
        self.store = store

    def pending(
        self,
        full_transcript: Sequence[TranscriptEntry],
        session_id: str | None = None,
        state: SessionState | None = None,
    ) -> list[TranscriptEntry]:
        """Entries newer than the watermark, with repeated reminders collapsed.

        Pure with respect to the store: calling twice without an ``advance``
        in between returns the same sequence.
        """
        if state is None:
            state = self.store.load()
        return dedup_system_reminders(entries_since(full_transcript, state.last_evaluated, session_id))

    def advance(self, new_watermark: datetime) -> SessionState:
        """Move the watermark forward (never back).

        Only call after the evaluator and the decision parser both succeeded.
        """
        return self.store.update(lambda state: state.mark_evaluated_at(new_watermark))


# --- Formatting ---


def format_context(entries: Iterable[TranscriptEntry]) -> str:
    """Render entries as plain text for the evaluator."""
    output: list[str] = []

    for entry in entries:
        if entry.role == "summary":
            output.append(f"SUMMARY: {entry.content}\n")
        elif entry.role == "user":
            for result in entry.tool_results:
                if len(result) > _TOOL_RESULT_LIMIT:
                    result = f"{result[:_TOOL_RESULT_LIMIT]}...[truncated]"
                output.append(f"TOOL_RESULT: {result}\n")
            if entry.content:
                prefix = "SYSTEM_REMINDER" if entry.is_system_reminder else "USER"
                output.append(f"{prefix}: {entry.content}\n")
        elif entry.role == "assistant":
            if entry.thinking:
                output.append(f"THINKING: {entry.thinking}\n")
            if entry.tool_uses:
                output.append(f"TOOLS: {' '.join(entry.tool_uses)}")
            if entry.content:
                output.append(f"ASSISTANT: {entry.content}\n")

    return "\n".join(output)
