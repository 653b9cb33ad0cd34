"""Decision history statistics and LLM-assisted analysis."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from pydantic import BaseModel

from superego.lib.decision_parser import Verdict
from superego.lib.evaluator import Evaluator
from superego.lib.journal import JournalRecord, RecordType

logger = logging.getLogger(__name__)

NO_DECISIONS = "No decisions to analyze."

AUDIT_SYSTEM_PROMPT = (
    "You are a code review analyst. Analyze the provided decision history "
    "and provide actionable insights. Be concise and direct."
)


class AuditStats(BaseModel):
    total: int = 0
    start_date: datetime | None = None
    end_date: datetime | None = None
    session_count: int = 0
    blocks: int = 0
    allows: int = 0


class AuditResult(BaseModel):
    stats: AuditStats
    analysis: str


def _decisions(records: Sequence[JournalRecord]) -> list[JournalRecord]:
    return [r for r in records if r.type == RecordType.DECISION]


def calculate_stats(records: Sequence[JournalRecord]) -> AuditStats:
    """Counts and date range over decision records (assumed oldest first)."""
    decisions = _decisions(records)
    if not decisions:
        return AuditStats()

    return AuditStats(
        total=len(decisions),
        start_date=decisions[0].timestamp,
        end_date=decisions[-1].timestamp,
        session_count=len({d.session_id for d in decisions if d.session_id}),
        blocks=sum(1 for d in decisions if d.verdict == Verdict.BLOCK),
        allows=sum(1 for d in decisions if d.verdict == Verdict.ALLOW),
    )


def build_audit_prompt(records: Sequence[JournalRecord]) -> str:
    lines = [
        "You are analyzing superego's decision history for a project.",
        "",
        "Superego is a metacognitive advisor that monitors Claude Code sessions "
        "and provides feedback when it detects potential issues.",
        "",
        "Below are all recorded decisions:",
        "",
    ]

    for i, record in enumerate(_decisions(records), start=1):
        lines.append(f"--- Decision {i} ---")
        lines.append(f"Timestamp: {record.timestamp:%Y-%m-%d %H:%M} UTC")
        if record.session_id:
            short = record.session_id[:8]
            lines.append(f"Session: {short}..." if len(record.session_id) > 8 else f"Session: {short}")
        else:
            lines.append("Session: (unknown)")
        if record.verdict:
            lines.append(f"Verdict: {record.verdict.value.upper()}")
        if record.context:
            lines.append(f"Feedback: {record.context}")
        lines.append("")

    lines.extend(
        [
            "---",
            "",
            "Provide a concise analysis covering:",
            "",
            "1. **Patterns & Themes**: What kinds of concerns came up repeatedly? "
            "Any behavioral patterns you notice?",
            "",
            "2. **Timeline**: Brief chronological narrative of significant events.",
            "",
            "3. **Actionable Insights**: Based on this history, what should the "
            "developer focus on improving?",
            "",
            "Keep the analysis concise and actionable. Use markdown formatting.",
        ]
    )
    return "\n".join(lines)


def run_audit(records: Sequence[JournalRecord], evaluator: Evaluator) -> AuditResult:
    """Compute stats and ask the evaluator for an analysis.

    An empty history short-circuits without calling the evaluator.

    Raises:
        EvaluatorError: If the analysis call fails
    """
    stats = calculate_stats(records)
    if stats.total == 0:
        return AuditResult(stats=stats, analysis=NO_DECISIONS)

    analysis = evaluator(AUDIT_SYSTEM_PROMPT, build_audit_prompt(records))
    return AuditResult(stats=stats, analysis=analysis)
