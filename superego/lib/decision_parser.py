"""Turn raw evaluator text into a verdict.

Expected response format:

    DECISION: ALLOW|BLOCK        (a bare "ALLOW" / "BLOCK" is accepted too)
    CONFIDENCE: HIGH|MEDIUM|LOW  (optional)

    <feedback text>

Models like to decorate the marker ("## DECISION: ALLOW", "**DECISION:** BLOCK",
"> ALLOW", a ``` fence), so common markdown prefixes are tolerated.

Anything that is not a confident ALLOW becomes BLOCK. If the tool cannot tell
that the work is fine, it surfaces the text instead of silently letting it
through; unparseable output is passed on verbatim as the feedback.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import StrEnum

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"^(?:DECISION\s*:\**\s*)?(?P<word>[A-Za-z]+)\**\s*[.!]?$", re.IGNORECASE)
_DECISION_PREFIX_RE = re.compile(r"^DECISION\s*:", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"^CONFIDENCE\s*:\**\s*(?P<level>[A-Za-z]+)", re.IGNORECASE)


class Verdict(StrEnum):
    ALLOW = "allow"
    BLOCK = "block"


class Confidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class ParsedVerdict:
    """Closed result of parsing: Allow(feedback) or Block(feedback)."""

    verdict: Verdict
    feedback: str = ""
    confidence: Confidence | None = None

    @classmethod
    def allow(cls, feedback: str = "", confidence: Confidence | None = None) -> ParsedVerdict:
        return cls(verdict=Verdict.ALLOW, feedback=feedback, confidence=confidence)

    @classmethod
    def block(cls, feedback: str, confidence: Confidence | None = None) -> ParsedVerdict:
        return cls(verdict=Verdict.BLOCK, feedback=feedback, confidence=confidence)

    @property
    def is_block(self) -> bool:
        return self.verdict == Verdict.BLOCK

    def mailbox_text(self) -> str:
        """Feedback as delivered to the session (confidence shown when known)."""
        if self.confidence is None:
            return self.feedback
        return f"CONFIDENCE: {self.confidence.value.upper()}\n\n{self.feedback}"


def strip_markdown_prefix(line: str) -> str:
    """Strip heading, blockquote and emphasis markers from the start of a line."""
    return line.strip().lstrip("#>*_ ").strip()


def _strip_fences(lines: list[str]) -> list[str]:
    return [line for line in lines if not line.strip().startswith("```")]


def _parse_confidence(line: str) -> Confidence | None:
    match = _CONFIDENCE_RE.match(strip_markdown_prefix(line))
    if not match:
        return None
    try:
        return Confidence(match.group("level").lower())
    except ValueError:
        return None


def parse_decision(raw: str) -> ParsedVerdict:
    """Parse evaluator output into a verdict, defaulting to BLOCK.

    Args:
        raw: Raw response text from the evaluator

    Returns:
        ParsedVerdict. ALLOW only when the first non-blank line is an ALLOW
        marker; otherwise BLOCK with the body (or the raw text if there is no
        usable body).
    """
    text = (raw or "").strip()
    lines = _strip_fences(text.splitlines())

    # First non-blank line is the marker line
    idx = next((i for i, line in enumerate(lines) if line.strip()), None)
    if idx is None:
        logger.warning("Empty evaluator response, defaulting to BLOCK")
        return ParsedVerdict.block(text)

    marker_line = strip_markdown_prefix(lines[idx])
    rest = lines[idx + 1 :]

    # Optional CONFIDENCE line, possibly after blank lines
    confidence = None
    for offset, line in enumerate(rest):
        if not line.strip():
            continue
        confidence = _parse_confidence(line)
        if confidence is not None:
            rest = rest[offset + 1 :]
        break

    body = "\n".join(rest).strip()
    match = _MARKER_RE.match(marker_line)
    word = match.group("word").upper() if match else None

    if word == "ALLOW":
        return ParsedVerdict.allow(body, confidence)
    if word == "BLOCK":
        return ParsedVerdict.block(body or text, confidence)

    if _DECISION_PREFIX_RE.match(marker_line):
        logger.warning(f"Unknown decision {marker_line!r}, defaulting to BLOCK")
        return ParsedVerdict.block(body or text, confidence)

    logger.warning("No verdict marker in evaluator response, defaulting to BLOCK")
    return ParsedVerdict.block(text)
