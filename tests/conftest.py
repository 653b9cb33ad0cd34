"""Shared fixtures for superego tests."""

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from superego.lib.config import SuperegoConfig
from superego.lib.coordinator import EvaluationCoordinator
from superego.lib.paths import Namespace, resolve_namespace
from superego.lib.transcript import TranscriptEntry

T0 = datetime(2026, 1, 15, 10, 0, 0, tzinfo=UTC)


class FakeEvaluator:
    """Evaluator double: returns a canned response (or raises) and records calls."""

    def __init__(self, response: str = "ALLOW\n\nlooks fine", error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def __call__(self, system_prompt: str, message: str) -> str:
        self.calls.append((system_prompt, message))
        if self.error is not None:
            raise self.error
        return self.response


class Clock:
    """Settable clock for deterministic watermarks."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's superego environment out of tests."""
    for var in (
        "SUPEREGO_DISABLED",
        "SUPEREGO_DIR",
        "SUPEREGO_CHANGE_THRESHOLD",
        "SUPEREGO_EVAL_INTERVAL_MINUTES",
        "CLAUDE_PROJECT_DIR",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def root(tmp_path: Path) -> Path:
    path = tmp_path / ".superego"
    path.mkdir()
    return path


@pytest.fixture
def namespace(root: Path) -> Namespace:
    return resolve_namespace(root, "session-abc")


@pytest.fixture
def clock() -> Clock:
    return Clock(T0 + timedelta(hours=1))


@pytest.fixture
def evaluator() -> FakeEvaluator:
    return FakeEvaluator()


@pytest.fixture
def make_coordinator(root: Path, clock: Clock) -> Callable[..., EvaluationCoordinator]:
    def _make(evaluator: Any, **config: Any) -> EvaluationCoordinator:
        return EvaluationCoordinator(root, evaluator, SuperegoConfig(**config), clock=clock)

    return _make


@pytest.fixture
def entry() -> Callable[..., TranscriptEntry]:
    """Build a transcript entry ``minutes`` after T0."""

    def _entry(
        content: str,
        minutes: float = 0,
        role: str = "user",
        session_id: str | None = "session-abc",
        **kwargs: Any,
    ) -> TranscriptEntry:
        return TranscriptEntry(
            role=role,
            content=content,
            timestamp=T0 + timedelta(minutes=minutes),
            session_id=session_id,
            **kwargs,
        )

    return _entry


@pytest.fixture
def write_transcript(tmp_path: Path) -> Callable[[list[dict[str, Any]]], Path]:
    """Write Claude Code JSONL records to a transcript file."""

    def _write(records: list[dict[str, Any]], name: str = "transcript.jsonl") -> Path:
        path = tmp_path / name
        path.write_text("".join(json.dumps(r) + "\n" for r in records))
        return path

    return _write
