"""Tests for the superego command line."""

import io
import json
import logging

import pytest

from superego import cli
from superego.lib.mailbox import FeedbackMailbox
from superego.lib.paths import resolve_namespace
from superego.lib.session_state import Phase, StateStore

from conftest import FakeEvaluator

SID = "session-abc"


@pytest.fixture(autouse=True)
def restore_logging():
    """setup_logging() reconfigures the root logger; put it back afterwards."""
    root_logger = logging.getLogger()
    saved_handlers, saved_level = root_logger.handlers[:], root_logger.level
    yield
    for handler in root_logger.handlers:
        if handler not in saved_handlers:
            handler.close()
    root_logger.handlers[:] = saved_handlers
    root_logger.setLevel(saved_level)


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.setenv("CLAUDE_PROJECT_DIR", str(tmp_path))
    return tmp_path / ".superego"


@pytest.fixture
def initialized(project):
    assert cli.main(["init"]) == 0
    return project


@pytest.fixture
def fake_evaluator(monkeypatch):
    evaluator = FakeEvaluator("BLOCK\n\nfix the tests first")
    monkeypatch.setattr(cli, "ClaudeCliEvaluator", lambda **kwargs: evaluator)
    return evaluator


def test_init_writes_config_and_prompt(project, capsys) -> None:
    assert cli.main(["init"]) == 0

    assert "eval_interval_minutes: 5" in (project / "config.yaml").read_text()
    assert "DECISION: ALLOW" in (project / "prompt.md").read_text()
    assert "initialized" in capsys.readouterr().out


def test_init_twice_needs_force(initialized) -> None:
    assert cli.main(["init"]) == 1
    assert cli.main(["init", "--force"]) == 0


def test_commands_require_init(project, capsys) -> None:
    assert cli.main(["get-feedback"]) == 1
    assert "superego init" in capsys.readouterr().err


def test_hook_in_uninitialized_project_is_a_no_op(project, monkeypatch, capsys) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps({"hook_event_name": "Stop"})))

    assert cli.main(["hook"]) == 0
    assert capsys.readouterr().out.strip() == "{}"
    assert not project.exists()


def test_hook_delivers_feedback(initialized, monkeypatch, capsys) -> None:
    FeedbackMailbox(resolve_namespace(initialized, SID)).post("check the edge cases")
    payload = {"hook_event_name": "UserPromptSubmit", "session_id": SID}
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(payload)))

    assert cli.main(["hook", "UserPromptSubmit"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["hookSpecificOutput"]["additionalContext"].endswith("check the edge cases")


def test_hook_writes_log_file(initialized, monkeypatch) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps({"hook_event_name": "Stop", "session_id": SID})))

    cli.main(["hook"])

    assert (initialized / "hook.log").exists()


def test_evaluate_and_get_feedback(initialized, fake_evaluator, write_transcript, capsys) -> None:
    path = write_transcript(
        [
            {
                "type": "user",
                "sessionId": SID,
                "timestamp": "2026-01-15T10:01:00Z",
                "message": {"role": "user", "content": "ship it"},
            }
        ]
    )

    assert cli.main(["evaluate", "--transcript-path", str(path), "--session-id", SID]) == 0
    assert "Decision: BLOCK" in capsys.readouterr().out

    assert cli.main(["has-feedback", "--session-id", SID]) == 0
    assert cli.main(["get-feedback", "--session-id", SID]) == 0
    assert "fix the tests first" in capsys.readouterr().out
    assert cli.main(["has-feedback", "--session-id", SID]) == 1
    cli.main(["get-feedback", "--session-id", SID])
    assert "No pending feedback." in capsys.readouterr().out


def test_evaluate_failure_exit_code(initialized, fake_evaluator, write_transcript, capsys) -> None:
    fake_evaluator.error = RuntimeError("claude not installed")
    path = write_transcript([{"type": "user", "message": {"content": "hi"}}])

    assert cli.main(["evaluate", "--transcript-path", str(path)]) == 1
    assert "did not complete" in capsys.readouterr().err


def test_history(initialized, capsys) -> None:
    assert cli.main(["history"]) == 0
    assert "No decisions recorded." in capsys.readouterr().out

    cli.main(["phase", "exploring", "--session-id", SID])
    capsys.readouterr()
    assert cli.main(["history", "--limit", "5"]) == 0
    out = capsys.readouterr().out
    assert "phase_changed" in out
    assert "exploring" in out


def test_audit_json_with_empty_history(initialized, fake_evaluator, capsys) -> None:
    assert cli.main(["audit", "--json"]) == 0

    result = json.loads(capsys.readouterr().out)
    assert result["analysis"] == "No decisions to analyze."
    assert result["stats"]["total"] == 0
    assert fake_evaluator.calls == []


def test_state_commands(initialized) -> None:
    store = StateStore(resolve_namespace(initialized, SID))

    assert cli.main(["disable", "--session-id", SID]) == 0
    assert store.load().disabled
    assert cli.main(["enable", "--session-id", SID]) == 0
    assert not store.load().disabled

    assert cli.main(["phase", "ready", "--session-id", SID]) == 0
    assert store.load().phase == Phase.READY

    assert cli.main(["override", "--reason", "approved", "--session-id", SID]) == 0
    assert store.load().pending_override.reason == "approved"

    assert cli.main(["reset", "--session-id", SID]) == 0
    assert store.load().pending_override is None


def test_should_eval(initialized, capsys) -> None:
    assert cli.main(["should-eval"]) == 0
    assert capsys.readouterr().out.startswith("no (nothing_pending)")
