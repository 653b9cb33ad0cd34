"""End-to-end tests for the evaluation control flow."""

import multiprocessing
import time
from datetime import timedelta
from pathlib import Path

import pytest

from superego.lib.config import SuperegoConfig
from superego.lib.coordinator import EvaluationCoordinator, OutcomeStatus, TriggerEvent
from superego.lib.decision_parser import Verdict
from superego.lib.errors import EvaluatorError, EvaluatorTimeout, MailboxError
from superego.lib.eval_lock import LockManager
from superego.lib.journal import DecisionJournal, RecordType
from superego.lib.mailbox import FeedbackMailbox
from superego.lib.paths import resolve_namespace
from superego.lib.session_state import Phase, StateStore
from superego.lib.transcript import TranscriptEntry

from conftest import T0, FakeEvaluator

SID = "session-abc"


class SlowEvaluator:
    """Holds the lock long enough for a competing process to notice, and leaves a trace."""

    def __init__(self, calls_dir: str):
        self.calls_dir = Path(calls_dir)

    def __call__(self, system_prompt: str, message: str) -> str:
        (self.calls_dir / f"call-{time.time_ns()}").touch()
        time.sleep(2)
        return "ALLOW\n\nfine"


def _run_in_child(root: str, calls_dir: str, start, results) -> None:
    coordinator = EvaluationCoordinator(Path(root), SlowEvaluator(calls_dir), SuperegoConfig())
    transcript = [
        TranscriptEntry(role="user", content="Build the thing", timestamp=T0, session_id=SID),
    ]
    start.wait(timeout=30)
    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))
    results.put((outcome.status.value, outcome.reason))


@pytest.fixture
def transcript(entry) -> list[TranscriptEntry]:
    return [
        entry("Please add a login page", 1),
        entry("Sure, writing it now", 2, role="assistant"),
        entry("Also refactor the database layer", 3),
    ]


def _state(root: Path):
    return StateStore(resolve_namespace(root, SID)).load()


def _journal(root: Path):
    return DecisionJournal(resolve_namespace(root, SID)).read_all()


def test_allow_scenario(root, clock, make_coordinator, transcript) -> None:
    """Fresh session, evaluator allows: watermark advances, one allow record, no feedback."""
    evaluator = FakeEvaluator("ALLOW\n\nlooks fine")
    coordinator = make_coordinator(evaluator)

    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))

    assert outcome.status == OutcomeStatus.EVALUATED
    assert outcome.verdict == Verdict.ALLOW
    assert outcome.reason == "first_evaluation"
    assert not outcome.is_warning
    assert len(evaluator.calls) == 1
    assert _state(root).last_evaluated == clock.now
    records = _journal(root)
    assert [(r.type, r.verdict) for r in records] == [(RecordType.DECISION, Verdict.ALLOW)]
    assert not coordinator.has_feedback(SID)
    assert not LockManager(resolve_namespace(root, SID)).held()


def test_block_scenario(root, clock, make_coordinator, transcript) -> None:
    """Evaluator blocks: feedback lands in the mailbox and is claimed exactly once."""
    coordinator = make_coordinator(FakeEvaluator("BLOCK\n\nscope drift detected"))

    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))
    clock.advance(seconds=1)

    assert outcome.is_block
    assert outcome.feedback == "scope drift detected"
    assert coordinator.claim_feedback(SID) == "scope drift detected"
    assert coordinator.claim_feedback(SID) is None
    types = [r.type for r in _journal(root)]
    assert types == [RecordType.DECISION, RecordType.FEEDBACK_CLAIMED]


def test_overlapping_trigger_in_same_session_is_skipped(root, make_coordinator, transcript) -> None:
    """A second trigger while an evaluation runs exits immediately as busy."""
    nested = []

    def evaluator(system_prompt: str, message: str) -> str:
        nested.append(coordinator.run(TriggerEvent(session_id=SID, transcript=transcript)))
        return "ALLOW"

    coordinator = make_coordinator(evaluator)
    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))

    assert outcome.status == OutcomeStatus.EVALUATED
    assert [(o.status, o.reason) for o in nested] == [(OutcomeStatus.SKIPPED, "busy")]
    assert len(_journal(root)) == 1


def test_concurrent_processes_only_one_evaluates(root: Path, tmp_path: Path) -> None:
    """Two processes triggering within milliseconds: one evaluates, the other skips."""
    calls_dir = tmp_path / "calls"
    calls_dir.mkdir()
    ctx = multiprocessing.get_context("spawn")
    start = ctx.Event()
    results = ctx.Queue()
    procs = [
        ctx.Process(target=_run_in_child, args=(str(root), str(calls_dir), start, results))
        for _ in range(2)
    ]
    for proc in procs:
        proc.start()
    start.set()

    outcomes = sorted(results.get(timeout=120) for _ in procs)
    for proc in procs:
        proc.join(timeout=60)

    assert outcomes == [("evaluated", "first_evaluation"), ("skipped", "busy")]
    assert len(list(calls_dir.iterdir())) == 1
    assert len(_journal(root)) == 1


def test_evaluator_timeout_scenario(root, make_coordinator, transcript) -> None:
    """Timeout: allowed with a warning, nothing persisted, lock released."""
    coordinator = make_coordinator(FakeEvaluator(error=EvaluatorTimeout("took too long")))

    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.is_warning
    assert outcome.verdict == Verdict.ALLOW
    assert _state(root).last_evaluated is None
    assert _journal(root) == []
    assert not coordinator.has_feedback(SID)
    assert LockManager(resolve_namespace(root, SID)).try_acquire() is not None


def test_unexpected_evaluator_exception_fails_open(root, make_coordinator, transcript) -> None:
    coordinator = make_coordinator(FakeEvaluator(error=RuntimeError("boom")))

    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))

    assert outcome.is_warning
    assert not LockManager(resolve_namespace(root, SID)).held()


def test_busy_lock_skips_without_mutation(root, make_coordinator, transcript) -> None:
    LockManager(resolve_namespace(root, SID)).try_acquire()
    evaluator = FakeEvaluator()
    coordinator = make_coordinator(evaluator)

    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))

    assert (outcome.status, outcome.reason) == (OutcomeStatus.SKIPPED, "busy")
    assert outcome.verdict == Verdict.ALLOW
    assert evaluator.calls == []
    assert not resolve_namespace(root, SID).state_file.exists()


def test_nothing_pending_skips_without_lock(root, make_coordinator) -> None:
    evaluator = FakeEvaluator()
    outcome = make_coordinator(evaluator).run(TriggerEvent(session_id=SID, transcript=[], forced=True))

    assert outcome.reason == "nothing_pending"
    assert evaluator.calls == []


def test_interval_gates_repeat_evaluations(root, clock, make_coordinator, transcript, entry) -> None:
    evaluator = FakeEvaluator()
    coordinator = make_coordinator(evaluator, eval_interval_minutes=5)
    coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))

    later = [*transcript, entry("one more thing", 61)]
    clock.advance(minutes=2)
    assert coordinator.run(TriggerEvent(session_id=SID, transcript=later)).reason == "interval_not_elapsed"

    clock.advance(minutes=3)
    assert coordinator.run(TriggerEvent(session_id=SID, transcript=later)).status == OutcomeStatus.EVALUATED
    assert len(evaluator.calls) == 2


def test_compaction_summary_does_not_retrigger(clock, make_coordinator, entry) -> None:
    """After an evaluation, a summary with nothing new behind it is not re-reviewed."""
    evaluator = FakeEvaluator()
    coordinator = make_coordinator(evaluator, eval_interval_minutes=5)
    summary = TranscriptEntry(role="summary", content="Earlier: set up the project", session_id=SID)
    transcript = [summary, entry("Carry on", 1)]

    assert coordinator.run(TriggerEvent(session_id=SID, transcript=transcript)).status == OutcomeStatus.EVALUATED

    clock.advance(minutes=10)
    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))

    assert outcome.reason == "nothing_pending"
    assert len(evaluator.calls) == 1


def test_naive_transcript_timestamps_from_host(clock, make_coordinator) -> None:
    evaluator = FakeEvaluator()
    coordinator = make_coordinator(evaluator)
    payload = {
        "session_id": SID,
        "transcript": [
            {"role": "user", "content": "Build the thing", "timestamp": "2026-01-15T10:00:00", "session_id": SID}
        ],
    }

    assert coordinator.run(TriggerEvent.model_validate(payload)).status == OutcomeStatus.EVALUATED
    clock.advance(minutes=10)
    assert coordinator.run(TriggerEvent.model_validate(payload)).reason == "nothing_pending"
    assert len(evaluator.calls) == 1


def test_watermark_is_read_time_not_completion_time(root, clock, make_coordinator, transcript) -> None:
    read_time = clock.now

    def evaluator(system_prompt: str, message: str) -> str:
        clock.advance(minutes=3)
        return "ALLOW"

    outcome = make_coordinator(evaluator).run(TriggerEvent(session_id=SID, transcript=transcript))

    assert _state(root).last_evaluated == read_time
    assert outcome.decision.timestamp == read_time + timedelta(minutes=3)


def test_garbled_response_blocks_with_raw_text(make_coordinator, transcript) -> None:
    coordinator = make_coordinator(FakeEvaluator("I am not sure what to say"))

    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))

    assert outcome.is_block
    assert coordinator.claim_feedback(SID) == "I am not sure what to say"


def test_mailbox_failure_discards_block(root, make_coordinator, transcript, monkeypatch) -> None:
    """A block that cannot be delivered is neither journaled nor counted as evaluated."""

    def _fail(self, text):
        raise MailboxError("disk full")

    monkeypatch.setattr(FeedbackMailbox, "post", _fail)
    coordinator = make_coordinator(FakeEvaluator("BLOCK\n\nstop"))

    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))

    assert outcome.is_warning
    assert _journal(root) == []
    assert _state(root).last_evaluated is None


@pytest.mark.parametrize("via_env", [False, True])
def test_disabled_short_circuits(root, make_coordinator, transcript, monkeypatch, via_env) -> None:
    evaluator = FakeEvaluator()
    coordinator = make_coordinator(evaluator)
    if via_env:
        monkeypatch.setenv("SUPEREGO_DISABLED", "1")
    else:
        coordinator.set_disabled(SID, True)

    outcome = coordinator.run(TriggerEvent(session_id=SID, transcript=transcript, forced=True))

    assert (outcome.status, outcome.reason) == (OutcomeStatus.SKIPPED, "disabled")
    assert evaluator.calls == []


def test_disable_flag_on_event(make_coordinator, transcript) -> None:
    evaluator = FakeEvaluator()
    outcome = make_coordinator(evaluator).run(
        TriggerEvent(session_id=SID, transcript=transcript, disable=True)
    )
    assert outcome.reason == "disabled"
    assert evaluator.calls == []


def test_pending_change_is_evaluated(make_coordinator) -> None:
    evaluator = FakeEvaluator()
    coordinator = make_coordinator(evaluator, change_threshold_lines=20)

    outcome = coordinator.run(
        TriggerEvent(
            session_id=SID,
            transcript=[],
            change_size=25,
            pending_change="Tool: Write\nFile: big.py",
        )
    )

    assert outcome.reason == "change_size"
    _, message = evaluator.calls[0]
    assert "--- PENDING CHANGE (evaluate this!) ---\nTool: Write\nFile: big.py" in message


def test_pending_change_file_is_consumed(root, make_coordinator, transcript) -> None:
    namespace = resolve_namespace(root, SID)
    namespace.pending_change_file.write_text("Tool: Edit\nFile: a.py")
    evaluator = FakeEvaluator()

    make_coordinator(evaluator).run(TriggerEvent(session_id=SID, transcript=transcript))

    assert "Tool: Edit\nFile: a.py" in evaluator.calls[0][1]
    assert not namespace.pending_change_file.exists()


def test_carryover_includes_recent_feedback_and_activity(clock, make_coordinator, entry) -> None:
    evaluator = FakeEvaluator("BLOCK\n\nwrite tests first")
    coordinator = make_coordinator(evaluator)
    first = [entry("start work", 1), entry("almost at the watermark", 58)]
    coordinator.run(TriggerEvent(session_id=SID, transcript=first))

    clock.advance(minutes=10)
    evaluator.response = "ALLOW"
    coordinator.run(TriggerEvent(session_id=SID, transcript=[*first, entry("new work", 65)]))

    _, message = evaluator.calls[1]
    assert "--- PREVIOUS CONTEXT ---" in message
    assert "write tests first" in message
    assert "USER: almost at the watermark" in message
    conversation = message.split("--- CONVERSATION ---")[1]
    assert "USER: new work" in conversation
    assert "start work" not in conversation


def test_evaluation_message_uses_project_prompt(root, make_coordinator, transcript) -> None:
    (root / "prompt.md").write_text("Custom reviewer prompt")
    evaluator = FakeEvaluator()

    make_coordinator(evaluator).run(TriggerEvent(session_id=SID, transcript=transcript))

    system_prompt, message = evaluator.calls[0]
    assert system_prompt == "Custom reviewer prompt"
    assert message.startswith("Review the following Claude Code conversation")


def test_transcript_path_is_read(make_coordinator, write_transcript) -> None:
    path = write_transcript(
        [
            {
                "type": "user",
                "sessionId": SID,
                "timestamp": "2026-01-15T10:01:00Z",
                "message": {"role": "user", "content": "hello from disk"},
            }
        ]
    )
    evaluator = FakeEvaluator()

    make_coordinator(evaluator).run(TriggerEvent(session_id=SID, transcript_path=path))

    assert "USER: hello from disk" in evaluator.calls[0][1]


def test_shared_namespace_when_no_session(root, make_coordinator, entry) -> None:
    coordinator = make_coordinator(FakeEvaluator("BLOCK\n\nshared concern"))

    coordinator.run(TriggerEvent(session_id=None, transcript=[entry("hi", 1, session_id=None)]))

    assert (root / "feedback").read_text() == "shared concern"
    assert coordinator.claim_feedback(None) == "shared concern"


def test_write_gate_phases_and_override(root, clock, make_coordinator) -> None:
    coordinator = make_coordinator(FakeEvaluator())
    assert not coordinator.check_write_gate(SID).is_block

    coordinator.set_phase(SID, Phase.EXPLORING)
    clock.advance(seconds=1)
    assert coordinator.check_write_gate(SID).is_block

    coordinator.grant_override(SID, "user said go ahead")
    clock.advance(seconds=1)
    allowed = coordinator.check_write_gate(SID)
    assert not allowed.is_block
    assert "user said go ahead" in allowed.feedback
    assert coordinator.check_write_gate(SID).is_block, "Override is single-use"

    clock.advance(seconds=1)
    coordinator.set_phase(SID, Phase.READY)
    assert not coordinator.check_write_gate(SID).is_block

    types = [r.type for r in _journal(root)]
    assert types == [
        RecordType.PHASE_CHANGED,
        RecordType.OVERRIDE_GRANTED,
        RecordType.OVERRIDE_CONSUMED,
        RecordType.PHASE_CHANGED,
    ]


def test_override_not_spent_when_gate_open(make_coordinator) -> None:
    coordinator = make_coordinator(FakeEvaluator())
    coordinator.grant_override(SID, "later")

    coordinator.check_write_gate(SID)

    assert coordinator.namespace(SID).state_file.exists()
    assert StateStore(coordinator.namespace(SID)).load().pending_override is not None


def test_disabled_opens_write_gate(make_coordinator) -> None:
    coordinator = make_coordinator(FakeEvaluator())
    coordinator.set_phase(SID, Phase.DISCUSSING)
    coordinator.set_disabled(SID, True)

    assert not coordinator.check_write_gate(SID).is_block


def test_reset_clears_state_feedback_and_stale_lock(root, clock, make_coordinator, transcript) -> None:
    coordinator = make_coordinator(FakeEvaluator("BLOCK\n\nconcern"))
    coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))
    namespace = resolve_namespace(root, SID)
    LockManager(namespace).try_acquire()
    clock.advance(seconds=1)

    coordinator.reset(SID)

    assert _state(root).last_evaluated is None
    assert not coordinator.has_feedback(SID)
    assert not LockManager(namespace).held()
    assert [r.type for r in _journal(root)] == [RecordType.DECISION, RecordType.LOCK_CLEARED]


def test_reset_with_journal(root, make_coordinator, transcript) -> None:
    coordinator = make_coordinator(FakeEvaluator())
    coordinator.run(TriggerEvent(session_id=SID, transcript=transcript))

    coordinator.reset(SID, clear_journal=True)

    assert _journal(root) == []


def test_history_limit(clock, make_coordinator) -> None:
    coordinator = make_coordinator(FakeEvaluator())
    for phase in (Phase.EXPLORING, Phase.DISCUSSING, Phase.READY):
        coordinator.set_phase(SID, phase)
        clock.advance(seconds=1)

    recent = coordinator.history(limit=2, session_id=SID)

    assert [r.context for r in recent] == ["discussing", "ready"]
    assert len(coordinator.history()) == 3


def test_should_evaluate(make_coordinator, transcript) -> None:
    coordinator = make_coordinator(FakeEvaluator())

    assert coordinator.should_evaluate(SID, transcript).reason == "first_evaluation"
    assert coordinator.should_evaluate(SID, []).reason == "nothing_pending"

    coordinator.set_disabled(SID, True)
    assert coordinator.should_evaluate(SID, transcript).reason == "disabled"


def test_evaluator_error_is_reported(make_coordinator, transcript) -> None:
    outcome = make_coordinator(FakeEvaluator(error=EvaluatorError("exit 1"))).run(
        TriggerEvent(session_id=SID, transcript=transcript)
    )
    assert outcome.is_warning
    assert "exit 1" in outcome.reason
