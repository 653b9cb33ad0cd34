"""Evaluation control flow.

Ties the pieces together for one trigger event:

    disabled? -> pending slice -> trigger policy -> lock -> evaluator
              -> parse -> mailbox (block only) -> journal -> watermark -> unlock

Only the lock holder advances the watermark or appends a decision, so those
mutations are totally ordered per session. Feedback claims and journal reads
never take the lock; a consumer is not held up by an evaluation in progress.

Failure policy:
- lock busy, nothing pending, not due: skipped, verdict allow, nothing written
- evaluator error or timeout: failed (a warning), verdict allow, nothing written
- unparseable evaluator output: block with the raw text as feedback
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel

from superego.lib.config import SuperegoConfig
from superego.lib.decision_parser import ParsedVerdict, Verdict, parse_decision
from superego.lib.errors import EvaluatorError, EvaluatorTimeout, MailboxError
from superego.lib.eval_lock import LockManager
from superego.lib.evaluator import Evaluator
from superego.lib.journal import (
    Decision,
    DecisionJournal,
    JournalRecord,
    RecordType,
    read_all_sessions,
)
from superego.lib.mailbox import FeedbackMailbox
from superego.lib.paths import Namespace, resolve_namespace
from superego.lib.prompts import build_carryover, build_evaluation_message, load_system_prompt
from superego.lib.session_state import PendingOverride, Phase, SessionState, StateStore
from superego.lib.transcript import (
    TranscriptCursor,
    TranscriptEntry,
    entries_in_window,
    format_context,
    read_transcript,
)
from superego.lib.trigger import TriggerDecision, TriggerPolicy

logger = logging.getLogger(__name__)

# Phases in which file changes are held back until the approach is agreed
GATED_PHASES = frozenset({Phase.EXPLORING, Phase.DISCUSSING})


def is_disabled_by_env() -> bool:
    """SUPEREGO_DISABLED=1 turns everything off (also set for the evaluator's own process)."""
    return os.environ.get("SUPEREGO_DISABLED") == "1"


class TriggerEvent(BaseModel):
    """One request to consider an evaluation, as handed over by a host adapter."""

    session_id: str | None = None
    transcript: list[TranscriptEntry] | None = None
    transcript_path: Path | None = None
    change_size: int | None = None
    pending_change: str | None = None
    forced: bool = False
    disable: bool = False


class OutcomeStatus(StrEnum):
    EVALUATED = "evaluated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class EvaluationOutcome:
    status: OutcomeStatus
    verdict: Verdict = Verdict.ALLOW
    feedback: str = ""
    reason: str = ""
    decision: Decision | None = None

    @classmethod
    def skipped(cls, reason: str) -> EvaluationOutcome:
        return cls(status=OutcomeStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> EvaluationOutcome:
        """Evaluation did not complete. Fail open: the session may proceed."""
        return cls(status=OutcomeStatus.FAILED, reason=reason)

    @classmethod
    def evaluated(cls, decision: Decision) -> EvaluationOutcome:
        return cls(
            status=OutcomeStatus.EVALUATED,
            verdict=decision.verdict,
            feedback=decision.feedback,
            reason=decision.trigger_reason,
            decision=decision,
        )

    @property
    def is_warning(self) -> bool:
        return self.status == OutcomeStatus.FAILED

    @property
    def is_block(self) -> bool:
        return self.verdict == Verdict.BLOCK


class EvaluationCoordinator:
    """Runs evaluations and the explicit state commands for every namespace under ``root``."""

    def __init__(
        self,
        root: Path,
        evaluator: Evaluator,
        config: SuperegoConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.root = Path(root)
        self.evaluator = evaluator
        self.config = config or SuperegoConfig.load(self.root)
        self.clock = clock or (lambda: datetime.now(UTC))
        self.policy = TriggerPolicy.from_config(self.config)

    def namespace(self, session_id: str | None) -> Namespace:
        return resolve_namespace(self.root, session_id)

    def _mailbox(self, namespace: Namespace) -> FeedbackMailbox:
        return FeedbackMailbox(namespace, self.config.mailbox_policy)

    def _journal_event(
        self, namespace: Namespace, record_type: RecordType, context: str | None = None
    ) -> None:
        """Append a state-transition record; a journal write failure is logged, not raised."""
        record = JournalRecord(
            timestamp=self.clock(),
            session_id=namespace.session_id,
            type=record_type,
            context=context,
        )
        try:
            DecisionJournal(namespace).append(record)
        except OSError as e:
            logger.error(f"Failed to journal {record_type} for {namespace.label}: {e}")

    # --- Evaluation ---

    def _load_transcript(self, event: TriggerEvent) -> list[TranscriptEntry]:
        if event.transcript is not None:
            return list(event.transcript)
        if event.transcript_path is None:
            return []
        try:
            return read_transcript(event.transcript_path)
        except OSError as e:
            logger.warning(f"Cannot read transcript {event.transcript_path}: {e}")
            return []

    def _pending_change(self, event: TriggerEvent, namespace: Namespace) -> str:
        if event.pending_change is not None:
            return event.pending_change
        # Hosts that can't pass the change inline drop it next to the state
        try:
            return namespace.pending_change_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            logger.warning(f"Cannot read pending change for {namespace.label}: {e}")
            return ""

    def run(self, event: TriggerEvent) -> EvaluationOutcome:
        """Evaluate the session if due and the lock is free.

        Returns:
            EvaluationOutcome. ``is_block`` means feedback was posted to the
            session's mailbox; ``is_warning`` means the evaluation did not
            complete and the session was allowed through.
        """
        namespace = self.namespace(event.session_id)
        store = StateStore(namespace)
        state = store.load()

        if event.disable or state.disabled or is_disabled_by_env():
            logger.info(f"Superego disabled for {namespace.label}, skipping evaluation")
            return EvaluationOutcome.skipped("disabled")

        # Watermark is the read time, so entries written during evaluation are seen next time
        read_at = self.clock()
        transcript = self._load_transcript(event)
        cursor = TranscriptCursor(store)
        pending = cursor.pending(transcript, event.session_id, state=state)
        pending_change = self._pending_change(event, namespace)

        if not pending and not pending_change:
            logger.info(f"Nothing pending for {namespace.label}, skipping evaluation")
            return EvaluationOutcome.skipped("nothing_pending")

        trigger = self.policy.evaluate(
            state.last_evaluated,
            read_at,
            len(pending),
            change_size=event.change_size,
            forced=event.forced,
        )
        if not trigger.due:
            logger.info(f"Evaluation not due for {namespace.label}: {trigger.reason}")
            return EvaluationOutcome.skipped(trigger.reason)

        locks = LockManager(namespace)
        with locks.acquire() as lock:
            if lock is None:
                return EvaluationOutcome.skipped("busy")
            return self._evaluate_locked(
                namespace, store, cursor, event, transcript, pending_change, read_at, trigger.reason
            )

    def _carryover(
        self, namespace: Namespace, state: SessionState, transcript: Sequence[TranscriptEntry], session_id: str | None
    ) -> str:
        records = DecisionJournal(namespace).read_all()
        window: list[TranscriptEntry] = []
        if state.last_evaluated is not None:
            start = state.last_evaluated - timedelta(minutes=self.config.carryover_window_minutes)
            window = entries_in_window(transcript, start, state.last_evaluated, session_id)
        return build_carryover(records, window, self.config.carryover_decision_count)

    def _evaluate_locked(
        self,
        namespace: Namespace,
        store: StateStore,
        cursor: TranscriptCursor,
        event: TriggerEvent,
        transcript: list[TranscriptEntry],
        pending_change: str,
        read_at: datetime,
        trigger_reason: str,
    ) -> EvaluationOutcome:
        # Another holder may have advanced the watermark since our first look
        state = store.load()
        pending = cursor.pending(transcript, event.session_id, state=state)
        if not pending and not pending_change:
            return EvaluationOutcome.skipped("nothing_pending")

        message = build_evaluation_message(
            format_context(pending),
            carryover=self._carryover(namespace, state, transcript, event.session_id),
            pending_change=pending_change,
        )

        logger.info(f"Evaluating {namespace.label} ({trigger_reason}, {len(pending)} entries)")
        try:
            raw = self.evaluator(load_system_prompt(self.root), message)
        except EvaluatorTimeout as e:
            logger.warning(f"Evaluation timed out for {namespace.label}: {e}")
            return EvaluationOutcome.failed(f"timeout: {e}")
        except EvaluatorError as e:
            logger.warning(f"Evaluation failed for {namespace.label}: {e}")
            return EvaluationOutcome.failed(str(e))
        except Exception as e:
            logger.exception(f"Unexpected evaluator error for {namespace.label}")
            return EvaluationOutcome.failed(f"unexpected evaluator error: {e}")

        parsed = parse_decision(raw)
        decision = Decision(
            verdict=parsed.verdict,
            feedback=parsed.feedback,
            timestamp=self.clock(),
            session_id=namespace.session_id,
            trigger_reason=trigger_reason,
        )

        if parsed.is_block:
            try:
                self._mailbox(namespace).post(parsed.mailbox_text())
            except MailboxError as e:
                # A block nobody will ever see is discarded, not recorded
                logger.error(f"Discarding block decision for {namespace.label}: {e}")
                return EvaluationOutcome.failed(f"mailbox write failed: {e}")

        try:
            DecisionJournal(namespace).append(JournalRecord.from_decision(decision))
            cursor.advance(read_at)
        except OSError as e:
            logger.error(f"Failed to persist evaluation for {namespace.label}: {e}")

        if event.pending_change is None:
            namespace.pending_change_file.unlink(missing_ok=True)

        logger.info(f"Decision for {namespace.label}: {decision.verdict}")
        return EvaluationOutcome.evaluated(decision)

    def should_evaluate(
        self,
        session_id: str | None,
        transcript: Sequence[TranscriptEntry],
        change_size: int | None = None,
        forced: bool = False,
    ) -> TriggerDecision:
        """Ask the trigger policy without evaluating or taking the lock."""
        namespace = self.namespace(session_id)
        store = StateStore(namespace)
        state = store.load()
        if state.disabled or is_disabled_by_env():
            return TriggerDecision.hold("disabled")

        pending = TranscriptCursor(store).pending(transcript, session_id, state=state)
        return self.policy.evaluate(
            state.last_evaluated, self.clock(), len(pending), change_size=change_size, forced=forced
        )

    # --- Feedback ---

    def has_feedback(self, session_id: str | None) -> bool:
        return self._mailbox(self.namespace(session_id)).has_feedback()

    def claim_feedback(self, session_id: str | None) -> str | None:
        """Take pending feedback for delivery. At most one caller gets it."""
        namespace = self.namespace(session_id)
        text = self._mailbox(namespace).claim()
        if text is not None:
            self._journal_event(namespace, RecordType.FEEDBACK_CLAIMED, text)
        return text

    # --- Explicit state commands ---

    def grant_override(self, session_id: str | None, reason: str) -> None:
        """Let the next gated write through once."""
        namespace = self.namespace(session_id)
        override = PendingOverride(reason=reason, issued_at=self.clock())

        def _set(state: SessionState) -> None:
            state.pending_override = override

        StateStore(namespace).update(_set)
        self._journal_event(namespace, RecordType.OVERRIDE_GRANTED, reason)

    def check_write_gate(self, session_id: str | None) -> ParsedVerdict:
        """Decide whether a file change may proceed in the current phase.

        A pending override is spent only when the gate would otherwise block.
        """
        if is_disabled_by_env():
            return ParsedVerdict.allow()

        namespace = self.namespace(session_id)
        store = StateStore(namespace)
        state = store.load()
        if state.disabled or state.phase not in GATED_PHASES:
            return ParsedVerdict.allow()

        consumed: list[PendingOverride] = []

        def _consume(current: SessionState) -> None:
            override = current.consume_override()
            if override is not None:
                consumed.append(override)

        if state.pending_override is not None:
            store.update(_consume)
        if consumed:
            reason = consumed[0].reason
            self._journal_event(namespace, RecordType.OVERRIDE_CONSUMED, reason)
            logger.info(f"Override consumed for {namespace.label}: {reason}")
            return ParsedVerdict.allow(f"Override: {reason}")

        return ParsedVerdict.block(
            f"Current phase is '{state.phase}'. Agree on the approach with the user "
            "before changing files. Run `superego phase ready` once agreed, or "
            "`superego override --reason ...` for a one-off exception."
        )

    def set_disabled(self, session_id: str | None, disabled: bool) -> None:
        namespace = self.namespace(session_id)

        def _set(state: SessionState) -> None:
            state.disabled = disabled

        StateStore(namespace).update(_set)
        self._journal_event(namespace, RecordType.DISABLED if disabled else RecordType.ENABLED)

    def set_phase(self, session_id: str | None, phase: Phase) -> None:
        namespace = self.namespace(session_id)
        phase = Phase(phase)

        def _set(state: SessionState) -> None:
            state.phase = phase

        StateStore(namespace).update(_set)
        self._journal_event(namespace, RecordType.PHASE_CHANGED, phase.value)

    def clear_stale_lock(self, session_id: str | None) -> bool:
        """Explicit stale-lock recovery. Returns True if a lock was removed."""
        namespace = self.namespace(session_id)
        cleared = LockManager(namespace).force_clear()
        if cleared:
            self._journal_event(namespace, RecordType.LOCK_CLEARED)
        return cleared

    def reset(self, session_id: str | None, clear_journal: bool = False) -> None:
        """Forget state, pending feedback and any stale lock for a session.

        The journal survives unless ``clear_journal`` is set.
        """
        namespace = self.namespace(session_id)
        if clear_journal:
            DecisionJournal(namespace).reset()
        self.clear_stale_lock(session_id)
        StateStore(namespace).clear()
        self._mailbox(namespace).discard()
        namespace.pending_change_file.unlink(missing_ok=True)
        logger.info(f"Reset {namespace.label}")

    def history(self, limit: int | None = None, session_id: str | None = None) -> list[JournalRecord]:
        """Most recent journal records, oldest first. All sessions when no id is given."""
        if session_id is None:
            records = read_all_sessions(self.root)
        else:
            records = DecisionJournal(self.namespace(session_id)).read_all()
        if limit is not None and limit >= 0:
            records = records[-limit:] if limit else []
        return records
