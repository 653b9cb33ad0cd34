"""
Superego Hook Router.

Turns Claude Code hook events into coordinator calls and renders the result
back into the hook output contract. The core only ever returns a verdict and
feedback text; everything host-specific lives here.

Events:
- SessionStart: inject the superego contract; clear a stale lock on fresh start
- Stop / PreCompact: evaluate if due, deliver pending feedback as a Stop block
- PreToolUse (Edit/Write/MultiEdit): phase gate, then review large changes
- UserPromptSubmit: deliver pending feedback as context

A broken core must never wedge the host session: unexpected errors are
reported on stderr and the event is allowed through.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from superego.hooks.schemas import (
    CanonicalHookOutput,
    ClaudeGeneralHookOutput,
    ClaudeHookOutput,
    ClaudeHookSpecificOutput,
    ClaudeStopHookOutput,
    HookContext,
)
from superego.lib.coordinator import EvaluationCoordinator, TriggerEvent, is_disabled_by_env
from superego.lib.paths import SUPEREGO_DIRNAME, is_missing_session_id
from superego.lib.trigger import CHANGE_TOOLS, count_change_lines, describe_change

logger = logging.getLogger(__name__)

CONTRACT = (
    "SUPEREGO ACTIVE: This project uses superego, a metacognitive advisor that monitors "
    "your work. When you receive SUPEREGO FEEDBACK, critically evaluate it: if you agree, "
    "incorporate it into your approach; if you disagree on non-trivial feedback, escalate "
    "to the user explaining both perspectives. Superego feedback reflects concerns about "
    "your reasoning, approach, or alignment with the user's goals - it deserves serious "
    "consideration, not just acknowledgment."
)

STOP_FEEDBACK_PREFIX = (
    "SUPEREGO FEEDBACK: Please critically evaluate this feedback. If you agree, "
    "incorporate it. If you disagree on non-trivial points, escalate to the user."
)


def is_superego_transcript(transcript_path: str | None) -> bool:
    """The evaluator's own sessions live under .superego/ and must not be evaluated."""
    if not transcript_path:
        return False
    marker = f"{SUPEREGO_DIRNAME}/"
    return f"/{marker}" in transcript_path or transcript_path.startswith(marker)


class HookRouter:
    def __init__(self, coordinator: EvaluationCoordinator):
        self.coordinator = coordinator
        self._handlers: dict[str, Callable[[HookContext], CanonicalHookOutput]] = {
            "SessionStart": self._on_session_start,
            "Stop": self._on_stop,
            "PreCompact": self._on_pre_compact,
            "PreToolUse": self._on_pre_tool_use,
            "UserPromptSubmit": self._on_user_prompt_submit,
        }

    @staticmethod
    def _normalize_json_field(value: Any) -> Any:
        """Normalize a field that may be a JSON string to its parsed form."""
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value

    def normalize_input(self, raw_input: dict[str, Any], event: str | None = None) -> HookContext:
        """Create a normalized HookContext from raw input."""
        hook_event = event or raw_input.get("hook_event_name")
        if not hook_event:
            raise KeyError("hook_event_name")

        session_id = raw_input.get("session_id")
        if not isinstance(session_id, str) or is_missing_session_id(session_id):
            session_id = None

        tool_input = self._normalize_json_field(raw_input.get("tool_input", {}))
        if not isinstance(tool_input, dict):
            tool_input = {}

        return HookContext(
            session_id=session_id,
            hook_event=hook_event,
            tool_name=raw_input.get("tool_name"),
            tool_input=tool_input,
            transcript_path=raw_input.get("transcript_path") or raw_input.get("transcriptPath"),
            cwd=raw_input.get("cwd"),
            source=raw_input.get("source"),
            stop_hook_active=bool(raw_input.get("stop_hook_active", False)),
            raw_input=raw_input,
        )

    def execute(self, ctx: HookContext) -> CanonicalHookOutput:
        """Run the handler for the event. Unknown events pass through."""
        if is_disabled_by_env():
            logger.info(f"{ctx.hook_event}: SUPEREGO_DISABLED=1, skipping")
            return CanonicalHookOutput()

        if is_superego_transcript(ctx.transcript_path):
            logger.info(f"{ctx.hook_event}: superego's own transcript, skipping")
            return CanonicalHookOutput()

        handler = self._handlers.get(ctx.hook_event)
        if handler is None:
            return CanonicalHookOutput()
        return handler(ctx)

    # --- Handlers ---

    def _on_session_start(self, ctx: HookContext) -> CanonicalHookOutput:
        # Only a fresh start can be sure no evaluation of this session is running
        if ctx.source == "startup" and self.coordinator.clear_stale_lock(ctx.session_id):
            logger.info(f"Cleared stale evaluation lock for {ctx.session_id or 'shared'}")
        return CanonicalHookOutput(context_injection=CONTRACT)

    def _trigger_event(self, ctx: HookContext, **kwargs: Any) -> TriggerEvent:
        return TriggerEvent(
            session_id=ctx.session_id,
            transcript_path=Path(ctx.transcript_path) if ctx.transcript_path else None,
            **kwargs,
        )

    def _warning_message(self, reason: str) -> str:
        return f"superego: evaluation did not complete ({reason})"

    def _on_stop(self, ctx: HookContext) -> CanonicalHookOutput:
        if ctx.stop_hook_active:
            logger.info("Stop: stop_hook_active=true (already blocked once), skipping")
            return CanonicalHookOutput()

        result = CanonicalHookOutput()
        if ctx.transcript_path:
            outcome = self.coordinator.run(self._trigger_event(ctx))
            result.metadata["outcome"] = outcome.status.value
            if outcome.is_warning:
                result.system_message = self._warning_message(outcome.reason)

        feedback = self.coordinator.claim_feedback(ctx.session_id)
        if feedback:
            result.verdict = "deny"
            result.context_injection = f"{STOP_FEEDBACK_PREFIX}\n\n{feedback}"
        return result

    def _on_pre_compact(self, ctx: HookContext) -> CanonicalHookOutput:
        # Context is about to be truncated; evaluate now, deliver on the next Stop/prompt
        if not ctx.transcript_path:
            return CanonicalHookOutput()
        outcome = self.coordinator.run(self._trigger_event(ctx, forced=True))
        result = CanonicalHookOutput(metadata={"outcome": outcome.status.value})
        if outcome.is_warning:
            result.system_message = self._warning_message(outcome.reason)
        return result

    def _on_pre_tool_use(self, ctx: HookContext) -> CanonicalHookOutput:
        if ctx.tool_name not in CHANGE_TOOLS:
            return CanonicalHookOutput()

        gate = self.coordinator.check_write_gate(ctx.session_id)
        if gate.is_block:
            return CanonicalHookOutput(verdict="deny", context_injection=gate.feedback)

        size = count_change_lines(ctx.tool_name, ctx.tool_input)
        if size < self.coordinator.config.change_threshold_lines:
            logger.info(f"PreToolUse: {ctx.tool_name} change of {size} lines below threshold")
            return CanonicalHookOutput()

        result = CanonicalHookOutput()
        outcome = self.coordinator.run(
            self._trigger_event(
                ctx,
                change_size=size,
                pending_change=describe_change(ctx.tool_name, ctx.tool_input),
            )
        )
        result.metadata["outcome"] = outcome.status.value
        if outcome.is_warning:
            result.system_message = self._warning_message(outcome.reason)

        feedback = self.coordinator.claim_feedback(ctx.session_id)
        if feedback:
            file_path = ctx.tool_input.get("file_path", "unknown")
            result.verdict = "deny"
            result.context_injection = (
                f"SUPEREGO FEEDBACK on proposed {ctx.tool_name} to {file_path}:\n\n"
                f"{feedback}\n\n"
                "Please reconsider the change or explain why it's appropriate."
            )
        return result

    def _on_user_prompt_submit(self, ctx: HookContext) -> CanonicalHookOutput:
        feedback = self.coordinator.claim_feedback(ctx.session_id)
        if not feedback:
            return CanonicalHookOutput()
        return CanonicalHookOutput(context_injection=f"SUPEREGO FEEDBACK:\n{feedback}")

    # --- Output ---

    def output_for_claude(self, result: CanonicalHookOutput, event: str) -> ClaudeHookOutput:
        """Format for Claude Code."""
        if event == "Stop":
            output = ClaudeStopHookOutput()
            if result.verdict == "deny":
                output.decision = "block"
                output.reason = result.context_injection
            if result.system_message:
                output.systemMessage = result.system_message
            return output

        output = ClaudeGeneralHookOutput()
        if result.system_message:
            output.systemMessage = result.system_message

        if event == "PreToolUse" and result.verdict == "deny":
            output.hookSpecificOutput = ClaudeHookSpecificOutput(
                hookEventName=event,
                permissionDecision="deny",
                permissionDecisionReason=result.context_injection,
            )
        elif result.context_injection and event in ("SessionStart", "UserPromptSubmit"):
            output.hookSpecificOutput = ClaudeHookSpecificOutput(
                hookEventName=event, additionalContext=result.context_injection
            )
        return output


def handle_hook(router: HookRouter, raw_input: dict[str, Any], event: str | None = None) -> str:
    """Run one hook invocation end to end and return the JSON to print.

    Never raises: any failure is reported on stderr and the event is allowed.
    """
    hook_event = event or raw_input.get("hook_event_name") or "unknown"
    try:
        ctx = router.normalize_input(raw_input, event)
        hook_event = ctx.hook_event
        result = router.execute(ctx)
    except Exception as e:
        print(f"WARNING: superego hook {hook_event} failed: {e}", file=sys.stderr)
        logger.exception(f"Hook {hook_event} failed")
        result = CanonicalHookOutput()

    output = router.output_for_claude(result, hook_event)
    return output.model_dump_json(exclude_none=True)
