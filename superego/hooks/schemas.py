from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, Field

# --- Input Schemas (Context) ---


class HookContext(BaseModel):
    """
    Normalized input for one hook invocation.

    Built once by HookRouter.normalize_input() from the raw stdin payload so
    handlers never deal with host-specific field names.
    """

    # Core Identity
    session_id: str | None = Field(
        None, description="Host session identifier; None selects the shared namespace."
    )
    hook_event: str = Field(
        ..., description="The normalized event name (e.g., SessionStart, PreToolUse)."
    )

    # Event Data
    tool_name: str | None = None
    tool_input: dict[str, Any] = Field(default_factory=dict)

    transcript_path: str | None = None
    cwd: str | None = None

    source: str | None = Field(
        None, description="SessionStart source: startup, resume, clear or compact."
    )
    stop_hook_active: bool = Field(
        default=False,
        description="True when the host is already continuing because of a Stop block.",
    )

    # Raw Input (for fallback/passthrough)
    raw_input: dict[str, Any] = Field(default_factory=dict)


# --- Claude Code Hook Schemas ---


class ClaudeHookSpecificOutput(BaseModel):
    """
    Nested output structure for Claude Code hooks (used in most events).
    """

    hookEventName: str
    permissionDecision: Literal["allow", "deny", "ask"] | None = None
    permissionDecisionReason: str | None = None
    additionalContext: str | None = None


class ClaudeStopHookOutput(BaseModel):
    """
    Output structure specifically for the Claude 'Stop' event.
    Unlike other events, 'Stop' uses top-level fields instead of hookSpecificOutput.
    """

    decision: Literal["approve", "block"] | None = None
    reason: str | None = None
    systemMessage: str | None = None


class ClaudeGeneralHookOutput(BaseModel):
    """
    Output structure for standard Claude Code hooks (PreToolUse, etc.).
    """

    systemMessage: str | None = None
    hookSpecificOutput: ClaudeHookSpecificOutput | None = None


# Union type for any Claude Hook Output
ClaudeHookOutput: TypeAlias = ClaudeGeneralHookOutput | ClaudeStopHookOutput


# --- Canonical Internal Schema ---


class CanonicalHookOutput(BaseModel):
    """
    Internal normalized format produced by the router's handlers and rendered
    into the host's envelope only at the very end.
    """

    system_message: str | None = None
    verdict: Literal["allow", "deny"] = "allow"
    context_injection: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
