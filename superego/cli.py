"""superego command line.

    superego init                     # create .superego/ with default config and prompt
    superego hook Stop < payload.json # run as a Claude Code hook
    superego evaluate --transcript-path PATH [--session-id ID] [--force]
    superego get-feedback             # claim pending feedback
    superego history --limit 10
    superego audit --json
    superego reset [--journal]

Every command except ``init`` requires an initialized project. ``hook`` is the
exception to the exception: in an uninitialized project it prints an empty
result so the host carries on.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from superego import __version__
from superego.hooks.router import HookRouter, handle_hook
from superego.lib.audit import run_audit
from superego.lib.config import DEFAULT_CONFIG_YAML, SuperegoConfig
from superego.lib.coordinator import EvaluationCoordinator, TriggerEvent
from superego.lib.errors import NotInitializedError, SuperegoError
from superego.lib.evaluator import ClaudeCliEvaluator
from superego.lib.journal import read_all_sessions
from superego.lib.paths import CONFIG_FILE, HOOK_LOG_FILE, PROMPT_FILE, get_superego_root
from superego.lib.prompts import DEFAULT_SYSTEM_PROMPT
from superego.lib.session_state import Phase
from superego.lib.transcript import read_transcript

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(root: Path, verbose: bool = False) -> None:
    """Log to stderr (warnings only unless verbose) and to <root>/hook.log."""
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handlers: list[logging.Handler] = [console]

    if root.is_dir():
        try:
            handlers.append(logging.FileHandler(root / HOOK_LOG_FILE, encoding="utf-8"))
        except OSError as e:
            print(f"WARNING: Cannot open {root / HOOK_LOG_FILE}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def require_initialized(root: Path) -> None:
    if not root.is_dir():
        raise NotInitializedError(f"Superego not initialized at {root}. Run 'superego init' first.")


def build_coordinator(root: Path) -> EvaluationCoordinator:
    config = SuperegoConfig.load(root)
    evaluator = ClaudeCliEvaluator(model=config.model, timeout_ms=config.timeout_ms)
    return EvaluationCoordinator(root, evaluator, config)


# --- Commands ---


def cmd_init(args: argparse.Namespace, root: Path) -> int:
    if root.is_dir() and not args.force:
        print(f"Superego already initialized at {root} (use --force to rewrite config)", file=sys.stderr)
        return 1

    root.mkdir(parents=True, exist_ok=True)
    (root / CONFIG_FILE).write_text(DEFAULT_CONFIG_YAML)
    prompt_path = root / PROMPT_FILE
    if args.force or not prompt_path.exists():
        prompt_path.write_text(DEFAULT_SYSTEM_PROMPT)
    print(f"Superego initialized at {root}")
    return 0


def cmd_hook(args: argparse.Namespace, root: Path) -> int:
    raw_input: dict = {}
    try:
        if not sys.stdin.isatty():
            input_data = sys.stdin.read()
            if input_data.strip():
                raw_input = json.loads(input_data)
    except (OSError, json.JSONDecodeError) as e:
        print(f"WARNING: Failed to read stdin: {e}", file=sys.stderr)

    if not root.is_dir():
        # Not initialized: nothing to do, let the host continue
        print("{}")
        return 0

    router = HookRouter(build_coordinator(root))
    print(handle_hook(router, raw_input, args.event))
    return 0


def cmd_evaluate(args: argparse.Namespace, root: Path) -> int:
    coordinator = build_coordinator(root)
    outcome = coordinator.run(
        TriggerEvent(
            session_id=args.session_id,
            transcript_path=Path(args.transcript_path),
            forced=args.force,
        )
    )

    if outcome.is_warning:
        print(f"Evaluation did not complete: {outcome.reason}", file=sys.stderr)
        return 1
    if outcome.decision is None:
        print(f"Skipped: {outcome.reason}")
        return 0

    print(f"Decision: {outcome.verdict.value.upper()}")
    if outcome.feedback:
        print()
        print(outcome.feedback)
    return 0


def cmd_should_eval(args: argparse.Namespace, root: Path) -> int:
    coordinator = build_coordinator(root)
    transcript = read_transcript(Path(args.transcript_path)) if args.transcript_path else []
    decision = coordinator.should_evaluate(args.session_id, transcript, forced=args.force)
    print(f"{'yes' if decision.due else 'no'} ({decision.reason})")
    return 0


def cmd_has_feedback(args: argparse.Namespace, root: Path) -> int:
    return 0 if build_coordinator(root).has_feedback(args.session_id) else 1


def cmd_get_feedback(args: argparse.Namespace, root: Path) -> int:
    feedback = build_coordinator(root).claim_feedback(args.session_id)
    print(feedback if feedback else "No pending feedback.")
    return 0


def cmd_history(args: argparse.Namespace, root: Path) -> int:
    records = build_coordinator(root).history(args.limit, args.session_id)
    if not records:
        print("No decisions recorded.")
        return 0

    for record in records:
        verdict = f" {record.verdict.value.upper()}" if record.verdict else ""
        session = f" [{record.session_id}]" if record.session_id else ""
        print(f"{record.timestamp:%Y-%m-%d %H:%M:%S} {record.type.value}{verdict}{session}")
        if record.context:
            context = record.context if len(record.context) <= 200 else record.context[:200] + "..."
            print(f"    {context}")
    return 0


def cmd_audit(args: argparse.Namespace, root: Path) -> int:
    config = SuperegoConfig.load(root)
    evaluator = ClaudeCliEvaluator(model=config.model, timeout_ms=config.timeout_ms)
    result = run_audit(read_all_sessions(root), evaluator)

    if args.json:
        print(result.model_dump_json(indent=2))
        return 0

    stats = result.stats
    print(f"Decisions: {stats.total} ({stats.blocks} block, {stats.allows} allow)")
    print(f"Sessions: {stats.session_count}")
    if stats.start_date and stats.end_date:
        print(f"Period: {stats.start_date:%Y-%m-%d %H:%M} to {stats.end_date:%Y-%m-%d %H:%M} UTC")
    print()
    print(result.analysis)
    return 0


def cmd_reset(args: argparse.Namespace, root: Path) -> int:
    build_coordinator(root).reset(args.session_id, clear_journal=args.journal)
    print("Superego state reset.")
    return 0


def cmd_disable(args: argparse.Namespace, root: Path) -> int:
    build_coordinator(root).set_disabled(args.session_id, True)
    print("Superego disabled.")
    return 0


def cmd_enable(args: argparse.Namespace, root: Path) -> int:
    build_coordinator(root).set_disabled(args.session_id, False)
    print("Superego enabled.")
    return 0


def cmd_override(args: argparse.Namespace, root: Path) -> int:
    build_coordinator(root).grant_override(args.session_id, args.reason)
    print("Override granted for the next gated change.")
    return 0


def cmd_phase(args: argparse.Namespace, root: Path) -> int:
    build_coordinator(root).set_phase(args.session_id, Phase(args.phase))
    print(f"Phase set to {args.phase}.")
    return 0


COMMANDS = {
    "init": cmd_init,
    "hook": cmd_hook,
    "evaluate": cmd_evaluate,
    "should-eval": cmd_should_eval,
    "has-feedback": cmd_has_feedback,
    "get-feedback": cmd_get_feedback,
    "history": cmd_history,
    "audit": cmd_audit,
    "reset": cmd_reset,
    "disable": cmd_disable,
    "enable": cmd_enable,
    "override": cmd_override,
    "phase": cmd_phase,
}

# Commands that may run before .superego/ exists
NO_INIT_COMMANDS = frozenset({"init", "hook"})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="superego", description="Metacognitive advisor for coding agents")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    def session_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument("--session-id", default=None, help="Host session id (default: shared namespace)")

    p = sub.add_parser("init", help="Initialize .superego/ in the project")
    p.add_argument("--force", action="store_true", help="Overwrite config and prompt")

    p = sub.add_parser("hook", help="Run as a Claude Code hook (payload on stdin)")
    p.add_argument("event", nargs="?", help="Event name (default: hook_event_name from payload)")

    p = sub.add_parser("evaluate", help="Evaluate a transcript now if due")
    p.add_argument("--transcript-path", required=True)
    p.add_argument("--force", action="store_true", help="Evaluate even if not due")
    session_arg(p)

    p = sub.add_parser("should-eval", help="Report whether an evaluation is due")
    p.add_argument("--transcript-path", default=None)
    p.add_argument("--force", action="store_true")
    session_arg(p)

    p = sub.add_parser("has-feedback", help="Exit 0 if feedback is pending, 1 otherwise")
    session_arg(p)

    p = sub.add_parser("get-feedback", help="Claim and print pending feedback")
    session_arg(p)

    p = sub.add_parser("history", help="Show recent journal records")
    p.add_argument("--limit", type=int, default=10)
    session_arg(p)

    p = sub.add_parser("audit", help="Analyze decision history")
    p.add_argument("--json", action="store_true", help="Print the result as JSON")

    p = sub.add_parser("reset", help="Clear state, pending feedback and stale lock")
    p.add_argument("--journal", action="store_true", help="Also delete the decision journal")
    session_arg(p)

    for name, help_text in (("disable", "Disable superego"), ("enable", "Re-enable superego")):
        p = sub.add_parser(name, help=help_text)
        session_arg(p)

    p = sub.add_parser("override", help="Let the next gated change through once")
    p.add_argument("--reason", required=True)
    session_arg(p)

    p = sub.add_parser("phase", help="Set the work phase")
    p.add_argument("phase", choices=[phase.value for phase in Phase])
    session_arg(p)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    root = get_superego_root()
    setup_logging(root, verbose=args.verbose)

    try:
        if args.command not in NO_INIT_COMMANDS:
            require_initialized(root)
        return COMMANDS[args.command](args, root)
    except SuperegoError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
