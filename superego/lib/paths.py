"""Session namespace resolution - single source of truth for superego file locations.

Layout under the superego root (default: <project>/.superego):

    .superego/
    ├── config.yaml
    ├── prompt.md
    ├── hook.log
    ├── state.json          # shared namespace (no session id)
    ├── feedback
    ├── eval.lock/
    ├── decisions/
    └── sessions/
        └── <session-id>/
            ├── state.json
            ├── feedback
            ├── eval.lock/
            └── decisions/

IMPORTANT: State is keyed by session_id. Each host session is independent -
multiple sessions can run from the same project directory and must not share
state. When the host does not supply a session id, the shared namespace at the
root is used. Two unrelated callers without ids then share state; that is a
degraded mode, not an error.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

SUPEREGO_DIRNAME = ".superego"
SESSIONS_DIRNAME = "sessions"

STATE_FILE = "state.json"
FEEDBACK_FILE = "feedback"
LOCK_DIR = "eval.lock"
DECISIONS_DIR = "decisions"
PENDING_CHANGE_FILE = "pending_change.txt"
CONFIG_FILE = "config.yaml"
PROMPT_FILE = "prompt.md"
HOOK_LOG_FILE = "hook.log"

# Hosts sometimes serialize a missing id as the string "null"
_MISSING_IDS = frozenset({"", "null", "none"})


def get_project_dir() -> Path:
    """Get the monitored project directory.

    Uses CLAUDE_PROJECT_DIR if set (available during hook execution, where
    plugin hooks may run from the plugin cache rather than the project), and
    falls back to cwd otherwise.
    """
    project_dir = os.environ.get("CLAUDE_PROJECT_DIR")
    if project_dir:
        return Path(project_dir).resolve()
    return Path.cwd().resolve()


def get_superego_root() -> Path:
    """Get the superego root directory.

    SUPEREGO_DIR wins when set (tests, unusual layouts); otherwise
    <project>/.superego. The directory is NOT created here - its existence is
    what marks a project as initialized.
    """
    explicit = os.environ.get("SUPEREGO_DIR")
    if explicit:
        return Path(explicit).resolve()
    return get_project_dir() / SUPEREGO_DIRNAME


def sanitize_session_id(session_id: str) -> str:
    """Make a session id safe to use as a directory name.

    Ids that are already safe are returned unchanged. Anything else has its
    unsafe characters replaced and gets an 8-char sha256 suffix, so that two
    different raw ids can never map onto the same directory.
    """
    safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in session_id)
    if safe == session_id and not safe.startswith("-"):
        return safe
    digest = hashlib.sha256(session_id.encode()).hexdigest()[:8]
    return f"{safe.lstrip('-') or 'session'}-{digest}"


def is_missing_session_id(session_id: str | None) -> bool:
    return session_id is None or session_id.strip().lower() in _MISSING_IDS


@dataclass(frozen=True)
class Namespace:
    """Isolated on-disk scope for one monitored conversation.

    Either a per-session namespace (``session_id`` set) or the explicit shared
    fallback (``session_id`` None). Callers that care about the difference
    check ``is_shared`` rather than comparing paths.
    """

    root: Path
    session_id: str | None
    directory: Path

    @classmethod
    def for_session(cls, root: Path, session_id: str) -> Namespace:
        if is_missing_session_id(session_id):
            raise ValueError(f"Not a usable session id: {session_id!r}")
        directory = Path(root) / SESSIONS_DIRNAME / sanitize_session_id(session_id)
        return cls(root=Path(root), session_id=session_id, directory=directory)

    @classmethod
    def shared(cls, root: Path) -> Namespace:
        return cls(root=Path(root), session_id=None, directory=Path(root))

    @property
    def is_shared(self) -> bool:
        return self.session_id is None

    @property
    def label(self) -> str:
        return self.session_id or "shared"

    def ensure(self) -> Path:
        """Create the namespace directory if needed and return it."""
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    @property
    def state_file(self) -> Path:
        return self.directory / STATE_FILE

    @property
    def feedback_file(self) -> Path:
        return self.directory / FEEDBACK_FILE

    @property
    def lock_dir(self) -> Path:
        return self.directory / LOCK_DIR

    @property
    def decisions_dir(self) -> Path:
        return self.directory / DECISIONS_DIR

    @property
    def pending_change_file(self) -> Path:
        return self.directory / PENDING_CHANGE_FILE


def resolve_namespace(root: Path, session_id: str | None) -> Namespace:
    """Map an optional session id onto its namespace.

    Args:
        root: Superego root directory
        session_id: Opaque host session identifier, or None

    Returns:
        Per-session namespace, or the shared namespace when no id is supplied.
        The directory is created on demand.
    """
    if is_missing_session_id(session_id):
        namespace = Namespace.shared(root)
    else:
        namespace = Namespace.for_session(root, session_id)
    namespace.ensure()
    return namespace


def find_all_namespaces(root: Path) -> list[Namespace]:
    """List the shared namespace plus every per-session namespace on disk.

    Session directories are mapped back by directory name; for sanitized ids
    that is the sanitized form, which is fine for history and audit reads.
    """
    root = Path(root)
    namespaces = [Namespace.shared(root)]
    sessions_dir = root / SESSIONS_DIRNAME
    if sessions_dir.is_dir():
        for child in sorted(sessions_dir.iterdir()):
            if child.is_dir():
                namespaces.append(Namespace(root=root, session_id=child.name, directory=child))
    return namespaces
