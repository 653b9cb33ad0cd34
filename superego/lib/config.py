"""Superego configuration (<root>/config.yaml plus environment overrides).

Example config.yaml:

    # Superego configuration
    eval_interval_minutes: 5      # periodic eval to catch drift
    change_threshold_lines: 20    # edits at least this large are reviewed
    carryover_decision_count: 2
    carryover_window_minutes: 5
    # model: claude-sonnet-4-20250514
    # timeout_ms: 300000
    mailbox_policy: overwrite     # or "keep"
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from superego.lib.mailbox import MailboxPolicy
from superego.lib.paths import CONFIG_FILE

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_YAML = """\
# Superego configuration
eval_interval_minutes: 5  # Periodic eval to catch drift
change_threshold_lines: 20  # Edits/writes at least this many lines are reviewed
carryover_decision_count: 2
carryover_window_minutes: 5
mailbox_policy: overwrite  # "overwrite" or "keep"
# model: claude-sonnet-4-20250514
# timeout_ms: 300000
"""

# env var -> config field
ENV_OVERRIDES: dict[str, str] = {
    "SUPEREGO_EVAL_INTERVAL_MINUTES": "eval_interval_minutes",
    "SUPEREGO_CHANGE_THRESHOLD": "change_threshold_lines",
}


class SuperegoConfig(BaseModel):
    """Tunables for trigger policy, carryover context and the evaluator."""

    eval_interval_minutes: float = Field(default=5, ge=0)
    change_threshold_lines: int = Field(default=20, ge=0)
    carryover_decision_count: int = Field(default=2, ge=0)
    carryover_window_minutes: float = Field(default=5, ge=0)
    model: str | None = None
    timeout_ms: int = Field(default=300_000, gt=0)
    mailbox_policy: MailboxPolicy = MailboxPolicy.OVERWRITE

    @classmethod
    def load(cls, root: Path) -> SuperegoConfig:
        """Load config from <root>/config.yaml, falling back to defaults.

        A missing file is normal. An unreadable or invalid file is logged and
        ignored - a typo in config must not stop the host session.
        """
        data: dict = {}
        path = Path(root) / CONFIG_FILE
        if path.exists():
            try:
                with path.open() as f:
                    loaded = yaml.safe_load(f) or {}
                if isinstance(loaded, dict):
                    data = loaded
                else:
                    logger.warning(f"Ignoring {path}: expected a mapping, got {type(loaded).__name__}")
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to read {path}, using defaults: {e}")

        for env_var, field_name in ENV_OVERRIDES.items():
            value = os.environ.get(env_var)
            if value:
                data[field_name] = value

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid superego config, using defaults: {e}")
            return cls()
