"""Evaluator invocation.

The coordinator only depends on the ``Evaluator`` protocol: a callable taking a
system prompt and a message and returning raw response text. Anything that
goes wrong must surface as ``EvaluatorError`` (or ``EvaluatorTimeout``) so the
coordinator can treat it as "evaluation did not complete".

``ClaudeCliEvaluator`` is the production implementation. It shells out to the
``claude`` CLI in print mode with session persistence off, and sets
SUPEREGO_DISABLED=1 in the child so the evaluator's own hooks don't recurse
into superego.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from typing import Any, Protocol

from superego.lib.errors import EvaluatorError, EvaluatorTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 300_000
# Read-only tools so the evaluator can look at the project but not change it
EVALUATOR_TOOLS = "Bash,Read,Glob,Grep"


class Evaluator(Protocol):
    def __call__(self, system_prompt: str, message: str) -> str: ...


def parse_cli_output(stdout: str) -> dict[str, Any]:
    """Extract the result object from ``claude --output-format json`` output.

    Older CLI versions print a single object; newer ones print an array of
    events with one ``{"type": "result"}`` entry.

    Raises:
        EvaluatorError: If no result can be found
    """
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise EvaluatorError(f"Evaluator returned non-JSON output: {e}") from e

    if isinstance(data, list):
        data = next(
            (item for item in data if isinstance(item, dict) and item.get("type") == "result"),
            None,
        )
    if not isinstance(data, dict) or not isinstance(data.get("result"), str):
        raise EvaluatorError("Evaluator output has no result text")
    return data


class ClaudeCliEvaluator:
    def __init__(
        self,
        model: str | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        executable: str = "claude",
    ):
        self.model = model
        self.timeout_ms = timeout_ms
        self.executable = executable

    def build_command(self, system_prompt: str, message: str) -> list[str]:
        cmd = [
            self.executable,
            "-p",
            "--output-format",
            "json",
            "--tools",
            EVALUATOR_TOOLS,
            "--system-prompt",
            system_prompt,
        ]
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.append("--no-session-persistence")
        cmd.append(message)
        return cmd

    def __call__(self, system_prompt: str, message: str) -> str:
        """Run one evaluation and return the response text.

        Raises:
            EvaluatorTimeout: If the CLI does not finish within the timeout
            EvaluatorError: On a missing binary, non-zero exit or bad output
        """
        env = {**os.environ, "SUPEREGO_DISABLED": "1"}
        timeout = self.timeout_ms / 1000

        try:
            result = subprocess.run(
                self.build_command(system_prompt, message),
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise EvaluatorTimeout(f"Evaluator timed out after {timeout:.0f}s") from e
        except OSError as e:
            raise EvaluatorError(f"Failed to run {self.executable}: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()[:500]
            raise EvaluatorError(f"{self.executable} exited with {result.returncode}: {stderr}")

        data = parse_cli_output(result.stdout)
        if data.get("total_cost_usd") is not None:
            logger.info(f"Evaluation cost: ${data['total_cost_usd']:.4f}")
        return data["result"]
