"""AI collaborator: the ``claude`` command-line tool run in print mode."""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .config import AIConfig
from .exceptions import AnalysisError
from .models import BackendResponse
from .util import truncate

logger = logging.getLogger(__name__)

EXECUTE_TIMEOUT_SECONDS = 300
AGENTIC_TIMEOUT_SECONDS = 900
AGENTIC_MAX_TURNS = 40


class AnalysisBackend(ABC):
    """Anything that can turn a prompt into text."""

    @abstractmethod
    def execute(self, prompt: str, json_schema: str | None = None) -> BackendResponse:
        """Run a single-shot prompt.

        Args:
            prompt: Full prompt text
            json_schema: Optional JSON schema the reply must satisfy

        Returns:
            Reply text and token usage

        Raises:
            AnalysisError: If the call fails or returns nothing
        """

    @abstractmethod
    def execute_agentic(self, prompt: str, cwd: Path | None = None) -> BackendResponse:
        """Run an open-ended prompt with tool access inside ``cwd``.

        Raises:
            AnalysisError: If the call fails or returns nothing
        """


class ClaudeCliBackend(AnalysisBackend):
    """Backend that shells out to ``claude -p``."""

    BINARY = "claude"

    def __init__(
        self,
        model: str = "sonnet",
        timeout: float = EXECUTE_TIMEOUT_SECONDS,
        agentic_timeout: float = AGENTIC_TIMEOUT_SECONDS,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.agentic_timeout = agentic_timeout

    @classmethod
    def from_config(cls, config: AIConfig) -> ClaudeCliBackend:
        return cls(model=config.model)

    @classmethod
    def is_available(cls) -> bool:
        """Whether the CLI is on PATH."""
        return shutil.which(cls.BINARY) is not None

    def execute(self, prompt: str, json_schema: str | None = None) -> BackendResponse:
        # Structured output needs a second turn to emit the schema-checked reply.
        args = [
            self.BINARY,
            "-p",
            "-",
            "--output-format",
            "json",
            "--model",
            self.model,
            "--max-turns",
            "2" if json_schema else "1",
        ]
        if json_schema:
            args += ["--json-schema", json_schema]
        else:
            args += ["--tools", ""]
        return self._run(args, prompt, self.timeout, cwd=None)

    def execute_agentic(self, prompt: str, cwd: Path | None = None) -> BackendResponse:
        args = [
            self.BINARY,
            "-p",
            "-",
            "--output-format",
            "json",
            "--model",
            self.model,
            "--max-turns",
            str(AGENTIC_MAX_TURNS),
        ]
        return self._run(args, prompt, self.agentic_timeout, cwd=cwd)

    def _run(
        self,
        args: list[str],
        prompt: str,
        timeout: float,
        cwd: Path | None,
    ) -> BackendResponse:
        env = os.environ.copy()
        # A nested session refuses to start while this is set.
        env.pop("CLAUDECODE", None)

        logger.debug("Running %s (%d prompt chars)", " ".join(args[:2]), len(prompt))
        try:
            completed = subprocess.run(
                args,
                input=prompt,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                cwd=str(cwd) if cwd is not None else None,
                check=False,
            )
        except FileNotFoundError as e:
            msg = "Failed to spawn claude CLI. Is claude installed and on PATH?"
            raise AnalysisError(msg) from e
        except subprocess.TimeoutExpired as e:
            msg = f"claude CLI timed out after {timeout:.0f}s"
            raise AnalysisError(msg, details={"timeout": timeout}) from e
        except OSError as e:
            msg = f"claude CLI execution failed: {e}"
            raise AnalysisError(msg) from e

        if completed.returncode != 0:
            msg = f"claude CLI exited with status {completed.returncode}: {completed.stderr.strip()}"
            raise AnalysisError(msg, details={"returncode": completed.returncode})

        return parse_cli_output(completed.stdout)


def parse_cli_output(stdout: str) -> BackendResponse:
    """Extract text and token usage from the CLI's JSON wrapper.

    Raises:
        AnalysisError: If the wrapper is unparseable, flagged as an error, or empty
    """
    try:
        wrapper: dict[str, Any] = json.loads(stdout)
    except json.JSONDecodeError as e:
        msg = f"Failed to parse claude CLI output: {e}"
        raise AnalysisError(msg, details={"raw": truncate(stdout, 500)}) from e

    if not isinstance(wrapper, dict):
        msg = "claude CLI output is not a JSON object"
        raise AnalysisError(msg, details={"raw": truncate(stdout, 500)})

    if wrapper.get("is_error"):
        msg = f"claude CLI returned error: {wrapper.get('result') or 'unknown error'}"
        raise AnalysisError(msg)

    usage = wrapper.get("usage") or {}
    input_tokens = sum(
        int(usage.get(key) or 0)
        for key in (
            "input_tokens",
            "cache_creation_input_tokens",
            "cache_read_input_tokens",
        )
    )
    output_tokens = int(usage.get("output_tokens") or 0)

    text = ""
    structured = wrapper.get("structured_output")
    if structured is not None:
        text = json.dumps(structured)
    if not text:
        text = wrapper.get("result") or ""
    if not text:
        msg = (
            f"claude CLI returned empty result "
            f"(tokens_in={input_tokens}, tokens_out={output_tokens})"
        )
        raise AnalysisError(msg)

    return BackendResponse(text=text, input_tokens=input_tokens, output_tokens=output_tokens)
