"""
Base classes for LLM backend abstraction.

This module provides the abstract base class and dataclasses for
pluggable LLM CLI backends (Codex, Claude Code), plus the shared
subprocess runner. The runner polls the child process so a pipeline
cancel event can stop a long model call instead of waiting it out.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

# Status codes only count as whole numbers ("1500 tokens" is not a 500).
_RATE_LIMIT_RE = re.compile(r"\b429\b|rate[ _]limit|too many requests")
_SERVER_ERROR_RE = re.compile(
    r"\b50[0234]\b|internal server error|server[ _]error|service unavailable|bad gateway"
)

# How often a running backend checks the cancel event, in seconds.
POLL_INTERVAL = 0.5


@dataclass
class LLMConfig:
    """Backend-agnostic configuration for LLM execution."""

    model: Optional[str] = None
    reasoning_effort: Optional[str] = None  # low/medium/high (Codex only)
    extra_args: List[str] = field(default_factory=list)
    timeout_ms: int = 600000  # 10 minutes default


@dataclass
class LLMResponse:
    """Standardized response from any LLM backend."""

    raw_text: str
    success: bool = True
    error_message: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    returncode: Optional[int] = None
    cancelled: bool = False


class LLMBackend(ABC):
    """Abstract base class for agentic CLI tools.

    Each backend implements the specifics of how to invoke the CLI,
    pass the prompt, and extract the response.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""
        ...

    @abstractmethod
    def build_command(
        self,
        prompt: str,
        output_path: Path,
        config: LLMConfig,
    ) -> tuple[List[str], Optional[str]]:
        """Build the CLI command to execute.

        Returns:
            Tuple of (command_args, stdin_input).
            stdin_input is None if the prompt is passed via command args.
        """
        ...

    @abstractmethod
    def extract_response(self, output_path: Path, stdout: str) -> str:
        """Extract the LLM response text after a successful run."""
        ...


def classify_failure(message: str) -> Optional[str]:
    """Return "rate_limit", "server" or None for a backend error message."""
    text = message.lower()
    if _RATE_LIMIT_RE.search(text):
        return "rate_limit"
    if _SERVER_ERROR_RE.search(text):
        return "server"
    return None


def _communicate(
    proc: subprocess.Popen,
    stdin_input: Optional[str],
    timeout_s: float,
    cancel: Optional[threading.Event],
) -> tuple[str, str, bool, bool]:
    """Wait for the process, returning (stdout, stderr, timed_out, cancelled)."""
    deadline = time.monotonic() + timeout_s
    pending_input = stdin_input
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            proc.kill()
            stdout, stderr = proc.communicate()
            return stdout, stderr, True, False
        if cancel is not None and cancel.is_set():
            proc.kill()
            stdout, stderr = proc.communicate()
            return stdout, stderr, False, True
        try:
            stdout, stderr = proc.communicate(
                input=pending_input, timeout=min(POLL_INTERVAL, remaining)
            )
            return stdout, stderr, False, False
        except subprocess.TimeoutExpired:
            # Input may only be sent on the first call.
            pending_input = None


def run_backend(
    backend: LLMBackend,
    prompt: str,
    config: LLMConfig,
    artifacts_dir: Optional[Path] = None,
    label: str = "",
    cancel: Optional[threading.Event] = None,
) -> LLMResponse:
    """Execute a prompt via the given backend and return the response.

    Args:
        backend: The LLM backend to use.
        prompt: The prompt text to send.
        config: Backend configuration.
        artifacts_dir: When set, prompt/stdout/stderr are saved there for debugging.
        label: Optional label for artifact filenames.
        cancel: Event that, once set, kills the running process.

    Returns:
        LLMResponse with the result or error information.
    """
    with tempfile.TemporaryDirectory(prefix="archive_digest_llm_") as scratch:
        work_dir = artifacts_dir or Path(scratch)
        work_dir.mkdir(parents=True, exist_ok=True)
        if artifacts_dir is not None:
            (work_dir / f"prompt{label}.txt").write_text(prompt, encoding="utf-8")
        output_path = work_dir / f"response{label}.txt"

        cmd, stdin_input = backend.build_command(prompt, output_path, config)
        logger.debug("Running %s backend%s", backend.name, f" ({label})" if label else "")

        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE if stdin_input is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=os.getcwd(),
        )
        stdout, stderr, timed_out, cancelled = _communicate(
            proc, stdin_input, config.timeout_ms / 1000, cancel
        )

        if artifacts_dir is not None:
            (work_dir / f"{backend.name}_stdout{label}.log").write_text(stdout or "", encoding="utf-8")
            (work_dir / f"{backend.name}_stderr{label}.log").write_text(stderr or "", encoding="utf-8")

        if cancelled:
            return LLMResponse(raw_text="", success=False, error_message="Cancelled", cancelled=True)
        if timed_out:
            return LLMResponse(
                raw_text="",
                success=False,
                error_message=f"Timeout after {config.timeout_ms}ms",
                stdout=stdout or "",
                stderr=stderr or "",
            )

        if proc.returncode != 0:
            return LLMResponse(
                raw_text="",
                success=False,
                error_message=f"Exit code {proc.returncode}: {(stderr or '')[:500]}",
                stdout=stdout or "",
                stderr=stderr or "",
                returncode=proc.returncode,
            )

        try:
            raw_text = backend.extract_response(output_path, stdout or "")
        except OSError as e:
            return LLMResponse(
                raw_text="",
                success=False,
                error_message=f"Failed to extract response: {e}",
                stdout=stdout or "",
                stderr=stderr or "",
                returncode=proc.returncode,
            )

    return LLMResponse(raw_text=raw_text, stdout=stdout or "", stderr=stderr or "", returncode=0)


__all__ = [
    "LLMBackend",
    "LLMConfig",
    "LLMResponse",
    "classify_failure",
    "run_backend",
    "POLL_INTERVAL",
]
