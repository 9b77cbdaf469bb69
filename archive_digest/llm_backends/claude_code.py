"""Claude Code CLI backend: `claude --print` with the prompt on stdin."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from .base import LLMBackend, LLMConfig


class ClaudeCodeBackend(LLMBackend):
    """Non-interactive `claude --print`; the response is whatever lands on stdout.

    Chunk transcripts routinely exceed argv limits, so the prompt is piped
    through stdin rather than passed with -p.
    """

    @property
    def name(self) -> str:
        return "claude-code"

    def build_command(
        self,
        prompt: str,
        output_path: Path,
        config: LLMConfig,
    ) -> tuple[List[str], Optional[str]]:
        cmd = ["claude", "--print", "--output-format", "text"]
        if config.model:
            cmd.extend(["--model", config.model])
        # reasoning_effort has no Claude Code equivalent
        cmd.extend(config.extra_args)
        return cmd, prompt

    def extract_response(self, output_path: Path, stdout: str) -> str:
        return stdout.strip()


__all__ = ["ClaudeCodeBackend"]
