"""Codex CLI backend: `codex exec` reading the prompt from stdin."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from .base import LLMBackend, LLMConfig


class CodexBackend(LLMBackend):
    """Codex writes its final message to the --output-last-message file."""

    @property
    def name(self) -> str:
        return "codex"

    def build_command(
        self,
        prompt: str,
        output_path: Path,
        config: LLMConfig,
    ) -> tuple[List[str], Optional[str]]:
        # The agent only reads the prompt; it never writes to the workspace.
        cmd = ["codex", "exec", "-", "--skip-git-repo-check", "--sandbox", "read-only"]
        if config.model:
            cmd.extend(["--model", config.model])
        if config.reasoning_effort:
            cmd.extend(["-c", f"model_reasoning_effort={config.reasoning_effort}"])
        cmd.extend(["--output-last-message", str(output_path)])
        cmd.extend(config.extra_args)
        return cmd, prompt

    def extract_response(self, output_path: Path, stdout: str) -> str:
        return output_path.read_text(encoding="utf-8").strip()


__all__ = ["CodexBackend"]
