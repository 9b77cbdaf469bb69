"""
Agentic CLI backends for the model-backed steps.

`archive_digest.llm` only ever talks to these through `get_backend` and
`run_backend`; each backend knows how to build its command line and where
its answer ends up (a file for Codex, stdout for Claude Code).

Usage:
    from archive_digest.llm_backends import get_backend, run_backend, LLMConfig

    backend = get_backend("codex")  # or "claude-code"
    config = LLMConfig(model="gpt-5-mini", reasoning_effort="low")
    response = run_backend(backend, prompt, config, cancel=cancel_event)
"""

from __future__ import annotations

from typing import Dict, List, Type

from .base import LLMBackend, LLMConfig, LLMResponse, classify_failure, run_backend
from .claude_code import ClaudeCodeBackend
from .codex import CodexBackend

BACKENDS: Dict[str, Type[LLMBackend]] = {
    "codex": CodexBackend,
    "claude-code": ClaudeCodeBackend,
}

# Spellings accepted from config files and the environment.
ALIASES: Dict[str, str] = {
    "claude": "claude-code",
    "claude_code": "claude-code",
}


def resolve_backend_name(name: str) -> str:
    key = (name or "").strip().lower()
    key = ALIASES.get(key, key)
    if key not in BACKENDS:
        raise ValueError(f"Unknown backend: {name!r}. Available: {', '.join(list_backends())}")
    return key


def get_backend(name: str) -> LLMBackend:
    """Instantiate the backend registered under `name` (or one of its aliases).

    Raises:
        ValueError: If the name is not recognized.
    """
    return BACKENDS[resolve_backend_name(name)]()


def list_backends() -> List[str]:
    return sorted(BACKENDS)


__all__ = [
    "BACKENDS",
    "LLMBackend",
    "LLMConfig",
    "LLMResponse",
    "ClaudeCodeBackend",
    "CodexBackend",
    "classify_failure",
    "get_backend",
    "list_backends",
    "resolve_backend_name",
    "run_backend",
]
