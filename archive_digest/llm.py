"""
LLM execution, response parsing and the model-backed pipeline collaborators.

The core modules only know the narrow protocols in `archive_digest.models`;
this module implements them on top of the CLI backends:

- LLMBreakpointDecider: where to cut a thread into chunks
- LLMChunkSummarizer / LLMChunkSentimentSummarizer: one summary per chunk
- LLMThreadRolluper / LLMThreadSentimentRolluper: chunk summaries -> thread

Prompt building is handled by the prompts module.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from json_repair import repair_json
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from archive_digest.chunker import fallback_breakpoints
from archive_digest.config_types import LLMSettings
from archive_digest.errors import Cancelled, LLMError, ModelOutputError, TransientLLMError
from archive_digest.llm_backends import classify_failure, get_backend, run_backend
from archive_digest.models import (
    Chunk,
    ChunkSentimentSummary,
    ChunkSummary,
    GlossaryAddition,
    SemanticChunkResult,
    SimplifiedConversation,
    ThreadSentimentSummary,
    ThreadSummary,
    TranscriptOptions,
    Turn,
)
from archive_digest.prompts import (
    build_breakpoint_prompt,
    build_chunk_sentiment_prompt,
    build_chunk_summary_prompt,
    build_thread_merge_prompt,
    build_thread_rollup_prompt,
    build_thread_sentiment_merge_prompt,
    build_thread_sentiment_rollup_prompt,
)

logger = logging.getLogger(__name__)

# Seconds to wait before retry N (1-based) of a failed backend call.
RATE_LIMIT_WAITS = (65.0, 100.0, 135.0)
SERVER_ERROR_WAITS = (5.0, 30.0, 60.0)

STRICT_JSON_SUFFIX = (
    "\n\nIMPORTANT: Your previous answer was not valid JSON. Respond with exactly one "
    "JSON object matching the output contract, with no prose and no code fences."
)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _backoff(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    waits = RATE_LIMIT_WAITS if getattr(exc, "kind", "") == "rate_limit" else SERVER_ERROR_WAITS
    return waits[min(retry_state.attempt_number, len(waits)) - 1]


def _cancellable_sleep(cancel: Optional[threading.Event]) -> Callable[[float], None]:
    def sleep(seconds: float) -> None:
        if cancel is None:
            time.sleep(seconds)
        elif cancel.wait(seconds):
            raise Cancelled("cancelled during retry backoff")

    return sleep


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "LLM call failed (attempt %d): %s; retrying in %.0fs",
        retry_state.attempt_number,
        exc,
        retry_state.next_action.sleep if retry_state.next_action else 0,
    )


def run_llm(
    prompt: str,
    settings: LLMSettings,
    *,
    label: str = "",
    cancel: Optional[threading.Event] = None,
    model_override: Optional[str] = None,
) -> str:
    """Execute a prompt via the configured backend, retrying transient failures.

    Rate-limit and server failures are retried (up to `settings.max_attempts`
    calls) after fixed waits; the waits end early with Cancelled if `cancel`
    is set. Other failures raise LLMError immediately.
    """
    backend = get_backend(settings.backend)
    config = settings.to_llm_config(model_override)

    def attempt() -> str:
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"cancelled before {backend.name} call {label}".rstrip())
        response = run_backend(
            backend,
            prompt,
            config,
            settings.artifacts_dir,
            label=label,
            cancel=cancel,
        )
        if response.cancelled:
            raise Cancelled(f"{backend.name} call cancelled {label}".rstrip())
        if not response.success:
            message = f"{backend.name} failed{' for ' + label if label else ''}: {response.error_message}"
            kind = classify_failure(f"{response.error_message or ''}\n{response.stderr}")
            if kind:
                raise TransientLLMError(message, kind)
            raise LLMError(message)
        return response.raw_text

    retrying = Retrying(
        stop=stop_after_attempt(max(1, settings.max_attempts)),
        wait=_backoff,
        retry=retry_if_exception_type(TransientLLMError),
        sleep=_cancellable_sleep(cancel),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(attempt)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _strip_markdown_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _raw_decode_first_object(text: str) -> Any:
    decoder = json.JSONDecoder()
    last_error: Optional[Exception] = None
    for start, ch in enumerate(text):
        if ch != "{":
            continue
        try:
            obj, _ = decoder.raw_decode(text[start:])
            return obj
        except json.JSONDecodeError as e:
            last_error = e
    raise last_error or json.JSONDecodeError("No JSON object found", text, 0)


def _escape_invalid_backslashes(text: str) -> str:
    # JSON only permits \" \\ \/ \b \f \n \r \t \uXXXX
    return re.sub(r"\\(?![\"\\/bfnrtu])", r"\\\\", text)


def parse_model_json(response_text: str) -> Dict[str, Any]:
    """Decode a model response into a JSON object, trying progressively looser strategies.

    Raises ModelOutputError when no strategy yields an object.
    """
    raw = response_text.strip()
    if not raw:
        raise ModelOutputError("empty model output")

    cleaned = _strip_markdown_fences(raw)
    strategies: List[tuple[str, Callable[[], Any]]] = []
    if raw.startswith("{"):
        strategies.append(("direct", lambda: json.loads(raw)))
    strategies.append(("fences stripped", lambda: json.loads(cleaned)))
    strategies.append(("backslashes escaped", lambda: json.loads(_escape_invalid_backslashes(cleaned))))
    strategies.append(("first object", lambda: _raw_decode_first_object(cleaned)))
    strategies.append(("json_repair", lambda: json.loads(repair_json(cleaned))))

    last_error: Optional[Exception] = None
    for name, strategy in strategies:
        try:
            result = strategy()
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            last_error = e
            continue
        if isinstance(result, dict):
            logger.debug("Parsed model output with strategy: %s", name)
            return result

    raise ModelOutputError(
        f"no JSON object in model output (len={len(raw)}): {last_error or 'not an object'}"
    )


def _ask_json(
    prompt: str,
    settings: LLMSettings,
    *,
    label: str,
    cancel: Optional[threading.Event],
    model_override: Optional[str] = None,
    attempts: int = 2,
) -> Dict[str, Any]:
    """Run a prompt and parse its JSON, re-asking more strictly on bad output."""
    for i in range(attempts):
        text = run_llm(
            prompt if i == 0 else prompt + STRICT_JSON_SUFFIX,
            settings,
            label=label,
            cancel=cancel,
            model_override=model_override,
        )
        try:
            return parse_model_json(text)
        except ModelOutputError as e:
            if i + 1 >= attempts:
                raise
            logger.warning("Unparseable model output for %s (attempt %d): %s", label, i + 1, e)
    raise ModelOutputError(f"{label}: no attempts made (attempts={attempts})")


def _label(*parts: Any) -> str:
    return "_" + "_".join(re.sub(r"[^A-Za-z0-9._-]+", "_", str(p)) for p in parts)


# ---------------------------------------------------------------------------
# Breakpoints
# ---------------------------------------------------------------------------


class LLMBreakpointDecider:
    """Ask the model where topic boundaries fall.

    Unusable model output falls back to fixed-size breakpoints so a single
    odd response never stops a chunking run.
    """

    def __init__(self, settings: LLMSettings, cancel: Optional[threading.Event] = None) -> None:
        self.settings = settings
        self.cancel = cancel

    def decide(
        self,
        thread: SimplifiedConversation,
        turns: Sequence[Turn],
        target_turns_per_chunk: int,
    ) -> List[int]:
        if len(turns) <= target_turns_per_chunk:
            return []
        prompt = build_breakpoint_prompt(thread, turns, target_turns_per_chunk)
        text = run_llm(
            prompt,
            self.settings,
            label=_label("breakpoints", thread.conversation_id),
            cancel=self.cancel,
        )
        try:
            data = parse_model_json(text)
        except ModelOutputError as e:
            logger.warning("Breakpoints for %s fell back to fixed size: %s", thread.conversation_id, e)
            return fallback_breakpoints(len(turns), target_turns_per_chunk)

        raw = data.get("breakpoints")
        if not isinstance(raw, list):
            return fallback_breakpoints(len(turns), target_turns_per_chunk)
        return [int(bp) for bp in raw if isinstance(bp, (int, float)) and not isinstance(bp, bool)]


# ---------------------------------------------------------------------------
# Chunk summaries
# ---------------------------------------------------------------------------


def _glossary_additions(value: Any) -> List[GlossaryAddition]:
    additions: List[GlossaryAddition] = []
    if not isinstance(value, list):
        return additions
    for item in value:
        if isinstance(item, dict) and isinstance(item.get("term"), str) and item["term"].strip():
            definition = item.get("definition")
            additions.append(
                GlossaryAddition(
                    term=item["term"].strip(),
                    definition=definition.strip() if isinstance(definition, str) else "",
                )
            )
    return additions


def _stamp_chunk(summary: Any, chunk: Chunk) -> None:
    summary.conversation_id = chunk.conversation_id
    summary.thread_start_time = chunk.thread_start_time
    summary.chunk_number = chunk.chunk_number
    summary.turn_start = chunk.turn_start
    summary.turn_end = chunk.turn_end


class LLMChunkSummarizer:
    def __init__(self, settings: LLMSettings) -> None:
        self.settings = settings

    def summarize(
        self,
        chunk: Chunk,
        glossary_excerpt: str,
        options: TranscriptOptions,
        cancel: Optional[threading.Event] = None,
    ) -> SemanticChunkResult:
        prompt = build_chunk_summary_prompt(chunk, glossary_excerpt, options)
        data = _ask_json(
            prompt,
            self.settings,
            label=_label("summary", chunk.conversation_id, chunk.chunk_number),
            cancel=cancel,
            attempts=1,
        )
        summary = ChunkSummary.from_dict(data)
        _stamp_chunk(summary, chunk)
        if not summary.summary.strip():
            raise ModelOutputError(f"empty summary for chunk {chunk.chunk_number} of {chunk.conversation_id}")
        return SemanticChunkResult(summary=summary, glossary_additions=_glossary_additions(data.get("glossary_additions")))


class LLMChunkSentimentSummarizer:
    def __init__(self, settings: LLMSettings, model_override: Optional[str] = None) -> None:
        self.settings = settings
        self.model_override = model_override

    def summarize(
        self,
        chunk: Chunk,
        glossary_excerpt: str,
        options: TranscriptOptions,
        cancel: Optional[threading.Event] = None,
    ) -> ChunkSentimentSummary:
        prompt = build_chunk_sentiment_prompt(chunk, glossary_excerpt, options)
        data = _ask_json(
            prompt,
            self.settings,
            label=_label("sentiment", chunk.conversation_id, chunk.chunk_number),
            cancel=cancel,
            model_override=self.model_override,
            attempts=1,
        )
        summary = ChunkSentimentSummary.from_dict(data)
        _stamp_chunk(summary, chunk)
        return summary


# ---------------------------------------------------------------------------
# Thread rollups
# ---------------------------------------------------------------------------


class LLMThreadRolluper:
    def __init__(self, settings: LLMSettings) -> None:
        self.settings = settings

    def _finish(self, conversation_id: str, data: Dict[str, Any]) -> ThreadSummary:
        summary = ThreadSummary.from_dict(data)
        summary.conversation_id = conversation_id
        return summary

    def rollup(
        self,
        conversation_id: str,
        items: Sequence[ChunkSummary],
        glossary_excerpt: str,
        cancel: Optional[threading.Event] = None,
    ) -> ThreadSummary:
        prompt = build_thread_rollup_prompt(conversation_id, items, glossary_excerpt)
        data = _ask_json(prompt, self.settings, label=_label("rollup", conversation_id), cancel=cancel)
        return self._finish(conversation_id, data)

    def merge(
        self,
        conversation_id: str,
        parts: Sequence[ThreadSummary],
        glossary_excerpt: str,
        cancel: Optional[threading.Event] = None,
    ) -> ThreadSummary:
        prompt = build_thread_merge_prompt(conversation_id, parts, glossary_excerpt)
        data = _ask_json(prompt, self.settings, label=_label("merge", conversation_id), cancel=cancel)
        return self._finish(conversation_id, data)


class LLMThreadSentimentRolluper:
    def __init__(self, settings: LLMSettings, model_override: Optional[str] = None) -> None:
        self.settings = settings
        self.model_override = model_override

    def _finish(self, conversation_id: str, data: Dict[str, Any]) -> ThreadSentimentSummary:
        summary = ThreadSentimentSummary.from_dict(data)
        summary.conversation_id = conversation_id
        return summary

    def rollup(
        self,
        conversation_id: str,
        items: Sequence[ChunkSentimentSummary],
        glossary_excerpt: str,
        cancel: Optional[threading.Event] = None,
    ) -> ThreadSentimentSummary:
        prompt = build_thread_sentiment_rollup_prompt(conversation_id, items, glossary_excerpt)
        data = _ask_json(
            prompt,
            self.settings,
            label=_label("sentiment_rollup", conversation_id),
            cancel=cancel,
            model_override=self.model_override,
        )
        return self._finish(conversation_id, data)

    def merge(
        self,
        conversation_id: str,
        parts: Sequence[ThreadSentimentSummary],
        glossary_excerpt: str,
        cancel: Optional[threading.Event] = None,
    ) -> ThreadSentimentSummary:
        prompt = build_thread_sentiment_merge_prompt(conversation_id, parts, glossary_excerpt)
        data = _ask_json(
            prompt,
            self.settings,
            label=_label("sentiment_merge", conversation_id),
            cancel=cancel,
            model_override=self.model_override,
        )
        return self._finish(conversation_id, data)


__all__ = [
    "RATE_LIMIT_WAITS",
    "SERVER_ERROR_WAITS",
    "run_llm",
    "parse_model_json",
    "LLMBreakpointDecider",
    "LLMChunkSummarizer",
    "LLMChunkSentimentSummarizer",
    "LLMThreadRolluper",
    "LLMThreadSentimentRolluper",
]
