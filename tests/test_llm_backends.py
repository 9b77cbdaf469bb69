"""Tests for LLM backend abstraction layer."""

import subprocess
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from archive_digest.llm_backends import (
    BACKENDS,
    LLMBackend,
    LLMConfig,
    LLMResponse,
    classify_failure,
    get_backend,
    list_backends,
    resolve_backend_name,
    run_backend,
)
from archive_digest.llm_backends.claude_code import ClaudeCodeBackend
from archive_digest.llm_backends.codex import CodexBackend


class TestLLMConfig:
    """Tests for LLMConfig dataclass."""

    def test_default_values(self):
        """LLMConfig should have sensible defaults."""
        config = LLMConfig()
        assert config.model is None
        assert config.reasoning_effort is None
        assert config.extra_args == []
        assert config.timeout_ms == 600000


class TestLLMResponse:
    """Tests for LLMResponse dataclass."""

    def test_success_response(self):
        response = LLMResponse(raw_text='{"summary": "x"}')
        assert response.success is True
        assert response.cancelled is False
        assert response.error_message is None

    def test_error_response(self):
        response = LLMResponse(raw_text="", success=False, error_message="Connection failed")
        assert response.success is False
        assert response.error_message == "Connection failed"


class TestBackendRegistry:
    """Tests for backend registry functions."""

    def test_list_backends(self):
        assert list_backends() == ["claude-code", "codex"]

    def test_get_backend_codex(self):
        backend = get_backend("codex")
        assert isinstance(backend, CodexBackend)
        assert backend.name == "codex"

    def test_get_backend_claude_code(self):
        backend = get_backend("claude-code")
        assert isinstance(backend, ClaudeCodeBackend)
        assert backend.name == "claude-code"

    def test_aliases_resolve(self):
        assert resolve_backend_name(" Claude ") == "claude-code"
        assert isinstance(get_backend("claude_code"), ClaudeCodeBackend)

    def test_get_backend_unknown(self):
        """get_backend should raise ValueError for unknown backend."""
        with pytest.raises(ValueError, match="Unknown backend"):
            get_backend("unknown-backend")


class TestCodexBackend:
    """Tests for CodexBackend."""

    def test_build_command_basic(self):
        """Prompt goes through stdin; the agent runs read-only."""
        backend = CodexBackend()
        output_path = Path("/tmp/output.txt")

        cmd, stdin_input = backend.build_command("test prompt", output_path, LLMConfig())

        assert cmd[:3] == ["codex", "exec", "-"]
        assert "--skip-git-repo-check" in cmd
        assert cmd[cmd.index("--sandbox") + 1] == "read-only"
        assert cmd[cmd.index("--output-last-message") + 1] == str(output_path)
        assert stdin_input == "test prompt"

    def test_build_command_with_model_and_effort(self):
        backend = CodexBackend()
        config = LLMConfig(model="gpt-5-mini", reasoning_effort="low")

        cmd, _ = backend.build_command("test", Path("/tmp/o.txt"), config)

        assert cmd[cmd.index("--model") + 1] == "gpt-5-mini"
        assert cmd[cmd.index("-c") + 1] == "model_reasoning_effort=low"

    def test_build_command_with_extra_args(self):
        config = LLMConfig(extra_args=["--profile", "digest"])
        cmd, _ = CodexBackend().build_command("test", Path("/tmp/o.txt"), config)
        assert cmd[-2:] == ["--profile", "digest"]

    def test_extract_response(self, tmp_path):
        """CodexBackend reads the last-message file."""
        output_path = tmp_path / "output.txt"
        output_path.write_text('  {"summary": "x"}  ')
        assert CodexBackend().extract_response(output_path, "ignored") == '{"summary": "x"}'


class TestClaudeCodeBackend:
    """Tests for ClaudeCodeBackend."""

    def test_build_command_basic(self):
        """Long prompts go through stdin rather than argv."""
        cmd, stdin_input = ClaudeCodeBackend().build_command("test prompt", Path("/tmp/o"), LLMConfig())
        assert cmd[:2] == ["claude", "--print"]
        assert "test prompt" not in cmd
        assert stdin_input == "test prompt"

    def test_build_command_with_model(self):
        config = LLMConfig(model="claude-sonnet")
        cmd, _ = ClaudeCodeBackend().build_command("test", Path("/tmp/o"), config)
        assert cmd[cmd.index("--model") + 1] == "claude-sonnet"

    def test_build_command_ignores_reasoning_effort(self):
        """ClaudeCodeBackend should ignore reasoning_effort (not supported)."""
        config = LLMConfig(reasoning_effort="high")
        cmd, _ = ClaudeCodeBackend().build_command("test", Path("/tmp/o"), config)
        assert "-c" not in cmd
        assert "reasoning_effort" not in str(cmd)

    def test_extract_response(self):
        """ClaudeCodeBackend should extract response from stdout."""
        assert ClaudeCodeBackend().extract_response(Path("/tmp/o"), '  {"a": 1}  ') == '{"a": 1}'


class TestBackendInterfaceConsistency:
    """Tests to ensure all backends implement the interface consistently."""

    @pytest.mark.parametrize("backend_name", list(BACKENDS.keys()))
    def test_backend_build_command_returns_tuple(self, backend_name):
        """All backends should return (cmd, stdin) tuple from build_command."""
        backend = get_backend(backend_name)
        result = backend.build_command("test prompt", Path("/tmp/test.txt"), LLMConfig(model="m"))

        assert isinstance(result, tuple)
        cmd, stdin = result
        assert all(isinstance(arg, str) for arg in cmd)
        assert stdin is None or isinstance(stdin, str)

    @pytest.mark.parametrize("backend_name", list(BACKENDS.keys()))
    def test_backend_is_llm_backend_subclass(self, backend_name):
        assert isinstance(get_backend(backend_name), LLMBackend)


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Exit code 1: HTTP 429 Too Many Requests", "rate_limit"),
        ("Rate limit reached for model", "rate_limit"),
        ("upstream returned 503", "server"),
        ("Internal Server Error", "server"),
        ("unknown flag --foo", None),
        ("context is 1500 tokens over the limit", None),
        ("request id 4290017 failed", None),
        ("error: server_error (502)", "server"),
        ("", None),
    ],
)
def test_classify_failure(message, expected):
    assert classify_failure(message) == expected


# ---------------------------------------------------------------------------
# run_backend
# ---------------------------------------------------------------------------


def _fake_proc(stdout="", stderr="", returncode=0):
    proc = MagicMock(spec=subprocess.Popen)
    proc.communicate.return_value = (stdout, stderr)
    proc.returncode = returncode
    return proc


class TestRunBackend:
    """Tests for run_backend with a patched subprocess."""

    def test_success(self):
        proc = _fake_proc(stdout='  {"ok": true}\n')
        with patch("archive_digest.llm_backends.base.subprocess.Popen", return_value=proc) as popen:
            response = run_backend(ClaudeCodeBackend(), "prompt", LLMConfig())
        assert response.success
        assert response.raw_text == '{"ok": true}'
        assert popen.call_args.kwargs["stdin"] == subprocess.PIPE
        assert proc.communicate.call_args.kwargs["input"] == "prompt"

    def test_nonzero_exit(self):
        proc = _fake_proc(stderr="429 Too Many Requests", returncode=1)
        with patch("archive_digest.llm_backends.base.subprocess.Popen", return_value=proc):
            response = run_backend(ClaudeCodeBackend(), "prompt", LLMConfig())
        assert not response.success
        assert response.returncode == 1
        assert "Exit code 1" in response.error_message
        assert "429" in response.stderr

    def test_cancel_kills_process(self):
        proc = _fake_proc()
        cancel = threading.Event()
        cancel.set()
        with patch("archive_digest.llm_backends.base.subprocess.Popen", return_value=proc):
            response = run_backend(ClaudeCodeBackend(), "prompt", LLMConfig(), cancel=cancel)
        assert response.cancelled
        assert not response.success
        proc.kill.assert_called_once()

    def test_timeout_kills_process(self):
        proc = _fake_proc()
        with patch("archive_digest.llm_backends.base.subprocess.Popen", return_value=proc):
            response = run_backend(ClaudeCodeBackend(), "prompt", LLMConfig(timeout_ms=0))
        assert not response.success
        assert "Timeout" in response.error_message
        proc.kill.assert_called_once()

    def test_poll_loop_retries_until_done(self):
        """communicate is polled until the child exits."""
        proc = _fake_proc()
        proc.communicate.side_effect = [
            subprocess.TimeoutExpired("claude", 0.5),
            ("done", ""),
        ]
        with patch("archive_digest.llm_backends.base.subprocess.Popen", return_value=proc):
            response = run_backend(ClaudeCodeBackend(), "prompt", LLMConfig())
        assert response.raw_text == "done"
        assert proc.communicate.call_count == 2
        first, second = proc.communicate.call_args_list
        assert first.kwargs["input"] == "prompt"
        assert second.kwargs["input"] is None

    def test_artifacts_saved(self, tmp_path):
        proc = _fake_proc(stdout="answer", stderr="warn")
        with patch("archive_digest.llm_backends.base.subprocess.Popen", return_value=proc):
            run_backend(ClaudeCodeBackend(), "the prompt", LLMConfig(), artifacts_dir=tmp_path, label="_x")
        assert (tmp_path / "prompt_x.txt").read_text() == "the prompt"
        assert (tmp_path / "claude-code_stdout_x.log").read_text() == "answer"
        assert (tmp_path / "claude-code_stderr_x.log").read_text() == "warn"
