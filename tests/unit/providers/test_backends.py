"""Tests for built-in CLI backend command construction."""

from __future__ import annotations

import json

from forgeloop.errors import ErrorKind
from forgeloop.providers.backends import AiderAdapter, ClaudeAdapter, CodexAdapter
from forgeloop.providers.base import SendOptions
from forgeloop.providers.subprocess_adapter import (
    STRIP_ENV_VARS,
    SubprocessProviderAdapter,
    extract_usage,
)


class TestClaude:
    def test_prompt_goes_to_stdin(self) -> None:
        adapter = ClaudeAdapter(model="sonnet")
        argv = adapter.build_command("do the thing", SendOptions())
        assert argv[:3] == ["claude", "--print", "--output-format=text"]
        assert "do the thing" not in argv
        assert argv[-2:] == ["--model", "sonnet"]

    def test_dangerous_and_session(self) -> None:
        adapter = ClaudeAdapter(dangerous=True)
        argv = adapter.build_command("p", SendOptions(session="abc", model="opus"))
        assert "--dangerously-skip-permissions" in argv
        assert argv[-2:] == ["--resume", "abc"]
        assert "opus" in argv


class TestCodex:
    def test_sandboxed_by_default(self) -> None:
        argv = CodexAdapter().build_command("fix it", SendOptions())
        assert argv[:4] == ["codex", "exec", "--json", "--skip-git-repo-check"]
        assert "--sandbox" in argv
        assert argv[-1] == "fix it"

    def test_parse_output_keeps_agent_messages(self) -> None:
        lines = [
            json.dumps({"type": "thread.started"}),
            json.dumps({"item": {"type": "reasoning", "text": "hmm"}}),
            json.dumps({"item": {"type": "agent_message", "text": "All done\nSTATUS: COMPLETE"}}),
        ]
        output = CodexAdapter().parse_output("\n".join(lines))
        assert output == "All done\nSTATUS: COMPLETE"
        assert CodexAdapter.detect_completion(output)

    def test_parse_output_falls_back_to_plain(self) -> None:
        assert CodexAdapter().parse_output("plain text") == "plain text"


class TestAider:
    def test_message_flag(self) -> None:
        argv = AiderAdapter(model="gpt-4o").build_command("refactor", SendOptions())
        assert argv[0] == "aider"
        assert "--no-auto-commits" in argv
        assert argv[-2:] == ["--message", "refactor"]
        assert "gpt-4o" in argv


class TestGenericCommand:
    def test_placeholder_substitution(self) -> None:
        adapter = SubprocessProviderAdapter(binary="agent", args=["run", "{prompt}", "--fast"])
        assert adapter.build_command("hello", SendOptions()) == ["agent", "run", "hello", "--fast"]

    def test_prompt_appended(self) -> None:
        adapter = SubprocessProviderAdapter(binary="agent", args=["run"])
        assert adapter.build_command("hello", SendOptions()) == ["agent", "run", "hello"]

    def test_build_env_strips_nested_session_vars(self, monkeypatch) -> None:
        monkeypatch.setenv("CLAUDECODE", "1")
        adapter = SubprocessProviderAdapter(binary="agent", env={"A": "1"})
        env = adapter.build_env(SendOptions(env={"B": "2"}))
        assert not STRIP_ENV_VARS & env.keys()
        assert env["A"] == "1"
        assert env["B"] == "2"

    def test_unavailable_binary(self) -> None:
        assert not SubprocessProviderAdapter(binary="definitely-not-a-real-binary-xyz").available()

    def test_extract_usage(self) -> None:
        assert extract_usage("tokens=1234 cost=$0.12") == (1234, 0.12)
        assert extract_usage("nothing here") == (0, 0.0)

    def test_exit_error_is_classified_then_redacted(self) -> None:
        adapter = SubprocessProviderAdapter(name="agent", binary="agent")
        stderr = "Error: OAuth token has expired (key sk-abcdefghijklmnopqrstu)"
        error = adapter._error_from_exit(1, "", stderr)
        assert error.kind is ErrorKind.AUTH_EXPIRED
        assert error.exit_code == 1
        assert "sk-abcdefghijklmnopqrstu" not in str(error)
        assert "OAuth token has expired" in str(error)

    def test_rate_limit_exit_carries_reset_time(self) -> None:
        adapter = SubprocessProviderAdapter(name="agent", binary="agent")
        error = adapter._error_from_exit(1, "usage limit reached, try again in 5 minutes", "")
        assert error.kind is ErrorKind.RATE_LIMITED
        assert error.reset_at is not None
