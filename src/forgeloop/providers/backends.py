"""Built-in CLI backends: Claude Code, Codex and Aider."""

from __future__ import annotations

import json

from forgeloop.errors import ErrorKind
from forgeloop.providers.base import ProviderCapabilities, SendOptions
from forgeloop.providers.subprocess_adapter import SubprocessProviderAdapter


class ClaudeAdapter(SubprocessProviderAdapter):
    """``claude --print`` with the prompt on stdin."""

    provider_name = "claude"
    display_name = "Claude CLI"
    default_binary = "claude"
    prompt_via_stdin = True
    default_capabilities = ProviderCapabilities(
        reasoning_tiers=("mini", "standard", "thinking", "pro"),
        context_window=200_000,
        supports_mcp=True,
        supports_dangerous_mode=True,
        supports_streaming=True,
        supports_sessions=True,
        supports_vision=True,
    )
    error_patterns = (
        (ErrorKind.AUTH_EXPIRED, r"oauth token has expired"),
        (ErrorKind.AUTH_EXPIRED, r"authentication_error"),
        (ErrorKind.AUTH_EXPIRED, r"invalid api key.*/login"),
        (ErrorKind.RATE_LIMITED, r"usage limit reached"),
        (ErrorKind.RATE_LIMITED, r"\d+-hour limit reached"),
        (ErrorKind.RATE_LIMITED, r"rate_limit_error"),
        (ErrorKind.TRANSIENT, r"overloaded_error"),
        (ErrorKind.TRANSIENT, r"api_error"),
        (ErrorKind.PERMANENT, r"invalid_request_error"),
    )

    def build_command(self, prompt: str, options: SendOptions) -> list[str]:
        argv = [self.binary, "--print", "--output-format=text", *self.args]
        if self.dangerous:
            argv.append("--dangerously-skip-permissions")
        model = options.model or self.model
        if model:
            argv.extend(["--model", model])
        if options.session:
            argv.extend(["--resume", options.session])
        return argv


class CodexAdapter(SubprocessProviderAdapter):
    """``codex exec`` in JSON event mode; the final agent message is the output."""

    provider_name = "codex"
    display_name = "OpenAI Codex CLI"
    default_binary = "codex"
    default_capabilities = ProviderCapabilities(
        reasoning_tiers=("mini", "standard", "thinking"),
        context_window=128_000,
        supports_dangerous_mode=True,
        supports_sessions=True,
    )
    error_patterns = (
        (ErrorKind.QUOTA_EXCEEDED, r"insufficient_quota"),
        (ErrorKind.RATE_LIMITED, r"rate_limit_exceeded"),
        (ErrorKind.RATE_LIMITED, r"you've hit your usage limit"),
        (ErrorKind.AUTH_EXPIRED, r"invalid_api_key"),
        (ErrorKind.AUTH_EXPIRED, r"refresh token"),
        (ErrorKind.PERMANENT, r"model_not_found"),
        (ErrorKind.TRANSIENT, r"stream disconnected"),
    )

    def build_command(self, prompt: str, options: SendOptions) -> list[str]:
        argv = [self.binary, "exec", "--json", "--skip-git-repo-check"]
        if self.dangerous:
            argv.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            argv.extend(["--sandbox", "workspace-write"])
        argv.extend(self.args)
        model = options.model or self.model
        if model:
            argv.extend(["--model", model])
        argv.append(prompt)
        return argv

    def parse_output(self, stdout: str) -> str:
        messages: list[str] = []
        plain: list[str] = []
        for line in stdout.splitlines():
            stripped = line.strip()
            if not (stripped.startswith("{") and stripped.endswith("}")):
                plain.append(line)
                continue
            try:
                event = json.loads(stripped)
            except json.JSONDecodeError:
                plain.append(line)
                continue
            item = event.get("item") if isinstance(event, dict) else None
            if isinstance(item, dict) and item.get("type") == "agent_message":
                messages.append(str(item.get("text", "")))
            elif isinstance(event, dict) and event.get("type") == "agent_message":
                messages.append(str(event.get("message", "")))
        if messages:
            return "\n".join(messages)
        return "\n".join(plain)


class AiderAdapter(SubprocessProviderAdapter):
    """``aider --message`` in non-interactive mode."""

    provider_name = "aider"
    display_name = "Aider"
    default_binary = "aider"
    default_capabilities = ProviderCapabilities(
        reasoning_tiers=("mini", "standard"),
        context_window=128_000,
        supports_dangerous_mode=True,
        supports_sessions=True,
    )
    error_patterns = (
        (ErrorKind.RATE_LIMITED, r"litellm\.RateLimitError"),
        (ErrorKind.AUTH_EXPIRED, r"litellm\.AuthenticationError"),
        (ErrorKind.PERMANENT, r"litellm\.NotFoundError|litellm\.BadRequestError"),
        (ErrorKind.TRANSIENT, r"litellm\.(APIConnectionError|ServiceUnavailableError|Timeout)"),
    )

    def build_command(self, prompt: str, options: SendOptions) -> list[str]:
        argv = [self.binary, "--yes-always", "--no-auto-commits", "--no-pretty", *self.args]
        model = options.model or self.model
        if model:
            argv.extend(["--model", model])
        if options.session:
            argv.append("--restore-chat-history")
        argv.extend(["--message", prompt])
        return argv
