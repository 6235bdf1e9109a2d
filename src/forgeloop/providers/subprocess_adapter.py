"""Adapters that drive a backend CLI as a child process.

Each invocation runs in its own session / process group so that a timeout
or a forced cancel can kill the backend together with anything it spawned,
without touching sibling sessions or the controller.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import shutil
import signal
import time
from collections.abc import Sequence
from typing import Any

from forgeloop.errors import ErrorKind, ProviderError, ProviderTimeoutError
from forgeloop.providers.base import AdapterResponse, BaseProviderAdapter, SendOptions
from forgeloop.providers.timeouts import resolve_timeout

logger = logging.getLogger(__name__)

# Nested agent CLIs refuse to start when they detect a parent session.
STRIP_ENV_VARS = frozenset({
    "CLAUDECODE",
    "CLAUDE_CODE_ENTRYPOINT",
    "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
})

PROMPT_PLACEHOLDER = "{prompt}"
TERMINATE_GRACE_SECONDS = 5.0
ERROR_TAIL_CHARS = 2000
# Read size per chunk. A single JSON event line may be larger than this.
READ_CHUNK_BYTES = 65536

_TOKENS_RE = re.compile(r"(?:tokens|total_tokens)\s*[:=]\s*(\d+)", re.IGNORECASE)
_COST_RE = re.compile(r"(?:cost|usd)\s*[:=]\s*\$?([0-9]*\.?[0-9]+)", re.IGNORECASE)


def extract_usage(text: str) -> tuple[int, float]:
    """Best-effort token / cost scrape from lines like ``tokens=1234 cost=0.12``."""
    tokens = 0
    cost = 0.0
    for match in _TOKENS_RE.finditer(text):
        tokens = int(match.group(1))
    for match in _COST_RE.finditer(text):
        cost = float(match.group(1))
    return tokens, cost


class SubprocessProviderAdapter(BaseProviderAdapter):
    """Runs ``binary`` once per :meth:`send` and maps its exit status.

    The prompt goes to argv (``{prompt}`` placeholder or appended) unless
    ``prompt_via_stdin`` is set.
    """

    provider_name = "command"
    display_name = "Command"
    default_binary = ""
    prompt_via_stdin = False

    def __init__(
        self,
        *,
        binary: str | None = None,
        args: Sequence[str] = (),
        model: str = "",
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        dangerous: bool = False,
        prompt_via_stdin: bool | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.binary = binary or self.default_binary
        self.args = list(args)
        self.model = model
        self.timeout = timeout
        self.env = dict(env or {})
        self.cwd = cwd
        self.dangerous = dangerous
        if prompt_via_stdin is not None:
            self.prompt_via_stdin = prompt_via_stdin
        self._processes: set[asyncio.subprocess.Process] = set()

    def available(self) -> bool:
        return bool(self.binary) and shutil.which(self.binary) is not None

    @property
    def running(self) -> bool:
        return any(proc.returncode is None for proc in self._processes)

    # Command construction

    def build_command(self, prompt: str, options: SendOptions) -> list[str]:
        argv = [self.binary, *self.args]
        model = options.model or self.model
        if model and "--model" not in argv:
            argv.extend(["--model", model])
        if self.prompt_via_stdin:
            return argv
        if PROMPT_PLACEHOLDER in argv:
            return [prompt if arg == PROMPT_PLACEHOLDER else arg for arg in argv]
        argv.append(prompt)
        return argv

    def build_env(self, options: SendOptions) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in STRIP_ENV_VARS}
        env.update(self.env)
        env.update(options.env)
        return env

    def parse_output(self, stdout: str) -> str:
        return stdout

    # Execution

    async def send(self, prompt: str, options: SendOptions | None = None) -> AdapterResponse:
        options = options or SendOptions()
        if not self.binary:
            raise ProviderError(
                f"{self.name}: no binary configured",
                kind=ErrorKind.PERMANENT,
                provider=self.name,
            )
        timeout = resolve_timeout(
            self.name,
            explicit=options.timeout if options.timeout is not None else self.timeout,
            task_type=options.task_type,
            tier=options.tier,
        )
        argv = self.build_command(prompt, options)
        payload = prompt.encode("utf-8") if self.prompt_via_stdin else None

        logger.debug("Starting %s (timeout=%.0fs, prompt=%d chars)", self.name, timeout, len(prompt))
        self.activity.start()
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if payload is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.cwd or self.cwd,
                env=self.build_env(options),
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            self.activity.mark_failed()
            raise ProviderError(
                f"{self.name}: command not found: {self.binary}",
                kind=ErrorKind.PERMANENT,
                provider=self.name,
            ) from exc

        self._processes.add(proc)
        try:
            stdout, stderr = await asyncio.wait_for(self._communicate(proc, payload), timeout)
        except TimeoutError:
            await self._kill(proc)
            self.activity.mark_failed()
            raise ProviderTimeoutError(self.name, timeout) from None
        except BaseException:
            await self._kill(proc)
            raise
        finally:
            self._processes.discard(proc)

        duration = time.monotonic() - started
        if proc.returncode != 0:
            self.activity.mark_failed()
            raise self._error_from_exit(proc.returncode, stdout, stderr)

        self.activity.mark_completed()
        output = self.parse_output(stdout)
        tokens, cost = extract_usage(stdout + "\n" + stderr)
        return AdapterResponse(
            output=output,
            completed=self.detect_completion(output),
            tokens=tokens,
            cost=cost,
            duration=duration,
            exit_code=proc.returncode,
            provider=self.name,
            metadata={"stderr_tail": self.redact_secrets(stderr[-ERROR_TAIL_CHARS:])},
        )

    def _error_from_exit(self, returncode: int | None, stdout: str, stderr: str) -> ProviderError:
        combined = "\n".join(part for part in (stderr.strip(), stdout.strip()) if part)
        tail = combined[-ERROR_TAIL_CHARS:]
        raw = f"{self.name} failed with exit code {returncode}: {tail}"
        # Classify before redaction so patterns see the backend's own wording.
        kind = self.classify_error(raw)
        message = self.redact_secrets(raw)
        reset_at = self.parse_reset_time(combined) if kind is ErrorKind.RATE_LIMITED else None
        return ProviderError(
            message,
            kind=kind,
            provider=self.name,
            exit_code=returncode,
            reset_at=reset_at,
        )

    async def _communicate(
        self,
        proc: asyncio.subprocess.Process,
        payload: bytes | None,
    ) -> tuple[str, str]:
        if payload is not None and proc.stdin is not None:
            proc.stdin.write(payload)
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await proc.stdin.drain()
            proc.stdin.close()
        stdout, stderr = await asyncio.gather(
            self._pump_stream(proc.stdout),
            self._pump_stream(proc.stderr),
        )
        await proc.wait()
        return stdout, stderr

    async def _pump_stream(self, stream: asyncio.StreamReader | None) -> str:
        if stream is None:
            return ""
        chunks: list[bytes] = []
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            self.activity.record_activity()
            chunks.append(chunk)
        return b"".join(chunks).decode("utf-8", errors="replace")

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGKILL)
            await proc.wait()

    async def terminate(self) -> None:
        """Kill every in-flight invocation of this adapter."""
        procs = [proc for proc in self._processes if proc.returncode is None]
        if procs:
            logger.info("Terminating %d %s process(es)", len(procs), self.name)
        await asyncio.gather(*(self._kill(proc) for proc in procs))
