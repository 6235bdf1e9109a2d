"""Scripted in-process backend for tests and dry runs."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from forgeloop.errors import CancellationError
from forgeloop.providers.base import (
    COMPLETION_MARKER,
    AdapterResponse,
    BaseProviderAdapter,
    ProviderCapabilities,
    SendOptions,
)

Scripted = AdapterResponse | BaseException | str
ResponseFn = Callable[[str, SendOptions], Awaitable[AdapterResponse]]


def _as_response(item: str | AdapterResponse, name: str) -> AdapterResponse:
    if isinstance(item, AdapterResponse):
        return item
    return AdapterResponse(
        output=item,
        completed=COMPLETION_MARKER in item,
        provider=name,
    )


class MockProviderAdapter(BaseProviderAdapter):
    """Replays scripted responses in order, then ``default_response``.

    Scripted exceptions are raised instead of returned. With ``hang=True``
    every call blocks until :meth:`terminate` or :meth:`release`.
    """

    provider_name = "mock"
    display_name = "Mock"

    def __init__(
        self,
        responses: Iterable[Scripted] = (),
        *,
        name: str = "mock",
        response_fn: ResponseFn | None = None,
        default_response: Scripted = f"done\n{COMPLETION_MARKER}",
        delay: float = 0.0,
        hang: bool = False,
        is_available: bool = True,
        capabilities: ProviderCapabilities | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name=name, capabilities=capabilities, **kwargs)
        self.responses: list[Scripted] = list(responses)
        self.response_fn = response_fn
        self.default_response = default_response
        self.delay = delay
        self.hang = hang
        self.is_available = is_available
        self.call_history: list[tuple[str, SendOptions]] = []
        self.terminated = False
        self._release = asyncio.Event()
        self._index = 0

    @property
    def call_count(self) -> int:
        return len(self.call_history)

    @property
    def prompts(self) -> list[str]:
        return [prompt for prompt, _ in self.call_history]

    def available(self) -> bool:
        return self.is_available

    def add_response(self, item: Scripted) -> None:
        self.responses.append(item)

    def release(self) -> None:
        self._release.set()

    async def send(self, prompt: str, options: SendOptions | None = None) -> AdapterResponse:
        options = options or SendOptions()
        self.call_history.append((prompt, options))
        self.activity.start()
        if self.hang:
            await self._release.wait()
            if self.terminated:
                raise CancellationError(f"{self.name}: backend terminated")
        elif self.delay:
            await asyncio.sleep(self.delay)
        self.activity.record_activity()

        if self.response_fn is not None:
            return await self.response_fn(prompt, options)

        if self._index < len(self.responses):
            item = self.responses[self._index]
            self._index += 1
        else:
            item = self.default_response

        if isinstance(item, BaseException):
            self.activity.mark_failed()
            raise item
        self.activity.mark_completed()
        return _as_response(item, self.name)

    async def terminate(self) -> None:
        self.terminated = True
        self._release.set()
