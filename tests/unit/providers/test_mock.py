"""Tests for MockProviderAdapter."""

from __future__ import annotations

import asyncio

import pytest

from forgeloop.errors import CancellationError
from forgeloop.providers.base import COMPLETION_MARKER, AdapterResponse, SendOptions
from forgeloop.providers.mock import MockProviderAdapter


class TestMockProviderAdapter:
    @pytest.mark.asyncio
    async def test_default_response_signals_completion(self) -> None:
        response = await MockProviderAdapter().send("hi")
        assert COMPLETION_MARKER in response.output
        assert response.completed is True

    @pytest.mark.asyncio
    async def test_scripted_then_default(self) -> None:
        adapter = MockProviderAdapter(["first"], default_response="later")
        assert (await adapter.send("a")).output == "first"
        assert (await adapter.send("b")).output == "later"
        assert adapter.prompts == ["a", "b"]

    @pytest.mark.asyncio
    async def test_call_history_keeps_options(self) -> None:
        adapter = MockProviderAdapter()
        opts = SendOptions(model="m")
        await adapter.send("p", opts)
        assert adapter.call_history == [("p", opts)]

    @pytest.mark.asyncio
    async def test_response_fn(self) -> None:
        async def echo(prompt: str, options: SendOptions) -> AdapterResponse:
            return AdapterResponse(output=prompt.upper())

        adapter = MockProviderAdapter(response_fn=echo)
        assert (await adapter.send("abc")).output == "ABC"

    @pytest.mark.asyncio
    async def test_hang_until_terminated(self) -> None:
        adapter = MockProviderAdapter(hang=True)
        task = asyncio.create_task(adapter.send("p"))
        await asyncio.sleep(0.01)
        assert not task.done()
        await adapter.terminate()
        with pytest.raises(CancellationError):
            await task

    @pytest.mark.asyncio
    async def test_release_lets_hung_call_finish(self) -> None:
        adapter = MockProviderAdapter(["released"], hang=True)
        task = asyncio.create_task(adapter.send("p"))
        await asyncio.sleep(0.01)
        adapter.release()
        assert (await task).output == "released"
