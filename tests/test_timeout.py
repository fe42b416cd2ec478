from __future__ import annotations

import asyncio
from contextlib import aclosing

import pytest

from switchboard.llm.timeout import with_timeout


class Source:
    """Async generator factory that records how often it was released."""

    def __init__(self, delays: list[float]):
        self.delays = delays
        self.released = 0

    async def items(self):
        try:
            for i, delay in enumerate(self.delays):
                await asyncio.sleep(delay)
                yield i
        finally:
            self.released += 1


async def _collect(source: Source, timeout: float, on_timeout=None) -> list[int]:
    out: list[int] = []
    async with aclosing(with_timeout(source.items(), timeout, on_timeout)) as items:
        async for item in items:
            out.append(item)
    return out


def test_yields_every_item_in_order():
    source = Source([0, 0, 0])

    assert asyncio.run(_collect(source, 1.0)) == [0, 1, 2]
    assert source.released == 1


def test_deadline_slides_after_each_item():
    # Total runtime exceeds the timeout, but no single gap does.
    source = Source([0.03, 0.03, 0.03, 0.03])

    assert asyncio.run(_collect(source, 0.08)) == [0, 1, 2, 3]


def test_stall_raises_after_on_timeout_and_releases_once():
    source = Source([0, 5])
    fired: list[bool] = []

    with pytest.raises(TimeoutError, match="Operation timed out after 0.05s"):
        asyncio.run(_collect(source, 0.05, on_timeout=lambda: fired.append(True)))

    assert fired == [True]
    assert source.released == 1


def test_early_consumer_exit_releases_source():
    source = Source([0, 0, 0, 0])

    async def take_first() -> int:
        async with aclosing(with_timeout(source.items(), 1.0)) as items:
            async for item in items:
                return item
        return -1

    assert asyncio.run(take_first()) == 0
    assert source.released == 1


def test_source_error_propagates_and_releases():
    released: list[bool] = []

    async def failing():
        try:
            yield 1
            raise ValueError("boom")
        finally:
            released.append(True)

    async def consume():
        async with aclosing(with_timeout(failing(), 1.0)) as items:
            return [item async for item in items]

    with pytest.raises(ValueError, match="boom"):
        asyncio.run(consume())
    assert released == [True]


def test_failing_on_timeout_hook_does_not_mask_the_timeout(caplog):
    source = Source([0, 5])

    def hook():
        raise RuntimeError("hook broke")

    with pytest.raises(TimeoutError, match="Operation timed out after 0.05s"):
        asyncio.run(_collect(source, 0.05, on_timeout=hook))

    assert source.released == 1
    assert "on_timeout hook failed" in caplog.text
