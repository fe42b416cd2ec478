"""Sliding-deadline wrapper for async iterators of model events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_timeout(
    source: AsyncIterable[T],
    timeout: float,
    on_timeout: Callable[[], None] | None = None,
) -> AsyncIterator[T]:
    """Yield items from ``source``, failing if one takes longer than ``timeout``.

    The deadline is per item and restarts after every item, so a long but
    steadily progressing stream is never cut off. On timeout ``on_timeout``
    runs before ``TimeoutError`` is raised. The source is always closed, on
    exhaustion, timeout, or when the consumer stops early; wrap the call in
    ``contextlib.aclosing`` to make the latter deterministic.
    """
    iterator = aiter(source)
    try:
        while True:
            try:
                item = await asyncio.wait_for(anext(iterator), timeout)
            except StopAsyncIteration:
                return
            except TimeoutError:
                if on_timeout is not None:
                    try:
                        on_timeout()
                    except Exception:
                        logger.exception("on_timeout hook failed")
                raise TimeoutError(f"Operation timed out after {timeout:g}s") from None
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception:
                logger.error("Failed to close wrapped async iterator", exc_info=True)
