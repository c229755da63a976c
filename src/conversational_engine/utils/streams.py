"""
Fan-in of several async generators into one async generator.

Each source runs in its own task and pushes into a single bounded queue, so
whichever source has an item ready is delivered next and a slow consumer makes
the sources wait on 'put' instead of buffering without limit. The first
exception raised by a source cancels the others and is re-raised to the
consumer. Closing the merged generator early cancels every source task.
"""

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator, Sequence
from typing import Any, TypeVar

T = TypeVar("T")

_ITEM = "item"
_ERROR = "error"
_DONE = "done"


async def merge_async_generators(
    sources: Sequence[AsyncIterator[T]], max_buffer: int = 1
) -> AsyncGenerator[T, None]:
    queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=max_buffer)

    async def pump(source: AsyncIterator[T]) -> None:
        try:
            async for item in source:
                await queue.put((_ITEM, item))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put((_ERROR, e))
            return
        await queue.put((_DONE, None))

    tasks = [asyncio.create_task(pump(source)) for source in sources]
    remaining = len(tasks)
    try:
        while remaining:
            kind, value = await queue.get()
            if kind == _DONE:
                remaining -= 1
            elif kind == _ERROR:
                raise value
            else:
                yield value
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for source in sources:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()
