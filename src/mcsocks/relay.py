"""
mcsocks.relay - bidirectional byte relay between two streams.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .network import RELAY_BUFFER_SIZE, Stream
from .robustness import RelayError

logger = logging.getLogger(__name__)


@dataclass
class RelayStats:
    a_to_b: int = 0
    b_to_a: int = 0


async def pipe(
    src: Stream,
    dst: Stream,
    stats: RelayStats,
    direction: str,
    buffer_size: int = RELAY_BUFFER_SIZE,
) -> None:
    """Copy ``src`` into ``dst`` until EOF, counting bytes into ``stats.<direction>``."""
    while True:
        data = await src.reader.read(buffer_size)
        if not data:
            break
        dst.writer.write(data)
        await dst.writer.drain()
        setattr(stats, direction, getattr(stats, direction) + len(data))


async def relay(a: Stream, b: Stream, buffer_size: int = RELAY_BUFFER_SIZE) -> RelayStats:
    """
    Copy a→b and b→a concurrently until one direction ends.

    The first direction to hit EOF or an I/O error stops the other one and
    both streams are closed before returning. EOF is a normal end; an I/O
    error is raised as RelayError.
    """
    stats = RelayStats()
    tasks = (
        asyncio.create_task(pipe(a, b, stats, "a_to_b", buffer_size)),
        asyncio.create_task(pipe(b, a, stats, "b_to_a", buffer_size)),
    )
    try:
        done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.gather(a.close(), b.close(), return_exceptions=True)

    for task in tasks:
        if task in done and task.exception() is not None:
            error = task.exception()
            raise RelayError(error) from error

    logger.debug(f"Relay finished: {stats.a_to_b} bytes a->b, {stats.b_to_a} bytes b->a")
    return stats
