"""Server-sent event transport for incremental task output.

``relay`` turns a finite, lazy sequence of content increments into SSE
frames: one ``data:`` event per increment in production order, exactly one
terminal event (completed, failed or canceled) and the ``[DONE]`` sentinel.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Mapping
from typing import Any, Optional

from x402_query.errors import TaskTerminatedError

logger = logging.getLogger(__name__)

DONE_EVENT = "data: [DONE]\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

Event = Mapping[str, Any]


class CancellationSignal:
    """Explicit, one-way cancellation flag shared by a task and its stream."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "canceled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def format_event(data: Event) -> str:
    return f"data: {json.dumps(data, separators=(',', ':'))}\n\n"


async def _abandon(increments: AsyncIterator[str]) -> None:
    aclose = getattr(increments, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        # The producer may not support interruption; its remaining output is discarded.
        logger.debug("Producer did not close cleanly", exc_info=True)


async def relay(
    increments: AsyncIterable[str],
    on_increment: Callable[[str], Awaitable[Event]],
    on_complete: Callable[[str], Awaitable[Event]],
    on_error: Callable[[Exception], Awaitable[Event]],
    on_cancel: Optional[Callable[[str], Awaitable[Event]]] = None,
    signal: Optional[CancellationSignal] = None,
) -> AsyncIterator[str]:
    """Relay producer increments to an SSE channel.

    ``on_increment`` maps each increment to its event, ``on_complete`` gets
    the concatenated output once the producer is exhausted. When ``signal``
    fires (or the task turns out to be terminal already) the producer is
    abandoned and ``on_cancel`` supplies the terminal event. If the consumer
    closes this generator early nothing more is emitted and the producer is
    abandoned.
    """
    signal = signal or CancellationSignal()
    iterator = aiter(increments)
    produced: list[str] = []
    terminal: Optional[Event] = None

    try:
        while True:
            if signal.cancelled:
                break
            try:
                chunk = await anext(iterator)
            except StopAsyncIteration:
                break
            if signal.cancelled:
                break
            produced.append(chunk)
            try:
                event = await on_increment(chunk)
            except TaskTerminatedError:
                signal.cancel("task terminated")
                break
            yield format_event(event)

        full = "".join(produced)
        if not signal.cancelled:
            try:
                terminal = await on_complete(full)
            except TaskTerminatedError:
                signal.cancel("task terminated")
        if signal.cancelled:
            logger.info("Stream canceled after %d increments: %s", len(produced), signal.reason)
            await _abandon(iterator)
            if on_cancel is not None:
                terminal = await on_cancel(full)
            else:
                terminal = {"done": True, "canceled": True}
    except (asyncio.CancelledError, GeneratorExit):
        logger.warning("Stream client disconnected after %d increments", len(produced))
        await _abandon(iterator)
        raise
    except Exception as e:
        logger.exception("Stream failed after %d increments", len(produced))
        await _abandon(iterator)
        terminal = await on_error(e)

    yield format_event(terminal)
    yield DONE_EVENT
