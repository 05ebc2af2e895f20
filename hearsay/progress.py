"""Progress notifications flowing from the pipeline to whoever presents them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

ProgressCallback = Callable[[float], None]

# Stages after which a run publishes nothing more.
TERMINAL_STAGES = frozenset({"done", "failed"})


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    stage: str
    label: str
    fraction: float


class ProgressChannel:
    """Fan-out of :class:`ProgressEvent` objects.

    Observers can subscribe a callback, poll :attr:`snapshot`, or iterate
    :meth:`stream`. A stream ends after the terminal event of a run or when
    the channel is closed.
    """

    def __init__(self) -> None:
        self._subscribers: List[Callable[[ProgressEvent], None]] = []
        self._queues: List[asyncio.Queue] = []
        self._snapshot: Optional[ProgressEvent] = None
        self._closed = False

    @property
    def snapshot(self) -> Optional[ProgressEvent]:
        return self._snapshot

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, stage: str, label: str, fraction: float) -> ProgressEvent:
        event = ProgressEvent(stage=stage, label=label, fraction=min(1.0, max(0.0, float(fraction))))
        self._snapshot = event
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as exc:
                logging.debug("Progress subscriber failed: %s", exc)
        for queue in self._queues:
            queue.put_nowait(event)
        return event

    def subscribe(self, callback: Callable[[ProgressEvent], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def close(self) -> None:
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[ProgressEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            if self._closed:
                return
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
                if event.stage in TERMINAL_STAGES:
                    return
        finally:
            self._queues.remove(queue)


class ProgressThrottle:
    """Forward a fraction only once it has advanced by ``min_step``."""

    def __init__(self, callback: Optional[ProgressCallback], min_step: float = 0.01) -> None:
        self._callback = callback
        self._min_step = min_step
        self._last: Optional[float] = None

    @property
    def last(self) -> Optional[float]:
        return self._last

    def __call__(self, fraction: float) -> None:
        fraction = min(1.0, max(0.0, fraction))
        if self._last is not None:
            if fraction <= self._last:
                return
            # Completion is always reported.
            if fraction - self._last < self._min_step - 1e-9 and fraction < 1.0:
                return
        self._last = fraction
        if self._callback is not None:
            self._callback(fraction)
