"""Tick-driven sampling loop."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, AsyncIterator, Optional, Protocol

from autoexposure.core.asyncio_utils import create_logged_task
from autoexposure.core.logging_utils import LoggerLike, ensure_structured_logger
from autoexposure.exposure.apl import APLEstimator, build_estimator
from autoexposure.exposure.controller import ErrorCallback, ExposureController
from autoexposure.exposure.device import FrameSource
from autoexposure.exposure.errors import DegenerateFrame, ExposureError, TickFailure
from autoexposure.exposure.window import WindowSelector


class TickOutcome(Enum):
    NOT_READY = "not_ready"
    GATED = "gated"
    EMPTY_WINDOW = "empty_window"
    SAMPLED = "sampled"
    FAILED = "failed"


class TickSource(Protocol):
    """Anything that yields once per display refresh (or timer period)."""

    def __aiter__(self) -> AsyncIterator[float]:
        ...


class IntervalTickSource:
    """Periodic timer aligned to the event loop clock.

    Late ticks are not replayed; the next deadline is rescheduled from now.
    """

    def __init__(self, hz: float = 60.0) -> None:
        if hz <= 0:
            raise ValueError("hz must be positive")
        self.period = 1.0 / hz

    async def __aiter__(self) -> AsyncIterator[float]:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while True:
            deadline += self.period
            delay = deadline - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            else:
                deadline = loop.time()
                await asyncio.sleep(0)
            yield loop.time()


class QueueTickSource:
    """Ticks pushed by the host, e.g. from its own render loop."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[float]] = asyncio.Queue()

    def push(self, timestamp: float = 0.0) -> None:
        self._queue.put_nowait(timestamp)

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[float]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


class Scheduler:
    """Runs one sample-and-control attempt per tick."""

    def __init__(
        self,
        controller: ExposureController,
        frame_source: FrameSource,
        tick_source: TickSource,
        *,
        window_selector: Optional[WindowSelector] = None,
        estimator: Optional[APLEstimator] = None,
        logger: LoggerLike = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        settings = controller.settings
        self._controller = controller
        self._frames = frame_source
        self._ticks = tick_source
        self._select_window = window_selector or settings.resolve_window_selector()
        self._estimator = estimator or build_estimator(settings.num_samples, settings.seed)
        self._logger = ensure_structured_logger(logger, fallback_name=__name__)
        self._on_error = on_error
        self._task: Optional[asyncio.Task[Any]] = None
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[Any]:
        if self.running:
            return self._task
        self._task = create_logged_task(self.run(), logger=self._logger, context="exposure-scheduler")
        return self._task

    async def stop(self) -> None:
        """Stop scheduling ticks. A dispatched device apply keeps running."""

        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._logger.debug("Scheduler stopped after %d ticks", self.tick_count)

    async def run(self) -> None:
        async for _ in self._ticks:
            self.tick()

    def tick(self, now: Optional[float] = None) -> TickOutcome:
        """One synchronous attempt; ``now`` defaults to the controller clock. Never raises."""

        self.tick_count += 1
        try:
            return self._tick(now)
        except DegenerateFrame as exc:
            self._logger.debug("Skipping degenerate frame: %s", exc)
            return TickOutcome.EMPTY_WINDOW
        except Exception as exc:
            self._logger.exception("Exposure tick failed")
            self._report(exc)
            return TickOutcome.FAILED

    def _tick(self, now: Optional[float]) -> TickOutcome:
        frames = self._frames
        if not frames.is_ready():
            return TickOutcome.NOT_READY
        if not self._controller.wants_sample(now):
            return TickOutcome.GATED

        frame_width, frame_height = frames.frame_width, frames.frame_height
        window = self._select_window(frame_width, frame_height)
        if not window.is_empty and not window.fits(frame_width, frame_height):
            self._logger.warning("Window %s exceeds %dx%d frame; clipping", window, frame_width, frame_height)
            window = window.clipped(frame_width, frame_height)
        if window.is_empty:
            return TickOutcome.EMPTY_WINDOW

        pixels = frames.read_region(window)
        apl = self._estimator.estimate(pixels, window.width, window.height)
        self._controller.update(apl, now)
        return TickOutcome.SAMPLED

    def _report(self, exc: Exception) -> None:
        if self._on_error is None:
            return
        error = exc if isinstance(exc, ExposureError) else TickFailure(str(exc), cause=exc)
        try:
            self._on_error(error)
        except Exception:
            self._logger.exception("Error callback raised")


__all__ = ["IntervalTickSource", "QueueTickSource", "Scheduler", "TickOutcome", "TickSource"]
