"""Timer-driven auto capture: feeds camera frames into the quality gate on a fixed cadence."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import numpy as np

from staffclock.enrollment.capture import CaptureQualityGate, CaptureTransition

LOGGER = logging.getLogger("staffclock.enrollment.loop")

FrameSource = Callable[[], Union[Optional[np.ndarray], Awaitable[Optional[np.ndarray]]]]
TransitionCallback = Callable[[CaptureTransition], Any]


class AutoCaptureLoop:
    """Runs ``gate.tick`` every ``interval`` seconds until the session completes.

    At most one tick is in flight at a time; a tick requested while another is
    still running returns ``None`` without touching the gate. A failing frame
    source is reported through the gate as ``camera_not_ready`` and the loop
    keeps running.
    """

    def __init__(
        self,
        gate: CaptureQualityGate,
        frame_source: FrameSource,
        interval: Optional[float] = None,
        on_transition: Optional[TransitionCallback] = None,
    ) -> None:
        self.gate = gate
        self.frame_source = frame_source
        self.interval = gate.config.interval_sec if interval is None else float(interval)
        self.on_transition = on_transition
        self.paused = False
        self._in_flight = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _read_frame(self) -> Optional[np.ndarray]:
        frame = self.frame_source()
        if inspect.isawaitable(frame):
            frame = await frame
        return frame

    async def tick_once(self) -> Optional[CaptureTransition]:
        if self._in_flight:
            return None
        self._in_flight = True
        try:
            try:
                frame = await self._read_frame()
            except Exception as exc:
                LOGGER.warning("Frame source failed during auto capture: %s", exc)
                frame = None
            transition = self.gate.tick(frame)
        finally:
            self._in_flight = False
        if self.on_transition is not None:
            result = self.on_transition(transition)
            if inspect.isawaitable(result):
                await result
        return transition

    async def run(self) -> None:
        LOGGER.info("Auto capture started interval=%.2fs target=%d", self.interval, self.gate.session.target)
        while not self.gate.session.is_complete:
            await asyncio.sleep(self.interval)
            if self.paused or self.gate.session.is_complete:
                continue
            try:
                await self.tick_once()
            except Exception as exc:
                LOGGER.warning("Auto capture tick failed: %s", exc)
        LOGGER.info("Auto capture finished with %d samples", len(self.gate.session))

    def start(self) -> asyncio.Task:
        """Schedule ``run`` on the current event loop; idempotent while running."""
        if self.running:
            return self._task  # type: ignore[return-value]
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            LOGGER.debug("Auto capture task cancelled")

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    async def reset(self) -> asyncio.Task:
        """Drop all samples and re-arm the loop."""
        await self.cancel()
        self.gate.reset()
        self.paused = False
        return self.start()
