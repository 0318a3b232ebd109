"""Periodic asyncio timers.

A :class:`PeriodicTask` awaits its target to completion before scheduling the
next run, so runs of the same timer never overlap. When a run takes longer
than the interval the next one starts immediately after it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .errors import AgentError

_LOGGER = logging.getLogger(__name__)

ErrorCallback = Callable[[BaseException], None]


class PeriodicTask:
    def __init__(
        self,
        interval_seconds: float,
        target: Callable[[], Awaitable[Any]],
        name: str,
        *,
        run_immediately: bool = True,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self.target = target
        self.name = name
        self.run_immediately = run_immediately
        self.on_error = on_error
        self.runs = 0
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        return self._task

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            pass

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        if not self.run_immediately:
            await self._wait(self.interval_seconds)
        while not self._stop_event.is_set():
            started = loop.time()
            try:
                await self.target()
            except AgentError as exc:
                _LOGGER.warning("%s run failed: %s", self.name, exc)
            except Exception as exc:
                _LOGGER.exception("%s run raised an unexpected error", self.name)
                if self.on_error is not None:
                    self.on_error(exc)
            finally:
                self.runs += 1
            await self._wait(self.interval_seconds - (loop.time() - started))
        _LOGGER.debug("%s stopped after %d runs", self.name, self.runs)

    async def stop(self, grace_seconds: float = 10.0) -> None:
        """Stop scheduling; give an in-flight run ``grace_seconds`` before cancelling it."""

        self._stop_event.set()
        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=grace_seconds)
        except asyncio.TimeoutError:
            _LOGGER.warning("%s did not finish within %.1fs; cancelling", self.name, grace_seconds)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


__all__ = ["PeriodicTask"]
