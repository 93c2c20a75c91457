"""Repeat-read controller built on a single read coroutine."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from idmctl.core.errors import NFCError, UnknownNFCError

LOGGER = logging.getLogger(__name__)

SuccessCallback = Callable[[str], Any]
ErrorCallback = Callable[[NFCError], Any]


class _PollingRun:
    def __init__(self) -> None:
        self.active = True
        self.wake = asyncio.Event()
        self.task: asyncio.Task[None] | None = None


class PollingController:
    """Runs ``read`` repeatedly, waiting ``interval_s`` after each attempt finishes.

    Stopping only cancels the wait for the next attempt. An attempt that is
    already running completes and reports its outcome first.
    """

    def __init__(self, read: Callable[[], Awaitable[str]], *, interval_s: float = 1.0) -> None:
        self._read = read
        self.interval_s = interval_s
        self._run: _PollingRun | None = None
        self._last_task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self._run is not None

    def start(self, on_success: SuccessCallback, on_error: ErrorCallback | None = None) -> None:
        if self._run is not None:
            LOGGER.warning("Polling is already running")
            return

        run = _PollingRun()
        previous = self._last_task
        run.task = asyncio.get_running_loop().create_task(
            self._loop(run, previous, on_success, on_error)
        )
        self._run = run
        self._last_task = run.task
        LOGGER.info("Polling started (interval %.3fs)", self.interval_s)

    def stop(self) -> None:
        run, self._run = self._run, None
        if run is None:
            return
        run.active = False
        run.wake.set()
        LOGGER.info("Polling stopped")

    async def wait_closed(self) -> None:
        """Wait until the most recently started loop has exited."""
        if self._last_task is not None:
            await self._last_task

    async def _loop(
        self,
        run: _PollingRun,
        previous: asyncio.Task[None] | None,
        on_success: SuccessCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        if previous is not None and not previous.done():
            # A stopped run may still be finishing its last attempt.
            await asyncio.wait({previous})
        while run.active:
            await self._attempt(on_success, on_error)
            if not run.active:
                break
            try:
                await asyncio.wait_for(run.wake.wait(), self.interval_s)
            except TimeoutError:
                pass

    async def _attempt(self, on_success: SuccessCallback, on_error: ErrorCallback | None) -> None:
        try:
            idm = await self._read()
        except Exception as exc:
            error = exc if isinstance(exc, NFCError) else UnknownNFCError(
                "Error while polling", cause=exc
            )
            if on_error is None:
                LOGGER.error("Polling error: [%s] %s", error.code.value, error.message)
                return
            await _notify(on_error, error)
            return
        await _notify(on_success, idm)


async def _notify(callback: Callable[[Any], Any], value: Any) -> None:
    try:
        result = callback(value)
        if inspect.isawaitable(result):
            await result
    except Exception:
        LOGGER.exception("Polling callback %r raised", callback)
