from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from chatdesk.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ErrorSink = Callable[[str, BaseException], None]


def _log_error(name: str, exc: BaseException) -> None:
    logger.error("background_task_failed task=%s", name, exc_info=exc)


class BackgroundDispatcher:
    """Runs side effects off the response path and reports their failures."""

    def __init__(self, *, error_sink: ErrorSink | None = None) -> None:
        self._error_sink = error_sink or _log_error
        # Strong references keep pending tasks from being garbage collected mid-flight.
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, name: str, coro: Awaitable[object]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(f"chatdesk:{name}")
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._on_done(name, done))
        return task

    def _on_done(self, name: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        increment_counter("background_task_failures_total")
        increment_counter(f"background_task_failures_{name}")
        try:
            self._error_sink(name, exc)
        except Exception:  # noqa: BLE001 - a broken sink must not crash the event loop callback
            logger.exception("background_error_sink_failed task=%s", name)

    async def drain(self, timeout_s: float | None = None) -> None:
        # Wait for in-flight side effects; used at shutdown and by tests.
        if not self._tasks:
            return
        pending = list(self._tasks)
        _done, not_done = await asyncio.wait(pending, timeout=timeout_s)
        for task in not_done:
            logger.warning("background_task_abandoned task=%s", task.get_name())
            task.cancel()
