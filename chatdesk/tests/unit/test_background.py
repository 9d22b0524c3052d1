from __future__ import annotations

import asyncio

import pytest

from chatdesk.services.background import BackgroundDispatcher
from chatdesk.services.telemetry import counter_value


async def _boom() -> None:
    raise RuntimeError("side effect failed")


@pytest.mark.asyncio
async def test_successful_tasks_finish_on_drain() -> None:
    dispatcher = BackgroundDispatcher()
    results: list[str] = []

    async def work() -> None:
        await asyncio.sleep(0)
        results.append("done")

    dispatcher.dispatch("work", work())
    assert dispatcher.pending == 1
    await dispatcher.drain()
    assert results == ["done"]
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_failures_are_counted_and_reported() -> None:
    reported: list[tuple[str, str]] = []
    dispatcher = BackgroundDispatcher(error_sink=lambda name, exc: reported.append((name, str(exc))))

    dispatcher.dispatch("lead_capture", _boom())
    await dispatcher.drain()

    assert reported == [("lead_capture", "side effect failed")]
    assert counter_value("background_task_failures_total") == 1
    assert counter_value("background_task_failures_lead_capture") == 1


@pytest.mark.asyncio
async def test_drain_timeout_cancels_stragglers() -> None:
    dispatcher = BackgroundDispatcher()
    task = dispatcher.dispatch("slow", asyncio.sleep(10))
    await dispatcher.drain(timeout_s=0.01)
    await asyncio.gather(task, return_exceptions=True)
    assert task.cancelled()
    assert counter_value("background_task_failures_total") == 0
