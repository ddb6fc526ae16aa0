"""Tests for the in-process event channel."""

import pytest

from ventylab.progress.events import EventChannel, EventTypes


@pytest.mark.asyncio
async def test_handlers_run_in_subscription_order() -> None:
    channel = EventChannel()
    calls = []

    async def async_handler(detail):
        calls.append(("async", detail["n"]))

    channel.subscribe(EventTypes.PROGRESS_UPDATED, lambda detail: calls.append(("sync", detail["n"])))
    channel.subscribe(EventTypes.PROGRESS_UPDATED, async_handler)

    delivered = await channel.publish(EventTypes.PROGRESS_UPDATED, {"n": 1})

    assert delivered == 2
    assert calls == [("sync", 1), ("async", 1)]


@pytest.mark.asyncio
async def test_failing_handler_is_logged_and_skipped(caplog) -> None:
    channel = EventChannel()
    calls = []

    def broken(_detail):
        raise RuntimeError("boom")

    channel.subscribe("lesson-progress", broken)
    channel.subscribe("lesson-progress", lambda detail: calls.append(detail))

    delivered = await channel.publish("lesson-progress", {"positionSeconds": 5})

    assert delivered == 1
    assert calls == [{"positionSeconds": 5}]
    assert "Handler for 'lesson-progress' failed" in caplog.text


@pytest.mark.asyncio
async def test_unsubscribe() -> None:
    channel = EventChannel()
    calls = []
    unsubscribe = channel.subscribe("sync-status", calls.append)

    await channel.publish("sync-status", {"status": "saving"})
    unsubscribe()
    unsubscribe()
    await channel.publish("sync-status", {"status": "saved"})

    assert calls == [{"status": "saving"}]
    assert channel.subscriber_count("sync-status") == 0


@pytest.mark.asyncio
async def test_publish_without_subscribers() -> None:
    assert await EventChannel().publish("nobody-listens") == 0
