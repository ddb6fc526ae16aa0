"""Tests for the local progress store."""

from datetime import UTC, datetime, timedelta

import pytest

from ventylab.progress.exceptions import InvalidProgressUpdateError
from ventylab.progress.models import LessonProgress
from ventylab.progress.store import LocalProgressStore


T0 = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


@pytest.mark.parametrize("value", [-2.0, -0.01, 0.0, 0.25, 0.999, 1.0, 1.5, 42.0, float("nan")])
def test_stored_progress_reads_back_clamped(store, value) -> None:
    store.update(lesson_id="l1", progress=value)

    expected = 0.0 if value != value else max(0.0, min(1.0, value))
    assert store.get("l1").progress == expected


def test_get_unknown_lesson_returns_zero_record(store) -> None:
    record = store.get("missing")

    assert record.lesson_id == "missing"
    assert record.progress == 0.0
    assert record.position_seconds == 0
    assert "missing" not in store


def test_get_returns_a_copy(store) -> None:
    store.update(lesson_id="l1", progress=0.5)
    record = store.get("l1")
    record.progress = 1.0

    assert store.get("l1").progress == 0.5


def test_update_merges_and_stamps_client_time() -> None:
    store = LocalProgressStore(clock=lambda: T0)
    store.update(lesson_id="l1", module_id="m1", progress=0.2)
    store.update({"lesson_id": "l1", "position_seconds": 90.4})

    record = store.get("l1")
    assert record.progress == 0.2
    assert record.position_seconds == 90
    assert record.module_id == "m1"
    assert record.client_updated_at == T0


def test_update_falls_back_to_current_module(store) -> None:
    store.set_current_lesson("l1", "m7")
    store.update(lesson_id="l2", progress=0.1)

    assert store.get("l2").module_id == "m7"
    assert store.current_lesson_id == "l1"


def test_update_rejects_missing_lesson_id(store) -> None:
    with pytest.raises(InvalidProgressUpdateError):
        store.update(progress=0.5)


def test_update_rejects_unknown_fields(store) -> None:
    with pytest.raises(InvalidProgressUpdateError, match="favourite_colour"):
        store.update(lesson_id="l1", favourite_colour="blue")


def test_older_server_record_does_not_overwrite_local() -> None:
    store = LocalProgressStore(clock=lambda: T0)
    store.update(lesson_id="l1", module_id="m1", progress=0.8)

    stale = LessonProgress(lesson_id="l1", progress=0.1, server_updated_at=T0 - timedelta(minutes=5))
    assert store.apply_server_record(stale) is False
    assert store.get("l1").progress == 0.8


def test_authoritative_server_record_skips_timestamp_check() -> None:
    store = LocalProgressStore(clock=lambda: T0)
    store.update(lesson_id="l1", module_id="m1", progress=0.95, position_seconds=40)

    confirmed = LessonProgress(
        lesson_id="l1", progress=1.0, is_completed=True, server_updated_at=T0 - timedelta(seconds=1)
    )
    assert store.apply_server_record(confirmed, authoritative=True) is True

    record = store.get("l1")
    assert record.progress == 1.0
    assert record.is_completed is True
    assert record.position_seconds == 40
    assert record.server_updated_at == T0 - timedelta(seconds=1)


def test_newer_server_record_wins_but_keeps_position_and_completion() -> None:
    store = LocalProgressStore(clock=lambda: T0)
    store.update(lesson_id="l1", module_id="m1", progress=0.8, is_completed=True, position_seconds=125)

    newer = LessonProgress(lesson_id="l1", progress=0.9, position_seconds=60, server_updated_at=T0 + timedelta(seconds=1))
    assert store.apply_server_record(newer) is True

    record = store.get("l1")
    assert record.progress == 0.9
    assert record.is_completed is True
    assert record.position_seconds == 125
    assert record.module_id == "m1"
    assert record.server_updated_at == T0 + timedelta(seconds=1)


def test_aggregate_uses_module_completed_at(store) -> None:
    store.update(lesson_id="l1", module_id="m1", is_completed=True)
    store.update(lesson_id="l2", module_id="m1")
    assert store.aggregate("m1").is_completed is False

    store.set_module_completed_at("m1", T0)
    progress = store.aggregate("m1")
    assert progress.is_completed is True
    assert progress.percentage == 50


def test_subscribe_and_unsubscribe(store) -> None:
    seen = []
    unsubscribe = store.subscribe(lambda record: seen.append(record.lesson_id))

    store.update(lesson_id="l1", progress=0.1)
    unsubscribe()
    store.update(lesson_id="l2", progress=0.1)

    assert seen == ["l1"]


def test_failing_listener_does_not_block_update(store, caplog) -> None:
    def broken(_record):
        raise RuntimeError("listener exploded")

    store.subscribe(broken)
    store.update(lesson_id="l1", progress=0.3)

    assert store.get("l1").progress == 0.3
    assert "listener failed" in caplog.text


def test_snapshot_and_clear(store) -> None:
    store.set_current_lesson("l1", "m1")
    store.update(lesson_id="l1", progress=0.4)
    snapshot = store.snapshot()

    store.clear()

    assert snapshot["l1"].progress == 0.4
    assert len(store) == 0
    assert store.current_lesson_id is None
    assert store.current_module_id is None
