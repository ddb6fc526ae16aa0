"""Tests for the outbox flush script."""

import json
from unittest.mock import patch

import pytest

from ventylab.progress.exceptions import NetworkUnavailableError
from ventylab.progress.outbox import OutboxEvent, ProgressOutbox
from ventylab.scripts import flush_outbox as script
from tests.fixtures.progress import echo_update


class FakeClient:
    """Stands in for ProgressApiClient; accepts every write."""

    instances: list["FakeClient"] = []

    def __init__(self, *args, **kwargs) -> None:
        self.sent: list[str] = []
        FakeClient.instances.append(self)

    async def __aenter__(self) -> "FakeClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def update_lesson_progress(self, lesson_id, update):
        self.sent.append(lesson_id)
        return await echo_update(lesson_id, update)


@pytest.fixture
def outbox_file(tmp_path, monkeypatch):
    monkeypatch.setenv("RECONCILIATION_DELAY_MS", "0")
    monkeypatch.delenv("OUTBOX_PATH", raising=False)
    path = tmp_path / "outbox.json"
    outbox = ProgressOutbox(path)
    for index in range(3):
        outbox.add(OutboxEvent(client_event_id=f"e{index}", lesson_id=f"l{index}", module_id="m1", ts=index))
    return path


def test_stats(outbox_file, capsys) -> None:
    assert script.main(["--outbox", str(outbox_file), "--stats"]) == 0

    stats = json.loads(capsys.readouterr().out)
    assert stats["pending_events"] == 3


def test_flush_empties_the_outbox(outbox_file) -> None:
    FakeClient.instances.clear()
    with patch("ventylab.scripts.flush_outbox.ProgressApiClient", FakeClient):
        assert script.main(["--outbox", str(outbox_file)]) == 0

    assert FakeClient.instances[0].sent == ["l0", "l1", "l2"]
    assert len(ProgressOutbox(outbox_file)) == 0


def test_flush_reports_leftovers(outbox_file, monkeypatch) -> None:
    monkeypatch.setenv("MAX_RECONCILIATION_BATCH_SIZE", "1")

    class DownClient(FakeClient):
        async def update_lesson_progress(self, lesson_id, update):
            raise NetworkUnavailableError("down")

    with patch("ventylab.scripts.flush_outbox.ProgressApiClient", DownClient):
        assert script.main(["--outbox", str(outbox_file)]) == 1

    assert len(ProgressOutbox(outbox_file)) == 3


def test_missing_outbox_path_is_an_error(monkeypatch) -> None:
    monkeypatch.delenv("OUTBOX_PATH", raising=False)

    with pytest.raises(SystemExit) as exc_info:
        script.main([])

    assert exc_info.value.code == 2
