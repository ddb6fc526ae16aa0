"""Shared fixtures: settings with no delays, an in-memory store and a mocked API."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from ventylab.config import Settings, get_settings
from ventylab.progress.events import EventChannel
from ventylab.progress.outbox import ProgressOutbox
from ventylab.progress.store import LocalProgressStore
from ventylab.progress.sync import SyncEngine
from tests.fixtures.progress import echo_update, make_module_response


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        API_BASE_URL="http://api.test",
        RECONCILIATION_DELAY_MS=0,
        RATE_LIMIT_RETRY_DELAY_MS=0,
        FLUSH_INTERVAL_SECONDS=0.01,
        MAX_RETRY_ATTEMPTS=3,
        MAX_RECONCILIATION_BATCH_SIZE=10,
        OUTBOX_PATH=None,
    )


@pytest.fixture
def store() -> LocalProgressStore:
    return LocalProgressStore()


@pytest.fixture
def outbox() -> ProgressOutbox:
    return ProgressOutbox()


@pytest.fixture
def events() -> EventChannel:
    return EventChannel()


@pytest.fixture
def api() -> MagicMock:
    """Progress API double; every write succeeds unless a test says otherwise."""
    mock_api = MagicMock()
    mock_api.update_lesson_progress = AsyncMock(side_effect=echo_update)
    mock_api.get_module_progress = AsyncMock(return_value=make_module_response())
    mock_api.get_lesson_progress = AsyncMock(return_value=None)
    return mock_api


@pytest.fixture
def engine(store, api, outbox, events, settings) -> SyncEngine:
    store.set_current_lesson("l1", "m1")
    return SyncEngine(store, api, outbox=outbox, events=events, settings=settings)


@pytest.fixture
def statuses(events) -> list[str]:
    """Every status the engine publishes, in order."""
    seen: list[str] = []
    events.subscribe("sync-status", lambda detail: seen.append(detail["status"]))
    return seen
