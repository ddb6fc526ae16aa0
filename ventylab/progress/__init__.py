"""Progress module for lesson tracking, sync and module aggregation."""

from ventylab.progress.aggregation import (
    aggregate_module_progress,
    estimated_time_remaining,
    get_module_state,
    is_countable,
    round_half_up,
)
from ventylab.progress.client import ProgressApiClient
from ventylab.progress.events import EventChannel, EventTypes
from ventylab.progress.exceptions import (
    InvalidProgressUpdateError,
    NetworkUnavailableError,
    ProgressApiError,
    ProgressError,
    ProgressNotFoundError,
    RateLimitedError,
)
from ventylab.progress.models import (
    CurriculumLesson,
    LessonProgress,
    ModuleProgress,
    ModuleState,
    SyncStatus,
)
from ventylab.progress.outbox import OutboxEvent, ProgressOutbox, generate_client_event_id
from ventylab.progress.protocols import ProgressApi
from ventylab.progress.store import LocalProgressStore
from ventylab.progress.sync import SyncEngine


__all__ = [
    "CurriculumLesson",
    "EventChannel",
    "EventTypes",
    "InvalidProgressUpdateError",
    "LessonProgress",
    "LocalProgressStore",
    "ModuleProgress",
    "ModuleState",
    "NetworkUnavailableError",
    "OutboxEvent",
    "ProgressApi",
    "ProgressApiClient",
    "ProgressApiError",
    "ProgressError",
    "ProgressNotFoundError",
    "ProgressOutbox",
    "RateLimitedError",
    "SyncEngine",
    "SyncStatus",
    "aggregate_module_progress",
    "estimated_time_remaining",
    "generate_client_event_id",
    "get_module_state",
    "is_countable",
    "round_half_up",
]
