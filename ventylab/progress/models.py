"""Domain models for lesson and module progress."""

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def clamp_progress(value: Any) -> float:
    """Coerce a progress value into [0, 1]; unusable input becomes 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return max(0.0, min(1.0, number))


def floor_position(value: Any) -> int:
    """Coerce a playback position to whole non-negative seconds."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, round(number))


class SyncStatus(str, Enum):
    """Status of the most recent sync operation."""

    IDLE = "idle"
    LOADING = "loading"
    SAVING = "saving"
    SAVED = "saved"
    OFFLINE_QUEUED = "offline-queued"
    ERROR = "error"


class ModuleState(str, Enum):
    """Coarse module state used by dashboards."""

    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class LessonProgress(BaseModel):
    """Per-lesson completion and playback position record."""

    lesson_id: str
    module_id: str | None = None
    position_seconds: int = 0
    progress: float = 0.0
    is_completed: bool = False
    attempts: int = Field(default=0, ge=0)
    score: float | None = None
    metadata: dict[str, Any] | None = None
    client_updated_at: datetime | None = None
    server_updated_at: datetime | None = None

    model_config = ConfigDict(validate_assignment=True)

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp_progress(cls, value: Any) -> float:
        return clamp_progress(value)

    @field_validator("position_seconds", mode="before")
    @classmethod
    def _floor_position(cls, value: Any) -> int:
        return floor_position(value)

    @property
    def latest_timestamp(self) -> datetime | None:
        """Newest of the client and server timestamps."""
        stamps = [
            ts if ts.tzinfo else ts.replace(tzinfo=UTC)
            for ts in (self.client_updated_at, self.server_updated_at)
            if ts is not None
        ]
        return max(stamps) if stamps else None


class CurriculumLesson(BaseModel):
    """Static description of a lesson as laid out in the curriculum."""

    lesson_id: str
    module_id: str | None = None
    title: str | None = None
    order: int = 0
    sections_count: int = Field(default=0, ge=0)
    allow_empty: bool = False

    @property
    def pages(self) -> int:
        """Pages shown for the lesson: its sections plus the completion and clinical case pages."""
        if self.allow_empty or self.sections_count == 0:
            return 0
        pages = self.sections_count + 1
        if self.module_id:
            pages += 1
        return pages


class ModuleProgress(BaseModel):
    """Module completion derived from lesson records. Never stored."""

    module_id: str | None = None
    completed_lessons: int = 0
    total_lessons: int = 0
    percentage: int = 0
    completed_pages: int = 0
    total_pages: int = 0
    page_percentage: int | None = None
    is_completed: bool = False
    completed_at: datetime | None = None

    model_config = ConfigDict(frozen=True)
