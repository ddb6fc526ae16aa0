"""Schemas for the remote progress API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ventylab.progress.models import LessonProgress, clamp_progress


class ApiModel(BaseModel):
    """Base for wire models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ApiErrorDetail(ApiModel):
    """Structured error body."""

    code: str | None = None
    message: str | None = None
    details: Any = None


class ApiEnvelope(ApiModel):
    """Response envelope shared by all endpoints."""

    success: bool
    data: Any = None
    message: str | None = None
    error: ApiErrorDetail | str | None = None

    def error_message(self) -> str | None:
        """Best human-readable message carried by the envelope."""
        if isinstance(self.error, ApiErrorDetail):
            return self.error.message or self.error.code or self.message
        return self.error or self.message

    def error_code(self) -> str | None:
        """Machine-readable code, when the server sent one."""
        if isinstance(self.error, ApiErrorDetail):
            return self.error.code
        return None


class LessonProgressUpdate(ApiModel):
    """Body for PUT /progress/lesson/:lessonId."""

    progress: float | None = None
    completed: bool | None = None
    completion_percentage: float | None = Field(default=None, ge=0, le=100)
    time_spent_delta: int | None = Field(default=None, ge=0)  # minutes
    last_accessed: datetime | None = None

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float | None:
        if value is None:
            return None
        return clamp_progress(value)

    def to_body(self) -> dict[str, Any]:
        """JSON body with unset fields omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class LessonProgressRecord(ApiModel):
    """Lesson progress as stored by the server."""

    id: str | None = None
    lesson_id: str
    module_id: str | None = None
    completed: bool = False
    progress: float | None = None
    completion_percentage: float | None = None
    time_spent: float = 0  # minutes
    score: float | None = None
    attempts: int = 0
    last_accessed: datetime | None = None
    updated_at: datetime | None = None
    created_at: datetime | None = None

    def to_lesson_progress(self, module_id: str | None = None) -> LessonProgress:
        """Convert to the local record shape."""
        if self.progress is not None:
            value = self.progress
        elif self.completion_percentage is not None:
            value = self.completion_percentage / 100
        else:
            value = 0.0
        return LessonProgress(
            lesson_id=self.lesson_id,
            module_id=self.module_id or module_id,
            position_seconds=(self.time_spent or 0) * 60,
            progress=value,
            is_completed=self.completed,
            attempts=max(self.attempts, 0),
            score=self.score,
            client_updated_at=self.last_accessed,
            server_updated_at=self.updated_at,
        )


class ModuleProgressRecord(ApiModel):
    """Module-level aggregate row kept by the server."""

    id: str | None = None
    module_id: str | None = None
    progress_percentage: float | None = None
    time_spent: float = 0
    score: float | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None


class ModuleProgressResponse(ApiModel):
    """Payload of GET /progress/modules/:moduleId."""

    learning_progress: ModuleProgressRecord | None = None
    lesson_progress: list[LessonProgressRecord] = Field(default_factory=list)
    is_available: bool = True

    @field_validator("lesson_progress", mode="before")
    @classmethod
    def _tolerate_null(cls, value: Any) -> list:
        # Modules that were never started come back with null
        if not isinstance(value, list):
            return []
        return value


class UpdateLessonProgressResult(ApiModel):
    """Payload of PUT /progress/lesson/:lessonId."""

    lesson_progress: LessonProgressRecord
    module_progress: ModuleProgressRecord | None = None
