"""Progress API protocol.

This module defines the contract the sync engine relies on, so the HTTP client
can be swapped for any other implementation (tests use mocks).
"""

from typing import Protocol

from ventylab.progress.schemas import (
    LessonProgressRecord,
    LessonProgressUpdate,
    ModuleProgressResponse,
    UpdateLessonProgressResult,
)


class ProgressApi(Protocol):
    """Protocol for reading and writing remote lesson progress."""

    async def get_module_progress(self, module_id: str) -> ModuleProgressResponse:
        """Get the module aggregate and every lesson record of a module."""
        ...

    async def get_lesson_progress(self, lesson_id: str) -> LessonProgressRecord | None:
        """Get a single lesson record, or None when the server has none."""
        ...

    async def update_lesson_progress(
        self, lesson_id: str, update: LessonProgressUpdate
    ) -> UpdateLessonProgressResult:
        """Upsert a lesson record and return the server's view of it."""
        ...
