"""Local progress store.

The store owns every LessonProgress record known to the client. All local
writes go through ``update`` so that range coercion and timestamps are applied
in one place; remote records go through ``apply_server_record`` which keeps
whichever side was written last.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from ventylab.progress.aggregation import aggregate_module_progress
from ventylab.progress.exceptions import InvalidProgressUpdateError
from ventylab.progress.models import CurriculumLesson, LessonProgress, ModuleProgress


logger = logging.getLogger(__name__)

StoreListener = Callable[[LessonProgress], None]

_LOCAL_FIELDS = frozenset(LessonProgress.model_fields) - {"lesson_id", "server_updated_at"}


def utcnow() -> datetime:
    return datetime.now(UTC)


class LocalProgressStore:
    """In-memory mapping of lesson id to LessonProgress."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._records: dict[str, LessonProgress] = {}
        self._module_completed_at: dict[str, datetime] = {}
        self._listeners: list[StoreListener] = []
        self._clock = clock
        self.current_lesson_id: str | None = None
        self.current_module_id: str | None = None

    def __contains__(self, lesson_id: object) -> bool:
        return lesson_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, lesson_id: str) -> LessonProgress:
        """Return a copy of the record, or a zero record when none exists."""
        record = self._records.get(lesson_id)
        if record is None:
            return LessonProgress(lesson_id=lesson_id)
        return record.model_copy(deep=True)

    def update(self, partial: dict[str, Any] | None = None, **fields: Any) -> LessonProgress:
        """Merge fields into a lesson record and stamp ``client_updated_at``.

        Accepts a dict, keyword arguments, or both. ``lesson_id`` is required;
        progress is clamped to [0, 1] and position floored at 0.
        """
        changes = {**(partial or {}), **fields}
        lesson_id = changes.pop("lesson_id", None)
        if not lesson_id:
            msg = "lesson_id is required to update progress"
            raise InvalidProgressUpdateError(msg)

        unknown = set(changes) - _LOCAL_FIELDS
        if unknown:
            msg = f"Unknown progress fields: {', '.join(sorted(unknown))}"
            raise InvalidProgressUpdateError(msg)

        existing = self._records.get(lesson_id)
        module_id = changes.pop("module_id", None) or (existing.module_id if existing else None) or self.current_module_id

        data = existing.model_dump() if existing else {"lesson_id": lesson_id}
        data.update(changes)
        data["module_id"] = module_id
        data["client_updated_at"] = changes.get("client_updated_at") or self._clock()

        record = LessonProgress.model_validate(data)
        self._records[lesson_id] = record
        self._notify(record)
        return record.model_copy(deep=True)

    def set_current_lesson(self, lesson_id: str | None, module_id: str | None = None) -> None:
        self.current_lesson_id = lesson_id
        if module_id is not None:
            self.current_module_id = module_id
        elif lesson_id and lesson_id in self._records:
            self.current_module_id = self._records[lesson_id].module_id or self.current_module_id

    def apply_server_record(self, record: LessonProgress, *, authoritative: bool = False) -> bool:
        """Apply a remote record unless the local one was written later.

        ``authoritative`` skips the timestamp comparison, for a server response
        confirming the write that produced the current local record.
        Returns True when the remote record replaced the local one.
        """
        existing = self._records.get(record.lesson_id)
        if existing is not None and not authoritative:
            local_ts = existing.latest_timestamp
            remote_ts = record.latest_timestamp
            if local_ts and remote_ts and local_ts > remote_ts:
                logger.debug(f"Keeping newer local record for lesson {record.lesson_id}")
                return False

        data = record.model_dump()
        if existing is not None:
            data["module_id"] = record.module_id or existing.module_id
            # The server tracks minutes spent, not the playback position
            if existing.position_seconds:
                data["position_seconds"] = existing.position_seconds
            # Completion never regresses on a sync
            data["is_completed"] = record.is_completed or existing.is_completed
            if existing.metadata and not record.metadata:
                data["metadata"] = existing.metadata
        merged = LessonProgress.model_validate(data)
        self._records[record.lesson_id] = merged
        self._notify(merged)
        return True

    def set_module_completed_at(self, module_id: str, completed_at: datetime | None) -> None:
        if completed_at is None:
            self._module_completed_at.pop(module_id, None)
        else:
            self._module_completed_at[module_id] = completed_at

    def module_completed_at(self, module_id: str) -> datetime | None:
        return self._module_completed_at.get(module_id)

    def records_for_module(self, module_id: str) -> list[LessonProgress]:
        return [r.model_copy(deep=True) for r in self._records.values() if r.module_id == module_id]

    def aggregate(self, module_id: str, curriculum: Iterable[CurriculumLesson] | None = None) -> ModuleProgress:
        """Derive the module's completion from the records held here."""
        return aggregate_module_progress(
            self.records_for_module(module_id),
            module_id=module_id,
            curriculum=curriculum,
            completed_at=self._module_completed_at.get(module_id),
        )

    def snapshot(self) -> dict[str, LessonProgress]:
        return {lesson_id: r.model_copy(deep=True) for lesson_id, r in self._records.items()}

    def clear(self) -> None:
        self._records.clear()
        self._module_completed_at.clear()
        self.current_lesson_id = None
        self.current_module_id = None

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Call ``listener`` with a copy of every record that changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, record: LessonProgress) -> None:
        for listener in list(self._listeners):
            try:
                listener(record.model_copy(deep=True))
            except Exception:
                logger.exception(f"Progress listener failed for lesson {record.lesson_id}")
