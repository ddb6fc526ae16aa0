"""Module progress aggregation.

Single source of truth for module completion: counts and percentages are
always derived from lesson records here and never stored.
"""

import math
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from ventylab.progress.models import CurriculumLesson, LessonProgress, ModuleProgress, ModuleState, clamp_progress


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3)."""
    return math.floor(value + 0.5)


def is_countable(item: Any) -> bool:
    """Default predicate: exclude lessons flagged ``allowEmpty``."""
    if getattr(item, "allow_empty", False):
        return False
    metadata = getattr(item, "metadata", None)
    if isinstance(metadata, dict) and (metadata.get("allowEmpty") or metadata.get("allow_empty")):
        return False
    return True


def _percentage(completed: float, total: float) -> int:
    if total <= 0:
        return 0
    return round_half_up(100 * completed / total)


def aggregate_module_progress(
    records: Iterable[LessonProgress],
    *,
    module_id: str | None = None,
    curriculum: Iterable[CurriculumLesson] | None = None,
    predicate: Callable[[Any], bool] = is_countable,
    completed_at: datetime | None = None,
) -> ModuleProgress:
    """Derive module completion from lesson records.

    Args:
        records: Lesson records of the module (others are ignored when
            ``module_id`` is given)
        module_id: Module to aggregate
        curriculum: Lessons the module is made of; when omitted the records
            themselves are the countable set
        predicate: Decides which lessons count towards the totals
        completed_at: Explicit server completion timestamp

    Returns
    -------
        ModuleProgress with lesson counts and, when page counts are known,
        page counts
    """
    by_lesson = {}
    for record in records:
        if module_id is not None and record.module_id not in (None, module_id):
            continue
        by_lesson[record.lesson_id] = record

    completed_lessons = 0
    total_lessons = 0
    completed_pages = 0
    total_pages = 0

    if curriculum is not None:
        for lesson in curriculum:
            if module_id is not None and lesson.module_id not in (None, module_id):
                continue
            if not predicate(lesson):
                continue
            record = by_lesson.get(lesson.lesson_id)
            if record is not None and not predicate(record):
                continue
            total_lessons += 1
            is_done = record is not None and record.is_completed
            if is_done:
                completed_lessons += 1

            pages = lesson.pages
            if pages:
                total_pages += pages
                value = 1.0 if is_done else clamp_progress(record.progress if record else 0)
                completed_pages += min(pages, round_half_up(value * pages))
    else:
        for record in by_lesson.values():
            if not predicate(record):
                continue
            total_lessons += 1
            if record.is_completed:
                completed_lessons += 1

    all_done = total_lessons > 0 and completed_lessons == total_lessons
    return ModuleProgress(
        module_id=module_id,
        completed_lessons=completed_lessons,
        total_lessons=total_lessons,
        percentage=_percentage(completed_lessons, total_lessons),
        completed_pages=completed_pages,
        total_pages=total_pages,
        page_percentage=_percentage(completed_pages, total_pages) if total_pages else None,
        is_completed=all_done or completed_at is not None,
        completed_at=completed_at,
    )


def get_module_state(progress: ModuleProgress) -> ModuleState:
    """Coarse state for dashboards."""
    if progress.is_completed or progress.percentage >= 100:
        return ModuleState.COMPLETED
    if progress.percentage > 0 or progress.completed_pages > 0:
        return ModuleState.IN_PROGRESS
    return ModuleState.NOT_STARTED


def estimated_time_remaining(progress: ModuleProgress | int, total_minutes: float) -> int:
    """Minutes left in a module, given its total duration.

    Accepts a ModuleProgress or a bare percentage.
    """
    percentage = progress.percentage if isinstance(progress, ModuleProgress) else progress
    percentage = max(0, min(100, percentage))
    if total_minutes <= 0:
        return 0
    return math.ceil(total_minutes * (100 - percentage) / 100)
