"""Sync engine reconciling the local progress store with the remote API.

Local writes are applied to the store first and then sent to the server.
Writes that cannot be delivered go to the outbox and are replayed by
``reconcile_outbox``, either when connectivity returns or from the periodic
flush task started by ``start``.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ventylab.config import Settings, get_settings
from ventylab.progress.events import EventChannel, EventTypes
from ventylab.progress.exceptions import (
    InvalidProgressUpdateError,
    NetworkUnavailableError,
    ProgressApiError,
    ProgressError,
    RateLimitedError,
)
from ventylab.progress.models import LessonProgress, ModuleProgress, SyncStatus, clamp_progress, floor_position
from ventylab.progress.outbox import OutboxEvent, ProgressOutbox, now_ms
from ventylab.progress.protocols import ProgressApi
from ventylab.progress.schemas import LessonProgressUpdate, UpdateLessonProgressResult
from ventylab.progress.store import LocalProgressStore, utcnow


logger = logging.getLogger(__name__)

_UPDATE_FIELDS = frozenset(LessonProgressUpdate.model_fields)


class SyncEngine:
    """Coalesces local progress changes and keeps them in sync with the server."""

    def __init__(
        self,
        store: LocalProgressStore,
        api: ProgressApi,
        outbox: ProgressOutbox | None = None,
        events: EventChannel | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.api = api
        self.settings = settings or get_settings()
        self.outbox = outbox if outbox is not None else ProgressOutbox(self.settings.OUTBOX_PATH)
        self.events = events or EventChannel()

        self.status = SyncStatus.IDLE
        self.last_error: str | None = None
        self.online = True

        self._committed_positions: dict[str, int] = {}
        self._reconciling = False
        self._flush_task: asyncio.Task | None = None

    async def __aenter__(self) -> "SyncEngine":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # Status

    async def _set_status(self, status: SyncStatus, error: str | None = None) -> None:
        self.status = status
        self.last_error = error
        await self.events.publish(EventTypes.SYNC_STATUS, {"status": status.value, "error": error})

    async def _begin(self, status: SyncStatus) -> None:
        # Every triggered operation restarts the status machine from idle
        await self._set_status(SyncStatus.IDLE)
        await self._set_status(status)

    # Local writes

    def _resolve_module_id(self, lesson_id: str, module_id: str | None) -> str:
        if not lesson_id:
            msg = "lesson_id is required to update progress"
            raise InvalidProgressUpdateError(msg)
        resolved = module_id
        if not resolved and lesson_id in self.store:
            resolved = self.store.get(lesson_id).module_id
        resolved = resolved or self.store.current_module_id
        if not resolved:
            msg = f"Could not resolve a module for lesson {lesson_id}"
            raise InvalidProgressUpdateError(msg)
        return resolved

    async def report_position(
        self,
        lesson_id: str,
        seconds: float,
        module_id: str | None = None,
        progress: float | None = None,
    ) -> LessonProgress:
        """Record a playback position, writing it only when it moved far enough.

        The position and any reported ``progress`` are always stored locally.
        A write goes out when the position moved at least
        POSITION_UPDATE_THRESHOLD_SECONDS from the last written position, or
        when the reported progress completes the lesson; whole minutes
        crossed since the last written position are sent as ``timeSpentDelta``.
        """
        module_id = self._resolve_module_id(lesson_id, module_id)
        position = floor_position(seconds)
        was_completed = self.store.get(lesson_id).is_completed

        local: dict[str, Any] = {"lesson_id": lesson_id, "module_id": module_id, "position_seconds": position}
        if progress is not None:
            local["progress"] = clamp_progress(progress)
        record = self.store.update(local)

        completes = progress is not None and record.progress >= 1 and not was_completed
        last_committed = self._committed_positions.get(lesson_id, 0)
        moved = abs(position - last_committed) >= self.settings.POSITION_UPDATE_THRESHOLD_SECONDS
        if not moved and not completes:
            logger.debug(f"Position {position}s for lesson {lesson_id} within threshold, not written")
            return record

        fields: dict[str, Any] = {"progress": record.progress}
        if moved:
            self._committed_positions[lesson_id] = position
            minutes = position // 60 - last_committed // 60
            if minutes > 0:
                fields["time_spent_delta"] = minutes
        if completes:
            fields["completed"] = True
        return await self.update_lesson_progress(lesson_id, module_id, **fields)

    async def set_percent(self, lesson_id: str, value: float, module_id: str | None = None) -> LessonProgress:
        """Set lesson progress in [0, 1]; reaching 1 completes the lesson."""
        value = clamp_progress(value)
        completed = self.store.get(lesson_id).is_completed or value >= 1
        return await self.update_lesson_progress(lesson_id, module_id, progress=value, completed=completed)

    async def mark_completed(self, lesson_id: str, module_id: str | None = None) -> LessonProgress:
        return await self.update_lesson_progress(lesson_id, module_id, progress=1.0, completed=True)

    async def update_lesson_progress(
        self, lesson_id: str, module_id: str | None = None, **fields: Any
    ) -> LessonProgress:
        """Apply an update locally, then send it to the server.

        Accepts the API update fields (``progress``, ``completed``,
        ``completion_percentage``, ``time_spent_delta``, ``last_accessed``).
        The local record is kept whatever the outcome of the write.
        """
        module_id = self._resolve_module_id(lesson_id, module_id)
        unknown = set(fields) - _UPDATE_FIELDS
        if unknown:
            msg = f"Unknown update fields: {', '.join(sorted(unknown))}"
            raise InvalidProgressUpdateError(msg)

        fields.setdefault("last_accessed", utcnow())
        update = LessonProgressUpdate(**fields)

        existing = self.store.get(lesson_id)
        local: dict[str, Any] = {"lesson_id": lesson_id, "module_id": module_id}
        if update.progress is not None:
            local["progress"] = update.progress
        elif update.completion_percentage is not None:
            local["progress"] = update.completion_percentage / 100
        if update.completed is not None:
            local["is_completed"] = existing.is_completed or update.completed
        record = self.store.update(local)
        issued_at = record.client_updated_at

        event = OutboxEvent.from_update(lesson_id, update, module_id)

        if not self.online:
            self.outbox.add(event)
            await self._begin(SyncStatus.OFFLINE_QUEUED)
            logger.info(f"Offline: queued progress for lesson {lesson_id}")
            return record

        await self._begin(SyncStatus.SAVING)
        try:
            result = await self.api.update_lesson_progress(lesson_id, update)
        except NetworkUnavailableError as e:
            self.outbox.add(event)
            await self._set_status(SyncStatus.OFFLINE_QUEUED)
            logger.warning(f"Progress for lesson {lesson_id} queued, API unreachable: {e.message}")
            return self.store.get(lesson_id)
        except ProgressApiError as e:
            if e.retryable:
                self.outbox.add(event)
            await self._set_status(SyncStatus.ERROR, e.message)
            logger.warning(
                f"Progress update for lesson {lesson_id} rejected ({e.status_code}): {e.message}"
                + (" - queued for retry" if e.retryable else "")
            )
            return self.store.get(lesson_id)

        await self._apply_write_result(lesson_id, module_id, result, issued_at=issued_at)
        self.outbox.mark_confirmed(event.client_event_id, result.model_dump(mode="json", by_alias=True))
        self.outbox.remove(event.client_event_id)
        await self._set_status(SyncStatus.SAVED)
        return self.store.get(lesson_id)

    async def _apply_write_result(
        self,
        lesson_id: str,
        module_id: str | None,
        result: UpdateLessonProgressResult,
        issued_at: datetime | None = None,
    ) -> None:
        # The response wins over the record it confirms, but not over later local writes
        confirms_current = issued_at is not None and self.store.get(lesson_id).client_updated_at == issued_at
        self.store.apply_server_record(
            result.lesson_progress.to_lesson_progress(module_id), authoritative=confirms_current
        )
        if module_id and result.module_progress is not None and result.module_progress.completed_at:
            self.store.set_module_completed_at(module_id, result.module_progress.completed_at)
        await self.events.publish(
            EventTypes.PROGRESS_UPDATED,
            {
                "lessonId": lesson_id,
                "moduleId": module_id,
                "progress": self.store.get(lesson_id).model_dump(mode="json"),
            },
        )

    # Loads

    async def load_module_progress(self, module_id: str) -> ModuleProgress | None:
        """Fetch a module's lesson records and merge them into the store.

        Returns the recomputed aggregate, or None when the request failed or
        the current module changed while it was in flight.
        """
        expected_module = self.store.current_module_id
        await self._begin(SyncStatus.LOADING)
        try:
            response = await self.api.get_module_progress(module_id)
        except ProgressApiError as e:
            if e.status_code != 404:
                await self._set_status(SyncStatus.ERROR, e.message)
                return None
            if self.store.current_module_id != expected_module:
                await self._discard(f"module {module_id}")
                return None
            logger.info(f"No progress recorded for module {module_id}")
            await self._set_status(SyncStatus.SAVED)
            return self.store.aggregate(module_id)
        except ProgressError as e:
            await self._set_status(SyncStatus.ERROR, e.message)
            return None

        if self.store.current_module_id != expected_module:
            await self._discard(f"module {module_id}")
            return None

        for lesson in response.lesson_progress:
            self.store.apply_server_record(lesson.to_lesson_progress(module_id))
        if response.learning_progress is not None:
            self.store.set_module_completed_at(module_id, response.learning_progress.completed_at)

        await self._set_status(SyncStatus.SAVED)
        return self.store.aggregate(module_id)

    async def load_lesson_progress(self, lesson_id: str) -> LessonProgress | None:
        """Fetch one lesson record; stale results are dropped."""
        expected_lesson = self.store.current_lesson_id
        await self._begin(SyncStatus.LOADING)
        try:
            record = await self.api.get_lesson_progress(lesson_id)
        except ProgressError as e:
            await self._set_status(SyncStatus.ERROR, e.message)
            return None

        if self.store.current_lesson_id != expected_lesson:
            await self._discard(f"lesson {lesson_id}")
            return None

        if record is not None:
            self.store.apply_server_record(record.to_lesson_progress(self.store.current_module_id))
        await self._set_status(SyncStatus.SAVED)
        return self.store.get(lesson_id)

    async def _discard(self, what: str) -> None:
        logger.debug(f"Discarding stale progress for {what}")
        await self._set_status(SyncStatus.IDLE)

    async def set_current_lesson(
        self, lesson_id: str | None, module_id: str | None = None, load: bool = True
    ) -> LessonProgress | None:
        """Switch the current lesson; in-flight loads for the previous one are dropped."""
        self.store.set_current_lesson(lesson_id, module_id)
        if lesson_id and lesson_id not in self._committed_positions:
            self._committed_positions[lesson_id] = self.store.get(lesson_id).position_seconds
        if load and lesson_id:
            return await self.load_lesson_progress(lesson_id)
        return None

    # Connectivity and outbox

    async def set_online(self, online: bool) -> None:
        was_online = self.online
        self.online = online
        if not online:
            if len(self.outbox):
                await self._set_status(SyncStatus.OFFLINE_QUEUED)
        elif not was_online:
            await self.flush()

    async def flush(self) -> dict[str, int]:
        return await self.reconcile_outbox()

    async def reconcile_outbox(self) -> dict[str, int]:
        """Replay queued writes, oldest first, one batch at a time.

        Returns
        -------
            Counts of confirmed, dropped and remaining events
        """
        summary = {"confirmed": 0, "dropped": 0, "remaining": len(self.outbox)}
        if not self.online or self._reconciling or not len(self.outbox):
            return summary

        self._reconciling = True
        try:
            batch = self.outbox.pending(self.settings.MAX_RECONCILIATION_BATCH_SIZE)
            logger.info(f"Reconciling {len(batch)} outbox events ({len(self.outbox) - len(batch)} left for later)")
            await self._begin(SyncStatus.SAVING)

            to_remove: list[str] = []
            for index, event in enumerate(batch):
                if index > 0:
                    await asyncio.sleep(self.settings.RECONCILIATION_DELAY_MS / 1000)

                if self.outbox.is_confirmed(event.client_event_id):
                    to_remove.append(event.client_event_id)
                    summary["confirmed"] += 1
                    continue

                try:
                    result = await self.api.update_lesson_progress(event.lesson_id, event.to_update())
                except RateLimitedError as e:
                    wait_ms = max((e.retry_after or 0) * 1000, self.settings.RATE_LIMIT_RETRY_DELAY_MS)
                    logger.warning(
                        f"Rate limited while reconciling; waiting {wait_ms:.0f}ms, "
                        f"{len(batch) - index} events deferred to the next cycle"
                    )
                    await self._set_status(SyncStatus.OFFLINE_QUEUED)
                    await asyncio.sleep(wait_ms / 1000)
                    break
                except NetworkUnavailableError:
                    logger.info("Progress API unreachable, stopping reconciliation")
                    break
                except ProgressApiError as e:
                    event.retry_count += 1
                    event.last_retry_at = now_ms()
                    if event.retry_count >= self.settings.MAX_RETRY_ATTEMPTS:
                        logger.warning(
                            f"Dropping event {event.client_event_id} for lesson {event.lesson_id} "
                            f"after {event.retry_count} failed attempts: {e.message}"
                        )
                        to_remove.append(event.client_event_id)
                        summary["dropped"] += 1
                    else:
                        logger.warning(
                            f"Event {event.client_event_id} rejected ({e.status_code}), "
                            f"attempt {event.retry_count}/{self.settings.MAX_RETRY_ATTEMPTS}"
                        )
                        self.outbox.update(event)
                    continue

                self.outbox.mark_confirmed(event.client_event_id, result.model_dump(mode="json", by_alias=True))
                to_remove.append(event.client_event_id)
                summary["confirmed"] += 1
                await self._apply_write_result(event.lesson_id, event.module_id, result)

            if to_remove:
                self.outbox.remove(to_remove)
            self.outbox.cleanup_old_confirmations(self.settings.CONFIRMATION_MAX_AGE_SECONDS)

            summary["remaining"] = len(self.outbox)
            if summary["confirmed"]:
                logger.info(f"Reconciled {summary['confirmed']} events")
            await self._set_status(SyncStatus.SAVED if not summary["remaining"] else SyncStatus.OFFLINE_QUEUED)
            return summary
        finally:
            self._reconciling = False

    # Background flush

    def start(self) -> None:
        """Start the periodic outbox flush."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._run_periodic_flush())

    async def stop(self) -> None:
        if self._flush_task is None:
            return
        self._flush_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._flush_task
        self._flush_task = None

    async def _run_periodic_flush(self) -> None:
        while True:
            await asyncio.sleep(self.settings.FLUSH_INTERVAL_SECONDS)
            try:
                await self.flush()
            except Exception as e:
                logger.exception(f"Error in periodic outbox flush: {e}")

    # Event wiring

    def bind(self, events: EventChannel | None = None) -> Callable[[], None]:
        """Drive the engine from ``lesson-progress`` and ``lesson-section-complete`` events.

        Returns a callable that removes both subscriptions.
        """
        channel = events or self.events

        async def on_lesson_progress(detail: dict[str, Any]) -> None:
            lesson_id = detail.get("lessonId") or self.store.current_lesson_id
            seconds = detail.get("positionSeconds")
            if not lesson_id or not isinstance(seconds, int | float) or isinstance(seconds, bool):
                return
            try:
                await self.report_position(
                    lesson_id, seconds, module_id=detail.get("moduleId"), progress=detail.get("progress")
                )
            except InvalidProgressUpdateError as e:
                logger.warning(f"Ignoring lesson-progress event: {e.message}")

        async def on_section_complete(detail: dict[str, Any]) -> None:
            lesson_id = detail.get("lessonId") or self.store.current_lesson_id
            if not lesson_id:
                return
            module_id = detail.get("moduleId")
            try:
                progress = detail.get("progress")
                if isinstance(progress, int | float) and not isinstance(progress, bool):
                    await self.set_percent(lesson_id, progress, module_id)
                if detail.get("markCompleted"):
                    await self.mark_completed(lesson_id, module_id)
            except InvalidProgressUpdateError as e:
                logger.warning(f"Ignoring lesson-section-complete event: {e.message}")

        unsubscribers = [
            channel.subscribe(EventTypes.LESSON_PROGRESS, on_lesson_progress),
            channel.subscribe(EventTypes.LESSON_SECTION_COMPLETE, on_section_complete),
        ]

        def unbind() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return unbind
