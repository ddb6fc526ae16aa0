"""Offline outbox for progress writes.

Writes that could not reach the server are kept here, oldest first, until a
reconciliation pass replays them. Confirmed event ids are remembered for a
while so that an event replayed twice is not sent twice.
"""

import json
import logging
import secrets
import string
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError

from ventylab.progress.schemas import ApiModel, LessonProgressUpdate


logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_client_event_id() -> str:
    """Build a unique ``evt_<ms>_<random>`` id for a client event."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"evt_{int(time.time() * 1000)}_{suffix}"


def now_ms() -> int:
    return int(time.time() * 1000)


class OutboxEvent(ApiModel):
    """A queued lesson progress write."""

    client_event_id: str = Field(default_factory=generate_client_event_id)
    lesson_id: str
    module_id: str | None = None
    progress: float | None = None
    completed: bool | None = None
    completion_percentage: float | None = None
    time_spent_delta: int | None = None
    last_accessed: datetime | None = None
    ts: int = Field(default_factory=now_ms)
    retry_count: int = 0
    last_retry_at: int | None = None

    @classmethod
    def from_update(
        cls, lesson_id: str, update: LessonProgressUpdate, module_id: str | None = None
    ) -> "OutboxEvent":
        return cls(
            lesson_id=lesson_id,
            module_id=module_id,
            **update.model_dump(exclude_none=True),
        )

    def to_update(self) -> LessonProgressUpdate:
        """Rebuild the API body this event stands for."""
        return LessonProgressUpdate(
            progress=self.progress,
            completed=self.completed,
            completion_percentage=self.completion_percentage,
            time_spent_delta=self.time_spent_delta,
            last_accessed=self.last_accessed,
        )


class ProgressOutbox:
    """Ordered queue of pending progress writes, optionally persisted as JSON."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else None
        self._events: list[OutboxEvent] = []
        self._confirmations: dict[str, dict[str, Any]] = {}
        if self.path is not None:
            self._load()

    def __len__(self) -> int:
        return len(self._events)

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            events = [OutboxEvent.model_validate(item) for item in data.get("events", [])]
            confirmations = data.get("confirmations", {})
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable outbox file {self.path}: {e}")
            return
        self._events = sorted(events, key=lambda event: event.ts)
        self._confirmations = confirmations if isinstance(confirmations, dict) else {}

    def _save(self) -> None:
        if self.path is None:
            return
        payload = {
            "events": [event.model_dump(mode="json", by_alias=True) for event in self._events],
            "confirmations": self._confirmations,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # The file on disk is only ever replaced whole
        staging = self.path.with_name(f"{self.path.name}.tmp")
        staging.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        staging.replace(self.path)

    def add(self, event: OutboxEvent) -> OutboxEvent:
        """Queue an event; an event with the same id is replaced."""
        if not event.lesson_id or not event.client_event_id:
            msg = "Outbox events need a lesson_id and a client_event_id"
            raise ValueError(msg)

        self._events = [e for e in self._events if e.client_event_id != event.client_event_id]
        self._events.append(event)
        self._events.sort(key=lambda e: e.ts)
        self._save()
        return event

    def remove(self, client_event_ids: str | list[str]) -> int:
        """Drop events by id; returns the number still pending."""
        ids = {client_event_ids} if isinstance(client_event_ids, str) else set(client_event_ids)
        self._events = [e for e in self._events if e.client_event_id not in ids]
        self._save()
        return len(self._events)

    def update(self, event: OutboxEvent) -> bool:
        """Replace a queued event in place (used to bump retry counters)."""
        for index, existing in enumerate(self._events):
            if existing.client_event_id == event.client_event_id:
                self._events[index] = event
                self._save()
                return True
        return False

    def pending(self, limit: int | None = None) -> list[OutboxEvent]:
        """Queued events, oldest first."""
        events = [event.model_copy() for event in self._events]
        return events[:limit] if limit is not None else events

    def pending_for_lesson(self, lesson_id: str) -> list[OutboxEvent]:
        return [event.model_copy() for event in self._events if event.lesson_id == lesson_id]

    def clear(self) -> None:
        self._events = []
        self._save()

    def mark_confirmed(self, client_event_id: str, server_response: Any = None) -> None:
        self._confirmations[client_event_id] = {
            "confirmedAt": now_ms(),
            "serverResponse": server_response,
        }
        self._save()

    def is_confirmed(self, client_event_id: str) -> bool:
        return client_event_id in self._confirmations

    def cleanup_old_confirmations(self, max_age_seconds: float = 7 * 24 * 60 * 60, *, now: int | None = None) -> int:
        """Forget confirmations older than ``max_age_seconds``; returns how many were dropped.

        ``now`` is in epoch milliseconds and defaults to the current time.
        """
        now = now if now is not None else now_ms()
        max_age_ms = max_age_seconds * 1000
        kept = {
            event_id: confirmation
            for event_id, confirmation in self._confirmations.items()
            if confirmation.get("confirmedAt") and now - confirmation["confirmedAt"] < max_age_ms
        }
        dropped = len(self._confirmations) - len(kept)
        if dropped:
            self._confirmations = kept
            self._save()
        return dropped

    def stats(self) -> dict[str, Any]:
        return {
            "pending_events": len(self._events),
            "confirmed_events": len(self._confirmations),
            "oldest_event": self._events[0].ts if self._events else None,
            "newest_event": self._events[-1].ts if self._events else None,
        }
