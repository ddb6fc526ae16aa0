"""HTTP client for the remote progress API."""

import logging
import re
from typing import Any
from urllib.parse import quote

import httpx

from ventylab.config import Settings, get_settings
from ventylab.progress.exceptions import (
    NetworkUnavailableError,
    ProgressApiError,
    ProgressNotFoundError,
    RateLimitedError,
)
from ventylab.progress.schemas import (
    ApiEnvelope,
    LessonProgressRecord,
    LessonProgressUpdate,
    ModuleProgressResponse,
    UpdateLessonProgressResult,
)


logger = logging.getLogger(__name__)

_API_SEGMENT = re.compile(r"/api(/|$)")


def build_base_url(base_url: str) -> str:
    """Normalise the configured base URL so that it ends with an /api segment."""
    trimmed = base_url.rstrip("/")
    if _API_SEGMENT.search(trimmed):
        return trimmed
    return f"{trimmed}/api"


def _parse_retry_after(response: httpx.Response, payload: Any) -> float | None:
    header = response.headers.get("Retry-After")
    if header:
        try:
            return float(header)
        except ValueError:
            logger.debug(f"Ignoring non-numeric Retry-After header: {header}")
    if isinstance(payload, dict):
        candidates = [payload.get("retryAfter")]
        if isinstance(payload.get("error"), dict):
            candidates.append(payload["error"].get("retryAfter"))
        for value in candidates:
            if isinstance(value, int | float):
                return float(value)
    return None


class ProgressApiClient:
    """Async client for /progress endpoints.

    Responses follow the ``{success, data, message?, error?}`` envelope. Transport
    failures raise NetworkUnavailableError; non-2xx responses raise ProgressApiError
    or one of its subclasses.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        token: str | None = None,
        user_id: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.base_url = build_base_url(base_url or settings.API_BASE_URL)
        self.token = token if token is not None else settings.API_TOKEN
        self.user_id = user_id if user_id is not None else settings.API_USER_ID
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> "ProgressApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif self.user_id:
            headers["X-User-Id"] = self.user_id
        return headers

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json, headers=self._headers())
        except httpx.TransportError as e:
            msg = f"Could not reach the progress API at {self.base_url}: {e}"
            raise NetworkUnavailableError(msg) from e
        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> Any:
        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        if not response.is_success:
            message = f"Request failed with status {response.status_code}"
            code = None
            if isinstance(payload, dict):
                envelope = ApiEnvelope.model_validate({"success": False, **payload})
                message = envelope.error_message() or message
                code = envelope.error_code()
            elif isinstance(payload, str) and payload:
                message = payload

            if response.status_code == 429:
                raise RateLimitedError(message, retry_after=_parse_retry_after(response, payload), payload=payload)
            raise ProgressApiError(message, status_code=response.status_code, code=code, payload=payload)

        if isinstance(payload, dict) and payload.get("success") is True:
            envelope = ApiEnvelope.model_validate(payload)
            return envelope.data if envelope.data is not None else payload
        return payload

    async def get_module_progress(self, module_id: str) -> ModuleProgressResponse:
        """Get the module aggregate and its lesson records."""
        if not module_id:
            msg = "module_id is required"
            raise ValueError(msg)

        try:
            data = await self._request("GET", f"/progress/modules/{quote(module_id, safe='')}")
        except ProgressApiError as e:
            if e.status_code == 404 and not isinstance(e, ProgressNotFoundError):
                raise ProgressNotFoundError("Module", module_id, payload=e.payload) from e
            raise

        # Some deployments nest the module payload under "progress"
        if isinstance(data, dict) and "lessonProgress" not in data and isinstance(data.get("progress"), dict):
            data = data["progress"]
        return ModuleProgressResponse.model_validate(data or {})

    async def get_lesson_progress(self, lesson_id: str) -> LessonProgressRecord | None:
        """Get a single lesson record; None when the server has no record."""
        if not lesson_id:
            msg = "lesson_id is required"
            raise ValueError(msg)

        try:
            data = await self._request("GET", f"/progress/lessons/{quote(lesson_id, safe='')}")
        except ProgressApiError as e:
            if e.status_code == 404:
                return None
            raise

        # The lesson endpoint answers {lesson, progress, quizAttempts}
        if isinstance(data, dict) and isinstance(data.get("progress"), dict):
            data = {"lessonId": lesson_id, **data["progress"]}
        if not isinstance(data, dict) or not data:
            return None
        data.setdefault("lessonId", lesson_id)
        return LessonProgressRecord.model_validate(data)

    async def update_lesson_progress(
        self, lesson_id: str, update: LessonProgressUpdate
    ) -> UpdateLessonProgressResult:
        """Upsert lesson progress; the server recalculates module aggregates."""
        if not lesson_id:
            msg = "lesson_id is required"
            raise ValueError(msg)

        body = update.to_body()
        logger.debug(f"PUT lesson progress {lesson_id}: {body}")
        try:
            data = await self._request("PUT", f"/progress/lesson/{quote(lesson_id, safe='')}", json=body)
        except ProgressApiError as e:
            if e.status_code == 404 and not isinstance(e, ProgressNotFoundError):
                raise ProgressNotFoundError("Lesson", lesson_id, payload=e.payload) from e
            raise

        if isinstance(data, dict) and "lessonProgress" not in data:
            # Bare lesson record
            data = {"lessonProgress": {"lessonId": lesson_id, **data}}
        return UpdateLessonProgressResult.model_validate(data)
