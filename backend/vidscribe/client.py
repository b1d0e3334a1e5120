"""Async HTTP client for the transcription API.

Wraps submission, status polling, cancellation and the usage summary behind
typed responses. ``wait_for_completion`` polls until the job reaches a
terminal state and stops on the first terminal observation.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from vidscribe.config import settings
from vidscribe.logging_config import get_logger
from vidscribe.models.transcription_job import TERMINAL_STATUSES
from vidscribe.schemas.transcription import (
    CancelResponse,
    JobStatusResponse,
    TranscribeResponse,
)
from vidscribe.schemas.usage import UsageResponse

logger = get_logger(__name__)

StatusCallback = Callable[[JobStatusResponse], Union[None, Awaitable[None]]]


class StatusClientError(Exception):
    """Raised when the API rejects a request or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Any = None,
        retryable: bool = False,
    ):
        self.message = message
        self.status_code = status_code
        self.detail = detail
        self.retryable = retryable
        super().__init__(message)


def _error_from_response(response: httpx.Response) -> StatusClientError:
    detail: Any = None
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = response.text or None

    if isinstance(detail, dict):
        message = detail.get("message") or detail.get("reason") or response.reason_phrase
    elif isinstance(detail, str) and detail:
        message = detail
    else:
        message = response.reason_phrase or f"HTTP {response.status_code}"

    return StatusClientError(
        message,
        status_code=response.status_code,
        detail=detail,
        retryable=response.status_code == 429 or response.status_code >= 500,
    )


class TranscriptionClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 30.0,
        poll_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.status_poll_interval_seconds
        )
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "TranscriptionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise StatusClientError(f"Request timed out: {exc}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise StatusClientError(f"Request failed: {exc}", retryable=True) from exc

        if not response.is_success:
            raise _error_from_response(response)
        return response.json()

    async def submit(
        self,
        video_id: str,
        duration_seconds: float,
        video_analysis_id: Optional[str] = None,
    ) -> TranscribeResponse:
        body: dict[str, Any] = {"videoId": video_id, "durationSeconds": duration_seconds}
        if video_analysis_id:
            body["videoAnalysisId"] = video_analysis_id
        data = await self._request("POST", "/transcribe", json=body)
        return TranscribeResponse.model_validate(data)

    async def status(self, job_id: str) -> JobStatusResponse:
        data = await self._request("GET", "/transcribe/status", params={"jobId": job_id})
        return JobStatusResponse.model_validate(data)

    async def cancel(self, job_id: str) -> CancelResponse:
        data = await self._request("POST", "/transcribe/cancel", json={"jobId": job_id})
        return CancelResponse.model_validate(data)

    async def usage(self) -> UsageResponse:
        data = await self._request("GET", "/transcription-usage")
        return UsageResponse.model_validate(data)

    async def wait_for_completion(
        self,
        job_id: str,
        on_update: Optional[StatusCallback] = None,
        timeout: Optional[float] = None,
    ) -> JobStatusResponse:
        """Poll a job until it is completed, failed or cancelled.

        Transient errors (timeouts, 429, 5xx) are logged and polling goes on;
        any other error propagates.

        Raises:
            StatusClientError: on a non-retryable API error, or when ``timeout``
                seconds pass without a terminal observation
        """
        deadline = time.monotonic() + timeout if timeout is not None else None

        while True:
            try:
                current = await self.status(job_id)
            except StatusClientError as exc:
                if not exc.retryable:
                    raise
                logger.warning("Status poll for job %s failed: %s", job_id, exc.message)
            else:
                if on_update is not None:
                    result = on_update(current)
                    if inspect.isawaitable(result):
                        await result
                if current.status in TERMINAL_STATUSES:
                    return current

            if deadline is not None and time.monotonic() >= deadline:
                raise StatusClientError(
                    f"Timed out waiting for job {job_id}", retryable=True
                )
            await self._sleep(self.poll_interval)


__all__ = ["StatusClientError", "TranscriptionClient"]
