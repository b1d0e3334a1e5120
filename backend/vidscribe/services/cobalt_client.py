"""Audio extraction through a Cobalt-compatible media service.

The service resolves a video identifier to a downloadable audio stream. It
answers with one of three shapes (``tunnel``/``redirect`` carry a direct URL,
``picker`` lists candidate streams) or with ``error`` and a code from a closed
set. This client performs no retries of its own: the retryable flag on
:class:`AudioExtractionError` tells the job orchestrator whether another
attempt is worthwhile.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from vidscribe.config import settings
from vidscribe.logging_config import get_logger

logger = get_logger(__name__)

WATCH_URL_TEMPLATE = "https://www.youtube.com/watch?v={video_id}"
DEFAULT_CONTENT_TYPE = "audio/mpeg"


class CobaltErrorCode:
    INVALID_URL = "error.api.link.invalid"
    UNSUPPORTED_SERVICE = "error.api.service.unsupported"
    CONTENT_UNAVAILABLE = "error.api.content.unavailable"
    RATE_LIMITED = "error.api.rate_exceeded"
    FETCH_FAILED = "error.api.fetch.fail"
    AGE_RESTRICTED = "error.api.youtube.age_restricted"
    LOGIN_REQUIRED = "error.api.youtube.login_required"

    # Raised locally, never sent by the service.
    UNEXPECTED_RESPONSE = "unexpected_response"
    NO_AUDIO_STREAM = "no_audio_stream"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"
    DOWNLOAD_FAILED = "download_failed"


ERROR_MESSAGES = {
    CobaltErrorCode.INVALID_URL: "Invalid YouTube URL",
    CobaltErrorCode.UNSUPPORTED_SERVICE: "This service is not supported",
    CobaltErrorCode.CONTENT_UNAVAILABLE: "Video is unavailable or private",
    CobaltErrorCode.RATE_LIMITED: "Rate limit exceeded, please try again later",
    CobaltErrorCode.FETCH_FAILED: "Failed to fetch video data",
    CobaltErrorCode.AGE_RESTRICTED: "Video is age-restricted",
    CobaltErrorCode.LOGIN_REQUIRED: "Video requires YouTube login",
}
UNKNOWN_ERROR_MESSAGE = "Unknown error occurred"

RETRYABLE_CODES = frozenset({CobaltErrorCode.RATE_LIMITED, CobaltErrorCode.FETCH_FAILED})


def error_message_for(code: str) -> str:
    return ERROR_MESSAGES.get(code, UNKNOWN_ERROR_MESSAGE)


class AudioExtractionError(Exception):
    """Extraction failure with a stable code and a retryable flag."""

    def __init__(self, code: str, message: str, retryable: Optional[bool] = None):
        self.code = code
        self.message = message
        self.retryable = retryable if retryable is not None else code in RETRYABLE_CODES
        super().__init__(f"{message} ({code})")


@dataclass(frozen=True, slots=True)
class AudioUrl:
    url: str
    filename: str


@dataclass(frozen=True, slots=True)
class AudioPayload:
    data: bytes
    content_type: str
    size: int
    filename: str


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class CobaltClient:
    """Resolve and download audio for a remote video."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or settings.cobalt_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.cobalt_api_key
        self.timeout = timeout if timeout is not None else settings.cobalt_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Api-Key {self.api_key}"
        return headers

    async def resolve_audio_url(self, video_id: str) -> AudioUrl:
        """Ask the service for a downloadable audio URL for ``video_id``."""
        body = {
            "url": WATCH_URL_TEMPLATE.format(video_id=video_id),
            "downloadMode": "audio",
            "audioFormat": "mp3",
            "audioBitrate": "128",
            "filenameStyle": "basic",
        }
        try:
            async with self._client() as client:
                response = await client.post(f"{self.api_url}/", json=body, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise AudioExtractionError(
                CobaltErrorCode.NETWORK_ERROR, "Audio extraction service timed out", retryable=True
            ) from exc
        except httpx.TransportError as exc:
            raise AudioExtractionError(
                CobaltErrorCode.NETWORK_ERROR,
                f"Could not reach audio extraction service: {exc}",
                retryable=True,
            ) from exc

        data = None
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("status") == "error":
            error = data.get("error") or {}
            code = error.get("code") if isinstance(error, dict) else None
            code = code or "unknown"
            logger.warning("Cobalt rejected video %s: %s", video_id, code)
            raise AudioExtractionError(code, error_message_for(code))

        if not response.is_success:
            raise AudioExtractionError(
                CobaltErrorCode.HTTP_ERROR,
                f"Cobalt API request failed: {response.status_code} {response.reason_phrase}",
                retryable=_is_retryable_status(response.status_code),
            )

        if not isinstance(data, dict):
            raise AudioExtractionError(
                CobaltErrorCode.UNEXPECTED_RESPONSE,
                "Cobalt API returned unexpected response format",
                retryable=False,
            )

        status = data.get("status")
        if status == "picker":
            for option in data.get("picker") or []:
                if isinstance(option, dict) and option.get("type") == "audio" and option.get("url"):
                    return AudioUrl(url=option["url"], filename=f"{video_id}.mp3")
            raise AudioExtractionError(
                CobaltErrorCode.NO_AUDIO_STREAM,
                "No audio stream offered for this video",
                retryable=False,
            )

        if status in ("tunnel", "redirect") and data.get("url"):
            return AudioUrl(url=data["url"], filename=data.get("filename") or f"{video_id}.mp3")

        raise AudioExtractionError(
            CobaltErrorCode.UNEXPECTED_RESPONSE,
            "Cobalt API returned unexpected response format",
            retryable=False,
        )

    async def extract_audio(self, video_id: str) -> AudioPayload:
        """Resolve and download the audio for ``video_id``."""
        resolved = await self.resolve_audio_url(video_id)
        try:
            async with self._client() as client:
                response = await client.get(resolved.url, follow_redirects=True)
        except httpx.TimeoutException as exc:
            raise AudioExtractionError(
                CobaltErrorCode.DOWNLOAD_FAILED, "Audio download timed out", retryable=True
            ) from exc
        except httpx.TransportError as exc:
            raise AudioExtractionError(
                CobaltErrorCode.DOWNLOAD_FAILED, f"Audio download failed: {exc}", retryable=True
            ) from exc

        if not response.is_success:
            raise AudioExtractionError(
                CobaltErrorCode.DOWNLOAD_FAILED,
                f"Failed to download audio: {response.status_code} {response.reason_phrase}",
                retryable=_is_retryable_status(response.status_code),
            )

        data = response.content
        content_type = response.headers.get("content-type") or DEFAULT_CONTENT_TYPE
        content_length = response.headers.get("content-length")
        try:
            size = int(content_length) if content_length else len(data)
        except ValueError:
            size = len(data)

        logger.info("Downloaded %s bytes of audio for video %s", size, video_id)
        return AudioPayload(
            data=data, content_type=content_type, size=size, filename=resolved.filename
        )

    async def can_extract_audio(self, video_id: str) -> tuple[bool, Optional[str]]:
        """Lightweight probe: resolve the URL without downloading."""
        try:
            await self.resolve_audio_url(video_id)
        except AudioExtractionError as exc:
            return False, exc.message
        return True, None


__all__ = [
    "AudioExtractionError",
    "AudioPayload",
    "AudioUrl",
    "CobaltClient",
    "CobaltErrorCode",
    "error_message_for",
]
