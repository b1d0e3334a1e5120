"""Gemini speech-to-text provider.

Small payloads travel inline as base64. Payloads at or above the inline
threshold go through the Files API: a resumable upload followed by polling
until the file is ``ACTIVE``, after which every model in the cascade
references the same file URI.
"""

from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from vidscribe.config import settings
from vidscribe.logging_config import get_logger
from vidscribe.services.speech_to_text import (
    TRANSCRIPT_RESPONSE_SCHEMA,
    AudioInput,
    ProgressCallback,
    TranscriptionError,
    TranscriptionProvider,
    TranscriptionResult,
    build_transcription_prompt,
    emit_progress,
    parse_structured_transcript,
)

logger = get_logger(__name__)

FILE_STATE_PROCESSING = "PROCESSING"
FILE_STATE_ACTIVE = "ACTIVE"


@dataclass(frozen=True, slots=True)
class GeminiAudioPart:
    """Reference to the audio as Gemini expects it in a content part."""

    mime_type: str
    inline_data: Optional[str] = None
    file_uri: Optional[str] = None

    @property
    def is_staged(self) -> bool:
        return self.file_uri is not None

    def to_part(self) -> dict[str, Any]:
        if self.file_uri is not None:
            return {"file_data": {"mime_type": self.mime_type, "file_uri": self.file_uri}}
        return {"inline_data": {"mime_type": self.mime_type, "data": self.inline_data}}


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.text or response.reason_phrase


def _raise_for_status(response: httpx.Response, context: str) -> None:
    if response.is_success:
        return
    raise TranscriptionError(
        f"Gemini {context} failed ({response.status_code}): {_error_message(response)}",
        status_code=response.status_code,
    )


class GeminiTranscriptionProvider(TranscriptionProvider):
    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        *,
        inline_max_bytes: Optional[int] = None,
        poll_interval: Optional[float] = None,
        staging_timeout: Optional[float] = None,
        request_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.api_base = (api_base or settings.gemini_api_base).rstrip("/")
        self.inline_max_bytes = (
            inline_max_bytes if inline_max_bytes is not None else settings.stt_inline_max_bytes
        )
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else settings.stt_staging_poll_interval_seconds
        )
        self.staging_timeout = (
            staging_timeout if staging_timeout is not None else settings.stt_staging_timeout_seconds
        )
        self.request_timeout = (
            request_timeout if request_timeout is not None else settings.stt_request_timeout_seconds
        )
        self._transport = transport
        self._sleep = sleep

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.request_timeout, transport=self._transport)

    def _auth_headers(self) -> dict[str, str]:
        if not self.api_key:
            raise TranscriptionError("GEMINI_API_KEY is not configured", retryable=False)
        return {"x-goog-api-key": self.api_key}

    async def prepare(
        self, audio: AudioInput, on_progress: Optional[ProgressCallback] = None
    ) -> GeminiAudioPart:
        if audio.size < self.inline_max_bytes:
            await emit_progress(on_progress, "preparing", 10, "Encoding audio...")
            return GeminiAudioPart(
                mime_type=audio.mime_type,
                inline_data=base64.b64encode(audio.data).decode("ascii"),
            )
        return await self._upload_file(audio, on_progress)

    async def _upload_file(
        self, audio: AudioInput, on_progress: Optional[ProgressCallback]
    ) -> GeminiAudioPart:
        await emit_progress(on_progress, "uploading", 10, "Uploading audio file...")
        headers = self._auth_headers()
        mime_type = audio.mime_type

        async with self._client() as client:
            start = await client.post(
                f"{self.api_base}/upload/v1beta/files",
                headers={
                    **headers,
                    "X-Goog-Upload-Protocol": "resumable",
                    "X-Goog-Upload-Command": "start",
                    "X-Goog-Upload-Header-Content-Length": str(audio.size),
                    "X-Goog-Upload-Header-Content-Type": mime_type,
                    "Content-Type": "application/json",
                },
                json={"file": {"display_name": audio.filename}},
            )
            _raise_for_status(start, "upload start")
            upload_url = start.headers.get("x-goog-upload-url")
            if not upload_url:
                raise TranscriptionError(
                    "Gemini upload start returned no upload URL", retryable=False
                )

            uploaded = await client.post(
                upload_url,
                headers={
                    **headers,
                    "Content-Length": str(audio.size),
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                content=audio.data,
            )
            _raise_for_status(uploaded, "upload")
            file_info = (uploaded.json() or {}).get("file") or {}
            logger.info(
                "Uploaded %s bytes to Gemini Files API as %s", audio.size, file_info.get("name")
            )
            await emit_progress(
                on_progress, "uploading", 20, "Upload complete, waiting for processing..."
            )

            file_info = await self._wait_until_active(client, file_info)

        await emit_progress(on_progress, "uploading", 25, "File ready for transcription")
        return GeminiAudioPart(
            mime_type=file_info.get("mimeType") or mime_type,
            file_uri=file_info["uri"],
        )

    async def _wait_until_active(
        self, client: httpx.AsyncClient, file_info: dict[str, Any]
    ) -> dict[str, Any]:
        name = file_info.get("name")
        if not name:
            raise TranscriptionError("Gemini upload returned no file handle", retryable=False)

        deadline = time.monotonic() + self.staging_timeout
        while file_info.get("state", FILE_STATE_PROCESSING) == FILE_STATE_PROCESSING:
            if time.monotonic() >= deadline:
                raise TranscriptionError(
                    f"Timed out waiting for uploaded file {name} to become ready",
                    retryable=True,
                )
            await self._sleep(self.poll_interval)
            response = await client.get(
                f"{self.api_base}/v1beta/{name}", headers=self._auth_headers()
            )
            _raise_for_status(response, "file status")
            file_info = response.json() or {}

        state = file_info.get("state")
        if state != FILE_STATE_ACTIVE or not file_info.get("uri"):
            raise TranscriptionError(f"File upload failed: {state}", retryable=False)
        return file_info

    async def transcribe(
        self,
        prepared: GeminiAudioPart,
        model: str,
        language_hint: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TranscriptionResult:
        body = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": build_transcription_prompt(language_hint)},
                        prepared.to_part(),
                    ],
                }
            ],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": TRANSCRIPT_RESPONSE_SCHEMA,
            },
        }

        await emit_progress(
            on_progress, "transcribing", 40, "Transcribing audio with Gemini AI..."
        )
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.api_base}/v1beta/models/{model}:generateContent",
                    headers=self._auth_headers(),
                    json=body,
                )
        except httpx.TimeoutException as exc:
            raise TranscriptionError(f"Gemini request timed out: {exc}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise TranscriptionError(f"Gemini request failed: {exc}", retryable=True) from exc

        _raise_for_status(response, f"{model} request")
        await emit_progress(on_progress, "processing", 80, "Processing transcription results...")

        text = self._response_text(response.json())
        result = parse_structured_transcript(text, model=model)
        await emit_progress(on_progress, "processing", 100, "Transcription complete")
        return result

    @staticmethod
    def _response_text(payload: Any) -> str:
        if not isinstance(payload, dict):
            raise TranscriptionError("Gemini returned an unexpected response", retryable=False)
        feedback = payload.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise TranscriptionError(
                f"Gemini blocked the request: {feedback['blockReason']}", retryable=False
            )
        candidates = payload.get("candidates") or []
        if not candidates:
            raise TranscriptionError("Gemini returned no candidates", retryable=False)
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text:
            raise TranscriptionError("Gemini returned an empty response", retryable=False)
        return text


__all__ = ["GeminiAudioPart", "GeminiTranscriptionProvider"]
