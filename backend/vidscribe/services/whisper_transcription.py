"""OpenAI Whisper speech-to-text provider."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from vidscribe.config import settings
from vidscribe.logging_config import get_logger
from vidscribe.services.speech_to_text import (
    AudioInput,
    ProgressCallback,
    TranscriptionError,
    TranscriptionProvider,
    TranscriptionResult,
    emit_progress,
    parse_structured_transcript,
)

logger = get_logger(__name__)

MAX_FILE_SIZE_BYTES = 25 * 1024 * 1024


class WhisperTranscriptionProvider(TranscriptionProvider):
    """Multipart upload to ``audio/transcriptions`` with ``verbose_json`` output.

    The API has no staging step, so ``prepare`` only checks the size limit.
    Oversized audio raises a non-retryable error and the cascade moves on.
    """

    name = "whisper"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        *,
        request_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.api_url = api_url or settings.whisper_api_url
        self.request_timeout = (
            request_timeout if request_timeout is not None else settings.stt_request_timeout_seconds
        )
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def prepare(
        self, audio: AudioInput, on_progress: Optional[ProgressCallback] = None
    ) -> AudioInput:
        if audio.size > MAX_FILE_SIZE_BYTES:
            raise TranscriptionError(
                f"Audio file too large ({audio.size / 1024 / 1024:.1f}MB). "
                "Maximum size is 25MB. Please use chunked transcription for longer audio.",
                retryable=False,
            )
        return audio

    async def transcribe(
        self,
        prepared: AudioInput,
        model: str,
        language_hint: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TranscriptionResult:
        if not self.api_key:
            raise TranscriptionError("OPENAI_API_KEY is not configured", retryable=False)

        data = {"model": model, "response_format": "verbose_json"}
        if language_hint:
            data["language"] = language_hint
        files = {"file": (prepared.filename, prepared.data, prepared.mime_type)}

        await emit_progress(on_progress, "transcribing", 10, "Sending audio to Whisper API...")
        try:
            async with httpx.AsyncClient(
                timeout=self.request_timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.api_url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    data=data,
                    files=files,
                )
        except httpx.TimeoutException as exc:
            raise TranscriptionError(f"Whisper request timed out: {exc}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise TranscriptionError(f"Whisper request failed: {exc}", retryable=True) from exc

        if not response.is_success:
            message = response.text
            try:
                message = response.json().get("error", {}).get("message") or message
            except (ValueError, AttributeError):
                pass
            raise TranscriptionError(
                f"Whisper API error ({response.status_code}): {message}",
                status_code=response.status_code,
                retryable=response.status_code == 429 or response.status_code >= 500,
            )

        await emit_progress(on_progress, "processing", 80, "Processing transcription results...")
        result = parse_structured_transcript(self._to_structured(response.json()), model=model)
        await emit_progress(on_progress, "processing", 100, "Transcription complete")
        return result

    @staticmethod
    def _to_structured(payload: Any) -> Any:
        """Reshape a verbose_json body into the shared transcript schema."""
        if not isinstance(payload, dict):
            return payload
        return {
            "segments": [
                {"text": seg.get("text"), "start": seg.get("start"), "end": seg.get("end")}
                if isinstance(seg, dict)
                else seg
                for seg in payload.get("segments") or []
            ],
            "language": payload.get("language"),
            "totalDuration": payload.get("duration"),
        }


__all__ = ["WhisperTranscriptionProvider", "MAX_FILE_SIZE_BYTES"]
