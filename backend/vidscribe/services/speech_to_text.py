"""Speech-to-text adapter.

Transcribes an audio buffer into timestamped segments. Providers decide how
the audio reaches the remote model (inline or staged upload); this module
runs the ordered model cascade on top of them, validates the structured
output and merges independently transcribed chunks.
"""

from __future__ import annotations

import asyncio
import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import PurePosixPath
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from vidscribe.config import settings
from vidscribe.logging_config import get_logger
from vidscribe.services.fallback import with_fallback

logger = get_logger(__name__)

TOKENS_PER_SECOND = 32
USD_PER_MILLION_TOKENS = 1.0

SUPPORTED_FORMATS = (
    "mp3",
    "wav",
    "aiff",
    "aac",
    "ogg",
    "flac",
    "m4a",
    "webm",
    "mpeg",
    "mpga",
    "oga",
)

MIME_TYPE_MAP = {
    "mp3": "audio/mp3",
    "wav": "audio/wav",
    "aiff": "audio/aiff",
    "aac": "audio/aac",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
    "m4a": "audio/mp4",
    "webm": "audio/webm",
    "mpeg": "audio/mpeg",
    "mpga": "audio/mpeg",
    "oga": "audio/ogg",
}
DEFAULT_MIME_TYPE = "audio/mpeg"

RETRYABLE_STATUS_CODES = frozenset({429, 500, 503})
_RETRYABLE_MARKERS = ("503", "429", "overload", "rate limit", "quota")


@dataclass(frozen=True, slots=True)
class TranscriptSegment:
    text: str
    start: float
    duration: float

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "start": self.start, "duration": self.duration}


@dataclass(slots=True)
class TranscriptionResult:
    segments: List[TranscriptSegment]
    language: str
    duration: float
    model: Optional[str] = None

    @property
    def raw_text(self) -> str:
        return " ".join(segment.text for segment in self.segments)

    def segments_as_dicts(self) -> List[Dict[str, Any]]:
        return [segment.to_dict() for segment in self.segments]


@dataclass(frozen=True, slots=True)
class TranscriptionProgress:
    """Progress reported by a provider; ``progress`` is 0-100 within the call."""

    stage: str  # preparing | uploading | transcribing | processing
    progress: int
    message: Optional[str] = None


ProgressCallback = Callable[[TranscriptionProgress], Awaitable[None]]
Checkpoint = Callable[[], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class AudioInput:
    data: bytes
    filename: str = "audio.mp3"
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return PurePosixPath(self.filename).suffix.lstrip(".").lower()

    @property
    def mime_type(self) -> str:
        return mime_type_for(self.filename, self.content_type)


@dataclass(frozen=True, slots=True)
class AudioChunk:
    """A slice of a larger recording, transcribed independently."""

    audio: AudioInput
    index: int
    offset_seconds: float
    duration_seconds: float


@dataclass(slots=True)
class ChunkTranscription:
    offset_seconds: float
    result: TranscriptionResult


class TranscriptionError(Exception):
    """Speech-to-text failure with an optional upstream status code."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        self.message = message
        self.status_code = status_code
        if retryable is None:
            retryable = _looks_retryable(message, status_code)
        self.retryable = retryable
        super().__init__(message)


def _looks_retryable(message: str, status_code: Optional[int]) -> bool:
    if status_code is not None and status_code in RETRYABLE_STATUS_CODES:
        return True
    if status_code is not None and status_code >= 500:
        return True
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _RETRYABLE_MARKERS)


def is_retryable_error(exc: BaseException) -> bool:
    """Classify an error as transient (overload, throttling, 5xx, timeouts)."""
    if isinstance(exc, TranscriptionError):
        return exc.retryable
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    status_code = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if not isinstance(status_code, int):
        status_code = None
    return _looks_retryable(str(exc), status_code)


def mime_type_for(filename: Optional[str], content_type: Optional[str] = None) -> str:
    """Infer the audio MIME type, preferring an explicit audio content type."""
    if content_type and content_type.split(";")[0].strip().startswith("audio/"):
        return content_type.split(";")[0].strip()
    extension = PurePosixPath(filename or "").suffix.lstrip(".").lower()
    return MIME_TYPE_MAP.get(extension, DEFAULT_MIME_TYPE)


def is_supported_format(filename: str) -> bool:
    return PurePosixPath(filename).suffix.lstrip(".").lower() in SUPPORTED_FORMATS


def validate_audio(audio: AudioInput, max_bytes: Optional[int] = None) -> None:
    """Reject audio no provider can take. Raises a non-retryable error."""
    max_bytes = max_bytes if max_bytes is not None else settings.stt_max_audio_bytes
    if audio.size == 0:
        raise TranscriptionError("Audio file is empty", retryable=False)
    if audio.size > max_bytes:
        raise TranscriptionError(
            f"Audio file too large ({audio.size / 1024 / 1024:.1f}MB). "
            f"Maximum is {max_bytes / 1024 / 1024:.0f}MB.",
            retryable=False,
        )
    if audio.extension and not is_supported_format(audio.filename):
        raise TranscriptionError(
            f"Unsupported format. Supported: {', '.join(SUPPORTED_FORMATS)}",
            retryable=False,
        )


def estimate_audio_tokens(duration_seconds: float) -> int:
    return math.ceil(max(0.0, duration_seconds) * TOKENS_PER_SECOND)


def estimate_cost_cents(duration_seconds: float) -> float:
    """Estimated transcription cost in cents, rounded to 0.1 (minimum 0.1)."""
    tokens = estimate_audio_tokens(duration_seconds)
    cost_cents = tokens / 1_000_000 * USD_PER_MILLION_TOKENS * 100
    return max(0.1, round(cost_cents * 10) / 10)


def estimate_processing_seconds(duration_seconds: float) -> int:
    """Roughly five times faster than real time plus fixed overhead."""
    return math.ceil(max(0.0, duration_seconds) / 5) + 15


# Structured-output validation

class _SegmentPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str
    start: float = Field(ge=0)
    end: float = Field(ge=0)

    @model_validator(mode="after")
    def end_not_before_start(self) -> "_SegmentPayload":
        if self.end < self.start:
            raise ValueError("segment end precedes start")
        return self


class StructuredTranscript(BaseModel):
    """Shape every provider response is re-validated against."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    segments: List[_SegmentPayload]
    language: str
    total_duration: float = Field(alias="totalDuration", ge=0)


TRANSCRIPT_RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "segments": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "text": {"type": "STRING"},
                    "start": {"type": "NUMBER"},
                    "end": {"type": "NUMBER"},
                },
                "required": ["text", "start", "end"],
            },
        },
        "language": {"type": "STRING"},
        "totalDuration": {"type": "NUMBER"},
    },
    "required": ["segments", "language", "totalDuration"],
}


def parse_structured_transcript(payload: Any, model: Optional[str] = None) -> TranscriptionResult:
    """Validate a provider payload and convert it to start+duration segments.

    Fails closed: any shape violation raises a non-retryable
    :class:`TranscriptionError` and no partial transcript is returned.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise TranscriptionError(
                f"Transcription response is not valid JSON: {exc}", retryable=False
            ) from exc
    try:
        validated = StructuredTranscript.model_validate(payload)
    except ValidationError as exc:
        raise TranscriptionError(
            f"Transcription response failed validation: {exc.error_count()} error(s)",
            retryable=False,
        ) from exc

    segments = [
        TranscriptSegment(
            text=segment.text.strip(),
            start=segment.start,
            duration=segment.end - segment.start,
        )
        for segment in validated.segments
    ]
    return TranscriptionResult(
        segments=segments,
        language=validated.language,
        duration=validated.total_duration,
        model=model,
    )


def merge_chunk_transcriptions(chunks: Sequence[ChunkTranscription]) -> TranscriptionResult:
    """Merge independently transcribed chunks into one transcript.

    Chunks are ordered by offset, every segment start is shifted by its
    chunk's offset and the total duration is the furthest chunk end.
    """
    if not chunks:
        raise ValueError("No transcription results to merge")

    ordered = sorted(chunks, key=lambda chunk: chunk.offset_seconds)
    segments: List[TranscriptSegment] = []
    total_duration = 0.0
    for chunk in ordered:
        for segment in chunk.result.segments:
            segments.append(replace(segment, start=segment.start + chunk.offset_seconds))
        total_duration = max(total_duration, chunk.offset_seconds + chunk.result.duration)

    first = ordered[0].result
    return TranscriptionResult(
        segments=segments,
        language=first.language,
        duration=total_duration,
        model=first.model,
    )


async def emit_progress(
    on_progress: Optional[ProgressCallback],
    stage: str,
    progress: int,
    message: Optional[str] = None,
) -> None:
    if on_progress is None:
        return
    await on_progress(TranscriptionProgress(stage=stage, progress=progress, message=message))


class TranscriptionProvider(ABC):
    """A speech-to-text backend serving one or more models."""

    name: str = ""

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials for this provider are present."""

    @abstractmethod
    async def prepare(self, audio: AudioInput, on_progress: Optional[ProgressCallback] = None) -> Any:
        """Transfer the audio once; the handle is reused for every model."""

    @abstractmethod
    async def transcribe(
        self,
        prepared: Any,
        model: str,
        language_hint: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TranscriptionResult:
        """Transcribe previously prepared audio with ``model``."""


def build_transcription_prompt(language_hint: Optional[str] = None) -> str:
    language_instruction = f"The audio is in {language_hint}. " if language_hint else ""
    return (
        "You are an expert transcription service. Transcribe the provided audio file "
        "with precise timestamps.\n\n"
        f"{language_instruction}For each distinct segment of speech:\n"
        "1. Provide the exact spoken text\n"
        "2. Include the start time in seconds (decimal precision to 0.1s)\n"
        "3. Include the end time in seconds (decimal precision to 0.1s)\n\n"
        "Requirements:\n"
        "- Transcribe ALL spoken content accurately\n"
        "- Use proper punctuation and capitalization\n"
        "- Segment at natural sentence or phrase boundaries (roughly 5-15 seconds per segment)\n"
        "- Detect and report the primary language of the audio\n"
        "- Calculate the total duration of the audio\n\n"
        "Return a JSON object with:\n"
        '- "segments": array of {text, start, end} objects\n'
        '- "language": detected language code (e.g., "en", "es", "zh")\n'
        '- "totalDuration": total audio length in seconds'
    )


@dataclass
class _Candidate:
    provider: TranscriptionProvider
    model: str

    def __str__(self) -> str:
        return f"{self.provider.name}:{self.model}"


def _default_providers() -> Dict[str, TranscriptionProvider]:
    from vidscribe.services.gemini_transcription import GeminiTranscriptionProvider
    from vidscribe.services.whisper_transcription import WhisperTranscriptionProvider

    gemini = GeminiTranscriptionProvider()
    whisper = WhisperTranscriptionProvider()
    return {gemini.name: gemini, whisper.name: whisper}


class SpeechToTextService:
    """Runs the model cascade across the configured providers."""

    def __init__(
        self,
        providers: Optional[Dict[str, TranscriptionProvider]] = None,
        candidates: Optional[Sequence[tuple[str, str]]] = None,
        *,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.providers = providers if providers is not None else _default_providers()
        self.candidates = list(candidates) if candidates is not None else settings.stt_model_candidates
        self.max_attempts = max_attempts if max_attempts is not None else settings.stt_max_attempts
        self.base_delay = (
            base_delay if base_delay is not None else settings.stt_retry_base_delay_seconds
        )
        self._sleep = sleep

    def _ordered_candidates(self, preferred_model: Optional[str]) -> List[_Candidate]:
        pairs = list(self.candidates)
        if preferred_model:
            preferred = [pair for pair in pairs if pair[1] == preferred_model]
            if not preferred:
                provider_name = pairs[0][0] if pairs else "gemini"
                preferred = [(provider_name, preferred_model)]
            pairs = preferred + [pair for pair in pairs if pair[1] != preferred_model]

        ordered: List[_Candidate] = []
        for provider_name, model in pairs:
            provider = self.providers.get(provider_name)
            if provider is None:
                logger.warning("Unknown speech-to-text provider %s; skipping", provider_name)
                continue
            if not provider.is_configured():
                logger.debug("Provider %s has no credentials; skipping %s", provider_name, model)
                continue
            ordered.append(_Candidate(provider, model))
        return ordered

    async def transcribe(
        self,
        audio: AudioInput,
        language_hint: Optional[str] = None,
        model: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> TranscriptionResult:
        """Transcribe ``audio``, falling through the cascade on failure.

        ``checkpoint`` runs before every upstream attempt and may raise
        :class:`~vidscribe.services.fallback.OperationAborted` to stop the cascade.
        """
        await emit_progress(on_progress, "preparing", 0, "Preparing audio for transcription...")
        validate_audio(audio)

        candidates = self._ordered_candidates(model)
        if not candidates:
            raise TranscriptionError(
                "No speech-to-text provider is configured", retryable=False
            )

        prepared: Dict[str, Any] = {}

        async def attempt(candidate: _Candidate, attempt_number: int) -> TranscriptionResult:
            provider = candidate.provider
            if provider.name not in prepared:
                prepared[provider.name] = await provider.prepare(audio, on_progress)
            logger.info("Transcribing with %s (attempt %s)", candidate, attempt_number + 1)
            result = await provider.transcribe(
                prepared[provider.name], candidate.model, language_hint, on_progress
            )
            result.model = candidate.model
            return result

        result = await with_fallback(
            candidates,
            attempt,
            is_retryable=is_retryable_error,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
            checkpoint=checkpoint,
        )
        logger.info(
            "Transcription succeeded with %s: %s segments, %.1fs",
            result.model,
            len(result.segments),
            result.duration,
        )
        return result

    async def transcribe_chunks(
        self,
        chunks: Sequence[AudioChunk],
        language_hint: Optional[str] = None,
        model: Optional[str] = None,
        on_chunk_progress: Optional[Callable[[int, TranscriptionProgress], Awaitable[None]]] = None,
        on_chunk_done: Optional[Callable[[int], Awaitable[None]]] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> TranscriptionResult:
        """Transcribe chunks one after another and merge them by offset."""

        def forward(index: int) -> Optional[ProgressCallback]:
            if on_chunk_progress is None:
                return None

            async def callback(progress: TranscriptionProgress) -> None:
                await on_chunk_progress(index, progress)

            return callback

        results: List[ChunkTranscription] = []
        for chunk in chunks:
            if checkpoint is not None:
                await checkpoint()
            result = await self.transcribe(
                chunk.audio, language_hint, model, forward(chunk.index), checkpoint=checkpoint
            )
            if result.duration <= 0:
                result.duration = chunk.duration_seconds
            results.append(ChunkTranscription(offset_seconds=chunk.offset_seconds, result=result))
            if on_chunk_done is not None:
                await on_chunk_done(chunk.index)
        return merge_chunk_transcriptions(results)


__all__ = [
    "AudioChunk",
    "AudioInput",
    "ChunkTranscription",
    "SpeechToTextService",
    "StructuredTranscript",
    "TranscriptSegment",
    "TranscriptionError",
    "TranscriptionProgress",
    "TranscriptionProvider",
    "TranscriptionResult",
    "estimate_cost_cents",
    "estimate_processing_seconds",
    "is_retryable_error",
    "merge_chunk_transcriptions",
    "parse_structured_transcript",
    "validate_audio",
]
