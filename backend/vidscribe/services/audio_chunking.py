"""Time-based audio splitting for inputs too large for a single transcription call."""

from __future__ import annotations

import asyncio
import math
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from vidscribe.config import settings
from vidscribe.logging_config import get_logger
from vidscribe.services.speech_to_text import AudioChunk, AudioInput, TranscriptionError

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ChunkPlanEntry:
    index: int
    start_seconds: float
    duration_seconds: float


def needs_chunking(audio: AudioInput, threshold_bytes: Optional[int] = None) -> bool:
    threshold = threshold_bytes if threshold_bytes is not None else settings.chunk_threshold_bytes
    return audio.size >= threshold


def create_chunk_plan(duration_seconds: float, chunk_seconds: int) -> List[ChunkPlanEntry]:
    """Cut ``duration_seconds`` into back-to-back windows of ``chunk_seconds``."""
    if chunk_seconds <= 0:
        raise ValueError("chunk_seconds must be positive")
    if duration_seconds <= 0:
        return []
    count = math.ceil(duration_seconds / chunk_seconds)
    plan = []
    for index in range(count):
        start = float(index * chunk_seconds)
        plan.append(
            ChunkPlanEntry(
                index=index,
                start_seconds=start,
                duration_seconds=min(float(chunk_seconds), duration_seconds - start),
            )
        )
    return plan


def _import_ffmpeg():
    try:
        import ffmpeg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("ffmpeg-python not installed") from exc
    return ffmpeg


def probe_duration_seconds(path: Path) -> Optional[float]:
    """Best-effort duration probe, returning None when ffmpeg cannot tell."""
    ffmpeg = _import_ffmpeg()
    try:
        probe = ffmpeg.probe(str(path))
    except ffmpeg.Error as exc:
        logger.warning("Could not probe duration for %s: %s", path, exc)
        return None
    duration = (probe.get("format") or {}).get("duration")
    return float(duration) if duration is not None else None


def _split_sync(
    audio: AudioInput, chunk_seconds: int, duration_hint: Optional[float]
) -> List[AudioChunk]:
    ffmpeg = _import_ffmpeg()
    extension = audio.extension or "mp3"

    with tempfile.TemporaryDirectory(prefix="vidscribe-chunks-") as workdir:
        source = Path(workdir) / f"source.{extension}"
        source.write_bytes(audio.data)

        duration = probe_duration_seconds(source) or duration_hint
        if not duration:
            raise TranscriptionError(
                "Could not determine audio duration for chunking", retryable=False
            )

        chunks: List[AudioChunk] = []
        for entry in create_chunk_plan(duration, chunk_seconds):
            target = Path(workdir) / f"chunk_{entry.index:03d}.{extension}"
            stream = ffmpeg.input(str(source), ss=entry.start_seconds, t=entry.duration_seconds)
            out = ffmpeg.output(stream, str(target), acodec="copy")
            try:
                ffmpeg.run(out, overwrite_output=True, quiet=True)
            except ffmpeg.Error as exc:
                raise TranscriptionError(
                    f"Failed to split audio chunk {entry.index}", retryable=False
                ) from exc
            chunks.append(
                AudioChunk(
                    audio=AudioInput(
                        data=target.read_bytes(),
                        filename=f"{Path(audio.filename).stem}-{entry.index:03d}.{extension}",
                        content_type=audio.content_type,
                    ),
                    index=entry.index,
                    offset_seconds=entry.start_seconds,
                    duration_seconds=entry.duration_seconds,
                )
            )
    return chunks


async def split_audio(
    audio: AudioInput,
    chunk_seconds: Optional[int] = None,
    duration_hint: Optional[float] = None,
) -> List[AudioChunk]:
    """Split ``audio`` into time-based chunks carrying their offsets."""
    chunk_seconds = chunk_seconds or settings.chunk_duration_seconds
    chunks = await asyncio.to_thread(_split_sync, audio, chunk_seconds, duration_hint)
    logger.info(
        "Split %s bytes of audio into %s chunk(s) of up to %ss",
        audio.size,
        len(chunks),
        chunk_seconds,
    )
    return chunks


def single_chunk(audio: AudioInput, duration_seconds: float = 0.0) -> List[AudioChunk]:
    return [AudioChunk(audio=audio, index=0, offset_seconds=0.0, duration_seconds=duration_seconds)]


__all__ = [
    "ChunkPlanEntry",
    "create_chunk_plan",
    "needs_chunking",
    "probe_duration_seconds",
    "single_chunk",
    "split_audio",
]
