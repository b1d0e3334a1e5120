"""Transcription job orchestration.

Drives one job through ``pending -> downloading -> transcribing -> completed``.
Every status change is a conditional update against the expected current
status, so a job cancelled while an upstream call is in flight is noticed at
the next transition instead of being overwritten. Minutes are charged only
after a transcript exists and are refunded on every path that does not end
in ``completed``.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

import aiofiles
import httpx
from sqlalchemy import case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from vidscribe.config import settings
from vidscribe.logging_config import get_logger
from vidscribe.models.profile import Profile
from vidscribe.models.transcription_job import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    JobStatus,
    TranscriptionJob,
)
from vidscribe.services.audio_chunking import needs_chunking, single_chunk, split_audio
from vidscribe.services.cobalt_client import AudioExtractionError, CobaltClient
from vidscribe.services.credit_ledger import (
    CreditLedger,
    CreditReason,
    RefundResult,
    billing_period_for,
    ledger as default_ledger,
    minutes_for_duration,
    subscription_limit_for,
)
from vidscribe.services.fallback import OperationAborted, with_fallback
from vidscribe.services.speech_to_text import (
    AudioInput,
    SpeechToTextService,
    TranscriptionError,
    TranscriptionProgress,
)

logger = get_logger(__name__)

STAGE_DOWNLOADING = "Downloading audio from YouTube"
STAGE_TRANSCRIBING = "Transcribing audio with AI"
STAGE_UPLOADING = "Uploading audio to AI"
STAGE_PROCESSING = "Processing transcript"
STAGE_FINALIZING = "Finalizing transcript"
STAGE_COMPLETE = "Complete"

DOWNLOAD_FAILED_MESSAGE = "Failed to download audio from YouTube"
TRANSCRIPTION_FAILED_MESSAGE = "AI transcription failed"
UNEXPECTED_ERROR_MESSAGE = "Unexpected processing error"

PROGRESS_DOWNLOADING = 10
PROGRESS_TRANSCRIBING = 30
PROGRESS_TRANSCRIBED = 90
PROGRESS_CHARGED = 95
PROGRESS_COMPLETE = 100


class JobNotFoundError(LookupError):
    """Raised when the requested job does not exist."""


class JobNotCancellableError(Exception):
    """Raised when a cancel request targets a job outside the cancellable states."""

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Cannot cancel job with status: {status}")


class JobCancelledError(OperationAborted):
    """Raised inside the pipeline once the job has left the expected status."""

    def __init__(self, job_id: str, status: Optional[str]):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is no longer active (status={status})")


@dataclass(frozen=True, slots=True)
class JobOutcome:
    status: str
    segment_count: int = 0
    duration: Optional[float] = None
    language: Optional[str] = None
    processing_ms: int = 0
    error_message: Optional[str] = None


def _lease_deadline() -> datetime:
    return datetime.utcnow() + timedelta(seconds=settings.job_lease_seconds)


def insufficient_credits_message(reason: CreditReason, minutes: int) -> str:
    """Failure message for a denied charge. Every denial reads as INSUFFICIENT_CREDITS."""
    if reason == CreditReason.INSUFFICIENT_CREDITS:
        return (
            f"INSUFFICIENT_CREDITS: {minutes} transcription minute(s) required "
            "but the remaining balance is too low"
        )
    return (
        f"INSUFFICIENT_CREDITS: {minutes} transcription minute(s) could not be charged "
        f"({reason.value})"
    )


async def _transition(
    db: AsyncSession, job_id: str, from_statuses: Iterable[str], **values
) -> bool:
    """Apply ``values`` only while the job is in one of ``from_statuses``."""
    values.setdefault("updated_at", datetime.utcnow())
    result = await db.execute(
        update(TranscriptionJob)
        .where(
            TranscriptionJob.id == job_id,
            TranscriptionJob.status.in_(list(from_statuses)),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _write_progress(
    db: AsyncSession, job_id: str, progress: int, stage: str, **extra
) -> bool:
    """Best-effort progress write while the job is active.

    The lease is renewed on every write. Progress itself never goes down, so a
    cascade fallback that restarts its sub-progress keeps the higher value.
    Returns False when the job is no longer active or the write failed.
    """
    try:
        result = await db.execute(
            update(TranscriptionJob)
            .where(
                TranscriptionJob.id == job_id,
                TranscriptionJob.status.in_(list(ACTIVE_STATUSES)),
            )
            .values(
                progress=case(
                    (TranscriptionJob.progress < progress, progress),
                    else_=TranscriptionJob.progress,
                ),
                current_stage=stage,
                lease_expires_at=_lease_deadline(),
                updated_at=datetime.utcnow(),
                **extra,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1
    except SQLAlchemyError as exc:
        logger.warning("Progress update failed for job %s: %s", job_id, exc)
        await db.rollback()
        return False


async def _current_status(db: AsyncSession, job_id: str) -> Optional[str]:
    result = await db.execute(
        select(TranscriptionJob.status).where(TranscriptionJob.id == job_id)
    )
    return result.scalar_one_or_none()


async def fail_job(
    db: AsyncSession,
    job_id: str,
    message: str,
    ledger: CreditLedger,
    *,
    from_statuses: Iterable[str] = ACTIVE_STATUSES,
) -> bool:
    """Mark the job failed, then refund its minutes.

    The status flips first so a completion racing this call loses its own
    transition and refunds on its way out. Usage left behind by a refund that
    raised is picked up by :func:`~vidscribe.services.job_queue.refund_orphaned_usage`.
    """
    from_statuses = list(from_statuses)
    failed = await _transition(
        db,
        job_id,
        from_statuses,
        status=JobStatus.FAILED.value,
        error_message=message,
        current_stage=None,
        completed_at=datetime.utcnow(),
        lease_expires_at=None,
    )
    if not failed:
        return False
    logger.warning("Job %s failed: %s", job_id, message)
    await ledger.refund(job_id)
    return True


async def _stand_down(
    db: AsyncSession, job_id: str, ledger: CreditLedger, context: str
) -> JobOutcome:
    """Stop after losing a transition to a cancel, a reaper or another invocation."""
    status = await _current_status(db, job_id) or JobStatus.CANCELLED.value
    if status in (JobStatus.CANCELLED.value, JobStatus.FAILED.value):
        await ledger.refund(job_id)
    logger.info("Job %s left the pipeline %s (status=%s)", job_id, context, status)
    return JobOutcome(status=status)


async def _abort(db: AsyncSession, job_id: str, message: str, ledger: CreditLedger) -> JobOutcome:
    if await fail_job(db, job_id, message, ledger):
        return JobOutcome(status=JobStatus.FAILED.value, error_message=message)
    return await _stand_down(db, job_id, ledger, "while failing")


async def _retain_audio(job_id: str, audio: AudioInput) -> str:
    directory = Path(settings.media_storage_path)
    directory.mkdir(parents=True, exist_ok=True)
    destination = directory / f"{job_id}.{audio.extension or 'mp3'}"
    async with aiofiles.open(destination, "wb") as buffer:
        await buffer.write(audio.data)
    return str(destination)


def _status_checkpoint(db: AsyncSession, job_id: str, expected: str):
    """Build a checkpoint that raises :class:`JobCancelledError` once the job leaves ``expected``."""

    async def checkpoint() -> None:
        status = await _current_status(db, job_id)
        if status != expected:
            raise JobCancelledError(job_id, status)

    return checkpoint


def _is_retryable_download(exc: BaseException) -> bool:
    return isinstance(exc, AudioExtractionError) and exc.retryable


def _stage_label(progress: TranscriptionProgress) -> str:
    if progress.stage == "uploading":
        return STAGE_UPLOADING
    if progress.stage == "processing":
        return STAGE_PROCESSING
    return STAGE_TRANSCRIBING


async def process_transcription_job(
    job_id: str,
    db: AsyncSession,
    *,
    extractor: Optional[CobaltClient] = None,
    transcriber: Optional[SpeechToTextService] = None,
    ledger: Optional[CreditLedger] = None,
) -> JobOutcome:
    """Run a pending job to a terminal state.

    Args:
        job_id: Job UUID
        db: Database session used for job state writes
        extractor: Audio extraction adapter (defaults to :class:`CobaltClient`)
        transcriber: Speech-to-text adapter (defaults to :class:`SpeechToTextService`)
        ledger: Credit ledger (defaults to the module-level ledger)

    Returns:
        The outcome of this invocation. Already-terminal jobs are returned as-is.
    """
    ledger = ledger or default_ledger
    started = time.monotonic()

    result = await db.execute(select(TranscriptionJob).where(TranscriptionJob.id == job_id))
    job = result.scalar_one_or_none()
    if job is None:
        raise JobNotFoundError(job_id)
    if job.status in TERMINAL_STATUSES:
        logger.info("Job %s is already %s, skipping", job_id, job.status)
        return JobOutcome(status=job.status)

    user_id = job.user_id
    video_id = job.video_id
    duration_hint = float(job.duration_seconds or 0)

    profile = await db.get(Profile, user_id)
    window = billing_period_for(profile)
    subscription_limit = subscription_limit_for(profile.subscription_tier if profile else None)

    claimed = await _transition(
        db,
        job_id,
        [JobStatus.PENDING.value],
        status=JobStatus.DOWNLOADING.value,
        progress=PROGRESS_DOWNLOADING,
        current_stage=STAGE_DOWNLOADING,
        started_at=datetime.utcnow(),
        lease_expires_at=_lease_deadline(),
    )
    if not claimed:
        return await _stand_down(db, job_id, ledger, "before download")
    logger.info("Processing job %s for video %s", job_id, video_id)

    extractor = extractor or CobaltClient()
    transcriber = transcriber or SpeechToTextService()

    try:
        # Stage 1: download
        try:
            payload = await with_fallback(
                [video_id],
                lambda vid, attempt: extractor.extract_audio(vid),
                is_retryable=_is_retryable_download,
                max_attempts=settings.download_max_attempts,
                base_delay=settings.download_retry_base_delay_seconds,
                checkpoint=_status_checkpoint(db, job_id, JobStatus.DOWNLOADING.value),
            )
        except JobCancelledError:
            return await _stand_down(db, job_id, ledger, "during download")
        except AudioExtractionError as exc:
            return await _abort(db, job_id, f"{DOWNLOAD_FAILED_MESSAGE}: {exc.message}", ledger)
        logger.info("Audio downloaded for job %s: %s bytes", job_id, payload.size)

        audio = AudioInput(
            data=payload.data, filename=payload.filename, content_type=payload.content_type
        )

        # Stage 2: transcribe
        if not await _transition(
            db,
            job_id,
            [JobStatus.DOWNLOADING.value],
            status=JobStatus.TRANSCRIBING.value,
            progress=PROGRESS_TRANSCRIBING,
            current_stage=STAGE_TRANSCRIBING,
            lease_expires_at=_lease_deadline(),
        ):
            return await _stand_down(db, job_id, ledger, "after download")

        if settings.retain_audio:
            storage_path = await _retain_audio(job_id, audio)
            await _write_progress(
                db, job_id, PROGRESS_TRANSCRIBING, STAGE_TRANSCRIBING, audio_storage_path=storage_path
            )

        try:
            if needs_chunking(audio):
                chunks = await split_audio(audio, duration_hint=duration_hint or None)
            else:
                chunks = single_chunk(audio, duration_hint)
            total_chunks = len(chunks)
            if total_chunks > 1:
                await _write_progress(
                    db,
                    job_id,
                    PROGRESS_TRANSCRIBING,
                    STAGE_TRANSCRIBING,
                    total_chunks=total_chunks,
                    completed_chunks=0,
                )

            band = PROGRESS_TRANSCRIBED - PROGRESS_TRANSCRIBING
            still_transcribing = _status_checkpoint(db, job_id, JobStatus.TRANSCRIBING.value)

            async def on_chunk_progress(index: int, progress: TranscriptionProgress) -> None:
                overall = (index + progress.progress / 100) / total_chunks
                if not await _write_progress(
                    db,
                    job_id,
                    PROGRESS_TRANSCRIBING + math.floor(overall * band),
                    _stage_label(progress),
                ):
                    await still_transcribing()

            async def on_chunk_done(index: int) -> None:
                if not await _write_progress(
                    db,
                    job_id,
                    PROGRESS_TRANSCRIBING + math.floor((index + 1) / total_chunks * band),
                    STAGE_TRANSCRIBING,
                    completed_chunks=index + 1,
                ):
                    await still_transcribing()

            transcript = await transcriber.transcribe_chunks(
                chunks,
                on_chunk_progress=on_chunk_progress,
                on_chunk_done=on_chunk_done if total_chunks > 1 else None,
                checkpoint=still_transcribing,
            )
        except JobCancelledError:
            return await _stand_down(db, job_id, ledger, "during transcription")
        except (TranscriptionError, httpx.HTTPError) as exc:
            return await _abort(db, job_id, f"{TRANSCRIPTION_FAILED_MESSAGE}: {exc}", ledger)
        logger.info(
            "Transcription finished for job %s: %s segments", job_id, len(transcript.segments)
        )

        # Stage 3: charge minutes
        await _write_progress(db, job_id, PROGRESS_TRANSCRIBED, STAGE_FINALIZING)
        if await _current_status(db, job_id) != JobStatus.TRANSCRIBING.value:
            return await _stand_down(db, job_id, ledger, "before charging")

        duration = transcript.duration if transcript.duration > 0 else duration_hint
        minutes = minutes_for_duration(duration)
        consumed = await ledger.consume_atomic(user_id, job_id, minutes, subscription_limit, window)
        if not consumed.allowed:
            message = insufficient_credits_message(consumed.reason, minutes)
            return await _abort(db, job_id, message, ledger)
        await _write_progress(db, job_id, PROGRESS_CHARGED, STAGE_FINALIZING)

        # Stage 4: persist
        if not await _transition(
            db,
            job_id,
            [JobStatus.TRANSCRIBING.value],
            status=JobStatus.COMPLETED.value,
            progress=PROGRESS_COMPLETE,
            current_stage=STAGE_COMPLETE,
            transcript_data=transcript.segments_as_dicts(),
            language=transcript.language,
            duration_seconds=math.ceil(duration),
            completed_at=datetime.utcnow(),
            lease_expires_at=None,
            error_message=None,
        ):
            return await _stand_down(db, job_id, ledger, "before completion")

    except Exception as exc:
        logger.exception("Job %s failed unexpectedly: %s", job_id, exc)
        await db.rollback()
        return await _abort(db, job_id, UNEXPECTED_ERROR_MESSAGE, ledger)

    processing_ms = int((time.monotonic() - started) * 1000)
    logger.info("Job %s completed in %sms (%s minute(s) charged)", job_id, processing_ms, minutes)
    return JobOutcome(
        status=JobStatus.COMPLETED.value,
        segment_count=len(transcript.segments),
        duration=duration,
        language=transcript.language,
        processing_ms=processing_ms,
    )


async def cancel_transcription_job(
    job_id: str, db: AsyncSession, *, ledger: Optional[CreditLedger] = None
) -> RefundResult:
    """Flip a cancellable job to ``cancelled`` and refund its minutes.

    The flip happens first so the in-flight invocation loses its next
    transition; that invocation refunds again on the way out, which is a
    no-op once the rows are gone.
    """
    ledger = ledger or default_ledger
    status = await _current_status(db, job_id)
    if status is None:
        raise JobNotFoundError(job_id)

    cancelled = await _transition(
        db,
        job_id,
        CANCELLABLE_STATUSES,
        status=JobStatus.CANCELLED.value,
        current_stage=None,
        completed_at=datetime.utcnow(),
        lease_expires_at=None,
    )
    if not cancelled:
        raise JobNotCancellableError(job_id, await _current_status(db, job_id) or status)

    refund = await ledger.refund(job_id)
    logger.info(
        "Job %s cancelled (refunded %s minute(s))", job_id, refund.minutes_refunded
    )
    return refund


__all__ = [
    "JobCancelledError",
    "JobNotCancellableError",
    "JobNotFoundError",
    "JobOutcome",
    "cancel_transcription_job",
    "fail_job",
    "process_transcription_job",
]
