"""Tests for the transcription job orchestrator."""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

import vidscribe.services.transcription as transcription_module
from vidscribe.database import AsyncSessionLocal, Base, engine
from vidscribe.models.profile import Profile
from vidscribe.models.transcription_job import JobStatus, TranscriptionJob
from vidscribe.models.transcription_usage import UsageRecord
from vidscribe.services.cobalt_client import AudioExtractionError, AudioPayload, CobaltErrorCode
from vidscribe.services.credit_ledger import CreditLedger, billing_period_for
from vidscribe.services.speech_to_text import (
    AudioChunk,
    AudioInput,
    SpeechToTextService,
    TranscriptionError,
    TranscriptionProgress,
    TranscriptionProvider,
    TranscriptionResult,
    TranscriptSegment,
)
from vidscribe.services.transcription import (
    DOWNLOAD_FAILED_MESSAGE,
    TRANSCRIPTION_FAILED_MESSAGE,
    JobCancelledError,
    JobNotCancellableError,
    JobNotFoundError,
    cancel_transcription_job,
    fail_job,
    process_transcription_job,
)


@pytest.fixture
async def test_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as session:
        session.add_all(
            [
                Profile(id=1, username="pro", subscription_tier="pro"),
                Profile(
                    id=2,
                    username="pro-topup",
                    subscription_tier="pro",
                    transcription_minutes_topup=20,
                ),
            ]
        )
        await session.commit()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


class FakeExtractor:
    """Scripted stand-in for the Cobalt client."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = 0

    async def extract_audio(self, video_id: str) -> AudioPayload:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else _payload()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeTranscriber:
    def __init__(self, result=None, error=None, before_return=None):
        self.result = result or _transcript()
        self.error = error
        self.before_return = before_return
        self.calls = 0

    async def transcribe_chunks(
        self,
        chunks,
        language_hint=None,
        model=None,
        on_chunk_progress=None,
        on_chunk_done=None,
        checkpoint=None,
    ):
        self.calls += 1
        if on_chunk_progress is not None:
            await on_chunk_progress(0, TranscriptionProgress(stage="transcribing", progress=40))
        if self.before_return is not None:
            await self.before_return()
        if self.error is not None:
            raise self.error
        return self.result


class StaticProvider(TranscriptionProvider):
    name = "static"

    def is_configured(self) -> bool:
        return True

    async def prepare(self, audio, on_progress=None):
        return audio

    async def transcribe(self, prepared, model, language_hint=None, on_progress=None):
        return TranscriptionResult(
            segments=[TranscriptSegment(text=prepared.filename, start=1.0, duration=2.0)],
            language="en",
            duration=60.0,
        )


class CancellingProvider(TranscriptionProvider):
    """Cancels the job from inside its first upstream call."""

    name = "cancelling"

    def __init__(self, job_id: str, error: Exception | None = None):
        self.job_id = job_id
        self.error = error
        self.calls = 0

    def is_configured(self) -> bool:
        return True

    async def prepare(self, audio, on_progress=None):
        return audio

    async def transcribe(self, prepared, model, language_hint=None, on_progress=None):
        self.calls += 1
        if self.calls == 1:
            async with AsyncSessionLocal() as other:
                await cancel_transcription_job(self.job_id, other)
        if self.error is not None:
            raise self.error
        return TranscriptionResult(
            segments=[TranscriptSegment(text="chunk", start=0.0, duration=1.0)],
            language="en",
            duration=60.0,
        )


def _payload() -> AudioPayload:
    return AudioPayload(data=b"ID3audio", content_type="audio/mpeg", size=8, filename="v.mp3")


def _transcript(duration: float = 125.0) -> TranscriptionResult:
    return TranscriptionResult(
        segments=[
            TranscriptSegment(text="Hello", start=0.0, duration=60.0),
            TranscriptSegment(text="World", start=60.0, duration=65.0),
        ],
        language="en",
        duration=duration,
    )


async def _create_job(user_id: int = 1, status: str = "pending", duration: int = 125) -> str:
    job_id = str(uuid4())
    async with AsyncSessionLocal() as session:
        session.add(
            TranscriptionJob(
                id=job_id,
                user_id=user_id,
                video_id="dQw4w9WgXcQ",
                status=status,
                duration_seconds=duration,
            )
        )
        await session.commit()
    return job_id


async def _load_job(job_id: str) -> TranscriptionJob:
    async with AsyncSessionLocal() as session:
        return await session.get(TranscriptionJob, job_id)


async def _charged_minutes(job_id: str) -> int:
    return await CreditLedger().job_usage_minutes(job_id)


async def _run(job_id: str, extractor=None, transcriber=None):
    async with AsyncSessionLocal() as db:
        return await process_transcription_job(
            job_id,
            db,
            extractor=extractor or FakeExtractor(),
            transcriber=transcriber or FakeTranscriber(),
        )


@pytest.mark.asyncio
async def test_job_completes_and_charges_rounded_minutes(test_db):
    job_id = await _create_job()

    outcome = await _run(job_id)

    assert outcome.status == JobStatus.COMPLETED.value
    assert outcome.segment_count == 2
    assert outcome.language == "en"

    job = await _load_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.progress == 100
    assert job.transcript_data == [
        {"text": "Hello", "start": 0.0, "duration": 60.0},
        {"text": "World", "start": 60.0, "duration": 65.0},
    ]
    assert job.duration_seconds == 125
    assert job.completed_at is not None
    assert job.started_at is not None
    assert job.lease_expires_at is None
    assert job.error_message is None
    assert await _charged_minutes(job_id) == 3


@pytest.mark.asyncio
async def test_retryable_download_errors_are_retried(test_db):
    job_id = await _create_job()
    extractor = FakeExtractor(
        [
            AudioExtractionError(CobaltErrorCode.RATE_LIMITED, "Rate limit exceeded"),
            AudioExtractionError(CobaltErrorCode.FETCH_FAILED, "Failed to fetch video data"),
        ]
    )

    outcome = await _run(job_id, extractor=extractor)

    assert outcome.status == JobStatus.COMPLETED.value
    assert extractor.calls == 3


@pytest.mark.asyncio
async def test_download_failure_marks_job_failed_without_charge(test_db):
    job_id = await _create_job()
    extractor = FakeExtractor(
        [
            AudioExtractionError(
                CobaltErrorCode.CONTENT_UNAVAILABLE, "Video is unavailable or private"
            )
        ]
    )
    transcriber = FakeTranscriber()

    outcome = await _run(job_id, extractor=extractor, transcriber=transcriber)

    assert outcome.status == JobStatus.FAILED.value
    assert extractor.calls == 1
    assert transcriber.calls == 0

    job = await _load_job(job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == f"{DOWNLOAD_FAILED_MESSAGE}: Video is unavailable or private"
    assert job.transcript_data is None
    assert await _charged_minutes(job_id) == 0


@pytest.mark.asyncio
async def test_transcription_failure_marks_job_failed_without_charge(test_db):
    job_id = await _create_job(user_id=2)
    transcriber = FakeTranscriber(error=TranscriptionError("All models failed", status_code=503))

    outcome = await _run(job_id, transcriber=transcriber)

    assert outcome.status == JobStatus.FAILED.value
    job = await _load_job(job_id)
    assert job.error_message.startswith(TRANSCRIPTION_FAILED_MESSAGE)
    assert await _charged_minutes(job_id) == 0
    async with AsyncSessionLocal() as session:
        profile = await session.get(Profile, 2)
        assert profile.transcription_minutes_topup == 20


@pytest.mark.asyncio
async def test_insufficient_minutes_at_charge_time_fails_the_job(test_db):
    job_id = await _create_job(duration=7800)
    transcriber = FakeTranscriber(result=_transcript(duration=7800.0))

    outcome = await _run(job_id, transcriber=transcriber)

    assert outcome.status == JobStatus.FAILED.value
    job = await _load_job(job_id)
    assert job.error_message.startswith("INSUFFICIENT_CREDITS")
    assert job.transcript_data is None
    assert await _charged_minutes(job_id) == 0


@pytest.mark.asyncio
async def test_cancel_during_transcription_leaves_job_cancelled_and_uncharged(test_db):
    job_id = await _create_job()

    async def cancel_mid_flight():
        async with AsyncSessionLocal() as other:
            await cancel_transcription_job(job_id, other)

    outcome = await _run(job_id, transcriber=FakeTranscriber(before_return=cancel_mid_flight))

    assert outcome.status == JobStatus.CANCELLED.value
    job = await _load_job(job_id)
    assert job.status == JobStatus.CANCELLED.value
    assert job.transcript_data is None
    assert await _charged_minutes(job_id) == 0


@pytest.mark.asyncio
async def test_terminal_jobs_are_not_reprocessed(test_db):
    job_id = await _create_job(status=JobStatus.COMPLETED.value)
    extractor = FakeExtractor()

    outcome = await _run(job_id, extractor=extractor)

    assert outcome.status == JobStatus.COMPLETED.value
    assert extractor.calls == 0


@pytest.mark.asyncio
async def test_unknown_job_raises(test_db):
    with pytest.raises(JobNotFoundError):
        await _run("missing-job")


@pytest.mark.asyncio
async def test_chunked_audio_tracks_chunk_progress(test_db, monkeypatch):
    job_id = await _create_job(duration=120)

    async def fake_split(audio, chunk_seconds=None, duration_hint=None):
        return [
            AudioChunk(AudioInput(b"one", "c0.mp3"), index=0, offset_seconds=0.0, duration_seconds=60.0),
            AudioChunk(AudioInput(b"two", "c1.mp3"), index=1, offset_seconds=60.0, duration_seconds=60.0),
        ]

    monkeypatch.setattr(transcription_module, "needs_chunking", lambda audio: True)
    monkeypatch.setattr(transcription_module, "split_audio", fake_split)
    transcriber = SpeechToTextService(
        providers={"static": StaticProvider()},
        candidates=[("static", "m1")],
        base_delay=0,
    )

    outcome = await _run(job_id, transcriber=transcriber)

    assert outcome.status == JobStatus.COMPLETED.value
    job = await _load_job(job_id)
    assert job.total_chunks == 2
    assert job.completed_chunks == 2
    assert [segment["start"] for segment in job.transcript_data] == [1.0, 61.0]
    assert job.duration_seconds == 120
    assert await _charged_minutes(job_id) == 2


@pytest.mark.asyncio
async def test_cancel_refunds_and_rejects_terminal_jobs(test_db):
    job_id = await _create_job(user_id=2, status=JobStatus.TRANSCRIBING.value)
    async with AsyncSessionLocal() as session:
        profile = await session.get(Profile, 2)
        window = billing_period_for(profile)
    await CreditLedger().consume_atomic(2, job_id, 5, 0, window)

    async with AsyncSessionLocal() as db:
        refund = await cancel_transcription_job(job_id, db)

    assert refund.minutes_refunded == 5
    assert refund.topup_restored == 5
    job = await _load_job(job_id)
    assert job.status == JobStatus.CANCELLED.value

    async with AsyncSessionLocal() as db:
        with pytest.raises(JobNotCancellableError, match="Cannot cancel job with status: cancelled"):
            await cancel_transcription_job(job_id, db)
        with pytest.raises(JobNotFoundError):
            await cancel_transcription_job("missing-job", db)


@pytest.mark.asyncio
async def test_fail_job_marks_failed_and_refunds(test_db):
    job_id = await _create_job(user_id=2, status=JobStatus.TRANSCRIBING.value)
    window = billing_period_for(None, now=datetime.utcnow())
    await CreditLedger().consume_atomic(2, job_id, 4, 0, window)

    async with AsyncSessionLocal() as db:
        assert await fail_job(db, job_id, "boom", CreditLedger()) is True
        # A second failure attempt finds the job terminal and changes nothing.
        assert await fail_job(db, job_id, "again", CreditLedger()) is False

    job = await _load_job(job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == "boom"
    async with AsyncSessionLocal() as session:
        rows = (await session.execute(select(UsageRecord))).scalars().all()
        profile = await session.get(Profile, 2)
    assert rows == []
    assert profile.transcription_minutes_topup == 20


@pytest.mark.asyncio
async def test_cancel_during_first_chunk_skips_remaining_chunks(test_db, monkeypatch):
    job_id = await _create_job(duration=300)

    async def fake_split(audio, chunk_seconds=None, duration_hint=None):
        return [
            AudioChunk(
                AudioInput(b"audio", f"c{i}.mp3"),
                index=i,
                offset_seconds=60.0 * i,
                duration_seconds=60.0,
            )
            for i in range(5)
        ]

    monkeypatch.setattr(transcription_module, "needs_chunking", lambda audio: True)
    monkeypatch.setattr(transcription_module, "split_audio", fake_split)
    provider = CancellingProvider(job_id)
    transcriber = SpeechToTextService(
        providers={"cancelling": provider}, candidates=[("cancelling", "m1")], base_delay=0
    )

    outcome = await _run(job_id, transcriber=transcriber)

    assert outcome.status == JobStatus.CANCELLED.value
    assert provider.calls == 1
    job = await _load_job(job_id)
    assert job.status == JobStatus.CANCELLED.value
    assert job.transcript_data is None
    assert await _charged_minutes(job_id) == 0


@pytest.mark.asyncio
async def test_cancel_during_cascade_stops_further_attempts(test_db):
    job_id = await _create_job()
    provider = CancellingProvider(
        job_id, error=TranscriptionError("Service unavailable", status_code=503)
    )
    transcriber = SpeechToTextService(
        providers={"cancelling": provider},
        candidates=[("cancelling", "m1"), ("cancelling", "m2")],
        max_attempts=3,
        base_delay=0,
    )

    outcome = await _run(job_id, transcriber=transcriber)

    assert outcome.status == JobStatus.CANCELLED.value
    assert provider.calls == 1
    assert (await _load_job(job_id)).status == JobStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_cancel_during_download_stops_retries(test_db):
    job_id = await _create_job()

    class CancellingExtractor(FakeExtractor):
        async def extract_audio(self, video_id):
            self.calls += 1
            async with AsyncSessionLocal() as other:
                await cancel_transcription_job(job_id, other)
            raise AudioExtractionError(CobaltErrorCode.RATE_LIMITED, "Rate limit exceeded")

    extractor = CancellingExtractor()
    transcriber = FakeTranscriber()

    outcome = await _run(job_id, extractor=extractor, transcriber=transcriber)

    assert outcome.status == JobStatus.CANCELLED.value
    assert extractor.calls == 1
    assert transcriber.calls == 0


@pytest.mark.asyncio
async def test_checkpoint_raises_once_job_leaves_expected_status(test_db):
    job_id = await _create_job(status=JobStatus.CANCELLED.value)

    async with AsyncSessionLocal() as db:
        checkpoint = transcription_module._status_checkpoint(
            db, job_id, JobStatus.TRANSCRIBING.value
        )
        with pytest.raises(JobCancelledError) as exc_info:
            await checkpoint()

    assert exc_info.value.status == JobStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_lower_progress_write_still_renews_lease(test_db):
    job_id = await _create_job(status=JobStatus.TRANSCRIBING.value)
    stale_lease = datetime.utcnow() - timedelta(minutes=1)
    async with AsyncSessionLocal() as session:
        job = await session.get(TranscriptionJob, job_id)
        job.progress = 78
        job.lease_expires_at = stale_lease
        await session.commit()

    async with AsyncSessionLocal() as db:
        written = await transcription_module._write_progress(
            db, job_id, 54, "Uploading audio to AI"
        )

    assert written is True
    job = await _load_job(job_id)
    assert job.progress == 78
    assert job.current_stage == "Uploading audio to AI"
    assert job.lease_expires_at > datetime.utcnow()


@pytest.mark.asyncio
async def test_progress_write_on_cancelled_job_is_rejected(test_db):
    job_id = await _create_job(status=JobStatus.CANCELLED.value)

    async with AsyncSessionLocal() as db:
        written = await transcription_module._write_progress(db, job_id, 50, "Transcribing")

    assert written is False
    job = await _load_job(job_id)
    assert job.progress == 0
    assert job.lease_expires_at is None


@pytest.mark.asyncio
async def test_fail_job_loses_to_completion_and_keeps_the_charge(test_db):
    job_id = await _create_job(user_id=2, status=JobStatus.COMPLETED.value)
    window = billing_period_for(None, now=datetime.utcnow())
    await CreditLedger().consume_atomic(2, job_id, 4, 0, window)

    async with AsyncSessionLocal() as db:
        assert await fail_job(db, job_id, "late", CreditLedger()) is False

    job = await _load_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert await _charged_minutes(job_id) == 4
    async with AsyncSessionLocal() as session:
        profile = await session.get(Profile, 2)
    assert profile.transcription_minutes_topup == 16


@pytest.mark.asyncio
async def test_charge_denied_for_unentitled_account_reads_as_insufficient_credits(test_db):
    async with AsyncSessionLocal() as session:
        session.add(Profile(id=3, username="free", subscription_tier="free"))
        await session.commit()
    job_id = await _create_job(user_id=3)

    outcome = await _run(job_id)

    assert outcome.status == JobStatus.FAILED.value
    job = await _load_job(job_id)
    assert job.error_message.startswith("INSUFFICIENT_CREDITS")
    assert "NOT_ENTITLED" in job.error_message
    assert await _charged_minutes(job_id) == 0
