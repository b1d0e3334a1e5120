"""Transcription job submission, status polling and cancellation routes."""

import math
from datetime import datetime
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vidscribe.database import get_db
from vidscribe.logging_config import get_logger
from vidscribe.models.profile import Profile
from vidscribe.models.transcription_job import (
    ACTIVE_STATUSES,
    JobStatus,
    TranscriptionJob,
)
from vidscribe.routes.auth import get_current_user
from vidscribe.schemas.transcription import (
    CancelRequest,
    CancelResponse,
    InsufficientCreditsDetail,
    JobStatusResponse,
    TranscribeRequest,
    TranscribeResponse,
)
from vidscribe.services.credit_ledger import (
    CreditReason,
    billing_period_for,
    ledger,
    minutes_for_duration,
)
from vidscribe.services.job_queue import queue
from vidscribe.services.speech_to_text import estimate_cost_cents
from vidscribe.services.transcription import (
    JobNotCancellableError,
    JobNotFoundError,
    cancel_transcription_job,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/transcribe", tags=["transcription"])

DEFAULT_STAGES = {
    JobStatus.PENDING.value: "Queued for processing",
    JobStatus.DOWNLOADING.value: "Downloading audio",
    JobStatus.TRANSCRIBING.value: "Transcribing audio",
}
DEFAULT_FAILURE_MESSAGE = "Transcription failed"


async def _get_owned_job(db: AsyncSession, job_id: str, user: Profile) -> TranscriptionJob:
    job = await db.get(TranscriptionJob, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return job


@router.post("", response_model=TranscribeResponse, status_code=status.HTTP_201_CREATED)
async def submit_transcription(
    payload: TranscribeRequest,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Record a pending transcription job and dispatch it.

    The balance is checked up front so users are not left waiting on a job
    that cannot be charged; the actual charge happens after transcription.

    Raises:
        HTTPException: 403 when the account is not entitled or lacks minutes
    """
    minutes_needed = minutes_for_duration(payload.duration_seconds)
    window = billing_period_for(current_user)
    check = await ledger.check_available(current_user.id, minutes_needed, window)

    if check.reason in (CreditReason.NO_ACCOUNT, CreditReason.NOT_ENTITLED):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Transcription requires an active subscription",
        )
    if not check.allowed:
        detail = InsufficientCreditsDetail(
            reason=check.reason.value,
            message=(
                f"This video needs {minutes_needed} transcription minute(s) "
                f"but only {check.total_remaining} remain"
            ),
            minutes_needed=minutes_needed,
            total_remaining=check.total_remaining,
            subscription_remaining=check.subscription_remaining,
            topup_remaining=check.topup_remaining,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail.model_dump(by_alias=True),
        )

    job = TranscriptionJob(
        id=str(uuid4()),
        user_id=current_user.id,
        video_id=payload.video_id,
        video_analysis_id=payload.video_analysis_id,
        status=JobStatus.PENDING.value,
        progress=0,
        duration_seconds=math.ceil(payload.duration_seconds),
        estimated_cost_cents=math.ceil(estimate_cost_cents(payload.duration_seconds)),
        created_at=datetime.utcnow(),
    )
    db.add(job)
    await db.commit()
    logger.info(
        "Created transcription job %s for user %s (video=%s, minutes=%s)",
        job.id,
        current_user.id,
        job.video_id,
        minutes_needed,
    )

    await queue.enqueue(job.id)

    return TranscribeResponse(job_id=job.id, status=job.status)


@router.get("/status", response_model=JobStatusResponse, response_model_exclude_none=True)
async def get_transcription_status(
    job_id: str = Query(..., alias="jobId", min_length=1),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the latest observed state of a job owned by the caller."""
    job = await _get_owned_job(db, job_id, current_user)

    fields = {
        "job_id": job.id,
        "video_id": job.video_id,
        "status": job.status,
        "progress": job.progress,
        "duration_seconds": job.duration_seconds or None,
    }

    if job.status in ACTIVE_STATUSES:
        fields["current_stage"] = job.current_stage or DEFAULT_STAGES[job.status]
        if (job.total_chunks or 1) > 1:
            fields["total_chunks"] = job.total_chunks
            fields["completed_chunks"] = job.completed_chunks

    if job.status == JobStatus.COMPLETED.value and job.transcript_data is not None:
        fields["transcript_data"] = job.transcript_data
        fields["language"] = job.language
        fields["completed_at"] = job.completed_at

    if job.status == JobStatus.FAILED.value:
        fields["error_message"] = job.error_message or DEFAULT_FAILURE_MESSAGE

    return JobStatusResponse(**fields)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_transcription(
    payload: CancelRequest,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a job that has not reached a terminal state and refund its minutes."""
    await _get_owned_job(db, payload.job_id, current_user)

    try:
        refund = await cancel_transcription_job(payload.job_id, db)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except JobNotCancellableError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    return CancelResponse(
        success=True,
        message="Transcription cancelled",
        minutes_refunded=refund.minutes_refunded,
    )


__all__ = ["router", "DEFAULT_STAGES"]
