"""Service-to-service routes guarded by the internal API key."""

import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from vidscribe.config import settings
from vidscribe.database import get_db
from vidscribe.logging_config import get_logger
from vidscribe.models.transcription_job import JobStatus
from vidscribe.schemas.transcription import (
    ProcessRequest,
    ProcessResponse,
    TopupRequest,
    TopupResponse,
)
from vidscribe.services.credit_ledger import CreditReason, LedgerError, ledger
from vidscribe.services.transcription import JobNotFoundError, process_transcription_job

logger = get_logger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"])


async def require_internal_key(x_internal_key: str | None = Header(default=None)) -> None:
    """Reject callers that do not present the configured internal key.

    The routes are disabled entirely while no key is configured.
    """
    expected = settings.internal_api_key
    if not expected or not x_internal_key or not secrets.compare_digest(x_internal_key, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.post(
    "/transcribe/process",
    response_model=ProcessResponse,
    dependencies=[Depends(require_internal_key)],
)
async def process_job(payload: ProcessRequest, db: AsyncSession = Depends(get_db)):
    """Run the orchestrator for one job inline and report its outcome."""
    try:
        outcome = await process_transcription_job(payload.job_id, db)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    return ProcessResponse(
        success=outcome.status == JobStatus.COMPLETED.value,
        status=outcome.status,
        segment_count=outcome.segment_count,
        duration=outcome.duration,
        language=outcome.language,
        processing_time_ms=outcome.processing_ms,
        error_message=outcome.error_message,
    )


@router.post("/topups", response_model=TopupResponse, dependencies=[Depends(require_internal_key)])
async def credit_topup(payload: TopupRequest):
    """Credit a completed top-up purchase. Replays of the same payment intent are no-ops."""
    try:
        result = await ledger.credit_topup(
            payload.user_id,
            payload.payment_intent_id,
            payload.minutes,
            payload.amount_paid,
        )
    except LedgerError as exc:
        if exc.reason == CreditReason.NO_ACCOUNT.value:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)

    return TopupResponse(
        already_processed=result.already_processed,
        minutes_added=result.minutes_added,
        new_balance=result.new_balance,
    )
