"""Pydantic schemas for transcription jobs.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TranscribeRequest(CamelModel):
    """Request schema for starting a transcription."""

    video_id: str = Field(min_length=1, max_length=64)
    duration_seconds: float = Field(gt=0)
    video_analysis_id: Optional[str] = Field(default=None, max_length=36)


class TranscribeResponse(CamelModel):
    job_id: str
    status: str


class InsufficientCreditsDetail(CamelModel):
    """Body of the 403 returned when the pre-flight balance check fails."""

    reason: str
    message: str
    minutes_needed: int
    total_remaining: int
    subscription_remaining: int
    topup_remaining: int


class TranscriptSegmentSchema(BaseModel):
    text: str
    start: float
    duration: float


class JobStatusResponse(CamelModel):
    """Poll response. Optional fields are omitted when they do not apply."""

    job_id: str
    video_id: str
    status: str
    progress: int
    current_stage: Optional[str] = None
    total_chunks: Optional[int] = None
    completed_chunks: Optional[int] = None
    transcript_data: Optional[List[TranscriptSegmentSchema]] = None
    language: Optional[str] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    duration_seconds: Optional[int] = None


class CancelRequest(CamelModel):
    job_id: str = Field(min_length=1)


class CancelResponse(CamelModel):
    success: bool
    message: str
    minutes_refunded: int = 0


class ProcessRequest(CamelModel):
    job_id: str = Field(min_length=1)


class ProcessResponse(CamelModel):
    """Outcome of an inline processing run."""

    success: bool
    status: str
    segment_count: int = 0
    duration: Optional[float] = None
    language: Optional[str] = None
    processing_time_ms: int = 0
    error_message: Optional[str] = None


class TopupRequest(CamelModel):
    user_id: int
    payment_intent_id: str = Field(min_length=1, max_length=255)
    minutes: int = Field(gt=0)
    amount_paid: int = Field(ge=0)


class TopupResponse(CamelModel):
    success: bool = True
    already_processed: bool
    minutes_added: int
    new_balance: int
