"""Pydantic schemas package."""

from vidscribe.schemas.transcription import (
    CancelRequest,
    CancelResponse,
    JobStatusResponse,
    TranscribeRequest,
    TranscribeResponse,
)
from vidscribe.schemas.usage import UsageResponse

__all__ = [
    "CancelRequest",
    "CancelResponse",
    "JobStatusResponse",
    "TranscribeRequest",
    "TranscribeResponse",
    "UsageResponse",
]
